"""Static dictionary resolving integer feature pairs to tag labels.

Feature pairs stored with every area, way and node are
``(key_index, value_index)`` integers. The dictionary that gives them
meaning is an ordered JSON object mapping each tag key to the ordered list
of values tracked for it::

    {"building": ["yes", "house", ...], "amenity": ["bench", ...], ...}

``key_index`` is the key's position in the object and ``value_index`` the
position inside that key's list. The definition ships with the package
(``worldtags/data/tags.json``) and is parsed once per process; the resulting
``TagDictionary`` is immutable and can be shared by any number of concurrent
queries without locking.

Resolution is fail-fast: the first out-of-range pair raises
``TagResolutionError`` and no partial mapping is returned.
"""

from __future__ import annotations

import functools
import json
import pathlib
from typing import TYPE_CHECKING

import pydantic

from worldtags.db import models as db_models

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

BUNDLED_TAGS = pathlib.Path(__file__).resolve().parent.parent / "data" / "tags.json"

_DEFINITION = pydantic.TypeAdapter(dict[str, list[str]])


class TagResolutionError(LookupError):
    """Raised when a feature pair points outside the tag dictionary."""

    def __init__(self, pair: tuple[int, int], message: str) -> None:
        super().__init__(message)
        self.pair = pair


def _reject_duplicate_keys(
    pairs: list[tuple[str, object]],
) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in pairs:
        if key in result:
            raise ValueError(f"Duplicate tag key in dictionary: {key!r}")
        result[key] = value
    return result


class TagDictionary:
    """Immutable mapping of feature pairs to ``(key, value)`` labels."""

    def __init__(self, entries: Iterable[tuple[str, Sequence[str]]]) -> None:
        self._entries: tuple[tuple[str, tuple[str, ...]], ...] = tuple(
            (key, tuple(values)) for key, values in entries
        )

    @classmethod
    def from_json(cls, text: str) -> TagDictionary:
        """Parse a dictionary definition from JSON text.

        Args:
            text: JSON object mapping each key to a list of value labels.

        Returns:
            Parsed dictionary preserving the definition's ordering.

        Raises:
            ValueError: If the JSON is not an object of string lists or
                repeats a key.
        """
        data = json.loads(text, object_pairs_hook=_reject_duplicate_keys)
        try:
            definition = _DEFINITION.validate_python(data, strict=True)
        except pydantic.ValidationError as exc:
            raise ValueError(
                f"Tag dictionary must map keys to lists of strings: {exc}"
            ) from exc
        return cls(definition.items())

    @classmethod
    def from_file(cls, path: pathlib.Path) -> TagDictionary:
        return cls.from_json(path.read_text(encoding="utf-8"))

    def __len__(self) -> int:
        return len(self._entries)

    def keys(self) -> list[str]:
        return [key for key, _ in self._entries]

    def lookup(self, key_index: int, value_index: int) -> tuple[str, str]:
        """Resolve one pair, bounds-checking both indices.

        Raises:
            TagResolutionError: If either index is out of range.
        """
        pair = (key_index, value_index)
        if not 0 <= key_index < len(self._entries):
            raise TagResolutionError(
                pair, f"Tag key index {key_index} is out of range"
            )
        key, values = self._entries[key_index]
        if not 0 <= value_index < len(values):
            raise TagResolutionError(
                pair,
                f"Tag value index {value_index} is out of range "
                f"for key {key!r}",
            )
        return key, values[value_index]

    def contains(self, pair: db_models.FeaturePair) -> bool:
        """Return True if ``pair`` resolves without error."""
        return 0 <= pair.key < len(self._entries) and 0 <= pair.value < len(
            self._entries[pair.key][1]
        )

    def lookup_many(
        self, pairs: Iterable[tuple[int, int]]
    ) -> dict[str, list[str]]:
        """Resolve pairs into a key → values mapping.

        Values are appended per key in the order the pairs are given; a
        repeated pair contributes its value once.

        Args:
            pairs: ``(key_index, value_index)`` pairs.

        Returns:
            Mapping from key label to the value labels present.

        Raises:
            TagResolutionError: On the first pair out of range.
        """
        result: dict[str, list[str]] = {}
        for key_index, value_index in pairs:
            key, value = self.lookup(key_index, value_index)
            values = result.setdefault(key, [])
            if value not in values:
                values.append(value)
        return result


@functools.lru_cache
def load_bundled_tag_dictionary() -> TagDictionary:
    """Parse the dictionary shipped with the package, once per process."""
    return TagDictionary.from_file(BUNDLED_TAGS)


def get_tag_dictionary(tags_file: pathlib.Path | None = None) -> TagDictionary:
    """Return the configured tag dictionary.

    Args:
        tags_file: Optional definition overriding the bundled one.

    Returns:
        The dictionary from ``tags_file`` if given, otherwise the cached
        bundled dictionary.
    """
    if tags_file is not None:
        return TagDictionary.from_file(tags_file)
    return load_bundled_tag_dictionary()
