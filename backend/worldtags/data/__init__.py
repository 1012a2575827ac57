"""Bundled reference data (the tag dictionary definition)."""
