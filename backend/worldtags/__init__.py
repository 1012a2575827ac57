"""Tile-partitioned world data store and coordinate tag lookup service.

The package ingests a parsed map dataset into rectangular tiles of tagged
polygons ("areas"), polylines ("ways") and points ("nodes"), and answers
"which tags apply at this coordinate" over HTTP.

- ``worldtags.db``: persisted entities and the tile store backends
- ``worldtags.services``: blob codec, tag dictionary, ingestion pipeline and
  spatial query engine, plus projection and geometry predicates
- ``worldtags.api``: FastAPI routers
- ``worldtags.cli``: ``start``, ``ingest`` and ``lookup`` commands
"""
