"""Tile store interface and storage backends.

This module consolidates the tile store protocol and its implementations.
It provides a stable import location for store dependency injection
throughout the application, supporting production and testing backends.

Example:
    Use in a service or FastAPI lifespan:
        >>> from worldtags.db import database
        >>> store = database.get_tile_store(settings)
"""
