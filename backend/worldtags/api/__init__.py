"""API router subpackage for the world tag service.

Submodules:
    - world: Coordinate lookup returning the tags present at a location.
"""
