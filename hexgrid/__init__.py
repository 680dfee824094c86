"""H3 hexagonal grid indexing."""

from hexgrid.indexer import HexIndexer

__all__ = ["HexIndexer"]
