"""Resource store: content-addressed persistence, sessions and the lineage graph."""

from cairn.core.store.database import StoreDB
from cairn.core.store.lineage import DirectoryLineageIndexer, LineageGraph, ResourceNeighbors
from cairn.core.store.recorder import StoreRecorder

__all__ = [
    "DirectoryLineageIndexer",
    "LineageGraph",
    "ResourceNeighbors",
    "StoreDB",
    "StoreRecorder",
]
