"""IP vault event indexer: folds vault contract events into a local SQLite view."""

from .engine import IndexerEngine
from .store import MaterializedStore

__all__ = ["IndexerEngine", "MaterializedStore"]

__version__ = "0.1.0"
