from .checksum import compute_checksum
from .store import (
    ConflictHandling,
    ConflictType,
    ContextConflict,
    ContextEntry,
    ContextStore,
    ContextSynchronizer,
    MergeStrategy,
    Snapshot,
)

__all__ = [
    "compute_checksum",
    "ConflictHandling",
    "ConflictType",
    "ContextConflict",
    "ContextEntry",
    "ContextStore",
    "ContextSynchronizer",
    "MergeStrategy",
    "Snapshot",
]
