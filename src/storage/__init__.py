"""Storage module for the Pattern Vault."""

from .locking import VaultLock
from .snapshots import SnapshotManager, SnapshotMeta
from .vault_store import VaultHandle, VaultMeta, VaultStore, atomic_write

__all__ = [
    "VaultLock",
    "VaultStore",
    "VaultHandle",
    "VaultMeta",
    "SnapshotManager",
    "SnapshotMeta",
    "atomic_write",
]
