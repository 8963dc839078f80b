"""
Snapshot Manager

Bounded history of past vault states.

"What we forget shapes us as much as what we remember."

Snapshots live in a fixed ring of `capacity` slots. Snapshot number `seq`
always lands in slot `(seq - 1) % capacity`, so writing snapshot
`capacity + 1` overwrites snapshot 1 and no more than `capacity` snapshots
can ever exist. Eviction is strict FIFO by construction, never a cleanup
pass.

Each slot file is sealed with the vault key and embeds its own snapshot id,
so a slot overwritten by a crash between file and index update is never
mistaken for the snapshot the stale index still names.
"""

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Optional, Union

from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from ..core.config import Config
from ..core.error_codes import SnapshotNotFoundError, VaultCorruptError
from ..dna.models import Vault
from .vault_store import VaultHandle, atomic_write

INDEX_FILE = "index.json"


class SnapshotMeta(BaseModel):
    snapshot_id: str
    seq: int
    slot: int
    created_at: datetime
    size_bytes: int
    workflow_count: int


class SnapshotIndex(BaseModel):
    capacity: int
    next_seq: int = 1
    slots: List[Optional[SnapshotMeta]] = Field(default_factory=list)

    @classmethod
    def empty(cls, capacity: int) -> "SnapshotIndex":
        return cls(capacity=capacity, slots=[None] * capacity)


class SnapshotManager:
    """
    Capacity-bounded, FIFO snapshot ring.

    Usage:
        snapshots = SnapshotManager(paths.snapshots_dir)
        with store.open() as handle:
            snapshot_id = snapshots.snapshot(handle, handle.read())
            previous = snapshots.load(handle, snapshot_id)
    """

    def __init__(
        self,
        snapshots_dir: Union[str, Path],
        capacity: int = Config.SNAPSHOT_RETENTION,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        if capacity < 1:
            raise ValueError("Snapshot capacity must be positive")
        self.snapshots_dir = Path(snapshots_dir)
        self.capacity = capacity
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def index_path(self) -> Path:
        return self.snapshots_dir / INDEX_FILE

    def _slot_path(self, slot: int) -> Path:
        return self.snapshots_dir / f"slot_{slot:02d}.snap.enc"

    def _load_index(self) -> SnapshotIndex:
        if not self.index_path.exists():
            return SnapshotIndex.empty(self.capacity)
        try:
            index = SnapshotIndex.model_validate_json(self.index_path.read_bytes())
        except ValidationError as e:
            raise VaultCorruptError(f"Snapshot index is invalid: {e.error_count()} errors")

        if index.capacity < 1 or len(index.slots) != index.capacity:
            raise VaultCorruptError(
                "Snapshot index is inconsistent",
                details={"capacity": index.capacity, "slots": len(index.slots)},
            )
        if index.capacity != self.capacity:
            logger.warning(
                "Snapshot ring capacity differs from configuration, keeping stored ring",
                stored=index.capacity,
                configured=self.capacity,
            )
        return index

    def _save_index(self, index: SnapshotIndex) -> None:
        atomic_write(self.index_path, index.model_dump_json(indent=2).encode("utf-8"))

    def snapshot(self, handle: VaultHandle, vault: Vault) -> str:
        """Persist an immutable sealed copy of `vault`; returns its snapshot id."""
        index = self._load_index()
        seq = index.next_seq
        slot = (seq - 1) % index.capacity
        created_at = self._clock()
        snapshot_id = f"{seq:06d}-{created_at.strftime('%Y%m%dT%H%M%S%fZ')}"

        payload = {
            "snapshot_id": snapshot_id,
            "created_at": created_at.isoformat(),
            "vault": json.loads(vault.model_dump_json()),
        }
        blob = handle.seal(json.dumps(payload, separators=(",", ":")).encode("utf-8"))
        atomic_write(self._slot_path(slot), blob)

        evicted = index.slots[slot]
        index.slots[slot] = SnapshotMeta(
            snapshot_id=snapshot_id,
            seq=seq,
            slot=slot,
            created_at=created_at,
            size_bytes=len(blob),
            workflow_count=len(vault.workflows),
        )
        index.next_seq = seq + 1
        self._save_index(index)

        logger.info(
            "Snapshot created",
            snapshot_id=snapshot_id,
            evicted=evicted.snapshot_id if evicted else None,
        )
        return snapshot_id

    def list(self, limit: Optional[int] = None) -> List[SnapshotMeta]:
        """Retained snapshots, newest first."""
        index = self._load_index()
        metas = sorted(
            (meta for meta in index.slots if meta is not None),
            key=lambda meta: meta.seq,
            reverse=True,
        )
        if limit is not None:
            metas = metas[:max(0, limit)]
        return metas

    def ids(self) -> List[str]:
        return [meta.snapshot_id for meta in self.list()]

    def load(self, handle: VaultHandle, snapshot_id: str) -> Vault:
        """Unseal and return the vault state stored under `snapshot_id`."""
        index = self._load_index()
        meta = next(
            (m for m in index.slots if m is not None and m.snapshot_id == snapshot_id),
            None,
        )
        slot_path = self._slot_path(meta.slot) if meta else None
        if meta is None or not slot_path.exists():
            raise SnapshotNotFoundError(snapshot_id)

        plaintext = handle.unseal(slot_path.read_bytes())
        try:
            payload = json.loads(plaintext)
        except json.JSONDecodeError:
            raise VaultCorruptError(f"Snapshot {snapshot_id} is unreadable")

        if payload.get("snapshot_id") != snapshot_id:
            raise SnapshotNotFoundError(snapshot_id)

        try:
            return Vault.model_validate(payload["vault"])
        except (KeyError, ValidationError):
            raise VaultCorruptError(f"Snapshot {snapshot_id} content is invalid")
