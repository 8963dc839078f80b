#!/usr/bin/env python3
"""
Pattern Vault Service

The entry-point facade consumed by the orchestration layer (CLI, shell hooks,
MCP tools). Wires the vault store, snapshot ring, PDX codec, conflict resolver,
rate limiters and audit logger into the public operations.

Every mutating operation runs under the vault lock and follows the same path:
read current state -> snapshot it -> write the new state -> audit.
"""

import json
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Union

from loguru import logger
from pydantic import BaseModel

from ..audit.crypto import DocumentSigner, Ed25519Signer
from ..audit.models import AuditEventKind, Outcome
from ..audit.service import AuditLogger
from ..dna.models import ContextMemoryEntry, OwnerConsent, OwnerLicense, Pattern, Vault
from ..dna.resolver import ConflictMode, ConflictResolver, ImportSummary, merge_patterns
from ..pdx.codec import PDXCodec, decode
from ..pdx.schema import ExportToolInfo, PrivacyMode
from ..storage.snapshots import SnapshotManager, SnapshotMeta
from ..storage.vault_store import VaultHandle, VaultStore, atomic_write
from .config import Config, VaultPaths, get_config
from .error_codes import (
    ConsentDeniedError,
    PatternNotFoundError,
    VaultCorruptError,
)
from .rate_limiter import ExportRateLimiter, ImportSizeLimiter

CONSENT_FLAGS = ("portability", "learning", "attribution", "marketplace")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class VaultSummary(BaseModel):
    """Content-free status of one vault installation."""

    root: str
    exists: bool
    owner_identity: Optional[str] = None
    consent: Optional[OwnerConsent] = None
    created_at: Optional[datetime] = None
    last_modified_at: Optional[datetime] = None
    workflow_count: int = 0
    template_count: int = 0
    integration_count: int = 0
    context_memory_count: int = 0
    preference_count: int = 0
    snapshot_count: int = 0
    latest_snapshot_id: Optional[str] = None
    last_export_at: Optional[datetime] = None
    next_export_allowed_at: Optional[datetime] = None


class PatternVaultService:
    """
    Public operations on a single local vault.

    Usage:
        service = PatternVaultService()
        service.learn_pattern(pattern)
        document = service.export_vault(PrivacyMode.FULL)
        summary = service.import_vault(document, ConflictMode.SKIP)
    """

    def __init__(
        self,
        root: Optional[Union[str, Path]] = None,
        config: Optional[Dict[str, Any]] = None,
        clock: Optional[Callable[[], datetime]] = None,
        passphrase: Optional[str] = None,
    ):
        """Initialize the service.

        Args:
            root: Vault directory; defaults to the configured vault home
            config: Configuration dictionary (see Config.get_defaults)
            clock: Returns the current UTC time (injectable for tests)
            passphrase: Overrides the configured vault passphrase
        """
        self.config = config if config is not None else get_config()
        vault_cfg = self.config.get("vault", {})
        locking_cfg = self.config.get("locking", {})
        portability_cfg = self.config.get("portability", {})
        owner_cfg = self.config.get("owner", {})

        self.paths = VaultPaths.from_root(root or vault_cfg.get("home") or Config.VAULT_HOME)
        self._clock = clock or _utcnow
        self._passphrase = passphrase if passphrase is not None else vault_cfg.get("passphrase")

        self.store = VaultStore(
            self.paths,
            passphrase=self._passphrase,
            lock_timeout=locking_cfg.get("timeout_seconds", Config.LOCK_TIMEOUT_SECONDS),
            poll_interval=locking_cfg.get("poll_interval", Config.LOCK_POLL_INTERVAL),
            kdf_iterations=vault_cfg.get("kdf_iterations", Config.KDF_ITERATIONS),
            owner_identity=owner_cfg.get("identity", Config.OWNER_IDENTITY),
            clock=self._clock,
        )
        self.snapshots = SnapshotManager(
            self.paths.snapshots_dir,
            capacity=self.config.get("snapshots", {}).get("retention", Config.SNAPSHOT_RETENTION),
            clock=self._clock,
        )
        self.audit = AuditLogger(self.paths.audit_dir)
        self.export_limiter = ExportRateLimiter(
            window=timedelta(
                hours=portability_cfg.get("export_cooldown_hours", Config.EXPORT_COOLDOWN_HOURS)
            ),
            clock=self._clock,
        )
        self.import_limiter = ImportSizeLimiter(
            max_entries=portability_cfg.get("import_max_entries", Config.IMPORT_MAX_ENTRIES)
        )
        self.resolver = ConflictResolver()
        self.tool_info = ExportToolInfo(**self.config.get("export_tool", {
            "name": Config.EXPORT_TOOL_NAME,
            "version": Config.EXPORT_TOOL_VERSION,
            "url": Config.EXPORT_TOOL_URL,
        }))
        self.license = OwnerLicense(**owner_cfg.get("license", {}))
        self.revoke_export_dir = Path(
            portability_cfg.get("revoke_export_dir", Config.REVOKE_EXPORT_DIR)
        ).expanduser()

    # ------------------------------------------------------------------
    # Internals

    @contextmanager
    def _open(self) -> Iterator[VaultHandle]:
        """Open the vault under lock; corrupt-vault errors list the restorable snapshots."""
        try:
            with self.store.open() as handle:
                yield handle
        except VaultCorruptError as e:
            if e.available_snapshots:
                raise
            try:
                available = self.snapshots.ids()
            except VaultCorruptError:
                available = []
            logger.error("Vault unreadable", available_snapshots=len(available))
            raise VaultCorruptError(e.message, available_snapshots=available, details=e.details) from e

    def _signer(self) -> DocumentSigner:
        # Only called with the vault lock held
        return DocumentSigner(
            Ed25519Signer.load_or_create(self.paths.signing_key, passphrase=self._passphrase)
        )

    def _commit(self, handle: VaultHandle, previous: Vault, updated: Vault) -> Vault:
        self.snapshots.snapshot(handle, previous)
        updated = updated.model_copy(update={"last_modified_at": self._clock()})
        handle.write(updated)
        return updated

    @staticmethod
    def _require(consent: OwnerConsent, permission: str) -> None:
        if not getattr(consent, permission):
            raise ConsentDeniedError(permission)

    def _encode(self, vault: Vault, privacy_mode: PrivacyMode) -> Dict[str, Any]:
        codec = PDXCodec(self._signer())
        return codec.encode(
            vault,
            privacy_mode,
            consent=vault.consent,
            tool_info=self.tool_info,
            license=self.license,
            now=self._clock(),
        )

    def _record_export(self, handle: VaultHandle) -> None:
        meta = handle.read_meta()
        handle.write_meta(meta.model_copy(update={
            "last_export_at": self._clock(),
            "export_count": meta.export_count + 1,
        }))

    # ------------------------------------------------------------------
    # Learning

    def learn_pattern(self, pattern: Pattern) -> Pattern:
        """Store a newly learned pattern; a known id is folded into the existing one."""
        with self._open() as handle:
            vault = handle.read()
            self._require(vault.consent, "learning")

            existing = vault.get_pattern(pattern.id)
            if existing is None:
                stored = pattern
                workflows = vault.workflows + [pattern]
            else:
                stored = merge_patterns(existing, pattern)
                workflows = [stored if p.id == pattern.id else p for p in vault.workflows]

            self._commit(handle, vault, vault.model_copy(update={"workflows": workflows}))

        self.audit.pattern_learned(stored.matcher.content_hash, stored.confidence)
        logger.info("Pattern learned", pattern_id=stored.id, usage_count=stored.usage_count)
        return stored

    def record_invocation(self, pattern_id: str, success: bool, duration_ms: float) -> Pattern:
        """Count one use of a pattern and fold its outcome into success_rate."""
        if duration_ms < 0:
            raise ValueError("duration_ms must not be negative")

        with self._open() as handle:
            vault = handle.read()
            self._require(vault.consent, "learning")
            pattern = vault.get_pattern(pattern_id)
            if pattern is None:
                raise PatternNotFoundError(pattern_id)

            uses = pattern.usage_count + 1
            successes = pattern.success_rate * pattern.usage_count + (1 if success else 0)
            updated = pattern.model_copy(update={
                "usage_count": uses,
                "success_rate": min(1.0, successes / uses),
            })
            self._commit(handle, vault, vault.model_copy(update={
                "workflows": [updated if p.id == pattern_id else p for p in vault.workflows],
            }))

        self.audit.pattern_invoked(
            updated.matcher.content_hash,
            Outcome.SUCCESS if success else Outcome.FAILURE,
            duration_ms,
        )
        return updated

    def evolve_pattern(self, pattern_id: str, confidence: float) -> Pattern:
        """Set a new confidence for a pattern and stamp last_evolved_at."""
        if not 0.0 <= confidence <= 1.0:
            raise ValueError("confidence must be within [0, 1]")

        with self._open() as handle:
            vault = handle.read()
            self._require(vault.consent, "learning")
            pattern = vault.get_pattern(pattern_id)
            if pattern is None:
                raise PatternNotFoundError(pattern_id)

            updated = pattern.model_copy(update={
                "confidence": confidence,
                "last_evolved_at": max(self._clock(), pattern.last_evolved_at),
            })
            self._commit(handle, vault, vault.model_copy(update={
                "workflows": [updated if p.id == pattern_id else p for p in vault.workflows],
            }))

        self.audit.pattern_evolved(updated.matcher.content_hash, confidence)
        logger.info(
            "Pattern evolved",
            pattern_id=pattern_id,
            old_confidence=pattern.confidence,
            new_confidence=confidence,
        )
        return updated

    def add_context_memory(self, entry: ContextMemoryEntry) -> bool:
        """Append session context. Returns False if the session is already recorded."""
        with self._open() as handle:
            vault = handle.read()
            self._require(vault.consent, "learning")
            if any(c.session_id == entry.session_id for c in vault.context_memory):
                logger.debug("Context memory already recorded", session_id=entry.session_id)
                return False

            self._commit(handle, vault, vault.model_copy(update={
                "context_memory": vault.context_memory + [entry],
            }))

        self.audit.emit(
            AuditEventKind.CONTEXT_RECORDED,
            pattern_hash=entry.privacy.content_hash or None,
            outcome=Outcome.SUCCESS,
            item_count=1,
        )
        return True

    def update_consent(self, **flags: bool) -> OwnerConsent:
        """Change owner permissions (portability, learning, attribution, marketplace)."""
        unknown = set(flags) - set(CONSENT_FLAGS)
        if unknown:
            raise ValueError(f"Unknown consent flags: {', '.join(sorted(unknown))}")

        with self._open() as handle:
            vault = handle.read()
            consent = vault.consent.model_copy(update={
                **{k: bool(v) for k, v in flags.items()},
                "timestamp": self._clock(),
                "signature": None,
            })
            self._commit(handle, vault, vault.model_copy(update={"consent": consent}))

        self.audit.emit(
            AuditEventKind.CONSENT_UPDATED,
            outcome=Outcome.SUCCESS,
            item_count=len(flags),
        )
        logger.info("Consent updated", **{k: bool(v) for k, v in flags.items()})
        return consent

    # ------------------------------------------------------------------
    # Portability

    def export_vault(
        self,
        privacy_mode: PrivacyMode = PrivacyMode.FULL,
        output_target: Optional[Union[str, Path]] = None,
    ) -> Dict[str, Any]:
        """Encode and sign the vault; optionally write it to `output_target`.

        Raises:
            RateLimitError: if the last successful export is within the cooldown
            ConsentDeniedError: if the owner has not granted portability
        """
        privacy_mode = PrivacyMode(privacy_mode)
        with self._open() as handle:
            self.export_limiter.check(handle.read_meta().last_export_at)
            vault = handle.read()
            self._require(vault.consent, "portability")

            document = self._encode(vault, privacy_mode)
            if output_target is not None:
                atomic_write(
                    Path(output_target).expanduser(),
                    json.dumps(document, indent=2, ensure_ascii=False).encode("utf-8"),
                )
            self._record_export(handle)

        document_hash = document["metadata"]["integrity"]["hash"]
        self.audit.emit(
            AuditEventKind.EXPORTED,
            pattern_hash=document_hash,
            outcome=Outcome.SUCCESS,
            item_count=len(vault.workflows),
        )
        logger.info(
            "Vault exported",
            privacy_mode=privacy_mode.value,
            document_hash=document_hash[:16],
            written_to=str(output_target) if output_target else None,
        )
        return document

    def import_vault(
        self,
        document: Union[Dict[str, Any], str, bytes],
        conflict_mode: Optional[ConflictMode] = None,
    ) -> ImportSummary:
        """Validate a PDX document and fold it into the local vault.

        Nothing is written unless decoding, the size cap and conflict
        resolution all succeed.
        """
        payload = decode(document)
        count = self.import_limiter.check(payload.vault)

        with self._open() as handle:
            vault = handle.read()
            self._require(vault.consent, "portability")
            merged, summary = self.resolver.merge(vault, payload.vault, conflict_mode)

            if merged.same_content(vault):
                logger.info("Import changed nothing", document_hash=payload.document_hash[:16])
            else:
                self._commit(handle, vault, merged)

        self.audit.emit(
            AuditEventKind.IMPORTED,
            pattern_hash=payload.document_hash,
            outcome=Outcome.SUCCESS,
            item_count=count,
        )
        logger.info(
            "Vault imported",
            format_version=payload.format_version,
            migration_history=payload.provenance.migration_history,
            **summary.to_dict(),
        )
        return summary

    # ------------------------------------------------------------------
    # Status and history

    def get_status(self) -> VaultSummary:
        """Content-free summary. A vault never written reports its defaults and any export window."""
        exists = self.store.exists()
        if exists:
            with self._open() as handle:
                vault = handle.read()
                meta = handle.read_meta()
        else:
            vault = Vault.empty(identity=self.store.owner_identity, now=self._clock())
            meta = self.store.read_meta()
        snapshots = self.snapshots.list()

        return VaultSummary(
            root=str(self.paths.root),
            exists=exists,
            owner_identity=vault.consent.identity,
            consent=vault.consent,
            created_at=vault.created_at if exists else None,
            last_modified_at=vault.last_modified_at if exists else None,
            snapshot_count=len(snapshots),
            latest_snapshot_id=snapshots[0].snapshot_id if snapshots else None,
            last_export_at=meta.last_export_at,
            next_export_allowed_at=self.export_limiter.next_allowed(meta.last_export_at),
            **vault.counts(),
        )

    def list_snapshots(self, limit: Optional[int] = None) -> List[SnapshotMeta]:
        return self.snapshots.list(limit)

    def restore_snapshot(self, snapshot_id: str) -> Vault:
        """Make a past snapshot current. The replaced state is itself snapshotted."""
        with self.store.open() as handle:
            restored = self.snapshots.load(handle, snapshot_id)
            try:
                current = handle.read()
            except VaultCorruptError:
                # Unreadable current state is replaced without a snapshot
                current = None
                logger.warning("Restoring over an unreadable vault", snapshot_id=snapshot_id)

            if current is not None:
                self.snapshots.snapshot(handle, current)
            restored = restored.model_copy(update={"last_modified_at": self._clock()})
            handle.write(restored)

        self.audit.emit(
            AuditEventKind.RESTORED,
            outcome=Outcome.SUCCESS,
            item_count=len(restored.workflows),
        )
        logger.info("Snapshot restored", snapshot_id=snapshot_id)
        return restored

    def revoke_vault(self) -> Path:
        """
        Permanently destroy the vault after a forced final export.

        The export ignores the rate limit and consent gates; it is the owner's
        last copy of their data. The audit log survives.

        Returns:
            Path of the final export file
        """
        with self._open() as handle:
            vault = handle.read()
            document = self._encode(vault, PrivacyMode.FULL)

            stamp = self._clock().strftime("%Y%m%dT%H%M%SZ")
            export_path = self.revoke_export_dir / f"pattern-vault-revoked-{stamp}.json"
            atomic_write(
                export_path,
                json.dumps(document, indent=2, ensure_ascii=False).encode("utf-8"),
            )
            handle.erase_all()

        self.audit.emit(
            AuditEventKind.REVOKED,
            pattern_hash=document["metadata"]["integrity"]["hash"],
            outcome=Outcome.SUCCESS,
            item_count=len(vault.workflows),
        )
        logger.warning("Vault revoked", final_export=str(export_path))
        return export_path

    def audit_stats(self) -> Dict[str, Any]:
        stats = self.audit.stats()
        stats["integrity"] = self.audit.verify_integrity()
        return stats
