#!/usr/bin/env python3
"""
Test suite for vault_service.py - the public vault operations end to end
"""
import json

import pytest

from src.audit.crypto import DocumentSigner, Ed25519Signer
from src.audit.models import AuditEventKind
from src.core.error_codes import (
    ConflictUnresolvedError,
    ConsentDeniedError,
    ImportTooLargeError,
    PatternNotFoundError,
    RateLimitError,
    SnapshotNotFoundError,
    VaultBusyError,
    VaultCorruptError,
    VaultLockedError,
)
from src.core.vault_service import PatternVaultService
from src.dna.models import ContextDetails, ContextMemoryEntry, Matcher, Pattern, Vault
from src.dna.resolver import ConflictMode
from src.pdx.codec import PDXCodec, decode
from src.pdx.schema import ExportToolInfo, PrivacyMode
from src.storage.locking import VaultLock

SECRET_VALUE = "kubectl --context prod-eu apply"


def _pattern(pattern_id="wf_deploy", value=SECRET_VALUE, **overrides) -> Pattern:
    fields = dict(
        id=pattern_id,
        name="Deploy",
        matcher=Matcher(kind="regex", value=value),
        confidence=0.5,
        usage_count=1,
    )
    fields.update(overrides)
    return Pattern(**fields)


@pytest.fixture
def other_service(test_config, clock, temp_dir):
    """A second, independent vault installation."""
    config = json.loads(json.dumps(test_config))
    config["vault"]["home"] = str(temp_dir / "other-vault")
    return PatternVaultService(config=config, clock=clock)


class TestEndToEnd:
    """The learn -> export -> decode scenario"""

    def test_learn_then_export(self, service):
        """Test the basic end-to-end flow"""
        service.learn_pattern(_pattern(confidence=0.5, usage_count=1))

        document = service.export_vault(PrivacyMode.FULL)

        assert len(document["dna"]["workflows"]) == 1
        payload = decode(document)
        assert payload.document_hash == document["metadata"]["integrity"]["hash"]
        assert payload.vault.get_pattern("wf_deploy").confidence == 0.5

    def test_export_to_file(self, service, temp_dir):
        """Test that output_target receives the same document"""
        service.learn_pattern(_pattern())
        target = temp_dir / "out" / "vault.pdx.json"

        document = service.export_vault(PrivacyMode.FULL, output_target=target)

        assert json.loads(target.read_text()) == document
        assert decode(target.read_bytes()).vault.get_pattern("wf_deploy") is not None

    def test_export_empty_vault(self, service):
        """Test exporting before anything was learned"""
        document = service.export_vault(PrivacyMode.FULL)

        assert document["dna"]["workflows"] == []

    def test_hash_only_export_contains_no_content(self, service):
        """Test privacy containment through the service"""
        service.learn_pattern(_pattern())

        document = service.export_vault(PrivacyMode.HASH_ONLY)

        assert SECRET_VALUE not in json.dumps(document)

    def test_signing_key_is_stable(self, service, clock):
        """Test that successive exports are signed by the same key"""
        first = service.export_vault(PrivacyMode.FULL)
        clock.advance(hours=25)
        second = service.export_vault(PrivacyMode.FULL)

        assert first["metadata"]["integrity"]["public_key"] == second["metadata"]["integrity"]["public_key"]


class TestLearning:
    """Tests for learn / invoke / evolve / context memory / consent"""

    def test_learn_snapshots_empty_pre_state(self, service):
        """Test that the first mutation snapshots the empty vault"""
        service.learn_pattern(_pattern())

        snapshots = service.list_snapshots()
        assert len(snapshots) == 1
        assert snapshots[0].workflow_count == 0

    def test_learn_existing_id_folds_in(self, service):
        """Test that re-learning a pattern merges with the stored one"""
        service.learn_pattern(_pattern(usage_count=2, tags={"a"}))
        stored = service.learn_pattern(_pattern(usage_count=3, tags={"b"}, confidence=0.9))

        assert stored.usage_count == 5
        assert stored.tags == {"a", "b"}
        assert stored.confidence == 0.9
        assert service.get_status().workflow_count == 1

    def test_learning_consent_required(self, service):
        """Test that learning is gated by consent"""
        service.update_consent(learning=False)

        with pytest.raises(ConsentDeniedError) as exc_info:
            service.learn_pattern(_pattern())

        assert exc_info.value.permission == "learning"
        assert service.get_status().workflow_count == 0

    def test_record_invocation(self, service):
        """Test usage counting and success rate"""
        service.learn_pattern(_pattern(usage_count=1, success_rate=1.0))

        service.record_invocation("wf_deploy", success=False, duration_ms=120)
        updated = service.record_invocation("wf_deploy", success=True, duration_ms=80)

        assert updated.usage_count == 3
        assert updated.success_rate == pytest.approx(2 / 3)

    def test_record_invocation_unknown_pattern(self, service):
        """Test PatternNotFoundError"""
        with pytest.raises(PatternNotFoundError):
            service.record_invocation("missing", success=True, duration_ms=1)

    def test_record_invocation_negative_duration(self, service):
        """Test that a negative duration is rejected before anything is written"""
        service.learn_pattern(_pattern())
        before = len(service.list_snapshots())

        with pytest.raises(ValueError):
            service.record_invocation("wf_deploy", success=True, duration_ms=-1.0)

        assert len(service.list_snapshots()) == before
        assert service.audit.entries(kind=AuditEventKind.PATTERN_INVOKED) == []

    def test_evolve_pattern(self, service, clock):
        """Test confidence update and evolution timestamp"""
        service.learn_pattern(_pattern(created_at=clock()))
        clock.advance(days=1)

        evolved = service.evolve_pattern("wf_deploy", 0.8)

        assert evolved.confidence == 0.8
        assert evolved.last_evolved_at == clock()

    def test_evolve_invalid_confidence(self, service):
        """Test range checking"""
        service.learn_pattern(_pattern())

        with pytest.raises(ValueError):
            service.evolve_pattern("wf_deploy", 1.5)

    def test_add_context_memory(self, service):
        """Test append-only context memory"""
        entry = ContextMemoryEntry(session_id="s1", context=ContextDetails(working_directory="/w"))

        assert service.add_context_memory(entry) is True
        assert service.add_context_memory(entry) is False
        assert service.get_status().context_memory_count == 1

    def test_add_context_memory_is_audited(self, service):
        """Test that only a newly recorded session is audited"""
        entry = ContextMemoryEntry(session_id="s1", context=ContextDetails(working_directory="/w"))

        service.add_context_memory(entry)
        service.add_context_memory(entry)

        events = service.audit.entries(kind=AuditEventKind.CONTEXT_RECORDED)
        assert len(events) == 1
        assert events[0].pattern_hash == entry.privacy.content_hash
        assert "/w" not in service.audit.log.path.read_text()

    def test_update_consent_is_audited(self, service):
        """Test that consent changes are audited"""
        service.update_consent(marketplace=True, attribution=True)

        events = service.audit.entries(kind=AuditEventKind.CONSENT_UPDATED)
        assert len(events) == 1
        assert events[0].item_count == 2

    def test_update_consent(self, service, clock):
        """Test changing permissions"""
        consent = service.update_consent(marketplace=True)

        assert consent.marketplace is True
        assert consent.timestamp == clock()
        assert service.get_status().consent.marketplace is True

    def test_update_consent_unknown_flag(self, service):
        """Test that only known permissions can be set"""
        with pytest.raises(ValueError):
            service.update_consent(telemetry=True)

    def test_concurrent_mutation_is_busy(self, service):
        """Test that a held lock makes mutations fail with VaultBusyError"""
        with VaultLock(service.paths.lock_file, timeout=0.1):
            with pytest.raises(VaultBusyError):
                service.learn_pattern(_pattern())


class TestExportRateLimit:
    """Tests for the export cooldown"""

    def test_second_export_within_an_hour_rejected(self, service, clock):
        """Test the 1 hour case"""
        service.export_vault(PrivacyMode.FULL)
        clock.advance(hours=1)

        with pytest.raises(RateLimitError) as exc_info:
            service.export_vault(PrivacyMode.FULL)

        assert exc_info.value.retry_after.total_seconds() == 23 * 3600

    def test_second_export_after_twenty_five_hours(self, service, clock):
        """Test the 25 hour case"""
        service.export_vault(PrivacyMode.FULL)
        clock.advance(hours=25)

        assert service.export_vault(PrivacyMode.FULL)["@type"] == "ChittyDNA"

    def test_failed_export_does_not_burn_window(self, service):
        """Test that only successful exports anchor the window"""
        service.update_consent(portability=False)
        with pytest.raises(ConsentDeniedError):
            service.export_vault(PrivacyMode.FULL)

        service.update_consent(portability=True)
        service.export_vault(PrivacyMode.FULL)

    def test_status_reports_next_export(self, service, clock):
        """Test that status exposes the cooldown"""
        service.export_vault(PrivacyMode.FULL)

        status = service.get_status()

        assert status.last_export_at == clock()
        assert (status.next_export_allowed_at - clock()).total_seconds() == 24 * 3600

    def test_status_after_exporting_empty_vault(self, service, clock):
        """Test that the cooldown is reported before the vault is ever written"""
        service.export_vault(PrivacyMode.FULL)

        status = service.get_status()

        assert status.exists is False
        assert status.last_export_at == clock()
        assert status.consent.portability is True

    def test_status_on_fresh_root_creates_no_keys(self, service):
        """Test that reading status never generates key material"""
        status = service.get_status()

        assert status.exists is False
        assert status.last_export_at is None
        assert status.next_export_allowed_at is None
        assert not service.paths.keys_dir.exists()


class TestImport:
    """Tests for import_vault"""

    def test_import_into_empty_vault(self, service, other_service):
        """Test moving patterns between installations"""
        service.learn_pattern(_pattern())
        document = service.export_vault(PrivacyMode.FULL)

        summary = other_service.import_vault(document, ConflictMode.SKIP)

        assert summary.added == 1
        assert other_service.get_status().workflow_count == 1

    def test_import_skip_is_idempotent(self, service, other_service, clock):
        """Test that importing the same document twice with skip changes nothing"""
        service.learn_pattern(_pattern())
        service.add_context_memory(ContextMemoryEntry(session_id="s1"))
        document = service.export_vault(PrivacyMode.FULL)

        other_service.import_vault(document, ConflictMode.SKIP)
        first = other_service.get_status()
        snapshots_after_first = len(other_service.list_snapshots())
        clock.advance(minutes=5)

        summary = other_service.import_vault(document, ConflictMode.SKIP)
        second = other_service.get_status()

        assert summary.skipped == 1
        assert summary.added == 0
        assert second == first
        assert len(other_service.list_snapshots()) == snapshots_after_first

    def test_import_merge(self, service, other_service):
        """Test merge arithmetic through the service"""
        service.learn_pattern(_pattern(usage_count=2))
        other_service.learn_pattern(_pattern(usage_count=3))
        document = service.export_vault(PrivacyMode.FULL)

        summary = other_service.import_vault(document, ConflictMode.MERGE)

        assert summary.merged == 1
        with other_service.store.open() as handle:
            assert handle.read().get_pattern("wf_deploy").usage_count == 5

    def test_import_collision_without_mode(self, service, other_service):
        """Test that an unresolved collision writes nothing"""
        service.learn_pattern(_pattern())
        other_service.learn_pattern(_pattern())
        document = service.export_vault(PrivacyMode.FULL)
        before = len(other_service.list_snapshots())

        with pytest.raises(ConflictUnresolvedError):
            other_service.import_vault(document, None)

        assert len(other_service.list_snapshots()) == before

    def test_import_too_large(self, other_service):
        """Test the 100 entry cap"""
        signer = DocumentSigner(Ed25519Signer.generate())
        big = Vault(workflows=[_pattern(f"wf_{i}", value=f"cmd {i}") for i in range(101)])
        document = PDXCodec(signer).encode(
            big, PrivacyMode.FULL, big.consent, ExportToolInfo(name="other-tool", version="1.0")
        )

        with pytest.raises(ImportTooLargeError):
            other_service.import_vault(document, ConflictMode.SKIP)

        assert other_service.get_status().exists is False

    def test_import_keeps_local_consent(self, service, other_service):
        """Test that imported consent never replaces the owner's"""
        service.update_consent(marketplace=True)
        document = service.export_vault(PrivacyMode.FULL)

        other_service.import_vault(document, ConflictMode.REPLACE)

        assert other_service.get_status().consent.marketplace is False

    def test_import_records_audit_event(self, service, other_service):
        """Test that imports are audited with the document hash"""
        service.learn_pattern(_pattern())
        document = service.export_vault(PrivacyMode.FULL)

        other_service.import_vault(document, ConflictMode.SKIP)

        events = other_service.audit.entries(kind=AuditEventKind.IMPORTED)
        assert len(events) == 1
        assert events[0].pattern_hash == document["metadata"]["integrity"]["hash"]
        assert events[0].item_count == 1


class TestSnapshotsAndRestore:
    """Tests for snapshot listing and restore"""

    def test_every_mutation_snapshots(self, service):
        """Test one snapshot per mutation"""
        service.learn_pattern(_pattern("a", value="a"))
        service.learn_pattern(_pattern("b", value="b"))
        service.evolve_pattern("a", 0.9)

        assert [m.workflow_count for m in service.list_snapshots()] == [2, 1, 0]
        assert len(service.list_snapshots(limit=1)) == 1

    def test_retention_through_service(self, test_config, clock):
        """Test that 31 mutations leave exactly 30 snapshots"""
        test_config["snapshots"]["retention"] = 30
        service = PatternVaultService(config=test_config, clock=clock)

        for i in range(31):
            service.learn_pattern(_pattern(f"wf_{i}", value=f"cmd {i}"))
            clock.advance(seconds=1)

        snapshots = service.list_snapshots()
        assert len(snapshots) == 30
        assert snapshots[-1].seq == 2

    def test_restore(self, service):
        """Test restoring a previous state"""
        service.learn_pattern(_pattern("a", value="a"))
        service.learn_pattern(_pattern("b", value="b"))
        only_a = service.list_snapshots()[0]

        restored = service.restore_snapshot(only_a.snapshot_id)

        assert only_a.workflow_count == 1
        assert [p.id for p in restored.workflows] == ["a"]
        assert service.get_status().workflow_count == 1
        assert service.list_snapshots()[0].workflow_count == 2
        assert len(service.audit.entries(kind=AuditEventKind.RESTORED)) == 1

    def test_restore_unknown(self, service):
        """Test SnapshotNotFoundError"""
        service.learn_pattern(_pattern())

        with pytest.raises(SnapshotNotFoundError):
            service.restore_snapshot("000099-20250101T000000000000Z")

    def test_corrupt_vault_lists_snapshots(self, service):
        """Test that a corrupt vault reports restorable snapshots and can be restored"""
        service.learn_pattern(_pattern("a", value="a"))
        service.learn_pattern(_pattern("b", value="b"))
        blob = bytearray(service.paths.vault_file.read_bytes())
        blob[-1] ^= 0x01
        service.paths.vault_file.write_bytes(bytes(blob))

        with pytest.raises(VaultCorruptError) as exc_info:
            service.get_status()

        available = exc_info.value.available_snapshots
        assert available == service.snapshots.ids()
        assert len(available) == 2

        service.restore_snapshot(available[0])
        assert service.get_status().workflow_count == 1

    def test_missing_master_key_is_locked(self, service):
        """Test that a lost key leaves the vault locked instead of replacing it"""
        service.learn_pattern(_pattern())
        service.paths.master_key.unlink()

        with pytest.raises(VaultLockedError):
            service.get_status()
        with pytest.raises(VaultLockedError):
            service.learn_pattern(_pattern("b", value="b"))

        assert not service.paths.master_key.exists()
        assert service.paths.vault_file.exists()


class TestRevoke:
    """Tests for revoke_vault"""

    def test_revoke(self, service, temp_dir):
        """Test forced final export, erasure and surviving audit log"""
        service.learn_pattern(_pattern())
        service.export_vault(PrivacyMode.FULL)

        export_path = service.revoke_vault()

        assert export_path.parent == temp_dir / "exports"
        assert decode(export_path.read_bytes()).vault.get_pattern("wf_deploy") is not None
        assert not service.paths.vault_file.exists()
        assert not service.paths.keys_dir.exists()
        assert not service.paths.snapshots_dir.exists()
        assert service.get_status().exists is False
        assert len(service.audit.entries(kind=AuditEventKind.REVOKED)) == 1
        assert service.audit.verify_integrity()["valid"] is True

    def test_revoke_ignores_portability_consent(self, service):
        """Test that the owner always gets a final copy"""
        service.learn_pattern(_pattern())
        service.update_consent(portability=False)

        export_path = service.revoke_vault()

        assert export_path.exists()


class TestAudit:
    """Tests for audit recording through the service"""

    def test_audit_stats(self, service):
        """Test counts and chain validity"""
        service.learn_pattern(_pattern())
        service.record_invocation("wf_deploy", success=True, duration_ms=5)
        service.evolve_pattern("wf_deploy", 0.7)
        service.export_vault(PrivacyMode.FULL)

        stats = service.audit_stats()

        assert stats["pattern_learned"] == 1
        assert stats["pattern_invoked"] == 1
        assert stats["pattern_evolved"] == 1
        assert stats["exported"] == 1
        assert stats["integrity"]["valid"] is True

    def test_audit_log_is_content_free(self, service):
        """Test that raw pattern content never reaches the audit log"""
        service.learn_pattern(_pattern())
        service.record_invocation("wf_deploy", success=True, duration_ms=5)

        log_text = service.audit.log.path.read_text()

        assert SECRET_VALUE not in log_text
        assert "wf_deploy" not in log_text

    def test_audit_failure_does_not_fail_mutation(self, service):
        """Test that an unwritable audit log leaves the mutation in place"""
        service.paths.audit_dir.parent.mkdir(parents=True, exist_ok=True)
        service.paths.audit_dir.write_text("not a directory")

        service.learn_pattern(_pattern())

        assert service.get_status().workflow_count == 1
        assert service.audit.stats()["fallback_count"] == 1
