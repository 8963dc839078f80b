"""
Audit Logger

The main interface for the audit trail.

Records content-free events for every vault mutation. Recording never fails
the calling operation: if the append-only log cannot be written, the failure
goes to the fallback channel and the mutation stands.
"""

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from loguru import logger
from pydantic import ValidationError

from .models import AuditEvent, AuditEventKind, Outcome
from .wal import AuditLog

# Secondary channel for events that could not reach the log
fallback_logger = logger.bind(channel="audit_fallback")


class AuditLogger:
    """
    Privacy-preserving audit logger.

    Usage:
        audit = AuditLogger(paths.audit_dir)

        audit.pattern_learned(pattern.matcher.content_hash, confidence=0.5)
        audit.emit(AuditEventKind.EXPORTED, pattern_hash=doc_hash)

        stats = audit.stats()
    """

    def __init__(
        self,
        log_dir: Optional[Union[str, Path]] = None,
        log: Optional[AuditLog] = None,
        sync_on_write: bool = True,
    ):
        if log is None and log_dir is None:
            raise ValueError("AuditLogger needs a log_dir or an AuditLog")
        self._log = log or AuditLog(log_dir, sync_on_write=sync_on_write)
        self._record_count = 0
        self._error_count = 0

    @property
    def log(self) -> AuditLog:
        return self._log

    def record(self, event: AuditEvent) -> Optional[dict]:
        """Append one event; returns the log record, or None if it fell back."""
        try:
            record = self._log.append(event)
        except (OSError, ValueError) as e:
            self._error_count += 1
            fallback_logger.error(
                "Audit event could not be recorded",
                kind=event.kind.value,
                error=type(e).__name__,
            )
            return None

        self._record_count += 1
        logger.debug("Audit event recorded", kind=event.kind.value, seq=record["seq"])
        return record

    def emit(self, kind: AuditEventKind, **fields: Any) -> Optional[dict]:
        """Build and record an event; an event that fails validation falls back like a write error."""
        try:
            event = AuditEvent(kind=kind, **fields)
        except ValidationError as e:
            self._error_count += 1
            fallback_logger.error(
                "Audit event rejected",
                kind=kind.value,
                fields=sorted(fields),
                error_count=e.error_count(),
            )
            return None
        return self.record(event)

    def pattern_learned(self, pattern_hash: str, confidence: float) -> Optional[dict]:
        return self.emit(
            AuditEventKind.PATTERN_LEARNED, pattern_hash=pattern_hash, confidence=confidence
        )

    def pattern_invoked(
        self, pattern_hash: str, outcome: Outcome, duration_ms: float
    ) -> Optional[dict]:
        return self.emit(
            AuditEventKind.PATTERN_INVOKED,
            pattern_hash=pattern_hash,
            outcome=outcome,
            duration_ms=duration_ms,
        )

    def pattern_evolved(self, pattern_hash: str, confidence: float) -> Optional[dict]:
        return self.emit(
            AuditEventKind.PATTERN_EVOLVED, pattern_hash=pattern_hash, confidence=confidence
        )

    def entries(
        self,
        kind: Optional[AuditEventKind] = None,
        since: Optional[datetime] = None,
    ) -> List[AuditEvent]:
        """Events in log order, optionally filtered by kind and start time."""
        events = []
        for record in self._log.iterate_records():
            try:
                event = AuditEvent.model_validate(record.get("event", {}))
            except ValidationError:
                continue
            if kind is not None and event.kind != kind:
                continue
            if since is not None and event.timestamp < since:
                continue
            events.append(event)
        return events

    def stats(self) -> Dict[str, Any]:
        """Counts per event kind plus the invocation success rate."""
        events = self.entries()
        counts = {k.value: 0 for k in AuditEventKind}
        for event in events:
            counts[event.kind.value] += 1

        invocations = [e for e in events if e.kind == AuditEventKind.PATTERN_INVOKED]
        successes = [e for e in invocations if e.outcome == Outcome.SUCCESS]

        return {
            "total_events": len(events),
            **counts,
            "success_rate": len(successes) / len(invocations) if invocations else 1.0,
            "recorded_this_process": self._record_count,
            "fallback_count": self._error_count,
        }

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Check the hash chain and that every line is a valid content-free event.
        """
        result = self._log.verify_chain()
        errors = [
            f"Line {link.get('line')}: {link['error']}" for link in result["broken_links"]
        ]

        for record in self._log.iterate_records():
            try:
                AuditEvent.model_validate(record.get("event", {}))
            except ValidationError:
                errors.append(f"Seq {record.get('seq')}: event does not match schema")

        return {
            "valid": not errors,
            "line_count": result["line_count"],
            "errors": errors,
            "checked_at": datetime.now(timezone.utc).isoformat(),
        }
