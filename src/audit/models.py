"""
Audit Event Models

Defines the schema for audit events with:
- Enumerated event kinds only
- Hash-only references to patterns (never raw content)
- Numeric outcomes (duration, counts, confidence)

The model forbids extra fields, so there is no slot through which pattern
text, file paths or command arguments could reach the log.
"""

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .crypto import SHA256_HEX_PATTERN


class AuditEventKind(str, Enum):
    """Types of auditable events."""

    # Learning
    PATTERN_LEARNED = "pattern_learned"
    PATTERN_INVOKED = "pattern_invoked"
    PATTERN_EVOLVED = "pattern_evolved"

    # Portability
    EXPORTED = "exported"
    IMPORTED = "imported"

    # Lifecycle
    REVOKED = "revoked"
    RESTORED = "restored"

    # Owner state
    CONTEXT_RECORDED = "context_recorded"
    CONSENT_UPDATED = "consent_updated"


class Outcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class AuditEvent(BaseModel):
    """
    A single content-free audit event.

    pattern_hash: SHA-256 hex of the pattern content (or of the exported or
    imported document) the event refers to.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    kind: AuditEventKind
    pattern_hash: Optional[str] = Field(None, pattern=SHA256_HEX_PATTERN)
    outcome: Optional[Outcome] = None
    duration_ms: Optional[float] = Field(None, ge=0)
    item_count: Optional[int] = Field(None, ge=0)
    confidence: Optional[float] = Field(None, ge=0.0, le=1.0)

    @field_validator("timestamp", mode="before")
    @classmethod
    def ensure_utc(cls, v):
        if isinstance(v, datetime):
            if v.tzinfo is None:
                return v.replace(tzinfo=timezone.utc)
            return v.astimezone(timezone.utc)
        return v

    def canonical_form(self) -> str:
        """
        Generate canonical JSON for hashing.

        Unset optional fields are omitted so log lines stay compact.
        Keys are sorted for determinism.
        """
        data = self.model_dump(mode="json", exclude_none=True)
        return json.dumps(data, sort_keys=True, separators=(",", ":"))
