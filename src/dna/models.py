"""
Pattern Vault Data Model

Defines the aggregate stored in the vault:
- Patterns (workflows/genes) with matcher, scores and privacy flags
- Command templates and integrations
- Append-only context memory keyed by session
- Owner consent and license

Every collection key is unique within its collection; the Vault validator
rejects duplicates so a malformed import can never produce an ambiguous vault.
"""

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Tuple

from pydantic import BaseModel, Field, field_serializer, field_validator, model_validator

from ..audit.crypto import content_hash
from ..audit.models import Outcome

# Empty means "derive from the content"
OPTIONAL_DIGEST = r"^([0-9a-f]{64})?$"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(v):
    if isinstance(v, datetime):
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)
    return v


class MatcherKind(str, Enum):
    """How a pattern recognises its trigger."""

    REGEX = "regex"
    SEMANTIC = "semantic"
    HYBRID = "hybrid"


class Matcher(BaseModel):
    kind: MatcherKind
    value: str
    content_hash: str = Field(default="", pattern=OPTIONAL_DIGEST)

    @model_validator(mode="after")
    def fill_hash(self):
        if not self.content_hash:
            self.content_hash = content_hash(self.value)
        return self


class Impact(BaseModel):
    time_saved_minutes: float = Field(default=0.0, ge=0)


class PatternPrivacy(BaseModel):
    content_hash: str = Field(default="", pattern=OPTIONAL_DIGEST)
    reveal_pattern: bool = True


class Pattern(BaseModel):
    """
    A learned behavioral signature (a "workflow" or "gene").

    usage_count only ever grows; last_evolved_at defaults to created_at and
    may never precede it.
    """

    id: str = Field(..., min_length=1)
    name: str
    matcher: Matcher
    confidence: float = Field(..., ge=0.0, le=1.0)
    usage_count: int = Field(default=0, ge=0)
    success_rate: float = Field(default=1.0, ge=0.0, le=1.0)
    created_at: datetime = Field(default_factory=utcnow)
    last_evolved_at: Optional[datetime] = None
    impact: Impact = Field(default_factory=Impact)
    tags: Set[str] = Field(default_factory=set)
    privacy: PatternPrivacy = Field(default_factory=PatternPrivacy)

    @field_validator("created_at", "last_evolved_at", mode="before")
    @classmethod
    def _utc(cls, v):
        return ensure_utc(v)

    @model_validator(mode="after")
    def check_timeline(self):
        if self.last_evolved_at is None:
            self.last_evolved_at = self.created_at
        if self.last_evolved_at < self.created_at:
            raise ValueError("last_evolved_at must not precede created_at")
        if not self.privacy.content_hash:
            self.privacy.content_hash = self.matcher.content_hash
        return self

    @field_serializer("tags")
    def _sorted_tags(self, tags: Set[str]) -> List[str]:
        return sorted(tags)


class CommandTemplate(BaseModel):
    id: str = Field(..., min_length=1)
    name: str
    pattern: str
    expansion: str
    description: Optional[str] = None
    usage_count: int = Field(default=0, ge=0)


class Integration(BaseModel):
    """External service binding, unique by (type, name)."""

    type: str
    name: str
    endpoint: Optional[str] = None
    enabled: bool = True

    @property
    def key(self) -> Tuple[str, str]:
        return (self.type, self.name)


class ContextDetails(BaseModel):
    working_directory: Optional[str] = None
    active_files: List[str] = Field(default_factory=list)
    last_command: Optional[str] = None
    outcome: Optional[Outcome] = None


class ContextPrivacy(BaseModel):
    content_hash: str = Field(default="", pattern=OPTIONAL_DIGEST)
    reveal_content: bool = True


class ContextMemoryEntry(BaseModel):
    """Per-session context. Never merged, only unioned by session_id."""

    session_id: str = Field(..., min_length=1)
    timestamp: datetime = Field(default_factory=utcnow)
    context: Optional[ContextDetails] = None
    privacy: ContextPrivacy = Field(default_factory=ContextPrivacy)

    @field_validator("timestamp", mode="before")
    @classmethod
    def _utc(cls, v):
        return ensure_utc(v)

    @model_validator(mode="after")
    def fill_hash(self):
        if not self.privacy.content_hash and self.context is not None:
            canonical = json.dumps(
                self.context.model_dump(mode="json"), sort_keys=True, separators=(",", ":")
            )
            self.privacy.content_hash = content_hash(canonical)
        return self


class OwnerConsent(BaseModel):
    """Owner-granted permissions gating learning and portability."""

    identity: str = "local-owner"
    portability: bool = True
    learning: bool = True
    attribution: bool = False
    marketplace: bool = False
    timestamp: datetime = Field(default_factory=utcnow)
    signature: Optional[str] = None

    @field_validator("timestamp", mode="before")
    @classmethod
    def _utc(cls, v):
        return ensure_utc(v)

    def signing_payload(self) -> Dict[str, Any]:
        """The consent fields covered by the consent signature."""
        return self.model_dump(mode="json", exclude={"signature"})


class OwnerLicense(BaseModel):
    type: str = "CDCL-1.0"
    grant: str = "revocable"
    scope: List[str] = Field(default_factory=lambda: ["personal"])
    expires: Optional[datetime] = None


class Vault(BaseModel):
    """The aggregate root: everything one owner has taught the system."""

    workflows: List[Pattern] = Field(default_factory=list)
    preferences: Dict[str, Any] = Field(default_factory=dict)
    command_templates: List[CommandTemplate] = Field(default_factory=list)
    integrations: List[Integration] = Field(default_factory=list)
    context_memory: List[ContextMemoryEntry] = Field(default_factory=list)
    consent: OwnerConsent = Field(default_factory=OwnerConsent)
    created_at: datetime = Field(default_factory=utcnow)
    last_modified_at: datetime = Field(default_factory=utcnow)

    @field_validator("created_at", "last_modified_at", mode="before")
    @classmethod
    def _utc(cls, v):
        return ensure_utc(v)

    @model_validator(mode="after")
    def check_unique_keys(self):
        for label, keys in (
            ("workflow id", [p.id for p in self.workflows]),
            ("command template id", [t.id for t in self.command_templates]),
            ("integration", [i.key for i in self.integrations]),
            ("context session id", [c.session_id for c in self.context_memory]),
        ):
            seen = set()
            for key in keys:
                if key in seen:
                    raise ValueError(f"Duplicate {label}: {key}")
                seen.add(key)
        return self

    @classmethod
    def empty(cls, identity: str = "local-owner", now: Optional[datetime] = None) -> "Vault":
        now = now or utcnow()
        return cls(
            consent=OwnerConsent(identity=identity, timestamp=now),
            created_at=now,
            last_modified_at=now,
        )

    def get_pattern(self, pattern_id: str) -> Optional[Pattern]:
        for pattern in self.workflows:
            if pattern.id == pattern_id:
                return pattern
        return None

    def counts(self) -> Dict[str, int]:
        return {
            "workflow_count": len(self.workflows),
            "template_count": len(self.command_templates),
            "integration_count": len(self.integrations),
            "context_memory_count": len(self.context_memory),
            "preference_count": len(self.preferences),
        }

    def same_content(self, other: "Vault") -> bool:
        """Equality ignoring the modification timestamp."""
        exclude = {"last_modified_at"}
        return self.model_dump(exclude=exclude) == other.model_dump(exclude=exclude)
