"""
PDX Envelope Models

Typed views of the parts of a PDX document that surround the `dna` section:
owner, metadata, integrity block and provenance, plus the decoded payload
handed to conflict resolution.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from ..dna.models import OwnerConsent, OwnerLicense, Vault, ensure_utc

REQUIRED_TOP_LEVEL_FIELDS = ("@context", "@type", "version", "owner", "dna", "metadata")
REQUIRED_INTEGRITY_FIELDS = ("algorithm", "hash", "signature", "public_key")


class PrivacyMode(str, Enum):
    """Export transform applied to pattern and context content."""

    FULL = "full"
    HASH_ONLY = "hash_only"


class ExportToolInfo(BaseModel):
    name: str
    version: str
    url: Optional[str] = None


class IntegrityBlock(BaseModel):
    algorithm: str
    hash: str = Field(..., pattern=r"^[0-9a-f]{64}$")
    signature: str
    public_key: str


class Provenance(BaseModel):
    source: Optional[str] = None
    migration_history: List[str] = Field(default_factory=list)


class PDXMetadata(BaseModel):
    created: datetime
    last_modified: datetime
    export_timestamp: datetime
    export_tool: ExportToolInfo
    format_version: str
    schema_url: Optional[str] = None
    privacy_mode: PrivacyMode = PrivacyMode.FULL
    integrity: IntegrityBlock
    provenance: Provenance = Field(default_factory=Provenance)

    @field_validator("created", "last_modified", "export_timestamp", mode="before")
    @classmethod
    def _utc(cls, v):
        return ensure_utc(v)


class OwnerSection(BaseModel):
    identity: Optional[str] = None
    consent: OwnerConsent
    license: OwnerLicense = Field(default_factory=OwnerLicense)


class PDXPayload(BaseModel):
    """A fully validated document, ready for conflict resolution."""

    vault: Vault
    owner_identity: Optional[str] = None
    license: OwnerLicense
    consent_signature: Optional[str] = None
    format_version: str
    export_tool: ExportToolInfo
    export_timestamp: datetime
    privacy_mode: PrivacyMode
    attribution: Optional[Dict[str, Any]] = None
    provenance: Provenance
    document_hash: str
