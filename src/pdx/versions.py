"""
PDX Format Versions

One decoder per supported major format version, selected by
`metadata.format_version`. The current major (2) and exactly one prior major
(1) are accepted; anything else is rejected rather than coerced.

Version 1 is the first ChittyDNA layout:
- workflows carry `pattern {type, value, hash}`, `created`, `last_evolved`
  and `impact.time_saved`
- command templates carry `expands_to`
- context memory privacy carries `hash`
- consent signatures were placeholders and are not verified
"""

import json
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, List

from ..audit.crypto import verify_signature
from ..core.error_codes import SchemaInvalidError, SignatureInvalidError
from ..dna.models import Vault
from .schema import OwnerSection, PDXMetadata, PDXPayload

CURRENT_FORMAT_VERSION = "pdx-2.0"
LEGACY_FORMAT_VERSION = "pdx-1.0"

_FORMAT_VERSION_RE = re.compile(r"^pdx-(\d+)\.(\d+)$")


def parse_format_version(value: Any) -> int:
    """Return the major version of a `pdx-<major>.<minor>` string."""
    if not isinstance(value, str):
        raise SchemaInvalidError("metadata.format_version must be a string")
    match = _FORMAT_VERSION_RE.match(value)
    if not match:
        raise SchemaInvalidError(f"Unrecognised format_version: {value!r}")
    return int(match.group(1))


def canonical_consent(consent: Dict[str, Any]) -> bytes:
    """Bytes covered by the consent signature."""
    unsigned = {k: v for k, v in consent.items() if k != "signature"}
    return json.dumps(unsigned, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


class DnaDecoder(ABC):
    """Builds a typed payload from an already integrity-checked document."""

    major: int

    def check_consent_signature(self, consent: Dict[str, Any], public_key: str) -> None:
        """Verify the owner's consent signature, if this version has real ones."""
        return None

    @abstractmethod
    def translate_dna(self, dna: Dict[str, Any]) -> Dict[str, Any]:
        """Map this version's dna section onto current field names."""
        pass

    def migration_steps(self) -> List[str]:
        return []

    def decode(self, doc: Dict[str, Any], document_hash: str) -> PDXPayload:
        dna = doc["dna"]
        if not isinstance(dna, dict):
            raise SchemaInvalidError("dna must be an object")

        metadata = PDXMetadata.model_validate(doc["metadata"])
        owner = OwnerSection.model_validate(doc["owner"])
        consent_signature = owner.consent.signature
        translated = self.translate_dna(dna)

        vault = Vault(
            workflows=translated.get("workflows", []),
            preferences=translated.get("preferences", {}),
            command_templates=translated.get("command_templates", []),
            integrations=translated.get("integrations", []),
            context_memory=translated.get("context_memory", []),
            consent=owner.consent.model_copy(update={"signature": None}),
            created_at=metadata.created,
            last_modified_at=metadata.last_modified,
        )

        provenance = metadata.provenance.model_copy(
            update={"migration_history": metadata.provenance.migration_history + self.migration_steps()}
        )

        attribution = doc.get("attribution")
        if attribution is not None and not isinstance(attribution, dict):
            raise SchemaInvalidError("attribution must be an object")

        return PDXPayload(
            vault=vault,
            owner_identity=owner.identity or owner.consent.identity,
            license=owner.license,
            consent_signature=consent_signature,
            format_version=metadata.format_version,
            export_tool=metadata.export_tool,
            export_timestamp=metadata.export_timestamp,
            privacy_mode=metadata.privacy_mode,
            attribution=attribution,
            provenance=provenance,
            document_hash=document_hash,
        )


class PDXv2Decoder(DnaDecoder):
    """Current format: dna fields mirror the vault model."""

    major = 2

    def check_consent_signature(self, consent: Dict[str, Any], public_key: str) -> None:
        signature = consent.get("signature")
        if signature is None:
            return
        if not isinstance(signature, str) or not verify_signature(
            canonical_consent(consent), signature, public_key
        ):
            raise SignatureInvalidError("Owner consent signature is invalid")

    def translate_dna(self, dna: Dict[str, Any]) -> Dict[str, Any]:
        return dna


class PDXv1Decoder(DnaDecoder):
    """Prior major format (first-generation ChittyDNA field names)."""

    major = 1

    def migration_steps(self) -> List[str]:
        return [f"{LEGACY_FORMAT_VERSION}->{CURRENT_FORMAT_VERSION}"]

    def translate_dna(self, dna: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "workflows": [self._workflow(wf) for wf in _as_list(dna, "workflows")],
            "preferences": dna.get("preferences", {}),
            "command_templates": [self._template(t) for t in _as_list(dna, "command_templates")],
            "integrations": _as_list(dna, "integrations"),
            "context_memory": [self._context(c) for c in _as_list(dna, "context_memory")],
        }

    @staticmethod
    def _workflow(wf: Dict[str, Any]) -> Dict[str, Any]:
        if not isinstance(wf, dict):
            raise SchemaInvalidError("workflow entries must be objects")
        pattern = _as_object(wf, "pattern")
        impact = _as_object(wf, "impact")
        converted = {
            "id": wf.get("id"),
            "name": wf.get("name"),
            "matcher": {
                "kind": pattern.get("type"),
                "value": pattern.get("value"),
                "content_hash": pattern.get("hash", ""),
            },
            "confidence": wf.get("confidence"),
            "usage_count": wf.get("usage_count", 0),
            "success_rate": wf.get("success_rate", 1.0),
            "impact": {"time_saved_minutes": impact.get("time_saved", 0)},
            "tags": wf.get("tags", []),
            "privacy": _as_object(wf, "privacy"),
        }
        if "created" in wf:
            converted["created_at"] = wf["created"]
        if "last_evolved" in wf:
            converted["last_evolved_at"] = wf["last_evolved"]
        return converted

    @staticmethod
    def _template(template: Dict[str, Any]) -> Dict[str, Any]:
        if not isinstance(template, dict):
            raise SchemaInvalidError("command template entries must be objects")
        converted = {k: v for k, v in template.items() if k != "expands_to"}
        converted["expansion"] = template.get("expands_to")
        return converted

    @staticmethod
    def _context(entry: Dict[str, Any]) -> Dict[str, Any]:
        if not isinstance(entry, dict):
            raise SchemaInvalidError("context memory entries must be objects")
        privacy = _as_object(entry, "privacy")
        converted = dict(entry)
        converted["privacy"] = {
            "content_hash": privacy.get("hash", ""),
            "reveal_content": privacy.get("reveal_content", True),
        }
        return converted


def _as_list(dna: Dict[str, Any], key: str) -> list:
    value = dna.get(key, [])
    if not isinstance(value, list):
        raise SchemaInvalidError(f"dna.{key} must be a list")
    return value


def _as_object(parent: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = parent.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise SchemaInvalidError(f"{key} must be an object")
    return value


DECODERS: Dict[int, DnaDecoder] = {
    PDXv2Decoder.major: PDXv2Decoder(),
    PDXv1Decoder.major: PDXv1Decoder(),
}


def get_decoder(format_version: Any) -> DnaDecoder:
    major = parse_format_version(format_version)
    decoder = DECODERS.get(major)
    if decoder is None:
        supported = ", ".join(f"pdx-{m}.x" for m in sorted(DECODERS, reverse=True))
        raise SchemaInvalidError(
            f"Unsupported format_version {format_version!r}; supported: {supported}"
        )
    return decoder
