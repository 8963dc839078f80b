"""
PDX Codec

Encodes a vault into a signed, portable PDX document and decodes documents
back into a typed payload.

Decoding is all-or-nothing. Checks run in a fixed order so each failure has
one meaning:
1. JSON, envelope and digest shape  -> SchemaInvalidError
2. supported format_version         -> SchemaInvalidError
3. recomputed hash                  -> IntegrityMismatchError
4. signature over the hash          -> SignatureInvalidError
5. owner.consent.portability        -> ConsentDeniedError
6. typed dna / metadata validation  -> SchemaInvalidError
"""

import hmac
import json
import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from loguru import logger
from pydantic import TypeAdapter, ValidationError

from ..audit.crypto import (
    INTEGRITY_ALGORITHM,
    SHA256_HEX_PATTERN,
    DocumentSigner,
    hash_document,
    verify_hash,
)
from ..core.config import Config
from ..core.error_codes import (
    ConsentDeniedError,
    IntegrityMismatchError,
    SchemaInvalidError,
    SignatureInvalidError,
)
from ..dna.models import OwnerConsent, OwnerLicense, Vault
from .schema import (
    REQUIRED_INTEGRITY_FIELDS,
    REQUIRED_TOP_LEVEL_FIELDS,
    ExportToolInfo,
    PDXPayload,
    PrivacyMode,
)
from .versions import CURRENT_FORMAT_VERSION, canonical_consent, get_decoder

DNA_COLLECTIONS = ("workflows", "preferences", "command_templates", "integrations", "context_memory")

_DATETIME = TypeAdapter(datetime)
_SHA256_HEX = re.compile(SHA256_HEX_PATTERN)


def apply_privacy_mode(vault: Vault, privacy_mode: PrivacyMode) -> Vault:
    """Return a copy of `vault` with the export privacy transform applied."""
    if privacy_mode == PrivacyMode.FULL:
        return vault

    workflows = [
        wf.model_copy(update={
            "matcher": wf.matcher.model_copy(update={"value": wf.matcher.content_hash}),
            "privacy": wf.privacy.model_copy(update={"reveal_pattern": False}),
        })
        for wf in vault.workflows
    ]
    context_memory = [
        entry.model_copy(update={
            "context": None,
            "privacy": entry.privacy.model_copy(update={"reveal_content": False}),
        })
        for entry in vault.context_memory
    ]
    return vault.model_copy(update={"workflows": workflows, "context_memory": context_memory})


def seal_document(doc: Dict[str, Any], signer: DocumentSigner) -> Dict[str, Any]:
    """Fill metadata.integrity hash, signature and public key in place."""
    integrity = doc["metadata"].setdefault("integrity", {})
    integrity["algorithm"] = INTEGRITY_ALGORITHM
    integrity["public_key"] = signer.public_key_b64
    integrity.pop("hash", None)
    integrity.pop("signature", None)

    document_hash = hash_document(doc)
    signature, _ = signer.sign_hash(document_hash)
    integrity["hash"] = document_hash
    integrity["signature"] = signature
    return doc


class PDXCodec:
    """
    Portable DNA eXchange encoder/decoder.

    Usage:
        codec = PDXCodec(DocumentSigner(Ed25519Signer.load_or_create(key_path)))
        document = codec.encode(vault, PrivacyMode.FULL, vault.consent, tool_info)
        payload = codec.decode(document)
    """

    def __init__(self, signer: Optional[DocumentSigner] = None):
        self._signer = signer

    def encode(
        self,
        vault: Vault,
        privacy_mode: PrivacyMode,
        consent: OwnerConsent,
        tool_info: ExportToolInfo,
        license: Optional[OwnerLicense] = None,
        attribution: Optional[Dict[str, Any]] = None,
        source: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Build and sign the PDX document for `vault`."""
        if self._signer is None:
            raise RuntimeError("PDXCodec needs a signer to encode")

        privacy_mode = PrivacyMode(privacy_mode)
        now = now or datetime.now(timezone.utc)
        exported = apply_privacy_mode(vault, privacy_mode)
        vault_json = json.loads(exported.model_dump_json())

        consent_json = consent.signing_payload()
        consent_signature, _ = self._signer.sign(canonical_consent(consent_json))
        consent_json["signature"] = consent_signature

        doc: Dict[str, Any] = {
            "@context": Config.PDX_CONTEXT,
            "@type": Config.PDX_TYPE,
            "version": Config.PDX_VERSION,
            "owner": {
                "identity": consent.identity,
                "consent": consent_json,
                "license": json.loads((license or OwnerLicense()).model_dump_json()),
            },
            "dna": {key: vault_json[key] for key in DNA_COLLECTIONS},
            "metadata": {
                "created": vault_json["created_at"],
                "last_modified": vault_json["last_modified_at"],
                "export_timestamp": _iso(now),
                "export_tool": json.loads(tool_info.model_dump_json()),
                "format_version": CURRENT_FORMAT_VERSION,
                "schema_url": Config.PDX_SCHEMA_URL,
                "privacy_mode": privacy_mode.value,
                "integrity": {},
                "provenance": {"source": source or tool_info.name, "migration_history": []},
            },
        }
        if attribution is not None:
            doc["attribution"] = attribution

        seal_document(doc, self._signer)
        logger.info(
            "PDX document encoded",
            privacy_mode=privacy_mode.value,
            document_hash=doc["metadata"]["integrity"]["hash"][:16],
            workflow_count=len(vault.workflows),
        )
        return doc

    def decode(self, document: Union[Dict[str, Any], str, bytes]) -> PDXPayload:
        return decode(document)


def decode(document: Union[Dict[str, Any], str, bytes]) -> PDXPayload:
    """Validate a PDX document end to end and return its typed payload."""
    doc = _parse(document)

    missing = [field for field in REQUIRED_TOP_LEVEL_FIELDS if field not in doc]
    if missing:
        raise SchemaInvalidError(
            f"Missing required fields: {', '.join(missing)}", details={"missing": missing}
        )
    if doc["@type"] != Config.PDX_TYPE:
        raise SchemaInvalidError(f"@type must be {Config.PDX_TYPE}")

    metadata = doc["metadata"]
    if not isinstance(metadata, dict) or "format_version" not in metadata:
        raise SchemaInvalidError("metadata.format_version is required")
    decoder = get_decoder(metadata["format_version"])

    integrity = metadata.get("integrity")
    if not isinstance(integrity, dict) or not all(
        isinstance(integrity.get(field), str) for field in REQUIRED_INTEGRITY_FIELDS
    ):
        raise SchemaInvalidError(
            f"metadata.integrity requires {', '.join(REQUIRED_INTEGRITY_FIELDS)}"
        )

    if not _SHA256_HEX.fullmatch(integrity["hash"]):
        raise SchemaInvalidError("metadata.integrity.hash must be a lowercase hex SHA-256 digest")

    try:
        computed = hash_document(doc)
    except (ValueError, TypeError) as e:
        raise SchemaInvalidError(f"Document cannot be canonicalized: {e}")
    if not hmac.compare_digest(computed, integrity["hash"]):
        logger.warning("PDX integrity mismatch", computed=computed[:16])
        raise IntegrityMismatchError(expected=integrity["hash"], actual=computed)

    if not verify_hash(computed, integrity["signature"], integrity["public_key"]):
        raise SignatureInvalidError("Document signature does not verify against its public key")

    owner = doc["owner"]
    consent = owner.get("consent") if isinstance(owner, dict) else None
    if not isinstance(consent, dict):
        raise SchemaInvalidError("owner.consent is required")
    decoder.check_consent_signature(consent, integrity["public_key"])
    if consent.get("portability") is not True:
        raise ConsentDeniedError("portability")

    try:
        payload = decoder.decode(doc, computed)
    except ValidationError as e:
        raise SchemaInvalidError(
            f"Document content is invalid: {e.error_count()} errors",
            details={"errors": [err["loc"] for err in e.errors()][:20]},
        )

    logger.info(
        "PDX document decoded",
        format_version=payload.format_version,
        document_hash=computed[:16],
        workflow_count=len(payload.vault.workflows),
    )
    return payload


def _parse(document: Union[Dict[str, Any], str, bytes]) -> Dict[str, Any]:
    if isinstance(document, (str, bytes, bytearray)):
        try:
            document = json.loads(document)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise SchemaInvalidError(f"Document is not valid JSON: {e}")
    if not isinstance(document, dict):
        raise SchemaInvalidError("Document must be a JSON object")
    return document


def _iso(value: datetime) -> str:
    return _DATETIME.dump_python(value, mode="json")
