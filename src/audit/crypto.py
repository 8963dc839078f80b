"""
Integrity Service

Canonical hashing and Ed25519 signatures for portable documents:
- Canonical JSON (sorted keys, compact separators, UTF-8) so a hash is stable
  across machines for identical logical content
- SHA-256 digests
- Ed25519 signing with a locally held key; verification needs only the
  public key embedded in the document

"Keys are the system's memory of choice.
 Store them where no one person can rewrite history alone."
"""

import base64
import binascii
import copy
import hashlib
import json
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from loguru import logger

from ..core.error_codes import VaultLockedError

HASH_ALGORITHM = "sha256"
SIGNATURE_ALGORITHM = "ed25519"
INTEGRITY_ALGORITHM = f"{HASH_ALGORITHM}+{SIGNATURE_ALGORITHM}"

# Lowercase hex SHA-256 digest
SHA256_HEX_PATTERN = r"^[0-9a-f]{64}$"

# Fields never covered by the document hash (they are derived from it)
SELF_REFERENTIAL_FIELDS = ("hash", "signature")


def canonicalize(doc: Dict[str, Any]) -> bytes:
    """
    Deterministic byte form of a document.

    metadata.integrity.hash and metadata.integrity.signature are removed
    before serializing. Keys are sorted recursively by json.dumps.
    """
    data = copy.deepcopy(doc)
    integrity = data.get("metadata", {}).get("integrity") if isinstance(data, dict) else None
    if isinstance(integrity, dict):
        for field in SELF_REFERENTIAL_FIELDS:
            integrity.pop(field, None)

    return json.dumps(
        data,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    ).encode("utf-8")


def content_hash(data: Union[str, bytes]) -> str:
    """SHA-256 hex digest of raw content."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def hash_document(doc: Dict[str, Any]) -> str:
    """SHA-256 hex digest of a document's canonical form."""
    return content_hash(canonicalize(doc))


def verify_signature(data: bytes, signature_b64: str, public_key_b64: str) -> bool:
    """
    Verify an Ed25519 signature with a base64 raw public key.

    Malformed input is a failed verification, not an exception.
    """
    try:
        signature = base64.b64decode(signature_b64, validate=True)
        public_key = Ed25519PublicKey.from_public_bytes(
            base64.b64decode(public_key_b64, validate=True)
        )
        public_key.verify(signature, data)
        return True
    except InvalidSignature:
        logger.warning("Signature verification FAILED")
        return False
    except (binascii.Error, ValueError, TypeError) as e:
        logger.warning(f"Signature verification error: {e}")
        return False


def verify_hash(hash_hex: str, signature_b64: str, public_key_b64: str) -> bool:
    """Verify a signature over a hex-encoded digest."""
    try:
        hash_bytes = bytes.fromhex(hash_hex)
    except (ValueError, TypeError):
        return False
    return verify_signature(hash_bytes, signature_b64, public_key_b64)


class SignerBackend(ABC):
    """Abstract base for signing backends."""

    @abstractmethod
    def sign(self, data: bytes) -> bytes:
        """Sign data, return the raw signature."""
        pass

    @abstractmethod
    def public_key_bytes(self) -> bytes:
        """Raw public key matching the signing key."""
        pass


class Ed25519Signer(SignerBackend):
    """
    Local Ed25519 signer.

    The private key is a PKCS#8 PEM file readable only by the owner (0600),
    encrypted with the vault passphrase when one is configured.
    """

    def __init__(self, private_key: Ed25519PrivateKey):
        self._private_key = private_key

    @classmethod
    def generate(cls) -> "Ed25519Signer":
        return cls(Ed25519PrivateKey.generate())

    @classmethod
    def load_or_create(
        cls,
        key_path: Union[str, Path],
        passphrase: Optional[str] = None,
        create: bool = True,
    ) -> "Ed25519Signer":
        """Load the signing key, generating it on first use."""
        key_path = Path(key_path)
        password = passphrase.encode() if passphrase else None

        if key_path.exists():
            try:
                private_key = serialization.load_pem_private_key(
                    key_path.read_bytes(), password=password
                )
            except (OSError, ValueError, TypeError) as e:
                raise VaultLockedError(f"Signing key unusable: {e}")
            if not isinstance(private_key, Ed25519PrivateKey):
                raise VaultLockedError("Signing key is not an Ed25519 key")
            return cls(private_key)

        if not create:
            raise VaultLockedError(f"No signing key at {key_path}")

        signer = cls.generate()
        encryption = (
            serialization.BestAvailableEncryption(password)
            if password
            else serialization.NoEncryption()
        )
        pem = signer._private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=encryption,
        )
        try:
            key_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
            with open(key_path, "wb", opener=lambda p, f: os.open(p, f, mode=0o600)) as f:
                f.write(pem)
        except OSError as e:
            raise VaultLockedError(f"Cannot create signing key: {e}")

        logger.info("Signing key generated", key_path=str(key_path))
        return signer

    def sign(self, data: bytes) -> bytes:
        return self._private_key.sign(data)

    def public_key_bytes(self) -> bytes:
        return self._private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )


class DocumentSigner:
    """
    Main signing interface for exported documents.

    Usage:
        signer = DocumentSigner(Ed25519Signer.load_or_create(paths.signing_key))
        signature, public_key = signer.sign_hash(document_hash)
        is_valid = verify_hash(document_hash, signature, public_key)
    """

    def __init__(self, backend: SignerBackend):
        self._backend = backend

    @property
    def public_key_b64(self) -> str:
        return base64.b64encode(self._backend.public_key_bytes()).decode()

    def sign(self, data: bytes) -> Tuple[str, str]:
        """
        Sign data and return (base64_signature, base64_public_key).

        The signature is over the raw bytes (typically a digest).
        """
        signature_bytes = self._backend.sign(data)
        return base64.b64encode(signature_bytes).decode(), self.public_key_b64

    def sign_hash(self, hash_hex: str) -> Tuple[str, str]:
        """Sign a hex-encoded document hash."""
        return self.sign(bytes.fromhex(hash_hex))
