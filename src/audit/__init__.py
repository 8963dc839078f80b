"""
Pattern Vault Audit & Integrity

"Truth, remembered. Especially when it wounds."

This package holds the two leaf services every mutation depends on:
- Integrity: canonical hashing and Ed25519 signatures for portable documents
- Audit: an append-only, hash-chained, content-free event trail
"""

from .models import AuditEvent, AuditEventKind, Outcome
from .crypto import (
    DocumentSigner,
    Ed25519Signer,
    canonicalize,
    content_hash,
    hash_document,
    verify_hash,
)
from .wal import AuditLog
from .service import AuditLogger

__all__ = [
    "AuditEvent",
    "AuditEventKind",
    "Outcome",
    "DocumentSigner",
    "Ed25519Signer",
    "canonicalize",
    "content_hash",
    "hash_document",
    "verify_hash",
    "AuditLog",
    "AuditLogger",
]
