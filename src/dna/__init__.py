"""Pattern DNA: the vault data model and import conflict resolution."""

from .models import (
    CommandTemplate,
    ContextMemoryEntry,
    Integration,
    Matcher,
    MatcherKind,
    OwnerConsent,
    OwnerLicense,
    Pattern,
    Vault,
)
from .resolver import ConflictMode, ConflictResolver, ImportSummary

__all__ = [
    "CommandTemplate",
    "ContextMemoryEntry",
    "Integration",
    "Matcher",
    "MatcherKind",
    "OwnerConsent",
    "OwnerLicense",
    "Pattern",
    "Vault",
    "ConflictMode",
    "ConflictResolver",
    "ImportSummary",
]
