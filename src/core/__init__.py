"""Core package for the Pattern Vault.

Components:
- Central configuration and on-disk layout
- Standardized error taxonomy
- Portability rate limiting
- The entry-point facade consumed by the orchestration layer
  (import directly: from src.core.vault_service import PatternVaultService)
"""

from .config import Config, ConfigurationError, VaultPaths, get_config, reload_config
from .error_codes import ErrorCode, VaultError

__all__ = [
    "Config",
    "ConfigurationError",
    "VaultPaths",
    "get_config",
    "reload_config",
    "ErrorCode",
    "VaultError",
]
