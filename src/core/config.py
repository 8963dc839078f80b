#!/usr/bin/env python3
"""
Central configuration module for the Pattern Vault.
Provides consistent configuration values across all components.
"""

import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from loguru import logger


class Config:
    """Central configuration management for the Pattern Vault."""

    # Storage location
    VAULT_HOME = os.getenv("PATTERN_VAULT_HOME", str(Path.home() / ".pattern-vault"))
    VAULT_PASSPHRASE = os.getenv("PATTERN_VAULT_PASSPHRASE")

    # Snapshot retention (strict FIFO)
    SNAPSHOT_RETENTION = 30

    # Portability policy
    EXPORT_COOLDOWN_HOURS = 24
    IMPORT_MAX_ENTRIES = 100

    # Locking
    LOCK_TIMEOUT_SECONDS = 10.0
    LOCK_POLL_INTERVAL = 0.05

    # Key derivation (only used when a passphrase is configured)
    KDF_ITERATIONS = 390000

    # PDX identity
    PDX_CONTEXT = "https://foundation.chitty.cc/pdx/v2"
    PDX_TYPE = "ChittyDNA"
    PDX_VERSION = "2.0.0"
    PDX_SCHEMA_URL = "https://foundation.chitty.cc/pdx/v2/schema.json"
    EXPORT_TOOL_NAME = "pattern-vault"
    EXPORT_TOOL_VERSION = "0.1.0"
    EXPORT_TOOL_URL = "https://foundation.chitty.cc/tools/pattern-vault"

    # Owner defaults
    OWNER_IDENTITY = os.getenv("PATTERN_VAULT_OWNER", "local-owner")
    LICENSE_TYPE = "CDCL-1.0"
    LICENSE_GRANT = "revocable"
    LICENSE_SCOPE = ["personal"]

    # Revoke writes the final export here
    REVOKE_EXPORT_DIR = os.getenv("PATTERN_VAULT_EXPORT_DIR", str(Path.home()))

    # Logging configuration
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    LOG_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level} | {name} | {message}"

    @classmethod
    def load_from_file(cls, config_path: Optional[str] = None) -> Dict[str, Any]:
        """Load configuration from YAML file.

        Args:
            config_path: Path to configuration file. Defaults to .pattern-vault.yaml

        Returns:
            Configuration dictionary
        """
        if config_path is None:
            config_path = os.getenv("PATTERN_VAULT_CONFIG", ".pattern-vault.yaml")

        config_file = Path(config_path)
        if not config_file.exists():
            # Return default configuration
            return cls.get_defaults()

        try:
            with open(config_file, "r") as f:
                config = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Failed to load configuration: {e}")

        if not isinstance(config, dict):
            raise ConfigurationError(f"Configuration root must be a mapping: {config_path}")

        merged = cls._deep_merge(cls.get_defaults(), config)
        cls.validate_configuration(merged)
        return merged

    @classmethod
    def get_defaults(cls) -> Dict[str, Any]:
        """Get default configuration values.

        Returns:
            Default configuration dictionary
        """
        return {
            "vault": {
                "home": cls.VAULT_HOME,
                "passphrase": cls.VAULT_PASSPHRASE,
                "kdf_iterations": cls.KDF_ITERATIONS,
            },
            "snapshots": {
                "retention": cls.SNAPSHOT_RETENTION,
            },
            "portability": {
                "export_cooldown_hours": cls.EXPORT_COOLDOWN_HOURS,
                "import_max_entries": cls.IMPORT_MAX_ENTRIES,
                "revoke_export_dir": cls.REVOKE_EXPORT_DIR,
            },
            "locking": {
                "timeout_seconds": cls.LOCK_TIMEOUT_SECONDS,
                "poll_interval": cls.LOCK_POLL_INTERVAL,
            },
            "owner": {
                "identity": cls.OWNER_IDENTITY,
                "license": {
                    "type": cls.LICENSE_TYPE,
                    "grant": cls.LICENSE_GRANT,
                    "scope": list(cls.LICENSE_SCOPE),
                },
            },
            "export_tool": {
                "name": cls.EXPORT_TOOL_NAME,
                "version": cls.EXPORT_TOOL_VERSION,
                "url": cls.EXPORT_TOOL_URL,
            },
            "logging": {
                "level": cls.LOG_LEVEL,
                "format": cls.LOG_FORMAT,
            },
        }

    @staticmethod
    def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge two dictionaries.

        Args:
            base: Base dictionary
            override: Override dictionary

        Returns:
            Merged dictionary
        """
        result = base.copy()
        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = Config._deep_merge(result[key], value)
            else:
                result[key] = value
        return result

    @classmethod
    def validate_configuration(cls, config: Dict[str, Any]) -> bool:
        """Validate configuration values.

        Args:
            config: Configuration dictionary to validate

        Returns:
            True if valid

        Raises:
            ConfigurationError: If configuration is invalid
        """
        retention = config.get("snapshots", {}).get("retention")
        if retention is not None and (not isinstance(retention, int) or retention < 1):
            raise ConfigurationError(f"Invalid snapshot retention: {retention}")

        portability = config.get("portability", {})
        cooldown = portability.get("export_cooldown_hours")
        if cooldown is not None and (not isinstance(cooldown, (int, float)) or cooldown < 0):
            raise ConfigurationError(f"Invalid export cooldown: {cooldown}")

        max_entries = portability.get("import_max_entries")
        if max_entries is not None and (not isinstance(max_entries, int) or max_entries < 1):
            raise ConfigurationError(f"Invalid import entry limit: {max_entries}")

        locking = config.get("locking", {})
        timeout = locking.get("timeout_seconds")
        poll = locking.get("poll_interval")
        if timeout is not None and (not isinstance(timeout, (int, float)) or timeout <= 0):
            raise ConfigurationError(f"Invalid lock timeout: {timeout}")
        if poll is not None and (not isinstance(poll, (int, float)) or poll <= 0):
            raise ConfigurationError(f"Invalid lock poll interval: {poll}")
        if timeout is not None and poll is not None and poll > timeout:
            raise ConfigurationError("Lock poll interval cannot exceed lock timeout")

        return True


class ConfigurationError(Exception):
    """Raised when configuration is invalid."""

    pass


@dataclass(frozen=True)
class VaultPaths:
    """On-disk layout of one vault installation."""

    root: Path
    vault_file: Path
    lock_file: Path
    keys_dir: Path
    master_key: Path
    signing_key: Path
    kdf_salt: Path
    snapshots_dir: Path
    manifest_file: Path
    meta_file: Path
    audit_dir: Path

    @classmethod
    def from_root(cls, root) -> "VaultPaths":
        root = Path(root).expanduser()
        keys_dir = root / "keys"
        return cls(
            root=root,
            vault_file=root / "vault.enc",
            lock_file=root / "vault.lock",
            keys_dir=keys_dir,
            master_key=keys_dir / "master.key",
            signing_key=keys_dir / "signing_key.pem",
            kdf_salt=keys_dir / "kdf.salt",
            snapshots_dir=root / "snapshots",
            manifest_file=root / "manifest.json",
            meta_file=root / "vault_meta.json",
            audit_dir=root / "audit",
        )


def configure_logging(level: Optional[str] = None, fmt: Optional[str] = None) -> None:
    """Install a single stderr sink at the configured level."""
    logger.remove()
    logger.add(sys.stderr, level=level or Config.LOG_LEVEL, format=fmt or Config.LOG_FORMAT)


# Singleton instance
_config_instance: Optional[Dict[str, Any]] = None


def get_config() -> Dict[str, Any]:
    """Get the global configuration instance.

    Returns:
        Configuration dictionary
    """
    global _config_instance
    if _config_instance is None:
        _config_instance = Config.load_from_file()
    return _config_instance


def reload_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """Reload configuration from file.

    Args:
        config_path: Optional path to configuration file

    Returns:
        New configuration dictionary
    """
    global _config_instance
    _config_instance = Config.load_from_file(config_path)
    return _config_instance
