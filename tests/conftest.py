"""Pytest configuration for Pattern Vault tests.

This file configures the test environment and handles import paths centrally.
All test files should use this configuration - DO NOT add sys.path manipulations
in individual test files.
"""

import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Centralized sys.path configuration for all tests
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from src.core.config import Config, VaultPaths  # noqa: E402


class FakeClock:
    """Controllable UTC clock."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def temp_dir():
    """Create a temporary directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def vault_paths(temp_dir) -> VaultPaths:
    """On-disk layout rooted in a temporary directory."""
    return VaultPaths.from_root(temp_dir / "vault")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def test_config(temp_dir):
    """Default configuration with fast locking and a temp revoke directory."""
    config = Config.get_defaults()
    config["vault"]["home"] = str(temp_dir / "vault")
    config["vault"]["passphrase"] = None
    config["locking"]["timeout_seconds"] = 0.5
    config["locking"]["poll_interval"] = 0.01
    config["portability"]["revoke_export_dir"] = str(temp_dir / "exports")
    return config


@pytest.fixture
def service(test_config, clock):
    """PatternVaultService over a fresh temporary vault."""
    from src.core.vault_service import PatternVaultService

    return PatternVaultService(config=test_config, clock=clock)
