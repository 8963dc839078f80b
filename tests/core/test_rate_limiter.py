#!/usr/bin/env python3
"""
Test suite for rate_limiter.py - export cooldown and import size cap
"""
from datetime import timedelta

import pytest

from src.core.error_codes import ImportTooLargeError, RateLimitError
from src.core.rate_limiter import ExportRateLimiter, ImportSizeLimiter
from src.dna.models import CommandTemplate, Integration, Matcher, Pattern, Vault


def _vault(workflows=0, templates=0, integrations=0) -> Vault:
    return Vault(
        workflows=[
            Pattern(id=f"wf_{i}", name=f"wf {i}", matcher=Matcher(kind="regex", value=f"v{i}"), confidence=0.5)
            for i in range(workflows)
        ],
        command_templates=[
            CommandTemplate(id=f"t_{i}", name=f"t {i}", pattern="p", expansion="e")
            for i in range(templates)
        ],
        integrations=[Integration(type="mcp", name=f"svc{i}") for i in range(integrations)],
    )


class TestExportRateLimiter:
    """Test suite for ExportRateLimiter"""

    def test_first_export_allowed(self, clock):
        """Test that a vault never exported may export"""
        limiter = ExportRateLimiter(clock=clock)

        limiter.check(None)
        assert limiter.next_allowed(None) is None
        assert limiter.get_wait_time(None) == timedelta(0)

    def test_export_one_hour_later_rejected(self, clock):
        """Test that an export inside the window raises RateLimitError"""
        limiter = ExportRateLimiter(clock=clock)
        last = clock()
        clock.advance(hours=1)

        with pytest.raises(RateLimitError) as exc_info:
            limiter.check(last)

        assert exc_info.value.retry_after == timedelta(hours=23)
        assert exc_info.value.next_allowed == last + timedelta(hours=24)

    def test_export_twenty_five_hours_later_allowed(self, clock):
        """Test that an export after the window succeeds"""
        limiter = ExportRateLimiter(clock=clock)
        last = clock()
        clock.advance(hours=25)

        limiter.check(last)

    def test_window_boundary_is_open(self, clock):
        """Test that exactly one window later is allowed"""
        limiter = ExportRateLimiter(clock=clock)
        last = clock()
        clock.advance(hours=24)

        limiter.check(last)

    def test_custom_window(self, clock):
        """Test a non-default cooldown"""
        limiter = ExportRateLimiter(window=timedelta(minutes=5), clock=clock)
        last = clock()
        clock.advance(minutes=4)

        assert limiter.get_wait_time(last) == timedelta(minutes=1)

    def test_negative_window_rejected(self):
        """Test that a negative window is a programming error"""
        with pytest.raises(ValueError):
            ExportRateLimiter(window=timedelta(hours=-1))


class TestImportSizeLimiter:
    """Test suite for ImportSizeLimiter"""

    def test_counts_all_pattern_like_entries(self):
        """Test that workflows, templates and integrations all count"""
        limiter = ImportSizeLimiter(max_entries=100)

        assert limiter.check(_vault(workflows=3, templates=2, integrations=1)) == 6

    def test_at_limit_allowed(self):
        """Test that exactly the limit passes"""
        limiter = ImportSizeLimiter(max_entries=100)

        assert limiter.check(_vault(workflows=100)) == 100

    def test_over_limit_rejected(self):
        """Test that one more than the limit is rejected"""
        limiter = ImportSizeLimiter(max_entries=100)

        with pytest.raises(ImportTooLargeError) as exc_info:
            limiter.check(_vault(workflows=60, templates=40, integrations=1))

        assert exc_info.value.count == 101
        assert exc_info.value.limit == 100

    def test_invalid_limit(self):
        """Test that a non-positive limit is rejected"""
        with pytest.raises(ValueError):
            ImportSizeLimiter(max_entries=0)
