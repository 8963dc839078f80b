#!/usr/bin/env python3
"""
Rate limiting for the portability entry points.

Export uses a cooldown window anchored to the last *successful* export, so a
failed export never burns the window. Import is limited by size instead of
time: one document may introduce only a bounded number of entries.
"""

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from loguru import logger

from .error_codes import ImportTooLargeError, RateLimitError


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExportRateLimiter:
    """One successful export per rolling window per vault."""

    def __init__(
        self,
        window: timedelta = timedelta(hours=24),
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """Initialize export limiter.

        Args:
            window: Cooldown after a successful export
            clock: Returns the current UTC time (injectable for tests)
        """
        if window < timedelta(0):
            raise ValueError("Rate limit window cannot be negative")
        self.window = window
        self._clock = clock or _utcnow

    def next_allowed(self, last_export_at: Optional[datetime]) -> Optional[datetime]:
        """Earliest time the next export may run, or None if never exported."""
        if last_export_at is None:
            return None
        return last_export_at + self.window

    def get_wait_time(self, last_export_at: Optional[datetime]) -> timedelta:
        """Time to wait before an export is allowed.

        Returns:
            Zero when an export may proceed now
        """
        next_allowed = self.next_allowed(last_export_at)
        if next_allowed is None:
            return timedelta(0)
        return max(timedelta(0), next_allowed - self._clock())

    def check(self, last_export_at: Optional[datetime]) -> None:
        """Raise RateLimitError if the window since the last export is still open."""
        wait = self.get_wait_time(last_export_at)
        if wait > timedelta(0):
            logger.info("Export rate limited", retry_after_seconds=int(wait.total_seconds()))
            raise RateLimitError(retry_after=wait, next_allowed=self.next_allowed(last_export_at))


class ImportSizeLimiter:
    """Caps the number of pattern-like entries a single import may carry."""

    def __init__(self, max_entries: int = 100):
        if max_entries < 1:
            raise ValueError("max_entries must be positive")
        self.max_entries = max_entries

    def check(self, incoming) -> int:
        """Count incoming workflows, templates and integrations; raise if over the cap."""
        count = (
            len(incoming.workflows)
            + len(incoming.command_templates)
            + len(incoming.integrations)
        )
        if count > self.max_entries:
            logger.info("Import rejected by size cap", count=count, limit=self.max_entries)
            raise ImportTooLargeError(count=count, limit=self.max_entries)
        return count
