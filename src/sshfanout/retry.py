"""Per-host retry policy ("catch-up" mode)."""

from __future__ import annotations

import asyncio
import contextlib

from sshfanout.cancellation import BatchCancelledError, CancellationToken
from sshfanout.models import ExecutionSettings

__all__ = ["RetryController"]


class RetryController:
    """Decides whether a failed attempt is retried and waits out the delay.

    Attempts are numbered from 1. The delay is fixed: no jitter, no backoff.
    """

    def __init__(self, settings: ExecutionSettings, token: CancellationToken) -> None:
        self._settings = settings
        self._token = token

    @property
    def max_attempts(self) -> int | None:
        """Upper bound on attempts per host, None when retrying without bound."""
        if not self._settings.retry_enabled:
            return 1
        if self._settings.retry_infinite:
            return None
        return self._settings.retry_attempts

    def should_retry(self, attempt: int) -> bool:
        """Return True if a failure on `attempt` should be followed by another attempt."""
        if not self._settings.retry_enabled or self._token.cancelled:
            return False
        return self._settings.retry_infinite or attempt < self._settings.retry_attempts

    async def wait(self) -> None:
        """Sleep for the retry delay, abandoning early on cancellation.

        Raises:
            BatchCancelledError: If the batch was cancelled before or during the wait
        """
        self._token.raise_if_cancelled()
        if self._settings.retry_delay > 0:
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._token.wait(), timeout=self._settings.retry_delay)
        else:
            # Always yield to the loop, even with zero delay
            await asyncio.sleep(0)
        self._token.raise_if_cancelled()
