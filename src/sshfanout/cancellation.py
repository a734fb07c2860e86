"""Batch cancellation signal and the registry used to look batches up by id."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from sshfanout.logger import get_logger

if TYPE_CHECKING:
    from sshfanout.context import ExecutionContext

__all__ = [
    "BatchCancelledError",
    "CancellationToken",
    "ExecutionRegistry",
]

logger = get_logger(__name__)


class BatchCancelledError(Exception):
    """Raised inside an attempt chain when its batch was cancelled.

    Terminal for the chain: never retried.
    """


class CancellationToken:
    """Settable-once cancellation signal shared by everything in one batch."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "cancel requested") -> bool:
        """Set the signal.

        Returns:
            True if this call cancelled the batch, False if it was already cancelled.
        """
        if self._event.is_set():
            return False
        self._reason = reason
        self._event.set()
        return True

    async def wait(self) -> None:
        """Block until the token is cancelled."""
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise BatchCancelledError(self._reason or "cancelled")


class ExecutionRegistry:
    """Process-wide map of active batches, keyed by execution id.

    Lifecycle: register on submit, release when the batch resolves.
    """

    def __init__(self) -> None:
        self._active: dict[str, ExecutionContext] = {}

    def __contains__(self, execution_id: str) -> bool:
        return execution_id in self._active

    def __len__(self) -> int:
        return len(self._active)

    def register(self, context: ExecutionContext) -> None:
        if context.execution_id in self._active:
            raise ValueError(f"Execution already registered: {context.execution_id}")
        self._active[context.execution_id] = context

    def get(self, execution_id: str) -> ExecutionContext | None:
        return self._active.get(execution_id)

    def cancel(self, execution_id: str, reason: str = "cancel requested") -> bool:
        """Signal cancellation for an active batch.

        Idempotent while the batch is active: repeated calls return True and
        have no further effect.

        Returns:
            True if an active batch was found, False otherwise.
        """
        context = self._active.get(execution_id)
        if context is None:
            return False
        if context.token.cancel(reason):
            logger.info("Batch cancellation requested", execution_id=execution_id, reason=reason)
        return True

    def release(self, execution_id: str) -> None:
        self._active.pop(execution_id, None)

    def active_ids(self) -> list[str]:
        return list(self._active)
