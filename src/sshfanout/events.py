"""Progress events for a batch and the bus that carries them to consumers."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, ClassVar

from sshfanout.models import BatchSummary, CommandResult, HostStatus

__all__ = [
    "CancelledEvent",
    "CompleteEvent",
    "ErrorEvent",
    "Event",
    "EventBus",
    "ResultEvent",
    "StartEvent",
    "StatusEvent",
    "format_sse",
]


def _now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class StartEvent:
    """First event of every batch."""

    name: ClassVar[str] = "start"

    execution_id: str
    total: int
    timestamp: datetime = field(default_factory=_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "total": self.total,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class StatusEvent:
    """Non-terminal status change for one host (connecting, executing, retrying)."""

    name: ClassVar[str] = "status"

    host_id: str
    address: str
    status: HostStatus
    attempt: int
    message: str | None = None
    error: str | None = None  # Sanitized, set when retrying
    max_attempts: int | None = None  # None when retrying without bound
    timestamp: datetime = field(default_factory=_now)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "host_id": self.host_id,
            "address": self.address,
            "status": self.status.value,
            "attempt": self.attempt,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.message is not None:
            data["message"] = self.message
        if self.status is HostStatus.RETRYING:
            data["error"] = self.error
            data["max_attempts"] = self.max_attempts
        return data


@dataclass(frozen=True)
class ResultEvent:
    """Terminal: the command ran to completion on a host (any exit code)."""

    name: ClassVar[str] = "result"

    host_id: str
    result: CommandResult
    attempt: int
    progress: dict[str, int]
    timestamp: datetime = field(default_factory=_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "host_id": self.host_id,
            "result": self.result.to_dict(),
            "attempt": self.attempt,
            "progress": self.progress,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class ErrorEvent:
    """Terminal: a host failed and will not be retried."""

    name: ClassVar[str] = "error"

    host_id: str
    address: str
    error: str  # Sanitized
    attempt: int
    progress: dict[str, int]
    timestamp: datetime = field(default_factory=_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "host_id": self.host_id,
            "address": self.address,
            "error": self.error,
            "attempt": self.attempt,
            "progress": self.progress,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class CancelledEvent:
    """Cancellation notice.

    With host_id=None this is the batch-level notice, emitted once when the
    cancellation signal fires. With a host_id it is that host's terminal event.
    """

    name: ClassVar[str] = "cancelled"

    execution_id: str
    host_id: str | None = None
    address: str | None = None
    attempt: int = 0
    reason: str | None = None
    progress: dict[str, int] | None = None
    timestamp: datetime = field(default_factory=_now)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "execution_id": self.execution_id,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.host_id is not None:
            data.update(host_id=self.host_id, address=self.address, attempt=self.attempt, progress=self.progress)
        if self.reason is not None:
            data["reason"] = self.reason
        return data


@dataclass(frozen=True)
class CompleteEvent:
    """Last event of every batch, emitted after every chain has settled."""

    name: ClassVar[str] = "complete"

    execution_id: str
    summary: BatchSummary
    timestamp: datetime = field(default_factory=_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "summary": self.summary.to_dict(),
            "timestamp": self.timestamp.isoformat(),
        }


type Event = StartEvent | StatusEvent | ResultEvent | ErrorEvent | CancelledEvent | CompleteEvent


def format_sse(event: Event) -> str:
    """Frame an event for a text/event-stream response."""
    return f"event: {event.name}\ndata: {json.dumps(event.to_dict(), default=str)}\n\n"


class EventBus:
    """Pub/sub event bus with per-consumer queues.

    Supports fan-out to multiple consumers. Each consumer gets its own queue
    to prevent blocking between consumers. Publishing only happens on the
    event loop, so events from concurrent chains land in one total order.
    """

    def __init__(self) -> None:
        self._consumers: list[asyncio.Queue[Event | None]] = []
        self._history: list[Event] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def history(self) -> list[Event]:
        """Every event published so far, in order."""
        return list(self._history)

    def subscribe(self) -> asyncio.Queue[Event | None]:
        """Create and return a new consumer queue.

        The queue will receive all events published after subscription.
        When the EventBus is closed, a None sentinel is sent to signal shutdown.
        """
        queue: asyncio.Queue[Event | None] = asyncio.Queue()
        self._consumers.append(queue)
        return queue

    def publish(self, event: Event) -> None:
        """Publish event to all consumer queues (non-blocking).

        Events are dropped silently if the bus is closed.
        """
        if self._closed:
            return
        self._history.append(event)
        for queue in self._consumers:
            queue.put_nowait(event)

    def close(self) -> None:
        """Signal consumers to drain and exit.

        Sends None sentinel to all consumer queues. Further publish() calls
        are silently ignored.
        """
        if self._closed:
            return
        self._closed = True
        for queue in self._consumers:
            queue.put_nowait(None)  # Sentinel value
