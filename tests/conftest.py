"""Shared test fixtures for ssh-fanout tests."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Callable, Iterable
from unittest.mock import AsyncMock, MagicMock

import pytest

from sshfanout.events import EventBus
from sshfanout.executor import StatusCallback
from sshfanout.models import CommandResult, ExecutionSettings, Host, HostStatus

# Scripted outcome of one attempt: an exit code, or the exception to raise
type Outcome = int | BaseException


@pytest.fixture(scope="session", autouse=True)
def configure_test_logging() -> None:
    """Keep library logs quiet while test module logs stay visible."""
    logging.getLogger().setLevel(logging.WARNING)
    logging.getLogger("sshfanout").setLevel(logging.DEBUG)
    logging.getLogger("tests").setLevel(logging.DEBUG)


class ScriptedExecutor:
    """SessionExecutor double that plays back per-host outcomes.

    Each call pops the next outcome for the host; once a script runs out the
    default applies. Tracks calls and peak concurrency. When a gate is given,
    every session blocks on it after reporting EXECUTING.
    """

    def __init__(
        self,
        scripts: dict[str, Iterable[Outcome]] | None = None,
        default: Outcome = 0,
        delay: float = 0.0,
        gate: asyncio.Event | None = None,
    ) -> None:
        self._scripts = {host_id: list(outcomes) for host_id, outcomes in (scripts or {}).items()}
        self._default = default
        self._delay = delay
        self.gate = gate
        self.calls: list[str] = []
        self.calls_per_host: dict[str, int] = defaultdict(int)
        self.active = 0
        self.peak = 0

    async def run(
        self,
        host: Host,
        command: str,
        command_timeout: float,
        on_status: StatusCallback | None = None,
    ) -> CommandResult:
        self.calls.append(host.id)
        self.calls_per_host[host.id] += 1
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            if on_status is not None:
                on_status(HostStatus.EXECUTING)
            if self.gate is not None:
                await self.gate.wait()
            await asyncio.sleep(self._delay)
            script = self._scripts.get(host.id)
            outcome = script.pop(0) if script else self._default
            if isinstance(outcome, BaseException):
                raise outcome
            return CommandResult(
                host_id=host.id,
                address=host.address,
                command=command,
                exit_code=outcome,
                stdout=f"out-{host.id}",
                stderr="" if outcome == 0 else f"err-{host.id}",
                duration_ms=1,
            )
        finally:
            self.active -= 1


@pytest.fixture
def make_hosts() -> Callable[..., list[Host]]:
    """Factory for hosts with ids a, b, c... (or 1, 2, 3... past 26)."""

    def factory(count: int = 3) -> list[Host]:
        ids = [chr(ord("a") + i) for i in range(count)] if count <= 26 else [str(i + 1) for i in range(count)]
        return [
            Host(id=host_id, address=f"10.0.0.{i + 1}", username="deploy")
            for i, host_id in enumerate(ids)
        ]

    return factory


@pytest.fixture
def hosts(make_hosts: Callable[..., list[Host]]) -> list[Host]:
    return make_hosts(3)


@pytest.fixture
def fast_settings() -> ExecutionSettings:
    """Default settings with no retry delay."""
    return ExecutionSettings(retry_delay=0)


@pytest.fixture
def sample_command_result() -> CommandResult:
    """Create a sample successful command result."""
    return CommandResult(
        host_id="a",
        address="10.0.0.1",
        command="uptime",
        exit_code=0,
        stdout="up 3 days",
        stderr="",
        duration_ms=42,
    )


@pytest.fixture
def mock_connection() -> MagicMock:
    """Create a mock asyncssh connection usable as an async context manager."""
    conn = MagicMock()
    conn.run = AsyncMock(return_value=MagicMock(exit_status=0, stdout="output\n", stderr=""))
    conn.__aenter__ = AsyncMock(return_value=conn)
    conn.__aexit__ = AsyncMock(return_value=None)
    return conn


@pytest.fixture
def mock_event_bus() -> MagicMock:
    """Create a mock EventBus for testing."""
    event_bus = MagicMock(spec=EventBus)
    event_bus.subscribe = MagicMock(return_value=MagicMock())
    event_bus.publish = MagicMock()
    event_bus.close = MagicMock()
    return event_bus


@pytest.fixture
def make_executor() -> Callable[..., ScriptedExecutor]:
    """Factory for ScriptedExecutor instances."""
    return ScriptedExecutor
