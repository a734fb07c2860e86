"""Core types and dataclasses for ssh-fanout."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

__all__ = [
    "AuthType",
    "BatchSummary",
    "CommandResult",
    "Credentials",
    "ExecutionSettings",
    "Host",
    "HostRunState",
    "HostStatus",
]


class HostStatus(StrEnum):
    """Lifecycle status of one host within a batch."""

    IDLE = "idle"
    CONNECTING = "connecting"
    EXECUTING = "executing"
    RETRYING = "retrying"
    SUCCESS = "success"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (HostStatus.SUCCESS, HostStatus.ERROR, HostStatus.CANCELLED)


class AuthType(StrEnum):
    """How a session authenticates against the remote host."""

    PASSWORD = "password"
    KEY = "key"


@dataclass(frozen=True)
class Host:
    """Identity of a remote machine. Owned by the caller, read-only for a batch."""

    id: str
    address: str
    username: str
    port: int = 22
    credential_ref: str | None = None  # Name in the CredentialStore
    name: str | None = None  # Display label

    @property
    def label(self) -> str:
        return self.name or self.address

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "address": self.address,
            "port": self.port,
            "username": self.username,
            "credential_ref": self.credential_ref,
            "name": self.name,
        }


@dataclass(frozen=True)
class Credentials:
    """Secret material resolved for a host.

    Secrets are excluded from repr so they never end up in logs or tracebacks.
    """

    auth_type: AuthType
    password: str | None = field(default=None, repr=False)
    private_key: str | None = field(default=None, repr=False)  # PEM/OpenSSH text
    passphrase: str | None = field(default=None, repr=False)


@dataclass(frozen=True)
class ExecutionSettings:
    """Per-batch execution policy. Durations are in seconds.

    When retry_infinite is set, retry_attempts is not used as a bound.
    """

    connection_timeout: float = 30.0
    command_timeout: float = 60.0
    max_concurrent: int = 30
    retry_enabled: bool = True
    retry_attempts: int = 3
    retry_delay: float = 5.0
    retry_infinite: bool = False

    def __post_init__(self) -> None:
        if self.max_concurrent < 1:
            raise ValueError(f"max_concurrent must be >= 1, got {self.max_concurrent}")
        if self.retry_attempts < 1:
            raise ValueError(f"retry_attempts must be >= 1, got {self.retry_attempts}")
        if self.retry_delay < 0:
            raise ValueError(f"retry_delay must be >= 0, got {self.retry_delay}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "connection_timeout": self.connection_timeout,
            "command_timeout": self.command_timeout,
            "max_concurrent": self.max_concurrent,
            "retry_enabled": self.retry_enabled,
            "retry_attempts": self.retry_attempts,
            "retry_delay": self.retry_delay,
            "retry_infinite": self.retry_infinite,
        }


@dataclass(frozen=True)
class CommandResult:
    """Outcome of one completed remote command.

    A non-zero exit code is still a completed dispatch, just not a successful one.
    """

    host_id: str
    address: str
    command: str
    exit_code: int
    stdout: str
    stderr: str
    duration_ms: int
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict for JSON serialization."""
        return {
            "host_id": self.host_id,
            "address": self.address,
            "command": self.command,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "exit_code": self.exit_code,
            "duration_ms": self.duration_ms,
            "timestamp": self.timestamp.isoformat(),
            "success": self.success,
        }


@dataclass
class HostRunState:
    """Transient per-host state for one batch."""

    host: Host
    status: HostStatus = HostStatus.IDLE
    attempt: int = 0
    last_error: str | None = None
    result: CommandResult | None = None


@dataclass(frozen=True)
class BatchSummary:
    """Final aggregate for a batch, carried by the complete event."""

    total: int
    completed: int
    success: int
    error: int
    skipped: int
    cancelled: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "completed": self.completed,
            "success": self.success,
            "error": self.error,
            "skipped": self.skipped,
            "cancelled": self.cancelled,
        }
