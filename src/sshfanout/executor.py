"""Remote command execution: one SSH session, one command."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from typing import Any, Protocol

import asyncssh

from sshfanout.credentials import CredentialError, CredentialStore
from sshfanout.models import AuthType, CommandResult, Credentials, Host, HostStatus

__all__ = [
    "AuthError",
    "CommandTimeoutError",
    "ConnectError",
    "SSHSessionExecutor",
    "SessionError",
    "SessionExecutor",
    "StatusCallback",
    "StreamError",
]

StatusCallback = Callable[[HostStatus], None]


class SessionError(Exception):
    """Base class for per-attempt failures. All of them are retryable."""


class ConnectError(SessionError):
    """Host unreachable, connection refused, dropped or timed out while connecting."""


class AuthError(SessionError):
    """Authentication rejected or credentials unusable."""


class CommandTimeoutError(SessionError):
    """The command did not finish within the command timeout."""


class StreamError(SessionError):
    """The session broke after connecting (channel or stream failure)."""


class SessionExecutor(Protocol):
    """Protocol for running one command on one host.

    A non-zero remote exit status is returned as a CommandResult, never raised.
    Implementations must release the session on every exit path.
    """

    async def run(
        self,
        host: Host,
        command: str,
        command_timeout: float,
        on_status: StatusCallback | None = None,
    ) -> CommandResult:
        """Run command on host and wait for completion.

        Raises:
            SessionError: ConnectError, AuthError, CommandTimeoutError or StreamError
        """
        ...


class SSHSessionExecutor:
    """Executes commands over SSH with asyncssh, password or key authentication.

    Host keys are not verified: targets are ad hoc fleets whose keys are not
    in known_hosts.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        connection_timeout: float = 30.0,
        keepalive_interval: float = 10.0,
    ) -> None:
        """Initialize executor.

        Args:
            credentials: Store resolving each host's credential_ref
            connection_timeout: Seconds allowed for TCP connect plus SSH handshake
            keepalive_interval: Seconds between keepalive packets
        """
        self._credentials = credentials
        self._connection_timeout = connection_timeout
        self._keepalive_interval = keepalive_interval

    def _connect_options(self, host: Host, credentials: Credentials) -> dict[str, Any]:
        options: dict[str, Any] = {
            "port": host.port,
            "username": host.username,
            "known_hosts": None,
            "agent_path": None,
            "connect_timeout": self._connection_timeout,
            "keepalive_interval": self._keepalive_interval,
        }
        if credentials.auth_type == AuthType.KEY:
            if not credentials.private_key:
                raise AuthError(f"No private key configured for {host.address}")
            try:
                key = asyncssh.import_private_key(credentials.private_key, credentials.passphrase)
            except asyncssh.KeyImportError as e:
                raise AuthError(f"Cannot load private key for {host.address}: {e}") from e
            options["client_keys"] = [key]
            options["password"] = None
        else:
            if credentials.password is None:
                raise AuthError(f"No password configured for {host.address}")
            options["client_keys"] = ()
            options["password"] = credentials.password
        return options

    async def _connect(self, host: Host) -> asyncssh.SSHClientConnection:
        try:
            credentials = self._credentials.resolve(host)
        except CredentialError as e:
            raise AuthError(str(e)) from e
        options = self._connect_options(host, credentials)
        target = f"{host.address}:{host.port}"
        try:
            return await asyncssh.connect(host.address, **options)
        except TimeoutError as e:
            raise ConnectError(f"Connection to {target} timed out after {self._connection_timeout:g}s") from e
        except asyncssh.PermissionDenied as e:
            raise AuthError(f"Authentication failed for {host.username}@{target}: {e.reason}") from e
        except asyncssh.DisconnectError as e:
            raise ConnectError(f"Connection to {target} closed: {e.reason}") from e
        except asyncssh.Error as e:
            raise ConnectError(f"SSH error connecting to {target}: {e}") from e
        except OSError as e:
            raise ConnectError(f"Cannot connect to {target}: {e.strerror or e}") from e

    async def run(
        self,
        host: Host,
        command: str,
        command_timeout: float,
        on_status: StatusCallback | None = None,
    ) -> CommandResult:
        """Run a command on a remote host and wait for completion.

        Args:
            host: Target host
            command: Shell command to execute
            command_timeout: Seconds allowed for the command itself
            on_status: Called with EXECUTING once the session is authenticated

        Returns:
            CommandResult with exit code, stdout, and stderr
        """
        started = time.monotonic()
        conn = await self._connect(host)
        async with conn:
            if on_status is not None:
                on_status(HostStatus.EXECUTING)
            try:
                completed = await asyncio.wait_for(conn.run(command, check=False), timeout=command_timeout)
            except TimeoutError as e:
                raise CommandTimeoutError(f"Command timed out after {command_timeout:g}s") from e
            except asyncssh.Error as e:
                raise StreamError(f"Session error on {host.address}: {e}") from e
            except OSError as e:
                raise StreamError(f"Connection lost to {host.address}: {e.strerror or e}") from e

        return CommandResult(
            host_id=host.id,
            address=host.address,
            command=command,
            # Killed by a signal: no exit status
            exit_code=completed.exit_status if completed.exit_status is not None else -1,
            stdout=_as_text(completed.stdout).strip(),
            stderr=_as_text(completed.stderr).strip(),
            duration_ms=int((time.monotonic() - started) * 1000),
        )


def _as_text(data: str | bytes | None) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode(errors="replace")
    return str(data)
