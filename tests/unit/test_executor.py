"""Tests for SSHSessionExecutor error mapping and result handling.

asyncssh.connect is patched; no network access is needed.
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import asyncssh
import pytest

from sshfanout.credentials import StaticCredentialStore
from sshfanout.executor import (
    AuthError,
    CommandTimeoutError,
    ConnectError,
    SSHSessionExecutor,
    StreamError,
)
from sshfanout.models import AuthType, Credentials, Host, HostStatus


@pytest.fixture
def host() -> Host:
    return Host(id="web-1", address="10.0.0.5", username="deploy", port=2222)


@pytest.fixture
def store() -> StaticCredentialStore:
    return StaticCredentialStore({"default": Credentials(auth_type=AuthType.PASSWORD, password="hunter2")})


@pytest.fixture
def executor(store: StaticCredentialStore) -> SSHSessionExecutor:
    return SSHSessionExecutor(store, connection_timeout=7)


async def test_successful_run(executor: SSHSessionExecutor, host: Host, mock_connection: MagicMock) -> None:
    statuses: list[HostStatus] = []
    with patch("sshfanout.executor.asyncssh.connect", AsyncMock(return_value=mock_connection)) as connect:
        result = await executor.run(host, "uptime", 60, statuses.append)

    assert result.exit_code == 0
    assert result.stdout == "output"
    assert result.host_id == "web-1"
    assert result.address == "10.0.0.5"
    assert result.duration_ms >= 0
    assert statuses == [HostStatus.EXECUTING]
    mock_connection.run.assert_awaited_once_with("uptime", check=False)
    mock_connection.__aexit__.assert_awaited_once()

    kwargs = connect.call_args.kwargs
    assert connect.call_args.args == ("10.0.0.5",)
    assert kwargs["port"] == 2222
    assert kwargs["username"] == "deploy"
    assert kwargs["password"] == "hunter2"
    assert kwargs["client_keys"] == ()
    assert kwargs["known_hosts"] is None
    assert kwargs["connect_timeout"] == 7


async def test_nonzero_exit_is_returned(executor: SSHSessionExecutor, host: Host, mock_connection: MagicMock) -> None:
    mock_connection.run.return_value = MagicMock(exit_status=3, stdout="", stderr="not found\n")
    with patch("sshfanout.executor.asyncssh.connect", AsyncMock(return_value=mock_connection)):
        result = await executor.run(host, "ls /missing", 60)

    assert result.exit_code == 3
    assert result.stderr == "not found"
    assert not result.success


async def test_missing_exit_status_maps_to_minus_one(
    executor: SSHSessionExecutor, host: Host, mock_connection: MagicMock
) -> None:
    mock_connection.run.return_value = MagicMock(exit_status=None, stdout=b"partial\xff", stderr=None)
    with patch("sshfanout.executor.asyncssh.connect", AsyncMock(return_value=mock_connection)):
        result = await executor.run(host, "sleep 100", 60)

    assert result.exit_code == -1
    assert result.stdout == "partial\ufffd"
    assert result.stderr == ""


@pytest.mark.parametrize(
    ("raised", "expected"),
    [
        (TimeoutError(), ConnectError),
        (OSError(111, "Connection refused"), ConnectError),
        (asyncssh.PermissionDenied("denied"), AuthError),
        (asyncssh.ConnectionLost("reset"), ConnectError),
    ],
)
async def test_connect_errors_are_mapped(
    executor: SSHSessionExecutor, host: Host, raised: Exception, expected: type[Exception]
) -> None:
    with (
        patch("sshfanout.executor.asyncssh.connect", AsyncMock(side_effect=raised)),
        pytest.raises(expected),
    ):
        await executor.run(host, "uptime", 60)


async def test_connect_timeout_message(executor: SSHSessionExecutor, host: Host) -> None:
    with (
        patch("sshfanout.executor.asyncssh.connect", AsyncMock(side_effect=TimeoutError())),
        pytest.raises(ConnectError, match=r"10\.0\.0\.5:2222 timed out after 7s"),
    ):
        await executor.run(host, "uptime", 60)


async def test_command_timeout(executor: SSHSessionExecutor, host: Host, mock_connection: MagicMock) -> None:
    async def hang(*args: object, **kwargs: object) -> None:
        await asyncio.sleep(10)

    mock_connection.run = AsyncMock(side_effect=hang)
    with (
        patch("sshfanout.executor.asyncssh.connect", AsyncMock(return_value=mock_connection)),
        pytest.raises(CommandTimeoutError, match="timed out after 0.05s"),
    ):
        await executor.run(host, "sleep 100", 0.05)

    mock_connection.__aexit__.assert_awaited_once()


async def test_stream_failure(executor: SSHSessionExecutor, host: Host, mock_connection: MagicMock) -> None:
    mock_connection.run = AsyncMock(side_effect=asyncssh.ChannelOpenError(2, "open failed"))
    with (
        patch("sshfanout.executor.asyncssh.connect", AsyncMock(return_value=mock_connection)),
        pytest.raises(StreamError),
    ):
        await executor.run(host, "uptime", 60)

    mock_connection.__aexit__.assert_awaited_once()


async def test_unknown_credential_ref_is_auth_error(store: StaticCredentialStore) -> None:
    executor = SSHSessionExecutor(store)
    host = Host(id="x", address="10.0.0.9", username="root", credential_ref="missing")

    with (
        patch("sshfanout.executor.asyncssh.connect", AsyncMock()) as connect,
        pytest.raises(AuthError, match="missing"),
    ):
        await executor.run(host, "uptime", 60)
    connect.assert_not_called()


async def test_key_auth(host: Host, mock_connection: MagicMock) -> None:
    key = MagicMock()
    store = StaticCredentialStore(
        {"default": Credentials(auth_type=AuthType.KEY, private_key="-----KEY-----", passphrase="pp")}
    )
    executor = SSHSessionExecutor(store)

    with (
        patch("sshfanout.executor.asyncssh.import_private_key", return_value=key) as import_key,
        patch("sshfanout.executor.asyncssh.connect", AsyncMock(return_value=mock_connection)) as connect,
    ):
        await executor.run(host, "uptime", 60)

    import_key.assert_called_once_with("-----KEY-----", "pp")
    assert connect.call_args.kwargs["client_keys"] == [key]
    assert connect.call_args.kwargs["password"] is None


async def test_unreadable_key_is_auth_error(host: Host) -> None:
    store = StaticCredentialStore({"default": Credentials(auth_type=AuthType.KEY, private_key="garbage")})
    executor = SSHSessionExecutor(store)

    with (
        patch(
            "sshfanout.executor.asyncssh.import_private_key",
            side_effect=asyncssh.KeyImportError("Invalid private key"),
        ),
        pytest.raises(AuthError, match="Cannot load private key"),
    ):
        await executor.run(host, "uptime", 60)
