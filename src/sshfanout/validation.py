"""Input bounds for a batch: host/command validation and settings clamping.

Everything a caller submits is untrusted. Hard limits (host count, command
length, malformed hosts) reject the whole batch before any host is contacted.
Numeric settings are clamped into safe ranges instead of rejected.
"""

from __future__ import annotations

import ipaddress
import math
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from sshfanout.models import ExecutionSettings, Host

__all__ = [
    "Limits",
    "ValidatedRequest",
    "ValidationError",
    "is_valid_address",
    "sanitize_message",
    "sanitize_settings",
    "validate_host",
    "validate_request",
]

_HOSTNAME_LABEL = re.compile(r"^(?!-)[A-Za-z0-9-]{1,63}(?<!-)$")

_SECRET_PATTERNS = [
    (re.compile(r"password[=:]\s*\S+", re.IGNORECASE), "password=***"),
    (re.compile(r"pass[=:]\s*\S+", re.IGNORECASE), "pass=***"),
    (re.compile(r"key[=:]\s*\S+", re.IGNORECASE), "key=***"),
]

# Offending hosts listed in a rejection message before truncating with "..."
_MAX_REPORTED_HOSTS = 5


@dataclass(frozen=True)
class Limits:
    """Hard ceilings applied to every submitted batch."""

    max_hosts: int = 1000
    max_command_length: int = 10000
    max_username_length: int = 64
    max_connection_timeout: float = 120.0
    max_command_timeout: float = 300.0
    max_concurrent: int = 100
    max_retry_attempts: int = 100
    max_retry_delay: float = 60.0


@dataclass(frozen=True)
class ValidatedRequest:
    """A batch request that passed validation."""

    hosts: list[Host]
    command: str
    settings: ExecutionSettings = field(default_factory=ExecutionSettings)


class ValidationError(Exception):
    """Raised when a submitted batch is rejected."""

    def __init__(self, message: str, details: list[str] | None = None) -> None:
        self.message = message
        self.details = details or []
        super().__init__(message)


def sanitize_message(text: str) -> str:
    """Strip credential-like substrings (password=..., key=...) from a message."""
    for pattern, replacement in _SECRET_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def is_valid_address(address: str) -> bool:
    """Accept IPv4/IPv6 literals and RFC 1123 hostnames."""
    if not address or len(address) > 253:
        return False
    try:
        ipaddress.ip_address(address)
        return True
    except ValueError:
        pass
    # Dotted-numeric strings that failed IP parsing (e.g. 256.1.1.1) are malformed IPs
    if re.fullmatch(r"[\d.]+", address):
        return False
    return all(_HOSTNAME_LABEL.match(label) for label in address.rstrip(".").split("."))


def validate_host(host: Host, limits: Limits) -> str | None:
    """Check one host.

    Returns:
        A human-readable problem, or None if the host is valid.
    """
    if not is_valid_address(host.address):
        return f"invalid address: {host.address!r}"
    if not host.username:
        return "missing username"
    if len(host.username) > limits.max_username_length:
        return f"username longer than {limits.max_username_length} characters"
    if not 1 <= host.port <= 65535:
        return f"invalid port: {host.port}"
    return None


def validate_request(
    hosts: Sequence[Host],
    command: str,
    settings: Mapping[str, Any] | ExecutionSettings | None,
    limits: Limits | None = None,
    defaults: ExecutionSettings | None = None,
) -> ValidatedRequest:
    """Validate a batch and sanitize its settings.

    Args:
        hosts: Hosts to run on
        command: Shell command
        settings: Raw settings mapping, an ExecutionSettings, or None for defaults
        limits: Ceilings to enforce (defaults to Limits())
        defaults: Settings used for missing values

    Returns:
        ValidatedRequest with the sanitized settings

    Raises:
        ValidationError: If the batch must be rejected
    """
    limits = limits or Limits()

    if not hosts:
        raise ValidationError("Host list is empty")
    if len(hosts) > limits.max_hosts:
        raise ValidationError(f"At most {limits.max_hosts} hosts per batch, got {len(hosts)}")
    if not command or not command.strip():
        raise ValidationError("Command is empty")
    if len(command) > limits.max_command_length:
        raise ValidationError(f"Command longer than {limits.max_command_length} characters")

    invalid: list[Host] = []
    problems: list[str] = []
    seen: set[str] = set()
    for host in hosts:
        problem = validate_host(host, limits)
        if problem is None and host.id in seen:
            problem = f"duplicate host id: {host.id!r}"
        seen.add(host.id)
        if problem is not None:
            invalid.append(host)
            problems.append(f"{host.address}: {problem}")

    if problems:
        shown = ", ".join(h.address for h in invalid[:_MAX_REPORTED_HOSTS])
        suffix = "..." if len(problems) > _MAX_REPORTED_HOSTS else ""
        raise ValidationError(f"Invalid hosts: {shown}{suffix}", details=problems)

    if isinstance(settings, ExecutionSettings):
        settings = settings.to_dict()
    return ValidatedRequest(
        hosts=list(hosts),
        command=command,
        settings=sanitize_settings(settings or {}, limits, defaults),
    )


def sanitize_settings(
    raw: Mapping[str, Any],
    limits: Limits | None = None,
    defaults: ExecutionSettings | None = None,
) -> ExecutionSettings:
    """Clamp raw settings into safe ranges.

    Missing, non-numeric or non-finite values fall back to the defaults, as
    does zero for everything except retry_delay. Values below the minimum are
    raised to it and values above the ceiling are capped. Nothing here is an
    error.
    """
    limits = limits or Limits()
    defaults = defaults or ExecutionSettings()

    def number(key: str, default: float, low: float, high: float, zero_is_unset: bool = True) -> float:
        value = raw.get(key)
        if (
            isinstance(value, bool)
            or not isinstance(value, int | float)
            or not math.isfinite(value)
            or (zero_is_unset and value == 0)
        ):
            value = default
        return min(max(value, low), high)

    def flag(key: str, default: bool) -> bool:
        value = raw.get(key)
        return default if value is None else bool(value)

    return ExecutionSettings(
        connection_timeout=float(
            number("connection_timeout", defaults.connection_timeout, 1, limits.max_connection_timeout)
        ),
        command_timeout=float(number("command_timeout", defaults.command_timeout, 1, limits.max_command_timeout)),
        max_concurrent=int(number("max_concurrent", defaults.max_concurrent, 1, limits.max_concurrent)),
        retry_enabled=flag("retry_enabled", defaults.retry_enabled),
        retry_attempts=int(number("retry_attempts", defaults.retry_attempts, 1, limits.max_retry_attempts)),
        retry_delay=float(number("retry_delay", defaults.retry_delay, 0, limits.max_retry_delay, zero_is_unset=False)),
        retry_infinite=flag("retry_infinite", defaults.retry_infinite),
    )
