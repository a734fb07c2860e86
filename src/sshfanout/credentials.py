"""Credential lookup, host inventory files and plain host lists."""

from __future__ import annotations

import csv
import ipaddress
import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, ClassVar, Protocol

import jsonschema
import yaml

from sshfanout.models import AuthType, Credentials, Host

__all__ = [
    "CredentialError",
    "CredentialStore",
    "Inventory",
    "InventoryError",
    "StaticCredentialStore",
    "load_host_list",
    "load_inventory",
]


class CredentialError(Exception):
    """Raised when a host's credentials cannot be resolved."""


class InventoryError(Exception):
    """Raised when an inventory file cannot be loaded or is invalid."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = errors
        super().__init__("Inventory validation failed:\n" + "\n".join(errors))


class CredentialStore(Protocol):
    """Resolves a host's credential reference to secret material."""

    def resolve(self, host: Host) -> Credentials:
        """Return credentials for host.

        Raises:
            CredentialError: If no usable credentials exist
        """
        ...


class StaticCredentialStore:
    """In-memory credential store keyed by reference name.

    Hosts without a credential_ref use the "default" entry when present.
    """

    DEFAULT_REF: ClassVar[str] = "default"

    def __init__(self, credentials: Mapping[str, Credentials] | None = None) -> None:
        self._credentials = dict(credentials or {})

    def __contains__(self, ref: str) -> bool:
        return ref in self._credentials

    def resolve(self, host: Host) -> Credentials:
        ref = host.credential_ref or self.DEFAULT_REF
        try:
            return self._credentials[ref]
        except KeyError:
            raise CredentialError(f"No credentials named {ref!r} for host {host.id}") from None


INVENTORY_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "command": {"type": "string"},
        "settings": {"type": "object"},
        "hosts": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "id": {"type": ["string", "integer"]},
                    "address": {"type": "string"},
                    "port": {"type": "integer"},
                    "username": {"type": "string"},
                    "credential": {"type": "string"},
                    "name": {"type": "string"},
                },
                "required": ["address", "username"],
                "additionalProperties": False,
            },
        },
        "credentials": {
            "type": "object",
            "additionalProperties": {
                "type": "object",
                "properties": {
                    "password": {"type": "string"},
                    "password_env": {"type": "string"},
                    "key": {"type": "string"},
                    "key_file": {"type": "string"},
                    "passphrase": {"type": "string"},
                },
                "additionalProperties": False,
            },
        },
    },
}


@dataclass
class Inventory:
    """Hosts and credentials loaded from an inventory file."""

    hosts: list[Host]
    credentials: StaticCredentialStore
    command: str | None = None
    settings: dict[str, Any] = field(default_factory=dict)


def load_inventory(path: Path) -> Inventory:
    """Load hosts and credentials from a YAML inventory file.

    Host ids default to the 1-based position in the list. The hosts section may
    be omitted when hosts come from a separate host list. Credentials may give
    a literal password, an environment variable holding it, inline key text or
    a key file; a passphrase applies to keys.

    Raises:
        InventoryError: If the file is missing, unparsable or invalid
    """
    try:
        with path.open() as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        raise InventoryError([f"Inventory file not found: {path}"]) from None
    except yaml.YAMLError as e:
        raise InventoryError([f"Invalid YAML in {path}: {e}"]) from e

    validator = jsonschema.Draft7Validator(INVENTORY_SCHEMA)
    errors = [
        f"{'.'.join(str(p) for p in error.absolute_path) or 'root'}: {error.message}"
        for error in validator.iter_errors(data)
    ]
    if errors:
        raise InventoryError(errors)

    credentials: dict[str, Credentials] = {}
    for ref, raw in data.get("credentials", {}).items():
        try:
            credentials[ref] = _parse_credentials(raw, base_dir=path.parent)
        except CredentialError as e:
            errors.append(f"credentials.{ref}: {e}")

    hosts: list[Host] = []
    for index, raw in enumerate(data.get("hosts", []), start=1):
        ref = raw.get("credential")
        if ref is not None and ref not in credentials:
            errors.append(f"hosts.{index - 1}: unknown credential {ref!r}")
        hosts.append(
            Host(
                id=str(raw.get("id", index)),
                address=raw["address"],
                port=raw.get("port", 22),
                username=raw["username"],
                credential_ref=ref,
                name=raw.get("name"),
            )
        )

    if errors:
        raise InventoryError(errors)

    return Inventory(
        hosts=hosts,
        credentials=StaticCredentialStore(credentials),
        command=data.get("command"),
        settings=data.get("settings", {}),
    )


def _parse_credentials(raw: dict[str, Any], base_dir: Path) -> Credentials:
    if "key" in raw or "key_file" in raw:
        if "key" in raw:
            key = raw["key"]
        else:
            key_path = Path(raw["key_file"]).expanduser()
            if not key_path.is_absolute():
                key_path = base_dir / key_path
            try:
                key = key_path.read_text()
            except OSError as e:
                raise CredentialError(f"cannot read key file {key_path}: {e.strerror}") from e
        return Credentials(auth_type=AuthType.KEY, private_key=key, passphrase=raw.get("passphrase"))

    if "password_env" in raw:
        password = os.environ.get(raw["password_env"])
        if password is None:
            raise CredentialError(f"environment variable {raw['password_env']} is not set")
        return Credentials(auth_type=AuthType.PASSWORD, password=password)

    if "password" in raw:
        return Credentials(auth_type=AuthType.PASSWORD, password=raw["password"])

    raise CredentialError("one of password, password_env, key or key_file is required")


_IPV4_WITH_PORT = re.compile(r"(\d{1,3}(?:\.\d{1,3}){3})(?::(\d+))?")
_IPV6_FULL = re.compile(r"(?:[0-9A-Fa-f]{1,4}:){7}[0-9A-Fa-f]{1,4}")
_TOKEN_SPLIT = re.compile(r"[\s,;]+")

# Accepted header names per column
_CSV_COLUMNS = {
    "address": ("ip", "host", "address"),
    "port": ("port",),
    "username": ("user", "username", "login"),
    "name": ("name", "hostname"),
}
_CSV_DEFAULT_HEADER = ["ip", "port", "username", "password", "name"]

# address, port, username, name
type _Entry = tuple[str, int, str, str | None]


def load_host_list(path: Path, username: str = "root", port: int = 22, start: int = 1) -> list[Host]:
    """Load hosts from a plain text or CSV host list.

    Text files: every IPv4 address (optionally ``ip:port``) or full IPv6
    address on a line becomes a host. Other words on the line are read as
    ``name username`` or just ``username``. Blank lines and lines starting
    with ``#`` or ``//`` are skipped.

    CSV files: columns are matched by header (ip/host/address, port,
    user/username/login, name/hostname); without a header row the columns are
    ip, port, username, password, name. Passwords in either format are
    ignored: credentials come from the inventory.

    Hosts get ids ``start``, ``start + 1``, ... in file order. A repeated
    address and port is kept once.

    Raises:
        InventoryError: On an unreadable file, an unsupported suffix or any
            malformed address
    """
    suffix = path.suffix.lower()
    if suffix not in (".txt", ".csv"):
        raise InventoryError([f"Unsupported host list format: {path.name} (expected .txt or .csv)"])
    try:
        content = path.read_text(encoding="utf-8-sig")
    except FileNotFoundError:
        raise InventoryError([f"Host list not found: {path}"]) from None
    except OSError as e:
        raise InventoryError([f"Cannot read host list {path}: {e.strerror}"]) from e

    parse = _parse_csv_rows if suffix == ".csv" else _parse_text_lines
    entries, errors = parse(content, username, port)
    if errors:
        raise InventoryError(errors)

    hosts: list[Host] = []
    seen: set[tuple[str, int]] = set()
    for address, host_port, host_username, name in entries:
        if (address, host_port) in seen:
            continue
        seen.add((address, host_port))
        hosts.append(
            Host(id=str(start + len(hosts)), address=address, port=host_port, username=host_username, name=name)
        )
    return hosts


def _is_ip(address: str) -> bool:
    try:
        ipaddress.ip_address(address)
    except ValueError:
        return False
    return True


def _has_address(word: str) -> bool:
    return bool(_IPV4_WITH_PORT.search(word) or _IPV6_FULL.search(word))


def _parse_text_lines(content: str, username: str, port: int) -> tuple[list[_Entry], list[str]]:
    entries: list[_Entry] = []
    errors: list[str] = []
    for lineno, raw in enumerate(content.splitlines(), start=1):
        line = raw.strip()
        if not line or line.startswith(("#", "//")):
            continue

        found: list[tuple[str, int]] = [
            (m.group(1), int(m.group(2)) if m.group(2) else port) for m in _IPV4_WITH_PORT.finditer(line)
        ]
        found.extend((m.group(0), port) for m in _IPV6_FULL.finditer(line))
        if not found:
            continue

        words = [w for w in _TOKEN_SPLIT.split(line) if w and not _has_address(w)]
        name: str | None = None
        host_username = username
        if len(words) >= 2:
            name, host_username = words[0], words[1]
        elif words:
            host_username = words[0]

        for address, host_port in found:
            if _is_ip(address):
                entries.append((address, host_port, host_username, name))
            else:
                errors.append(f"line {lineno}: invalid IP address {address!r}")
    return entries, errors


def _parse_csv_rows(content: str, username: str, port: int) -> tuple[list[_Entry], list[str]]:
    lines = [line for line in content.splitlines() if line.strip()]
    if not lines:
        return [], []

    delimiter = ";" if ";" in lines[0] else ","
    rows = list(csv.reader(lines, delimiter=delimiter))
    first = [title.strip().lower() for title in rows[0]]
    known = {alias for aliases in _CSV_COLUMNS.values() for alias in aliases}
    has_header = any(title in known for title in first)
    header = first if has_header else _CSV_DEFAULT_HEADER
    columns = {
        key: next((header.index(alias) for alias in aliases if alias in header), None)
        for key, aliases in _CSV_COLUMNS.items()
    }

    def cell(row: list[str], key: str) -> str:
        index = columns[key]
        return row[index].strip() if index is not None and index < len(row) else ""

    entries: list[_Entry] = []
    errors: list[str] = []
    for lineno, row in enumerate(rows[1:] if has_header else rows, start=2 if has_header else 1):
        if not row or row[0].strip().startswith("#"):
            continue
        value = cell(row, "address") if columns["address"] is not None else row[0].strip()
        address, host_port = value, port
        match = _IPV4_WITH_PORT.fullmatch(value)
        if match and match.group(2):
            address, host_port = match.group(1), int(match.group(2))
        if not _is_ip(address):
            errors.append(f"line {lineno}: invalid IP address {value!r}")
            continue
        port_cell = cell(row, "port")
        if port_cell.isdigit():
            host_port = int(port_cell)
        entries.append((address, host_port, cell(row, "username") or username, cell(row, "name") or None))
    return entries, errors
