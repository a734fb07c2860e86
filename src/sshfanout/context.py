"""Per-batch execution context."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field

from sshfanout.cancellation import CancellationToken
from sshfanout.models import ExecutionSettings, Host, HostRunState


def new_execution_id() -> str:
    return uuid.uuid4().hex


@dataclass
class ExecutionContext:
    """State for one submitted batch, owned by the dispatcher while it runs."""

    hosts: list[Host]
    command: str
    settings: ExecutionSettings
    execution_id: str = field(default_factory=new_execution_id)
    token: CancellationToken = field(default_factory=CancellationToken)
    states: dict[str, HostRunState] = field(default_factory=dict)
    completed: int = 0
    success: int = 0
    error: int = 0
    skipped: int = 0
    in_flight: int = 0
    peak_in_flight: int = 0

    def __post_init__(self) -> None:
        if not self.states:
            self.states = {host.id: HostRunState(host=host) for host in self.hosts}

    @property
    def total(self) -> int:
        return len(self.hosts)

    @property
    def cancelled(self) -> bool:
        return self.token.cancelled
