"""Progress aggregation: per-host state, running totals and event emission."""

from __future__ import annotations

from sshfanout.context import ExecutionContext
from sshfanout.events import (
    CancelledEvent,
    CompleteEvent,
    ErrorEvent,
    EventBus,
    ResultEvent,
    StartEvent,
    StatusEvent,
)
from sshfanout.models import BatchSummary, CommandResult, Host, HostRunState, HostStatus

__all__ = ["ProgressTracker"]


class ProgressTracker:
    """Keeps the batch counters consistent with the events it emits.

    Counters change exactly once per host, when its chain reaches a terminal
    state. All methods run on the event loop, so updates from concurrently
    finishing chains never interleave.
    """

    def __init__(self, context: ExecutionContext, bus: EventBus) -> None:
        self._context = context
        self._bus = bus
        self._started = False
        self._completed = False
        self._batch_cancel_announced = False
        self._results: list[CommandResult] = []

    @property
    def context(self) -> ExecutionContext:
        return self._context

    @property
    def results(self) -> list[CommandResult]:
        """Completed command results in completion order."""
        return list(self._results)

    def snapshot(self) -> dict[str, int]:
        """Aggregate progress counters."""
        ctx = self._context
        return {
            "total": ctx.total,
            "completed": ctx.completed,
            "success": ctx.success,
            "error": ctx.error,
            "skipped": ctx.skipped,
        }

    def summary(self) -> BatchSummary:
        ctx = self._context
        return BatchSummary(
            total=ctx.total,
            completed=ctx.completed,
            success=ctx.success,
            error=ctx.error,
            skipped=ctx.skipped,
            cancelled=ctx.cancelled,
        )

    def start(self) -> None:
        if self._started:
            raise RuntimeError("Batch already started")
        self._started = True
        self._bus.publish(StartEvent(execution_id=self._context.execution_id, total=self._context.total))

    def status(
        self,
        host: Host,
        status: HostStatus,
        attempt: int,
        message: str | None = None,
        error: str | None = None,
        max_attempts: int | None = None,
    ) -> None:
        """Record a non-terminal transition for a host."""
        if status.terminal:
            raise ValueError(f"Terminal status {status} must go through a record_* method")
        state = self._live_state(host)
        state.status = status
        state.attempt = attempt
        if error is not None:
            state.last_error = error
        self._bus.publish(
            StatusEvent(
                host_id=host.id,
                address=host.address,
                status=status,
                attempt=attempt,
                message=message,
                error=error,
                max_attempts=max_attempts,
            )
        )

    def record_result(self, host: Host, result: CommandResult, attempt: int) -> None:
        """Terminal: the command completed. Non-zero exit counts as an error."""
        state = self._live_state(host)
        state.attempt = attempt
        state.result = result
        self._results.append(result)
        ctx = self._context
        ctx.completed += 1
        if result.success:
            state.status = HostStatus.SUCCESS
            ctx.success += 1
        else:
            state.status = HostStatus.ERROR
            state.last_error = f"exit code {result.exit_code}"
            ctx.error += 1
        self._bus.publish(ResultEvent(host_id=host.id, result=result, attempt=attempt, progress=self.snapshot()))

    def record_error(self, host: Host, error: str, attempt: int) -> None:
        """Terminal: retries exhausted or not allowed. `error` must already be sanitized."""
        state = self._live_state(host)
        state.status = HostStatus.ERROR
        state.attempt = attempt
        state.last_error = error
        self._context.completed += 1
        self._context.error += 1
        self._bus.publish(
            ErrorEvent(host_id=host.id, address=host.address, error=error, attempt=attempt, progress=self.snapshot())
        )

    def record_cancelled(self, host: Host, attempt: int) -> None:
        """Terminal: the chain was abandoned because the batch was cancelled.

        A host that never reached the executor (attempt 0) is counted as
        skipped; one cancelled between attempts counts as an error.
        """
        state = self._live_state(host)
        state.status = HostStatus.CANCELLED
        state.attempt = attempt
        ctx = self._context
        if attempt == 0:
            ctx.skipped += 1
        else:
            ctx.completed += 1
            ctx.error += 1
        self._bus.publish(
            CancelledEvent(
                execution_id=ctx.execution_id,
                host_id=host.id,
                address=host.address,
                attempt=attempt,
                reason=ctx.token.reason,
                progress=self.snapshot(),
            )
        )

    def announce_cancellation(self) -> None:
        """Emit the batch-level cancelled notice (once)."""
        if self._batch_cancel_announced or self._completed:
            return
        self._batch_cancel_announced = True
        self._bus.publish(CancelledEvent(execution_id=self._context.execution_id, reason=self._context.token.reason))

    def complete(self) -> BatchSummary:
        """Emit the final event. Every host must have reached a terminal state."""
        if self._completed:
            raise RuntimeError("Batch already completed")
        pending = [s.host.id for s in self._context.states.values() if not s.status.terminal]
        if pending:
            raise RuntimeError(f"Cannot complete batch, hosts still running: {pending}")
        self._completed = True
        summary = self.summary()
        self._bus.publish(CompleteEvent(execution_id=self._context.execution_id, summary=summary))
        return summary

    def _live_state(self, host: Host) -> HostRunState:
        state = self._context.states[host.id]
        if state.status.terminal:
            raise RuntimeError(f"Host {host.id} already reached terminal state {state.status}")
        return state
