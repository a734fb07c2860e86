"""Bounded-concurrency dispatcher that fans one command out to many hosts."""

from __future__ import annotations

import asyncio
import functools
from collections import deque
from collections.abc import Sequence
from dataclasses import dataclass, field

from sshfanout.cancellation import BatchCancelledError, ExecutionRegistry
from sshfanout.context import ExecutionContext
from sshfanout.events import EventBus
from sshfanout.executor import SessionError, SessionExecutor
from sshfanout.logger import get_logger
from sshfanout.models import BatchSummary, CommandResult, ExecutionSettings, Host, HostStatus
from sshfanout.progress import ProgressTracker
from sshfanout.retry import RetryController
from sshfanout.validation import sanitize_message

__all__ = ["Batch", "Dispatcher"]

logger = get_logger(__name__)


@dataclass
class Batch:
    """A registered batch: its context, its event bus and its progress tracker."""

    context: ExecutionContext
    bus: EventBus = field(default_factory=EventBus)
    tracker: ProgressTracker = field(init=False)

    def __post_init__(self) -> None:
        self.tracker = ProgressTracker(self.context, self.bus)

    @property
    def execution_id(self) -> str:
        return self.context.execution_id

    @property
    def results(self) -> list[CommandResult]:
        return self.tracker.results


class Dispatcher:
    """Runs batches through a session executor with at most max_concurrent chains in flight.

    A chain is the whole attempt sequence for one host, retries and backoff
    waits included. A retry keeps its slot: chains never re-enter the queue.
    """

    def __init__(self, executor: SessionExecutor, registry: ExecutionRegistry | None = None) -> None:
        """Initialize dispatcher.

        Args:
            executor: Runs one command on one host per call
            registry: Registry for cancel-by-id lookups (a private one if omitted)
        """
        self._executor = executor
        self._registry = registry if registry is not None else ExecutionRegistry()

    @property
    def registry(self) -> ExecutionRegistry:
        return self._registry

    def create_batch(
        self,
        hosts: Sequence[Host],
        command: str,
        settings: ExecutionSettings,
    ) -> Batch:
        """Create and register a batch so it can be subscribed to and cancelled before it runs."""
        batch = Batch(ExecutionContext(hosts=list(hosts), command=command, settings=settings))
        self._registry.register(batch.context)
        return batch

    def cancel(self, execution_id: str, reason: str = "cancel requested") -> bool:
        """Cancel an active batch by id. Idempotent.

        Returns:
            True if an active batch was found, False otherwise
        """
        return self._registry.cancel(execution_id, reason)

    async def execute(
        self,
        hosts: Sequence[Host],
        command: str,
        settings: ExecutionSettings,
    ) -> BatchSummary:
        """Create a batch and run it to completion."""
        return await self.run(self.create_batch(hosts, command, settings))

    async def run(self, batch: Batch) -> BatchSummary:
        """Run every host of a batch and resolve once all chains have settled.

        Emits start first and complete last, then closes the batch's bus and
        releases it from the registry.
        """
        ctx = batch.context
        tracker = batch.tracker
        log = logger.bind(execution_id=ctx.execution_id)
        limit = ctx.settings.max_concurrent

        queue: deque[Host] = deque(ctx.hosts)
        in_flight: set[asyncio.Task[None]] = set()

        def chain_done(task: asyncio.Task[None]) -> None:
            in_flight.discard(task)
            ctx.in_flight = len(in_flight)

        def cancel_fired(fut: asyncio.Task[None]) -> None:
            if not fut.cancelled():
                tracker.announce_cancellation()

        cancel_wait = asyncio.create_task(ctx.token.wait())
        cancel_wait.add_done_callback(cancel_fired)

        log.info("Batch started", total=ctx.total, max_concurrent=limit, command=sanitize_message(ctx.command))
        tracker.start()
        try:
            while queue and not ctx.cancelled:
                while len(in_flight) < limit and queue and not ctx.cancelled:
                    host = queue.popleft()
                    task = asyncio.create_task(self._run_chain(batch, host), name=f"chain-{host.id}")
                    in_flight.add(task)
                    task.add_done_callback(chain_done)
                    ctx.in_flight = len(in_flight)
                    ctx.peak_in_flight = max(ctx.peak_in_flight, ctx.in_flight)

                if len(in_flight) >= limit:
                    await asyncio.wait({*in_flight, cancel_wait}, return_when=asyncio.FIRST_COMPLETED)

            # Hosts that never got a slot
            while queue:
                tracker.record_cancelled(queue.popleft(), attempt=0)

            if in_flight:
                await asyncio.gather(*in_flight)

            if ctx.cancelled:
                tracker.announce_cancellation()
            summary = tracker.complete()
            log.info("Batch finished", **summary.to_dict())
            return summary
        except asyncio.CancelledError:
            # Hard stop: chains are cancelled too, their sessions closed on the way out
            log.warning("Batch task cancelled, aborting in-flight chains", in_flight=len(in_flight))
            ctx.token.cancel("dispatcher shutdown")
            for task in list(in_flight):
                task.cancel()
            await asyncio.gather(*in_flight, return_exceptions=True)
            for state in ctx.states.values():
                if not state.status.terminal:
                    tracker.record_cancelled(state.host, state.attempt)
            tracker.announce_cancellation()
            tracker.complete()
            raise
        finally:
            cancel_wait.cancel()
            batch.bus.close()
            self._registry.release(ctx.execution_id)

    async def _run_chain(self, batch: Batch, host: Host) -> None:
        """Drive one host through attempts until success, exhaustion or cancellation.

        Never raises (apart from task cancellation): a failing host must not
        affect its siblings.
        """
        ctx = batch.context
        tracker = batch.tracker
        retry = RetryController(ctx.settings, ctx.token)
        log = logger.bind(execution_id=ctx.execution_id, host_id=host.id, address=host.address)
        attempt = 0

        try:
            while True:
                if ctx.cancelled:
                    tracker.record_cancelled(host, attempt)
                    return

                attempt += 1
                tracker.status(
                    host, HostStatus.CONNECTING, attempt, message=f"Connecting to {host.address}:{host.port}"
                )
                on_status = functools.partial(tracker.status, host, attempt=attempt)
                try:
                    result = await self._executor.run(host, ctx.command, ctx.settings.command_timeout, on_status)
                except SessionError as e:
                    error = sanitize_message(str(e))
                    if not retry.should_retry(attempt):
                        log.warning("Host failed", attempt=attempt, error=error, error_type=type(e).__name__)
                        tracker.record_error(host, error, attempt)
                        return
                    log.info("Attempt failed, retrying", attempt=attempt, error=error)
                    tracker.status(
                        host, HostStatus.RETRYING, attempt + 1, error=error, max_attempts=retry.max_attempts
                    )
                    try:
                        await retry.wait()
                    except BatchCancelledError:
                        log.info("Retry abandoned, batch cancelled", attempt=attempt)
                        tracker.record_cancelled(host, attempt)
                        return
                    continue

                log.debug("Command completed", attempt=attempt, exit_code=result.exit_code)
                tracker.record_result(host, result, attempt)
                return
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.exception("Unexpected error in attempt chain", attempt=attempt)
            if not ctx.states[host.id].status.terminal:
                tracker.record_error(host, sanitize_message(f"Internal error: {e}"), attempt)
