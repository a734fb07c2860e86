"""Tests for ProgressTracker counting rules and event emission."""

from __future__ import annotations

import pytest

from sshfanout.context import ExecutionContext
from sshfanout.events import CancelledEvent, CompleteEvent, ErrorEvent, EventBus, ResultEvent, StartEvent, StatusEvent
from sshfanout.models import CommandResult, ExecutionSettings, Host, HostStatus
from sshfanout.progress import ProgressTracker


@pytest.fixture
def context(hosts: list[Host]) -> ExecutionContext:
    return ExecutionContext(hosts=hosts, command="uptime", settings=ExecutionSettings())


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def tracker(context: ExecutionContext, bus: EventBus) -> ProgressTracker:
    return ProgressTracker(context, bus)


def result_for(host: Host, exit_code: int = 0) -> CommandResult:
    return CommandResult(
        host_id=host.id,
        address=host.address,
        command="uptime",
        exit_code=exit_code,
        stdout="",
        stderr="",
        duration_ms=5,
    )


def test_start_emits_once(tracker: ProgressTracker, bus: EventBus) -> None:
    tracker.start()

    assert isinstance(bus.history[0], StartEvent)
    assert bus.history[0].total == 3
    with pytest.raises(RuntimeError):
        tracker.start()


def test_status_updates_state(tracker: ProgressTracker, hosts: list[Host], context: ExecutionContext) -> None:
    tracker.status(hosts[0], HostStatus.RETRYING, 2, error="refused", max_attempts=3)

    state = context.states["a"]
    assert state.status is HostStatus.RETRYING
    assert state.attempt == 2
    assert state.last_error == "refused"


def test_status_rejects_terminal(tracker: ProgressTracker, hosts: list[Host]) -> None:
    with pytest.raises(ValueError, match="Terminal status"):
        tracker.status(hosts[0], HostStatus.SUCCESS, 1)


def test_counting_rules(tracker: ProgressTracker, hosts: list[Host], bus: EventBus) -> None:
    a, b, c = hosts
    tracker.record_result(a, result_for(a), 1)
    tracker.record_result(b, result_for(b, exit_code=127), 1)
    tracker.record_error(c, "refused", 3)

    summary = tracker.summary()
    assert (summary.completed, summary.success, summary.error, summary.skipped) == (3, 1, 2, 0)
    assert [type(e) for e in bus.history] == [ResultEvent, ResultEvent, ErrorEvent]
    assert bus.history[-1].progress == {"total": 3, "completed": 3, "success": 1, "error": 2, "skipped": 0}
    assert [r.host_id for r in tracker.results] == ["a", "b"]


def test_cancelled_before_first_attempt_is_skipped(
    tracker: ProgressTracker, hosts: list[Host], context: ExecutionContext
) -> None:
    context.token.cancel("operator")
    tracker.record_cancelled(hosts[0], attempt=0)
    tracker.record_cancelled(hosts[1], attempt=2)

    assert context.skipped == 1
    assert context.completed == 1
    assert context.error == 1
    assert context.states["a"].status is HostStatus.CANCELLED


def test_per_host_cancelled_event_carries_reason(
    tracker: ProgressTracker, hosts: list[Host], context: ExecutionContext, bus: EventBus
) -> None:
    context.token.cancel("deadline exceeded")
    tracker.record_cancelled(hosts[0], attempt=0)

    event = bus.history[-1]
    assert isinstance(event, CancelledEvent)
    assert event.host_id == "a"
    assert event.reason == "deadline exceeded"
    assert event.to_dict()["progress"]["skipped"] == 1


def test_second_terminal_transition_is_rejected(tracker: ProgressTracker, hosts: list[Host]) -> None:
    tracker.record_error(hosts[0], "refused", 1)

    with pytest.raises(RuntimeError, match="already reached terminal state"):
        tracker.record_result(hosts[0], result_for(hosts[0]), 2)
    with pytest.raises(RuntimeError):
        tracker.status(hosts[0], HostStatus.CONNECTING, 2)


def test_batch_notice_is_announced_once(tracker: ProgressTracker, context: ExecutionContext, bus: EventBus) -> None:
    context.token.cancel()
    tracker.announce_cancellation()
    tracker.announce_cancellation()

    notices = [e for e in bus.history if isinstance(e, CancelledEvent)]
    assert len(notices) == 1
    assert notices[0].host_id is None
    assert "host_id" not in notices[0].to_dict()


def test_complete_requires_every_host_terminal(tracker: ProgressTracker, hosts: list[Host], bus: EventBus) -> None:
    tracker.record_result(hosts[0], result_for(hosts[0]), 1)
    with pytest.raises(RuntimeError, match="hosts still running"):
        tracker.complete()

    tracker.record_result(hosts[1], result_for(hosts[1]), 1)
    tracker.record_error(hosts[2], "timeout", 1)
    summary = tracker.complete()

    assert isinstance(bus.history[-1], CompleteEvent)
    assert summary.completed == 3
    with pytest.raises(RuntimeError, match="already completed"):
        tracker.complete()


def test_no_notice_after_completion(
    tracker: ProgressTracker, hosts: list[Host], context: ExecutionContext, bus: EventBus
) -> None:
    for host in hosts:
        tracker.record_result(host, result_for(host), 1)
    tracker.complete()
    context.token.cancel()

    tracker.announce_cancellation()

    assert not any(isinstance(e, CancelledEvent) for e in bus.history)


def test_status_event_only_reports_retry_fields_when_retrying(
    tracker: ProgressTracker, hosts: list[Host], bus: EventBus
) -> None:
    tracker.status(hosts[0], HostStatus.CONNECTING, 1, message="Connecting to 10.0.0.1:22")
    tracker.status(hosts[1], HostStatus.RETRYING, 2, error="refused", max_attempts=None)

    connecting, retrying = (e for e in bus.history if isinstance(e, StatusEvent))
    assert "max_attempts" not in connecting.to_dict()
    assert connecting.to_dict()["message"] == "Connecting to 10.0.0.1:22"
    assert retrying.to_dict()["max_attempts"] is None
    assert retrying.to_dict()["error"] == "refused"
