import asyncio

import pytest

from flowpilot.errors import FlowpilotError, FlowStateError
from flowpilot.escalation import (
    BreadthWatcher,
    EscalationEvent,
    EscalationKind,
    EscalationMonitor,
    EscalationRequired,
    RepeatedErrorWatcher,
    RequirementChangeDetector,
)


def test_requirement_change_detector_matches_each_category() -> None:
    detector = RequirementChangeDetector()

    assert detector.detect("Can you also export the report as CSV?") == ["new_feature"]
    assert detector.detect("The import must finish within 30 seconds") == ["new_constraint"]
    assert detector.detect("Use Postgres instead of SQLite") == ["technical_change"]
    assert detector.detect("Looks good, thanks") == []


def test_repeated_error_signature_ignores_volatile_numbers() -> None:
    watcher = RepeatedErrorWatcher(threshold=3)

    watcher.record("Timeout after 30s at 0x7ffe12")
    watcher.record("timeout  after 45s at 0x7ffe99")
    assert not watcher.requires_analysis("Timeout after 12s at 0x1")
    watcher.record("Timeout after 12s at 0x1")

    assert watcher.count("Timeout after 1s at 0x2") == 3
    assert watcher.requires_analysis("Timeout after 1s at 0x2")


def test_acknowledged_analysis_resets_the_counter() -> None:
    watcher = RepeatedErrorWatcher(threshold=2)
    watcher.record("KeyError: 'total'")
    watcher.record("KeyError: 'total'")

    with pytest.raises(FlowpilotError):
        watcher.acknowledge_analysis("KeyError: 'total'", "  ")
    watcher.acknowledge_analysis("KeyError: 'total'", "The cart serializer drops the total.")

    assert not watcher.requires_analysis("KeyError: 'total'")
    assert watcher.analysis_for("KeyError: 'total'") == "The cart serializer drops the total."


def test_breadth_watcher_reports_each_threshold_once_per_task() -> None:
    watcher = BreadthWatcher(files_per_task=5, edit_invocations=5, same_file_edits=3)

    first = watcher.observe_task("T1", ["src/a.py", "src/b.py"], {"src/a.py": 2, "src/b.py": 1})
    assert first == []

    second = watcher.observe_task("T1", ["src/a.py"], {"src/a.py": 2})
    assert [event.kind for event in second] == [
        EscalationKind.EDIT_COUNT_THRESHOLD,
        EscalationKind.SAME_FILE_EDIT_THRESHOLD,
    ]
    assert second[1].payload["path"] == "src/a.py"
    assert watcher.observe_task("T1", ["src/a.py"]) == []


def test_breadth_watcher_counters_restart_for_a_new_task() -> None:
    watcher = BreadthWatcher(files_per_task=5, edit_invocations=3, same_file_edits=3)
    watcher.observe_task("T1", ["src/a.py", "src/b.py"])

    assert watcher.observe_task("T2", ["src/c.py", "src/d.py"]) == []
    events = watcher.observe_task("T2", ["src/e.py"])
    assert [event.kind for event in events] == [EscalationKind.EDIT_COUNT_THRESHOLD]


def test_file_count_threshold() -> None:
    watcher = BreadthWatcher(files_per_task=3, edit_invocations=100, same_file_edits=100)

    events = watcher.observe_task("T1", ["a.py", "b.py", "c.py", "a.py"])

    assert [event.kind for event in events] == [EscalationKind.FILE_COUNT_THRESHOLD]
    assert events[0].payload["files"] == ["a.py", "b.py", "c.py"]
    assert not events[0].blocking


def test_monitor_records_and_notifies() -> None:
    seen: list[EscalationEvent] = []
    monitor = EscalationMonitor(notify=seen.append)

    error = monitor.escalate(
        EscalationKind.BLOCKED,
        "No git repository.",
        reason="Commits need git.",
        next_step="Run git init.",
    )

    assert isinstance(error, EscalationRequired)
    assert error.event is seen[0]
    assert monitor.events == seen
    assert error.event.blocking
    assert "[blocked] No git repository." in str(error)
    assert error.event.to_dict()["next_step"] == "Run git init."


def test_check_stop_uses_local_flag_and_probe() -> None:
    external = {"stop": False}
    monitor = EscalationMonitor(stop_probe=lambda: external["stop"])

    monitor.check_stop(task_id="T1")
    external["stop"] = True
    with pytest.raises(EscalationRequired) as excinfo:
        monitor.check_stop(task_id="T1")
    assert excinfo.value.event.kind is EscalationKind.USER_STOP
    assert excinfo.value.event.payload == {"task_id": "T1"}

    external["stop"] = False
    monitor.request_stop()
    assert monitor.stop_requested
    monitor.clear_stop()
    assert not monitor.stop_requested


def test_requirement_change_is_recorded_as_an_event() -> None:
    monitor = EscalationMonitor()

    assert monitor.detect_requirement_change("ok, go ahead") is None
    event = monitor.detect_requirement_change("Also add an audit log and switch to Redis")

    assert event is not None
    assert event.kind is EscalationKind.REQUIREMENT_CHANGE
    assert event.payload["matches"] == ["new_feature", "technical_change"]
    assert monitor.events == [event]


def test_run_until_stopped_passes_results_and_errors_through() -> None:
    monitor = EscalationMonitor()

    async def answer() -> int:
        await asyncio.sleep(0)
        return 42

    async def broken() -> int:
        raise FlowStateError("state file is locked")

    assert asyncio.run(monitor.run_until_stopped(answer())) == 42
    with pytest.raises(FlowStateError):
        asyncio.run(monitor.run_until_stopped(broken()))
    assert monitor.events == []


def test_run_until_stopped_cancels_work_when_stopped() -> None:
    monitor = EscalationMonitor()
    cancelled: list[bool] = []

    async def hang() -> None:
        monitor.request_stop()
        try:
            await asyncio.sleep(30)
        except asyncio.CancelledError:
            cancelled.append(True)
            raise

    with pytest.raises(EscalationRequired) as excinfo:
        asyncio.run(monitor.run_until_stopped(hang(), task_id="T3"))

    assert excinfo.value.event.kind is EscalationKind.USER_STOP
    assert excinfo.value.event.payload == {"task_id": "T3"}
    assert cancelled == [True]


def test_escalate_error_records_a_blocking_event() -> None:
    seen: list[EscalationEvent] = []
    monitor = EscalationMonitor(notify=seen.append)

    error = monitor.escalate_error(FlowStateError("git commit failed"), payload={"task_id": "T1"})

    assert error.event.kind is EscalationKind.BLOCKED
    assert error.event.blocking
    assert error.event.summary == "FlowStateError: git commit failed"
    assert error.event.payload == {"error_type": "FlowStateError", "task_id": "T1"}
    assert seen == [error.event]
