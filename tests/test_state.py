import json
import subprocess
from pathlib import Path

import pytest

from flowpilot.errors import FlowStateError
from flowpilot.execution import ExecutionTask, TaskState
from flowpilot.state import FlowStateStore, GitCommitter


def _run(cmd: list[str], cwd: Path) -> None:
    subprocess.run(cmd, cwd=cwd, check=True, text=True, capture_output=True)


def _init_git_repo(repo_path: Path) -> None:
    _run(["git", "init"], cwd=repo_path)
    _run(["git", "config", "user.email", "test@example.com"], cwd=repo_path)
    _run(["git", "config", "user.name", "Test User"], cwd=repo_path)
    (repo_path / "seed.txt").write_text("seed\n", encoding="utf-8")
    _run(["git", "add", "seed.txt"], cwd=repo_path)
    _run(["git", "commit", "-m", "seed"], cwd=repo_path)


def _checked_task(task_id: str, *files: str) -> ExecutionTask:
    task = ExecutionTask(id=task_id, title=f"Implement {task_id}", files_modified=list(files))
    task.transition(TaskState.EXECUTING)
    task.transition(TaskState.QUALITY_CHECKING)
    task.transition(TaskState.QUALITY_CHECKED)
    return task


def test_state_roundtrip_writes_versioned_envelope(tmp_path: Path) -> None:
    store = FlowStateStore(tmp_path)
    payload = {"status": "in_progress", "phase": "work-planning"}

    revision = store.set_json("context", payload)

    assert revision == 1
    assert store.get_json("context") == payload
    on_disk = json.loads((tmp_path / ".flowpilot" / "state" / "context.json").read_text())
    assert on_disk["schema_version"] == FlowStateStore.SCHEMA_VERSION
    assert on_disk["revision"] == 1
    assert on_disk["data"] == payload
    assert not (tmp_path / ".flowpilot" / "state" / ".lock").exists()


def test_missing_namespace_reads_as_revision_zero(tmp_path: Path) -> None:
    store = FlowStateStore(tmp_path, directory=".fp")

    envelope = store.get_envelope("tasks", default={"task_queue": []})

    assert envelope["revision"] == 0
    assert envelope["data"] == {"task_queue": []}
    assert (tmp_path / ".fp" / "state").is_dir()


def test_stale_revision_is_refused(tmp_path: Path) -> None:
    store = FlowStateStore(tmp_path)
    store.set_json("context", {"status": "ready"})

    with pytest.raises(FlowStateError):
        store.set_json("context", {"status": "in_progress"}, expected_revision=0)
    assert store.set_json("context", {"status": "in_progress"}, expected_revision=1) == 2


def test_update_json_increments_revision(tmp_path: Path) -> None:
    store = FlowStateStore(tmp_path)
    store.set_json("reports", {"count": 1})
    first_revision = store.get_envelope("reports")["revision"]

    store.update_json("reports", lambda payload: {"count": payload["count"] + 1})

    assert store.get_json("reports")["count"] == 2
    assert store.get_envelope("reports")["revision"] > first_revision


def test_corrupt_or_legacy_files_are_errors(tmp_path: Path) -> None:
    store = FlowStateStore(tmp_path)
    context_path = tmp_path / ".flowpilot" / "state" / "context.json"

    context_path.write_text("{not json", encoding="utf-8")
    with pytest.raises(FlowStateError):
        store.get_context()

    context_path.write_text(json.dumps({"legacy": True}), encoding="utf-8")
    with pytest.raises(FlowStateError):
        store.get_context()

    context_path.write_text(
        json.dumps({"schema_version": 99, "revision": 1, "data": {}}), encoding="utf-8"
    )
    with pytest.raises(FlowStateError):
        store.get_context()


def test_unknown_namespace_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(FlowStateError):
        FlowStateStore(tmp_path).get_json("patches")


def test_context_tasks_and_logs(tmp_path: Path) -> None:
    store = FlowStateStore(tmp_path)

    store.set_context({"status": "ready"})
    assert store.update_context(status="designed", flow={"flow_id": "flow-1"}) == {
        "status": "designed",
        "flow": {"flow_id": "flow-1"},
    }

    store.set_tasks([{"id": "T1", "state": "pending"}, {"id": "T2", "state": "pending"}])
    store.upsert_task({"id": "T2", "state": "committed"})
    store.upsert_task({"id": "T3", "state": "pending"})
    assert [(task["id"], task["state"]) for task in store.get_tasks()] == [
        ("T1", "pending"),
        ("T2", "committed"),
        ("T3", "pending"),
    ]

    store.add_event({"event": "flow_started"})
    store.add_event({"event": "flow_completed"})
    store.add_escalation({"kind": "blocked"})
    store.add_approval({"phase": "work-planning", "approved": True})
    store.add_report({"flow_id": "flow-1"})
    assert [event["event"] for event in store.get_events()] == ["flow_started", "flow_completed"]
    assert store.get_escalations() == [{"kind": "blocked"}]
    assert store.get_approvals()[0]["phase"] == "work-planning"
    assert store.get_reports() == [{"flow_id": "flow-1"}]


def test_git_committer_is_unavailable_outside_a_repository(tmp_path: Path) -> None:
    committer = GitCommitter(tmp_path)

    assert committer.available is False
    with pytest.raises(FlowStateError):
        committer.commit([_checked_task("T1", "src/a.py")], "T1: Implement T1")


def test_git_committer_commits_only_task_files(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_git_repo(repo)
    (repo / "src").mkdir()
    (repo / "src" / "cart.py").write_text("TOTAL = 0\n", encoding="utf-8")
    (repo / "tests").mkdir()
    (repo / "tests" / "test_cart.py").write_text("def test_total():\n    pass\n", encoding="utf-8")
    (repo / "unrelated.txt").write_text("scratch\n", encoding="utf-8")

    committer = GitCommitter(repo)
    task = _checked_task("T1", "src/cart.py")
    task.tests_added = ["tests/test_cart.py"]
    before = committer.current_head()

    ref = committer.commit([task], "T1: Implement T1")

    assert committer.available is True
    assert ref != before
    assert committer.current_head() == ref
    assert committer.changed_files_for_commit(ref) == ["src/cart.py", "tests/test_cart.py"]
    message = subprocess.run(
        ["git", "log", "-1", "--pretty=%B"], cwd=repo, text=True, capture_output=True, check=True
    ).stdout
    assert message.startswith("T1: Implement T1")
    assert "- T1: Implement T1" in message


def test_git_committer_allows_empty_commit_for_unchanged_tasks(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_git_repo(repo)
    committer = GitCommitter(repo)

    ref = committer.commit([_checked_task("T1", "seed.txt")], "T1: no-op")

    assert committer.changed_files_for_commit(ref) == []


def test_git_committer_leaves_unrelated_changes_alone(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_git_repo(repo)
    (repo / "unrelated.txt").write_text("scratch\n", encoding="utf-8")
    (repo / "notes.md").write_text("work in progress\n", encoding="utf-8")
    _run(["git", "add", "notes.md"], cwd=repo)
    (repo / "src").mkdir()
    (repo / "src" / "cart.py").write_text("TOTAL = 0\n", encoding="utf-8")
    committer = GitCommitter(repo)

    empty_ref = committer.commit([_checked_task("T1")], "T1: planning only")
    task_ref = committer.commit([_checked_task("T2", "src/cart.py")], "T2: Implement T2")

    assert committer.changed_files_for_commit(empty_ref) == []
    assert committer.changed_files_for_commit(task_ref) == ["src/cart.py"]
    status = subprocess.run(
        ["git", "status", "--porcelain"], cwd=repo, text=True, capture_output=True, check=True
    ).stdout.splitlines()
    assert "A  notes.md" in status
    assert "?? unrelated.txt" in status
