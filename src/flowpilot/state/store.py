from __future__ import annotations

import json
import os
import time
from collections.abc import Callable
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from flowpilot.errors import FlowStateError


class FlowStateStore:
    """Versioned JSON envelopes under ``<root>/<directory>/state``.

    Every namespace file holds ``schema_version``, ``revision``, ``updated_at``
    and ``data``. Writes take a lock file and bump the revision; a write with a
    stale ``expected_revision`` is refused.
    """

    NAMESPACES = {"context", "tasks", "approvals", "escalations", "events", "reports"}
    SCHEMA_VERSION = 1

    def __init__(self, repo_root: Path, *, directory: str = ".flowpilot") -> None:
        self.repo_root = repo_root.resolve()
        self.state_dir = self.repo_root / directory / "state"
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.lock_file = self.state_dir / ".lock"

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).replace(microsecond=0).isoformat()

    @staticmethod
    def _validate_namespace(namespace: str) -> None:
        if namespace not in FlowStateStore.NAMESPACES:
            raise FlowStateError(f"Unsupported namespace: {namespace}")

    def _file(self, namespace: str) -> Path:
        return self.state_dir / f"{namespace}.json"

    @contextmanager
    def _state_lock(self, timeout_seconds: float = 3.0):
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > timeout_seconds:
                    raise FlowStateError("Timed out waiting for state lock.") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def _read_raw(self, namespace: str) -> Any:
        path = self._file(namespace)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise FlowStateError(f"State file {path} is not valid JSON: {exc}") from exc

    def _write_raw(self, namespace: str, payload: Any) -> None:
        serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        path = self._file(namespace)
        tmp_path = path.with_suffix(".json.tmp")
        tmp_path.write_text(serialized + "\n", encoding="utf-8")
        tmp_path.replace(path)

    def _normalize_envelope(self, raw_payload: Any, default: Any) -> dict[str, Any]:
        if raw_payload is None:
            return {
                "schema_version": self.SCHEMA_VERSION,
                "revision": 0,
                "updated_at": None,
                "data": default,
            }
        if not (
            isinstance(raw_payload, dict)
            and {"schema_version", "revision", "data"} <= raw_payload.keys()
        ):
            raise FlowStateError("State file is missing its schema envelope.")
        schema_version = int(raw_payload["schema_version"])
        if schema_version > self.SCHEMA_VERSION:
            raise FlowStateError(
                f"State schema {schema_version} is newer than supported {self.SCHEMA_VERSION}."
            )
        return {
            "schema_version": schema_version,
            "revision": int(raw_payload["revision"]),
            "updated_at": raw_payload.get("updated_at"),
            "data": raw_payload["data"],
        }

    def get_envelope(self, namespace: str, default: Any | None = None) -> dict[str, Any]:
        self._validate_namespace(namespace)
        default_value = {} if default is None else default
        return self._normalize_envelope(self._read_raw(namespace), default_value)

    def get_json(self, namespace: str, default: Any | None = None) -> Any:
        return self.get_envelope(namespace, default=default)["data"]

    def set_json(self, namespace: str, data: Any, expected_revision: int | None = None) -> int:
        self._validate_namespace(namespace)
        with self._state_lock():
            current = self.get_envelope(namespace)
            current_revision = int(current["revision"])
            if expected_revision is not None and expected_revision != current_revision:
                raise FlowStateError(
                    f"Concurrent state update detected for namespace '{namespace}'."
                )
            envelope = {
                "schema_version": self.SCHEMA_VERSION,
                "revision": current_revision + 1,
                "updated_at": self._utcnow_iso(),
                "data": data,
            }
            self._write_raw(namespace, envelope)
            return current_revision + 1

    def update_json(
        self,
        namespace: str,
        updater: Callable[[Any], Any],
        default: Any | None = None,
    ) -> Any:
        default_value = {} if default is None else default
        last_error: FlowStateError | None = None
        for _ in range(4):
            current = self.get_envelope(namespace, default=default_value)
            updated = updater(current["data"])
            try:
                self.set_json(namespace, updated, expected_revision=int(current["revision"]))
                return updated
            except FlowStateError as exc:
                last_error = exc
                if "Concurrent state update detected" not in str(exc):
                    raise
                time.sleep(0.01)
        raise FlowStateError(str(last_error) if last_error else "State update failed.")

    def _append(self, namespace: str, key: str, item: dict[str, Any]) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            result = payload if isinstance(payload, dict) else {key: []}
            result.setdefault(key, [])
            result[key].append(item)
            return result

        self.update_json(namespace, _updater, default={key: []})

    def _list(self, namespace: str, key: str) -> list[dict[str, Any]]:
        payload = self.get_json(namespace, default={key: []})
        if not isinstance(payload, dict):
            return []
        items = payload.get(key, [])
        return items if isinstance(items, list) else []

    def get_context(self) -> dict[str, Any]:
        context = self.get_json("context", default={})
        return context if isinstance(context, dict) else {}

    def set_context(self, context: dict[str, Any]) -> None:
        self.set_json("context", context)

    def update_context(self, **changes: Any) -> dict[str, Any]:
        def _updater(payload: Any) -> dict[str, Any]:
            result = dict(payload) if isinstance(payload, dict) else {}
            result.update(changes)
            return result

        return self.update_json("context", _updater)

    def get_tasks(self) -> list[dict[str, Any]]:
        return self._list("tasks", "task_queue")

    def set_tasks(self, tasks: list[dict[str, Any]]) -> None:
        self.set_json("tasks", {"task_queue": tasks})

    def upsert_task(self, task: dict[str, Any]) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            result = payload if isinstance(payload, dict) else {"task_queue": []}
            queue = [item for item in result.get("task_queue", []) if isinstance(item, dict)]
            for index, item in enumerate(queue):
                if item.get("id") == task.get("id"):
                    queue[index] = task
                    break
            else:
                queue.append(task)
            result["task_queue"] = queue
            return result

        self.update_json("tasks", _updater, default={"task_queue": []})

    def get_approvals(self) -> list[dict[str, Any]]:
        return self._list("approvals", "approvals")

    def add_approval(self, approval: dict[str, Any]) -> None:
        self._append("approvals", "approvals", approval)

    def get_escalations(self) -> list[dict[str, Any]]:
        return self._list("escalations", "escalations")

    def add_escalation(self, escalation: dict[str, Any]) -> None:
        self._append("escalations", "escalations", escalation)

    def get_events(self) -> list[dict[str, Any]]:
        return self._list("events", "events")

    def add_event(self, event: dict[str, Any]) -> None:
        self._append("events", "events", event)

    def get_reports(self) -> list[dict[str, Any]]:
        return self._list("reports", "reports")

    def add_report(self, report: dict[str, Any]) -> None:
        self._append("reports", "reports", report)
