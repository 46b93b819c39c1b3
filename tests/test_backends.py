import asyncio
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest

from flowpilot.backends import RetryPolicy
from flowpilot.backends.base import AgentBackend, BackendExecutionError
from flowpilot.backends.claude import ClaudeCodeBackend
from flowpilot.backends.codex import CodexBackend
from flowpilot.backends.codex_sdk import CodexSDKBackend
from flowpilot.backends.resilient import ResilientBackend


class AlwaysFailBackend(AgentBackend):
    def __init__(self, retriable: bool = True) -> None:
        self.retriable = retriable
        self.calls = 0

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt, context, tools
        self.calls += 1
        raise BackendExecutionError("boom", backend="fake", retriable=self.retriable)
        yield ""  # pragma: no cover


class SuccessBackend(AgentBackend):
    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt, context, tools
        yield "ok"


def _collect(backend: AgentBackend, context: dict[str, Any] | None = None) -> str:
    async def _run() -> str:
        parts: list[str] = []
        async for part in backend.execute("system", "user", context=context or {}):
            parts.append(part)
        return "".join(parts)

    return asyncio.run(_run())


def test_codex_build_command_shape() -> None:
    backend = CodexBackend(binary="codex", working_directory=Path("."))
    command = backend.build_command(
        system_prompt="system",
        user_prompt="implement feature",
        context={"task_id": "T1", "model": "gpt-5-codex"},
        tools=["read_file", "write_file"],
    )

    assert command[0:2] == ["codex", "exec"]
    assert "--json" in command
    assert "-m" in command
    assert "gpt-5-codex" in command
    assert any(part.startswith("instructions=") for part in command)
    assert "implement feature" in command[-1]
    assert "Context JSON:" in command[-1]
    assert "Allowed tools:" in command[-1]


def test_claude_build_command_shape() -> None:
    backend = ClaudeCodeBackend(binary="claude", working_directory=Path("."))
    command = backend.build_command(
        "You review documents.",
        "review docs/design/checkout.md",
        {"role": "document-reviewer", "_working_directory": "/tmp/ignored"},
        ["read_file", "search"],
    )

    assert command[0:2] == ["claude", "-p"]
    assert "--output-format" in command
    assert "stream-json" in command
    assert command[command.index("--append-system-prompt") + 1] == "You review documents."
    assert command[command.index("--allowedTools") + 1] == "read_file,search"
    assert "_working_directory" not in command[2]


def test_resilient_backend_retries_then_falls_back() -> None:
    events: list[dict[str, Any]] = []
    primary = AlwaysFailBackend()

    backend = ResilientBackend(
        primary_name="claude",
        primary_backend=primary,
        fallback_name="codex",
        fallback_backend=SuccessBackend(),
        retry_policy=RetryPolicy(max_retries=1, backoff_seconds=0.0, timeout_seconds=5.0),
        event_hook=events.append,
    )

    output = _collect(backend, {"role": "task-executor"})

    assert output == "ok"
    assert primary.calls == 2
    event_names = [event["event"] for event in events]
    assert event_names.count("backend_attempt_failed") == 2
    assert "backend_retry" in event_names
    assert "backend_fallback_success" in event_names
    assert {event["role"] for event in events} == {"task-executor"}


def test_non_retriable_failure_skips_straight_to_fallback() -> None:
    primary = AlwaysFailBackend(retriable=False)
    backend = ResilientBackend(
        primary_name="claude",
        primary_backend=primary,
        fallback_name="codex",
        fallback_backend=SuccessBackend(),
        retry_policy=RetryPolicy(max_retries=3, backoff_seconds=0.0, timeout_seconds=5.0),
    )

    assert _collect(backend) == "ok"
    assert primary.calls == 1


def test_resilient_backend_raises_when_every_attempt_fails() -> None:
    backend = ResilientBackend(
        primary_name="claude",
        primary_backend=AlwaysFailBackend(),
        fallback_name="codex",
        fallback_backend=AlwaysFailBackend(),
        retry_policy=RetryPolicy(max_retries=0, backoff_seconds=0.0, timeout_seconds=5.0),
    )

    with pytest.raises(BackendExecutionError) as excinfo:
        _collect(backend)
    assert "All backend attempts failed" in str(excinfo.value)
    assert not excinfo.value.retriable


class FakeStdout:
    def __init__(self, lines: list[bytes]) -> None:
        self._lines = lines
        self._index = 0

    def __aiter__(self) -> "FakeStdout":
        return self

    async def __anext__(self) -> bytes:
        if self._index >= len(self._lines):
            raise StopAsyncIteration
        line = self._lines[self._index]
        self._index += 1
        return line


class FakeStderr:
    def __init__(self, text: bytes = b"") -> None:
        self._text = text

    async def read(self) -> bytes:
        return self._text


class FakeProcess:
    def __init__(self, lines: list[bytes], return_code: int = 0, stderr: bytes = b"") -> None:
        self.stdout = FakeStdout(lines)
        self.stderr = FakeStderr(stderr)
        self._return_code = return_code

    async def wait(self) -> int:
        return self._return_code


def _patch_process(monkeypatch: pytest.MonkeyPatch, process: FakeProcess) -> None:
    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        _ = args, kwargs
        return process

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)


def test_cli_backend_streams_content_and_emits_events(monkeypatch: pytest.MonkeyPatch) -> None:
    events: list[dict[str, Any]] = []
    _patch_process(
        monkeypatch,
        FakeProcess(
            [
                b'{"type": "delta", "content": "hel\n',
                b'lo"}\n',
                b"plain text\n",
                b'{"type": "response.completed"}\n',
            ]
        ),
    )

    output = _collect(CodexBackend(event_hook=events.append))

    assert output == "helloplain text"
    assert [event["event"] for event in events] == ["cli_start", "cli_exit"]
    assert events[0]["backend"] == "codex"
    assert events[1]["exit_code"] == 0


def test_cli_backend_raises_on_nonzero_exit(monkeypatch: pytest.MonkeyPatch) -> None:
    _patch_process(monkeypatch, FakeProcess([b"partial\n"], return_code=2, stderr=b"auth"))

    with pytest.raises(BackendExecutionError) as excinfo:
        _collect(ClaudeCodeBackend())
    assert excinfo.value.exit_code == 2
    assert "auth" in str(excinfo.value)


def test_codex_sdk_uses_context_model() -> None:
    captured: dict[str, Any] = {}

    class FakeResponses:
        def create(self, **kwargs: Any) -> dict[str, Any]:
            captured.update(kwargs)
            return {"output_text": '{"status": "completed"}'}

    class FakeClient:
        def __init__(self) -> None:
            self.responses = FakeResponses()

    backend = CodexSDKBackend(model="gpt-5-codex", client=FakeClient())

    output = _collect(backend, context={"model": "gpt-5.3-codex", "task_id": "T1"})

    assert backend.uses_sdk
    assert output == '{"status": "completed"}'
    assert captured["model"] == "gpt-5.3-codex"
    assert captured["input"][0] == {"role": "system", "content": "system"}
    assert '"task_id": "T1"' in captured["input"][1]["content"]


def test_codex_sdk_without_api_key_uses_cli(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)

    backend = CodexSDKBackend(working_directory=Path("."))

    assert not backend.uses_sdk
    assert backend.cli_fallback.build_command("system", "user", {})[:2] == ["codex", "exec"]
