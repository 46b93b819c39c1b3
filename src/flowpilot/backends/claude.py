from __future__ import annotations

from pathlib import Path
from typing import Any

from flowpilot.backends.base import BackendEventHook, CliStreamBackend, render_user_prompt


class ClaudeCodeBackend(CliStreamBackend):
    name = "claude"

    def __init__(
        self,
        binary: str = "claude",
        working_directory: Path | None = None,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        super().__init__(binary, working_directory=working_directory, event_hook=event_hook)

    def build_command(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> list[str]:
        command = [
            self.binary,
            "-p",
            render_user_prompt(user_prompt, context, tools),
            "--output-format",
            "stream-json",
            "--verbose",
        ]
        if system_prompt.strip():
            command.extend(["--append-system-prompt", system_prompt])
        requested_model = context.get("model")
        if isinstance(requested_model, str) and requested_model.strip():
            command.extend(["--model", requested_model.strip()])
        if tools:
            command.extend(["--allowedTools", ",".join(tools)])
        return command
