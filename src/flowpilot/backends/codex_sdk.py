from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import openai

from flowpilot.backends.base import (
    AgentBackend,
    BackendEventHook,
    BackendExecutionError,
    render_user_prompt,
)
from flowpilot.backends.codex import CodexBackend

logger = logging.getLogger(__name__)


class CodexSDKBackend(AgentBackend):
    """Responses API backend; uses the Codex CLI when no API client can be built."""

    name = "codex_sdk"

    def __init__(
        self,
        *,
        model: str = "gpt-5-codex",
        working_directory: Path | None = None,
        event_hook: BackendEventHook | None = None,
        client: Any | None = None,
    ) -> None:
        self.model = model
        self.event_hook = event_hook
        self.cli_fallback = CodexBackend(
            working_directory=working_directory, event_hook=event_hook
        )
        self._client = client
        if self._client is None:
            try:
                self._client = openai.OpenAI()
            except openai.OpenAIError as exc:
                logger.info("OpenAI client unavailable, using codex CLI: %s", exc)

    @property
    def uses_sdk(self) -> bool:
        return self._client is not None

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook({"backend": self.name, **payload})

    @staticmethod
    def _extract_text(payload: Any) -> str:
        if payload is None:
            return ""
        output_text = getattr(payload, "output_text", None)
        if isinstance(output_text, str):
            return output_text
        if isinstance(payload, dict):
            value = payload.get("output_text")
            if isinstance(value, str):
                return value
        return str(output_text or "")

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        if self._client is None:
            async for chunk in self.cli_fallback.execute(
                system_prompt, user_prompt, context, tools
            ):
                yield chunk
            return

        requested_model = context.get("model")
        model_name = (
            requested_model.strip()
            if isinstance(requested_model, str) and requested_model.strip()
            else self.model
        )
        prompt = render_user_prompt(user_prompt, context, tools)

        def _request() -> Any:
            return self._client.responses.create(
                model=model_name,
                input=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": prompt},
                ],
            )

        self._emit({"event": "sdk_request", "model": model_name})
        try:
            payload = await asyncio.to_thread(_request)
        except openai.APIStatusError as exc:
            raise BackendExecutionError(
                f"Codex SDK execution failed: {exc}",
                backend=self.name,
                exit_code=exc.status_code,
                retriable=exc.status_code >= 500 or exc.status_code == 429,
            ) from exc
        except openai.OpenAIError as exc:
            raise BackendExecutionError(
                f"Codex SDK execution failed: {exc}", backend=self.name, retriable=True
            ) from exc

        content = self._extract_text(payload).strip()
        if content:
            yield content
