from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import structlog
from openai import OpenAI, OpenAIError

from order.backends.base import AgentBackend, BackendExecutionError
from order.backends.codex import CodexBackend

logger = structlog.get_logger()


class CodexSDKBackend(AgentBackend):
    """Runs decision steps through the OpenAI Responses API.

    Falls back to the Codex CLI when no client can be constructed (for
    example when no API key is configured).
    """

    name = "codex_sdk"

    def __init__(
        self,
        *,
        model: str = "gpt-5-codex",
        working_directory: Path | None = None,
        client: OpenAI | None = None,
    ) -> None:
        self.model = model
        self.working_directory = working_directory
        self.cli_fallback = CodexBackend(working_directory=working_directory)
        self._client = client
        self._client_checked = client is not None

    def _get_client(self) -> OpenAI | None:
        if not self._client_checked:
            self._client_checked = True
            try:
                self._client = OpenAI()
            except OpenAIError as exc:
                logger.info("codex_sdk_unavailable", reason=str(exc))
                self._client = None
        return self._client

    @staticmethod
    def _build_user_input(user_prompt: str, context: dict[str, Any]) -> str:
        payload = {
            key: value
            for key, value in context.items()
            if not key.startswith("_") and key != "model"
        }
        if not payload:
            return user_prompt
        rendered = json.dumps(payload, ensure_ascii=False, indent=2)
        return f"{user_prompt}\n\nContext JSON:\n{rendered}"

    @staticmethod
    def _extract_text(payload: Any) -> str:
        output_text = getattr(payload, "output_text", None)
        if isinstance(output_text, str):
            return output_text
        if isinstance(payload, dict) and isinstance(payload.get("output_text"), str):
            return payload["output_text"]
        return ""

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        client = self._get_client()
        if client is None:
            async for chunk in self.cli_fallback.execute(system_prompt, user_prompt, context):
                yield chunk
            return

        requested_model = context.get("model")
        model_name = (
            requested_model.strip()
            if isinstance(requested_model, str) and requested_model.strip()
            else self.model
        )
        prompt = self._build_user_input(user_prompt, context)

        def _request() -> Any:
            return client.responses.create(
                model=model_name,
                input=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": prompt},
                ],
            )

        try:
            payload = await asyncio.to_thread(_request)
        except OpenAIError as exc:
            raise BackendExecutionError(
                f"Codex SDK execution failed: {exc}",
                backend=self.name,
                retriable=True,
            ) from exc

        content = self._extract_text(payload).strip()
        if content:
            yield content
