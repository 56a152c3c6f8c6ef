from __future__ import annotations

import asyncio
import json
import os
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from order.backends.base import AgentBackend, BackendExecutionError, BackendProcessError


class ClaudeCodeBackend(AgentBackend):
    name = "claude"

    def __init__(
        self,
        binary: str = "claude",
        working_directory: Path | None = None,
        *,
        skip_permissions: bool = True,
    ) -> None:
        self.binary = binary
        self.working_directory = working_directory
        self.skip_permissions = skip_permissions

    def build_command(
        self,
        system_prompt: str,
        user_prompt: str,
        model: str | None = None,
    ) -> list[str]:
        command = [
            self.binary,
            "-p",
            user_prompt,
            "--output-format",
            "stream-json",
            "--verbose",
        ]
        if system_prompt:
            command.extend(["--append-system-prompt", system_prompt])
        if model:
            command.extend(["--model", model])
        if self.skip_permissions:
            command.append("--dangerously-skip-permissions")
        return command

    @staticmethod
    def render_prompt(user_prompt: str, context: dict[str, Any]) -> str:
        payload = {key: value for key, value in context.items() if not key.startswith("_")}
        payload.pop("model", None)
        if not payload:
            return user_prompt
        rendered = json.dumps(payload, ensure_ascii=False, indent=2)
        return f"{user_prompt}\n\nContext JSON:\n{rendered}"

    @staticmethod
    def _extract_content(event: dict[str, Any]) -> str:
        if event.get("type") == "assistant":
            message = event.get("message")
            if isinstance(message, dict):
                content = message.get("content")
                if isinstance(content, list):
                    return "".join(
                        item.get("text", "")
                        for item in content
                        if isinstance(item, dict) and item.get("type") == "text"
                    )
                if isinstance(content, str):
                    return content
        delta = event.get("delta")
        if isinstance(delta, dict) and isinstance(delta.get("text"), str):
            return delta["text"]
        return ""

    @staticmethod
    def _appears_partial_json(raw: str) -> bool:
        return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        model = context.get("model")
        command = self.build_command(
            system_prompt,
            self.render_prompt(user_prompt, context),
            model if isinstance(model, str) and model.strip() else None,
        )
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.working_directory) if self.working_directory else None,
                env=os.environ.copy(),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"Claude binary not found: {self.binary}",
                backend=self.name,
                retriable=False,
            ) from exc

        if process.stdout is None:
            raise BackendProcessError(
                "Claude backend did not expose stdout.", backend=self.name, retriable=False
            )

        emitted = False
        final_result = ""
        parse_buffer = ""
        try:
            async for raw_line in process.stdout:
                line = raw_line.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                candidate = f"{parse_buffer}{line}" if parse_buffer else line
                try:
                    event = json.loads(candidate)
                    parse_buffer = ""
                except json.JSONDecodeError:
                    if self._appears_partial_json(candidate):
                        parse_buffer = candidate
                        continue
                    parse_buffer = ""
                    emitted = True
                    yield line
                    continue

                if not isinstance(event, dict):
                    continue
                if event.get("type") == "result" and isinstance(event.get("result"), str):
                    final_result = event["result"]
                    continue
                content = self._extract_content(event)
                if content:
                    emitted = True
                    yield content
        finally:
            # Cancelled mid-stream (timeout): do not leave the agent running.
            if process.returncode is None and not process.stdout.at_eof():
                process.kill()

        if not emitted and final_result:
            yield final_result

        return_code = await process.wait()
        stderr_output = ""
        if process.stderr is not None:
            stderr_output = (await process.stderr.read()).decode("utf-8", errors="replace").strip()
        if return_code != 0:
            raise BackendExecutionError(
                f"Claude backend failed with exit code {return_code}: {stderr_output[:400]}",
                backend=self.name,
                exit_code=return_code,
                retriable=True,
            )
