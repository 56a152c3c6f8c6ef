from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import structlog

from order.backends.base import AgentBackend, BackendExecutionError, BackendProcessError

logger = structlog.get_logger()


class CodexBackend(AgentBackend):
    name = "codex"

    def __init__(self, binary: str = "codex", working_directory: Path | None = None) -> None:
        self.binary = binary
        self.working_directory = working_directory

    def build_command(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> list[str]:
        command = [
            self.binary,
            "exec",
            "--json",
            "--full-auto",
            "-c",
            f"instructions={json.dumps(system_prompt, ensure_ascii=False)}",
        ]
        requested_model = context.get("model")
        if isinstance(requested_model, str) and requested_model.strip():
            command.extend(["-m", requested_model.strip()])
        command.append(self._build_user_prompt(user_prompt, context))
        return command

    @staticmethod
    def _build_user_prompt(user_prompt: str, context: dict[str, Any]) -> str:
        payload = {
            key: value
            for key, value in context.items()
            if not key.startswith("_") and key != "model"
        }
        parts = [user_prompt]
        if payload:
            parts.append("Context JSON:")
            parts.append(json.dumps(payload, ensure_ascii=False, indent=2))
        return "\n\n".join(parts)

    @staticmethod
    def _extract_content(event: dict[str, Any]) -> str:
        item = event.get("item")
        if isinstance(item, dict) and isinstance(item.get("text"), str):
            if item.get("type") in {"agent_message", "assistant_message", None}:
                return item["text"]
        message = event.get("message")
        if isinstance(message, str):
            return message
        if isinstance(message, dict) and isinstance(message.get("content"), str):
            return message["content"]
        content = event.get("content")
        if isinstance(content, str):
            return content
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
        command = self.build_command(system_prompt, user_prompt, context)
        logger.debug("codex_cli_start", command=command[:4], model=context.get("model"))
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.working_directory) if self.working_directory else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"Codex binary not found: {self.binary}",
                backend=self.name,
                retriable=False,
            ) from exc

        if process.stdout is None:
            raise BackendProcessError(
                "Codex backend did not expose stdout.", backend=self.name, retriable=False
            )

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
                    logger.debug("codex_json_parse_fallback", line=line[:200])
                    continue

                if not isinstance(event, dict):
                    continue
                content = self._extract_content(event)
                if content:
                    yield content
        finally:
            if process.returncode is None and not process.stdout.at_eof():
                process.kill()

        return_code = await process.wait()
        stderr_output = ""
        if process.stderr is not None:
            stderr_output = (await process.stderr.read()).decode("utf-8", errors="replace").strip()
        if return_code != 0:
            logger.warning("codex_cli_exit", exit_code=return_code, stderr=stderr_output[:400])
            raise BackendExecutionError(
                f"Codex backend failed with exit code {return_code}: {stderr_output[:400]}",
                backend=self.name,
                exit_code=return_code,
                retriable=True,
            )
