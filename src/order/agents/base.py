from __future__ import annotations

import json
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

import structlog

from order.backends.base import AgentBackend, BackendExecutionError, collect_output

logger = structlog.get_logger()

UNKNOWN = "UNKNOWN"
ERROR = "ERROR"

VERDICT_LINE_PATTERN = re.compile(r"\bVERDICT\s*[:=]\s*([A-Z_]+)\b")


@dataclass(slots=True)
class AgentResult:
    """Tagged result of one external capability: a verdict plus its payload."""

    verdict: str
    payload: dict[str, Any] = field(default_factory=dict)
    raw: str = ""


def extract_json_objects(raw_text: str) -> list[dict[str, Any]]:
    payloads: list[dict[str, Any]] = []
    for raw_line in raw_text.splitlines():
        line = raw_line.strip().strip("`").strip()
        if not (line.startswith("{") and line.endswith("}")):
            continue
        try:
            parsed = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            payloads.append(parsed)
    return payloads


def parse_agent_result(raw_text: str, allowed: Iterable[str]) -> AgentResult:
    """Read the verdict an agent reported.

    The last JSON object line carrying a ``verdict`` key wins. Otherwise a
    ``VERDICT: X`` line, then the last bare allowed keyword, is accepted.
    Anything else is ``UNKNOWN``.
    """
    allowed_set = {item.upper() for item in allowed}
    for payload in reversed(extract_json_objects(raw_text)):
        verdict = payload.get("verdict")
        if isinstance(verdict, str) and verdict.strip():
            body = {key: value for key, value in payload.items() if key != "verdict"}
            normalized = verdict.strip().upper()
            if normalized not in allowed_set:
                body["reported_verdict"] = normalized
                normalized = UNKNOWN
            return AgentResult(verdict=normalized, payload=body, raw=raw_text)

    matches = VERDICT_LINE_PATTERN.findall(raw_text.upper())
    for candidate in reversed(matches):
        if candidate in allowed_set:
            return AgentResult(verdict=candidate, raw=raw_text)

    if allowed_set:
        keyword = re.compile(
            r"\b(" + "|".join(sorted(map(re.escape, allowed_set), key=len, reverse=True)) + r")\b"
        )
        found = keyword.findall(raw_text.upper())
        if found:
            return AgentResult(verdict=found[-1], raw=raw_text)
    return AgentResult(verdict=UNKNOWN, raw=raw_text)


class SkillAgent:
    """One external capability, run as a slash-command skill of a coding agent."""

    role: str = "skill"
    command: str = ""
    verdicts: tuple[str, ...] = ()
    fallback_prompt: str = "You are an autonomous engineering agent."

    def __init__(self, backend: AgentBackend, *, model: str | None = None) -> None:
        self.backend = backend
        self.model = model
        self.system_prompt = self._system_prompt()

    def _system_prompt(self) -> str:
        verdict_list = ", ".join(self.verdicts)
        lines = [self.fallback_prompt.strip()]
        if verdict_list:
            lines.append(
                "When finished, print exactly one JSON object on its own line with a "
                f'"verdict" key set to one of: {verdict_list}.'
            )
        return "\n".join(lines)

    def instruction(self, argument: str | None = None) -> str:
        return f"{self.command} {argument}".strip() if argument else self.command

    async def run(self, context: dict[str, Any], argument: str | None = None) -> AgentResult:
        run_context = dict(context)
        if self.model:
            run_context["model"] = self.model
        instruction = self.instruction(argument)
        logger.info("agent_invoke", role=self.role, instruction=instruction)
        try:
            output = await collect_output(
                self.backend, self.system_prompt, instruction, run_context
            )
        except BackendExecutionError as exc:
            logger.warning("agent_failed", role=self.role, error=str(exc), exit_code=exc.exit_code)
            return AgentResult(
                verdict=ERROR,
                payload={"error": str(exc), "exit_code": exc.exit_code},
            )
        result = parse_agent_result(output, self.verdicts)
        logger.info("agent_verdict", role=self.role, verdict=result.verdict)
        return result
