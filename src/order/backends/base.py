from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any


class BackendExecutionError(RuntimeError):
    """Raised when an agent process fails."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class BackendTimeoutError(BackendExecutionError):
    """Raised when an agent process exceeds its timeout."""


class BackendProcessError(BackendExecutionError):
    """Raised when an agent process cannot be started or supervised."""


class AgentBackend(ABC):
    name: str = "agent"

    @abstractmethod
    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        """Run one agent invocation to completion, streaming its text output."""


async def collect_output(
    backend: AgentBackend,
    system_prompt: str,
    user_prompt: str,
    context: dict[str, Any],
) -> str:
    chunks: list[str] = []
    async for chunk in backend.execute(system_prompt, user_prompt, context):
        chunks.append(chunk)
    return "\n".join(chunks).strip()
