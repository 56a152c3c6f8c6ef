from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import Any

import structlog

from order.backends.base import (
    AgentBackend,
    BackendExecutionError,
    BackendTimeoutError,
    collect_output,
)

logger = structlog.get_logger()

BackendEventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 1
    backoff_seconds: float = 0.5
    timeout_seconds: float = 90.0


class ResilientBackend(AgentBackend):
    """Wraps primary/fallback backends with timeout, retry, and failover.

    Only used for decision steps, which are safe to repeat. Each attempt is
    collected fully before anything is yielded, so a retried attempt never
    interleaves output with a failed one.
    """

    name = "resilient"

    def __init__(
        self,
        primary_name: str,
        primary_backend: AgentBackend,
        fallback_name: str,
        fallback_backend: AgentBackend,
        retry_policy: RetryPolicy,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.primary_name = primary_name
        self.primary_backend = primary_backend
        self.fallback_name = fallback_name
        self.fallback_backend = fallback_backend
        self.retry_policy = retry_policy
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        name = event.pop("event")
        logger.info(name, **event)
        if self.event_hook:
            self.event_hook({"event": name, **event})

    async def _attempt(
        self,
        backend: AgentBackend,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> str:
        try:
            return await asyncio.wait_for(
                collect_output(backend, system_prompt, user_prompt, context),
                timeout=self.retry_policy.timeout_seconds,
            )
        except TimeoutError as exc:
            raise BackendTimeoutError(
                f"Backend request timed out after {self.retry_policy.timeout_seconds:.1f}s",
                retriable=True,
            ) from exc

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        attempts: list[tuple[str, AgentBackend]] = [(self.primary_name, self.primary_backend)]
        if self.fallback_name != self.primary_name:
            attempts.append((self.fallback_name, self.fallback_backend))

        errors: list[str] = []
        for index, (backend_name, backend) in enumerate(attempts):
            if index > 0:
                self._emit({"event": "backend_failover_start", "backend": backend_name})
            for attempt in range(self.retry_policy.max_retries + 1):
                if attempt > 0:
                    delay = self.retry_policy.backoff_seconds * (2 ** (attempt - 1))
                    self._emit(
                        {
                            "event": "backend_retry",
                            "backend": backend_name,
                            "attempt": attempt,
                            "delay_seconds": delay,
                        }
                    )
                    await asyncio.sleep(delay)
                try:
                    output = await self._attempt(backend, system_prompt, user_prompt, context)
                except BackendExecutionError as exc:
                    errors.append(f"{backend_name}[{attempt}]: {exc}")
                    self._emit(
                        {
                            "event": "backend_attempt_failed",
                            "backend": backend_name,
                            "attempt": attempt,
                            "error": str(exc),
                            "retriable": exc.retriable,
                        }
                    )
                    if not exc.retriable:
                        break
                    continue
                if index > 0:
                    self._emit(
                        {
                            "event": "backend_fallback_success",
                            "backend": backend_name,
                            "attempt": attempt,
                        }
                    )
                yield output
                return

        summary = "; ".join(errors[-6:])
        raise BackendExecutionError(
            f"All backend attempts failed. {summary}",
            backend=self.name,
            retriable=False,
        )
