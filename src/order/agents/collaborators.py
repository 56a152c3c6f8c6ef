from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Any

import structlog

from order.agents.base import AgentResult
from order.agents.skills import (
    ArbiterAgent,
    ConflictResolverAgent,
    FeedbackAgent,
    FixAgent,
    FixReviewerAgent,
    HandoffAgent,
    PlannerAgent,
    RoadmapParserAgent,
    SpecAuthorAgent,
    SpecReviewerAgent,
    TaskExecutorAgent,
    VerifierAgent,
)
from order.backends.base import AgentBackend, BackendExecutionError, collect_output

logger = structlog.get_logger()

EXITED = "EXITED"
TIMEOUT_EXIT_CODE = 124


class Collaborators(ABC):
    """Every external agent the coordinator talks to, one method per capability.

    Inputs are plain context dictionaries (the coordinator also writes them
    into the run record where a step needs durable scratch state); outputs
    are tagged ``AgentResult`` values. Implementations must not raise for
    agent failures: a crashed or timed-out agent is an ``ERROR`` result.
    """

    @abstractmethod
    async def parse_roadmap(self, context: dict[str, Any]) -> AgentResult: ...

    @abstractmethod
    async def create_spec(self, step_id: str, context: dict[str, Any]) -> AgentResult: ...

    @abstractmethod
    async def review_spec(self, spec_path: str, context: dict[str, Any]) -> AgentResult: ...

    @abstractmethod
    async def plan_work(self, spec_path: str, context: dict[str, Any]) -> AgentResult: ...

    @abstractmethod
    async def execute_task(self, task_id: str, *, model: str | None) -> AgentResult:
        """Run the task executor; ``payload["exit_code"]`` carries its exit status."""

    @abstractmethod
    async def resolve_conflict(self, context: dict[str, Any]) -> AgentResult: ...

    @abstractmethod
    async def arbitrate(self, site: str, context: dict[str, Any]) -> AgentResult: ...

    @abstractmethod
    async def fix_checks(self, context: dict[str, Any]) -> AgentResult: ...

    @abstractmethod
    async def review_fix(self, context: dict[str, Any]) -> AgentResult: ...

    @abstractmethod
    async def resolve_feedback(self, context: dict[str, Any]) -> AgentResult: ...

    @abstractmethod
    async def verify_completion(self, step_id: str, context: dict[str, Any]) -> AgentResult: ...

    @abstractmethod
    async def handoff(self, step_id: str, context: dict[str, Any]) -> AgentResult: ...


class SkillCollaborators(Collaborators):
    """Collaborators backed by coding-agent skills.

    Decision steps use ``backend`` (normally a ``ResilientBackend``). The
    task executor runs once on ``executor_backend`` with no retry so a task
    is never dispatched twice by the backend layer.
    """

    def __init__(
        self,
        backend: AgentBackend,
        executor_backend: AgentBackend,
        *,
        model: str | None = None,
        executor_timeout_seconds: float = 7200.0,
    ) -> None:
        self.executor_backend = executor_backend
        self.executor_timeout_seconds = executor_timeout_seconds
        self.roadmap_parser = RoadmapParserAgent(backend, model=model)
        self.spec_author = SpecAuthorAgent(backend, model=model)
        self.spec_reviewer = SpecReviewerAgent(backend, model=model)
        self.planner = PlannerAgent(backend, model=model)
        self.executor = TaskExecutorAgent(executor_backend)
        self.conflict_resolver = ConflictResolverAgent(backend, model=model)
        self.arbiter = ArbiterAgent(backend, model=model)
        self.fixer = FixAgent(backend, model=model)
        self.fix_reviewer = FixReviewerAgent(backend, model=model)
        self.feedback_resolver = FeedbackAgent(backend, model=model)
        self.verifier = VerifierAgent(backend, model=model)
        self.handoff_writer = HandoffAgent(backend, model=model)

    async def parse_roadmap(self, context: dict[str, Any]) -> AgentResult:
        return await self.roadmap_parser.run(context)

    async def create_spec(self, step_id: str, context: dict[str, Any]) -> AgentResult:
        return await self.spec_author.run(context, step_id)

    async def review_spec(self, spec_path: str, context: dict[str, Any]) -> AgentResult:
        return await self.spec_reviewer.run(context, spec_path)

    async def plan_work(self, spec_path: str, context: dict[str, Any]) -> AgentResult:
        return await self.planner.run(context, spec_path)

    async def execute_task(self, task_id: str, *, model: str | None) -> AgentResult:
        context: dict[str, Any] = {"task": task_id}
        if model:
            context["model"] = model
        instruction = self.executor.instruction(task_id)
        logger.info("executor_start", task=task_id, model=model)
        try:
            output = await asyncio.wait_for(
                collect_output(
                    self.executor_backend, self.executor.system_prompt, instruction, context
                ),
                timeout=self.executor_timeout_seconds,
            )
        except TimeoutError:
            logger.warning(
                "executor_timeout", task=task_id, timeout_seconds=self.executor_timeout_seconds
            )
            return AgentResult(verdict=EXITED, payload={"exit_code": TIMEOUT_EXIT_CODE})
        except BackendExecutionError as exc:
            exit_code = exc.exit_code if exc.exit_code is not None else 1
            logger.warning("executor_failed", task=task_id, exit_code=exit_code, error=str(exc))
            return AgentResult(verdict=EXITED, payload={"exit_code": exit_code, "error": str(exc)})
        logger.info("executor_exit", task=task_id, exit_code=0)
        return AgentResult(verdict=EXITED, payload={"exit_code": 0}, raw=output)

    async def resolve_conflict(self, context: dict[str, Any]) -> AgentResult:
        return await self.conflict_resolver.run(context, f"#{context.get('pr')}")

    async def arbitrate(self, site: str, context: dict[str, Any]) -> AgentResult:
        return await self.arbiter.run({"site": site, **context}, site)

    async def fix_checks(self, context: dict[str, Any]) -> AgentResult:
        return await self.fixer.run(context, f"#{context.get('pr')}")

    async def review_fix(self, context: dict[str, Any]) -> AgentResult:
        return await self.fix_reviewer.run(context, f"#{context.get('pr')}")

    async def resolve_feedback(self, context: dict[str, Any]) -> AgentResult:
        return await self.feedback_resolver.run(context, f"#{context.get('pr')}")

    async def verify_completion(self, step_id: str, context: dict[str, Any]) -> AgentResult:
        return await self.verifier.run(context, step_id)

    async def handoff(self, step_id: str, context: dict[str, Any]) -> AgentResult:
        return await self.handoff_writer.run(context, step_id)
