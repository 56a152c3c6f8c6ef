from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import structlog

from order.agents import AgentResult, Collaborators
from order.arbitration import MERGE_BATCH, SPEC_REVISIONS, TASK_FAILURE, Arbiter
from order.config import OrderConfig
from order.dispatch import TaskDispatcher
from order.pipeline import KillSwitchEngaged, PRIntegrationPipeline
from order.queue import TaskDescriptor, TaskQueue
from order.safety import SafetyGate
from order.state import (
    Decision,
    LifecycleState,
    RunRecord,
    RunStore,
    StageResult,
    Verdict,
)
from order.state.models import utcnow_iso
from order.state.store import RecordUpdater

logger = structlog.get_logger()

EXIT_SUCCESS = 0
EXIT_HALT = 1
EXIT_GATE_STOP = 2


@dataclass(slots=True)
class Transition:
    target: LifecycleState
    result: StageResult
    mutate: RecordUpdater | None = None


@dataclass(slots=True)
class Stay:
    """Stage failed before it could pick an edge; count the failure and run it again."""

    reason: str


@dataclass(slots=True)
class Stop:
    exit_code: int
    reason: str


@dataclass(slots=True)
class RunOutcome:
    exit_code: int
    reason: str
    state: LifecycleState
    steps_completed: int = 0


StageStep = Transition | Stay | Stop
Handler = Callable[[RunRecord], Awaitable[StageStep]]


def _increment_failures(record: RunRecord) -> None:
    record.consecutive_failures += 1


def _reset_failures(record: RunRecord) -> None:
    record.consecutive_failures = 0


class LifecycleDriver:
    """Runs the roadmap lifecycle one stage at a time until success, HALT or a gate stop.

    Every stage reads the run record fresh, does its work, and hands back the
    edge to take; the store validates and persists the edge atomically. A
    restarted driver therefore resumes at the last persisted state.
    """

    def __init__(
        self,
        config: OrderConfig,
        repo_root: Path,
        store: RunStore,
        gate: SafetyGate,
        agents: Collaborators,
        dispatcher: TaskDispatcher,
        pipeline: PRIntegrationPipeline,
    ) -> None:
        self.config = config
        self.repo_root = repo_root
        self.store = store
        self.gate = gate
        self.agents = agents
        self.dispatcher = dispatcher
        self.pipeline = pipeline
        self.arbiter = Arbiter(store, agents)
        self._handlers: dict[LifecycleState, Handler] = {
            LifecycleState.INIT: self._on_init,
            LifecycleState.PARSE_ROADMAP: self._on_parse_roadmap,
            LifecycleState.CREATE_SPEC: self._on_create_spec,
            LifecycleState.REVIEW_SPEC: self._on_review_spec,
            LifecycleState.PLAN_WORK: self._on_plan_work,
            LifecycleState.EXECUTE_TASKS: self._on_execute_tasks,
            LifecycleState.MERGE_PRS: self._on_merge_prs,
            LifecycleState.VERIFY_COMPLETION: self._on_verify_completion,
            LifecycleState.HANDOFF: self._on_handoff,
        }
        missing = [state.value for state in LifecycleState if state not in self._handlers]
        if missing:
            raise ValueError(f"No stage handler for: {', '.join(missing)}")

    # -- helpers -----------------------------------------------------------

    @property
    def queue_path(self) -> Path:
        return self.config.queue_path(self.repo_root)

    def _load_queue(self) -> TaskQueue:
        return TaskQueue.load(self.queue_path)

    def _default_spec_path(self, record: RunRecord) -> str:
        step_id = record.step_id or str(record.step)
        return str(Path(self.config.project.specs_dir) / f"{step_id}.md")

    def _context(self, record: RunRecord, **extra: Any) -> dict[str, Any]:
        context: dict[str, Any] = {
            "step": record.step,
            "step_id": record.step_id,
            "title": record.step_title,
            "spec_path": record.spec_path,
            "roadmap": self.config.project.roadmap_file,
            "queue_file": str(self.config.queue_path(Path())),
        }
        context.update(extra)
        return {key: value for key, value in context.items() if value is not None}

    @staticmethod
    def _halt(site: str, detail: str) -> Stop:
        logger.error("run_halted", site=site, detail=detail)
        return Stop(EXIT_HALT, f"HALT at {site}: {detail}")

    def _begin_session(self) -> None:
        def _apply(record: RunRecord) -> None:
            record.iterations = 0
            record.session_started_at = utcnow_iso()
            record.clear_scratch()

        self.store.update(_apply)

    # -- run loop ------------------------------------------------------------

    async def run(self, *, max_steps: int | None = None) -> RunOutcome:
        self.store.initialize()
        self._begin_session()
        steps_completed = 0
        while True:
            record = self.store.read()
            decision = self.gate.check(record)
            if not decision.allowed:
                return self._finish(EXIT_GATE_STOP, decision.reason, record.state, steps_completed)

            def _tick(current: RunRecord) -> None:
                current.iterations += 1

            record = self.store.update(_tick)
            state = record.state
            logger.info(
                "stage_start", state=state.value, step=record.step, iteration=record.iterations
            )
            try:
                step = await self._handlers[state](record)
            except KillSwitchEngaged as exc:
                return self._finish(EXIT_GATE_STOP, str(exc), state, steps_completed)

            if isinstance(step, Stop):
                return self._finish(step.exit_code, step.reason, state, steps_completed)
            if isinstance(step, Stay):
                self.store.update(_increment_failures)
                logger.warning("stage_retry", state=state.value, reason=step.reason)
                continue

            updated = self.store.transition(step.target, step.result, step.mutate)
            logger.info(
                "state_transition",
                source=state.value,
                target=step.target.value,
                verdict=step.result.verdict.value,
                step=updated.step,
            )
            if step.result.verdict is Verdict.HANDOFF_COMPLETE:
                steps_completed += 1
                if max_steps is not None and steps_completed >= max_steps:
                    return self._finish(
                        EXIT_SUCCESS,
                        f"Step limit reached ({steps_completed}/{max_steps})",
                        updated.state,
                        steps_completed,
                    )

    @staticmethod
    def _finish(
        exit_code: int, reason: str, state: LifecycleState, steps_completed: int
    ) -> RunOutcome:
        log = logger.info if exit_code == EXIT_SUCCESS else logger.warning
        log("run_finished", exit_code=exit_code, reason=reason, state=state.value)
        return RunOutcome(
            exit_code=exit_code, reason=reason, state=state, steps_completed=steps_completed
        )

    # -- stages --------------------------------------------------------------

    async def _on_init(self, record: RunRecord) -> StageStep:
        result = await self.agents.parse_roadmap(self._context(record))
        if result.verdict == Verdict.ROADMAP_COMPLETE:
            return Stop(EXIT_SUCCESS, "Roadmap complete")
        if result.verdict != Verdict.STEP_SELECTED:
            return Stay(f"roadmap parser returned {result.verdict}")

        payload = result.payload
        step_id = str(payload.get("step") or payload.get("step_id") or record.step)
        title = payload.get("title")
        spec_path = payload.get("spec_path")

        def _select(current: RunRecord) -> None:
            current.clear_scratch()
            current.step_id = step_id
            current.step_title = str(title) if title else None
            current.spec_path = str(spec_path) if spec_path else None
            current.spec_revision = 0

        return Transition(
            LifecycleState.PARSE_ROADMAP,
            StageResult(Verdict.STEP_SELECTED, {"step": step_id}),
            _select,
        )

    async def _on_parse_roadmap(self, record: RunRecord) -> StageStep:
        spec_path = record.spec_path or self._default_spec_path(record)
        if (self.repo_root / spec_path).is_file():
            logger.info("spec_exists", step=record.step_id, spec_path=spec_path)

            def _keep(current: RunRecord) -> None:
                current.spec_path = spec_path

            return Transition(
                LifecycleState.REVIEW_SPEC,
                StageResult(Verdict.SPEC_EXISTS, {"spec_path": spec_path}),
                _keep,
            )

        def _clear(current: RunRecord) -> None:
            current.spec_path = None

        return Transition(
            LifecycleState.CREATE_SPEC,
            StageResult(Verdict.STEP_SELECTED, {"step": record.step_id}),
            _clear,
        )

    async def _on_create_spec(self, record: RunRecord) -> StageStep:
        if record.spec_revision >= self.config.spec.max_revisions:
            return await self._arbitrate_spec(record)

        context = self._context(record, revision=record.spec_revision + 1)
        if record.verdict is Verdict.SPEC_REJECTED and record.last_result is not None:
            context["review"] = record.last_result.payload
        result = await self.agents.create_spec(record.step_id or str(record.step), context)

        if result.verdict == Verdict.SPEC_CREATED:
            spec_path = str(result.payload.get("spec_path") or self._default_spec_path(record))

            def _created(current: RunRecord) -> None:
                current.spec_revision += 1
                current.spec_path = spec_path

            return Transition(
                LifecycleState.REVIEW_SPEC,
                StageResult(Verdict.SPEC_CREATED, {"spec_path": spec_path}),
                _created,
            )

        def _failed(current: RunRecord) -> None:
            current.spec_revision += 1
            current.consecutive_failures += 1

        return Transition(
            LifecycleState.CREATE_SPEC,
            StageResult(Verdict.SPEC_REJECTED, self._failure_payload(result)),
            _failed,
        )

    async def _arbitrate_spec(self, record: RunRecord) -> StageStep:
        last = record.last_result.payload if record.last_result else {}
        decision = await self.arbiter.decide(
            SPEC_REVISIONS,
            {"step": record.step_id, "revisions": record.spec_revision, "last_review": last},
        )
        if decision is Decision.RETRY:

            def _retry(current: RunRecord) -> None:
                current.spec_revision = 0
                current.consecutive_failures = 0

            return Transition(
                LifecycleState.CREATE_SPEC,
                StageResult(Verdict.RETRY, {"site": SPEC_REVISIONS}),
                _retry,
            )
        if decision is Decision.SKIP:
            skipped = record.step_id

            def _skip(current: RunRecord) -> None:
                current.reset_step()
                current.step += 1

            return Transition(
                LifecycleState.INIT, StageResult(Verdict.SPEC_SKIPPED, {"step": skipped}), _skip
            )
        return self._halt(SPEC_REVISIONS, f"spec for step {record.step_id} not approved")

    async def _on_review_spec(self, record: RunRecord) -> StageStep:
        spec_path = record.spec_path or self._default_spec_path(record)
        result = await self.agents.review_spec(spec_path, self._context(record))
        if result.verdict == "APPROVED":

            def _approved(current: RunRecord) -> None:
                current.plan_ready = False

            return Transition(
                LifecycleState.PLAN_WORK,
                StageResult(Verdict.SPEC_APPROVED, {"spec_path": spec_path}),
                _approved,
            )
        return Transition(
            LifecycleState.CREATE_SPEC,
            StageResult(Verdict.SPEC_REJECTED, self._failure_payload(result)),
        )

    async def _on_plan_work(self, record: RunRecord) -> StageStep:
        if not record.plan_ready:
            spec_path = record.spec_path or self._default_spec_path(record)
            result = await self.agents.plan_work(spec_path, self._context(record))
            if result.verdict != "PLANNED":
                return Transition(
                    LifecycleState.PLAN_WORK,
                    StageResult(Verdict.PLAN_FAILED, self._failure_payload(result)),
                    _increment_failures,
                )

            def _planned(current: RunRecord) -> None:
                current.plan_ready = True

            record = self.store.update(_planned)
        return self._select_task(record)

    def _select_task(self, record: RunRecord) -> Transition:
        task = self._load_queue().next_pending(record.completed, record.failed)
        if task is None:
            verdict = Verdict.TASKS_FAILED if record.failed else Verdict.TASKS_COMPLETE
            logger.info(
                "queue_exhausted", completed=len(record.completed), failed=len(record.failed)
            )
            return Transition(
                LifecycleState.MERGE_PRS,
                StageResult(
                    verdict, {"completed": len(record.completed), "failed": list(record.failed)}
                ),
            )

        def _select(current: RunRecord) -> None:
            current.in_flight = task.id

        logger.info("task_selected", task=task.id)
        return Transition(
            LifecycleState.EXECUTE_TASKS,
            StageResult(Verdict.TASK_SELECTED, {"task": task.id}),
            _select,
        )

    async def _on_execute_tasks(self, record: RunRecord) -> StageStep:
        if record.verdict is Verdict.TASKS_FAILED:
            return await self._arbitrate_task(record)

        task_id = record.in_flight
        if task_id is None and record.last_result is not None:
            task_id = record.last_result.payload.get("task")
        if not task_id:
            return Transition(
                LifecycleState.PLAN_WORK,
                StageResult(Verdict.RETRY, {"reason": "no task in flight"}),
            )
        task = self._load_queue().get(task_id) or TaskDescriptor(id=task_id)
        result = await self.dispatcher.dispatch(task)
        if result.verdict is Verdict.TASK_COMPLETED:
            return Transition(LifecycleState.MERGE_PRS, result)
        return Transition(LifecycleState.EXECUTE_TASKS, result)

    async def _arbitrate_task(self, record: RunRecord) -> StageStep:
        task_id = record.last_result.payload.get("task") if record.last_result else None
        decision = await self.arbiter.decide(
            TASK_FAILURE,
            {
                "task": task_id,
                "failed": list(record.failed),
                "consecutive_failures": record.consecutive_failures,
            },
        )
        if decision is Decision.RETRY:

            def _retry(current: RunRecord) -> None:
                if task_id:
                    current.clear_failed(task_id)
                current.consecutive_failures = 0

            return Transition(
                LifecycleState.PLAN_WORK, StageResult(Verdict.RETRY, {"task": task_id}), _retry
            )
        if decision is Decision.SKIP:
            return Transition(
                LifecycleState.PLAN_WORK, StageResult(Verdict.SKIP, {"task": task_id})
            )
        return self._halt(TASK_FAILURE, f"task {task_id} failed")

    async def _on_merge_prs(self, record: RunRecord) -> StageStep:
        if record.verdict is Verdict.MERGE_BLOCKED:
            return await self._arbitrate_merge(record)

        batch = await self.pipeline.run()
        payload = batch.to_payload()
        if not batch.all_merged:
            for blocker in batch.blockers:
                logger.warning("merge_blocker", blocker=blocker)
            return Transition(
                LifecycleState.MERGE_PRS,
                StageResult(Verdict.MERGE_BLOCKED, payload),
                _increment_failures,
            )

        current = self.store.read()
        remaining = self._load_queue().next_pending(current.completed, current.failed)
        target = LifecycleState.PLAN_WORK if remaining else LifecycleState.VERIFY_COMPLETION
        # Only a pass that merged something counts as progress.
        mutate = _reset_failures if batch.merged else None
        return Transition(target, StageResult(Verdict.ALL_MERGED, payload), mutate)

    async def _arbitrate_merge(self, record: RunRecord) -> StageStep:
        payload = record.last_result.payload if record.last_result else {}
        blocked = record.pending_prs()
        decision = await self.arbiter.decide(
            MERGE_BATCH, {"blockers": payload.get("blockers", []), "prs": blocked}
        )
        if decision is Decision.RETRY:
            return Transition(
                LifecycleState.MERGE_PRS,
                StageResult(Verdict.RETRY, {"prs": blocked}),
                _reset_failures,
            )
        if decision is Decision.SKIP:

            def _skip(current: RunRecord) -> None:
                for number in blocked:
                    if number not in current.skipped_prs:
                        current.skipped_prs.append(number)

            logger.info("merge_blockers_skipped", prs=blocked)
            return Transition(
                LifecycleState.PLAN_WORK, StageResult(Verdict.SKIP, {"skipped_prs": blocked}), _skip
            )
        return self._halt(MERGE_BATCH, "; ".join(payload.get("blockers", [])) or "merge blocked")

    async def _on_verify_completion(self, record: RunRecord) -> StageStep:
        result = await self.agents.verify_completion(
            record.step_id or str(record.step), self._context(record)
        )
        if result.verdict == "VERIFIED":
            return Transition(LifecycleState.HANDOFF, StageResult(Verdict.VERIFIED, result.payload))

        def _gaps(current: RunRecord) -> None:
            current.plan_ready = False
            current.consecutive_failures += 1

        return Transition(
            LifecycleState.PLAN_WORK,
            StageResult(Verdict.VERIFICATION_FAILED, self._failure_payload(result)),
            _gaps,
        )

    async def _on_handoff(self, record: RunRecord) -> StageStep:
        step_id = record.step_id or str(record.step)
        handoff_dir = self.config.handoffs_path(self.repo_root)
        handoff_dir.mkdir(parents=True, exist_ok=True)
        handoff_path = self.config.handoffs_path(Path()) / f"{step_id}.md"
        result = await self.agents.handoff(
            step_id, self._context(record, handoff_path=str(handoff_path))
        )
        payload: dict[str, Any] = {"step": step_id, "handoff_path": str(handoff_path)}
        if result.verdict != Verdict.HANDOFF_COMPLETE:
            # The step is verified; a missing handoff note does not hold the roadmap back.
            logger.warning("handoff_failed", step=step_id, verdict=result.verdict)
            payload["handoff_error"] = result.verdict

        def _advance(current: RunRecord) -> None:
            current.reset_step()
            current.step += 1
            current.steps_completed += 1

        return Transition(
            LifecycleState.INIT, StageResult(Verdict.HANDOFF_COMPLETE, payload), _advance
        )

    @staticmethod
    def _failure_payload(result: AgentResult) -> dict[str, Any]:
        payload = dict(result.payload)
        payload.setdefault("agent_verdict", result.verdict)
        return payload
