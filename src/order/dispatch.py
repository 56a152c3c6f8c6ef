from __future__ import annotations

import structlog

from order.agents import Collaborators
from order.host import GitCommandError, Workspace
from order.outcome import OutcomeRecorder
from order.queue import TaskDescriptor
from order.state import RunStore, StageResult, Verdict

logger = structlog.get_logger()


class TaskDispatcher:
    """Runs one task on a fresh branch cut from the latest trunk.

    The working tree is returned to trunk on every exit path. The verdict is
    read back from the run record after outcome capture has written it.
    """

    def __init__(
        self,
        store: RunStore,
        workspace: Workspace,
        agents: Collaborators,
        outcome: OutcomeRecorder,
        *,
        model: str | None = None,
    ) -> None:
        self.store = store
        self.workspace = workspace
        self.agents = agents
        self.outcome = outcome
        self.model = model

    def _verdict_for(self, task_id: str) -> StageResult | None:
        record = self.store.read()
        if task_id in record.completed:
            return StageResult(Verdict.TASK_COMPLETED, {"task": task_id})
        if task_id in record.failed:
            return StageResult(Verdict.TASKS_FAILED, {"task": task_id})
        return None

    async def dispatch(self, task: TaskDescriptor) -> StageResult:
        # A task that already has an outcome (crash after capture) is not run again.
        settled = self._verdict_for(task.id)
        if settled is not None:
            logger.info("dispatch_skipped_settled", task=task.id, verdict=settled.verdict.value)
            return settled

        branch = self.outcome.branch_for(task.id)
        logger.info("dispatch_start", task=task.id, branch=branch)
        try:
            try:
                self.workspace.start_task_branch(branch)
            except GitCommandError as exc:
                self.outcome.record_failure(task.id, f"could not prepare branch {branch}: {exc}")
            else:
                result = await self.agents.execute_task(task.id, model=self.model)
                exit_code = int(result.payload.get("exit_code", 1))
                self.outcome.capture(task, exit_code)
        finally:
            self.workspace.return_to_trunk()

        verdict = self._verdict_for(task.id)
        if verdict is None:
            # Outcome capture always writes one record; treat a missing one as failure.
            self.outcome.record_failure(task.id, "no outcome recorded")
            verdict = StageResult(Verdict.TASKS_FAILED, {"task": task.id})
        logger.info("dispatch_finished", task=task.id, verdict=verdict.verdict.value)
        return verdict
