from __future__ import annotations

from dataclasses import dataclass

import structlog

from order.config import ProjectConfig
from order.host import BeadsTracker, CodeHost, GitCommandError, HostError, TrackerError, Workspace
from order.queue import TaskDescriptor
from order.state import RunRecord, RunStore

logger = structlog.get_logger()


@dataclass(frozen=True, slots=True)
class LocatedPR:
    number: int
    branch: str
    strategy: str


class OutcomeRecorder:
    """Turns a finished executor run into a success or failure record.

    The executor's exit code is only a coarse signal. The PR it produced is
    located independently, first by the exact task branch, then through the
    issue tracker reference, then by a suffix match over open PRs. A clean
    exit with no PR gets one recovery attempt before it is recorded as a
    failure.
    """

    def __init__(
        self,
        store: RunStore,
        workspace: Workspace,
        host: CodeHost,
        project: ProjectConfig,
        *,
        tracker: BeadsTracker | None = None,
    ) -> None:
        self.store = store
        self.workspace = workspace
        self.host = host
        self.project = project
        self.tracker = tracker

    def branch_for(self, task_id: str) -> str:
        return f"{self.project.branch_prefix}{task_id}"

    def _issue_ref(self, task: TaskDescriptor) -> str | None:
        if task.issue_ref:
            return task.issue_ref
        if self.tracker is None:
            return None
        try:
            return self.tracker.external_ref(task.id)
        except TrackerError as exc:
            logger.info("tracker_lookup_failed", task=task.id, error=str(exc))
            return None

    def _find_exact(self, branch: str) -> int | None:
        try:
            matches = self.host.find_prs(branch)
        except HostError as exc:
            logger.info("pr_lookup_failed", branch=branch, error=str(exc))
            return None
        open_first = sorted(matches, key=lambda pr: (pr.state.upper() != "OPEN", -pr.number))
        return open_first[0].number if open_first else None

    def locate_pr(self, task: TaskDescriptor) -> LocatedPR | None:
        branch = self.branch_for(task.id)
        number = self._find_exact(branch)
        if number is not None:
            return LocatedPR(number=number, branch=branch, strategy="exact_branch")

        issue_ref = self._issue_ref(task)
        if issue_ref:
            for candidate in (self.branch_for(issue_ref), issue_ref):
                number = self._find_exact(candidate)
                if number is not None:
                    return LocatedPR(number=number, branch=candidate, strategy="issue_ref")

        suffixes = [task.id] + ([issue_ref] if issue_ref else [])
        try:
            open_prs = self.host.list_open_prs()
        except HostError as exc:
            logger.info("pr_list_failed", task=task.id, error=str(exc))
            return None
        for pr in sorted(open_prs, key=lambda item: -item.number):
            if any(pr.head_ref.endswith(suffix) for suffix in suffixes):
                return LocatedPR(number=pr.number, branch=pr.head_ref, strategy="suffix_match")
        return None

    def recover(self, task: TaskDescriptor) -> LocatedPR | None:
        """Commit leftover work under the source directories, push it, and open a draft PR."""
        branch = self.branch_for(task.id)
        try:
            staged = self.workspace.stage_paths(self.project.source_dirs)
            if staged:
                self.workspace.commit(f"{task.id}: recover uncommitted executor output")
            self.workspace.push(branch)
            number = self.host.create_draft_pr(
                head=branch,
                base=self.project.trunk,
                title=f"{task.id}",
                body=(
                    f"Recovered output of task `{task.id}`; "
                    "the executor exited without opening a PR."
                ),
            )
        except (GitCommandError, HostError) as exc:
            logger.warning("outcome_recovery_failed", task=task.id, error=str(exc))
            return None
        logger.info("outcome_recovered", task=task.id, pr=number, staged=len(staged))
        return LocatedPR(number=number, branch=branch, strategy="recovery")

    def capture(self, task: TaskDescriptor, exit_code: int) -> bool:
        """Record the outcome of ``task``. Returns True for a success record."""
        if exit_code != 0:
            self.record_failure(task.id, f"executor exited with status {exit_code}")
            return False
        located = self.locate_pr(task) or self.recover(task)
        if located is None:
            self.record_failure(task.id, "executor succeeded but no PR was found or recovered")
            return False
        self.record_success(task.id, located)
        return True

    def record_success(self, task_id: str, located: LocatedPR) -> None:
        def _apply(record: RunRecord) -> None:
            record.mark_completed(task_id)
            record.consecutive_failures = 0
            record.register_pr(located.number, task_id, located.branch)

        self.store.update(_apply)
        logger.info(
            "task_completed", task=task_id, pr=located.number, strategy=located.strategy
        )

    def record_failure(self, task_id: str, reason: str) -> None:
        def _apply(record: RunRecord) -> None:
            record.mark_failed(task_id)
            record.consecutive_failures += 1

        self.store.update(_apply)
        logger.warning("task_failed", task=task_id, reason=reason)
