from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import structlog

from order.agents import Collaborators
from order.config import CIConfig, MergeConfig, ReviewConfig
from order.host import CodeHost, GitCommandError, HostError, PRSnapshot, Workspace
from order.safety import SafetyGate
from order.state import Decision, PRStatus, RunRecord, RunStore

logger = structlog.get_logger()

Sleep = Callable[[float], Awaitable[None]]


class KillSwitchEngaged(RuntimeError):
    """Raised when the kill switch appears while CI is being polled."""


@dataclass(slots=True)
class BatchResult:
    merged: int = 0
    failed: int = 0
    blockers: list[str] = field(default_factory=list)

    @property
    def all_merged(self) -> bool:
        return self.failed == 0

    def to_payload(self) -> dict[str, Any]:
        return {"merged": self.merged, "failed": self.failed, "blockers": list(self.blockers)}


class PRIntegrationPipeline:
    """Rebases, promotes, polls, repairs and merges every pending PR, one at a time."""

    def __init__(
        self,
        store: RunStore,
        workspace: Workspace,
        host: CodeHost,
        agents: Collaborators,
        gate: SafetyGate,
        *,
        ci: CIConfig,
        merge: MergeConfig,
        review: ReviewConfig,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.workspace = workspace
        self.host = host
        self.agents = agents
        self.gate = gate
        self.ci = ci
        self.merge_config = merge
        self.review = review
        self.sleep = sleep
        self.clock = clock

    def _set_status(self, number: int, status: PRStatus) -> None:
        def _apply(record: RunRecord) -> None:
            record.set_pr_status(number, status)

        self.store.update(_apply)
        logger.info("pr_status", pr=number, status=status.value)

    def _set_scratch(self, field_name: str, value: dict[str, Any] | None) -> None:
        def _apply(record: RunRecord) -> None:
            setattr(record, field_name, value)

        self.store.update(_apply)

    async def _settle(self) -> None:
        if self.ci.settle_seconds > 0:
            await self.sleep(self.ci.settle_seconds)

    async def run(self) -> BatchResult:
        batch = BatchResult()
        try:
            for number in self.store.read().pending_prs():
                pr = self.store.read().prs.get(number)
                if pr is None or pr.status is PRStatus.MERGED:
                    continue
                reason = await self._integrate(number, pr.branch)
                if reason is None:
                    batch.merged += 1
                else:
                    batch.failed += 1
                    batch.blockers.append(f"PR #{number} ({pr.task}): {reason}")
            if batch.all_merged:
                try:
                    self.workspace.pull_trunk()
                except GitCommandError as exc:
                    logger.warning("pull_trunk_failed", error=str(exc))
        finally:

            def _clear(record: RunRecord) -> None:
                record.clear_scratch()

            self.store.update(_clear)
            self.workspace.return_to_trunk()
        logger.info("merge_batch_finished", **batch.to_payload())
        return batch

    async def _integrate(self, number: int, branch: str | None) -> str | None:
        """Take one PR through the pipeline. Returns a blocker reason, or None once merged."""
        try:
            snapshot = self.host.view_pr(number)
        except HostError as exc:
            logger.warning("pr_view_failed", pr=number, error=str(exc))
            snapshot = None
        if snapshot is not None:
            if snapshot.merged:
                self._set_status(number, PRStatus.MERGED)
                return None
            branch = branch or snapshot.head_ref
        if not branch:
            self._set_status(number, PRStatus.REBASE_FAILED)
            return "head branch unknown"

        reason = await self._rebase(number, branch)
        if reason is not None:
            return reason

        await self._promote(number, snapshot)

        fix_attempts = 0
        feedback_rounds = 0
        require_checks = self.ci.require_checks
        while True:
            polled = await self._poll(number, require_checks=require_checks)
            if polled is None:
                self._set_status(number, PRStatus.TIMEOUT)
                return f"CI did not resolve within {self.ci.poll_timeout_seconds:g}s"
            if polled.failed_checks:
                self._set_status(number, PRStatus.CHECKS_FAILED)
                if fix_attempts >= self.review.max_fix_attempts:
                    return f"checks still failing after {fix_attempts} fix attempts"
                fix_attempts += 1
                if not await self._fix_cycle(number, branch, polled, fix_attempts):
                    return "automated fix was not applied"
                # The pushed head has no checks until CI registers them.
                require_checks = True
                continue
            if polled.changes_requested:
                self._set_status(number, PRStatus.CHANGES_REQUESTED)
                if feedback_rounds >= self.review.max_feedback_rounds:
                    logger.info("feedback_rounds_exhausted", pr=number, rounds=feedback_rounds)
                    break
                feedback_rounds += 1
                if not await self._feedback_round(number, branch, polled, feedback_rounds):
                    break
                require_checks = require_checks or bool(polled.checks)
                continue
            self._set_status(number, PRStatus.CHECKS_PASSED)
            break

        return self._merge(number)

    async def _rebase(self, number: int, branch: str) -> str | None:
        try:
            self.host.update_branch(number)
            logger.info("pr_rebased", pr=number, via="host")
            return None
        except HostError as exc:
            logger.info("host_rebase_failed", pr=number, error=str(exc))

        try:
            self.workspace.checkout_remote_branch(branch)
            conflicts = self.workspace.rebase_onto_trunk()
            if not conflicts:
                self.workspace.push(branch, force=True)
                logger.info("pr_rebased", pr=number, via="local")
                return None
        except GitCommandError as exc:
            self._set_status(number, PRStatus.REBASE_FAILED)
            return f"rebase failed: {exc}"
        finally:
            self.workspace.return_to_trunk()

        context = {"pr": number, "branch": branch, "conflicts": conflicts}
        self._set_scratch("conflict_context", context)
        try:
            result = await self.agents.resolve_conflict(context)
        finally:
            self._set_scratch("conflict_context", None)
            self.workspace.return_to_trunk()
        if result.verdict == "RESOLVED":
            logger.info("pr_conflict_resolved", pr=number, paths=len(conflicts))
            return None
        self._set_status(number, PRStatus.REBASE_CONFLICT)
        return f"rebase conflict in {', '.join(conflicts)}"

    async def _promote(self, number: int, snapshot: PRSnapshot | None) -> None:
        if snapshot is not None and not snapshot.is_draft:
            self._set_status(number, PRStatus.READY)
            return
        try:
            self.host.mark_ready(number)
        except HostError as exc:
            logger.warning("pr_mark_ready_failed", pr=number, error=str(exc))
        self._set_status(number, PRStatus.READY)
        await self._settle()

    async def _poll(self, number: int, *, require_checks: bool) -> PRSnapshot | None:
        """Poll until checks fail, review requests changes, or checks pass. None on timeout."""
        deadline = self.clock() + self.ci.poll_timeout_seconds
        while True:
            if self.gate.kill_switch_engaged():
                logger.warning("kill_switch_during_poll", pr=number)
                raise KillSwitchEngaged(f"Kill switch engaged while polling PR #{number}")
            try:
                snapshot: PRSnapshot | None = self.host.view_pr(number)
            except HostError as exc:
                logger.warning("pr_poll_failed", pr=number, error=str(exc))
                snapshot = None
            if snapshot is not None:
                registered = bool(snapshot.checks) or not require_checks
                if (
                    snapshot.failed_checks
                    or snapshot.changes_requested
                    or snapshot.merged
                    or (registered and snapshot.checks_settled)
                ):
                    return snapshot
            remaining = deadline - self.clock()
            if remaining <= 0:
                logger.warning("pr_poll_timeout", pr=number, require_checks=require_checks)
                return None
            await self.sleep(min(self.ci.poll_interval_seconds, remaining))

    def _revert(self, number: int, base_commit: str) -> None:
        try:
            self.workspace.reset_hard(base_commit)
        except GitCommandError as exc:
            logger.error("fix_revert_failed", pr=number, base_commit=base_commit, error=str(exc))
            return
        logger.info("fix_reverted", pr=number, base_commit=base_commit)

    async def _fix_cycle(
        self, number: int, branch: str, snapshot: PRSnapshot, attempt: int
    ) -> bool:
        try:
            self.workspace.checkout_remote_branch(branch)
            base_commit = self.workspace.head_commit()
        except GitCommandError as exc:
            logger.warning("fix_checkout_failed", pr=number, error=str(exc))
            self.workspace.return_to_trunk()
            return False

        context = {
            "pr": number,
            "branch": branch,
            "attempt": attempt,
            "base_commit": base_commit,
            "failed_checks": [check.to_dict() for check in snapshot.failed_checks],
        }
        self._set_scratch("arbiter_context", {"site": "ci_fix", **context})
        applied = False
        try:
            fix = await self.agents.fix_checks(context)
            if fix.verdict != Decision.FIXED:
                logger.info("fix_declined", pr=number, verdict=fix.verdict)
            else:
                review = await self.agents.review_fix(context)
                if review.verdict != "APPROVED":
                    logger.info("fix_rejected", pr=number, verdict=review.verdict)
                else:
                    self.workspace.push(branch)
                    applied = True
        except GitCommandError as exc:
            logger.warning("fix_push_failed", pr=number, error=str(exc))
        finally:
            if not applied:
                self._revert(number, base_commit)
            self._set_scratch("arbiter_context", None)
            self.workspace.return_to_trunk()

        if applied:
            logger.info("fix_applied", pr=number, attempt=attempt)
            await self._settle()
        return applied

    async def _feedback_round(
        self, number: int, branch: str, snapshot: PRSnapshot, round_number: int
    ) -> bool:
        """Run one feedback round. Returns True when new commits were pushed."""
        before = snapshot.head_sha
        result = await self.agents.resolve_feedback(
            {"pr": number, "branch": branch, "round": round_number}
        )
        try:
            after = self.host.view_pr(number).head_sha
        except HostError as exc:
            logger.warning("pr_view_failed", pr=number, error=str(exc))
            after = before
        pushed = bool(after) and after != before
        logger.info(
            "feedback_round",
            pr=number,
            round=round_number,
            verdict=result.verdict,
            pushed=pushed,
        )
        if pushed:
            await self._settle()
        return pushed

    def _merge(self, number: int) -> str | None:
        try:
            self.host.merge(
                number,
                method=self.merge_config.method,
                delete_branch=self.merge_config.delete_branch,
            )
        except HostError as exc:
            try:
                merged = self.host.view_pr(number).merged
            except HostError:
                merged = False
            if not merged:
                self._set_status(number, PRStatus.MERGE_FAILED)
                return f"merge failed: {exc}"
            logger.info("merge_reported_failure_but_merged", pr=number)
        self._set_status(number, PRStatus.MERGED)
        return None
