from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

HISTORY_LIMIT = 200
DECISION_LIMIT = 50
BACKEND_EVENT_LIMIT = 200


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class LifecycleState(StrEnum):
    INIT = "INIT"
    PARSE_ROADMAP = "PARSE_ROADMAP"
    CREATE_SPEC = "CREATE_SPEC"
    REVIEW_SPEC = "REVIEW_SPEC"
    PLAN_WORK = "PLAN_WORK"
    EXECUTE_TASKS = "EXECUTE_TASKS"
    MERGE_PRS = "MERGE_PRS"
    VERIFY_COMPLETION = "VERIFY_COMPLETION"
    HANDOFF = "HANDOFF"


class PRStatus(StrEnum):
    DRAFT = "draft"
    READY = "ready"
    CHECKS_PASSED = "checks_passed"
    CHECKS_FAILED = "checks_failed"
    CHANGES_REQUESTED = "changes_requested"
    TIMEOUT = "timeout"
    REBASE_FAILED = "rebase_failed"
    REBASE_CONFLICT = "rebase_conflict"
    MERGE_FAILED = "merge_failed"
    MERGED = "merged"


class Verdict(StrEnum):
    STEP_SELECTED = "STEP_SELECTED"
    SPEC_EXISTS = "SPEC_EXISTS"
    ROADMAP_COMPLETE = "ROADMAP_COMPLETE"
    SPEC_CREATED = "SPEC_CREATED"
    SPEC_REJECTED = "SPEC_REJECTED"
    SPEC_APPROVED = "SPEC_APPROVED"
    SPEC_SKIPPED = "SPEC_SKIPPED"
    PLAN_FAILED = "PLAN_FAILED"
    TASK_SELECTED = "TASK_SELECTED"
    TASK_COMPLETED = "TASK_COMPLETED"
    TASKS_COMPLETE = "TASKS_COMPLETE"
    TASKS_FAILED = "TASKS_FAILED"
    ALL_MERGED = "ALL_MERGED"
    MERGE_BLOCKED = "MERGE_BLOCKED"
    VERIFIED = "VERIFIED"
    VERIFICATION_FAILED = "VERIFICATION_FAILED"
    HANDOFF_COMPLETE = "HANDOFF_COMPLETE"
    RETRY = "RETRY"
    SKIP = "SKIP"
    HALT = "HALT"


class Decision(StrEnum):
    """Outcomes the arbitration delegate may return."""

    RETRY = "RETRY"
    SKIP = "SKIP"
    HALT = "HALT"
    FIXED = "FIXED"


_S = LifecycleState

ALLOWED_TRANSITIONS: dict[LifecycleState, frozenset[LifecycleState]] = {
    _S.INIT: frozenset({_S.PARSE_ROADMAP}),
    # REVIEW_SPEC is the spec-already-exists fast path.
    _S.PARSE_ROADMAP: frozenset({_S.CREATE_SPEC, _S.REVIEW_SPEC}),
    _S.CREATE_SPEC: frozenset({_S.REVIEW_SPEC, _S.CREATE_SPEC, _S.INIT}),
    _S.REVIEW_SPEC: frozenset({_S.PLAN_WORK, _S.CREATE_SPEC}),
    _S.PLAN_WORK: frozenset({_S.EXECUTE_TASKS, _S.MERGE_PRS, _S.PLAN_WORK}),
    _S.EXECUTE_TASKS: frozenset({_S.MERGE_PRS, _S.EXECUTE_TASKS, _S.PLAN_WORK}),
    _S.MERGE_PRS: frozenset({_S.PLAN_WORK, _S.VERIFY_COMPLETION, _S.MERGE_PRS}),
    _S.VERIFY_COMPLETION: frozenset({_S.HANDOFF, _S.PLAN_WORK}),
    _S.HANDOFF: frozenset({_S.INIT}),
}


def is_allowed_transition(source: LifecycleState, target: LifecycleState) -> bool:
    return target in ALLOWED_TRANSITIONS[source]


@dataclass(slots=True)
class StageResult:
    verdict: Verdict
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"verdict": self.verdict.value, "payload": dict(self.payload)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StageResult:
        payload = data.get("payload", {})
        return cls(
            verdict=Verdict(data["verdict"]),
            payload=payload if isinstance(payload, dict) else {},
        )


@dataclass(slots=True)
class PRRecord:
    task: str
    status: PRStatus = PRStatus.DRAFT
    branch: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"task": self.task, "status": self.status.value, "branch": self.branch}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PRRecord:
        return cls(
            task=str(data["task"]),
            status=PRStatus(data.get("status", PRStatus.DRAFT.value)),
            branch=data.get("branch"),
        )


@dataclass(slots=True)
class RunRecord:
    """Full persisted snapshot of pipeline progress."""

    state: LifecycleState = LifecycleState.INIT
    step: int = 1
    step_id: str | None = None
    step_title: str | None = None
    spec_path: str | None = None
    spec_revision: int = 0
    plan_ready: bool = False
    last_result: StageResult | None = None
    consecutive_failures: int = 0
    iterations: int = 0
    steps_completed: int = 0
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)
    session_started_at: str = field(default_factory=utcnow_iso)
    in_flight: str | None = None
    completed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    prs: dict[int, PRRecord] = field(default_factory=dict)
    skipped_prs: list[int] = field(default_factory=list)
    conflict_context: dict[str, Any] | None = None
    arbiter_context: dict[str, Any] | None = None
    history: list[dict[str, Any]] = field(default_factory=list)
    decisions: list[dict[str, Any]] = field(default_factory=list)
    backend_events: list[dict[str, Any]] = field(default_factory=list)
    backend_metrics: dict[str, int] = field(default_factory=dict)

    @property
    def verdict(self) -> Verdict | None:
        return self.last_result.verdict if self.last_result else None

    def mark_completed(self, task_id: str) -> None:
        if task_id in self.failed:
            self.failed.remove(task_id)
        if task_id not in self.completed:
            self.completed.append(task_id)
        if self.in_flight == task_id:
            self.in_flight = None

    def mark_failed(self, task_id: str) -> None:
        if task_id not in self.failed and task_id not in self.completed:
            self.failed.append(task_id)
        if self.in_flight == task_id:
            self.in_flight = None

    def clear_failed(self, task_id: str) -> None:
        if task_id in self.failed:
            self.failed.remove(task_id)

    def register_pr(self, number: int, task_id: str, branch: str | None) -> None:
        existing = self.prs.get(number)
        if existing is not None and existing.status is PRStatus.MERGED:
            return
        self.prs[number] = PRRecord(task=task_id, status=PRStatus.DRAFT, branch=branch)

    def set_pr_status(self, number: int, status: PRStatus) -> None:
        self.prs[number].status = status

    def pending_prs(self) -> list[int]:
        """PR numbers the integration pipeline still has to process, in PR order."""
        return sorted(
            number
            for number, pr in self.prs.items()
            if pr.status is not PRStatus.MERGED and number not in self.skipped_prs
        )

    def open_pr_count(self) -> int:
        return len(self.pending_prs())

    def clear_scratch(self) -> None:
        self.conflict_context = None
        self.arbiter_context = None

    def record_transition(
        self, source: LifecycleState, target: LifecycleState, verdict: Verdict
    ) -> None:
        self.history.append(
            {"from": source.value, "to": target.value, "verdict": verdict.value, "at": utcnow_iso()}
        )
        self.history = self.history[-HISTORY_LIMIT:]

    def record_decision(self, site: str, decision: Decision, raw: str) -> None:
        self.decisions.append(
            {"site": site, "verdict": decision.value, "raw": raw[:200], "at": utcnow_iso()}
        )
        self.decisions = self.decisions[-DECISION_LIMIT:]

    def record_backend_event(self, event: dict[str, Any]) -> None:
        self.backend_events.append({**event, "at": utcnow_iso()})
        self.backend_events = self.backend_events[-BACKEND_EVENT_LIMIT:]
        counter = {
            "backend_retry": "backend_retry_count",
            "backend_fallback_success": "backend_fallback_count",
        }.get(str(event.get("event")))
        if counter:
            self.backend_metrics[counter] = self.backend_metrics.get(counter, 0) + 1

    def reset_step(self) -> None:
        self.step_id = None
        self.step_title = None
        self.spec_path = None
        self.spec_revision = 0
        self.plan_ready = False
        self.in_flight = None
        self.completed = []
        self.failed = []
        self.prs = {}
        self.skipped_prs = []
        self.clear_scratch()

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "step": self.step,
            "step_id": self.step_id,
            "step_title": self.step_title,
            "spec_path": self.spec_path,
            "spec_revision": self.spec_revision,
            "plan_ready": self.plan_ready,
            "last_result": self.last_result.to_dict() if self.last_result else None,
            "consecutive_failures": self.consecutive_failures,
            "iterations": self.iterations,
            "steps_completed": self.steps_completed,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "session_started_at": self.session_started_at,
            "in_flight": self.in_flight,
            "completed": list(self.completed),
            "failed": list(self.failed),
            "prs": {str(number): pr.to_dict() for number, pr in sorted(self.prs.items())},
            "skipped_prs": list(self.skipped_prs),
            "conflict_context": self.conflict_context,
            "arbiter_context": self.arbiter_context,
            "history": list(self.history),
            "decisions": list(self.decisions),
            "backend_events": list(self.backend_events),
            "backend_metrics": dict(self.backend_metrics),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunRecord:
        # Older records written by the shell installer only carry `current_state`.
        raw_state = data.get("state", data.get("current_state", LifecycleState.INIT.value))
        last_result = data.get("last_result")
        raw_prs = data.get("prs") or {}
        now = utcnow_iso()
        return cls(
            state=LifecycleState(raw_state),
            step=int(data.get("step", 1)),
            step_id=data.get("step_id"),
            step_title=data.get("step_title"),
            spec_path=data.get("spec_path"),
            spec_revision=int(data.get("spec_revision", 0)),
            plan_ready=bool(data.get("plan_ready", False)),
            last_result=StageResult.from_dict(last_result) if last_result else None,
            consecutive_failures=int(data.get("consecutive_failures", 0)),
            iterations=int(data.get("iterations", 0)),
            steps_completed=int(data.get("steps_completed", 0)),
            created_at=data.get("created_at") or now,
            updated_at=data.get("updated_at") or now,
            session_started_at=data.get("session_started_at") or now,
            in_flight=data.get("in_flight"),
            completed=[str(item) for item in data.get("completed", [])],
            failed=[str(item) for item in data.get("failed", [])],
            prs={int(number): PRRecord.from_dict(pr) for number, pr in raw_prs.items()},
            skipped_prs=[int(item) for item in data.get("skipped_prs", [])],
            conflict_context=data.get("conflict_context"),
            arbiter_context=data.get("arbiter_context"),
            history=list(data.get("history", [])),
            decisions=list(data.get("decisions", [])),
            backend_events=list(data.get("backend_events", [])),
            backend_metrics={
                str(key): int(value)
                for key, value in (data.get("backend_metrics") or {}).items()
            },
        )
