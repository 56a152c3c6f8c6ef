from __future__ import annotations

import json
import subprocess
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import structlog

from order.backends.resilient import RetryPolicy

logger = structlog.get_logger()

FAILING_CONCLUSIONS = {
    "FAILURE",
    "ERROR",
    "CANCELLED",
    "TIMED_OUT",
    "ACTION_REQUIRED",
    "STARTUP_FAILURE",
}
PENDING_STATES = {"PENDING", "EXPECTED", "QUEUED", "IN_PROGRESS", "WAITING", "REQUESTED"}


class HostError(RuntimeError):
    """Raised when a host API call fails after its retry budget."""

    def __init__(
        self,
        message: str,
        *,
        command: list[str] | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.command = command or []
        self.exit_code = exit_code
        self.retriable = retriable


@dataclass(slots=True)
class CheckRun:
    name: str
    completed: bool
    conclusion: str = ""
    link: str = ""

    @property
    def failed(self) -> bool:
        return self.completed and self.conclusion.upper() in FAILING_CONCLUSIONS

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "completed": self.completed,
            "conclusion": self.conclusion,
            "link": self.link,
        }

    @classmethod
    def from_rollup(cls, item: dict[str, Any]) -> CheckRun:
        if item.get("__typename") == "StatusContext" or "context" in item:
            state = str(item.get("state") or "").upper()
            return cls(
                name=str(item.get("context") or "status"),
                completed=bool(state) and state not in PENDING_STATES,
                conclusion=state,
                link=str(item.get("targetUrl") or ""),
            )
        status = str(item.get("status") or "").upper()
        return cls(
            name=str(item.get("name") or item.get("workflowName") or "check"),
            completed=status == "COMPLETED",
            conclusion=str(item.get("conclusion") or "").upper(),
            link=str(item.get("detailsUrl") or ""),
        )


@dataclass(slots=True)
class PRSnapshot:
    number: int
    state: str = "OPEN"
    is_draft: bool = False
    head_ref: str = ""
    head_sha: str = ""
    review_decision: str = ""
    checks: list[CheckRun] = field(default_factory=list)

    @property
    def merged(self) -> bool:
        return self.state.upper() == "MERGED"

    @property
    def failed_checks(self) -> list[CheckRun]:
        return [check for check in self.checks if check.failed]

    @property
    def checks_settled(self) -> bool:
        return all(check.completed for check in self.checks)

    @property
    def changes_requested(self) -> bool:
        return self.review_decision.upper() == "CHANGES_REQUESTED"


@dataclass(frozen=True, slots=True)
class PRSummary:
    number: int
    head_ref: str
    state: str = "OPEN"


class CodeHost(ABC):
    """Version-control host operations the integration pipeline depends on."""

    @abstractmethod
    def view_pr(self, number: int) -> PRSnapshot:
        """Current PR state, draft flag, head, review decision and checks."""

    @abstractmethod
    def find_prs(self, head: str) -> list[PRSummary]:
        """PRs (any state) whose head branch is exactly ``head``."""

    @abstractmethod
    def list_open_prs(self) -> list[PRSummary]:
        """All open PRs."""

    @abstractmethod
    def update_branch(self, number: int) -> None:
        """Host-side rebase of the PR branch onto its base."""

    @abstractmethod
    def mark_ready(self, number: int) -> None:
        """Promote a draft PR to ready for review."""

    @abstractmethod
    def merge(self, number: int, *, method: str, delete_branch: bool) -> None:
        """Merge the PR."""

    @abstractmethod
    def create_draft_pr(self, *, head: str, base: str, title: str, body: str) -> int:
        """Open a draft PR and return its number."""


class GitHubCLIHost(CodeHost):
    """GitHub access through the ``gh`` CLI with bounded retries."""

    PR_FIELDS = "number,state,isDraft,headRefName,headRefOid,reviewDecision,statusCheckRollup"

    def __init__(
        self,
        repo_root: Path,
        *,
        binary: str = "gh",
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.repo_root = repo_root.resolve()
        self.binary = binary
        self.retry_policy = retry_policy or RetryPolicy(
            max_retries=2, backoff_seconds=2.0, timeout_seconds=120.0
        )
        self.sleep = sleep

    def _run_once(self, command: list[str]) -> str:
        try:
            proc = subprocess.run(
                command,
                cwd=self.repo_root,
                text=True,
                capture_output=True,
                timeout=self.retry_policy.timeout_seconds,
            )
        except FileNotFoundError as exc:
            raise HostError(
                f"GitHub CLI not found: {self.binary}", command=command, retriable=False
            ) from exc
        except subprocess.TimeoutExpired as exc:
            raise HostError(
                f"gh timed out after {self.retry_policy.timeout_seconds:.1f}s",
                command=command,
                retriable=True,
            ) from exc
        if proc.returncode != 0:
            raise HostError(
                proc.stderr.strip() or proc.stdout.strip() or "gh command failed",
                command=command,
                exit_code=proc.returncode,
            )
        return proc.stdout

    def _gh(self, args: list[str], *, retry: bool = True) -> str:
        command = [self.binary, *args]
        attempts = self.retry_policy.max_retries + 1 if retry else 1
        attempt = 0
        while True:
            try:
                return self._run_once(command)
            except HostError as exc:
                logger.warning(
                    "host_call_failed", command=args[:3], attempt=attempt, error=str(exc)
                )
                attempt += 1
                if not exc.retriable or attempt >= attempts:
                    raise
            delay = self.retry_policy.backoff_seconds * (2 ** (attempt - 1))
            logger.info("host_retry", command=args[:2], attempt=attempt, delay_seconds=delay)
            self.sleep(delay)

    def _gh_json(self, args: list[str]) -> Any:
        output = self._gh(args)
        try:
            return json.loads(output or "null")
        except json.JSONDecodeError as exc:
            raise HostError(f"gh returned invalid JSON: {exc}", command=args) from exc

    @staticmethod
    def _summaries(payload: Any) -> list[PRSummary]:
        if not isinstance(payload, list):
            return []
        summaries: list[PRSummary] = []
        for item in payload:
            if not isinstance(item, dict) or "number" not in item:
                continue
            summaries.append(
                PRSummary(
                    number=int(item["number"]),
                    head_ref=str(item.get("headRefName") or ""),
                    state=str(item.get("state") or "OPEN"),
                )
            )
        return summaries

    def view_pr(self, number: int) -> PRSnapshot:
        payload = self._gh_json(["pr", "view", str(number), "--json", self.PR_FIELDS])
        if not isinstance(payload, dict):
            raise HostError(f"Unexpected payload for PR #{number}")
        rollup = payload.get("statusCheckRollup") or []
        return PRSnapshot(
            number=int(payload.get("number", number)),
            state=str(payload.get("state") or "OPEN"),
            is_draft=bool(payload.get("isDraft")),
            head_ref=str(payload.get("headRefName") or ""),
            head_sha=str(payload.get("headRefOid") or ""),
            review_decision=str(payload.get("reviewDecision") or ""),
            checks=[CheckRun.from_rollup(item) for item in rollup if isinstance(item, dict)],
        )

    def find_prs(self, head: str) -> list[PRSummary]:
        payload = self._gh_json(
            ["pr", "list", "--head", head, "--state", "all", "--json", "number,headRefName,state"]
        )
        return [pr for pr in self._summaries(payload) if pr.head_ref == head]

    def list_open_prs(self) -> list[PRSummary]:
        payload = self._gh_json(
            [
                "pr",
                "list",
                "--state",
                "open",
                "--limit",
                "200",
                "--json",
                "number,headRefName,state",
            ]
        )
        return self._summaries(payload)

    def update_branch(self, number: int) -> None:
        self._gh(["pr", "update-branch", str(number), "--rebase"])

    def mark_ready(self, number: int) -> None:
        self._gh(["pr", "ready", str(number)])

    def merge(self, number: int, *, method: str, delete_branch: bool) -> None:
        args = ["pr", "merge", str(number), f"--{method}"]
        if delete_branch:
            args.append("--delete-branch")
        # A repeated merge call would fail on an already merged PR; callers re-check instead.
        self._gh(args, retry=False)

    def create_draft_pr(self, *, head: str, base: str, title: str, body: str) -> int:
        output = self._gh(
            [
                "pr",
                "create",
                "--draft",
                "--base",
                base,
                "--head",
                head,
                "--title",
                title,
                "--body",
                body,
            ],
            retry=False,
        )
        url = output.strip().splitlines()[-1] if output.strip() else ""
        try:
            return int(url.rstrip("/").rsplit("/", maxsplit=1)[-1])
        except ValueError as exc:
            raise HostError(f"Could not parse PR number from gh output: {url!r}") from exc
