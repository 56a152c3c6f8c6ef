from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

import structlog

from order.config import SafetyConfig
from order.state.models import RunRecord

logger = structlog.get_logger()


@dataclass(slots=True)
class GateDecision:
    allowed: bool
    check: str | None = None
    reason: str = ""


ALLOW = GateDecision(allowed=True)


class SafetyGate:
    """Pre-stage checks that can stop the run.

    Checks run in a fixed order and the first failing one wins. Any threshold
    left unset in configuration is treated as "no limit".
    """

    CHECKS = (
        "kill_switch",
        "max_iterations",
        "max_hours",
        "max_consecutive_failures",
        "max_open_prs",
    )

    def __init__(
        self,
        config: SafetyConfig,
        kill_switch: Path,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.kill_switch = kill_switch
        self.clock = clock

    def kill_switch_engaged(self) -> bool:
        return self.kill_switch.exists()

    def _elapsed_hours(self, record: RunRecord) -> float:
        try:
            started = datetime.fromisoformat(record.session_started_at)
        except ValueError:
            return 0.0
        return max(0.0, (self.clock() - started.timestamp()) / 3600.0)

    def check(self, record: RunRecord) -> GateDecision:
        if self.kill_switch_engaged():
            return self._stop("kill_switch", f"Kill switch present at {self.kill_switch}")

        limit = self.config.max_iterations
        if limit is not None and record.iterations >= limit:
            return self._stop(
                "max_iterations", f"Iteration budget exhausted ({record.iterations}/{limit})"
            )

        hours = self.config.max_hours
        if hours is not None:
            elapsed = self._elapsed_hours(record)
            if elapsed >= hours:
                return self._stop(
                    "max_hours", f"Time budget exhausted ({elapsed:.2f}h of {hours:g}h)"
                )

        limit = self.config.max_consecutive_failures
        if limit is not None and record.consecutive_failures >= limit:
            return self._stop(
                "max_consecutive_failures",
                f"Too many consecutive failures ({record.consecutive_failures}/{limit})",
            )

        limit = self.config.max_open_prs
        open_prs = record.open_pr_count()
        if limit is not None and open_prs >= limit:
            return self._stop(
                "max_open_prs", f"Too many PRs in flight ({open_prs}/{limit})"
            )

        return ALLOW

    @staticmethod
    def _stop(check: str, reason: str) -> GateDecision:
        logger.warning("safety_gate_stop", check=check, reason=reason)
        return GateDecision(allowed=False, check=check, reason=reason)
