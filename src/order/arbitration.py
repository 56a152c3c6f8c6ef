from __future__ import annotations

from typing import Any

import structlog

from order.agents import AgentResult, Collaborators
from order.state import Decision, RunRecord, RunStore

logger = structlog.get_logger()

SPEC_REVISIONS = "spec_revisions"
TASK_FAILURE = "task_failure"
MERGE_BATCH = "merge_batch"

_THREE_WAY = {Decision.RETRY, Decision.SKIP, Decision.HALT}


def normalize_decision(result: AgentResult) -> Decision:
    """Map an arbiter verdict onto RETRY, SKIP or HALT.

    Anything else, including ``FIXED`` outside the fix cycle, a crashed
    arbiter or an unparseable reply, is HALT.
    """
    try:
        decision = Decision(result.verdict)
    except ValueError:
        return Decision.HALT
    return decision if decision in _THREE_WAY else Decision.HALT


class Arbiter:
    """Consults the external arbitration delegate and records its decision."""

    def __init__(self, store: RunStore, agents: Collaborators) -> None:
        self.store = store
        self.agents = agents

    async def decide(self, site: str, context: dict[str, Any]) -> Decision:
        scratch = {"site": site, **context}

        def _attach(record: RunRecord) -> None:
            record.arbiter_context = scratch

        self.store.update(_attach)
        decision = Decision.HALT
        raw = ""
        try:
            result = await self.agents.arbitrate(site, scratch)
            raw = result.raw or result.verdict
            decision = normalize_decision(result)
        finally:

            def _finish(record: RunRecord) -> None:
                record.arbiter_context = None
                record.record_decision(site, decision, raw)

            self.store.update(_finish)
        logger.info("arbitration_decision", site=site, decision=decision.value)
        return decision
