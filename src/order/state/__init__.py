from order.state.models import (
    Decision,
    LifecycleState,
    PRRecord,
    PRStatus,
    RunRecord,
    StageResult,
    Verdict,
)
from order.state.store import RunStateError, RunStore

__all__ = [
    "Decision",
    "LifecycleState",
    "PRRecord",
    "PRStatus",
    "RunRecord",
    "RunStateError",
    "RunStore",
    "StageResult",
    "Verdict",
]
