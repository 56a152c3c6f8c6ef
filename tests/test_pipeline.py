import asyncio
from pathlib import Path
from typing import Any

import pytest
from fakes import FakeClock, FakeCollaborators, FakeHost, FakeWorkspace, failing, passing, pending

from order.agents import AgentResult
from order.config import CIConfig, MergeConfig, ReviewConfig, SafetyConfig
from order.host import HostError
from order.pipeline import KillSwitchEngaged, PRIntegrationPipeline
from order.safety import SafetyGate
from order.state import PRStatus, RunStore


def _pipeline(
    tmp_path: Path,
    host: FakeHost,
    agents: FakeCollaborators | None = None,
    *,
    prs: tuple[int, ...] = (5,),
    review: ReviewConfig | None = None,
    settle_seconds: float = 0.0,
    require_checks: bool = False,
) -> tuple[PRIntegrationPipeline, RunStore, FakeWorkspace, FakeClock]:
    store = RunStore(tmp_path / "state.json")
    store.initialize()

    def _register(record: Any) -> None:
        for number in prs:
            record.register_pr(number, f"task-{number}", f"order/task-{number}")

    store.update(_register)
    workspace = FakeWorkspace(tmp_path)
    clock = FakeClock()
    pipeline = PRIntegrationPipeline(
        store,
        workspace,
        host,
        agents or FakeCollaborators(),
        SafetyGate(SafetyConfig(), tmp_path / "STOP"),
        ci=CIConfig(
            poll_timeout_seconds=300.0,
            poll_interval_seconds=30.0,
            settle_seconds=settle_seconds,
            require_checks=require_checks,
        ),
        merge=MergeConfig(),
        review=review or ReviewConfig(),
        sleep=clock.sleep,
        clock=clock,
    )
    return pipeline, store, workspace, clock


def test_two_fix_cycles_then_green_merges(tmp_path: Path) -> None:
    host = FakeHost({5: [failing(5), failing(5), failing(5), passing(5)]})
    agents = FakeCollaborators()
    pipeline, store, workspace, _ = _pipeline(tmp_path, host, agents)

    batch = asyncio.run(pipeline.run())

    assert batch.merged == 1
    assert batch.failed == 0
    assert len(agents.called("fix_checks")) == 2
    assert len(agents.called("review_fix")) == 2
    assert workspace.count("push") == 2
    assert workspace.resets == []
    assert ("merge", 5, "squash", True) in host.calls
    assert workspace.count("pull_trunk") == 1
    assert store.read().prs[5].status is PRStatus.MERGED


def test_fix_context_lists_failed_checks(tmp_path: Path) -> None:
    host = FakeHost({5: [failing(5), failing(5), passing(5)]})
    seen: list[Any] = []
    agents = FakeCollaborators(hooks={"fix_checks": lambda context: seen.append(context)})
    pipeline, store, _, _ = _pipeline(tmp_path, host, agents)

    def _capture_scratch(context: dict[str, Any]) -> None:
        seen.append(store.read().arbiter_context)

    agents.hooks["review_fix"] = _capture_scratch

    asyncio.run(pipeline.run())

    context, scratch = seen
    assert context["attempt"] == 1
    assert context["base_commit"] == "base000"
    assert context["failed_checks"][0]["name"] == "tests"
    assert scratch["site"] == "ci_fix"
    assert store.read().arbiter_context is None


def test_ci_timeout_blocks_with_single_blocker(tmp_path: Path) -> None:
    host = FakeHost({5: [pending(5)]})
    pipeline, store, workspace, clock = _pipeline(tmp_path, host)

    batch = asyncio.run(pipeline.run())

    assert batch.merged == 0
    assert batch.failed == 1
    assert len(batch.blockers) == 1
    assert batch.blockers[0].startswith("PR #5 (task-5)")
    assert store.read().prs[5].status is PRStatus.TIMEOUT
    assert host.count("merge") == 0
    assert workspace.count("pull_trunk") == 0
    assert sum(clock.sleeps) == 300.0


def test_fix_push_waits_for_checks_to_register(tmp_path: Path) -> None:
    unregistered = passing(5, head_sha="sha-2", checks=[])
    host = FakeHost({5: [failing(5), failing(5), unregistered, unregistered, passing(5)]})
    agents = FakeCollaborators()
    pipeline, store, _, clock = _pipeline(tmp_path, host, agents)

    batch = asyncio.run(pipeline.run())

    assert batch.merged == 1
    assert len(agents.called("fix_checks")) == 1
    assert clock.sleeps == [30.0, 30.0]
    assert store.read().prs[5].status is PRStatus.MERGED


def test_pr_without_checks_merges_unless_checks_required(tmp_path: Path) -> None:
    host = FakeHost({5: [passing(5, checks=[])]})
    pipeline, _, _, clock = _pipeline(tmp_path / "lenient", host)

    assert asyncio.run(pipeline.run()).merged == 1
    assert clock.sleeps == []

    host = FakeHost({5: [passing(5, checks=[])]})
    pipeline, store, _, _ = _pipeline(tmp_path / "strict", host, require_checks=True)

    batch = asyncio.run(pipeline.run())

    assert batch.failed == 1
    assert store.read().prs[5].status is PRStatus.TIMEOUT
    assert host.count("merge") == 0


def test_merged_prs_are_skipped(tmp_path: Path) -> None:
    host = FakeHost({6: [passing(6)], 7: [passing(7, state="MERGED")]})
    pipeline, store, _, _ = _pipeline(tmp_path, host, prs=(5, 6, 7))
    store.update(lambda record: record.set_pr_status(5, PRStatus.MERGED))

    batch = asyncio.run(pipeline.run())

    assert batch.merged == 2
    assert ("view_pr", 5) not in host.calls
    assert ("merge", 7, "squash", True) not in host.calls
    assert store.read().pending_prs() == []


def test_draft_is_promoted_and_settles(tmp_path: Path) -> None:
    host = FakeHost({5: [passing(5, is_draft=True), passing(5)]})
    pipeline, store, _, clock = _pipeline(tmp_path, host, settle_seconds=10.0)

    asyncio.run(pipeline.run())

    assert host.count("mark_ready") == 1
    assert clock.sleeps[0] == 10.0
    assert store.read().prs[5].status is PRStatus.MERGED


def test_local_rebase_fallback_force_pushes(tmp_path: Path) -> None:
    host = FakeHost({5: [passing(5)]})
    host.update_branch_error = HostError("update-branch not permitted")
    pipeline, _, workspace, _ = _pipeline(tmp_path, host)

    batch = asyncio.run(pipeline.run())

    assert batch.merged == 1
    assert ("checkout_remote_branch", "order/task-5") in workspace.calls
    assert ("push", "order/task-5", "force") in workspace.calls


def test_conflicts_go_to_resolver_with_scratch(tmp_path: Path) -> None:
    host = FakeHost({5: [passing(5)], 6: [passing(6)]})
    host.update_branch_error = HostError("update-branch not permitted")
    seen: list[Any] = []
    agents = FakeCollaborators(
        {"resolve_conflict": [AgentResult("RESOLVED"), AgentResult("UNRESOLVED")]}
    )
    pipeline, store, workspace, _ = _pipeline(tmp_path, host, agents, prs=(5, 6))
    workspace.conflicts = ["src/app.py"]
    agents.hooks["resolve_conflict"] = lambda context: seen.append(store.read().conflict_context)

    batch = asyncio.run(pipeline.run())

    assert seen[0] == {"pr": 5, "branch": "order/task-5", "conflicts": ["src/app.py"]}
    assert batch.merged == 1
    assert batch.failed == 1
    record = store.read()
    assert record.prs[6].status is PRStatus.REBASE_CONFLICT
    assert record.conflict_context is None


def test_rejected_fix_is_reverted(tmp_path: Path) -> None:
    host = FakeHost({5: [failing(5)]})
    agents = FakeCollaborators({"review_fix": [AgentResult("REJECTED")]})
    pipeline, store, workspace, _ = _pipeline(tmp_path, host, agents)
    workspace.head = "fix-base"

    batch = asyncio.run(pipeline.run())

    assert workspace.resets == ["fix-base"]
    assert workspace.count("push") == 0
    assert batch.blockers == ["PR #5 (task-5): automated fix was not applied"]
    assert store.read().prs[5].status is PRStatus.CHECKS_FAILED
    assert workspace.branch == "main"


def test_fix_attempts_are_bounded(tmp_path: Path) -> None:
    host = FakeHost({5: [failing(5)]})
    agents = FakeCollaborators()
    pipeline, _, _, _ = _pipeline(tmp_path, host, agents, review=ReviewConfig(max_fix_attempts=1))

    batch = asyncio.run(pipeline.run())

    assert len(agents.called("fix_checks")) == 1
    assert "after 1 fix attempts" in batch.blockers[0]


def test_feedback_without_new_commits_proceeds_to_merge(tmp_path: Path) -> None:
    host = FakeHost({5: [passing(5, review_decision="CHANGES_REQUESTED")]})
    agents = FakeCollaborators()
    pipeline, store, _, _ = _pipeline(tmp_path, host, agents)

    batch = asyncio.run(pipeline.run())

    assert len(agents.called("resolve_feedback")) == 1
    assert batch.merged == 1
    assert store.read().prs[5].status is PRStatus.MERGED


def test_feedback_rounds_are_bounded(tmp_path: Path) -> None:
    requested = {"review_decision": "CHANGES_REQUESTED"}
    host = FakeHost(
        {
            5: [
                passing(5, **requested),
                passing(5, **requested),
                passing(5, head_sha="sha-2", **requested),
                passing(5, head_sha="sha-2", **requested),
            ]
        }
    )
    agents = FakeCollaborators()
    pipeline, _, _, _ = _pipeline(
        tmp_path, host, agents, review=ReviewConfig(max_feedback_rounds=1)
    )

    batch = asyncio.run(pipeline.run())

    assert len(agents.called("resolve_feedback")) == 1
    assert batch.merged == 1


def test_merge_error_rechecks_real_state(tmp_path: Path) -> None:
    host = FakeHost({5: [passing(5)], 6: [passing(6)]})
    host.merge_error = HostError("gh: GraphQL timeout")
    host.merge_lands_anyway = True
    pipeline, store, _, _ = _pipeline(tmp_path, host, prs=(5,))

    batch = asyncio.run(pipeline.run())

    assert batch.merged == 1
    assert store.read().prs[5].status is PRStatus.MERGED

    host.merge_lands_anyway = False
    pipeline, store, _, _ = _pipeline(tmp_path / "again", host, prs=(6,))

    batch = asyncio.run(pipeline.run())

    assert batch.failed == 1
    assert store.read().prs[6].status is PRStatus.MERGE_FAILED


def test_kill_switch_during_poll_clears_scratch(tmp_path: Path) -> None:
    host = FakeHost({5: [pending(5)]})
    host.update_branch_error = HostError("update-branch not permitted")
    agents = FakeCollaborators()
    pipeline, store, workspace, _ = _pipeline(tmp_path, host, agents)
    workspace.conflicts = ["README.md"]
    agents.hooks["resolve_conflict"] = lambda context: (tmp_path / "STOP").touch()

    with pytest.raises(KillSwitchEngaged):
        asyncio.run(pipeline.run())

    record = store.read()
    assert record.conflict_context is None
    assert record.arbiter_context is None
    assert workspace.calls[-1] == ("return_to_trunk",)
    assert host.count("merge") == 0
