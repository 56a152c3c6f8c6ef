import asyncio
from pathlib import Path
from typing import Any

from fakes import FakeClock, FakeCollaborators, FakeHost, FakeWorkspace, passing, pending

from order.agents import AgentResult
from order.config import OrderConfig
from order.dispatch import TaskDispatcher
from order.driver import EXIT_GATE_STOP, EXIT_HALT, EXIT_SUCCESS, LifecycleDriver
from order.outcome import OutcomeRecorder
from order.pipeline import PRIntegrationPipeline
from order.safety import SafetyGate
from order.state import LifecycleState, RunStore, Verdict


class Harness:
    def __init__(
        self,
        tmp_path: Path,
        agents: FakeCollaborators,
        *,
        config: OrderConfig | None = None,
        host: FakeHost | None = None,
    ) -> None:
        self.repo_root = tmp_path
        self.agents = agents
        self.config = config or OrderConfig.default()
        self.config.ci.settle_seconds = 0.0
        self.host = host or FakeHost()
        self.workspace = FakeWorkspace(tmp_path)
        self.store = RunStore(self.config.state_path(tmp_path))
        self.clock = FakeClock()

    @property
    def kill_switch(self) -> Path:
        return self.config.kill_switch_path(self.repo_root)

    def write_queue(self, *task_ids: str) -> None:
        path = self.config.queue_path(self.repo_root)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("".join(f"{task_id}\n" for task_id in task_ids), encoding="utf-8")

    def driver(self) -> LifecycleDriver:
        gate = SafetyGate(self.config.safety, self.kill_switch)
        outcome = OutcomeRecorder(self.store, self.workspace, self.host, self.config.project)
        dispatcher = TaskDispatcher(
            self.store, self.workspace, self.agents, outcome, model=self.config.executor.model
        )
        pipeline = PRIntegrationPipeline(
            self.store,
            self.workspace,
            self.host,
            self.agents,
            gate,
            ci=self.config.ci,
            merge=self.config.merge,
            review=self.config.review,
            sleep=self.clock.sleep,
            clock=self.clock,
        )
        return LifecycleDriver(
            self.config, self.repo_root, self.store, gate, self.agents, dispatcher, pipeline
        )

    def run(self, max_steps: int | None = None) -> Any:
        return asyncio.run(self.driver().run(max_steps=max_steps))


ROADMAP_DONE = AgentResult("ROADMAP_COMPLETE")
STEP_ONE = AgentResult("STEP_SELECTED", {"step": "step-1", "title": "First step"})


def test_roadmap_complete_exits_successfully(tmp_path: Path) -> None:
    harness = Harness(tmp_path, FakeCollaborators({"parse_roadmap": [ROADMAP_DONE]}))

    outcome = harness.run()

    assert outcome.exit_code == EXIT_SUCCESS
    assert outcome.state is LifecycleState.INIT
    assert harness.store.read().history == []


def test_skipped_task_failure_completes_step(tmp_path: Path) -> None:
    snapshots: list[Any] = []
    agents = FakeCollaborators(
        {
            "parse_roadmap": [STEP_ONE, ROADMAP_DONE],
            "execute_task": [
                AgentResult("EXITED", {"exit_code": 1}),
                AgentResult("EXITED", {"exit_code": 0}),
            ],
            "arbitrate": [AgentResult("SKIP")],
        }
    )
    harness = Harness(tmp_path, agents)
    harness.host.publish(40, "order/task-2")
    agents.hooks["plan_work"] = lambda spec_path, context: harness.write_queue("task-1", "task-2")
    agents.hooks["verify_completion"] = lambda step_id, context: snapshots.append(
        harness.store.read()
    )

    outcome = harness.run()

    assert outcome.exit_code == EXIT_SUCCESS
    assert [args[0] for args in agents.called("execute_task")] == ["task-1", "task-2"]
    at_verify = snapshots[0]
    assert at_verify.completed == ["task-2"]
    assert at_verify.failed == ["task-1"]
    assert at_verify.prs[40].status.value == "merged"
    assert agents.called("arbitrate")[0][0] == "task_failure"

    record = harness.store.read()
    assert record.state is LifecycleState.INIT
    assert record.step == 2
    assert record.steps_completed == 1
    assert record.decisions[0]["verdict"] == "SKIP"
    assert harness.workspace.branch == "main"


def test_kill_switch_stops_before_next_stage(tmp_path: Path) -> None:
    agents = FakeCollaborators({"parse_roadmap": [STEP_ONE]})
    harness = Harness(tmp_path, agents)

    def _plan(spec_path: str, context: dict[str, Any]) -> None:
        harness.write_queue("task-1")
        harness.kill_switch.touch()

    agents.hooks["plan_work"] = _plan

    outcome = harness.run()

    assert outcome.exit_code == EXIT_GATE_STOP
    assert outcome.state is LifecycleState.EXECUTE_TASKS
    assert agents.called("execute_task") == []
    record = harness.store.read()
    assert record.history[-1]["to"] == "EXECUTE_TASKS"
    assert record.in_flight == "task-1"


def test_existing_spec_skips_creation_and_step_limit_stops(tmp_path: Path) -> None:
    spec = tmp_path / "docs" / "specs" / "step-1.md"
    spec.parent.mkdir(parents=True)
    spec.write_text("# Step 1\n", encoding="utf-8")
    agents = FakeCollaborators({"parse_roadmap": [STEP_ONE]})
    harness = Harness(tmp_path, agents)

    outcome = harness.run(max_steps=1)

    assert outcome.exit_code == EXIT_SUCCESS
    assert outcome.steps_completed == 1
    assert "Step limit" in outcome.reason
    assert agents.called("create_spec") == []
    assert agents.called("review_spec")[0][0] == "docs/specs/step-1.md"
    record = harness.store.read()
    assert record.history[1]["verdict"] == "SPEC_EXISTS"
    assert record.last_result.payload["handoff_path"].endswith("handoffs/step-1.md")


def test_rejected_spec_feeds_review_into_next_revision(tmp_path: Path) -> None:
    agents = FakeCollaborators(
        {
            "parse_roadmap": [STEP_ONE],
            "review_spec": [AgentResult("REVISE", {"issues": ["no quality gates"]})],
        }
    )
    harness = Harness(tmp_path, agents)

    harness.run(max_steps=1)

    first, second = agents.called("create_spec")
    assert "review" not in first[1]
    assert second[1]["review"]["issues"] == ["no quality gates"]
    assert second[1]["revision"] == 2


def test_spec_revision_budget_halts_and_resume_rearbitrates(tmp_path: Path) -> None:
    config = OrderConfig.default()
    config.spec.max_revisions = 1
    agents = FakeCollaborators(
        {"parse_roadmap": [STEP_ONE, ROADMAP_DONE], "review_spec": [AgentResult("REVISE")]}
    )
    harness = Harness(tmp_path, agents, config=config)

    halted = harness.run()

    assert halted.exit_code == EXIT_HALT
    assert halted.state is LifecycleState.CREATE_SPEC
    record = harness.store.read()
    assert record.verdict is Verdict.SPEC_REJECTED
    assert record.arbiter_context is None
    assert record.decisions[-1]["site"] == "spec_revisions"

    agents.scripted["arbitrate"] = [AgentResult("SKIP")]
    resumed = harness.run()

    assert resumed.exit_code == EXIT_SUCCESS
    record = harness.store.read()
    assert record.step == 2
    assert record.step_id is None
    assert len(agents.called("create_spec")) == 1


def test_spec_revision_retry_resets_budget(tmp_path: Path) -> None:
    config = OrderConfig.default()
    config.spec.max_revisions = 1
    agents = FakeCollaborators(
        {
            "parse_roadmap": [STEP_ONE],
            "review_spec": [AgentResult("REVISE")],
            "arbitrate": [AgentResult("RETRY")],
        }
    )
    harness = Harness(tmp_path, agents, config=config)

    outcome = harness.run(max_steps=1)

    assert outcome.exit_code == EXIT_SUCCESS
    assert len(agents.called("create_spec")) == 2
    assert harness.store.read().decisions[0]["verdict"] == "RETRY"


def test_merge_blocker_skip_marks_prs_skipped(tmp_path: Path) -> None:
    config = OrderConfig.default()
    config.ci.poll_timeout_seconds = 60.0
    host = FakeHost({40: [pending(40)]})
    host.publish(40, "order/task-1")
    snapshots: list[Any] = []
    agents = FakeCollaborators(
        {"parse_roadmap": [STEP_ONE], "arbitrate": [AgentResult("SKIP")]}
    )
    harness = Harness(tmp_path, agents, config=config, host=host)
    agents.hooks["plan_work"] = lambda spec_path, context: harness.write_queue("task-1")
    agents.hooks["verify_completion"] = lambda step_id, context: snapshots.append(
        harness.store.read()
    )

    outcome = harness.run(max_steps=1)

    assert outcome.exit_code == EXIT_SUCCESS
    assert agents.called("arbitrate")[0][0] == "merge_batch"
    assert snapshots[0].skipped_prs == [40]
    assert snapshots[0].prs[40].status.value == "timeout"
    assert host.count("merge") == 0


def test_failed_verification_replans(tmp_path: Path) -> None:
    agents = FakeCollaborators(
        {
            "parse_roadmap": [STEP_ONE],
            "verify_completion": [AgentResult("GAPS_FOUND", {"gaps": ["docs"]})],
        }
    )
    harness = Harness(tmp_path, agents)

    outcome = harness.run(max_steps=1)

    assert outcome.exit_code == EXIT_SUCCESS
    assert len(agents.called("plan_work")) == 2
    verdicts = [entry["verdict"] for entry in harness.store.read().history]
    assert "VERIFICATION_FAILED" in verdicts


def test_failed_handoff_still_advances(tmp_path: Path) -> None:
    agents = FakeCollaborators(
        {"parse_roadmap": [STEP_ONE], "handoff": [AgentResult("ERROR")]}
    )
    harness = Harness(tmp_path, agents)

    outcome = harness.run(max_steps=1)

    assert outcome.exit_code == EXIT_SUCCESS
    record = harness.store.read()
    assert record.step == 2
    assert record.last_result.payload["handoff_error"] == "ERROR"


def test_roadmap_parser_failure_counts_and_retries(tmp_path: Path) -> None:
    agents = FakeCollaborators({"parse_roadmap": [AgentResult("ERROR"), ROADMAP_DONE]})
    harness = Harness(tmp_path, agents)

    outcome = harness.run()

    assert outcome.exit_code == EXIT_SUCCESS
    assert harness.store.read().consecutive_failures == 1


def test_iteration_budget_stops_each_session(tmp_path: Path) -> None:
    config = OrderConfig.default()
    config.safety.max_iterations = 2
    agents = FakeCollaborators({"parse_roadmap": [STEP_ONE]})
    harness = Harness(tmp_path, agents, config=config)

    first = harness.run()
    second = harness.run()

    assert first.exit_code == EXIT_GATE_STOP
    assert "Iteration budget" in first.reason
    assert first.state is LifecycleState.CREATE_SPEC
    assert second.exit_code == EXIT_GATE_STOP
    assert second.state is LifecycleState.PLAN_WORK


def test_verification_loop_trips_consecutive_failure_budget(tmp_path: Path) -> None:
    config = OrderConfig.default()
    config.safety.max_consecutive_failures = 3
    config.safety.max_iterations = 60
    gaps = [AgentResult("GAPS_FOUND", {"gaps": ["docs"]}) for _ in range(10)]
    agents = FakeCollaborators({"parse_roadmap": [STEP_ONE], "verify_completion": gaps})
    harness = Harness(tmp_path, agents, config=config)

    outcome = harness.run()

    assert outcome.exit_code == EXIT_GATE_STOP
    assert outcome.reason == "Too many consecutive failures (3/3)"
    assert outcome.state is LifecycleState.PLAN_WORK
    assert len(agents.called("verify_completion")) == 3
    assert harness.store.read().consecutive_failures == 3


def test_task_failure_retry_dispatches_task_again(tmp_path: Path) -> None:
    snapshots: list[Any] = []
    agents = FakeCollaborators(
        {
            "parse_roadmap": [STEP_ONE],
            "execute_task": [
                AgentResult("EXITED", {"exit_code": 1}),
                AgentResult("EXITED", {"exit_code": 0}),
            ],
            "arbitrate": [AgentResult("RETRY")],
        }
    )
    harness = Harness(tmp_path, agents)
    harness.host.publish(40, "order/task-1")
    agents.hooks["plan_work"] = lambda spec_path, context: harness.write_queue("task-1")
    agents.hooks["verify_completion"] = lambda step_id, context: snapshots.append(
        harness.store.read()
    )

    outcome = harness.run(max_steps=1)

    assert outcome.exit_code == EXIT_SUCCESS
    assert [args[0] for args in agents.called("execute_task")] == ["task-1", "task-1"]
    assert snapshots[0].completed == ["task-1"]
    assert snapshots[0].failed == []
    assert snapshots[0].consecutive_failures == 0
    decision = harness.store.read().decisions[0]
    assert (decision["site"], decision["verdict"]) == ("task_failure", "RETRY")


def test_task_failure_halts_on_halt_or_unrecognized_reply(tmp_path: Path) -> None:
    for reply in ("HALT", "CONTINUE"):
        agents = FakeCollaborators(
            {
                "parse_roadmap": [STEP_ONE],
                "execute_task": [AgentResult("EXITED", {"exit_code": 1})],
                "arbitrate": [AgentResult(reply)],
            }
        )
        harness = Harness(tmp_path / reply, agents)
        agents.hooks["plan_work"] = lambda spec_path, context, h=harness: h.write_queue("task-1")

        outcome = harness.run()

        assert outcome.exit_code == EXIT_HALT
        assert outcome.state is LifecycleState.EXECUTE_TASKS
        assert outcome.reason.startswith("HALT at task_failure")
        assert len(agents.called("execute_task")) == 1
        record = harness.store.read()
        assert record.failed == ["task-1"]
        assert record.decisions[-1]["verdict"] == "HALT"


def _blocked_merge_harness(tmp_path: Path, reply: str) -> Harness:
    config = OrderConfig.default()
    config.ci.poll_timeout_seconds = 60.0
    host = FakeHost({40: [pending(40)]})
    host.publish(40, "order/task-1")
    agents = FakeCollaborators({"parse_roadmap": [STEP_ONE], "arbitrate": [AgentResult(reply)]})
    harness = Harness(tmp_path, agents, config=config, host=host)
    agents.hooks["plan_work"] = lambda spec_path, context: harness.write_queue("task-1")
    return harness


def test_merge_blocker_retry_reenters_merge(tmp_path: Path) -> None:
    harness = _blocked_merge_harness(tmp_path, "RETRY")
    snapshots: list[Any] = []

    def _ci_recovers(site: str, context: dict[str, Any]) -> None:
        harness.host.views[40] = [passing(40)]

    harness.agents.hooks["arbitrate"] = _ci_recovers
    harness.agents.hooks["verify_completion"] = lambda step_id, context: snapshots.append(
        harness.store.read()
    )

    outcome = harness.run(max_steps=1)

    assert outcome.exit_code == EXIT_SUCCESS
    assert harness.agents.called("arbitrate")[0][0] == "merge_batch"
    assert harness.host.count("merge") == 1
    assert snapshots[0].prs[40].status.value == "merged"
    assert snapshots[0].skipped_prs == []
    edges = [(entry["from"], entry["to"], entry["verdict"]) for entry in snapshots[0].history]
    assert ("MERGE_PRS", "MERGE_PRS", "RETRY") in edges


def test_merge_blocker_halts_on_halt_or_unrecognized_reply(tmp_path: Path) -> None:
    for reply in ("HALT", "MERGE_ANYWAY"):
        harness = _blocked_merge_harness(tmp_path / reply, reply)

        outcome = harness.run()

        assert outcome.exit_code == EXIT_HALT
        assert outcome.state is LifecycleState.MERGE_PRS
        assert outcome.reason.startswith("HALT at merge_batch")
        assert harness.host.count("merge") == 0
        record = harness.store.read()
        assert record.skipped_prs == []
        assert record.prs[40].status.value == "timeout"
        assert record.decisions[-1]["verdict"] == "HALT"
