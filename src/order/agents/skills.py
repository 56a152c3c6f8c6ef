from __future__ import annotations

from order.agents.base import SkillAgent


class RoadmapParserAgent(SkillAgent):
    role = "roadmap_parser"
    command = "/parse-roadmap"
    verdicts = ("STEP_SELECTED", "ROADMAP_COMPLETE")
    fallback_prompt = """
You read the project roadmap and select the next step that is not yet done.
Report its identifier as "step", its title as "title" and, if a spec file for it
already exists, its path as "spec_path".
""".strip()


class SpecAuthorAgent(SkillAgent):
    role = "spec_author"
    command = "/create-spec"
    verdicts = ("SPEC_CREATED", "FAILED")
    fallback_prompt = """
You write the Spec Contract for one roadmap step. When a previous review asked for
revisions, address every point it raised. Report the written file as "spec_path".
""".strip()


class SpecReviewerAgent(SkillAgent):
    role = "spec_reviewer"
    command = "/review-spec"
    verdicts = ("APPROVED", "REVISE")
    fallback_prompt = """
You validate a Spec Contract in a fresh context. Approve only complete, testable
specs; otherwise list the required revisions under "issues".
""".strip()


class PlannerAgent(SkillAgent):
    role = "planner"
    command = "/plan-work"
    verdicts = ("PLANNED", "FAILED")
    fallback_prompt = """
You decompose an approved spec into small, independently mergeable tasks and append
one task id per line to the queue file given in the context.
""".strip()


class TaskExecutorAgent(SkillAgent):
    role = "executor"
    command = "/loop"
    fallback_prompt = """
You implement exactly one task on the current branch, push it, and open a draft
pull request for it.
""".strip()


class ConflictResolverAgent(SkillAgent):
    role = "conflict_resolver"
    command = "/resolve-conflicts"
    verdicts = ("RESOLVED", "UNRESOLVED")
    fallback_prompt = """
You rebase the pull request branch onto trunk, resolve the conflicting paths listed
in the context, and force-push the result.
""".strip()


class ArbiterAgent(SkillAgent):
    role = "arbiter"
    command = "/order-arbiter"
    verdicts = ("RETRY", "SKIP", "HALT")
    fallback_prompt = """
You decide how the coordinator proceeds after a failure it cannot resolve itself.
RETRY tries again, SKIP moves on, HALT stops the run.
""".strip()


class FixAgent(SkillAgent):
    role = "fixer"
    command = "/fix-checks"
    verdicts = ("FIXED", "RETRY", "SKIP", "HALT")
    fallback_prompt = """
You repair failing CI checks on the checked-out pull request branch. Commit the fix
locally but do not push. Report FIXED only if you committed a fix.
""".strip()


class FixReviewerAgent(SkillAgent):
    role = "fix_reviewer"
    command = "/review-fix"
    verdicts = ("APPROVED", "REJECTED")
    fallback_prompt = """
You independently review a proposed CI fix (the commits after "base_commit").
Reject fixes that weaken tests, skip checks, or change unrelated behaviour.
""".strip()


class FeedbackAgent(SkillAgent):
    role = "feedback_resolver"
    command = "/resolve-feedback"
    verdicts = ("RESOLVED", "NO_CHANGES")
    fallback_prompt = """
You address reviewer comments on the pull request, pushing any commits you make.
""".strip()


class VerifierAgent(SkillAgent):
    role = "verifier"
    command = "/verify-completion"
    verdicts = ("VERIFIED", "GAPS_FOUND")
    fallback_prompt = """
You check every completion gate of a roadmap step against trunk and list any gaps
under "gaps".
""".strip()


class HandoffAgent(SkillAgent):
    role = "handoff"
    command = "/handoff"
    verdicts = ("HANDOFF_COMPLETE", "FAILED")
    fallback_prompt = """
You write the handoff document for a finished roadmap step to the path given in the
context and mark the step done in the roadmap.
""".strip()
