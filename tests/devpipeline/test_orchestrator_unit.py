"""Unit tests for the agent run orchestrator.

Each test drives a work item through one or more agent runs against the
in-memory collaborators and checks the comments, artifacts, PRs and status
changes the run leaves behind.
"""

import asyncio

import pytest

from src.devpipeline.agents.orchestrator import (
    WORKFLOWS,
    is_runnable,
    mode_for_review_status,
)
from src.devpipeline.agents.runner import AgentRunResult
from src.devpipeline.parsing.clarification import is_clarification_comment
from src.devpipeline.parsing.decision import is_decision_comment
from src.devpipeline.parsing.phases import has_phase_comment
from src.devpipeline.state.models import (
    DecisionSelection,
    ItemType,
    ProjectItem,
    ReviewStatus,
    WorkItemStatus,
)
from tests.devpipeline.fakes import seed_work_item


def run_async(coro):
    return asyncio.run(coro)


CLARIFICATION_OUTPUT = {
    "needsClarification": True,
    "clarification": {
        "context": "The settings page has no theme section yet.",
        "question": "Should the theme follow the OS preference?",
        "options": [
            {"label": "Follow OS", "description": "- Uses prefers-color-scheme", "isRecommended": True},
            {"label": "Manual only", "description": "- Simpler toggle"},
        ],
        "recommendation": "Follow OS",
    },
}

TECH_DESIGN = """# Technical Design

## Overview

Dark mode for the web app.

## Phase 1: Theme tokens (S)

Add color tokens.

- `src/theme.ts`

## Phase 2: Settings toggle (M)

Add a settings toggle.

- `src/settings.tsx`

## Phase 3: Persist choice (S)

Store the preference.

- `src/storage.ts`
"""

BUG_DECISION_OUTPUT = {
    "decision": {
        "type": "bug-fix",
        "context": "The crash comes from a null theme.",
        "options": [
            {
                "id": "opt1",
                "title": "Guard null theme",
                "isRecommended": True,
                "metadata": {"destination": "implementation"},
            },
            {
                "id": "opt2",
                "title": "Rework theme loading",
                "metadata": {"destination": "tech-design"},
            },
        ],
        "metadataSchema": [{"key": "destination", "label": "Destination", "type": "tag"}],
        "routing": {
            "metadataKey": "destination",
            "statusMap": {
                "implementation": "Ready for development",
                "tech-design": "Technical Design",
            },
        },
    }
}


def approve_output(title="feat: dark mode"):
    return {
        "decision": "APPROVED",
        "comment": "Looks good.",
        "commitMessage": {"title": title, "body": "Adds dark mode."},
    }


# -----------------------------------------------------------------------------
# Mode and eligibility helpers
# -----------------------------------------------------------------------------


class TestModeSelection:
    def test_review_status_maps_to_mode(self):
        assert mode_for_review_status(None) == "new"
        assert mode_for_review_status(ReviewStatus.REQUEST_CHANGES) == "feedback"
        assert mode_for_review_status(ReviewStatus.CLARIFICATION_RECEIVED) == "clarification"
        assert mode_for_review_status(ReviewStatus.DECISION_SUBMITTED) == "post-selection"
        assert mode_for_review_status(ReviewStatus.WAITING_FOR_REVIEW) == "new"

    def test_waiting_items_are_not_picked_up(self):
        definition = WORKFLOWS["tech-design"]
        waiting = ProjectItem(
            id="a",
            issue_number=1,
            status=WorkItemStatus.TECH_DESIGN,
            review_status=ReviewStatus.WAITING_FOR_REVIEW,
        )
        fresh = ProjectItem(id="b", issue_number=2, status=WorkItemStatus.TECH_DESIGN)
        assert not is_runnable(definition, waiting)
        assert is_runnable(definition, fresh)

    def test_pr_review_picks_up_waiting_items(self):
        definition = WORKFLOWS["pr-review"]
        item = ProjectItem(
            id="a",
            issue_number=1,
            status=WorkItemStatus.PR_REVIEW,
            review_status=ReviewStatus.WAITING_FOR_REVIEW,
        )
        assert is_runnable(definition, item)


# -----------------------------------------------------------------------------
# Preconditions and failures
# -----------------------------------------------------------------------------


class TestRunPreconditions:
    def test_unknown_workflow(self, orchestrator):
        outcome = run_async(orchestrator.run_item("deploy", 1))
        assert not outcome.success
        assert outcome.error == "Unknown workflow: deploy"

    def test_unknown_issue(self, orchestrator):
        outcome = run_async(orchestrator.run_item("tech-design", 99))
        assert not outcome.success
        assert outcome.error == "Issue #99 not found in project"

    def test_wrong_status_does_not_invoke_agent(self, orchestrator, runner, work_items, gateway):
        n = seed_work_item(work_items, gateway, status=WorkItemStatus.BACKLOG)
        outcome = run_async(orchestrator.run_item("tech-design", n))
        assert not outcome.success
        assert outcome.error == "Item is in Backlog, not Technical Design"
        assert runner.requests == []

    def test_runner_failure_is_reported(self, orchestrator, runner, work_items, gateway, emitter, notifier):
        n = seed_work_item(work_items, gateway, status=WorkItemStatus.TECH_DESIGN)
        runner.queue(AgentRunResult(success=False, error="agent timed out"))

        outcome = run_async(orchestrator.run_item("tech-design", n))

        assert not outcome.success
        assert outcome.error == "agent timed out"
        assert "agent_run_started" in emitter.types
        assert "agent_run_failed" in emitter.types
        assert "agent_run_completed" not in emitter.types
        assert notifier.kinds == ["agent_error"]
        assert work_items.by_issue(n).review_status is None
        assert gateway.pulls == {}

    def test_malformed_clarification_fails_the_run(self, orchestrator, runner, work_items, gateway):
        n = seed_work_item(work_items, gateway, status=WorkItemStatus.TECH_DESIGN)
        runner.queue({"needsClarification": True, "clarification": {"question": "Which?"}})

        outcome = run_async(orchestrator.run_item("tech-design", n))

        assert not outcome.success
        assert "Invalid clarification format" in outcome.error
        assert gateway.comments.get(n) is None

    def test_design_run_without_document_fails(self, orchestrator, runner, work_items, gateway):
        n = seed_work_item(work_items, gateway, status=WorkItemStatus.TECH_DESIGN)
        runner.queue({"comment": "Nothing to say"})

        outcome = run_async(orchestrator.run_item("tech-design", n))

        assert not outcome.success
        assert outcome.error == "Agent output contained no Technical Design document"

    def test_notifier_failure_does_not_fail_the_run(self, service, runner, store, work_items, gateway, artifacts, emitter):
        from src.devpipeline.agents.orchestrator import AgentRunOrchestrator
        from tests.devpipeline.fakes import RecordingNotifier

        orchestrator = AgentRunOrchestrator(
            service=service,
            runner=runner,
            store=store,
            work_items=work_items,
            gateway=gateway,
            artifacts=artifacts,
            notifier=RecordingNotifier(fail=True),
            emitter=emitter,
        )
        n = seed_work_item(work_items, gateway, status=WorkItemStatus.TECH_DESIGN)
        runner.queue({"design": TECH_DESIGN})

        outcome = run_async(orchestrator.run_item("tech-design", n))

        assert outcome.success
        assert work_items.by_issue(n).review_status == ReviewStatus.WAITING_FOR_REVIEW


# -----------------------------------------------------------------------------
# Clarifications
# -----------------------------------------------------------------------------


class TestClarificationRuns:
    def test_clarification_posts_question_without_pr(
        self, orchestrator, runner, work_items, gateway, artifacts, notifier
    ):
        n = seed_work_item(work_items, gateway, status=WorkItemStatus.TECH_DESIGN)
        runner.queue(CLARIFICATION_OUTPUT)

        outcome = run_async(orchestrator.run_item("tech-design", n))

        assert outcome.success
        assert outcome.kind == "clarification"
        record = work_items.by_issue(n)
        assert record.review_status == ReviewStatus.WAITING_FOR_CLARIFICATION
        assert record.artifacts.clarification.questions[0].question == (
            "Should the theme follow the OS preference?"
        )
        assert is_clarification_comment(gateway.comments[n][-1].body)
        assert (n, "clarification") in artifacts.documents
        assert gateway.pulls == {}
        assert notifier.kinds == ["needs_clarification"]

    def test_answer_resumes_in_clarification_mode(self, orchestrator, service, runner, work_items, gateway):
        n = seed_work_item(work_items, gateway, status=WorkItemStatus.TECH_DESIGN)
        runner.queue(CLARIFICATION_OUTPUT)
        run_async(orchestrator.run_item("tech-design", n))

        answered = run_async(service.submit_clarification_answer(n, "Follow OS"))
        assert answered.success
        assert work_items.by_issue(n).review_status == ReviewStatus.CLARIFICATION_RECEIVED

        runner.queue({"design": TECH_DESIGN})
        outcome = run_async(orchestrator.run_item("tech-design", n))

        assert outcome.success
        assert outcome.mode == "clarification"
        assert runner.requests[-1].mode == "clarification"
        assert "Follow OS" in runner.requests[-1].prompt
        assert work_items.by_issue(n).review_status == ReviewStatus.WAITING_FOR_REVIEW

    def test_implementation_clarification_opens_no_pr(self, orchestrator, runner, work_items, gateway):
        n = seed_work_item(work_items, gateway, status=WorkItemStatus.IMPLEMENTATION)
        runner.queue(CLARIFICATION_OUTPUT)

        outcome = run_async(orchestrator.run_item("implementation", n))

        assert outcome.success
        assert outcome.kind == "clarification"
        assert gateway.pulls == {}
        record = work_items.by_issue(n)
        assert record.status == WorkItemStatus.IMPLEMENTATION
        assert record.review_status == ReviewStatus.WAITING_FOR_CLARIFICATION


# -----------------------------------------------------------------------------
# Design documents
# -----------------------------------------------------------------------------


class TestDesignRuns:
    def test_document_is_committed_and_pr_opened(
        self, orchestrator, runner, work_items, gateway, artifacts, notifier, emitter
    ):
        n = seed_work_item(work_items, gateway, status=WorkItemStatus.TECH_DESIGN)
        runner.queue({"design": TECH_DESIGN, "comment": "First draft"})

        outcome = run_async(orchestrator.run_item("tech-design", n))

        assert outcome.success
        assert outcome.kind == "document"
        assert artifacts.documents[(n, "tech")] == TECH_DESIGN
        branch = f"design/issue-{n}-tech"
        assert gateway.files[(branch, f"design-docs/issue-{n}/tech-design.md")] == TECH_DESIGN
        pr = gateway.pulls[outcome.pr_number]
        assert pr.head_branch == branch
        assert pr.base_branch == "main"
        assert pr.title == f"docs: Technical Design for #{n} - Add dark mode"
        assert pr.body.endswith(f"Part of #{n}")
        assert work_items.by_issue(n).review_status == ReviewStatus.WAITING_FOR_REVIEW
        assert notifier.kinds == ["design_pr_ready"]
        assert emitter.types[-1] == "agent_run_completed"

    def test_feedback_run_updates_existing_pr(self, orchestrator, service, runner, work_items, gateway, artifacts):
        n = seed_work_item(work_items, gateway, status=WorkItemStatus.TECH_DESIGN)
        runner.queue({"design": TECH_DESIGN})
        first = run_async(orchestrator.run_item("tech-design", n))

        run_async(service.request_changes_on_design_pr(n, first.pr_number))
        revised = TECH_DESIGN.replace("Dark mode for the web app.", "Dark mode for web and mobile.")
        runner.queue({"design": revised, "comment": "Covered mobile"})
        second = run_async(orchestrator.run_item("tech-design", n))

        assert second.success
        assert second.mode == "feedback"
        assert second.pr_number == first.pr_number
        assert len(gateway.pulls) == 1
        assert "Covered mobile" in gateway.pr_comments[first.pr_number][-1]
        assert artifacts.documents[(n, "tech")] == revised
        assert TECH_DESIGN in runner.requests[-1].prompt

    def test_structured_phases_are_recorded(self, orchestrator, runner, work_items, gateway):
        n = seed_work_item(work_items, gateway, status=WorkItemStatus.TECH_DESIGN)
        runner.queue(
            {
                "design": TECH_DESIGN,
                "phases": [
                    {"order": 1, "name": "Tokens", "estimatedSize": "S"},
                    {"order": 2, "name": "Toggle", "estimatedSize": "M"},
                ],
            }
        )

        outcome = run_async(orchestrator.run_item("tech-design", n))

        assert outcome.success
        record = work_items.by_issue(n)
        assert [p.name for p in record.artifacts.phases] == ["Tokens", "Toggle"]
        assert has_phase_comment([c.body for c in gateway.comments[n]])

    def test_mock_options_become_a_decision(self, orchestrator, service, runner, work_items, gateway, notifier):
        n = seed_work_item(work_items, gateway, status=WorkItemStatus.PRODUCT_DESIGN)
        runner.queue(
            {
                "mockOptions": [
                    {"id": "optA", "title": "Minimal", "isRecommended": True},
                    {"id": "optB", "title": "Bold"},
                ]
            }
        )

        outcome = run_async(orchestrator.run_item("product-design", n))

        assert outcome.success
        assert outcome.kind == "decision"
        assert outcome.pr_number is None
        record = work_items.by_issue(n)
        assert record.review_status == ReviewStatus.WAITING_FOR_DECISION
        assert record.artifacts.decision.decision_type == "design-selection"
        assert is_decision_comment(gateway.comments[n][-1].body)
        assert notifier.kinds == ["decision_needed"]

        chosen = run_async(service.submit_decision(n, DecisionSelection(selected_option_id="optB")))
        assert chosen.success
        assert chosen.routed_to is None
        assert work_items.by_issue(n).status == WorkItemStatus.PRODUCT_DESIGN
        assert work_items.by_issue(n).review_status == ReviewStatus.DECISION_SUBMITTED

        runner.queue({"design": "# Product Design\n\n## Overview\n\nBold look."})
        follow_up = run_async(orchestrator.run_item("product-design", n))

        assert follow_up.success
        assert follow_up.mode == "post-selection"
        assert "The admin selected: optB" in runner.requests[-1].prompt
        assert work_items.by_issue(n).review_status == ReviewStatus.WAITING_FOR_REVIEW


# -----------------------------------------------------------------------------
# Bug investigation
# -----------------------------------------------------------------------------


class TestBugInvestigation:
    def test_fix_options_route_on_selection(self, orchestrator, service, runner, work_items, gateway, notifier):
        n = seed_work_item(
            work_items,
            gateway,
            title="Crash on launch",
            status=WorkItemStatus.BUG_INVESTIGATION,
            item_type=ItemType.BUG,
        )
        runner.queue(BUG_DECISION_OUTPUT)

        outcome = run_async(orchestrator.run_item("bug-investigation", n))

        assert outcome.success
        assert outcome.kind == "decision"
        assert gateway.pulls == {}
        assert work_items.by_issue(n).review_status == ReviewStatus.WAITING_FOR_DECISION

        chosen = run_async(service.submit_decision(n, DecisionSelection(selected_option_id="opt1")))

        assert chosen.success
        assert chosen.routed_to == WorkItemStatus.IMPLEMENTATION
        record = work_items.by_issue(n)
        assert record.status == WorkItemStatus.IMPLEMENTATION
        assert record.review_status is None
        assert record.artifacts.decision.selection.selected_option_id == "opt1"
        assert notifier.kinds == ["decision_needed", "decision_submitted"]

    def test_investigation_without_options_fails(self, orchestrator, runner, work_items, gateway):
        n = seed_work_item(
            work_items,
            gateway,
            status=WorkItemStatus.BUG_INVESTIGATION,
            item_type=ItemType.BUG,
        )
        runner.queue({"comment": "Could not reproduce"})

        outcome = run_async(orchestrator.run_item("bug-investigation", n))

        assert not outcome.success
        assert outcome.error == "Investigation output has no fix options"
        assert work_items.by_issue(n).review_status is None


# -----------------------------------------------------------------------------
# Implementation and PR review
# -----------------------------------------------------------------------------


class TestSinglePhaseImplementation:
    def test_opens_pr_against_default_branch(self, orchestrator, runner, work_items, gateway, notifier):
        n = seed_work_item(work_items, gateway, status=WorkItemStatus.IMPLEMENTATION)
        runner.queue({"prSummary": "Adds a dark theme"})

        outcome = run_async(orchestrator.run_item("implementation", n))

        assert outcome.success
        assert outcome.kind == "implementation"
        pr = gateway.pulls[outcome.pr_number]
        assert pr.head_branch == f"feature/issue-{n}-add-dark-mode"
        assert pr.base_branch == "main"
        assert pr.title == "feat: Add dark mode"
        assert pr.body.endswith(f"Closes #{n}")
        assert runner.requests[-1].allow_writes
        assert runner.requests[-1].branch == pr.head_branch
        record = work_items.by_issue(n)
        assert record.status == WorkItemStatus.PR_REVIEW
        assert record.review_status == ReviewStatus.WAITING_FOR_REVIEW
        assert notifier.kinds == ["pr_ready"]

    def test_bug_branch_and_title_use_fix_prefix(self, orchestrator, runner, work_items, gateway):
        n = seed_work_item(
            work_items,
            gateway,
            title="Crash on launch",
            status=WorkItemStatus.IMPLEMENTATION,
            item_type=ItemType.BUG,
        )
        runner.queue({"prSummary": "Guard null theme"})

        outcome = run_async(orchestrator.run_item("implementation", n))

        pr = gateway.pulls[outcome.pr_number]
        assert pr.head_branch == f"fix/issue-{n}-crash-on-launch"
        assert pr.title == "fix: Crash on launch"

    def test_review_request_changes_then_revision(self, orchestrator, runner, work_items, gateway):
        n = seed_work_item(work_items, gateway, status=WorkItemStatus.IMPLEMENTATION)
        runner.queue({"prSummary": "Adds a dark theme"})
        implemented = run_async(orchestrator.run_item("implementation", n))

        runner.queue({"decision": "REQUEST_CHANGES", "comment": "Missing tests"})
        reviewed = run_async(orchestrator.run_item("pr-review", n))

        assert reviewed.success
        assert reviewed.kind == "review"
        assert gateway.reviews[-1][:2] == (implemented.pr_number, "REQUEST_CHANGES")
        record = work_items.by_issue(n)
        assert record.status == WorkItemStatus.IMPLEMENTATION
        assert record.review_status == ReviewStatus.REQUEST_CHANGES

        runner.queue({"prSummary": "Added tests"})
        revised = run_async(orchestrator.run_item("implementation", n))

        assert revised.success
        assert revised.mode == "feedback"
        assert revised.pr_number == implemented.pr_number
        assert len(gateway.pulls) == 1
        assert "Added tests" in gateway.pr_comments[implemented.pr_number][-1]
        assert work_items.by_issue(n).status == WorkItemStatus.PR_REVIEW

    def test_approval_saves_commit_message_used_at_merge(self, orchestrator, service, runner, work_items, gateway):
        n = seed_work_item(work_items, gateway, status=WorkItemStatus.IMPLEMENTATION)
        runner.queue({"prSummary": "Adds a dark theme"})
        implemented = run_async(orchestrator.run_item("implementation", n))

        runner.queue(approve_output("feat: add dark mode toggle"))
        reviewed = run_async(orchestrator.run_item("pr-review", n))

        assert reviewed.success
        record = work_items.by_issue(n)
        assert record.review_status == ReviewStatus.APPROVED
        assert record.artifacts.commit_message.title == "feat: add dark mode toggle"

        merged = run_async(service.merge_implementation_pr(n, implemented.pr_number))

        assert merged.success
        assert merged.marked_done
        assert gateway.last_merge_message == ("feat: add dark mode toggle", "Adds dark mode.")
        assert work_items.by_issue(n).status == WorkItemStatus.DONE

    def test_review_without_verdict_fails(self, orchestrator, runner, work_items, gateway):
        n = seed_work_item(work_items, gateway, status=WorkItemStatus.IMPLEMENTATION)
        runner.queue({"prSummary": "Adds a dark theme"})
        run_async(orchestrator.run_item("implementation", n))

        runner.queue({"comment": "Not sure"})
        outcome = run_async(orchestrator.run_item("pr-review", n))

        assert not outcome.success
        assert outcome.error == "PR review output has no decision"
        assert work_items.by_issue(n).review_status == ReviewStatus.WAITING_FOR_REVIEW

    def test_review_without_open_pr_fails(self, orchestrator, runner, work_items, gateway):
        n = seed_work_item(
            work_items,
            gateway,
            status=WorkItemStatus.PR_REVIEW,
            review_status=ReviewStatus.WAITING_FOR_REVIEW,
        )

        outcome = run_async(orchestrator.run_item("pr-review", n))

        assert not outcome.success
        assert outcome.error == f"No open PR found for issue #{n}"
        assert runner.requests == []


class TestMultiPhaseImplementation:
    def test_tech_design_to_done_through_three_phases(
        self, orchestrator, service, runner, work_items, gateway
    ):
        n = seed_work_item(work_items, gateway, status=WorkItemStatus.TECH_DESIGN)

        runner.queue({"design": TECH_DESIGN})
        design = run_async(orchestrator.run_item("tech-design", n))
        merged_design = run_async(service.merge_design_pr(n, design.pr_number, "tech"))

        assert merged_design.success
        assert merged_design.phases_detected == 3
        assert merged_design.advanced_to == WorkItemStatus.IMPLEMENTATION
        assert has_phase_comment([c.body for c in gateway.comments[n]])

        phase_prs = []
        for phase in (1, 2, 3):
            runner.queue({"prSummary": f"Phase {phase} work"})
            implemented = run_async(orchestrator.run_item("implementation", n))
            assert implemented.success
            pr = gateway.pulls[implemented.pr_number]
            assert pr.base_branch == f"feature/task-{n}"
            assert pr.head_branch == f"feature/task-{n}-phase-{phase}"
            assert pr.title == f"feat: Add dark mode (phase {phase}/3)"
            assert pr.body.endswith(f"Part of #{n}")
            phase_prs.append(implemented.pr_number)

            runner.queue(approve_output(f"feat: dark mode phase {phase}"))
            assert run_async(orchestrator.run_item("pr-review", n)).success

            merged = run_async(service.merge_implementation_pr(n, implemented.pr_number))
            assert merged.success
            assert merged.phase_info.current == phase
            assert merged.phase_info.total == 3

            record = work_items.by_issue(n)
            if phase < 3:
                assert merged.phase_info.next == phase + 1
                assert record.implementation_phase == f"{phase + 1}/3"
                assert record.status == WorkItemStatus.IMPLEMENTATION
                assert record.review_status is None

        assert f"feature/task-{n}" in gateway.branches
        assert work_items.by_issue(n).artifacts.task_branch == f"feature/task-{n}"

        final_pr = merged.final_pr_created
        assert final_pr is not None
        final = gateway.pulls[final_pr.pr_number]
        assert final.head_branch == f"feature/task-{n}"
        assert final.base_branch == "main"
        record = work_items.by_issue(n)
        assert record.status == WorkItemStatus.FINAL_REVIEW
        assert record.review_status == ReviewStatus.WAITING_FOR_REVIEW

        finished = run_async(service.merge_final_pr(n, final_pr.pr_number))

        assert finished.success
        record = work_items.by_issue(n)
        assert record.status == WorkItemStatus.DONE
        assert record.implementation_phase is None
        assert record.artifacts.task_branch is None
        assert f"feature/task-{n}" not in gateway.branches
        assert all(f"feature/task-{n}-phase-{i}" not in gateway.branches for i in (1, 2, 3))

    def test_first_run_sets_phase_counter(self, orchestrator, service, runner, work_items, gateway):
        n = seed_work_item(work_items, gateway, status=WorkItemStatus.TECH_DESIGN)
        runner.queue({"design": TECH_DESIGN})
        design = run_async(orchestrator.run_item("tech-design", n))
        run_async(service.merge_design_pr(n, design.pr_number, "tech"))
        assert work_items.by_issue(n).implementation_phase is None

        runner.queue({"prSummary": "Tokens"})
        run_async(orchestrator.run_item("implementation", n))

        assert work_items.by_issue(n).implementation_phase == "1/3"
        assert "Theme tokens" in runner.requests[-1].prompt


# -----------------------------------------------------------------------------
# Batch runs
# -----------------------------------------------------------------------------


class TestBatchRuns:
    def test_unknown_workflow_raises(self, orchestrator):
        with pytest.raises(ValueError):
            run_async(orchestrator.run_batch("deploy"))

    def test_only_runnable_items_are_picked_up(self, orchestrator, runner, work_items, gateway):
        seed_work_item(work_items, gateway, title="First", status=WorkItemStatus.TECH_DESIGN)
        seed_work_item(
            work_items,
            gateway,
            title="Second",
            status=WorkItemStatus.TECH_DESIGN,
            review_status=ReviewStatus.WAITING_FOR_REVIEW,
        )
        seed_work_item(work_items, gateway, title="Third", status=WorkItemStatus.BACKLOG)
        runner.queue({"design": TECH_DESIGN})

        result = run_async(orchestrator.run_batch("tech-design"))

        assert result.total == 1
        assert result.succeeded == 1
        assert len(runner.requests) == 1

    def test_one_failure_does_not_stop_the_batch(self, orchestrator, runner, work_items, gateway):
        first = seed_work_item(work_items, gateway, title="First", status=WorkItemStatus.TECH_DESIGN)
        second = seed_work_item(work_items, gateway, title="Second", status=WorkItemStatus.TECH_DESIGN)
        runner.queue(AgentRunResult(success=False, error="boom"))
        runner.queue({"design": TECH_DESIGN})

        result = run_async(orchestrator.run_batch("tech-design"))

        assert result.total == 2
        assert result.succeeded == 1
        assert result.failed == 1
        assert [o.issue_number for o in result.outcomes] == [first, second]
        assert work_items.by_issue(second).review_status == ReviewStatus.WAITING_FOR_REVIEW

    def test_limit_caps_the_batch(self, orchestrator, runner, work_items, gateway):
        for title in ("A", "B", "C"):
            seed_work_item(work_items, gateway, title=title, status=WorkItemStatus.TECH_DESIGN)
        runner.queue({"design": TECH_DESIGN})

        result = run_async(orchestrator.run_batch("tech-design", limit=1))

        assert result.total == 1
