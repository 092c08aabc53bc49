"""Unit tests for status, review status and phase transitions."""

import asyncio

from src.devpipeline.state.models import (
    FEATURE_REQUESTS_COLLECTION,
    IntakeRecord,
    IntakeStatus,
    ItemType,
    ReviewStatus,
    SourceRef,
    WorkItemStatus,
)
from tests.devpipeline.fakes import seed_work_item


def run_async(coro):
    return asyncio.run(coro)


# -----------------------------------------------------------------------------
# advance_status / mark_done
# -----------------------------------------------------------------------------


class TestAdvanceStatus:
    def test_advance_clears_review_status(self, service, work_items, gateway, emitter):
        n = seed_work_item(
            work_items,
            gateway,
            status=WorkItemStatus.TECH_DESIGN,
            review_status=ReviewStatus.APPROVED,
        )

        result = run_async(service.advance_status(n, WorkItemStatus.IMPLEMENTATION))

        assert result.success
        assert result.previous_status == WorkItemStatus.TECH_DESIGN
        record = work_items.by_issue(n)
        assert record.status == WorkItemStatus.IMPLEMENTATION
        assert record.review_status is None
        assert emitter.types == ["status_changed", "review_status_changed"]

    def test_advance_can_keep_review_status(self, service, work_items, gateway):
        n = seed_work_item(
            work_items,
            gateway,
            status=WorkItemStatus.PR_REVIEW,
            review_status=ReviewStatus.APPROVED,
        )

        run_async(service.advance_status(n, WorkItemStatus.FINAL_REVIEW, clear_review=False))

        assert work_items.by_issue(n).review_status == ReviewStatus.APPROVED

    def test_unknown_issue(self, service):
        result = run_async(service.advance_status(404, WorkItemStatus.DONE))
        assert not result.success
        assert result.error == "Issue #404 not found in project"


class TestMarkDone:
    def test_done_clears_fields_and_closes_design_prs(self, service, work_items, intake, gateway):
        n = seed_work_item(
            work_items,
            gateway,
            status=WorkItemStatus.PR_REVIEW,
            review_status=ReviewStatus.APPROVED,
            implementation_phase="2/2",
        )
        record = work_items.by_issue(n)
        record.source_ref = SourceRef(collection=FEATURE_REQUESTS_COLLECTION, id="fr-1")
        intake.records[(FEATURE_REQUESTS_COLLECTION, "fr-1")] = IntakeRecord(
            id="fr-1",
            title="Add dark mode",
            status=IntakeStatus.IN_PROGRESS,
            github_issue_number=n,
        )
        design_pr = gateway.seed_pull(f"design/issue-{n}-product", body=f"Part of #{n}")

        result = run_async(service.mark_done(n))

        assert result.success
        assert result.source_doc_updated
        assert result.closed_design_prs == [design_pr]
        record = work_items.by_issue(n)
        assert record.status == WorkItemStatus.DONE
        assert record.review_status is None
        assert record.implementation_phase is None
        assert intake.records[(FEATURE_REQUESTS_COLLECTION, "fr-1")].status == IntakeStatus.DONE
        assert not gateway.pulls[design_pr].is_open
        assert f"design/issue-{n}-product" not in gateway.branches

    def test_bug_intake_becomes_resolved(self, service, work_items, intake, gateway):
        n = seed_work_item(work_items, gateway, status=WorkItemStatus.PR_REVIEW, item_type=ItemType.BUG)
        work_items.by_issue(n).source_ref = SourceRef(collection="reports", id="bug-1")
        intake.records[("reports", "bug-1")] = IntakeRecord(
            id="bug-1",
            collection="reports",
            status=IntakeStatus.INVESTIGATING,
            github_issue_number=n,
        )

        run_async(service.mark_done(n))

        assert intake.records[("reports", "bug-1")].status == IntakeStatus.RESOLVED


# -----------------------------------------------------------------------------
# Design review
# -----------------------------------------------------------------------------


class TestReviewDesign:
    def test_approve_advances_to_successor(self, service, work_items, gateway):
        n = seed_work_item(
            work_items,
            gateway,
            status=WorkItemStatus.PRODUCT_DESIGN,
            review_status=ReviewStatus.WAITING_FOR_REVIEW,
        )

        result = run_async(service.review_design(n, "approve"))

        assert result.success
        assert result.advanced_to == WorkItemStatus.TECH_DESIGN
        assert result.review_status is None
        record = work_items.by_issue(n)
        assert record.status == WorkItemStatus.TECH_DESIGN
        assert record.review_status is None

    def test_approve_bug_investigation_stays_approved(self, service, work_items, gateway):
        n = seed_work_item(
            work_items,
            gateway,
            status=WorkItemStatus.BUG_INVESTIGATION,
            item_type=ItemType.BUG,
        )

        result = run_async(service.review_design(n, "approve"))

        assert result.success
        assert result.advanced_to is None
        assert result.review_status == ReviewStatus.APPROVED
        assert work_items.by_issue(n).status == WorkItemStatus.BUG_INVESTIGATION

    def test_changes_and_reject_keep_status(self, service, work_items, gateway):
        n = seed_work_item(work_items, gateway, status=WorkItemStatus.TECH_DESIGN)

        changes = run_async(service.review_design(n, "changes"))
        assert changes.review_status == ReviewStatus.REQUEST_CHANGES
        rejected = run_async(service.review_design(n, "reject"))
        assert rejected.review_status == ReviewStatus.REJECTED
        assert work_items.by_issue(n).status == WorkItemStatus.TECH_DESIGN

    def test_invalid_action(self, service, work_items, gateway):
        n = seed_work_item(work_items, gateway, status=WorkItemStatus.TECH_DESIGN)
        result = run_async(service.review_design(n, "maybe"))
        assert not result.success
        assert result.error == "Invalid review action: maybe"

    def test_not_in_design_phase(self, service, work_items, gateway):
        n = seed_work_item(work_items, gateway, status=WorkItemStatus.PR_REVIEW)

        result = run_async(service.review_design(n, "approve"))

        assert not result.success
        assert result.error == (
            "Item is no longer in a reviewable design phase (current status: PR Review)"
        )

    def test_item_without_status_is_reviewable(self, service, work_items, gateway):
        n = seed_work_item(work_items, gateway, status=None)

        result = run_async(service.review_design(n, "approve"))

        assert result.success
        assert result.advanced_to is None
        assert result.review_status == ReviewStatus.APPROVED
        record = work_items.by_issue(n)
        assert record.status is None
        assert record.review_status == ReviewStatus.APPROVED


class TestRequestChanges:
    def test_pr_changes_return_to_implementation(self, service, work_items, gateway):
        n = seed_work_item(
            work_items,
            gateway,
            status=WorkItemStatus.PR_REVIEW,
            review_status=ReviewStatus.WAITING_FOR_REVIEW,
        )

        result = run_async(service.request_changes_on_pr(n))

        assert result.success
        record = work_items.by_issue(n)
        assert record.status == WorkItemStatus.IMPLEMENTATION
        assert record.review_status == ReviewStatus.REQUEST_CHANGES

    def test_design_changes_keep_status(self, service, work_items, gateway):
        n = seed_work_item(work_items, gateway, status=WorkItemStatus.TECH_DESIGN)

        result = run_async(service.request_changes_on_design_pr(n, 12, "Technical Design"))

        assert result.success
        record = work_items.by_issue(n)
        assert record.status == WorkItemStatus.TECH_DESIGN
        assert record.review_status == ReviewStatus.REQUEST_CHANGES


class TestImplementationPhase:
    def test_invalid_phase_string_is_rejected(self, service, work_items, gateway):
        n = seed_work_item(work_items, gateway, status=WorkItemStatus.IMPLEMENTATION)

        result = run_async(service.advance_implementation_phase(n, "4/3"))

        assert not result.success
        assert result.error == "Invalid implementation phase: 4/3"
        assert work_items.by_issue(n).implementation_phase is None

    def test_phase_and_status_set_together(self, service, work_items, gateway):
        n = seed_work_item(work_items, gateway, status=WorkItemStatus.PR_REVIEW)

        result = run_async(service.advance_implementation_phase(n, "2/3", WorkItemStatus.IMPLEMENTATION))

        assert result.success
        record = work_items.by_issue(n)
        assert record.implementation_phase == "2/3"
        assert record.status == WorkItemStatus.IMPLEMENTATION

        run_async(service.clear_implementation_phase(n))
        assert work_items.by_issue(n).implementation_phase is None


# -----------------------------------------------------------------------------
# Undo
# -----------------------------------------------------------------------------


class TestUndo:
    def _item(self, work_items, gateway):
        return seed_work_item(
            work_items,
            gateway,
            status=WorkItemStatus.TECH_DESIGN,
            review_status=ReviewStatus.REQUEST_CHANGES,
        )

    def test_undo_at_window_boundary_is_accepted(self, service, work_items, gateway, clock):
        n = self._item(work_items, gateway)
        changed_at = clock()
        clock.advance(300)

        result = run_async(
            service.undo_status_change(
                n,
                restore_status=WorkItemStatus.PRODUCT_DESIGN,
                restore_review_status=ReviewStatus.WAITING_FOR_REVIEW,
                timestamp=changed_at,
            )
        )

        assert result.success
        record = work_items.by_issue(n)
        assert record.status == WorkItemStatus.PRODUCT_DESIGN
        assert record.review_status == ReviewStatus.WAITING_FOR_REVIEW

    def test_undo_after_window_changes_nothing(self, service, work_items, gateway, clock):
        n = self._item(work_items, gateway)
        changed_at = clock()
        clock.advance(301)

        result = run_async(
            service.undo_status_change(n, restore_status=WorkItemStatus.PRODUCT_DESIGN, timestamp=changed_at)
        )

        assert not result.success
        assert result.expired
        assert result.error == "Undo window expired (5 minutes)"
        assert work_items.by_issue(n).status == WorkItemStatus.TECH_DESIGN

    def test_review_status_untouched_unless_given(self, service, work_items, gateway, clock):
        n = self._item(work_items, gateway)

        run_async(
            service.undo_status_change(n, restore_status=WorkItemStatus.PRODUCT_DESIGN, timestamp=clock())
        )

        assert work_items.by_issue(n).review_status == ReviewStatus.REQUEST_CHANGES

    def test_explicit_none_clears_review_status(self, service, work_items, gateway, clock):
        n = self._item(work_items, gateway)

        run_async(service.undo_status_change(n, restore_review_status=None, timestamp=clock()))

        record = work_items.by_issue(n)
        assert record.review_status is None
        assert record.status == WorkItemStatus.TECH_DESIGN

    def test_timestamp_required(self, service, work_items, gateway):
        n = self._item(work_items, gateway)
        result = run_async(service.undo_status_change(n, restore_status=WorkItemStatus.BACKLOG))
        assert not result.success
        assert result.error == "Undo timestamp is required"


# -----------------------------------------------------------------------------
# Auto-advance
# -----------------------------------------------------------------------------


class TestAutoAdvance:
    def test_sweep_advances_design_phases_only(self, service, work_items, gateway, notifier):
        product = seed_work_item(
            work_items, gateway, title="A", status=WorkItemStatus.PRODUCT_DESIGN,
            review_status=ReviewStatus.APPROVED,
        )
        review = seed_work_item(
            work_items, gateway, title="B", status=WorkItemStatus.PR_REVIEW,
            review_status=ReviewStatus.APPROVED,
        )
        bug = seed_work_item(
            work_items, gateway, title="C", status=WorkItemStatus.BUG_INVESTIGATION,
            review_status=ReviewStatus.APPROVED, item_type=ItemType.BUG,
        )
        seed_work_item(
            work_items, gateway, title="D", status=WorkItemStatus.DONE,
            review_status=ReviewStatus.APPROVED,
        )

        result = run_async(service.auto_advance_approved())

        assert result.success
        assert result.total == 3
        assert result.advanced == 1
        assert result.failed == 2
        errors = {d.issue_number: d.error for d in result.details}
        assert errors[product] is None
        assert errors[review] == "PR Review handled by merge"
        assert errors[bug] == "No transition defined for Bug Investigation"
        assert work_items.by_issue(product).status == WorkItemStatus.TECH_DESIGN
        assert work_items.by_issue(review).status == WorkItemStatus.PR_REVIEW
        assert notifier.kinds == ["status_changed"]

    def test_dry_run_writes_nothing(self, service, work_items, gateway):
        n = seed_work_item(
            work_items, gateway, status=WorkItemStatus.TECH_DESIGN,
            review_status=ReviewStatus.APPROVED,
        )

        result = run_async(service.auto_advance_approved(dry_run=True))

        assert result.advanced == 1
        assert result.details[0].to_status == WorkItemStatus.IMPLEMENTATION
        assert work_items.by_issue(n).status == WorkItemStatus.TECH_DESIGN


# -----------------------------------------------------------------------------
# Clarification and decision routing
# -----------------------------------------------------------------------------


class TestClarificationAndRouting:
    def test_clarification_received_requires_waiting_state(self, service, work_items, gateway):
        n = seed_work_item(work_items, gateway, status=WorkItemStatus.TECH_DESIGN)

        result = run_async(service.mark_clarification_received(n))

        assert not result.success
        assert result.error == (
            "Item is not waiting for clarification (current review status: None)"
        )

    def test_clarification_received(self, service, work_items, gateway):
        n = seed_work_item(
            work_items,
            gateway,
            status=WorkItemStatus.TECH_DESIGN,
            review_status=ReviewStatus.WAITING_FOR_CLARIFICATION,
        )

        assert run_async(service.mark_clarification_received(n)).success
        assert work_items.by_issue(n).review_status == ReviewStatus.CLARIFICATION_RECEIVED

    def test_decision_routing_needs_a_target(self, service, work_items, gateway):
        n = seed_work_item(work_items, gateway, status=WorkItemStatus.BUG_INVESTIGATION)

        result = run_async(service.submit_decision_routing(n))

        assert not result.success
        assert result.error == "Either a target status or a review status is required"
