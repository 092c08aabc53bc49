"""Unit tests for design, implementation, final and revert merges."""

import asyncio
from unittest.mock import AsyncMock

from src.devpipeline.state.models import (
    CommitMessage,
    ImplementationPhase,
    ReviewStatus,
    WorkItemStatus,
)
from tests.devpipeline.fakes import fake_sha, seed_work_item


def run_async(coro):
    return asyncio.run(coro)


TECH_DESIGN = """# Technical Design

## Overview

Split the work.

## Phase 1: Schema (S)

Add the table.

- `db/schema.sql`

## Phase 2: API (M)

Expose the endpoint.

- `api/routes.py`
"""


# -----------------------------------------------------------------------------
# Design PRs
# -----------------------------------------------------------------------------


class TestMergeDesignPR:
    def test_product_design_advances_to_tech_design(self, service, work_items, gateway, artifacts):
        n = seed_work_item(
            work_items,
            gateway,
            status=WorkItemStatus.PRODUCT_DESIGN,
            review_status=ReviewStatus.WAITING_FOR_REVIEW,
        )
        pr = gateway.seed_pull(f"design/issue-{n}-product", body=f"Part of #{n}")

        result = run_async(service.merge_design_pr(n, pr, "product"))

        assert result.success
        assert result.merge_commit_sha == fake_sha(pr)
        assert result.previous_status == WorkItemStatus.PRODUCT_DESIGN
        assert result.advanced_to == WorkItemStatus.TECH_DESIGN
        assert gateway.last_merge_message[0] == f"docs: product for issue #{n}"
        record = work_items.by_issue(n)
        assert record.status == WorkItemStatus.TECH_DESIGN
        assert record.review_status is None
        assert record.artifacts.designs["product-design"].pr_number == pr
        assert f"design/issue-{n}-product" not in gateway.branches

    def test_tech_design_records_phases(self, service, work_items, gateway, artifacts):
        n = seed_work_item(work_items, gateway, status=WorkItemStatus.TECH_DESIGN)
        artifacts.documents[(n, "tech")] = TECH_DESIGN
        pr = gateway.seed_pull(f"design/issue-{n}-tech")

        result = run_async(service.merge_design_pr(n, pr, "tech"))

        assert result.success
        assert result.advanced_to == WorkItemStatus.IMPLEMENTATION
        assert result.phases_detected == 2
        record = work_items.by_issue(n)
        assert [p.name for p in record.artifacts.phases] == ["Schema", "API"]
        assert record.artifacts.phases[1].files == ["api/routes.py"]
        assert record.artifacts.designs["tech-design"].pr_number == pr

    def test_single_phase_tech_design_records_nothing(self, service, work_items, gateway, artifacts):
        n = seed_work_item(work_items, gateway, status=WorkItemStatus.TECH_DESIGN)
        artifacts.documents[(n, "tech")] = "# Technical Design\n\n## Overview\n\nSmall change."
        pr = gateway.seed_pull(f"design/issue-{n}-tech")

        result = run_async(service.merge_design_pr(n, pr, "tech"))

        assert result.phases_detected == 0
        assert work_items.by_issue(n).artifacts.phases == []
        assert gateway.comments.get(n) is None

    def test_untracked_item_still_merges(self, service, gateway):
        pr = gateway.seed_pull("design/issue-77-product")

        result = run_async(service.merge_design_pr(77, pr, "product"))

        assert result.success
        assert result.advanced_to is None
        assert gateway.pulls[pr].merged

    def test_missing_pr_details_do_not_block_merge(self, service, work_items, gateway):
        n = seed_work_item(work_items, gateway, status=WorkItemStatus.PRODUCT_DESIGN)
        pr = gateway.seed_pull(f"design/issue-{n}-product")
        gateway.get_pr_details = AsyncMock(return_value=None)

        result = run_async(service.merge_design_pr(n, pr, "product"))

        assert result.success
        assert result.advanced_to == WorkItemStatus.TECH_DESIGN
        assert gateway.pulls[pr].merged
        assert f"design/issue-{n}-product" in gateway.branches
        assert work_items.by_issue(n).status == WorkItemStatus.TECH_DESIGN

    def test_invalid_design_type(self, service, gateway):
        result = run_async(service.merge_design_pr(1, 2, "ux"))
        assert not result.success
        assert result.error == "Invalid design type: ux"
        assert gateway.calls == []

    def test_approve_design_finds_open_pr(self, service, work_items, gateway):
        n = seed_work_item(work_items, gateway, status=WorkItemStatus.PRODUCT_DEVELOPMENT)
        pr = gateway.seed_pull(f"design/issue-{n}-product-dev")

        result = run_async(service.approve_design(n, "product-dev"))

        assert result.success
        assert gateway.pulls[pr].merged
        assert work_items.by_issue(n).status == WorkItemStatus.PRODUCT_DESIGN

    def test_approve_design_without_pr(self, service, work_items, gateway):
        n = seed_work_item(work_items, gateway, status=WorkItemStatus.TECH_DESIGN)

        result = run_async(service.approve_design(n, "tech"))

        assert not result.success
        assert result.error == f"No open Technical Design PR found for issue #{n}"


# -----------------------------------------------------------------------------
# Implementation PRs
# -----------------------------------------------------------------------------


class TestMergeImplementationPR:
    def test_single_phase_merge_marks_done(self, service, work_items, gateway, notifier):
        n = seed_work_item(
            work_items,
            gateway,
            status=WorkItemStatus.PR_REVIEW,
            review_status=ReviewStatus.APPROVED,
        )
        pr = gateway.seed_pull(f"feature/issue-{n}-add-dark-mode", title="feat: Add dark mode")

        result = run_async(service.merge_implementation_pr(n, pr))

        assert result.success
        assert result.marked_done
        assert result.phase_info is None
        assert gateway.last_merge_message == ("feat: Add dark mode", f"Part of #{n}")
        record = work_items.by_issue(n)
        assert record.status == WorkItemStatus.DONE
        assert record.artifacts.last_merged_pr.merge_commit_sha == fake_sha(pr)
        assert "merge_complete" in notifier.kinds

    def test_saved_commit_message_is_used_once(self, service, work_items, gateway):
        n = seed_work_item(work_items, gateway, status=WorkItemStatus.PR_REVIEW)
        pr = gateway.seed_pull(f"feature/issue-{n}-x")
        work_items.by_issue(n).artifacts.commit_message = CommitMessage(
            pr_number=pr, title="feat: saved title", body="Saved body"
        )

        run_async(service.merge_implementation_pr(n, pr))

        assert gateway.last_merge_message == ("feat: saved title", "Saved body")
        assert work_items.by_issue(n).artifacts.commit_message is None

    def test_commit_message_for_another_pr_is_ignored(self, service, work_items, gateway):
        n = seed_work_item(work_items, gateway, status=WorkItemStatus.PR_REVIEW)
        pr = gateway.seed_pull(f"feature/issue-{n}-x", title="feat: from PR")
        work_items.by_issue(n).artifacts.commit_message = CommitMessage(
            pr_number=pr + 100, title="stale", body=""
        )

        run_async(service.merge_implementation_pr(n, pr))

        assert gateway.last_merge_message[0] == "feat: from PR"

    def test_middle_phase_returns_to_implementation(self, service, work_items, gateway):
        n = seed_work_item(
            work_items,
            gateway,
            status=WorkItemStatus.PR_REVIEW,
            review_status=ReviewStatus.APPROVED,
            implementation_phase="1/3",
        )
        pr = gateway.seed_pull(f"feature/task-{n}-phase-1", base=f"feature/task-{n}")

        result = run_async(service.merge_implementation_pr(n, pr))

        assert result.success
        assert result.phase_info.current == 1
        assert result.phase_info.next == 2
        assert result.final_pr_created is None
        assert not result.marked_done
        record = work_items.by_issue(n)
        assert record.implementation_phase == "2/3"
        assert record.status == WorkItemStatus.IMPLEMENTATION
        assert record.review_status is None

    def test_last_phase_opens_final_pr(self, service, work_items, gateway):
        n = seed_work_item(
            work_items,
            gateway,
            status=WorkItemStatus.PR_REVIEW,
            review_status=ReviewStatus.APPROVED,
            implementation_phase="2/2",
        )
        gateway.branches.add(f"feature/task-{n}")
        pr = gateway.seed_pull(f"feature/task-{n}-phase-2", base=f"feature/task-{n}")

        result = run_async(service.merge_implementation_pr(n, pr))

        assert result.success
        assert result.phase_info.next is None
        final = gateway.pulls[result.final_pr_created.pr_number]
        assert final.head_branch == f"feature/task-{n}"
        assert final.base_branch == "main"
        assert final.title == f"feat: Add dark mode (#{n})"
        assert final.body.startswith(f"Closes #{n}")
        record = work_items.by_issue(n)
        assert record.status == WorkItemStatus.FINAL_REVIEW
        assert record.review_status == ReviewStatus.WAITING_FOR_REVIEW

    def test_existing_final_pr_is_reused(self, service, work_items, gateway):
        n = seed_work_item(
            work_items, gateway, status=WorkItemStatus.PR_REVIEW, implementation_phase="2/2"
        )
        existing = gateway.seed_pull(f"feature/task-{n}", title="Final")
        pr = gateway.seed_pull(f"feature/task-{n}-phase-2", base=f"feature/task-{n}")

        result = run_async(service.merge_implementation_pr(n, pr))

        assert result.final_pr_created.pr_number == existing
        assert "create_pull_request" not in gateway.calls

    def test_unknown_issue(self, service):
        result = run_async(service.merge_implementation_pr(5, 6))
        assert not result.success
        assert result.error == "Issue #5 not found in project"


class TestMergeFinalPR:
    def test_final_merge_finishes_item(self, service, work_items, gateway):
        n = seed_work_item(
            work_items,
            gateway,
            status=WorkItemStatus.FINAL_REVIEW,
            review_status=ReviewStatus.WAITING_FOR_REVIEW,
            implementation_phase="2/2",
        )
        record = work_items.by_issue(n)
        record.artifacts.task_branch = f"feature/task-{n}"
        final = gateway.seed_pull(f"feature/task-{n}", title=f"feat: Add dark mode (#{n})")
        gateway.branches.update({f"feature/task-{n}-phase-1", f"feature/task-{n}-phase-2"})
        record.artifacts.phases = [
            ImplementationPhase(order=1, name="Schema"),
            ImplementationPhase(order=2, name="API"),
        ]

        result = run_async(service.merge_final_pr(n, final))

        assert result.success
        assert result.merge_commit_sha == fake_sha(final)
        record = work_items.by_issue(n)
        assert record.status == WorkItemStatus.DONE
        assert record.implementation_phase is None
        assert record.artifacts.task_branch is None
        assert f"feature/task-{n}" not in gateway.branches
        assert f"feature/task-{n}-phase-1" not in gateway.branches
        assert f"feature/task-{n}-phase-2" not in gateway.branches
        assert f"Final PR #{final} has been merged" in gateway.comments[n][-1].body

    def test_already_merged_pr_counts_as_merged(self, service, work_items, gateway):
        n = seed_work_item(work_items, gateway, status=WorkItemStatus.FINAL_REVIEW)
        final = gateway.seed_pull(f"feature/task-{n}")
        run_async(gateway.merge_pull_request(final, "merged elsewhere"))
        gateway.calls.clear()

        result = run_async(service.merge_final_pr(n, final))

        assert result.success
        assert result.merge_commit_sha == fake_sha(final)
        assert "merge_pull_request" not in gateway.calls
        assert work_items.by_issue(n).status == WorkItemStatus.DONE


# -----------------------------------------------------------------------------
# Reverts
# -----------------------------------------------------------------------------


class TestRevert:
    def _merged(self, service, work_items, gateway):
        n = seed_work_item(
            work_items,
            gateway,
            status=WorkItemStatus.PR_REVIEW,
            review_status=ReviewStatus.APPROVED,
        )
        pr = gateway.seed_pull(f"feature/issue-{n}-add-dark-mode", title="feat: Add dark mode")
        run_async(service.merge_implementation_pr(n, pr))
        gateway.calls.clear()
        return n, pr

    def test_sha_mismatch_writes_nothing(self, service, work_items, gateway):
        n, pr = self._merged(service, work_items, gateway)

        result = run_async(service.revert_merge(n, pr, short_sha="deadbeef"))

        assert not result.success
        assert result.error == "Merge commit SHA mismatch"
        assert gateway.calls == []
        assert work_items.by_issue(n).status == WorkItemStatus.DONE

    def test_revert_reopens_implementation(self, service, work_items, gateway, emitter):
        n, pr = self._merged(service, work_items, gateway)

        result = run_async(service.revert_merge(n, pr, short_sha=fake_sha(pr)[:7], phase="2/3"))

        assert result.success
        revert = gateway.pulls[result.revert_pr_number]
        assert revert.head_branch == f"revert-{pr}-feature/issue-{n}-add-dark-mode"
        record = work_items.by_issue(n)
        assert record.status == WorkItemStatus.IMPLEMENTATION
        assert record.review_status == ReviewStatus.REQUEST_CHANGES
        assert record.implementation_phase == "2/3"
        assert record.artifacts.revert_pr_number == result.revert_pr_number
        assert "revert_created" in emitter.types

    def test_missing_sha(self, service, work_items, gateway):
        n = seed_work_item(work_items, gateway, status=WorkItemStatus.DONE)
        pr = gateway.seed_pull("feature/never-merged")

        result = run_async(service.revert_merge(n, pr))

        assert not result.success
        assert result.error == "Could not find merge commit SHA"

    def test_conflicting_revert(self, service, work_items, gateway):
        n, pr = self._merged(service, work_items, gateway)
        gateway.revert_unavailable = True

        result = run_async(service.revert_merge(n, pr))

        assert not result.success
        assert result.error.startswith("Failed to create revert PR")
        assert work_items.by_issue(n).status == WorkItemStatus.DONE

    def test_merge_revert_pr(self, service, work_items, gateway):
        n, pr = self._merged(service, work_items, gateway)
        revert = run_async(service.revert_merge(n, pr)).revert_pr_number

        merged = run_async(service.merge_revert_pr(n, revert))

        assert merged.success
        assert gateway.pulls[revert].merged
        assert work_items.by_issue(n).artifacts.revert_pr_number is None

        again = run_async(service.merge_revert_pr(n, revert))
        assert not again.success
        assert again.error == "Revert PR not found"

    def test_merge_revert_pr_rejects_unknown_pr(self, service, work_items, gateway):
        n, pr = self._merged(service, work_items, gateway)

        result = run_async(service.merge_revert_pr(n, pr))

        assert not result.success
        assert result.error == "Revert PR not found"

    def test_merge_revert_pr_rejects_closed_pr(self, service, work_items, gateway):
        n, pr = self._merged(service, work_items, gateway)
        revert = run_async(service.revert_merge(n, pr)).revert_pr_number
        run_async(gateway.close_pull_request(revert))

        result = run_async(service.merge_revert_pr(n, revert))

        assert not result.success
        assert result.error == "Revert PR is closed"
