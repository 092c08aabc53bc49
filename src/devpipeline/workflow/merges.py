"""Merge and revert orchestration.

Merging is the authoritative, externally visible action. Bookkeeping that
follows a merge (advancing Status, recording the merge, deleting branches)
is written after the merge succeeds. The gateway treats "already merged" as
success, so every merge here can be retried.
"""

import logging
from typing import List, Optional

from src.devpipeline.artifacts.naming import (
    design_branch_name,
    phase_branch_name,
    task_branch_name,
)
from src.devpipeline.artifacts.store import artifact_locator
from src.devpipeline.events.models import EventType
from src.devpipeline.parsing.phases import (
    format_phases_comment,
    has_phase_comment,
    parse_phases_from_markdown,
)
from src.devpipeline.state.machine import (
    DESIGN_COMMIT_DOC_TYPES,
    DESIGN_TYPE_LABELS,
    DESIGN_TYPE_TO_NEXT_STATUS,
    DESIGN_TYPES,
    format_phase_string,
    parse_phase_string,
)
from src.devpipeline.state.models import (
    DesignArtifact,
    ImplementationPhase,
    IntakeStatus,
    MergedPullRequest,
    ProjectItem,
    ReviewStatus,
    WorkItemRecord,
    WorkItemStatus,
)
from src.devpipeline.workflow.base import (
    WorkflowServiceBase,
    not_found_error,
    service_operation,
)
from src.devpipeline.workflow.results import (
    FinalPullRequest,
    MergeDesignResult,
    MergeFinalResult,
    MergePRResult,
    MergeRevertResult,
    PhaseInfo,
    RevertResult,
)


logger = logging.getLogger(__name__)

# Design record key per design type; product development is not kept.
DESIGN_ARTIFACT_KEYS = {
    "product": "product-design",
    "tech": "tech-design",
}

FEATURE_COMPLETE_COMMENT = (
    "🎉 **Feature Complete!**\n\n"
    "Final PR #{pr_number} has been merged to main.\n"
    "All phases have been successfully integrated."
)


class MergeOperations(WorkflowServiceBase):
    """Design, implementation, final and revert PR merges."""

    # ---- Design PRs

    @service_operation(MergeDesignResult)
    async def merge_design_pr(
        self,
        issue_number: int,
        pr_number: int,
        design_type: str,
    ) -> MergeDesignResult:
        """Merge an approved design PR and advance the item.

        product-dev advances to Product Design, product to Technical Design
        and tech to Implementation. A merged tech design with two or more
        phases gets a phase comment on the issue and its phases persisted.
        If the item is not tracked the merge still succeeds and
        ``advanced_to`` is omitted.
        """
        if design_type not in DESIGN_TYPES:
            return MergeDesignResult(success=False, error=f"Invalid design type: {design_type}")

        doc_type = DESIGN_COMMIT_DOC_TYPES[design_type]
        sha = await self.store.merge_pull_request(
            pr_number,
            f"docs: {doc_type} for issue #{issue_number}",
            f"Approved {doc_type} document.\n\nPart of #{issue_number}",
        )
        await self._emit(
            EventType.PR_MERGED,
            issue_number,
            f"Merged {DESIGN_TYPE_LABELS[design_type]} PR #{pr_number}",
            actor="admin",
            pr_number=pr_number,
            kind="design",
        )

        artifact_key = DESIGN_ARTIFACT_KEYS.get(design_type)
        if artifact_key is not None:
            design = DesignArtifact(
                type=artifact_key,
                locator=artifact_locator(issue_number, design_type),
                pr_number=pr_number,
                last_updated=self.clock(),
            )

            def _store_design(record: WorkItemRecord) -> None:
                record.artifacts.designs[artifact_key] = design

            await self._update_record(issue_number, _store_design)

        item = await self._find_item(issue_number)
        if item is None:
            logger.warning(
                "Design PR merged but item is not tracked",
                extra={"issue_number": issue_number, "pr_number": pr_number},
            )
            return MergeDesignResult(success=True, merge_commit_sha=sha)

        advanced_to = DESIGN_TYPE_TO_NEXT_STATUS[design_type]
        await self._set_status(item, advanced_to, actor="admin")

        # Details are only needed for branch cleanup
        pr = await self.gateway.get_pr_details(pr_number)
        if pr is None:
            logger.warning(
                "Merged design PR details unavailable, keeping head branch",
                extra={"issue_number": issue_number, "pr_number": pr_number},
            )
        else:
            await self._delete_branch_quietly(pr.head_branch, issue_number)

        phases_detected = 0
        if design_type == "tech":
            phases_detected = await self._record_phases(issue_number)

        return MergeDesignResult(
            success=True,
            merge_commit_sha=sha,
            previous_status=item.status,
            advanced_to=advanced_to,
            phases_detected=phases_detected,
        )

    @service_operation(MergeDesignResult)
    async def approve_design(self, issue_number: int, design_type: str) -> MergeDesignResult:
        """Approve the open design PR of ``design_type`` for an issue."""
        if design_type not in DESIGN_TYPES:
            return MergeDesignResult(success=False, error=f"Invalid design type: {design_type}")
        pr_number = await self.gateway.find_open_pr_for_branch(
            design_branch_name(issue_number, design_type)
        )
        if pr_number is None:
            return MergeDesignResult(
                success=False,
                error=f"No open {DESIGN_TYPE_LABELS[design_type]} PR found for issue #{issue_number}",
            )
        return await self.merge_design_pr(issue_number, pr_number, design_type)

    async def _record_phases(self, issue_number: int) -> int:
        """Parse phases from the merged tech design and persist them."""
        content = await self.artifacts.read(issue_number, "tech")
        if not content:
            return 0
        phases = parse_phases_from_markdown(content)
        if not phases:
            return 0

        comments = await self.gateway.get_issue_comments(issue_number)
        if not has_phase_comment([comment.body for comment in comments]):
            await self.store.add_issue_comment(issue_number, format_phases_comment(phases))

        def _store(record: WorkItemRecord) -> None:
            record.artifacts.phases = list(phases)

        await self._update_record(issue_number, _store)
        logger.info(
            "Implementation phases recorded",
            extra={"issue_number": issue_number, "phases": len(phases)},
        )
        return len(phases)

    # ---- Implementation PRs

    @service_operation(MergePRResult)
    async def merge_implementation_pr(self, issue_number: int, pr_number: int) -> MergePRResult:
        """Merge an approved implementation PR.

        Uses the commit message saved by the PR review when there is one.
        Single-phase work is marked Done. A middle phase advances the phase
        counter and returns to Implementation. The last phase opens the
        final PR from the task branch and moves to Final Review.
        """
        item = await self._find_item(issue_number)
        if item is None:
            return MergePRResult(success=False, error=not_found_error(issue_number))

        record = await self.work_items.find_by_issue_number(issue_number)
        saved = record.artifacts.commit_message if record else None
        if saved is not None and saved.pr_number == pr_number:
            title, body = saved.title, saved.body
        else:
            pr = await self.gateway.get_pr_details(pr_number)
            if pr is None:
                return MergePRResult(success=False, error="Could not fetch PR info")
            title, body = pr.title, f"Part of #{issue_number}"

        sha = await self.store.merge_pull_request(pr_number, title, body)
        merged = MergedPullRequest(pr_number=pr_number, merge_commit_sha=sha, merged_at=self.clock())

        def _record_merge(record: WorkItemRecord) -> None:
            record.artifacts.last_merged_pr = merged
            record.artifacts.commit_message = None

        await self._update_record(issue_number, _record_merge)
        await self._emit(
            EventType.PR_MERGED,
            issue_number,
            f"Merged implementation PR #{pr_number}",
            actor="admin",
            pr_number=pr_number,
            kind="implementation",
        )
        await self._notify(
            self.notifier.notify_merge_complete(item.title, issue_number, pr_number, sha),
            "merge_complete",
            issue_number,
        )

        phase = parse_phase_string(item.implementation_phase)
        if phase is None:
            done = await self.mark_done(issue_number)
            if not done.success:
                logger.warning(
                    "Merged PR but could not mark item done",
                    extra={"issue_number": issue_number, "error": done.error},
                )
            return MergePRResult(success=True, merge_commit_sha=sha, marked_done=done.success)

        current, total = phase
        if current < total:
            await self._set_phase(item, format_phase_string(current + 1, total))
            await self._set_status(item, WorkItemStatus.IMPLEMENTATION)
            return MergePRResult(
                success=True,
                merge_commit_sha=sha,
                phase_info=PhaseInfo(current=current, total=total, next=current + 1),
            )

        final_pr = await self._open_final_pr(item, record, total)
        await self._set_status(item, WorkItemStatus.FINAL_REVIEW)
        await self._set_review(item, ReviewStatus.WAITING_FOR_REVIEW)
        return MergePRResult(
            success=True,
            merge_commit_sha=sha,
            phase_info=PhaseInfo(current=current, total=total),
            final_pr_created=final_pr,
        )

    async def _open_final_pr(
        self,
        item: ProjectItem,
        record: Optional[WorkItemRecord],
        total: int,
    ) -> FinalPullRequest:
        issue_number = item.issue_number
        task_branch = (record.artifacts.task_branch if record else None) or task_branch_name(issue_number)

        existing = await self.gateway.find_open_pr_for_branch(task_branch)
        if existing is not None:
            pr = await self.gateway.get_pr_details(existing)
            return FinalPullRequest(pr_number=existing, pr_url=pr.url if pr else "")

        base = await self.gateway.get_default_branch()
        created = await self.store.create_pull_request(
            task_branch,
            base,
            f"feat: {item.title} (#{issue_number})",
            (
                f"Closes #{issue_number}\n\n"
                f"Final merge of all {total} implementation phases from `{task_branch}`."
            ),
        )
        logger.info(
            "Final PR created",
            extra={"issue_number": issue_number, "pr_number": created.number, "branch": task_branch},
        )
        return FinalPullRequest(pr_number=created.number, pr_url=created.url)

    @service_operation(MergeFinalResult)
    async def merge_final_pr(self, issue_number: int, pr_number: int) -> MergeFinalResult:
        """Merge the final task-branch PR and finish the item.

        A PR that is already merged or no longer open counts as merged.
        Task and phase branches are deleted afterwards.
        """
        pr = await self.gateway.get_pr_details(pr_number)
        if pr is None:
            return MergeFinalResult(success=False, error="Could not fetch PR info")

        if pr.is_open:
            sha: Optional[str] = await self.store.merge_pull_request(
                pr_number,
                pr.title,
                f"Closes #{issue_number}\n\nFeature branch workflow - final merge to main.",
            )
        else:
            sha = pr.merge_commit_sha
        await self._emit(
            EventType.PR_MERGED,
            issue_number,
            f"Merged final PR #{pr_number}",
            actor="admin",
            pr_number=pr_number,
            kind="final",
        )

        done = await self.mark_done(issue_number, actor="admin")
        if not done.success:
            logger.warning(
                "Final PR merged but item could not be marked done",
                extra={"issue_number": issue_number, "error": done.error},
            )

        record = await self.work_items.find_by_issue_number(issue_number)
        phases: List[ImplementationPhase] = record.artifacts.phases if record else []
        task_branch = (record.artifacts.task_branch if record else None) or task_branch_name(issue_number)
        await self._delete_branch_quietly(task_branch, issue_number)
        for index in range(1, len(phases) + 1):
            await self._delete_branch_quietly(phase_branch_name(issue_number, index), issue_number)

        def _clear_task_branch(record: WorkItemRecord) -> None:
            record.artifacts.task_branch = None

        await self._update_record(issue_number, _clear_task_branch)
        await self.store.add_issue_comment(
            issue_number,
            FEATURE_COMPLETE_COMMENT.format(pr_number=pr_number),
        )
        await self._notify(
            self.notifier.notify_merge_complete(pr.title, issue_number, pr_number, sha),
            "merge_complete",
            issue_number,
        )
        return MergeFinalResult(success=True, merge_commit_sha=sha)

    # ---- Reverts

    @service_operation(RevertResult)
    async def revert_merge(
        self,
        issue_number: int,
        pr_number: int,
        short_sha: Optional[str] = None,
        phase: Optional[str] = None,
    ) -> RevertResult:
        """Open a revert PR for a merged implementation PR.

        ``short_sha`` is a confirmation typed by a human. It must be a
        prefix of the actual merge commit SHA. The check runs before
        anything is written.

        Args:
            issue_number: Tracker issue of the item.
            pr_number: The merged PR to revert.
            short_sha: Optional merge commit prefix to confirm against.
            phase: Implementation phase ("i/n") to restore after the revert.
        """
        sha = await self.gateway.get_merge_commit_sha(pr_number)
        if not sha:
            record = await self.work_items.find_by_issue_number(issue_number)
            last = record.artifacts.last_merged_pr if record else None
            if last is not None and last.pr_number == pr_number:
                sha = last.merge_commit_sha
        if not sha:
            return RevertResult(success=False, error="Could not find merge commit SHA")
        if short_sha and not sha.startswith(short_sha.strip()):
            return RevertResult(success=False, error="Merge commit SHA mismatch")

        item = await self._find_item(issue_number)
        if item is None:
            return RevertResult(success=False, error=not_found_error(issue_number))

        revert = await self.gateway.create_revert_pr(pr_number)
        if revert is None:
            return RevertResult(
                success=False,
                error="Failed to create revert PR. There may be conflicts - please revert manually.",
            )

        def _record_revert(record: WorkItemRecord) -> None:
            record.artifacts.revert_pr_number = revert.number

        await self._update_record(issue_number, _record_revert)
        await self._set_status(item, WorkItemStatus.IMPLEMENTATION, clear_review=False, actor="admin")
        await self._set_review(item, ReviewStatus.REQUEST_CHANGES, actor="admin")
        if phase and parse_phase_string(phase) is not None:
            await self._set_phase(item, phase)
        await self._update_intake_status(item, IntakeStatus.IN_PROGRESS, IntakeStatus.INVESTIGATING)

        logger.info(
            "Revert PR created",
            extra={"issue_number": issue_number, "pr_number": pr_number, "revert_pr_number": revert.number},
        )
        await self._emit(
            EventType.REVERT_CREATED,
            issue_number,
            f"Revert PR #{revert.number} opened for PR #{pr_number}",
            actor="admin",
            pr_number=pr_number,
            revert_pr_number=revert.number,
        )
        return RevertResult(success=True, revert_pr_number=revert.number, revert_pr_url=revert.url)

    @service_operation(MergeRevertResult)
    async def merge_revert_pr(self, issue_number: int, revert_pr_number: int) -> MergeRevertResult:
        """Merge a revert PR previously opened by ``revert_merge``."""
        record = await self.work_items.find_by_issue_number(issue_number)
        recorded = record.artifacts.revert_pr_number if record else None
        pr = await self.gateway.get_pr_details(revert_pr_number)
        if pr is None or recorded != revert_pr_number:
            return MergeRevertResult(success=False, error="Revert PR not found")
        if pr.merged:
            return MergeRevertResult(success=False, error="Revert PR already merged")
        if not pr.is_open:
            return MergeRevertResult(success=False, error="Revert PR is closed")

        sha = await self.store.merge_pull_request(revert_pr_number, pr.title, f"Part of #{issue_number}")

        def _clear_revert(record: WorkItemRecord) -> None:
            record.artifacts.revert_pr_number = None

        await self._update_record(issue_number, _clear_revert)
        await self._delete_branch_quietly(pr.head_branch, issue_number)
        await self._emit(
            EventType.PR_MERGED,
            issue_number,
            f"Merged revert PR #{revert_pr_number}",
            actor="admin",
            pr_number=revert_pr_number,
            kind="revert",
        )
        return MergeRevertResult(success=True, merge_commit_sha=sha)
