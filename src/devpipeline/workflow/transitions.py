"""Mid-pipeline status transitions.

Every operation here resolves the item by issue number, validates the
current Status / Review Status, and writes through the project item store.
Transitions that change Status clear Review Status unless the caller asks
to preserve it.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, List, Optional

from src.devpipeline.artifacts.naming import design_branch_name
from src.devpipeline.state.machine import (
    DESIGN_TYPES,
    STATUS_TRANSITIONS,
    is_design_status,
    parse_phase_string,
)
from src.devpipeline.state.models import IntakeStatus, ReviewStatus, WorkItemStatus
from src.devpipeline.workflow.base import (
    WorkflowServiceBase,
    not_found_error,
    service_operation,
)
from src.devpipeline.workflow.results import (
    AdvanceResult,
    AutoAdvanceDetail,
    AutoAdvanceResult,
    DesignReviewResult,
    MarkDoneResult,
    ServiceResult,
    UndoResult,
)


logger = logging.getLogger(__name__)

REVIEW_ACTIONS = {
    "approve": ReviewStatus.APPROVED,
    "changes": ReviewStatus.REQUEST_CHANGES,
    "reject": ReviewStatus.REJECTED,
}

DESIGN_PR_CLOSE_COMMENT = "Feature completed. Closing design PR."

# Sentinel distinguishing "leave review status unchanged" from "clear it".
UNCHANGED: Any = object()


class TransitionOperations(WorkflowServiceBase):
    """Status, review status and phase transitions on tracked items."""

    @service_operation(AdvanceResult)
    async def advance_status(
        self,
        issue_number: int,
        target_status: WorkItemStatus,
        clear_review: bool = True,
        actor: str = "system",
    ) -> AdvanceResult:
        """Move an item to ``target_status``.

        Args:
            issue_number: Tracker issue of the item.
            target_status: The new Status.
            clear_review: Clear Review Status as part of the move. Pass
                False to carry the current review outcome forward.
            actor: Who requested the change, for the audit history.

        Returns:
            The previous status on success.
        """
        item = await self._find_item(issue_number)
        if item is None:
            return AdvanceResult(success=False, error=not_found_error(issue_number))

        await self._set_status(item, target_status, clear_review=clear_review, actor=actor)
        return AdvanceResult(
            success=True,
            item_id=item.id,
            previous_status=item.status,
            advanced_to=target_status,
        )

    @service_operation(AdvanceResult)
    async def set_workflow_status(
        self,
        issue_number: int,
        status: WorkItemStatus,
        actor: str = "admin",
    ) -> AdvanceResult:
        """Set Status directly, bypassing the routing allow-list."""
        return await self.advance_status(issue_number, status, actor=actor)

    @service_operation(MarkDoneResult)
    async def mark_done(self, issue_number: int, actor: str = "system") -> MarkDoneResult:
        """Finish an item.

        Sets Status to Done and clears Review Status and Implementation
        Phase. The intake record behind the item becomes done (features) or
        resolved (bugs), and design PRs still open for the issue are closed.
        Closing design PRs is best effort.
        """
        item = await self._find_item(issue_number)
        if item is None:
            return MarkDoneResult(success=False, error=not_found_error(issue_number))

        await self._set_status(item, WorkItemStatus.DONE, actor=actor)
        if item.implementation_phase:
            await self._set_phase(item, None)

        source_doc_updated = await self._update_intake_status(
            item, IntakeStatus.DONE, IntakeStatus.RESOLVED
        )
        closed = await self._close_design_prs(issue_number)

        logger.info(
            "Work item marked done",
            extra={"issue_number": issue_number, "closed_design_prs": closed},
        )
        return MarkDoneResult(
            success=True,
            item_id=item.id,
            source_doc_updated=source_doc_updated,
            closed_design_prs=closed,
        )

    async def _close_design_prs(self, issue_number: int) -> List[int]:
        closed: List[int] = []
        for design_type in DESIGN_TYPES:
            branch = design_branch_name(issue_number, design_type)
            try:
                pr_number = await self.gateway.find_open_pr_for_branch(branch)
                if pr_number is None:
                    continue
                await self.gateway.add_pr_comment(pr_number, DESIGN_PR_CLOSE_COMMENT)
                await self.gateway.close_pull_request(pr_number)
                await self._delete_branch_quietly(branch, issue_number)
                closed.append(pr_number)
            except Exception as exc:
                logger.warning(
                    "Failed to close design PR",
                    extra={"issue_number": issue_number, "branch": branch, "error": str(exc)},
                )
        return closed

    @service_operation(DesignReviewResult)
    async def review_design(
        self,
        issue_number: int,
        action: str,
        actor: str = "admin",
    ) -> DesignReviewResult:
        """Record an admin review of a design phase output.

        ``approve`` sets Approved and, where the phase has a fixed
        successor, advances to it (which clears Review Status). Phases
        without a successor, such as Bug Investigation, stay Approved until
        routed. ``changes`` sets Request Changes and ``reject`` sets
        Rejected, both without changing Status. An item without a Status
        is reviewable but never advances.
        """
        review_status = REVIEW_ACTIONS.get(action)
        if review_status is None:
            return DesignReviewResult(success=False, error=f"Invalid review action: {action}")

        item = await self._find_item(issue_number)
        if item is None:
            return DesignReviewResult(success=False, error=not_found_error(issue_number))
        if item.status is not None and not is_design_status(item.status):
            return DesignReviewResult(
                success=False,
                error=f"Item is no longer in a reviewable design phase (current status: {item.status.value})",
            )

        await self._set_review(item, review_status, actor=actor)

        advanced_to = None
        if review_status == ReviewStatus.APPROVED:
            advanced_to = STATUS_TRANSITIONS.get(item.status)
            if advanced_to is not None:
                await self._set_status(item, advanced_to, actor=actor)

        return DesignReviewResult(
            success=True,
            review_status=None if advanced_to else review_status,
            advanced_to=advanced_to,
        )

    @service_operation(ServiceResult)
    async def request_changes_on_pr(self, issue_number: int, actor: str = "admin") -> ServiceResult:
        """Send an item back to Implementation with Request Changes."""
        item = await self._find_item(issue_number)
        if item is None:
            return ServiceResult(success=False, error=not_found_error(issue_number))

        await self._set_status(item, WorkItemStatus.IMPLEMENTATION, clear_review=False, actor=actor)
        await self._set_review(item, ReviewStatus.REQUEST_CHANGES, actor=actor)
        return ServiceResult(success=True)

    @service_operation(ServiceResult)
    async def request_changes_on_design_pr(
        self,
        issue_number: int,
        pr_number: int,
        phase_label: str = "",
        actor: str = "admin",
    ) -> ServiceResult:
        """Ask for a design revision without changing Status."""
        item = await self._find_item(issue_number)
        if item is None:
            return ServiceResult(success=False, error=not_found_error(issue_number))

        await self._set_review(item, ReviewStatus.REQUEST_CHANGES, actor=actor)
        logger.info(
            "Changes requested on design PR",
            extra={"issue_number": issue_number, "pr_number": pr_number, "phase": phase_label},
        )
        return ServiceResult(success=True)

    @service_operation(ServiceResult)
    async def update_review_status(
        self,
        issue_number: int,
        review_status: ReviewStatus,
        actor: str = "system",
    ) -> ServiceResult:
        item = await self._find_item(issue_number)
        if item is None:
            return ServiceResult(success=False, error=not_found_error(issue_number))
        await self._set_review(item, review_status, actor=actor)
        return ServiceResult(success=True)

    @service_operation(ServiceResult)
    async def clear_review_status(self, issue_number: int, actor: str = "system") -> ServiceResult:
        item = await self._find_item(issue_number)
        if item is None:
            return ServiceResult(success=False, error=not_found_error(issue_number))
        await self._set_review(item, None, actor=actor)
        return ServiceResult(success=True)

    # ---- Implementation phases

    @service_operation(ServiceResult)
    async def advance_implementation_phase(
        self,
        issue_number: int,
        phase: str,
        status: Optional[WorkItemStatus] = None,
    ) -> ServiceResult:
        """Set the "i/n" phase counter, optionally moving Status as well."""
        if parse_phase_string(phase) is None:
            return ServiceResult(success=False, error=f"Invalid implementation phase: {phase}")

        item = await self._find_item(issue_number)
        if item is None:
            return ServiceResult(success=False, error=not_found_error(issue_number))

        await self._set_phase(item, phase)
        if status is not None and status != item.status:
            await self._set_status(item, status)
        return ServiceResult(success=True)

    @service_operation(ServiceResult)
    async def clear_implementation_phase(self, issue_number: int) -> ServiceResult:
        item = await self._find_item(issue_number)
        if item is None:
            return ServiceResult(success=False, error=not_found_error(issue_number))
        await self._set_phase(item, None)
        return ServiceResult(success=True)

    # ---- Undo

    @service_operation(UndoResult)
    async def undo_status_change(
        self,
        issue_number: int,
        restore_status: Optional[WorkItemStatus] = None,
        restore_review_status: Any = UNCHANGED,
        timestamp: Optional[datetime] = None,
    ) -> UndoResult:
        """Restore fields changed by a recent action.

        The window is inclusive: an undo exactly ``undo_window_seconds``
        after ``timestamp`` is still accepted. Outside it nothing changes.

        Args:
            issue_number: Tracker issue of the item.
            restore_status: Status to restore; None leaves Status unchanged.
            restore_review_status: Review status to restore. Omit to leave it
                unchanged; pass None to clear it.
            timestamp: When the action being undone happened.
        """
        if timestamp is None:
            return UndoResult(success=False, error="Undo timestamp is required")

        window = timedelta(seconds=self.undo_window_seconds)
        if self.clock() - timestamp > window:
            minutes = self.undo_window_seconds // 60
            return UndoResult(
                success=False,
                expired=True,
                error=f"Undo window expired ({minutes} minutes)",
            )

        item = await self._find_item(issue_number)
        if item is None:
            return UndoResult(success=False, error=not_found_error(issue_number))

        if restore_status is not None:
            await self._set_status(item, restore_status, clear_review=False, actor="admin")
        if restore_review_status is not UNCHANGED:
            await self._set_review(item, restore_review_status, actor="admin")

        logger.info(
            "Status change undone",
            extra={
                "issue_number": issue_number,
                "restore_status": restore_status.value if restore_status else None,
            },
        )
        return UndoResult(success=True)

    # ---- Clarification and decision routing

    @service_operation(ServiceResult)
    async def mark_clarification_received(
        self,
        issue_number: int,
        actor: str = "admin",
    ) -> ServiceResult:
        """Signal that the admin answered, so the next run uses clarification mode."""
        item = await self._find_item(issue_number)
        if item is None:
            return ServiceResult(success=False, error=not_found_error(issue_number))
        if item.review_status != ReviewStatus.WAITING_FOR_CLARIFICATION:
            current = item.review_status.value if item.review_status else "None"
            return ServiceResult(
                success=False,
                error=f"Item is not waiting for clarification (current review status: {current})",
            )

        await self._set_review(item, ReviewStatus.CLARIFICATION_RECEIVED, actor=actor)
        return ServiceResult(success=True)

    @service_operation(ServiceResult)
    async def submit_decision_routing(
        self,
        issue_number: int,
        target_status: Optional[WorkItemStatus] = None,
        review_status: Optional[ReviewStatus] = None,
        actor: str = "admin",
    ) -> ServiceResult:
        """Apply the outcome of a decision.

        With ``target_status`` the item moves there and Review Status is
        cleared. Otherwise ``review_status`` is written and Status stays.
        """
        item = await self._find_item(issue_number)
        if item is None:
            return ServiceResult(success=False, error=not_found_error(issue_number))

        if target_status is not None:
            await self._set_status(item, target_status, actor=actor)
        elif review_status is not None:
            await self._set_review(item, review_status, actor=actor)
        else:
            return ServiceResult(
                success=False,
                error="Either a target status or a review status is required",
            )
        return ServiceResult(success=True)

    # ---- Batch

    @service_operation(AutoAdvanceResult)
    async def auto_advance_approved(self, dry_run: bool = False) -> AutoAdvanceResult:
        """Advance every Approved item to its fixed successor.

        Each item is handled independently; a failure is recorded in the
        details and the sweep continues.
        """
        items = await self.store.list_items(review_status=ReviewStatus.APPROVED)
        candidates = [item for item in items if item.status != WorkItemStatus.DONE]

        result = AutoAdvanceResult(success=True, total=len(candidates))
        for item in candidates:
            detail = AutoAdvanceDetail(
                issue_number=item.issue_number,
                title=item.title,
                from_status=item.status,
            )
            try:
                if item.status is None:
                    detail.error = "Item has no status"
                elif item.status in (WorkItemStatus.PR_REVIEW, WorkItemStatus.FINAL_REVIEW):
                    detail.error = "PR Review handled by merge"
                elif item.status not in STATUS_TRANSITIONS:
                    detail.error = f"No transition defined for {item.status.value}"
                else:
                    detail.to_status = STATUS_TRANSITIONS[item.status]
                    if not dry_run:
                        await self._set_status(item, detail.to_status)
                        if item.issue_number is not None:
                            await self._notify(
                                self.notifier.notify_status_changed(
                                    item.title,
                                    item.issue_number,
                                    item.status.value,
                                    detail.to_status.value,
                                ),
                                "status_changed",
                                item.issue_number,
                            )
                    detail.success = True
            except Exception as exc:
                logger.exception(
                    "Auto-advance failed for item",
                    extra={"issue_number": item.issue_number},
                )
                detail.error = str(exc)

            if detail.success:
                result.advanced += 1
            else:
                result.failed += 1
            result.details.append(detail)

        logger.info(
            "Auto-advance sweep finished",
            extra={
                "total": result.total,
                "advanced": result.advanced,
                "failed": result.failed,
                "dry_run": dry_run,
            },
        )
        return result
