"""Result objects returned by workflow service operations.

Service operations never raise past the service boundary. Not-found,
invalid-state, validation and external failures all come back as a result
with ``success=False`` and an ``error`` message. A merge whose bookkeeping
could not be completed comes back as a success with the bookkeeping field
omitted.
"""

from typing import List, Optional

from pydantic import BaseModel, Field

from src.devpipeline.state.models import ReviewStatus, WorkItemStatus


class ServiceResult(BaseModel):
    """Outcome of a workflow operation.

    Attributes:
        success: Whether the operation completed.
        error: Human-readable reason when ``success`` is False.
    """

    success: bool = Field(..., description="Whether the operation completed")
    error: Optional[str] = Field(default=None, description="Failure reason")


# -----------------------------------------------------------------------------
# Intake
# -----------------------------------------------------------------------------


class ApproveResult(ServiceResult):
    """Outcome of syncing an intake record to the tracker."""

    issue_number: Optional[int] = None
    issue_url: Optional[str] = None
    project_item_id: Optional[str] = None
    needs_routing: bool = False
    routed_to: Optional[WorkItemStatus] = None


class RouteResult(ServiceResult):
    target_status: Optional[WorkItemStatus] = None
    target_label: Optional[str] = None


class DeleteResult(ServiceResult):
    deleted: bool = False
    orphan_cleaned: bool = False


# -----------------------------------------------------------------------------
# Transitions
# -----------------------------------------------------------------------------


class AdvanceResult(ServiceResult):
    """Outcome of a status change on a tracked item."""

    item_id: Optional[str] = None
    previous_status: Optional[WorkItemStatus] = None
    advanced_to: Optional[WorkItemStatus] = None


class MarkDoneResult(ServiceResult):
    item_id: Optional[str] = None
    source_doc_updated: bool = False
    closed_design_prs: List[int] = Field(default_factory=list)


class DesignReviewResult(ServiceResult):
    review_status: Optional[ReviewStatus] = None
    advanced_to: Optional[WorkItemStatus] = None


class UndoResult(ServiceResult):
    """Outcome of an undo request.

    Attributes:
        expired: True when the undo window had already closed. Nothing is
            changed in that case.
    """

    expired: bool = False


class AutoAdvanceDetail(BaseModel):
    issue_number: Optional[int] = None
    title: str = ""
    from_status: Optional[WorkItemStatus] = None
    to_status: Optional[WorkItemStatus] = None
    success: bool = False
    error: Optional[str] = None


class AutoAdvanceResult(ServiceResult):
    """Summary of an auto-advance sweep over Approved items."""

    total: int = 0
    advanced: int = 0
    failed: int = 0
    details: List[AutoAdvanceDetail] = Field(default_factory=list)


# -----------------------------------------------------------------------------
# Merges and reverts
# -----------------------------------------------------------------------------


class MergeDesignResult(ServiceResult):
    merge_commit_sha: Optional[str] = None
    previous_status: Optional[WorkItemStatus] = None
    advanced_to: Optional[WorkItemStatus] = None
    phases_detected: int = 0


class PhaseInfo(BaseModel):
    """Implementation phase progress after a phase PR merge."""

    current: int
    total: int
    next: Optional[int] = None


class FinalPullRequest(BaseModel):
    pr_number: int
    pr_url: str = ""


class MergePRResult(ServiceResult):
    """Outcome of merging an implementation PR.

    Exactly one of these describes what happened next: ``marked_done`` for
    single-phase work, ``phase_info.next`` for a middle phase, and
    ``final_pr_created`` once the last phase reached the task branch.
    """

    merge_commit_sha: Optional[str] = None
    phase_info: Optional[PhaseInfo] = None
    final_pr_created: Optional[FinalPullRequest] = None
    marked_done: bool = False


class MergeFinalResult(ServiceResult):
    merge_commit_sha: Optional[str] = None


class RevertResult(ServiceResult):
    revert_pr_number: Optional[int] = None
    revert_pr_url: Optional[str] = None


class MergeRevertResult(ServiceResult):
    merge_commit_sha: Optional[str] = None


# -----------------------------------------------------------------------------
# Decisions and clarifications
# -----------------------------------------------------------------------------


class DecisionResult(ServiceResult):
    """Outcome of submitting a decision selection.

    Attributes:
        routed_to: Status the item was routed to, when the decision carried
            a routing config and did not continue in the same phase.
        selected_option_id: The option that was recorded.
        selected_option_title: Display title of the recorded option.
    """

    routed_to: Optional[WorkItemStatus] = None
    selected_option_id: Optional[str] = None
    selected_option_title: Optional[str] = None
    review_status: Optional[ReviewStatus] = None


class ClarificationAnswerResult(ServiceResult):
    comment_id: Optional[int] = None
