"""Workflow transition service.

This module owns every work item lifecycle transition:
- Intake approval and routing into the pipeline
- Status and review status changes, including undo
- Design, implementation, final and revert PR merges
- Decision selections and clarification answers
"""

from src.devpipeline.workflow.base import DEFAULT_UNDO_WINDOW_SECONDS
from src.devpipeline.workflow.decisions import RoutingError, resolve_routing
from src.devpipeline.workflow.results import (
    AdvanceResult,
    ApproveResult,
    AutoAdvanceDetail,
    AutoAdvanceResult,
    ClarificationAnswerResult,
    DecisionResult,
    DeleteResult,
    DesignReviewResult,
    FinalPullRequest,
    MarkDoneResult,
    MergeDesignResult,
    MergeFinalResult,
    MergePRResult,
    MergeRevertResult,
    PhaseInfo,
    RevertResult,
    RouteResult,
    ServiceResult,
    UndoResult,
)
from src.devpipeline.workflow.service import WorkflowService
from src.devpipeline.workflow.transitions import UNCHANGED

__all__ = [
    # Service
    "DEFAULT_UNDO_WINDOW_SECONDS",
    "UNCHANGED",
    "WorkflowService",
    # Decisions
    "RoutingError",
    "resolve_routing",
    # Results
    "AdvanceResult",
    "ApproveResult",
    "AutoAdvanceDetail",
    "AutoAdvanceResult",
    "ClarificationAnswerResult",
    "DecisionResult",
    "DeleteResult",
    "DesignReviewResult",
    "FinalPullRequest",
    "MarkDoneResult",
    "MergeDesignResult",
    "MergeFinalResult",
    "MergePRResult",
    "MergeRevertResult",
    "PhaseInfo",
    "RevertResult",
    "RouteResult",
    "ServiceResult",
    "UndoResult",
]
