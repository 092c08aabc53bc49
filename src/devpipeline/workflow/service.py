"""Workflow transition service.

WorkflowService is the single entry point used by the HTTP API, the agent
orchestrator and batch jobs for every work item lifecycle operation. It is
assembled from the operation groups below, which share one set of injected
collaborators:

- IntakeOperations: approve, route and delete intake records
- TransitionOperations: status, review status, phase and undo transitions
- MergeOperations: design, implementation, final and revert PR merges
- DecisionOperations: decision selections and clarification answers
"""

from src.devpipeline.workflow.decisions import DecisionOperations
from src.devpipeline.workflow.intake import IntakeOperations
from src.devpipeline.workflow.merges import MergeOperations
from src.devpipeline.workflow.transitions import TransitionOperations


class WorkflowService(
    IntakeOperations,
    MergeOperations,
    DecisionOperations,
    TransitionOperations,
):
    """Work item lifecycle operations.

    Every public operation returns a result object with ``success`` and
    ``error``; nothing raises past this boundary.

    Example:
        >>> service = WorkflowService(store, work_items, intake, gateway, artifacts)
        >>> result = await service.advance_status(42, WorkItemStatus.TECH_DESIGN)
        >>> result.previous_status
        <WorkItemStatus.PRODUCT_DESIGN: 'Product Design'>
    """
