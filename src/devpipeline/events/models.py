"""Workflow event models for observability.

Events are emitted by the workflow service and the agent orchestrator at
every externally visible step. They feed structured logs, Prometheus
metrics and the per-item audit history.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """Types of events emitted by the workflow.

    Attributes:
        STATUS_CHANGED: Status moved to a new pipeline phase.
        REVIEW_STATUS_CHANGED: Review status was set or cleared.
        PHASE_CHANGED: Implementation phase counter changed.
        ITEM_APPROVED: An intake record was synced to the tracker.
        ITEM_ROUTED: An item was routed to its first phase.
        ITEM_DELETED: A tracking record was removed.
        AGENT_RUN_STARTED: An agent run began.
        AGENT_RUN_COMPLETED: An agent run finished and its output was stored.
        AGENT_RUN_FAILED: An agent run failed or its output was unusable.
        PR_MERGED: A design, implementation, final or revert PR was merged.
        REVERT_CREATED: A revert PR was opened for a merged PR.
        DECISION_SUBMITTED: An admin chose a decision option.
        CLARIFICATION_ANSWERED: An admin answered a clarification.
        NOTIFICATION_FAILED: A notification could not be delivered.
    """

    STATUS_CHANGED = "status_changed"
    REVIEW_STATUS_CHANGED = "review_status_changed"
    PHASE_CHANGED = "phase_changed"
    ITEM_APPROVED = "item_approved"
    ITEM_ROUTED = "item_routed"
    ITEM_DELETED = "item_deleted"
    AGENT_RUN_STARTED = "agent_run_started"
    AGENT_RUN_COMPLETED = "agent_run_completed"
    AGENT_RUN_FAILED = "agent_run_failed"
    PR_MERGED = "pr_merged"
    REVERT_CREATED = "revert_created"
    DECISION_SUBMITTED = "decision_submitted"
    CLARIFICATION_ANSWERED = "clarification_answered"
    NOTIFICATION_FAILED = "notification_failed"


class WorkflowEvent(BaseModel):
    """Structured event emitted by the workflow.

    Attributes:
        event_type: The category of event.
        issue_number: Tracker issue the event concerns, if any.
        description: Short human-readable summary, used for history entries.
        actor: Who triggered the event ("admin", "agent", "system").
        timestamp: When the event occurred (UTC).
        details: Event-specific context.

    Details Field Conventions:
        STATUS_CHANGED: from_status, to_status
        REVIEW_STATUS_CHANGED: review_status (None when cleared)
        AGENT_RUN_*: workflow, mode, duration_seconds, error
        PR_MERGED: pr_number, kind (design, implementation, final, revert)
    """

    event_type: EventType = Field(..., description="The category of event")
    issue_number: Optional[int] = Field(default=None, description="Tracker issue number")
    description: str = Field(default="", description="Human-readable summary")
    actor: str = Field(default="system", description="Who triggered the event")
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the event occurred (UTC timezone)",
    )
    details: Dict[str, Any] = Field(
        default_factory=dict,
        description="Additional context specific to the event type",
    )

    def to_log_dict(self) -> Dict[str, Any]:
        """Flatten the event for structured logging."""
        return {
            "event_type": self.event_type.value,
            "issue_number": self.issue_number,
            "actor": self.actor,
            "timestamp": self.timestamp.isoformat(),
            **self.details,
        }
