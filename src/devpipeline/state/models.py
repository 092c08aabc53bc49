"""Work item state models.

This module defines the data models shared by the project item store, the
workflow service and the agent orchestrator:
- WorkItemStatus: Pipeline phases written to the project board
- ReviewStatus: Admin review sub-states within a phase
- ItemType: Feature, bug or task
- WorkItemRecord: Persisted work item with its artifacts
- ProjectItem: The store's view of a tracked item (status fields + issue)
- Decision and clarification records persisted alongside the item

The status strings are written verbatim to the external tracker, so the enum
values must match the board's single-select options exactly.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class WorkItemStatus(str, Enum):
    """Pipeline phases a work item moves through.

    Feature flow:
        Backlog → Product Development → Product Design → Technical Design
        → Implementation → PR Review → [Final Review] → Done

    Bugs skip product development and go through Bug Investigation instead.
    Final Review is only used by multi-phase implementations, where the
    phase PRs merge into a task branch and one final PR reaches trunk.
    """

    BACKLOG = "Backlog"
    PRODUCT_DEVELOPMENT = "Product Development"
    PRODUCT_DESIGN = "Product Design"
    BUG_INVESTIGATION = "Bug Investigation"
    TECH_DESIGN = "Technical Design"
    IMPLEMENTATION = "Ready for development"
    PR_REVIEW = "PR Review"
    FINAL_REVIEW = "Final Review"
    DONE = "Done"


class ReviewStatus(str, Enum):
    """Admin review sub-state within the current status.

    Attributes:
        WAITING_FOR_REVIEW: An agent finished and the output awaits review.
        APPROVED: Admin approved; ready for auto-advance.
        REQUEST_CHANGES: Admin asked for changes; next run uses feedback mode.
        REJECTED: Terminal for the current artifact.
        WAITING_FOR_CLARIFICATION: Agent asked a question.
        CLARIFICATION_RECEIVED: Admin answered; next run uses clarification mode.
        WAITING_FOR_DECISION: Agent offered a multi-option decision.
        DECISION_SUBMITTED: Admin chose; next run continues in the same phase.
    """

    WAITING_FOR_REVIEW = "Waiting for Review"
    APPROVED = "Approved"
    REQUEST_CHANGES = "Request Changes"
    REJECTED = "Rejected"
    WAITING_FOR_CLARIFICATION = "Waiting for Clarification"
    CLARIFICATION_RECEIVED = "Clarification Received"
    WAITING_FOR_DECISION = "Waiting for Decision"
    DECISION_SUBMITTED = "Decision Submitted"


class ItemType(str, Enum):
    """Kind of work item, which decides its intake collection."""

    FEATURE = "feature"
    BUG = "bug"
    TASK = "task"


class _CamelModel(BaseModel):
    """Base for records embedded in comment markers as camelCase JSON."""

    model_config = ConfigDict(populate_by_name=True)

    def to_marker_dict(self) -> Dict[str, Any]:
        """Dump with camelCase aliases, omitting unset optional fields."""
        return self.model_dump(by_alias=True, exclude_none=True)


class SourceRef(BaseModel):
    """Reference to the intake record a work item was created from."""

    collection: str = Field(..., description="Intake collection name")
    id: str = Field(..., min_length=1, description="Intake record id")


class ImplementationPhase(_CamelModel):
    """One sequential PR of a multi-phase implementation."""

    order: int = Field(..., ge=1, description="1-based phase order")
    name: str = Field(..., min_length=1, description="Short phase name")
    description: str = Field(default="", description="What the phase delivers")
    files: List[str] = Field(default_factory=list, description="Files to modify")
    estimated_size: str = Field(
        default="M",
        alias="estimatedSize",
        pattern="^[SM]$",
        description="S or M; larger phases must be split",
    )


# -----------------------------------------------------------------------------
# Decisions
# -----------------------------------------------------------------------------


class MetadataFieldConfig(_CamelModel):
    """Describes how one option metadata field is rendered and parsed."""

    key: str
    label: str
    type: str = Field(
        default="text",
        description="badge, text, file-list, tag or preview-link",
    )
    color_map: Optional[Dict[str, str]] = Field(default=None, alias="colorMap")


class DestinationOption(_CamelModel):
    """Destination offered for a custom decision solution."""

    value: str
    label: str


class RoutingConfig(_CamelModel):
    """How a chosen option's metadata value maps to a target status."""

    metadata_key: str = Field(..., alias="metadataKey")
    status_map: Dict[str, str] = Field(default_factory=dict, alias="statusMap")
    custom_destination_status_map: Optional[Dict[str, str]] = Field(
        default=None, alias="customDestinationStatusMap"
    )
    continue_after_selection: Optional[bool] = Field(
        default=None, alias="continueAfterSelection"
    )


class DecisionOption(_CamelModel):
    """A single option presented in a decision."""

    id: str
    title: str
    description: str = ""
    is_recommended: bool = Field(default=False, alias="isRecommended")
    metadata: Dict[str, Union[str, List[str]]] = Field(default_factory=dict)


class DecisionSelection(_CamelModel):
    """The admin's choice for a decision."""

    selected_option_id: Optional[str] = Field(default=None, alias="selectedOptionId")
    choose_recommended: Optional[bool] = Field(default=None, alias="chooseRecommended")
    custom_solution: Optional[str] = Field(default=None, alias="customSolution")
    custom_destination: Optional[str] = Field(default=None, alias="customDestination")
    notes: Optional[str] = None


class Decision(_CamelModel):
    """A structured multi-option decision produced by an agent."""

    agent_id: str = Field(..., alias="agentId")
    decision_type: str = Field(..., alias="type")
    context: str = ""
    options: List[DecisionOption] = Field(default_factory=list)
    metadata_schema: List[MetadataFieldConfig] = Field(
        default_factory=list, alias="metadataSchema"
    )
    custom_destination_options: Optional[List[DestinationOption]] = Field(
        default=None, alias="customDestinationOptions"
    )
    routing: Optional[RoutingConfig] = None
    selection: Optional[DecisionSelection] = None

    def recommended_option(self) -> Optional[DecisionOption]:
        """Return the first option flagged as recommended, if any."""
        for option in self.options:
            if option.is_recommended:
                return option
        return None

    def find_option(self, option_id: str) -> Optional[DecisionOption]:
        """Return the option with the given id, if any."""
        for option in self.options:
            if option.id == option_id:
                return option
        return None


# -----------------------------------------------------------------------------
# Clarifications
# -----------------------------------------------------------------------------


class ClarificationOption(BaseModel):
    """One answer option of a clarification question."""

    label: str
    bullets: List[str] = Field(default_factory=list)
    is_recommended: bool = False

    @property
    def emoji(self) -> str:
        return "✅" if self.is_recommended else "⚠️"


class ClarificationQuestion(BaseModel):
    """A (context, question, options, recommendation) tuple."""

    context: str = ""
    question: str
    options: List[ClarificationOption] = Field(default_factory=list)
    recommendation: str = ""


class ClarificationRecord(BaseModel):
    """Clarification request persisted for an item."""

    questions: List[ClarificationQuestion] = Field(default_factory=list)
    raw_content: str = ""
    requested_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )
    answer: Optional[str] = None


# -----------------------------------------------------------------------------
# Artifacts
# -----------------------------------------------------------------------------


class MergedPullRequest(BaseModel):
    """Record of the last implementation PR merged for an item."""

    pr_number: int = Field(..., gt=0)
    merge_commit_sha: str = Field(..., min_length=1)
    merged_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class CommitMessage(BaseModel):
    """Commit title/body saved on PR approval and used at merge time."""

    pr_number: int = Field(..., gt=0)
    title: str
    body: str = ""


class DesignArtifact(BaseModel):
    """Descriptor of an approved design document."""

    type: str = Field(..., description="product-design or tech-design")
    locator: str = Field(..., description="Where the document is stored")
    status: str = "approved"
    pr_number: Optional[int] = None
    last_updated: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class WorkItemArtifacts(BaseModel):
    """Item-level bookkeeping kept separately from the PR system."""

    decision: Optional[Decision] = None
    clarification: Optional[ClarificationRecord] = None
    last_merged_pr: Optional[MergedPullRequest] = None
    revert_pr_number: Optional[int] = None
    commit_message: Optional[CommitMessage] = None
    phases: List[ImplementationPhase] = Field(default_factory=list)
    task_branch: Optional[str] = None
    designs: Dict[str, DesignArtifact] = Field(default_factory=dict)


class HistoryEntry(BaseModel):
    """Audit log entry appended for workflow actions."""

    action: str
    description: str = ""
    actor: str = "system"
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: Dict[str, Any] = Field(default_factory=dict)


class WorkItemRecord(BaseModel):
    """Persisted work item, keyed by internal id.

    Attributes:
        id: Internal item id (opaque handle used by the store).
        type: Feature, bug or task.
        title: Item title, used for issue and PR titles.
        description: Item body, used for the issue body.
        status: Current pipeline phase, None before routing.
        review_status: Review sub-state within the current status.
        implementation_phase: "i/n" while a multi-phase implementation runs.
        github_issue_number: Tracker issue number once synced.
        github_issue_url: Tracker issue URL once synced.
        github_project_item_id: Board item id when tracked on a project board.
        source_ref: Intake record the item was created from.
        artifacts: Decision, merge and phase bookkeeping.
        labels: Tags carried from intake.
        history: Audit trail of workflow actions.
    """

    id: str = Field(..., min_length=1)
    type: ItemType = ItemType.FEATURE
    title: str = ""
    description: str = ""
    status: Optional[WorkItemStatus] = None
    review_status: Optional[ReviewStatus] = None
    implementation_phase: Optional[str] = None
    github_issue_number: Optional[int] = Field(default=None, gt=0)
    github_issue_url: Optional[str] = None
    github_project_item_id: Optional[str] = None
    source_ref: Optional[SourceRef] = None
    artifacts: WorkItemArtifacts = Field(default_factory=WorkItemArtifacts)
    labels: List[str] = Field(default_factory=list)
    history: List[HistoryEntry] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ProjectItem(BaseModel):
    """The store's view of a tracked item.

    Both store implementations return this shape so callers never depend on
    the backing provider.
    """

    id: str
    issue_number: Optional[int] = None
    title: str = ""
    body: str = ""
    url: Optional[str] = None
    type: ItemType = ItemType.FEATURE
    labels: List[str] = Field(default_factory=list)
    status: Optional[WorkItemStatus] = None
    review_status: Optional[ReviewStatus] = None
    implementation_phase: Optional[str] = None


# -----------------------------------------------------------------------------
# Intake
# -----------------------------------------------------------------------------


class IntakeStatus(str, Enum):
    """Status of a feature request or bug report intake record."""

    NEW = "new"
    IN_PROGRESS = "in_progress"
    INVESTIGATING = "investigating"
    DONE = "done"
    RESOLVED = "resolved"


FEATURE_REQUESTS_COLLECTION = "feature-requests"
REPORTS_COLLECTION = "reports"


class IntakeRecord(BaseModel):
    """A feature request or bug report submitted before tracker sync."""

    id: str = Field(..., min_length=1)
    collection: str = FEATURE_REQUESTS_COLLECTION
    title: str = ""
    description: str = ""
    status: IntakeStatus = IntakeStatus.NEW
    github_issue_number: Optional[int] = None
    github_issue_url: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def item_type(self) -> ItemType:
        return ItemType.BUG if self.collection == REPORTS_COLLECTION else ItemType.FEATURE
