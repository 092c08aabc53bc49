"""Work item state, transition tables and persistence.

This module tracks each work item's position in the pipeline:
- Status (pipeline phase) and Review Status (admin review sub-state)
- Implementation Phase ("i/n") for multi-phase implementations
- Item-level artifacts (decisions, merges, commit messages, phases)

The project item store is swappable between GitHub Projects V2 fields and
the PostgreSQL work-item collection.
"""

from src.devpipeline.state.machine import (
    DESIGN_STATUSES,
    DESIGN_TYPE_TO_NEXT_STATUS,
    STATUS_TRANSITIONS,
    format_phase_string,
    get_routing_status_map,
    parse_phase_string,
)
from src.devpipeline.state.models import (
    Decision,
    DecisionOption,
    DecisionSelection,
    ImplementationPhase,
    IntakeRecord,
    IntakeStatus,
    ItemType,
    ProjectItem,
    ReviewStatus,
    WorkItemRecord,
    WorkItemStatus,
)
from src.devpipeline.state.repository import (
    DatabaseError,
    PostgresDatabase,
    PostgresIntakeRepository,
    PostgresWorkItemRepository,
)
from src.devpipeline.state.store import (
    CollectionProjectStore,
    GitHubProjectStore,
    IntakeRepository,
    ItemNotFoundError,
    ProjectItemStore,
    WorkItemRepository,
)

__all__ = [
    # Transition tables
    "DESIGN_STATUSES",
    "DESIGN_TYPE_TO_NEXT_STATUS",
    "STATUS_TRANSITIONS",
    "format_phase_string",
    "get_routing_status_map",
    "parse_phase_string",
    # Models
    "Decision",
    "DecisionOption",
    "DecisionSelection",
    "ImplementationPhase",
    "IntakeRecord",
    "IntakeStatus",
    "ItemType",
    "ProjectItem",
    "ReviewStatus",
    "WorkItemRecord",
    "WorkItemStatus",
    # Persistence
    "CollectionProjectStore",
    "DatabaseError",
    "GitHubProjectStore",
    "IntakeRepository",
    "ItemNotFoundError",
    "PostgresDatabase",
    "PostgresIntakeRepository",
    "PostgresWorkItemRepository",
    "ProjectItemStore",
    "WorkItemRepository",
]
