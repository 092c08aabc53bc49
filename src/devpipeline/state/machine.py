"""Workflow transition tables.

This module holds the fixed tables that drive the workflow service:
- STATUS_TRANSITIONS: where an Approved item moves during auto-advance
- DESIGN_STATUSES: statuses whose output is a reviewable design document
- Routing maps for intake items (features and bugs route differently)
- Design type tables used when a design PR is approved
- Implementation phase string helpers ("i/n")

The tables are plain dicts so they can be inspected by tests and by the
admin API without instantiating any service.
"""

import re
from typing import Dict, List, Optional, Tuple

from src.devpipeline.state.models import ItemType, ReviewStatus, WorkItemStatus


# Auto-advance transitions for items whose review status is Approved.
#
# Key design decisions:
# - Only design phases auto-advance; the next agent picks the item up there
# - PR Review is not listed: approved PRs advance when they are merged
# - Bug Investigation routes through a decision, not a fixed successor
STATUS_TRANSITIONS: Dict[WorkItemStatus, WorkItemStatus] = {
    # Product development doc approved, start the UX/product design
    WorkItemStatus.PRODUCT_DEVELOPMENT: WorkItemStatus.PRODUCT_DESIGN,
    # Product design approved, start the technical design
    WorkItemStatus.PRODUCT_DESIGN: WorkItemStatus.TECH_DESIGN,
    # Technical design approved, start implementation
    WorkItemStatus.TECH_DESIGN: WorkItemStatus.IMPLEMENTATION,
}

# Statuses in which review_design is meaningful.
DESIGN_STATUSES: List[WorkItemStatus] = [
    WorkItemStatus.PRODUCT_DEVELOPMENT,
    WorkItemStatus.PRODUCT_DESIGN,
    WorkItemStatus.BUG_INVESTIGATION,
    WorkItemStatus.TECH_DESIGN,
]


# -----------------------------------------------------------------------------
# Routing
# -----------------------------------------------------------------------------

ROUTING_BACKLOG = "backlog"

FEATURE_ROUTING_STATUS_MAP: Dict[str, WorkItemStatus] = {
    "product-dev": WorkItemStatus.PRODUCT_DEVELOPMENT,
    "product-design": WorkItemStatus.PRODUCT_DESIGN,
    "tech-design": WorkItemStatus.TECH_DESIGN,
    "implementation": WorkItemStatus.IMPLEMENTATION,
    ROUTING_BACKLOG: WorkItemStatus.BACKLOG,
}

# Bugs never go through product development.
BUG_ROUTING_STATUS_MAP: Dict[str, WorkItemStatus] = {
    "product-design": WorkItemStatus.PRODUCT_DESIGN,
    "tech-design": WorkItemStatus.TECH_DESIGN,
    "implementation": WorkItemStatus.IMPLEMENTATION,
    ROUTING_BACKLOG: WorkItemStatus.BACKLOG,
}

ROUTING_DESTINATION_LABELS: Dict[str, str] = {
    "product-dev": "Product Development",
    "product-design": "Product Design",
    "tech-design": "Technical Design",
    "implementation": "Ready for Development",
    ROUTING_BACKLOG: "Backlog",
}


def get_routing_status_map(item_type: ItemType) -> Dict[str, WorkItemStatus]:
    """Return the routing allow-list for an item type."""
    if item_type == ItemType.BUG:
        return BUG_ROUTING_STATUS_MAP
    return FEATURE_ROUTING_STATUS_MAP


def status_to_destination(
    status: WorkItemStatus,
    item_type: ItemType = ItemType.FEATURE,
) -> Optional[str]:
    """Reverse lookup of a routing destination for a status.

    Returns:
        The destination key, or None if the status is not routable.
    """
    for destination, mapped in get_routing_status_map(item_type).items():
        if mapped == status:
            return destination
    return None


# -----------------------------------------------------------------------------
# Design documents
# -----------------------------------------------------------------------------

DESIGN_TYPES: Tuple[str, ...] = ("product-dev", "product", "tech")

DESIGN_TYPE_LABELS: Dict[str, str] = {
    "product-dev": "Product Development",
    "product": "Product Design",
    "tech": "Technical Design",
}

DESIGN_TYPE_TO_NEXT_STATUS: Dict[str, WorkItemStatus] = {
    "product-dev": WorkItemStatus.PRODUCT_DESIGN,
    "product": WorkItemStatus.TECH_DESIGN,
    "tech": WorkItemStatus.IMPLEMENTATION,
}

NEXT_PHASE_LABELS: Dict[str, str] = {
    "product-dev": "Product Design",
    "product": "Tech Design",
    "tech": "Implementation",
}

# Document type used in commit messages for merged design PRs.
DESIGN_COMMIT_DOC_TYPES: Dict[str, str] = {
    "product-dev": "product development",
    "product": "product",
    "tech": "tech",
}


# -----------------------------------------------------------------------------
# Implementation phases
# -----------------------------------------------------------------------------

_PHASE_STRING_RE = re.compile(r"^(\d+)/(\d+)$")


def parse_phase_string(value: Optional[str]) -> Optional[Tuple[int, int]]:
    """Parse an "i/n" implementation phase string.

    Args:
        value: The raw field value.

    Returns:
        (current, total) when 1 <= current <= total, otherwise None.

    Example:
        >>> parse_phase_string("2/3")
        (2, 3)
        >>> parse_phase_string("4/3") is None
        True
    """
    if not value:
        return None
    match = _PHASE_STRING_RE.match(value.strip())
    if not match:
        return None
    current, total = int(match.group(1)), int(match.group(2))
    if current < 1 or current > total:
        return None
    return current, total


def format_phase_string(current: int, total: int) -> str:
    """Format an implementation phase counter as "i/n"."""
    return f"{current}/{total}"


def next_auto_advance_status(status: WorkItemStatus) -> Optional[WorkItemStatus]:
    """Return the status an Approved item in ``status`` advances to."""
    return STATUS_TRANSITIONS.get(status)


def is_design_status(status: Optional[WorkItemStatus]) -> bool:
    """Check whether a status produces a reviewable design document."""
    return status in DESIGN_STATUSES


# Review statuses in which a decision may be submitted.
DECISION_REVIEW_STATUSES: List[ReviewStatus] = [
    ReviewStatus.WAITING_FOR_REVIEW,
    ReviewStatus.WAITING_FOR_DECISION,
]
