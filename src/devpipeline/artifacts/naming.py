"""Branch names and repository paths for pipeline artifacts."""

import re
from typing import Optional

from src.devpipeline.state.machine import DESIGN_TYPES


DESIGN_DOC_FILENAMES = {
    "product-dev": "product-development.md",
    "product": "product-design.md",
    "tech": "tech-design.md",
}

_SLUG_RE = re.compile(r"[^a-z0-9]+")


def _check_design_type(design_type: str) -> None:
    if design_type not in DESIGN_TYPES:
        raise ValueError(f"Unknown design type: {design_type}")


def design_doc_path(issue_number: int, design_type: str) -> str:
    """Repository path of a design document.

    Example:
        >>> design_doc_path(12, "tech")
        'design-docs/issue-12/tech-design.md'
    """
    _check_design_type(design_type)
    return f"design-docs/issue-{issue_number}/{DESIGN_DOC_FILENAMES[design_type]}"


def design_branch_name(issue_number: int, design_type: str) -> str:
    """Branch the design PR for ``design_type`` is opened from."""
    _check_design_type(design_type)
    return f"design/issue-{issue_number}-{design_type}"


def task_branch_name(issue_number: int) -> str:
    """Feature integration branch that phase PRs target."""
    return f"feature/task-{issue_number}"


def phase_branch_name(issue_number: int, phase: int) -> str:
    """Head branch of one phase PR of a multi-phase implementation."""
    return f"feature/task-{issue_number}-phase-{phase}"


def implementation_branch_name(
    issue_number: int,
    title: str,
    is_bug: bool = False,
    phase: Optional[int] = None,
) -> str:
    """Head branch of a single-phase implementation PR.

    The slug is cut to 40 characters before leading and trailing dashes
    are stripped.

    Example:
        >>> implementation_branch_name(7, "Add dark mode!")
        'feature/issue-7-add-dark-mode'
    """
    slug = _SLUG_RE.sub("-", title.lower())[:40].strip("-")
    prefix = "fix" if is_bug else "feature"
    if phase:
        return f"{prefix}/issue-{issue_number}-phase-{phase}-{slug}"
    return f"{prefix}/issue-{issue_number}-{slug}"
