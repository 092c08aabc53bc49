"""Implementation phase serialization.

Multi-phase implementations are announced on the issue with a phase comment
carrying the ``<!-- AGENT_PHASES_V1 -->`` marker. The same module formats and
parses it, so the implementation agent can reliably recover the phases the
technical design produced. A markdown fallback parses phases straight out of
the tech design document.

A single phase is not a multi-phase implementation: both parsers return None
unless at least two phases are found.
"""

import re
from typing import List, Optional, Sequence

from src.devpipeline.state.models import ImplementationPhase


PHASE_COMMENT_MARKER = "<!-- AGENT_PHASES_V1 -->"
MIN_PHASES = 2

_COMMENT_PHASE_RE = re.compile(
    r"###\s+Phase\s+(\d+):\s+([^(\n]+?)\s*\(([SM])\)\s*\n\s*\n([^\n]+)\s*\n\s*\n"
    r"\*\*Files to modify:\*\*\s*\n((?:\s*-\s*`[^`]+`\s*\n?)+)"
)
_COMMENT_FILE_RE = re.compile(r"- `([^`]+)`")
_MARKDOWN_PHASE_RE = re.compile(
    r"#{2,3}\s*Phase\s+(\d+):\s*([^(\n]+)\s*\(([SM])\)\s*\n+"
    r"([\s\S]*?)(?=(?:#{2,3}\s*Phase\s+\d+:|##[^#]|\Z))"
)
_MARKDOWN_DESCRIPTION_RE = re.compile(r"^([^\n*-]+(?:\n[^\n*-]+)*)")
_MARKDOWN_FILE_RE = re.compile(r"[-*]\s*`([^`]+)`")


def _build_phase(
    order: str,
    name: str,
    description: str,
    files: List[str],
    size: str,
) -> Optional[ImplementationPhase]:
    try:
        return ImplementationPhase(
            order=int(order),
            name=name.strip(),
            description=description.strip(),
            files=files,
            estimated_size=size,
        )
    except ValueError:
        return None


def format_phases_comment(phases: Sequence[ImplementationPhase]) -> str:
    """Format phases as the issue comment the implementation agent reads.

    Args:
        phases: Ordered implementation phases.

    Returns:
        Markdown comment body, or an empty string for no phases.
    """
    if not phases:
        return ""

    sections = []
    for phase in phases:
        files = "\n".join(f"- `{f}`" for f in phase.files)
        sections.append(
            f"### Phase {phase.order}: {phase.name} ({phase.estimated_size})\n\n"
            f"{phase.description}\n\n"
            f"**Files to modify:**\n"
            f"{files}\n"
        )

    return (
        f"{PHASE_COMMENT_MARKER}\n"
        f"## Implementation Phases\n\n"
        f"This feature will be implemented in {len(phases)} sequential PRs:\n\n"
        + "\n".join(sections)
        + "\n---\n*Phase tracking managed by Implementation Agent*"
    )


def has_phase_comment(comment_bodies: Sequence[str]) -> bool:
    """Check whether any comment carries the phase marker."""
    return any(PHASE_COMMENT_MARKER in body for body in comment_bodies)


def parse_phases_from_comment(body: str) -> Optional[List[ImplementationPhase]]:
    """Parse phases from a phase comment body.

    Returns:
        The phases in comment order, or None for fewer than two phases.
    """
    if PHASE_COMMENT_MARKER not in (body or ""):
        return None

    phases = []
    for match in _COMMENT_PHASE_RE.finditer(body):
        phase = _build_phase(
            match.group(1),
            match.group(2),
            match.group(4),
            _COMMENT_FILE_RE.findall(match.group(5)),
            match.group(3),
        )
        if phase is not None:
            phases.append(phase)
    return phases if len(phases) >= MIN_PHASES else None


def parse_phases_from_comments(
    comment_bodies: Sequence[str],
) -> Optional[List[ImplementationPhase]]:
    """Parse phases from the first comment carrying the phase marker."""
    for body in comment_bodies:
        if PHASE_COMMENT_MARKER in body:
            return parse_phases_from_comment(body)
    return None


def parse_phases_from_markdown(markdown: str) -> Optional[List[ImplementationPhase]]:
    """Parse phases from tech design markdown.

    Phase headings look like ``## Phase 1: Name (S)`` or ``### Phase 1: ...``.
    The first paragraph under a heading becomes the description and any
    backtick-quoted list items become the files.

    Returns:
        The phases, or None for fewer than two phases.
    """
    if not markdown:
        return None

    phases = []
    for match in _MARKDOWN_PHASE_RE.finditer(markdown):
        content = match.group(4)
        description_match = _MARKDOWN_DESCRIPTION_RE.match(content)
        phase = _build_phase(
            match.group(1),
            match.group(2),
            description_match.group(1) if description_match else "",
            _MARKDOWN_FILE_RE.findall(content),
            match.group(3),
        )
        if phase is not None:
            phases.append(phase)
    return phases if len(phases) >= MIN_PHASES else None
