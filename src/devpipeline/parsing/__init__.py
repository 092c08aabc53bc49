"""Comment marker and agent output parsing.

Machine-readable markers embedded in issue comments are treated as a
versioned serialization format. Every parser fails closed and returns None
(or an empty list) on malformed input.
"""

from src.devpipeline.parsing.agent_output import (
    AgentOutputKind,
    InvalidAgentOutputError,
    StructuredAgentOutput,
    classify_structured_output,
    extract_json,
    extract_markdown,
    parse_review_decision,
)
from src.devpipeline.parsing.clarification import (
    format_answer_comment,
    format_clarification_comment,
    is_clarification_comment,
    parse_clarification_comment,
    parse_clarification_content,
)
from src.devpipeline.parsing.decision import (
    format_decision_comment,
    format_selection_comment,
    generate_decision_token,
    is_decision_comment,
    is_selection_comment,
    parse_decision,
    parse_selection_comment,
    validate_decision_token,
)
from src.devpipeline.parsing.phases import (
    PHASE_COMMENT_MARKER,
    format_phases_comment,
    has_phase_comment,
    parse_phases_from_comment,
    parse_phases_from_comments,
    parse_phases_from_markdown,
)

__all__ = [
    # Agent output
    "AgentOutputKind",
    "InvalidAgentOutputError",
    "StructuredAgentOutput",
    "classify_structured_output",
    "extract_json",
    "extract_markdown",
    "parse_review_decision",
    # Clarification
    "format_answer_comment",
    "format_clarification_comment",
    "is_clarification_comment",
    "parse_clarification_comment",
    "parse_clarification_content",
    # Decision
    "format_decision_comment",
    "format_selection_comment",
    "generate_decision_token",
    "is_decision_comment",
    "is_selection_comment",
    "parse_decision",
    "parse_selection_comment",
    "validate_decision_token",
    # Phases
    "PHASE_COMMENT_MARKER",
    "format_phases_comment",
    "has_phase_comment",
    "parse_phases_from_comment",
    "parse_phases_from_comments",
    "parse_phases_from_markdown",
]
