"""Agent output parsing.

Agents return free text plus an optional structured payload. Different
workflows emit different optional payloads from a shared envelope, so the
structured output is classified by which discriminator fields are present:

- ``needsClarification: true`` with a ``clarification`` object
- ``decision`` (a decision record) or ``mockOptions`` (design mock choices)
- ``phases`` (multi-phase implementation plan from a tech design)
- anything else is a plain document/comment result

Text helpers extract markdown documents, JSON blocks and PR review decisions
from the free-text content.
"""

import json
import logging
import re
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from src.devpipeline.state.models import (
    ClarificationOption,
    ClarificationQuestion,
    Decision,
    DecisionOption,
    ImplementationPhase,
    MetadataFieldConfig,
    RoutingConfig,
)


logger = logging.getLogger(__name__)

REVIEW_APPROVED = "approved"
REVIEW_REQUEST_CHANGES = "request_changes"

DESIGN_MOCK_METADATA_SCHEMA = [MetadataFieldConfig(key="approach", label="Approach", type="tag")]
DESIGN_MOCK_ROUTING = RoutingConfig(
    metadata_key="approach",
    status_map={},
    continue_after_selection=True,
)
MIN_MOCK_OPTIONS = 2

_REVIEW_DECISION_RE = re.compile(r"DECISION:\s*(APPROVED|REQUEST_CHANGES)", re.IGNORECASE)
_JSON_BLOCK_RE = re.compile(r"```json\s*([\s\S]*?)\s*```")
_RAW_JSON_RE = re.compile(r"\{[\s\S]*\}")
_OPENING_FENCE_RE = re.compile(r"^[a-z]+(\s|$)", re.IGNORECASE)


class InvalidAgentOutputError(ValueError):
    """Raised when a structured payload announces a shape it does not have."""


class AgentOutputKind(str, Enum):
    """Discriminator for structured agent output."""

    CLARIFICATION = "clarification"
    DECISION = "decision"
    PHASES = "phases"
    DOCUMENT = "document"


class StructuredAgentOutput(BaseModel):
    """Classified structured output of an agent run.

    Attributes:
        kind: Which payload drove the classification.
        clarification: Questions when the agent needs clarification.
        decision: Decision to present to the admin.
        phases: Implementation phases from a tech design.
        document: Design document markdown, when present.
        comment: Summary comment to post on the PR.
        pr_summary: PR description for implementation runs.
        review_decision: approved / request_changes for PR review runs.
        raw: The original payload.
    """

    kind: AgentOutputKind = AgentOutputKind.DOCUMENT
    clarification: List[ClarificationQuestion] = Field(default_factory=list)
    decision: Optional[Decision] = None
    phases: List[ImplementationPhase] = Field(default_factory=list)
    document: Optional[str] = None
    comment: Optional[str] = None
    pr_summary: Optional[str] = None
    review_decision: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)


def _clarification_from_payload(payload: Any) -> ClarificationQuestion:
    if not isinstance(payload, dict):
        raise InvalidAgentOutputError(
            "needsClarification is true but no clarification object provided"
        )

    options = payload.get("options")
    if not (
        isinstance(payload.get("context"), str)
        and isinstance(payload.get("question"), str)
        and isinstance(options, list)
        and options
        and isinstance(payload.get("recommendation"), str)
    ):
        raise InvalidAgentOutputError(
            "Invalid clarification format: clarification object must have context, "
            "question, options (non-empty array), and recommendation fields"
        )

    parsed_options = []
    for option in options:
        if not isinstance(option, dict) or not option.get("label"):
            raise InvalidAgentOutputError("Clarification option is missing a label")
        description = str(option.get("description") or "")
        bullets = [
            line.strip().lstrip("-").strip()
            for line in description.splitlines()
            if line.strip()
        ]
        parsed_options.append(
            ClarificationOption(
                label=str(option["label"]),
                bullets=bullets,
                is_recommended=bool(option.get("isRecommended")),
            )
        )

    return ClarificationQuestion(
        context=payload["context"],
        question=payload["question"],
        options=parsed_options,
        recommendation=payload["recommendation"],
    )


def _decision_from_mock_options(agent_id: str, mock_options: List[Dict[str, Any]]) -> Decision:
    options = [
        DecisionOption(
            id=str(opt.get("id") or f"opt{index}"),
            title=str(opt.get("title", "")),
            description=str(opt.get("description", "")),
            is_recommended=bool(opt.get("isRecommended")),
            metadata={"approach": str(opt.get("title", ""))},
        )
        for index, opt in enumerate(mock_options, start=1)
    ]
    context = (
        f"**Design Options:** {len(options)} approaches generated\n\n"
        "Review each option and select the design approach for this feature.\n\n"
        "**Note:** After selecting an option, the agent will write a full design "
        "document for the chosen approach."
    )
    return Decision(
        agent_id=agent_id,
        decision_type="design-selection",
        context=context,
        options=options,
        metadata_schema=list(DESIGN_MOCK_METADATA_SCHEMA),
        routing=DESIGN_MOCK_ROUTING.model_copy(),
    )


def classify_structured_output(
    output: Optional[Dict[str, Any]],
    agent_id: str = "agent",
) -> StructuredAgentOutput:
    """Classify a structured agent payload by its discriminator fields.

    Args:
        output: The structured payload, possibly None.
        agent_id: Agent identifier recorded on decisions built from the output.

    Returns:
        The classified output. A missing payload yields an empty document.

    Raises:
        InvalidAgentOutputError: If ``needsClarification`` is set but the
            clarification object is missing or malformed, or a decision
            payload fails validation.
    """
    if not isinstance(output, dict):
        return StructuredAgentOutput()

    common = {
        "document": output.get("design") or output.get("document"),
        "comment": output.get("comment"),
        "pr_summary": output.get("prSummary"),
        "raw": output,
    }

    if output.get("needsClarification") is True:
        return StructuredAgentOutput(
            kind=AgentOutputKind.CLARIFICATION,
            clarification=[_clarification_from_payload(output.get("clarification"))],
            **common,
        )

    if isinstance(output.get("decision"), dict):
        payload = dict(output["decision"])
        payload.setdefault("agentId", agent_id)
        try:
            decision = Decision.model_validate(payload)
        except ValueError as e:
            raise InvalidAgentOutputError(f"Invalid decision payload: {e}") from e
        if decision.options:
            return StructuredAgentOutput(
                kind=AgentOutputKind.DECISION, decision=decision, **common
            )

    mock_options = output.get("mockOptions")
    if isinstance(mock_options, list) and len(mock_options) >= MIN_MOCK_OPTIONS:
        return StructuredAgentOutput(
            kind=AgentOutputKind.DECISION,
            decision=_decision_from_mock_options(agent_id, mock_options),
            **common,
        )

    phases = output.get("phases")
    if isinstance(phases, list) and phases:
        try:
            parsed = [ImplementationPhase.model_validate(p) for p in phases]
        except ValueError as e:
            logger.warning("Ignoring malformed phases in agent output", extra={"error": str(e)})
            parsed = []
        if parsed:
            return StructuredAgentOutput(kind=AgentOutputKind.PHASES, phases=parsed, **common)

    # PR review runs report their verdict as a plain string
    decision_value = output.get("decision")
    if isinstance(decision_value, str):
        return StructuredAgentOutput(
            review_decision=parse_review_decision(f"DECISION: {decision_value}"),
            **common,
        )

    return StructuredAgentOutput(**common)


# -----------------------------------------------------------------------------
# Text extraction
# -----------------------------------------------------------------------------


def _looks_like_design(text: str) -> bool:
    return "# " in text and ("Overview" in text or "Design" in text)


def _is_line_start(text: str, index: int) -> bool:
    line_start = text.rfind("\n", 0, index) + 1
    return text[line_start:index].strip() == ""


def extract_markdown(text: Optional[str]) -> Optional[str]:
    """Extract a markdown document from agent output.

    Prefers a ```markdown fenced block, matching nested fences so code
    samples inside the document survive. Falls back to a plain fenced
    block or the whole text when it looks like a design document.
    """
    if not text:
        return None

    start = text.find("```markdown")
    if start != -1:
        content_start = text.find("\n", start) + 1
        if content_start == 0:
            return None
        depth = 1
        pos = content_start
        while pos < len(text) and depth > 0:
            fence = text.find("```", pos)
            if fence == -1:
                break
            if _is_line_start(text, fence):
                after = text[fence + 3:fence + 20]
                if _OPENING_FENCE_RE.match(after):
                    depth += 1
                else:
                    depth -= 1
                    if depth == 0:
                        return text[content_start:fence].strip()
            pos = fence + 3
        return text[content_start:].strip()

    plain = text.find("```")
    if plain != -1:
        content_start = text.find("\n", plain) + 1
        if content_start == 0:
            return None
        pos = content_start
        while pos < len(text):
            fence = text.find("```", pos)
            if fence == -1:
                break
            if _is_line_start(text, fence):
                content = text[content_start:fence].strip()
                if _looks_like_design(content):
                    return content
                break
            pos = fence + 3

    if _looks_like_design(text):
        return text.strip()
    return None


def extract_json(text: Optional[str]) -> Optional[Any]:
    """Extract a JSON value from a ```json block or a raw object in the text."""
    if not text:
        return None
    match = _JSON_BLOCK_RE.search(text)
    raw = match.group(1) if match else None
    if not raw:
        raw_match = _RAW_JSON_RE.search(text)
        raw = raw_match.group(0) if raw_match else None
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        logger.debug("Agent output contained unparseable JSON")
        return None


def parse_review_decision(text: Optional[str]) -> Optional[str]:
    """Parse ``DECISION: APPROVED|REQUEST_CHANGES`` from review output.

    Returns:
        "approved", "request_changes", or None when no decision is present.
    """
    if not text:
        return None
    match = _REVIEW_DECISION_RE.search(text)
    if not match:
        return None
    return REVIEW_APPROVED if match.group(1).upper() == "APPROVED" else REVIEW_REQUEST_CHANGES
