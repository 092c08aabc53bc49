"""Decision comment formatting and parsing.

Agents that need an admin to pick between several approaches post a
decision comment. The comment carries two HTML-comment markers for machines
and the options as markdown for humans:

    <!-- AGENT_DECISION_V1:<agentId> -->
    <!-- DECISION_META:<json> -->

    ## Decision Context
    ...
    ### Options
    #### opt1: Title ⭐ **Recommended**
    - **Label:** value
    ...

The parser fails closed: a missing marker, unparseable metadata JSON or an
option-less body yields None instead of a partial decision.
"""

import hashlib
import hmac
import json
import logging
import re
from typing import Dict, List, Optional, Sequence, Union

from src.devpipeline.state.models import (
    Decision,
    DecisionOption,
    DecisionSelection,
    MetadataFieldConfig,
)


logger = logging.getLogger(__name__)

DECISION_MARKER_PREFIX = "<!-- AGENT_DECISION_V1:"
SELECTION_MARKER_PREFIX = "<!-- DECISION_SELECTION:"
RECOMMENDED_BADGE = " ⭐ **Recommended**"
DECISION_FOOTER = (
    "---\n"
    "_Please choose an option in the Telegram notification, "
    "or add a comment with feedback._"
)
SELECTION_FOOTER = "---\n_The agent will process this selection in the next workflow run._"
CUSTOM_OPTION_ID = "custom"

_AGENT_ID_RE = re.compile(r"<!-- AGENT_DECISION_V1:(\S+?) -->")
_META_RE = re.compile(r"<!-- DECISION_META:(.*?) -->")
_SELECTION_RE = re.compile(r"<!-- DECISION_SELECTION:(.*?) -->")
_AGENT_PREFIX_RE = re.compile(r"^[^\n]*\*\*\[.*?Agent\]\*\*\s*\n+")
_CONTEXT_RE = re.compile(r"## Decision Context\s*\n([\s\S]*?)(?=### Options|\Z)")
_FOOTER_RE = re.compile(r"\n?---\n_Please choose an option[\s\S]*\Z")
_OPTION_RE = re.compile(
    r"####[ \t]+(opt\d+):[ \t]+(.+?)([ \t]+⭐[ \t]+\*\*Recommended\*\*)?[ \t]*(?:\n|\Z)"
    r"([\s\S]*?)(?=####\s+opt\d+:|###\s+|\Z)"
)


def _dump_json(data: Dict) -> str:
    return json.dumps(data, ensure_ascii=False, separators=(",", ":"))


# -----------------------------------------------------------------------------
# Tokens
# -----------------------------------------------------------------------------


def generate_decision_token(issue_number: int, secret: str) -> str:
    """Generate the short token embedded in decision links.

    Args:
        issue_number: The tracker issue number.
        secret: Signing secret.

    Returns:
        First 8 hex characters of HMAC-SHA256 over "decision:<issue>".
    """
    digest = hmac.new(
        secret.encode("utf-8"),
        f"decision:{issue_number}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return digest[:8]


def validate_decision_token(issue_number: int, token: str, secret: str) -> bool:
    """Check a decision token in constant time."""
    expected = generate_decision_token(issue_number, secret)
    return hmac.compare_digest(expected, token or "")


# -----------------------------------------------------------------------------
# Decision comments
# -----------------------------------------------------------------------------


def is_decision_comment(body: str) -> bool:
    """Check if a comment body is an agent decision comment."""
    return DECISION_MARKER_PREFIX in (body or "")


def _parse_options(
    content: str,
    metadata_schema: Sequence[MetadataFieldConfig],
) -> List[DecisionOption]:
    options: List[DecisionOption] = []

    for match in _OPTION_RE.finditer(content):
        option_content = match.group(4).strip()

        metadata: Dict[str, Union[str, List[str]]] = {}
        for field in metadata_schema:
            field_match = re.search(
                r"\*\*" + re.escape(field.label) + r":\*\*[ \t]*([^\n]*)",
                option_content,
            )
            if not field_match:
                continue
            raw_value = field_match.group(1).strip()
            if field.type == "file-list":
                if raw_value and raw_value != "TBD":
                    metadata[field.key] = [
                        part.strip().replace("`", "") for part in raw_value.split(",")
                    ]
                else:
                    metadata[field.key] = []
            else:
                metadata[field.key] = raw_value

        description = option_content
        for field in metadata_schema:
            description = re.sub(
                r"- \*\*" + re.escape(field.label) + r":\*\*[^\n]*\n?",
                "",
                description,
            )

        options.append(
            DecisionOption(
                id=match.group(1),
                title=match.group(2).strip(),
                description=description.strip(),
                is_recommended=bool(match.group(3)),
                metadata=metadata,
            )
        )

    return options


def parse_decision(body: str) -> Optional[Decision]:
    """Parse a decision comment.

    Args:
        body: Full comment body, possibly prefixed with an agent name line.

    Returns:
        The parsed Decision, or None if the body is not a well-formed
        decision comment.
    """
    if not is_decision_comment(body):
        return None

    agent_match = _AGENT_ID_RE.search(body)
    agent_id = agent_match.group(1) if agent_match else "unknown"

    meta_match = _META_RE.search(body)
    if not meta_match:
        return None

    try:
        meta = json.loads(meta_match.group(1))
        if not isinstance(meta, dict):
            return None
        decision = Decision.model_validate(
            {
                "agentId": agent_id,
                "type": meta.get("type", ""),
                "metadataSchema": meta.get("metadataSchema") or [],
                "customDestinationOptions": meta.get("customDestinationOptions"),
                "routing": meta.get("routing"),
            }
        )
    except ValueError as e:
        logger.debug("Discarding decision with invalid metadata", extra={"error": str(e)})
        return None

    content = _AGENT_ID_RE.sub("", body, count=1)
    content = _META_RE.sub("", content, count=1).strip()
    content = _AGENT_PREFIX_RE.sub("", content, count=1)
    content = _FOOTER_RE.sub("", content)

    context_match = _CONTEXT_RE.search(content)
    context = context_match.group(1).strip() if context_match else ""

    options = _parse_options(content, decision.metadata_schema)
    if not options:
        return None

    decision.context = context
    decision.options = options
    return decision


def format_decision_comment(decision: Decision) -> str:
    """Format a decision as a comment with machine-readable markers.

    Args:
        decision: The decision to render. ``selection`` is ignored.

    Returns:
        Markdown body suitable for posting on the issue.
    """
    meta: Dict = {
        "type": decision.decision_type,
        "metadataSchema": [f.to_marker_dict() for f in decision.metadata_schema],
    }
    if decision.custom_destination_options:
        meta["customDestinationOptions"] = [
            d.to_marker_dict() for d in decision.custom_destination_options
        ]
    if decision.routing:
        meta["routing"] = decision.routing.to_marker_dict()

    parts = [
        f"<!-- AGENT_DECISION_V1:{decision.agent_id} -->\n",
        f"<!-- DECISION_META:{_dump_json(meta)} -->\n",
        "\n## Decision Context\n\n",
        f"{decision.context}\n\n",
        "### Options\n\n",
    ]

    for option in decision.options:
        badge = RECOMMENDED_BADGE if option.is_recommended else ""
        parts.append(f"#### {option.id}: {option.title}{badge}\n\n")

        # Metadata lines follow schema order
        for field in decision.metadata_schema:
            value = option.metadata.get(field.key)
            if value is None:
                continue
            if isinstance(value, list):
                rendered = ", ".join(f"`{v}`" for v in value) if value else "TBD"
            else:
                rendered = value
            parts.append(f"- **{field.label}:** {rendered}\n")
        parts.append("\n")

        if option.description:
            parts.append(f"{option.description}\n\n")

    parts.append(DECISION_FOOTER)
    return "".join(parts)


def find_latest_decision(comment_bodies: Sequence[str]) -> Optional[Decision]:
    """Parse the most recent decision comment from a list of bodies."""
    for body in reversed(list(comment_bodies)):
        if is_decision_comment(body):
            return parse_decision(body)
    return None


# -----------------------------------------------------------------------------
# Selection comments
# -----------------------------------------------------------------------------


def is_selection_comment(body: str) -> bool:
    """Check if a comment body records a decision selection."""
    return SELECTION_MARKER_PREFIX in (body or "")


def format_selection_comment(
    selection: DecisionSelection,
    options: Sequence[DecisionOption],
) -> str:
    """Format the comment posted after an admin picks an option."""
    data: Dict = {"selectedOptionId": selection.selected_option_id}
    if selection.custom_solution:
        data["customSolution"] = selection.custom_solution
    if selection.custom_destination:
        data["customDestination"] = selection.custom_destination
    if selection.notes:
        data["notes"] = selection.notes

    body = f"{SELECTION_MARKER_PREFIX}{_dump_json(data)} -->\n## ✅ Decision Made\n\n"

    if selection.selected_option_id == CUSTOM_OPTION_ID:
        body += f"**Selected:** Custom Solution\n\n**Custom Solution:**\n{selection.custom_solution}\n"
        if selection.custom_destination:
            body += f"**Destination:** {selection.custom_destination}\n"
    else:
        for option in options:
            if option.id == selection.selected_option_id:
                body += f"**Selected:** {option.id}: {option.title}\n"
                break

    if selection.notes:
        body += f"\n**Additional Notes:**\n{selection.notes}\n"

    return body + "\n" + SELECTION_FOOTER


def parse_selection_comment(body: str) -> Optional[DecisionSelection]:
    """Parse the selection marker from a comment body.

    Returns:
        The selection, or None if the marker is missing or malformed.
    """
    match = _SELECTION_RE.search(body or "")
    if not match:
        return None
    try:
        data = json.loads(match.group(1))
        if not isinstance(data, dict):
            return None
        return DecisionSelection.model_validate(data)
    except ValueError:
        return None
