"""Clarification request formatting and parsing.

When an agent cannot proceed without an answer it posts a clarification
comment on the issue. The body has the shape:

    ## 🤔 Agent Needs Clarification

    ## Context
    ...
    ## Question
    ...
    ## Options

    ✅ Option 1: Recommended label
       - reason

    ⚠️ Option 2: Other label
       - reason

    ## Recommendation
    ...

Several (Context, Question, Options, Recommendation) sections may follow each
other. The admin answer is posted as a separate "Clarification Provided"
comment.
"""

import re
from typing import List, Optional, Sequence

from src.devpipeline.state.models import (
    ClarificationOption,
    ClarificationQuestion,
)


CLARIFICATION_HEADER = "## 🤔 Agent Needs Clarification"
CLARIFICATION_FOOTER = (
    "---\n"
    '_Please respond with your answer in a comment below, then click '
    '"Clarification Received" in Telegram._'
)
ANSWER_HEADER = "## ✅ Clarification Provided"
ANSWER_FOOTER = "---\n_Clarification provided via interactive UI. Continue with the selected option(s)._"
OTHER_OPTION = "Other"

_SECTION_SPLIT_RE = re.compile(r"(?=## Context)")
_CONTEXT_RE = re.compile(r"## Context\s*([\s\S]*?)(?=## Question|\Z)")
_QUESTION_RE = re.compile(r"## Question\s*([\s\S]*?)(?=## Options|\Z)")
_OPTIONS_RE = re.compile(r"## Options\s*([\s\S]*?)(?=## Recommendation|\Z)")
_RECOMMENDATION_RE = re.compile(r"## Recommendation\s*([\s\S]*?)(?=## How to Respond|\Z)")
_OPTION_SPLIT_RE = re.compile(r"(?=^(?:✅|⚠️))", re.MULTILINE)
_OPTION_HEADER_RE = re.compile(
    r"^(✅|⚠️)\s*\*{0,2}\s*Option\s*\d+:\s*(.+?)(?:\*{0,2})(?:\n|\Z)"
)
_BULLET_RE = re.compile(r"^\s*-\s+(.+)$", re.MULTILINE)

_AGENT_PREFIX_RE = re.compile(r"^[^\[\n]*\*{0,2}\[[^\]\n]+\]\*{0,2}\s*")
_HOW_TO_RESPOND_RE = re.compile(r"## How to Respond[\s\S]*?(?=## Context|---|\Z)")
_FOOTER_RE = re.compile(r"---\s*_Please respond with your answer[\s\S]*\Z")


def is_clarification_comment(body: str) -> bool:
    """Check if a comment is a clarification request from an agent."""
    return "🤔 Agent Needs Clarification" in (body or "")


def _parse_options(section: str) -> List[ClarificationOption]:
    options: List[ClarificationOption] = []
    for block in _OPTION_SPLIT_RE.split(section):
        if not block.strip():
            continue
        header = _OPTION_HEADER_RE.match(block)
        if not header:
            continue
        label = re.sub(r"\*+$", "", header.group(2).strip()).strip()
        bullets = [m.group(1).strip() for m in _BULLET_RE.finditer(block)]
        options.append(
            ClarificationOption(
                label=label,
                bullets=bullets,
                is_recommended=header.group(1) == "✅",
            )
        )
    return options


def _section(pattern: "re.Pattern[str]", text: str) -> str:
    match = pattern.search(text)
    return match.group(1).strip() if match else ""


def _parse_single_question(section: str) -> Optional[ClarificationQuestion]:
    question = _section(_QUESTION_RE, section)
    options = _parse_options(_section(_OPTIONS_RE, section))
    if not question or not options:
        return None
    return ClarificationQuestion(
        context=_section(_CONTEXT_RE, section),
        question=question,
        options=options,
        recommendation=_section(_RECOMMENDATION_RE, section),
    )


def parse_clarification_content(content: str) -> List[ClarificationQuestion]:
    """Parse clarification content into structured questions.

    Args:
        content: Clarification markdown without the header and footer.

    Returns:
        Parsed questions. Sections lacking a question or options are skipped,
        so malformed content yields an empty list.
    """
    questions: List[ClarificationQuestion] = []
    for section in _SECTION_SPLIT_RE.split(content or ""):
        if not section.strip():
            continue
        parsed = _parse_single_question(section)
        if parsed is not None:
            questions.append(parsed)
    return questions


def extract_clarification_from_comment(body: str) -> str:
    """Strip agent prefix, header, response hints and footer from a comment."""
    content = _AGENT_PREFIX_RE.sub("", body, count=1)
    content = content.replace(CLARIFICATION_HEADER, "")
    content = _HOW_TO_RESPOND_RE.sub("", content)
    content = _FOOTER_RE.sub("", content)
    return content.strip()


def parse_clarification_comment(body: str) -> Optional[List[ClarificationQuestion]]:
    """Parse a full clarification comment.

    Returns:
        The questions, or None if the body is not a clarification comment or
        contains no parseable question.
    """
    if not is_clarification_comment(body):
        return None
    questions = parse_clarification_content(extract_clarification_from_comment(body))
    return questions or None


def format_clarification_question(question: ClarificationQuestion) -> str:
    """Format one structured question as clarification markdown."""
    lines = ["## Context", question.context, "", "## Question", question.question, "", "## Options", ""]
    for index, option in enumerate(question.options, start=1):
        lines.append(f"{option.emoji} Option {index}: {option.label}")
        for bullet in option.bullets:
            lines.append(f"   - {bullet}")
        lines.append("")
    lines.append("## Recommendation")
    lines.append(question.recommendation)
    return "\n".join(lines)


def format_clarification_comment(
    questions: Sequence[ClarificationQuestion],
    agent_prefix: Optional[str] = None,
) -> str:
    """Format the comment posted when an agent needs clarification."""
    body = "\n\n".join(format_clarification_question(q) for q in questions)
    comment = "\n".join([CLARIFICATION_HEADER, "", body, "", CLARIFICATION_FOOTER])
    if agent_prefix:
        return f"{agent_prefix}\n\n{comment}"
    return comment


def find_latest_clarification(comment_bodies: Sequence[str]) -> Optional[str]:
    """Return the most recent clarification comment body, if any."""
    for body in reversed(list(comment_bodies)):
        if is_clarification_comment(body):
            return body
    return None


def format_answer_comment(
    question: Optional[str],
    answer: str,
    custom_text: Optional[str] = None,
    notes: Optional[str] = None,
) -> str:
    """Format the admin's answer to a clarification.

    Args:
        question: The question being answered, for context.
        answer: Selected option label, or "Other" for a custom answer.
        custom_text: Free text used when ``answer`` is "Other".
        notes: Optional additional notes.
    """
    lines = [ANSWER_HEADER, ""]
    if question:
        lines.extend([f"**Question:** {question}", ""])
    if answer == OTHER_OPTION and custom_text:
        lines.append(f"**Answer:** Custom response: {custom_text}")
    else:
        lines.append(f"**Answer:** {answer}")
    if notes and notes.strip():
        lines.extend(["", f"**Additional notes:** {notes.strip()}"])
    lines.extend(["", ANSWER_FOOTER])
    return "\n".join(lines)
