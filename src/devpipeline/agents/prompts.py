"""Prompt construction for agent runs.

The orchestrator hands a PromptContext to a PromptBuilder and sends the
returned text to the agent. DefaultPromptBuilder produces a plain markdown
prompt per workflow and mode; deployments with richer prompt templates
plug in their own builder.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Protocol, runtime_checkable

from src.devpipeline.state.models import DecisionSelection, ImplementationPhase


@dataclass
class PromptContext:
    """Everything an agent needs to know about one run.

    Attributes:
        workflow: Workflow name.
        mode: new, feedback, clarification or post-selection.
        issue_number: Tracker issue number.
        title: Issue title.
        body: Issue body.
        comments: Issue comment bodies, oldest first.
        existing_document: The current design document for revisions.
        clarification_answer: The admin's latest clarification answer.
        selection: The admin's decision selection in post-selection mode.
        phase: The implementation phase being built, for multi-phase work.
        total_phases: Number of implementation phases.
        pr_diff_summary: Changed-file summary for PR review runs.
    """

    workflow: str
    mode: str
    issue_number: int
    title: str
    body: str = ""
    comments: List[str] = field(default_factory=list)
    existing_document: Optional[str] = None
    clarification_answer: Optional[str] = None
    selection: Optional[DecisionSelection] = None
    phase: Optional[ImplementationPhase] = None
    total_phases: int = 1
    pr_diff_summary: Optional[str] = None


@runtime_checkable
class PromptBuilder(Protocol):
    def build(self, context: PromptContext) -> str:
        ...


WORKFLOW_INSTRUCTIONS = {
    "product-dev": (
        "Write a product development document: the problem, target users, "
        "requirements and success criteria."
    ),
    "product-design": (
        "Write a product design document: user flows, screens and interaction "
        "details. When several distinct approaches exist, return them as "
        "mockOptions so the admin can choose."
    ),
    "tech-design": (
        "Write a technical design document. For large changes, split the work "
        "into sequential phases under '## Phase N: Name (Size)' headings and "
        "list the files each phase touches."
    ),
    "bug-investigation": (
        "Investigate the reported bug, identify the root cause and propose fix "
        "options as a decision with a recommended option."
    ),
    "implementation": (
        "Implement the change on the current branch, then summarize it in "
        "prSummary."
    ),
    "pr-review": (
        "Review the pull request. Finish with 'DECISION: APPROVED' or "
        "'DECISION: REQUEST_CHANGES' and, when approving, a commitMessage "
        "with title and body."
    ),
}

CLARIFICATION_INSTRUCTIONS = (
    "If a requirement is ambiguous, do not guess: return needsClarification "
    "true with a clarification object (context, question, options, "
    "recommendation)."
)


class DefaultPromptBuilder:
    """Builds markdown prompts from the run context."""

    def build(self, context: PromptContext) -> str:
        sections = [
            f"# Issue #{context.issue_number}: {context.title}",
            context.body.strip() or "_No description._",
            "## Task",
            WORKFLOW_INSTRUCTIONS.get(context.workflow, ""),
        ]

        if context.phase is not None:
            files = "\n".join(f"- `{f}`" for f in context.phase.files)
            sections += [
                f"## Phase {context.phase.order} of {context.total_phases}: {context.phase.name}",
                context.phase.description,
                files,
                "Only implement this phase.",
            ]

        if context.mode == "feedback":
            sections.append("## Revision requested")
            if context.existing_document:
                sections += ["Current version:", context.existing_document]
            sections.append("Address the admin feedback in the latest comments:")
            sections += context.comments[-5:]
        elif context.mode == "clarification":
            sections += [
                "## Clarification provided",
                context.clarification_answer or "See the latest comments.",
                "Continue with the clarified requirements.",
            ]
        elif context.mode == "post-selection" and context.selection is not None:
            chosen = context.selection.custom_solution or context.selection.selected_option_id
            sections += [
                "## Admin selection",
                f"The admin selected: {chosen}",
            ]
            if context.selection.notes:
                sections.append(f"Notes: {context.selection.notes}")
            sections.append("Produce the full document for the selected option.")

        if context.pr_diff_summary:
            sections += ["## Changes under review", context.pr_diff_summary]

        sections.append(CLARIFICATION_INSTRUCTIONS)
        return "\n\n".join(s for s in sections if s)
