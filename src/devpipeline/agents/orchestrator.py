"""Agent run orchestrator.

Drives one agent run for a work item:

1. Derive the run mode from the item's Review Status.
2. Build a mode-specific prompt and invoke the agent runner.
3. Clarification output: post the questions, persist the clarification,
   set Waiting for Clarification and notify. No PR is created.
4. Otherwise persist the output durably, commit it and create or update
   the PR, then flip Review Status. Decision output sets Waiting for
   Decision with a decision notification instead of the PR-ready one.

Artifacts and comments are always written before the Review Status flip,
so a reader never sees Waiting for Review while the artifact is missing.
Every status change goes through the WorkflowService.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from src.devpipeline.agents.prompts import DefaultPromptBuilder, PromptBuilder, PromptContext
from src.devpipeline.agents.runner import AgentRunner, AgentRunRequest, AgentRunResult
from src.devpipeline.artifacts.naming import (
    design_branch_name,
    design_doc_path,
    implementation_branch_name,
    phase_branch_name,
    task_branch_name,
)
from src.devpipeline.artifacts.store import ArtifactStore
from src.devpipeline.events.emitter import EventEmitter, NullEventEmitter
from src.devpipeline.events.models import EventType, WorkflowEvent
from src.devpipeline.github.client import GitHubClient
from src.devpipeline.notifications.notifier import NotificationResult, Notifier, NullNotifier
from src.devpipeline.parsing.agent_output import (
    REVIEW_APPROVED,
    AgentOutputKind,
    InvalidAgentOutputError,
    StructuredAgentOutput,
    classify_structured_output,
    extract_markdown,
    parse_review_decision,
)
from src.devpipeline.parsing.clarification import format_clarification_comment
from src.devpipeline.parsing.decision import format_decision_comment
from src.devpipeline.parsing.phases import (
    MIN_PHASES,
    format_phases_comment,
    has_phase_comment,
    parse_phases_from_comments,
)
from src.devpipeline.state.machine import (
    DESIGN_COMMIT_DOC_TYPES,
    DESIGN_TYPE_LABELS,
    format_phase_string,
    parse_phase_string,
)
from src.devpipeline.state.models import (
    ClarificationRecord,
    CommitMessage,
    Decision,
    ImplementationPhase,
    ItemType,
    ProjectItem,
    ReviewStatus,
    WorkItemRecord,
    WorkItemStatus,
)
from src.devpipeline.state.store import ProjectItemStore, WorkItemRepository
from src.devpipeline.workflow.service import WorkflowService


logger = logging.getLogger(__name__)


class AgentRunError(Exception):
    """Raised when an agent run cannot produce usable output."""


@dataclass(frozen=True)
class WorkflowDefinition:
    """Static description of an agent workflow.

    Attributes:
        name: Workflow key used by the API and batch jobs.
        status: Status an item must be in to be picked up.
        agent_name: Display name used in comment prefixes.
        emoji: Display emoji used in comment prefixes.
        phase_label: Label used in notifications.
        design_type: Design document type, for design workflows.
    """

    name: str
    status: WorkItemStatus
    agent_name: str
    emoji: str
    phase_label: str
    design_type: Optional[str] = None

    @property
    def agent_prefix(self) -> str:
        return f"{self.emoji} **[{self.agent_name}]**"


WORKFLOWS: Dict[str, WorkflowDefinition] = {
    "product-dev": WorkflowDefinition(
        "product-dev", WorkItemStatus.PRODUCT_DEVELOPMENT,
        "Product Development Agent", "📝", "Product Development", "product-dev",
    ),
    "product-design": WorkflowDefinition(
        "product-design", WorkItemStatus.PRODUCT_DESIGN,
        "Product Design Agent", "🎨", "Product Design", "product",
    ),
    "tech-design": WorkflowDefinition(
        "tech-design", WorkItemStatus.TECH_DESIGN,
        "Tech Design Agent", "🏗️", "Technical Design", "tech",
    ),
    "bug-investigation": WorkflowDefinition(
        "bug-investigation", WorkItemStatus.BUG_INVESTIGATION,
        "Bug Investigator Agent", "🔍", "Bug Investigation",
    ),
    "implementation": WorkflowDefinition(
        "implementation", WorkItemStatus.IMPLEMENTATION,
        "Implementor Agent", "⚙️", "Implementation",
    ),
    "pr-review": WorkflowDefinition(
        "pr-review", WorkItemStatus.PR_REVIEW,
        "PR Review Agent", "👀", "PR Review",
    ),
}

MODE_NEW = "new"
MODE_FEEDBACK = "feedback"
MODE_CLARIFICATION = "clarification"
MODE_POST_SELECTION = "post-selection"

_MODES_BY_REVIEW_STATUS = {
    ReviewStatus.REQUEST_CHANGES: MODE_FEEDBACK,
    ReviewStatus.CLARIFICATION_RECEIVED: MODE_CLARIFICATION,
    ReviewStatus.DECISION_SUBMITTED: MODE_POST_SELECTION,
}

# Review statuses in which an item is picked up by its phase's agent.
RUNNABLE_REVIEW_STATUSES = (
    None,
    ReviewStatus.REQUEST_CHANGES,
    ReviewStatus.CLARIFICATION_RECEIVED,
    ReviewStatus.DECISION_SUBMITTED,
)
PR_REVIEW_RUNNABLE_STATUSES = (None, ReviewStatus.WAITING_FOR_REVIEW)


def mode_for_review_status(review_status: Optional[ReviewStatus]) -> str:
    """Derive the run mode from the current Review Status."""
    return _MODES_BY_REVIEW_STATUS.get(review_status, MODE_NEW)


def is_runnable(definition: WorkflowDefinition, item: ProjectItem) -> bool:
    """Check whether a batch run should pick up ``item``."""
    if item.status != definition.status:
        return False
    if definition.name == "pr-review":
        return item.review_status in PR_REVIEW_RUNNABLE_STATUSES
    return item.review_status in RUNNABLE_REVIEW_STATUSES


class AgentRunOutcome(BaseModel):
    """Outcome of one agent run.

    Attributes:
        kind: What the run produced: clarification, document, decision,
            implementation or review.
        pr_number: PR created or updated by the run.
        duration_seconds: Wall-clock time of the whole run.
    """

    success: bool
    issue_number: int
    workflow: str
    mode: str = MODE_NEW
    kind: Optional[str] = None
    pr_number: Optional[int] = None
    duration_seconds: float = 0.0
    error: Optional[str] = None


class BatchRunResult(BaseModel):
    workflow: str
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    outcomes: List[AgentRunOutcome] = Field(default_factory=list)


class AgentRunOrchestrator:
    """Runs agents for work items and records their output.

    Attributes:
        service: Workflow service used for every status change.
        runner: Agent runner (black box).
        store: Project item store.
        work_items: Work item records.
        gateway: Issue/PR gateway.
        artifacts: Durable artifact storage.
        notifier: Admin notification channel.
        emitter: Workflow event sink.
        prompt_builder: Builds prompts from the run context.
    """

    def __init__(
        self,
        service: WorkflowService,
        runner: AgentRunner,
        store: ProjectItemStore,
        work_items: WorkItemRepository,
        gateway: GitHubClient,
        artifacts: ArtifactStore,
        notifier: Optional[Notifier] = None,
        emitter: Optional[EventEmitter] = None,
        prompt_builder: Optional[PromptBuilder] = None,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.service = service
        self.runner = runner
        self.store = store
        self.work_items = work_items
        self.gateway = gateway
        self.artifacts = artifacts
        self.notifier = notifier or NullNotifier()
        self.emitter = emitter or NullEventEmitter()
        self.prompt_builder = prompt_builder or DefaultPromptBuilder()
        self.monotonic = monotonic

    # ---- Entry points

    async def run_item(self, workflow: str, issue_number: int) -> AgentRunOutcome:
        """Run ``workflow``'s agent for one issue.

        Failures are reported in the outcome, as an AGENT_RUN_FAILED event
        and as an agent error notification.
        """
        definition = WORKFLOWS.get(workflow)
        if definition is None:
            return AgentRunOutcome(
                success=False,
                issue_number=issue_number,
                workflow=workflow,
                error=f"Unknown workflow: {workflow}",
            )

        item = await self.store.find_item_by_issue_number(issue_number)
        if item is None:
            return AgentRunOutcome(
                success=False,
                issue_number=issue_number,
                workflow=workflow,
                error=f"Issue #{issue_number} not found in project",
            )
        if item.status != definition.status:
            current = item.status.value if item.status else "None"
            return AgentRunOutcome(
                success=False,
                issue_number=issue_number,
                workflow=workflow,
                error=f"Item is in {current}, not {definition.status.value}",
            )

        mode = mode_for_review_status(item.review_status)
        logger.info(
            "Starting agent run",
            extra={"issue_number": issue_number, "workflow": workflow, "mode": mode},
        )
        await self._emit(
            EventType.AGENT_RUN_STARTED,
            issue_number,
            f"{definition.agent_name} started ({mode})",
            workflow=workflow,
            mode=mode,
        )

        start = self.monotonic()
        try:
            outcome = await self._run(definition, item, mode)
        except Exception as exc:
            if not isinstance(exc, (AgentRunError, InvalidAgentOutputError)):
                logger.exception(
                    "Agent run failed",
                    extra={"issue_number": issue_number, "workflow": workflow},
                )
            outcome = AgentRunOutcome(
                success=False,
                issue_number=issue_number,
                workflow=workflow,
                mode=mode,
                error=str(exc) or type(exc).__name__,
            )
        outcome.duration_seconds = self.monotonic() - start

        if outcome.success:
            await self._emit(
                EventType.AGENT_RUN_COMPLETED,
                issue_number,
                f"{definition.agent_name} completed ({outcome.kind})",
                actor="agent",
                workflow=workflow,
                mode=mode,
                kind=outcome.kind,
                duration_seconds=outcome.duration_seconds,
            )
        else:
            logger.error(
                "Agent run did not complete",
                extra={"issue_number": issue_number, "workflow": workflow, "error": outcome.error},
            )
            await self._emit(
                EventType.AGENT_RUN_FAILED,
                issue_number,
                f"{definition.agent_name} failed",
                actor="agent",
                workflow=workflow,
                mode=mode,
                error=outcome.error,
                duration_seconds=outcome.duration_seconds,
            )
            await self._notify(
                "agent_error",
                issue_number,
                self.notifier.notify_agent_error(
                    definition.phase_label,
                    item.title or f"Issue #{issue_number}",
                    issue_number,
                    outcome.error or "Unknown error",
                ),
            )
        return outcome

    async def run_batch(self, workflow: str, limit: Optional[int] = None) -> BatchRunResult:
        """Run ``workflow`` for every eligible item.

        Each item runs independently; one failure does not stop the batch.
        """
        definition = WORKFLOWS.get(workflow)
        if definition is None:
            raise ValueError(f"Unknown workflow: {workflow}")

        items = await self.store.list_items(status=definition.status)
        eligible = [i for i in items if i.issue_number is not None and is_runnable(definition, i)]
        if limit is not None:
            eligible = eligible[:limit]

        result = BatchRunResult(workflow=workflow, total=len(eligible))
        for item in eligible:
            try:
                outcome = await self.run_item(workflow, item.issue_number)
            except Exception as exc:
                logger.exception(
                    "Batch item failed",
                    extra={"issue_number": item.issue_number, "workflow": workflow},
                )
                outcome = AgentRunOutcome(
                    success=False,
                    issue_number=item.issue_number,
                    workflow=workflow,
                    error=str(exc),
                )
            result.outcomes.append(outcome)
            if outcome.success:
                result.succeeded += 1
            else:
                result.failed += 1

        logger.info(
            "Agent batch finished",
            extra={
                "workflow": workflow,
                "total": result.total,
                "succeeded": result.succeeded,
                "failed": result.failed,
            },
        )
        return result

    # ---- Run dispatch

    async def _run(self, definition: WorkflowDefinition, item: ProjectItem, mode: str) -> AgentRunOutcome:
        issue_number = item.issue_number
        issue = await self.gateway.get_issue(issue_number)
        comments = [c.body for c in await self.gateway.get_issue_comments(issue_number)]
        record = await self.work_items.find_by_issue_number(issue_number)

        context = PromptContext(
            workflow=definition.name,
            mode=mode,
            issue_number=issue_number,
            title=(issue.title if issue else "") or item.title,
            body=(issue.body if issue else "") or item.body,
            comments=comments,
        )
        if mode == MODE_FEEDBACK and definition.design_type:
            context.existing_document = await self.artifacts.read(issue_number, definition.design_type)
        if mode == MODE_CLARIFICATION and record and record.artifacts.clarification:
            context.clarification_answer = record.artifacts.clarification.answer
        if mode == MODE_POST_SELECTION and record and record.artifacts.decision:
            context.selection = record.artifacts.decision.selection

        if definition.name == "implementation":
            return await self._run_implementation(definition, item, record, context, comments)
        if definition.name == "pr-review":
            return await self._run_pr_review(definition, item, context)

        result, output = await self._invoke(definition, context)
        if output.kind == AgentOutputKind.CLARIFICATION:
            return await self._handle_clarification(definition, item, mode, output)
        if definition.design_type is None:
            return await self._handle_investigation(definition, item, mode, output)
        return await self._handle_design(definition, item, mode, result, output)

    async def _invoke(
        self,
        definition: WorkflowDefinition,
        context: PromptContext,
        branch: Optional[str] = None,
    ) -> Tuple[AgentRunResult, StructuredAgentOutput]:
        request = AgentRunRequest(
            workflow=definition.name,
            prompt=self.prompt_builder.build(context),
            mode=context.mode,
            issue_number=context.issue_number,
            allow_writes=definition.name == "implementation",
            branch=branch,
        )
        result = await self.runner.run(request)
        if not result.success:
            raise AgentRunError(result.error or "Agent run failed")
        output = classify_structured_output(result.structured_output, agent_id=definition.name)
        return result, output

    # ---- Clarification

    async def _handle_clarification(
        self,
        definition: WorkflowDefinition,
        item: ProjectItem,
        mode: str,
        output: StructuredAgentOutput,
    ) -> AgentRunOutcome:
        issue_number = item.issue_number
        body = format_clarification_comment(output.clarification, definition.agent_prefix)

        await self.store.add_issue_comment(issue_number, body)
        await self.artifacts.save(issue_number, "clarification", body)
        clarification = ClarificationRecord(questions=output.clarification, raw_content=body)

        def _store(record: WorkItemRecord) -> None:
            record.artifacts.clarification = clarification

        await self._update_record(issue_number, _store)
        await self._require(
            await self.service.update_review_status(
                issue_number, ReviewStatus.WAITING_FOR_CLARIFICATION, actor="agent"
            )
        )

        await self._notify(
            "needs_clarification",
            item.issue_number,
            self.notifier.notify_needs_clarification(
                definition.phase_label,
                item.title,
                issue_number,
                output.clarification[0].question,
                item.type,
            ),
        )
        return AgentRunOutcome(
            success=True,
            issue_number=issue_number,
            workflow=definition.name,
            mode=mode,
            kind="clarification",
        )

    # ---- Decisions

    async def _persist_decision(self, definition: WorkflowDefinition, item: ProjectItem, decision: Decision) -> None:
        issue_number = item.issue_number
        body = f"{definition.agent_prefix}\n\n{format_decision_comment(decision)}"
        await self.artifacts.save(issue_number, "decision", body)
        await self.store.add_issue_comment(issue_number, body)

        def _store(record: WorkItemRecord) -> None:
            record.artifacts.decision = decision

        await self._update_record(issue_number, _store)

    async def _flip_to_decision(
        self,
        definition: WorkflowDefinition,
        item: ProjectItem,
        mode: str,
        decision: Decision,
    ) -> None:
        await self._require(
            await self.service.update_review_status(
                item.issue_number, ReviewStatus.WAITING_FOR_DECISION, actor="agent"
            )
        )
        await self._notify(
            "decision_needed",
            item.issue_number,
            self.notifier.notify_decision_needed(
                definition.phase_label,
                item.title,
                item.issue_number,
                decision.context,
                len(decision.options),
                item.type,
                is_revision=mode == MODE_FEEDBACK,
            ),
        )

    async def _handle_investigation(
        self,
        definition: WorkflowDefinition,
        item: ProjectItem,
        mode: str,
        output: StructuredAgentOutput,
    ) -> AgentRunOutcome:
        if output.decision is None:
            raise AgentRunError("Investigation output has no fix options")

        await self._persist_decision(definition, item, output.decision)
        await self._flip_to_decision(definition, item, mode, output.decision)
        return AgentRunOutcome(
            success=True,
            issue_number=item.issue_number,
            workflow=definition.name,
            mode=mode,
            kind="decision",
        )

    # ---- Design documents

    async def _handle_design(
        self,
        definition: WorkflowDefinition,
        item: ProjectItem,
        mode: str,
        result: AgentRunResult,
        output: StructuredAgentOutput,
    ) -> AgentRunOutcome:
        issue_number = item.issue_number
        design_type = definition.design_type
        document = output.document or extract_markdown(result.content)

        if output.kind == AgentOutputKind.DECISION and output.decision is not None:
            pr_number = None
            if document:
                pr_number, _ = await self._publish_design(definition, item, document, output)
            await self._persist_decision(definition, item, output.decision)
            await self._flip_to_decision(definition, item, mode, output.decision)
            return AgentRunOutcome(
                success=True,
                issue_number=issue_number,
                workflow=definition.name,
                mode=mode,
                kind="decision",
                pr_number=pr_number,
            )

        if not document:
            raise AgentRunError(f"Agent output contained no {DESIGN_TYPE_LABELS[design_type]} document")

        pr_number, is_revision = await self._publish_design(definition, item, document, output)
        if output.kind == AgentOutputKind.PHASES and len(output.phases) >= MIN_PHASES:
            await self._record_phases(issue_number, output.phases)

        await self._require(
            await self.service.update_review_status(
                issue_number, ReviewStatus.WAITING_FOR_REVIEW, actor="agent"
            )
        )
        await self._notify(
            "design_pr_ready",
            item.issue_number,
            self.notifier.notify_design_pr_ready(
                definition.phase_label,
                item.title,
                issue_number,
                pr_number,
                is_revision=is_revision,
                item_type=item.type,
            ),
        )
        return AgentRunOutcome(
            success=True,
            issue_number=issue_number,
            workflow=definition.name,
            mode=mode,
            kind="document",
            pr_number=pr_number,
        )

    async def _publish_design(
        self,
        definition: WorkflowDefinition,
        item: ProjectItem,
        document: str,
        output: StructuredAgentOutput,
    ) -> Tuple[int, bool]:
        """Persist a design document, commit it and open or update its PR.

        Returns:
            (pr_number, is_revision)
        """
        issue_number = item.issue_number
        design_type = definition.design_type
        label = DESIGN_TYPE_LABELS[design_type]

        await self.artifacts.save(issue_number, design_type, document)

        base = await self.gateway.get_default_branch()
        branch = design_branch_name(issue_number, design_type)
        if not await self.store.branch_exists(branch):
            await self.store.create_branch(branch, base)
        await self.gateway.create_or_update_file(
            design_doc_path(issue_number, design_type),
            document,
            f"docs: {DESIGN_COMMIT_DOC_TYPES[design_type]} for issue #{issue_number}",
            branch,
        )

        existing = await self.gateway.find_open_pr_for_branch(branch)
        if existing is not None:
            note = output.comment or f"Updated the {label.lower()} document."
            await self.gateway.add_pr_comment(existing, f"{definition.agent_prefix}\n\n{note}")
            return existing, True

        created = await self.store.create_pull_request(
            branch,
            base,
            f"docs: {label} for #{issue_number} - {item.title}",
            f"{definition.agent_prefix}\n\n{output.comment or label + ' document.'}\n\nPart of #{issue_number}",
        )
        logger.info(
            "Design PR created",
            extra={"issue_number": issue_number, "pr_number": created.number, "design_type": design_type},
        )
        return created.number, False

    async def _record_phases(self, issue_number: int, phases: List[ImplementationPhase]) -> None:
        comments = [c.body for c in await self.gateway.get_issue_comments(issue_number)]
        if not has_phase_comment(comments):
            await self.store.add_issue_comment(issue_number, format_phases_comment(phases))

        def _store(record: WorkItemRecord) -> None:
            record.artifacts.phases = list(phases)

        await self._update_record(issue_number, _store)

    # ---- Implementation

    async def _run_implementation(
        self,
        definition: WorkflowDefinition,
        item: ProjectItem,
        record: Optional[WorkItemRecord],
        context: PromptContext,
        comments: List[str],
    ) -> AgentRunOutcome:
        issue_number = item.issue_number
        mode = context.mode
        is_bug = item.type == ItemType.BUG
        default_branch = await self.gateway.get_default_branch()

        phases: List[ImplementationPhase] = list(record.artifacts.phases) if record else []
        if not phases:
            phases = parse_phases_from_comments(comments) or []

        current = total = None
        if len(phases) >= MIN_PHASES:
            parsed = parse_phase_string(item.implementation_phase)
            if parsed is None:
                current, total = 1, len(phases)
                await self._require(
                    await self.service.advance_implementation_phase(
                        issue_number, format_phase_string(current, total)
                    )
                )
            else:
                current, total = parsed
            context.phase = phases[min(current, len(phases)) - 1]
            context.total_phases = total

            base = task_branch_name(issue_number)
            if not await self.store.branch_exists(base):
                await self.store.create_branch(base, default_branch)

            def _store_task_branch(record: WorkItemRecord) -> None:
                record.artifacts.task_branch = base

            await self._update_record(issue_number, _store_task_branch)
            head = phase_branch_name(issue_number, current)
        else:
            base = default_branch
            head = implementation_branch_name(issue_number, item.title, is_bug=is_bug)

        existing_pr = None
        if mode != MODE_NEW:
            # The open PR's branch is authoritative; titles may have changed.
            ref = await self.gateway.find_open_pr_for_issue(issue_number)
            if ref is not None:
                existing_pr, head = ref.pr_number, ref.branch_name
        if existing_pr is None:
            existing_pr = await self.gateway.find_open_pr_for_branch(head)
        if existing_pr is None and not await self.store.branch_exists(head):
            await self.store.create_branch(head, base)

        result, output = await self._invoke(definition, context, branch=head)
        if output.kind == AgentOutputKind.CLARIFICATION:
            return await self._handle_clarification(definition, item, mode, output)

        summary = output.pr_summary or output.comment or result.content.strip()
        if existing_pr is not None:
            pr_number, is_revision = existing_pr, True
            await self.gateway.add_pr_comment(pr_number, f"{definition.agent_prefix}\n\n{summary}")
        else:
            prefix = "fix" if is_bug else "feat"
            title = f"{prefix}: {item.title}"
            if current is not None:
                title += f" (phase {current}/{total})"
            closing = f"Part of #{issue_number}" if current is not None else f"Closes #{issue_number}"
            created = await self.store.create_pull_request(
                head,
                base,
                title,
                f"{definition.agent_prefix}\n\n{summary}\n\n{closing}",
            )
            pr_number, is_revision = created.number, False
            logger.info(
                "Implementation PR created",
                extra={"issue_number": issue_number, "pr_number": pr_number, "base": base, "head": head},
            )

        await self._require(
            await self.service.advance_status(issue_number, WorkItemStatus.PR_REVIEW, actor="agent")
        )
        await self._require(
            await self.service.update_review_status(
                issue_number, ReviewStatus.WAITING_FOR_REVIEW, actor="agent"
            )
        )
        await self._notify(
            "pr_ready",
            item.issue_number,
            self.notifier.notify_pr_ready(
                item.title,
                issue_number,
                pr_number,
                is_revision=is_revision,
                item_type=item.type,
                summary=summary,
            ),
        )
        return AgentRunOutcome(
            success=True,
            issue_number=issue_number,
            workflow=definition.name,
            mode=mode,
            kind="implementation",
            pr_number=pr_number,
        )

    # ---- PR review

    async def _run_pr_review(
        self,
        definition: WorkflowDefinition,
        item: ProjectItem,
        context: PromptContext,
    ) -> AgentRunOutcome:
        issue_number = item.issue_number
        ref = await self.gateway.find_open_pr_for_issue(issue_number)
        if ref is None:
            raise AgentRunError(f"No open PR found for issue #{issue_number}")
        pr = await self.gateway.get_pr_details(ref.pr_number)
        if pr is not None:
            context.pr_diff_summary = f"PR #{pr.number}: {pr.title}\n\n{pr.body}"

        result, output = await self._invoke(definition, context, branch=ref.branch_name)
        verdict = output.review_decision or parse_review_decision(result.content)
        if verdict is None:
            raise AgentRunError("PR review output has no decision")

        approved = verdict == REVIEW_APPROVED
        summary = output.comment or result.content.strip()
        await self.gateway.submit_pr_review(
            ref.pr_number,
            "APPROVE" if approved else "REQUEST_CHANGES",
            f"{definition.agent_prefix}\n\n{summary}",
        )

        if approved:
            message = self._commit_message(output.raw, ref.pr_number, pr.title if pr else "", issue_number)

            def _store(record: WorkItemRecord) -> None:
                record.artifacts.commit_message = message

            await self._update_record(issue_number, _store)
            await self._require(
                await self.service.update_review_status(issue_number, ReviewStatus.APPROVED, actor="agent")
            )
        else:
            await self._require(await self.service.request_changes_on_pr(issue_number, actor="agent"))

        await self._notify(
            "pr_review_complete",
            item.issue_number,
            self.notifier.notify_pr_review_complete(
                item.title,
                issue_number,
                ref.pr_number,
                approved,
                summary,
                item.type,
            ),
        )
        return AgentRunOutcome(
            success=True,
            issue_number=issue_number,
            workflow=definition.name,
            mode=context.mode,
            kind="review",
            pr_number=ref.pr_number,
        )

    @staticmethod
    def _commit_message(raw: Dict[str, Any], pr_number: int, pr_title: str, issue_number: int) -> CommitMessage:
        proposed = raw.get("commitMessage") if isinstance(raw, dict) else None
        if isinstance(proposed, dict) and proposed.get("title"):
            return CommitMessage(
                pr_number=pr_number,
                title=str(proposed["title"]),
                body=str(proposed.get("body") or ""),
            )
        return CommitMessage(
            pr_number=pr_number,
            title=pr_title or f"Implement #{issue_number}",
            body=f"Part of #{issue_number}",
        )

    # ---- Helpers

    @staticmethod
    async def _require(result: Any) -> None:
        if not result.success:
            raise AgentRunError(result.error or "Workflow update failed")

    async def _update_record(self, issue_number: int, mutate: Callable[[WorkItemRecord], None]) -> None:
        record = await self.work_items.find_by_issue_number(issue_number)
        if record is None:
            logger.warning("No work item record to update", extra={"issue_number": issue_number})
            return
        mutate(record)
        record.updated_at = self.service.clock()
        await self.work_items.save(record)

    async def _notify(
        self,
        kind: str,
        issue_number: int,
        notification: Awaitable[NotificationResult],
    ) -> None:
        try:
            result = await notification
        except Exception as exc:
            result = NotificationResult(success=False, error=str(exc))
        if result.success:
            return
        logger.warning(
            "Notification not delivered",
            extra={"kind": kind, "issue_number": issue_number, "error": result.error},
        )
        await self._emit(
            EventType.NOTIFICATION_FAILED,
            issue_number,
            f"Notification {kind} failed",
            kind=kind,
            error=result.error,
        )

    async def _emit(
        self,
        event_type: EventType,
        issue_number: int,
        description: str,
        actor: str = "system",
        **details: Any,
    ) -> None:
        try:
            await self.emitter.emit(
                WorkflowEvent(
                    event_type=event_type,
                    issue_number=issue_number,
                    description=description,
                    actor=actor,
                    timestamp=self.service.clock(),
                    details=details,
                )
            )
        except Exception as exc:
            logger.warning(
                "Failed to emit agent event",
                extra={"event_type": event_type.value, "issue_number": issue_number, "error": str(exc)},
            )
