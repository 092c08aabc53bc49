"""Decision selection and clarification answers.

A decision is read from the work item record first, then from the durable
artifact store, and only then parsed from the latest decision comment on
the issue. Routing is validated before anything is written, so a bad
selection leaves no comment, no saved selection and no status change.
"""

import logging
from typing import List, Optional, Tuple

from src.devpipeline.events.models import EventType
from src.devpipeline.parsing.clarification import (
    OTHER_OPTION,
    format_answer_comment,
    is_clarification_comment,
    parse_clarification_comment,
)
from src.devpipeline.parsing.decision import (
    CUSTOM_OPTION_ID,
    format_selection_comment,
    is_decision_comment,
    parse_decision,
    validate_decision_token,
)
from src.devpipeline.state.machine import DECISION_REVIEW_STATUSES
from src.devpipeline.state.models import (
    Decision,
    DecisionOption,
    DecisionSelection,
    ItemType,
    ProjectItem,
    ReviewStatus,
    WorkItemRecord,
    WorkItemStatus,
)
from src.devpipeline.workflow.base import (
    WorkflowServiceBase,
    not_found_error,
    service_operation,
)
from src.devpipeline.workflow.results import ClarificationAnswerResult, DecisionResult


logger = logging.getLogger(__name__)

BUG_DECISION_TYPE = "bug-fix"


class RoutingError(ValueError):
    """Raised when a selection cannot be mapped to a target status."""


def resolve_routing(
    decision: Decision,
    selection: DecisionSelection,
    option: Optional[DecisionOption],
) -> Optional[WorkItemStatus]:
    """Compute the status a selection routes to.

    Returns:
        The target status, or None when the decision has no routing config
        or continues in the current phase.

    Raises:
        RoutingError: If routing is configured but the selection cannot be
            mapped to a known status.
    """
    routing = decision.routing
    if routing is None or routing.continue_after_selection:
        return None

    if selection.selected_option_id == CUSTOM_OPTION_ID:
        if not routing.custom_destination_status_map:
            raise RoutingError(
                "Routing error: custom destination options are configured "
                "but no customDestinationStatusMap in routing config"
            )
        destination = selection.custom_destination
        if not destination:
            raise RoutingError("Routing error: custom solution selected but no destination chosen")
        target = routing.custom_destination_status_map.get(destination)
        if not target:
            raise RoutingError(f'Routing error: custom destination "{destination}" not found in routing config')
    else:
        if option is None:
            return None
        value = option.metadata.get(routing.metadata_key)
        if not isinstance(value, str):
            raise RoutingError(
                f'Routing error: option "{option.id}" has no "{routing.metadata_key}" metadata'
            )
        target = routing.status_map.get(value)
        if not target:
            raise RoutingError(f'Routing error: metadata value "{value}" not found in routing statusMap')

    try:
        return WorkItemStatus(target)
    except ValueError:
        raise RoutingError(f'Routing error: "{target}" is not a known status') from None


class DecisionOperations(WorkflowServiceBase):
    """Admin answers to agent decisions and clarification questions."""

    async def find_decision_item(self, issue_number: int) -> Tuple[Optional[ProjectItem], Optional[str]]:
        """Resolve an item that is ready to accept a decision.

        Returns:
            (item, None) when a decision may be submitted, otherwise
            (None, error).
        """
        item = await self._find_item(issue_number)
        if item is None:
            return None, not_found_error(issue_number)
        if item.review_status not in DECISION_REVIEW_STATUSES:
            current = item.review_status.value if item.review_status else "None"
            return None, f"Item is not waiting for a decision (current review status: {current})"
        return item, None

    async def load_decision(self, issue_number: int) -> Optional[Decision]:
        """Load the pending decision for an issue.

        Checks the work item record, then the artifact store, then the most
        recent decision comment.
        """
        record = await self.work_items.find_by_issue_number(issue_number)
        if record is not None and record.artifacts.decision is not None:
            return record.artifacts.decision

        stored = await self.artifacts.read(issue_number, "decision")
        if stored:
            decision = parse_decision(stored)
            if decision is not None:
                return decision

        comments = await self.gateway.get_issue_comments(issue_number)
        for comment in reversed(comments):
            if is_decision_comment(comment.body):
                return parse_decision(comment.body)
        return None

    @service_operation(DecisionResult)
    async def submit_decision(
        self,
        issue_number: int,
        selection: DecisionSelection,
        token: Optional[str] = None,
    ) -> DecisionResult:
        """Record an admin's decision and route the item accordingly.

        With routing configured the item moves to the mapped status. A
        decision that continues after selection stays in its phase with
        Decision Submitted. Without routing the review becomes Approved. A
        decision that already carries a selection is rejected.

        Args:
            issue_number: Tracker issue of the item.
            selection: The chosen option, or a custom solution.
            token: Decision link token, checked when a secret is configured.
        """
        if self.decision_token_secret and not validate_decision_token(
            issue_number, token or "", self.decision_token_secret
        ):
            return DecisionResult(success=False, error="Invalid or expired token")
        if not selection.selected_option_id and not selection.choose_recommended:
            return DecisionResult(success=False, error="No option selected")
        if selection.selected_option_id == CUSTOM_OPTION_ID and not (selection.custom_solution or "").strip():
            return DecisionResult(success=False, error="Custom solution text is required")

        item, error = await self.find_decision_item(issue_number)
        if item is None:
            return DecisionResult(success=False, error=error)

        decision = await self.load_decision(issue_number)
        if decision is None:
            return DecisionResult(success=False, error="Could not find decision")
        if decision.selection is not None:
            return DecisionResult(success=False, error="Decision already submitted")

        if selection.choose_recommended:
            recommended = decision.recommended_option()
            if recommended is None:
                return DecisionResult(success=False, error="No recommended option found")
            selection = selection.model_copy(update={"selected_option_id": recommended.id})

        option = None
        if selection.selected_option_id != CUSTOM_OPTION_ID:
            option = decision.find_option(selection.selected_option_id or "")
            if option is None:
                return DecisionResult(
                    success=False,
                    error=f"Option {selection.selected_option_id} not found",
                )

        try:
            routed_to = resolve_routing(decision, selection, option)
        except RoutingError as exc:
            return DecisionResult(success=False, error=str(exc))

        title = "Custom Solution" if option is None else option.title
        return await self._apply_selection(item, decision, selection, title, routed_to)

    @service_operation(DecisionResult)
    async def choose_recommended_option(self, issue_number: int) -> DecisionResult:
        """Select the recommended option on behalf of an authenticated admin."""
        item, error = await self.find_decision_item(issue_number)
        if item is None:
            return DecisionResult(success=False, error=error)

        decision = await self.load_decision(issue_number)
        if decision is None:
            return DecisionResult(success=False, error="Could not find decision")
        if decision.selection is not None:
            return DecisionResult(success=False, error="Decision already submitted")

        recommended = decision.recommended_option()
        if recommended is None:
            return DecisionResult(success=False, error="No recommended option found")

        selection = DecisionSelection(choose_recommended=True, selected_option_id=recommended.id)
        try:
            routed_to = resolve_routing(decision, selection, recommended)
        except RoutingError as exc:
            return DecisionResult(success=False, error=str(exc))

        return await self._apply_selection(item, decision, selection, recommended.title, routed_to)

    async def _apply_selection(
        self,
        item: ProjectItem,
        decision: Decision,
        selection: DecisionSelection,
        option_title: str,
        routed_to: Optional[WorkItemStatus],
    ) -> DecisionResult:
        issue_number = item.issue_number
        await self.store.add_issue_comment(
            issue_number,
            format_selection_comment(selection, decision.options),
        )

        def _save_selection(record: WorkItemRecord) -> None:
            stored = record.artifacts.decision or decision
            record.artifacts.decision = stored.model_copy(update={"selection": selection})

        await self._update_record(issue_number, _save_selection)

        review_status: Optional[ReviewStatus] = None
        if routed_to is not None:
            outcome = await self.submit_decision_routing(issue_number, target_status=routed_to)
        else:
            continues = bool(decision.routing and decision.routing.continue_after_selection)
            review_status = ReviewStatus.DECISION_SUBMITTED if continues else ReviewStatus.APPROVED
            outcome = await self.submit_decision_routing(issue_number, review_status=review_status)
        if not outcome.success:
            return DecisionResult(success=False, error=outcome.error)

        logger.info(
            "Decision submitted",
            extra={
                "issue_number": issue_number,
                "selected_option_id": selection.selected_option_id,
                "routed_to": routed_to.value if routed_to else None,
            },
        )
        await self._emit(
            EventType.DECISION_SUBMITTED,
            issue_number,
            f"Selected {option_title}",
            actor="admin",
            selected_option_id=selection.selected_option_id,
            routed_to=routed_to.value if routed_to else None,
        )

        item_type = ItemType.BUG if decision.decision_type == BUG_DECISION_TYPE else item.type
        await self._notify(
            self.notifier.notify_decision_submitted(
                item.title,
                issue_number,
                option_title,
                routed_to.value if routed_to else None,
                item_type,
            ),
            "decision_submitted",
            issue_number,
        )
        return DecisionResult(
            success=True,
            routed_to=routed_to,
            selected_option_id=selection.selected_option_id,
            selected_option_title=option_title,
            review_status=review_status,
        )

    # ---- Clarifications

    @service_operation(ClarificationAnswerResult)
    async def submit_clarification_answer(
        self,
        issue_number: int,
        answer: str,
        custom_text: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> ClarificationAnswerResult:
        """Post an admin's answer to the pending clarification.

        The answer is posted as a comment and saved on the clarification
        record, then Review Status becomes Clarification Received.
        """
        if not (answer or "").strip():
            return ClarificationAnswerResult(success=False, error="Answer is required")

        item = await self._find_item(issue_number)
        if item is None:
            return ClarificationAnswerResult(success=False, error=not_found_error(issue_number))
        if item.review_status != ReviewStatus.WAITING_FOR_CLARIFICATION:
            current = item.review_status.value if item.review_status else "None"
            return ClarificationAnswerResult(
                success=False,
                error=f"Item is not waiting for clarification (current review status: {current})",
            )

        question = await self._pending_question(issue_number)
        comment = await self.store.add_issue_comment(
            issue_number,
            format_answer_comment(question, answer, custom_text, notes),
        )
        response = custom_text if answer == OTHER_OPTION and custom_text else answer

        def _save_answer(record: WorkItemRecord) -> None:
            if record.artifacts.clarification is not None:
                record.artifacts.clarification.answer = response

        await self._update_record(issue_number, _save_answer)

        result = await self.mark_clarification_received(issue_number)
        if not result.success:
            return ClarificationAnswerResult(success=False, error=result.error)

        await self._emit(
            EventType.CLARIFICATION_ANSWERED,
            issue_number,
            "Clarification answered",
            actor="admin",
        )
        return ClarificationAnswerResult(success=True, comment_id=comment.id)

    async def _pending_question(self, issue_number: int) -> Optional[str]:
        record = await self.work_items.find_by_issue_number(issue_number)
        if record is not None and record.artifacts.clarification is not None:
            questions = record.artifacts.clarification.questions
            if questions:
                return questions[0].question

        comments = await self.gateway.get_issue_comments(issue_number)
        bodies: List[str] = [c.body for c in comments if is_clarification_comment(c.body)]
        if not bodies:
            return None
        parsed = parse_clarification_comment(bodies[-1])
        return parsed[0].question if parsed else None
