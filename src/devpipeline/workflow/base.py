"""Shared plumbing for the workflow service.

Holds the injected collaborators and the helpers every operation uses:
item lookup, status writes that keep the work item record in step with
the project item store, event emission and notification delivery. Event
and notification failures are logged and never fail a transition that has
already been written.
"""

import functools
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, Type, TypeVar

from src.devpipeline.artifacts.store import ArtifactStore
from src.devpipeline.events.emitter import EventEmitter, NullEventEmitter
from src.devpipeline.events.models import EventType, WorkflowEvent
from src.devpipeline.github.client import GitHubClient
from src.devpipeline.notifications.notifier import (
    NotificationResult,
    Notifier,
    NullNotifier,
)
from src.devpipeline.state.models import (
    IntakeStatus,
    ItemType,
    ProjectItem,
    ReviewStatus,
    WorkItemRecord,
    WorkItemStatus,
)
from src.devpipeline.state.store import (
    IntakeRepository,
    ProjectItemStore,
    WorkItemRepository,
)
from src.devpipeline.workflow.results import ServiceResult


logger = logging.getLogger(__name__)

R = TypeVar("R", bound=ServiceResult)

DEFAULT_UNDO_WINDOW_SECONDS = 300


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def service_operation(result_type: Type[R]) -> Callable[..., Callable[..., Awaitable[R]]]:
    """Convert exceptions escaping a service operation into a failed result.

    Gateway, repository and store errors are logged with the operation name
    and surfaced as ``result_type(success=False, error=...)``.

    Args:
        result_type: The result model the operation returns.
    """

    def decorator(func: Callable[..., Awaitable[R]]) -> Callable[..., Awaitable[R]]:
        @functools.wraps(func)
        async def wrapper(self: Any, *args: Any, **kwargs: Any) -> R:
            try:
                return await func(self, *args, **kwargs)
            except Exception as exc:
                logger.exception(
                    "Workflow operation failed",
                    extra={"operation": func.__name__, "error": str(exc)},
                )
                return result_type(success=False, error=str(exc) or type(exc).__name__)

        return wrapper

    return decorator


def not_found_error(issue_number: int) -> str:
    return f"Issue #{issue_number} not found in project"


class WorkflowServiceBase:
    """Collaborators and helpers shared by the workflow operation groups.

    Attributes:
        store: Project item store holding Status, Review Status and
            Implementation Phase.
        work_items: Work item records with their artifacts.
        intake: Feature request and bug report records.
        gateway: Issue/PR gateway for reads the store does not pass through.
        artifacts: Durable storage for design documents and decisions.
        notifier: Admin notification channel.
        emitter: Workflow event sink.
        clock: Returns the current UTC time.
        undo_window_seconds: How long after a change an undo is accepted.
        decision_token_secret: Secret for decision links. Token checks are
            skipped when empty.
    """

    def __init__(
        self,
        store: ProjectItemStore,
        work_items: WorkItemRepository,
        intake: IntakeRepository,
        gateway: GitHubClient,
        artifacts: ArtifactStore,
        notifier: Optional[Notifier] = None,
        emitter: Optional[EventEmitter] = None,
        clock: Callable[[], datetime] = _utc_now,
        undo_window_seconds: int = DEFAULT_UNDO_WINDOW_SECONDS,
        decision_token_secret: str = "",
    ):
        self.store = store
        self.work_items = work_items
        self.intake = intake
        self.gateway = gateway
        self.artifacts = artifacts
        self.notifier = notifier or NullNotifier()
        self.emitter = emitter or NullEventEmitter()
        self.clock = clock
        self.undo_window_seconds = undo_window_seconds
        self.decision_token_secret = decision_token_secret

    # ---- Lookup

    async def _find_item(self, issue_number: int) -> Optional[ProjectItem]:
        return await self.store.find_item_by_issue_number(issue_number)

    async def _issue_title(self, issue_number: int, item: Optional[ProjectItem] = None) -> str:
        if item is not None and item.title:
            return item.title
        issue = await self.gateway.get_issue(issue_number)
        return issue.title if issue and issue.title else f"Issue #{issue_number}"

    async def _update_record(
        self,
        issue_number: int,
        mutate: Callable[[WorkItemRecord], None],
    ) -> Optional[WorkItemRecord]:
        """Re-fetch the record for an issue, apply ``mutate`` and save it.

        The record is read immediately before the write so that status
        fields written by the store in the meantime are not overwritten.

        Returns:
            The saved record, or None if the issue has no record.
        """
        record = await self.work_items.find_by_issue_number(issue_number)
        if record is None:
            return None
        mutate(record)
        record.updated_at = self.clock()
        return await self.work_items.save(record)

    async def _sync_record_status(self, item: ProjectItem) -> None:
        """Mirror the store's status fields into the work item record.

        A no-op when the store is the record itself.
        """
        if item.issue_number is None:
            return
        current = await self.store.get_item(item.id)
        if current is None:
            return
        record = await self.work_items.find_by_issue_number(item.issue_number)
        if record is None:
            return
        if (
            record.status == current.status
            and record.review_status == current.review_status
            and record.implementation_phase == current.implementation_phase
        ):
            return
        record.status = current.status
        record.review_status = current.review_status
        record.implementation_phase = current.implementation_phase
        record.updated_at = self.clock()
        await self.work_items.save(record)

    async def _update_intake_status(
        self,
        item: ProjectItem,
        feature_status: IntakeStatus,
        bug_status: IntakeStatus,
    ) -> bool:
        """Set the intake record behind an item, returning whether it existed."""
        if item.issue_number is None:
            return False
        record = await self.work_items.find_by_issue_number(item.issue_number)
        if record is None or record.source_ref is None:
            intake = await self.intake.find_by_issue_number(item.issue_number)
            if intake is None:
                return False
            collection, record_id, item_type = intake.collection, intake.id, intake.item_type
        else:
            collection, record_id, item_type = record.source_ref.collection, record.source_ref.id, record.type
        existing = await self.intake.get(collection, record_id)
        if existing is None:
            return False
        status = bug_status if item_type == ItemType.BUG else feature_status
        await self.intake.update_status(collection, record_id, status)
        return True

    # ---- Status writes

    async def _set_status(
        self,
        item: ProjectItem,
        status: WorkItemStatus,
        clear_review: bool = True,
        actor: str = "system",
    ) -> None:
        """Write a new Status, clearing Review Status unless told not to."""
        previous = item.status
        await self.store.update_item_status(item.id, status)
        if clear_review:
            await self.store.clear_item_review_status(item.id)
        await self._sync_record_status(item)

        logger.info(
            "Work item status changed",
            extra={
                "issue_number": item.issue_number,
                "from_status": previous.value if previous else None,
                "to_status": status.value,
                "clear_review": clear_review,
            },
        )
        await self._emit(
            EventType.STATUS_CHANGED,
            item.issue_number,
            f"Status changed from {previous.value if previous else 'None'} to {status.value}",
            actor=actor,
            from_status=previous.value if previous else None,
            to_status=status.value,
        )
        if clear_review and item.review_status is not None:
            await self._emit(
                EventType.REVIEW_STATUS_CHANGED,
                item.issue_number,
                "Review status cleared",
                actor=actor,
                review_status=None,
            )

    async def _set_review(
        self,
        item: ProjectItem,
        review_status: Optional[ReviewStatus],
        actor: str = "system",
    ) -> None:
        """Write or clear Review Status."""
        if review_status is None:
            await self.store.clear_item_review_status(item.id)
        else:
            await self.store.update_item_review_status(item.id, review_status)
        await self._sync_record_status(item)

        description = (
            f"Review status set to {review_status.value}" if review_status else "Review status cleared"
        )
        await self._emit(
            EventType.REVIEW_STATUS_CHANGED,
            item.issue_number,
            description,
            actor=actor,
            review_status=review_status.value if review_status else None,
        )

    async def _set_phase(self, item: ProjectItem, value: Optional[str]) -> None:
        if value is None:
            await self.store.clear_implementation_phase(item.id)
        else:
            await self.store.set_implementation_phase(item.id, value)
        await self._sync_record_status(item)
        await self._emit(
            EventType.PHASE_CHANGED,
            item.issue_number,
            f"Implementation phase set to {value}" if value else "Implementation phase cleared",
            phase=value,
        )

    # ---- Side channels

    async def _emit(
        self,
        event_type: EventType,
        issue_number: Optional[int],
        description: str = "",
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
                    timestamp=self.clock(),
                    details=details,
                )
            )
        except Exception as exc:
            logger.warning(
                "Failed to emit workflow event",
                extra={
                    "event_type": event_type.value,
                    "issue_number": issue_number,
                    "error": str(exc),
                },
            )

    async def _notify(
        self,
        notification: Awaitable[NotificationResult],
        kind: str,
        issue_number: Optional[int],
    ) -> bool:
        """Await a notifier call, recording a failed delivery as an event."""
        try:
            result = await notification
        except Exception as exc:
            result = NotificationResult(success=False, error=str(exc))
        if result.success:
            return True
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
        return False

    async def _delete_branch_quietly(self, branch: Optional[str], issue_number: int) -> bool:
        """Delete a branch, logging instead of failing when it cannot be removed."""
        if not branch:
            return False
        try:
            await self.store.delete_branch(branch)
            return True
        except Exception as exc:
            logger.warning(
                "Failed to delete branch",
                extra={"issue_number": issue_number, "branch": branch, "error": str(exc)},
            )
            return False
