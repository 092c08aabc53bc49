"""Event emitter implementations for workflow observability.

- LoggingEventEmitter: Emits events as structured log entries
- CompositeEventEmitter: Emits to multiple sinks, isolating failures
- NullEventEmitter: Discards events
- HistoryEventEmitter: Appends events to the work item's audit history

Emission never fails a transition: the workflow service wraps every emit in
a guard, and the composite emitter isolates each child sink.
"""

import logging
from abc import ABC, abstractmethod
from typing import List, Optional

from src.devpipeline.events.models import EventType, WorkflowEvent
from src.devpipeline.state.models import HistoryEntry
from src.devpipeline.state.store import WorkItemRepository


logger = logging.getLogger(__name__)


class EventEmitter(ABC):
    """Abstract base class for workflow event emitters."""

    @abstractmethod
    async def emit(self, event: WorkflowEvent) -> None:
        """Emit a workflow event.

        Args:
            event: The workflow event to emit.
        """
        pass

    async def close(self) -> None:
        """Release resources. The default implementation does nothing."""
        pass


class LoggingEventEmitter(EventEmitter):
    """Writes events as structured log entries.

    Failures are logged at ERROR, notification failures at WARNING and
    everything else at INFO.
    """

    def __init__(self, logger_name: Optional[str] = None):
        self._logger = logging.getLogger(logger_name) if logger_name else logger
        self._log_level_map = {
            EventType.AGENT_RUN_FAILED: logging.ERROR,
            EventType.NOTIFICATION_FAILED: logging.WARNING,
        }

    async def emit(self, event: WorkflowEvent) -> None:
        log_level = self._log_level_map.get(event.event_type, logging.INFO)
        self._logger.log(
            log_level,
            "Workflow event: %s for #%s",
            event.event_type.value,
            event.issue_number,
            extra=event.to_log_dict(),
        )


class CompositeEventEmitter(EventEmitter):
    """Delegates to multiple child emitters.

    Each child is called independently; a failing sink is logged and the
    remaining sinks still receive the event.
    """

    def __init__(self, emitters: Optional[List[EventEmitter]] = None):
        self._emitters: List[EventEmitter] = emitters or []

    def add_emitter(self, emitter: EventEmitter) -> None:
        self._emitters.append(emitter)

    @property
    def emitters(self) -> List[EventEmitter]:
        return list(self._emitters)

    async def emit(self, event: WorkflowEvent) -> None:
        for emitter in self._emitters:
            try:
                await emitter.emit(event)
            except Exception as e:
                logger.error(
                    "Failed to emit event to %s: %s",
                    type(emitter).__name__,
                    str(e),
                    extra={
                        "emitter_type": type(emitter).__name__,
                        "event_type": event.event_type.value,
                        "issue_number": event.issue_number,
                        "error": str(e),
                    },
                )

    async def close(self) -> None:
        for emitter in self._emitters:
            try:
                await emitter.close()
            except Exception as e:
                logger.error(
                    "Failed to close emitter %s: %s",
                    type(emitter).__name__,
                    str(e),
                )


class NullEventEmitter(EventEmitter):
    """Discards all events."""

    async def emit(self, event: WorkflowEvent) -> None:
        pass


class HistoryEventEmitter(EventEmitter):
    """Appends events to the work item's audit history.

    Events without an issue number, or for issues with no work item record,
    are skipped.
    """

    def __init__(self, repository: WorkItemRepository):
        self.repository = repository

    async def emit(self, event: WorkflowEvent) -> None:
        if event.issue_number is None:
            return
        record = await self.repository.find_by_issue_number(event.issue_number)
        if record is None:
            logger.debug(
                "No work item for history entry",
                extra={"issue_number": event.issue_number, "event_type": event.event_type.value},
            )
            return
        await self.repository.append_history(
            record.id,
            HistoryEntry(
                action=event.event_type.value,
                description=event.description,
                actor=event.actor,
                timestamp=event.timestamp,
                metadata=event.details,
            ),
        )
