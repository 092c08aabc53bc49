"""Intake entry points: approving, routing and deleting intake records.

An intake record (feature request or bug report) becomes a work item when
an admin approves it: the tracker issue is created, the issue is added to
the project, and a work item record linking the two is written. Features
then wait for routing unless an initial route was given; bugs start in
Bug Investigation.
"""

import logging
import uuid
from typing import Optional

from src.devpipeline.events.models import EventType
from src.devpipeline.state.machine import (
    ROUTING_BACKLOG,
    ROUTING_DESTINATION_LABELS,
    get_routing_status_map,
    status_to_destination,
)
from src.devpipeline.state.models import (
    IntakeRecord,
    IntakeStatus,
    ItemType,
    SourceRef,
    WorkItemRecord,
    WorkItemStatus,
)
from src.devpipeline.workflow.base import WorkflowServiceBase, service_operation
from src.devpipeline.workflow.results import ApproveResult, DeleteResult, RouteResult


logger = logging.getLogger(__name__)

ISSUE_LABELS = {
    ItemType.FEATURE: ["feature"],
    ItemType.BUG: ["bug"],
}


def _issue_body(intake: IntakeRecord) -> str:
    kind = "Bug report" if intake.item_type == ItemType.BUG else "Feature request"
    description = intake.description.strip() or "_No description provided._"
    return f"{description}\n\n---\n_{kind} `{intake.id}` approved for the development pipeline._"


class IntakeOperations(WorkflowServiceBase):
    """Operations that move intake records into and out of the pipeline."""

    @service_operation(ApproveResult)
    async def approve_workflow_item(
        self,
        collection: str,
        record_id: str,
        initial_route: Optional[str] = None,
    ) -> ApproveResult:
        """Create the tracker issue for an intake record.

        A record that already carries an issue number or URL is rejected
        with "Already approved" and nothing is written.

        Args:
            collection: Intake collection of the record.
            record_id: Intake record id.
            initial_route: Optional routing destination to apply right away.

        Returns:
            The new issue, and whether the item still needs routing.
        """
        intake = await self.intake.get(collection, record_id)
        if intake is None:
            return ApproveResult(success=False, error="Item not found")
        if intake.github_issue_number or intake.github_issue_url:
            return ApproveResult(success=False, error="Already approved")

        item_type = intake.item_type
        in_flight = IntakeStatus.INVESTIGATING if item_type == ItemType.BUG else IntakeStatus.IN_PROGRESS
        await self.intake.update_status(collection, record_id, in_flight)

        try:
            issue = await self.store.create_issue(
                intake.title,
                _issue_body(intake),
                ISSUE_LABELS.get(item_type, []),
            )
            handle = await self.store.add_issue_to_project(issue.number)

            record = await self.work_items.find_by_issue_number(issue.number)
            if record is None:
                record = WorkItemRecord(id=uuid.uuid4().hex, github_issue_number=issue.number)
            record.type = item_type
            record.title = intake.title
            record.description = intake.description
            record.github_issue_url = issue.url
            record.github_project_item_id = handle
            record.source_ref = SourceRef(collection=collection, id=record_id)
            record.labels = list(ISSUE_LABELS.get(item_type, []))
            record.updated_at = self.clock()
            await self.work_items.save(record)

            if item_type == ItemType.BUG and initial_route != ROUTING_BACKLOG:
                initial_status = WorkItemStatus.BUG_INVESTIGATION
            else:
                initial_status = WorkItemStatus.BACKLOG
            await self.store.update_item_status(handle, initial_status)
            item = await self.store.get_item(handle)
            if item is not None:
                await self._sync_record_status(item)

            intake.github_issue_number = issue.number
            intake.github_issue_url = issue.url
            intake.status = in_flight
            await self.intake.save(intake)
        except Exception as exc:
            logger.exception(
                "Failed to sync intake record to GitHub",
                extra={"collection": collection, "record_id": record_id},
            )
            await self.intake.update_status(collection, record_id, IntakeStatus.NEW)
            return ApproveResult(success=False, error=f"GitHub sync failed: {exc}")

        logger.info(
            "Intake record approved",
            extra={
                "collection": collection,
                "record_id": record_id,
                "issue_number": issue.number,
                "initial_status": initial_status.value,
            },
        )
        await self._emit(
            EventType.ITEM_APPROVED,
            issue.number,
            f"Approved {item_type.value} and created issue #{issue.number}",
            actor="admin",
            collection=collection,
            record_id=record_id,
        )

        routed_to = None
        if initial_route and initial_route != ROUTING_BACKLOG:
            route = await self.route_workflow_item(collection, record_id, initial_route)
            if route.success:
                routed_to = route.target_status
            else:
                logger.warning(
                    "Initial route failed after approval",
                    extra={"issue_number": issue.number, "route": initial_route, "error": route.error},
                )

        needs_routing = item_type == ItemType.FEATURE and not initial_route
        if needs_routing:
            await self._notify(
                self.notifier.notify_item_ready_for_routing(intake.title, issue.number, item_type),
                "item_ready_for_routing",
                issue.number,
            )

        return ApproveResult(
            success=True,
            issue_number=issue.number,
            issue_url=issue.url,
            project_item_id=handle,
            needs_routing=needs_routing,
            routed_to=routed_to,
        )

    @service_operation(RouteResult)
    async def route_workflow_item(
        self,
        collection: str,
        record_id: str,
        destination: str,
    ) -> RouteResult:
        """Route a synced intake item to its first pipeline phase.

        Destinations are validated against the allow-list for the item's
        type. Routing anywhere but the backlog clears Review Status.
        """
        intake = await self.intake.get(collection, record_id)
        if intake is None or not intake.github_issue_number:
            return RouteResult(success=False, error="Item not found or not yet synced to GitHub")

        status_map = get_routing_status_map(intake.item_type)
        target_status = status_map.get(destination)
        if target_status is None:
            return RouteResult(success=False, error=f"Invalid routing destination: {destination}")

        issue_number = intake.github_issue_number
        item = await self._find_item(issue_number)
        if item is None:
            return RouteResult(success=False, error=f"Issue #{issue_number} not found in project")

        await self._set_status(
            item,
            target_status,
            clear_review=destination != ROUTING_BACKLOG,
            actor="admin",
        )

        label = ROUTING_DESTINATION_LABELS.get(destination, target_status.value)
        await self._emit(
            EventType.ITEM_ROUTED,
            issue_number,
            f"Routed to {label}",
            actor="admin",
            destination=destination,
        )
        await self._notify(
            self.notifier.notify_item_routed(intake.title, issue_number, label),
            "item_routed",
            issue_number,
        )
        return RouteResult(success=True, target_status=target_status, target_label=label)

    @service_operation(RouteResult)
    async def route_workflow_item_by_workflow_id(self, item_id: str, status: str) -> RouteResult:
        """Route by work item record id and target status name."""
        record = await self.work_items.get(item_id)
        if record is None:
            return RouteResult(success=False, error="Workflow item not found")

        try:
            destination = status_to_destination(WorkItemStatus(status), record.type)
        except ValueError:
            destination = None
        if destination is None:
            return RouteResult(
                success=False,
                error=f'Status "{status}" is not a valid routing destination',
            )
        if record.source_ref is None:
            return RouteResult(success=False, error="Workflow item has no source reference")

        return await self.route_workflow_item(
            record.source_ref.collection,
            record.source_ref.id,
            destination,
        )

    @service_operation(DeleteResult)
    async def delete_workflow_item(
        self,
        collection: str,
        record_id: str,
        force: bool = False,
    ) -> DeleteResult:
        """Delete an intake record and its work item record.

        Items already synced to GitHub are only deleted with ``force``. A
        work item record whose intake record no longer exists is always
        cleaned up.
        """
        record = await self.work_items.find_by_source_ref(collection, record_id)
        intake = await self.intake.get(collection, record_id)

        if intake is None:
            if record is None:
                return DeleteResult(success=False, error="Item not found")
            await self.work_items.delete(record.id)
            logger.info(
                "Removed orphaned work item record",
                extra={"collection": collection, "record_id": record_id, "item_id": record.id},
            )
            await self._emit(
                EventType.ITEM_DELETED,
                record.github_issue_number,
                "Orphaned tracking record removed",
                item_id=record.id,
            )
            return DeleteResult(success=True, deleted=True, orphan_cleaned=True)

        if intake.github_issue_number and not force:
            return DeleteResult(
                success=False,
                error="Item is already synced to GitHub. Use force to delete it anyway.",
            )

        await self.intake.delete(collection, record_id)
        if record is not None:
            await self.work_items.delete(record.id)
        if intake.github_issue_number:
            await self.artifacts.delete(intake.github_issue_number)

        await self._emit(
            EventType.ITEM_DELETED,
            intake.github_issue_number,
            f"Deleted {intake.item_type.value} {record_id}",
            actor="admin",
            collection=collection,
            forced=force,
        )
        return DeleteResult(success=True, deleted=True)
