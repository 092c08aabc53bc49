"""Project item store protocol and implementations.

The project item store persists each tracked item's Status, Review Status
and Implementation Phase fields. Two implementations are interchangeable:

- GitHubProjectStore: GitHub Projects V2 custom fields. Every call is a
  remote GraphQL request subject to rate limits, so each one runs inside the
  rate-limit retry wrapper.
- CollectionProjectStore: the work-item collection in PostgreSQL (or any
  WorkItemRepository). No retry is needed.

Both also pass issue/PR operations through to the gateway so callers holding
only a store can create issues, comments, PRs and branches. Issue and PR
creation are never retried.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Protocol,
    TypeVar,
    runtime_checkable,
)

from src.devpipeline.github.client import GitHubClient
from src.devpipeline.github.models import CreatedIssue, CreatedPullRequest, IssueComment
from src.devpipeline.github.retry import with_rate_limit_retry
from src.devpipeline.state.models import (
    HistoryEntry,
    IntakeRecord,
    IntakeStatus,
    ItemType,
    ProjectItem,
    ReviewStatus,
    WorkItemRecord,
    WorkItemStatus,
)


logger = logging.getLogger(__name__)

T = TypeVar("T")

STATUS_FIELD = "Status"
REVIEW_STATUS_FIELD = "Review Status"
IMPLEMENTATION_PHASE_FIELD = "Implementation Phase"


class ItemNotFoundError(Exception):
    """Raised when a store handle does not resolve to an item.

    Attributes:
        item_id: The handle that was not found.
    """

    def __init__(self, item_id: str):
        self.item_id = item_id
        super().__init__(f"Project item not found: {item_id}")


# -----------------------------------------------------------------------------
# Protocols
# -----------------------------------------------------------------------------


@runtime_checkable
class WorkItemRepository(Protocol):
    """Persistence for work item records and their artifacts."""

    async def get(self, item_id: str) -> Optional[WorkItemRecord]:
        """Get a record by internal id, None if absent."""
        ...

    async def find_by_issue_number(self, issue_number: int) -> Optional[WorkItemRecord]:
        """Get the record synced to a tracker issue, None if absent."""
        ...

    async def find_by_source_ref(self, collection: str, source_id: str) -> Optional[WorkItemRecord]:
        """Get the record created from an intake record, None if absent."""
        ...

    async def list_items(
        self,
        status: Optional[WorkItemStatus] = None,
        review_status: Optional[ReviewStatus] = None,
        limit: Optional[int] = None,
    ) -> List[WorkItemRecord]:
        """List records, optionally filtered by status fields."""
        ...

    async def save(self, record: WorkItemRecord) -> WorkItemRecord:
        """Insert or replace a record (last write wins)."""
        ...

    async def delete(self, item_id: str) -> bool:
        """Delete a record, returning whether it existed."""
        ...

    async def append_history(self, item_id: str, entry: HistoryEntry) -> None:
        """Append an audit entry to a record."""
        ...


@runtime_checkable
class IntakeRepository(Protocol):
    """Persistence for feature requests and bug reports."""

    async def get(self, collection: str, record_id: str) -> Optional[IntakeRecord]:
        """Get an intake record, None if absent."""
        ...

    async def save(self, record: IntakeRecord) -> IntakeRecord:
        """Insert or replace an intake record."""
        ...

    async def update_status(self, collection: str, record_id: str, status: IntakeStatus) -> None:
        """Set the intake status of a record."""
        ...

    async def find_by_issue_number(self, issue_number: int) -> Optional[IntakeRecord]:
        """Get the intake record synced to a tracker issue."""
        ...

    async def delete(self, collection: str, record_id: str) -> bool:
        """Delete an intake record, returning whether it existed."""
        ...


@runtime_checkable
class ProjectItemStore(Protocol):
    """Provider-agnostic access to project item status fields.

    Callers must not assume which implementation they hold; only this
    contract is fixed.
    """

    async def list_items(
        self,
        status: Optional[WorkItemStatus] = None,
        review_status: Optional[ReviewStatus] = None,
        limit: Optional[int] = None,
    ) -> List[ProjectItem]:
        """List tracked items, optionally filtered."""
        ...

    async def get_item(self, item_id: str) -> Optional[ProjectItem]:
        """Get a tracked item by store handle."""
        ...

    async def find_item_by_issue_number(self, issue_number: int) -> Optional[ProjectItem]:
        """Get the tracked item for a tracker issue."""
        ...

    async def update_item_status(self, item_id: str, status: WorkItemStatus) -> None:
        """Set the Status field."""
        ...

    async def update_item_review_status(self, item_id: str, review_status: ReviewStatus) -> None:
        """Set the Review Status field."""
        ...

    async def clear_item_review_status(self, item_id: str) -> None:
        """Clear the Review Status field."""
        ...

    async def get_implementation_phase(self, item_id: str) -> Optional[str]:
        """Get the "i/n" Implementation Phase field."""
        ...

    async def set_implementation_phase(self, item_id: str, value: str) -> None:
        """Set the Implementation Phase field."""
        ...

    async def clear_implementation_phase(self, item_id: str) -> None:
        """Clear the Implementation Phase field."""
        ...

    async def add_issue_to_project(self, issue_number: int) -> str:
        """Start tracking an issue, returning its store handle."""
        ...

    async def create_issue(self, title: str, body: str, labels: Optional[List[str]] = None) -> CreatedIssue:
        """Create a tracker issue (never retried)."""
        ...

    async def add_issue_comment(self, issue_number: int, body: str) -> IssueComment:
        """Comment on an issue."""
        ...

    async def create_pull_request(self, head: str, base: str, title: str, body: str) -> CreatedPullRequest:
        """Open a PR (never retried)."""
        ...

    async def merge_pull_request(self, pr_number: int, commit_title: str, commit_message: str = "") -> str:
        """Merge a PR, returning the merge commit SHA."""
        ...

    async def create_branch(self, branch: str, from_branch: str) -> None:
        """Create a branch."""
        ...

    async def branch_exists(self, branch: str) -> bool:
        """Check whether a branch exists."""
        ...

    async def delete_branch(self, branch: str) -> None:
        """Delete a branch."""
        ...


# -----------------------------------------------------------------------------
# Gateway passthroughs
# -----------------------------------------------------------------------------


class GatewayPassthroughMixin:
    """Delegates issue/PR operations to the gateway.

    Subclasses override ``_call`` to wrap repeatable calls (for example in
    the rate-limit retry). Creation calls bypass ``_call`` entirely.
    """

    gateway: GitHubClient

    async def _call(self, operation: Callable[[], Awaitable[T]], description: str) -> T:
        return await operation()

    async def create_issue(self, title: str, body: str, labels: Optional[List[str]] = None) -> CreatedIssue:
        return await self.gateway.create_issue(title, body, labels)

    async def add_issue_comment(self, issue_number: int, body: str) -> IssueComment:
        return await self._call(
            lambda: self.gateway.add_issue_comment(issue_number, body),
            "add_issue_comment",
        )

    async def create_pull_request(self, head: str, base: str, title: str, body: str) -> CreatedPullRequest:
        return await self.gateway.create_pull_request(head, base, title, body)

    async def merge_pull_request(self, pr_number: int, commit_title: str, commit_message: str = "") -> str:
        return await self._call(
            lambda: self.gateway.merge_pull_request(pr_number, commit_title, commit_message),
            "merge_pull_request",
        )

    async def create_branch(self, branch: str, from_branch: str) -> None:
        await self._call(lambda: self.gateway.create_branch(branch, from_branch), "create_branch")

    async def branch_exists(self, branch: str) -> bool:
        return await self._call(lambda: self.gateway.branch_exists(branch), "branch_exists")

    async def delete_branch(self, branch: str) -> None:
        await self._call(lambda: self.gateway.delete_branch(branch), "delete_branch")


def _item_type_from_labels(labels: List[str]) -> ItemType:
    return ItemType.BUG if any(label.lower() == "bug" for label in labels) else ItemType.FEATURE


# -----------------------------------------------------------------------------
# Collection-backed store
# -----------------------------------------------------------------------------


class CollectionProjectStore(GatewayPassthroughMixin):
    """Project item store backed by the work-item collection.

    Store handles are work item record ids. Status changes are plain record
    writes, so nothing here is retried.
    """

    def __init__(self, repository: WorkItemRepository, gateway: GitHubClient):
        self.repository = repository
        self.gateway = gateway

    @staticmethod
    def _to_project_item(record: WorkItemRecord) -> ProjectItem:
        return ProjectItem(
            id=record.id,
            issue_number=record.github_issue_number,
            title=record.title,
            body=record.description,
            url=record.github_issue_url,
            type=record.type,
            labels=list(record.labels),
            status=record.status,
            review_status=record.review_status,
            implementation_phase=record.implementation_phase,
        )

    async def _require(self, item_id: str) -> WorkItemRecord:
        record = await self.repository.get(item_id)
        if record is None:
            raise ItemNotFoundError(item_id)
        return record

    async def _update(self, item_id: str, **fields: Any) -> None:
        record = await self._require(item_id)
        for name, value in fields.items():
            setattr(record, name, value)
        record.updated_at = datetime.now(timezone.utc)
        await self.repository.save(record)

    async def list_items(
        self,
        status: Optional[WorkItemStatus] = None,
        review_status: Optional[ReviewStatus] = None,
        limit: Optional[int] = None,
    ) -> List[ProjectItem]:
        records = await self.repository.list_items(status, review_status, limit)
        return [
            self._to_project_item(r) for r in records if r.github_issue_number is not None
        ]

    async def get_item(self, item_id: str) -> Optional[ProjectItem]:
        record = await self.repository.get(item_id)
        return self._to_project_item(record) if record else None

    async def find_item_by_issue_number(self, issue_number: int) -> Optional[ProjectItem]:
        record = await self.repository.find_by_issue_number(issue_number)
        return self._to_project_item(record) if record else None

    async def update_item_status(self, item_id: str, status: WorkItemStatus) -> None:
        await self._update(item_id, status=status)

    async def update_item_review_status(self, item_id: str, review_status: ReviewStatus) -> None:
        await self._update(item_id, review_status=review_status)

    async def clear_item_review_status(self, item_id: str) -> None:
        await self._update(item_id, review_status=None)

    async def get_implementation_phase(self, item_id: str) -> Optional[str]:
        return (await self._require(item_id)).implementation_phase

    async def set_implementation_phase(self, item_id: str, value: str) -> None:
        await self._update(item_id, implementation_phase=value)

    async def clear_implementation_phase(self, item_id: str) -> None:
        await self._update(item_id, implementation_phase=None)

    async def add_issue_to_project(self, issue_number: int) -> str:
        existing = await self.repository.find_by_issue_number(issue_number)
        if existing is not None:
            return existing.id

        issue = await self.gateway.get_issue(issue_number)
        record = WorkItemRecord(
            id=uuid.uuid4().hex,
            title=issue.title if issue else "",
            description=issue.body if issue else "",
            labels=issue.labels if issue else [],
            type=_item_type_from_labels(issue.labels) if issue else ItemType.FEATURE,
            github_issue_number=issue_number,
            github_issue_url=issue.url if issue else None,
        )
        await self.repository.save(record)
        logger.info(
            "Issue added to collection",
            extra={"issue_number": issue_number, "item_id": record.id},
        )
        return record.id


# -----------------------------------------------------------------------------
# GitHub Projects V2 store
# -----------------------------------------------------------------------------

_PROJECT_QUERY = """
query($owner: String!, $number: Int!) {
  %s(login: $owner) {
    projectV2(number: $number) {
      id
      fields(first: 50) {
        nodes {
          ... on ProjectV2SingleSelectField { id name options { id name } }
          ... on ProjectV2Field { id name }
        }
      }
    }
  }
}
"""

_ITEM_FIELDS = """
id
content {
  ... on Issue {
    number title body url
    labels(first: 20) { nodes { name } }
  }
}
fieldValues(first: 20) {
  nodes {
    ... on ProjectV2ItemFieldSingleSelectValue {
      name
      field { ... on ProjectV2FieldCommon { name } }
    }
    ... on ProjectV2ItemFieldTextValue {
      text
      field { ... on ProjectV2FieldCommon { name } }
    }
  }
}
"""

_ITEMS_QUERY = """
query($projectId: ID!, $cursor: String) {
  node(id: $projectId) {
    ... on ProjectV2 {
      items(first: 100, after: $cursor) {
        pageInfo { hasNextPage endCursor }
        nodes { %s }
      }
    }
  }
}
""" % _ITEM_FIELDS

_ITEM_QUERY = """
query($itemId: ID!) {
  node(id: $itemId) { ... on ProjectV2Item { %s } }
}
""" % _ITEM_FIELDS

_UPDATE_FIELD_MUTATION = """
mutation($projectId: ID!, $itemId: ID!, $fieldId: ID!, $value: ProjectV2FieldValue!) {
  updateProjectV2ItemFieldValue(
    input: {projectId: $projectId, itemId: $itemId, fieldId: $fieldId, value: $value}
  ) { projectV2Item { id } }
}
"""

_CLEAR_FIELD_MUTATION = """
mutation($projectId: ID!, $itemId: ID!, $fieldId: ID!) {
  clearProjectV2ItemFieldValue(
    input: {projectId: $projectId, itemId: $itemId, fieldId: $fieldId}
  ) { projectV2Item { id } }
}
"""

_ADD_ITEM_MUTATION = """
mutation($projectId: ID!, $contentId: ID!) {
  addProjectV2ItemById(input: {projectId: $projectId, contentId: $contentId}) {
    item { id }
  }
}
"""


class GitHubProjectStore(GatewayPassthroughMixin):
    """Project item store backed by GitHub Projects V2 custom fields.

    Store handles are project item node ids. Field and option ids are
    resolved lazily from the project schema on first use.

    Attributes:
        gateway: GitHub client used for GraphQL and passthroughs.
        owner: Project owner login.
        project_number: Projects V2 board number.
        owner_type: "user" or "org".
        max_attempts: Attempts per rate-limited call.
        base_delay: Initial backoff delay in seconds.
    """

    def __init__(
        self,
        gateway: GitHubClient,
        owner: str,
        project_number: int,
        owner_type: str = "user",
        max_attempts: int = 3,
        base_delay: float = 1.0,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.gateway = gateway
        self.owner = owner
        self.project_number = project_number
        self.owner_type = owner_type
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self._sleep = sleep
        self._project_id: Optional[str] = None
        self._fields: Dict[str, Dict[str, Any]] = {}

    async def _call(self, operation: Callable[[], Awaitable[T]], description: str) -> T:
        kwargs: Dict[str, Any] = {}
        if self._sleep is not None:
            kwargs["sleep"] = self._sleep
        return await with_rate_limit_retry(
            operation,
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            description=description,
            **kwargs,
        )

    async def _graphql(self, query: str, variables: Dict[str, Any], description: str) -> Dict[str, Any]:
        return await self._call(lambda: self.gateway.graphql(query, variables), description)

    async def _ensure_schema(self) -> str:
        if self._project_id is not None:
            return self._project_id

        root = "organization" if self.owner_type == "org" else "user"
        data = await self._graphql(
            _PROJECT_QUERY % root,
            {"owner": self.owner, "number": self.project_number},
            "load_project",
        )
        project = (data.get(root) or {}).get("projectV2")
        if not project:
            raise ItemNotFoundError(f"project {self.owner}#{self.project_number}")

        for field in project["fields"]["nodes"]:
            if not field or "name" not in field:
                continue
            self._fields[field["name"]] = {
                "id": field["id"],
                "options": {opt["name"]: opt["id"] for opt in field.get("options") or []},
            }
        self._project_id = project["id"]
        logger.info(
            "Loaded project schema",
            extra={"project_id": self._project_id, "fields": sorted(self._fields)},
        )
        return self._project_id

    def _field_id(self, name: str) -> str:
        field = self._fields.get(name)
        if field is None:
            raise ItemNotFoundError(f"project field '{name}'")
        return field["id"]

    def _option_id(self, field_name: str, option_name: str) -> str:
        option_id = self._fields.get(field_name, {}).get("options", {}).get(option_name)
        if option_id is None:
            raise ValueError(f"Unknown option '{option_name}' for field '{field_name}'")
        return option_id

    @staticmethod
    def _to_project_item(node: Dict[str, Any]) -> Optional[ProjectItem]:
        content = node.get("content") or {}
        if "number" not in content:
            return None

        values: Dict[str, str] = {}
        for value in (node.get("fieldValues") or {}).get("nodes") or []:
            if not value or not value.get("field"):
                continue
            field_name = value["field"].get("name")
            raw = value.get("name", value.get("text"))
            if field_name and raw is not None:
                values[field_name] = raw

        labels = [label["name"] for label in (content.get("labels") or {}).get("nodes") or []]
        status = values.get(STATUS_FIELD)
        review_status = values.get(REVIEW_STATUS_FIELD)
        return ProjectItem(
            id=node["id"],
            issue_number=content["number"],
            title=content.get("title") or "",
            body=content.get("body") or "",
            url=content.get("url"),
            type=_item_type_from_labels(labels),
            labels=labels,
            status=WorkItemStatus(status) if status in WorkItemStatus._value2member_map_ else None,
            review_status=(
                ReviewStatus(review_status)
                if review_status in ReviewStatus._value2member_map_
                else None
            ),
            implementation_phase=values.get(IMPLEMENTATION_PHASE_FIELD) or None,
        )

    async def list_items(
        self,
        status: Optional[WorkItemStatus] = None,
        review_status: Optional[ReviewStatus] = None,
        limit: Optional[int] = None,
    ) -> List[ProjectItem]:
        project_id = await self._ensure_schema()
        items: List[ProjectItem] = []
        cursor: Optional[str] = None
        while True:
            data = await self._graphql(
                _ITEMS_QUERY,
                {"projectId": project_id, "cursor": cursor},
                "list_items",
            )
            page = data["node"]["items"]
            for node in page["nodes"]:
                item = self._to_project_item(node)
                if item is None:
                    continue
                if status is not None and item.status != status:
                    continue
                if review_status is not None and item.review_status != review_status:
                    continue
                items.append(item)
                if limit is not None and len(items) >= limit:
                    return items
            if not page["pageInfo"]["hasNextPage"]:
                return items
            cursor = page["pageInfo"]["endCursor"]

    async def get_item(self, item_id: str) -> Optional[ProjectItem]:
        data = await self._graphql(_ITEM_QUERY, {"itemId": item_id}, "get_item")
        node = data.get("node")
        return self._to_project_item(node) if node else None

    async def find_item_by_issue_number(self, issue_number: int) -> Optional[ProjectItem]:
        for item in await self.list_items():
            if item.issue_number == issue_number:
                return item
        return None

    async def _set_field(self, item_id: str, field_name: str, value: Dict[str, Any]) -> None:
        project_id = await self._ensure_schema()
        await self._graphql(
            _UPDATE_FIELD_MUTATION,
            {
                "projectId": project_id,
                "itemId": item_id,
                "fieldId": self._field_id(field_name),
                "value": value,
            },
            f"update {field_name}",
        )

    async def _clear_field(self, item_id: str, field_name: str) -> None:
        project_id = await self._ensure_schema()
        await self._graphql(
            _CLEAR_FIELD_MUTATION,
            {"projectId": project_id, "itemId": item_id, "fieldId": self._field_id(field_name)},
            f"clear {field_name}",
        )

    async def update_item_status(self, item_id: str, status: WorkItemStatus) -> None:
        await self._ensure_schema()
        await self._set_field(
            item_id,
            STATUS_FIELD,
            {"singleSelectOptionId": self._option_id(STATUS_FIELD, status.value)},
        )

    async def update_item_review_status(self, item_id: str, review_status: ReviewStatus) -> None:
        await self._ensure_schema()
        await self._set_field(
            item_id,
            REVIEW_STATUS_FIELD,
            {"singleSelectOptionId": self._option_id(REVIEW_STATUS_FIELD, review_status.value)},
        )

    async def clear_item_review_status(self, item_id: str) -> None:
        await self._clear_field(item_id, REVIEW_STATUS_FIELD)

    async def get_implementation_phase(self, item_id: str) -> Optional[str]:
        item = await self.get_item(item_id)
        return item.implementation_phase if item else None

    async def set_implementation_phase(self, item_id: str, value: str) -> None:
        await self._set_field(item_id, IMPLEMENTATION_PHASE_FIELD, {"text": value})

    async def clear_implementation_phase(self, item_id: str) -> None:
        await self._clear_field(item_id, IMPLEMENTATION_PHASE_FIELD)

    async def add_issue_to_project(self, issue_number: int) -> str:
        project_id = await self._ensure_schema()
        issue = await self._call(lambda: self.gateway.get_issue(issue_number), "get_issue")
        if issue is None or not issue.node_id:
            raise ItemNotFoundError(f"issue #{issue_number}")
        data = await self._graphql(
            _ADD_ITEM_MUTATION,
            {"projectId": project_id, "contentId": issue.node_id},
            "add_issue_to_project",
        )
        item_id = data["addProjectV2ItemById"]["item"]["id"]
        logger.info(
            "Issue added to project",
            extra={"issue_number": issue_number, "item_id": item_id},
        )
        return item_id
