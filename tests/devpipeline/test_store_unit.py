"""Unit tests for the project item stores."""

import asyncio

import pytest

from src.devpipeline.github.client import RateLimitError
from src.devpipeline.github.models import IssueDetails
from src.devpipeline.state.store import (
    CollectionProjectStore,
    GitHubProjectStore,
    ItemNotFoundError,
    ProjectItemStore,
)
from src.devpipeline.state.models import ItemType, ReviewStatus, WorkItemStatus
from tests.devpipeline.fakes import seed_work_item


def run_async(coro):
    return asyncio.run(coro)


# -----------------------------------------------------------------------------
# Collection-backed store
# -----------------------------------------------------------------------------


class TestCollectionProjectStore:
    def test_satisfies_protocol(self, store):
        assert isinstance(store, ProjectItemStore)

    def test_field_updates_write_the_record(self, store, work_items, gateway):
        n = seed_work_item(work_items, gateway, status=WorkItemStatus.BACKLOG)
        item_id = work_items.by_issue(n).id

        run_async(store.update_item_status(item_id, WorkItemStatus.TECH_DESIGN))
        run_async(store.update_item_review_status(item_id, ReviewStatus.WAITING_FOR_REVIEW))
        run_async(store.set_implementation_phase(item_id, "1/2"))

        item = run_async(store.find_item_by_issue_number(n))
        assert item.status == WorkItemStatus.TECH_DESIGN
        assert item.review_status == ReviewStatus.WAITING_FOR_REVIEW
        assert run_async(store.get_implementation_phase(item_id)) == "1/2"

        run_async(store.clear_item_review_status(item_id))
        run_async(store.clear_implementation_phase(item_id))

        record = work_items.by_issue(n)
        assert record.review_status is None
        assert record.implementation_phase is None

    def test_missing_item(self, store):
        assert run_async(store.get_item("nope")) is None
        with pytest.raises(ItemNotFoundError):
            run_async(store.update_item_status("nope", WorkItemStatus.DONE))

    def test_list_filters_by_status(self, store, work_items, gateway):
        seed_work_item(work_items, gateway, title="A", status=WorkItemStatus.TECH_DESIGN)
        seed_work_item(work_items, gateway, title="B", status=WorkItemStatus.DONE)

        items = run_async(store.list_items(status=WorkItemStatus.TECH_DESIGN))

        assert [i.title for i in items] == ["A"]

    def test_add_issue_creates_record_once(self, store, work_items, gateway):
        n = gateway.seed_issue("Crash on launch", "Stack trace", ["bug"])

        first = run_async(store.add_issue_to_project(n))
        second = run_async(store.add_issue_to_project(n))

        assert first == second
        record = work_items.by_issue(n)
        assert record.type == ItemType.BUG
        assert record.title == "Crash on launch"


# -----------------------------------------------------------------------------
# GitHub Projects V2 store
# -----------------------------------------------------------------------------


SCHEMA = {
    "user": {
        "projectV2": {
            "id": "PVT_1",
            "fields": {
                "nodes": [
                    {
                        "id": "F_STATUS",
                        "name": "Status",
                        "options": [
                            {"id": "O_TECH", "name": "Technical Design"},
                            {"id": "O_DONE", "name": "Done"},
                        ],
                    },
                    {
                        "id": "F_REVIEW",
                        "name": "Review Status",
                        "options": [{"id": "O_WAIT", "name": "Waiting for Review"}],
                    },
                    {"id": "F_PHASE", "name": "Implementation Phase"},
                    {},
                ]
            },
        }
    }
}


def item_node(item_id, number, status=None, review=None, phase=None, labels=()):
    values = []
    if status:
        values.append({"name": status, "field": {"name": "Status"}})
    if review:
        values.append({"name": review, "field": {"name": "Review Status"}})
    if phase:
        values.append({"text": phase, "field": {"name": "Implementation Phase"}})
    return {
        "id": item_id,
        "content": {
            "number": number,
            "title": f"Issue {number}",
            "body": "",
            "url": f"https://github.com/acme/app/issues/{number}",
            "labels": {"nodes": [{"name": label} for label in labels]},
        },
        "fieldValues": {"nodes": values},
    }


class GraphQLGateway:
    """Answers the store's GraphQL queries from canned pages."""

    def __init__(self, pages, rate_limited_calls=0):
        self.pages = pages
        self.rate_limited_calls = rate_limited_calls
        self.mutations = []

    async def graphql(self, query, variables=None):
        if self.rate_limited_calls:
            self.rate_limited_calls -= 1
            raise RateLimitError("limited")
        if "projectV2(number" in query:
            return SCHEMA
        if "items(first" in query:
            index = int(variables["cursor"] or 0)
            has_next = index + 1 < len(self.pages)
            return {
                "node": {
                    "items": {
                        "pageInfo": {"hasNextPage": has_next, "endCursor": str(index + 1)},
                        "nodes": self.pages[index],
                    }
                }
            }
        if "addProjectV2ItemById" in query:
            self.mutations.append(("add", variables))
            return {"addProjectV2ItemById": {"item": {"id": "PVTI_new"}}}
        self.mutations.append((query.split("(")[0].split()[-1], variables))
        return {}

    async def get_issue(self, issue_number):
        return IssueDetails(number=issue_number, node_id=f"I_{issue_number}")


def project_store(gateway):
    async def no_sleep(delay):
        return None

    return GitHubProjectStore(gateway, owner="acme", project_number=3, sleep=no_sleep)


class TestGitHubProjectStore:
    def test_lists_items_across_pages(self):
        gateway = GraphQLGateway(
            [
                [item_node("PVTI_1", 1, status="Technical Design", labels=["bug"]), {"id": "draft", "content": {}}],
                [item_node("PVTI_2", 2, status="Done", review="Waiting for Review", phase="2/3")],
            ]
        )
        store = project_store(gateway)

        items = run_async(store.list_items())

        assert [i.issue_number for i in items] == [1, 2]
        assert items[0].type == ItemType.BUG
        assert items[1].review_status == ReviewStatus.WAITING_FOR_REVIEW
        assert items[1].implementation_phase == "2/3"

    def test_filters_and_lookup(self):
        gateway = GraphQLGateway(
            [[item_node("PVTI_1", 1, status="Technical Design"), item_node("PVTI_2", 2, status="Done")]]
        )
        store = project_store(gateway)

        done = run_async(store.list_items(status=WorkItemStatus.DONE))
        found = run_async(store.find_item_by_issue_number(1))

        assert [i.id for i in done] == ["PVTI_2"]
        assert found.id == "PVTI_1"

    def test_status_update_uses_option_ids(self):
        gateway = GraphQLGateway([[]])
        store = project_store(gateway)

        run_async(store.update_item_status("PVTI_1", WorkItemStatus.TECH_DESIGN))
        run_async(store.set_implementation_phase("PVTI_1", "1/2"))
        run_async(store.clear_item_review_status("PVTI_1"))

        (update_name, update_vars), (phase_name, phase_vars), (clear_name, clear_vars) = gateway.mutations
        assert update_vars["fieldId"] == "F_STATUS"
        assert update_vars["value"] == {"singleSelectOptionId": "O_TECH"}
        assert phase_vars["value"] == {"text": "1/2"}
        assert clear_vars["fieldId"] == "F_REVIEW"
        assert "projectId" in clear_vars

    def test_unknown_option_is_rejected(self):
        store = project_store(GraphQLGateway([[]]))
        with pytest.raises(ValueError, match="Unknown option 'Backlog'"):
            run_async(store.update_item_status("PVTI_1", WorkItemStatus.BACKLOG))

    def test_rate_limited_calls_are_retried(self):
        gateway = GraphQLGateway([[item_node("PVTI_1", 1)]], rate_limited_calls=2)
        store = project_store(gateway)

        items = run_async(store.list_items())

        assert [i.id for i in items] == ["PVTI_1"]

    def test_add_issue_to_project(self):
        gateway = GraphQLGateway([[]])
        store = project_store(gateway)

        item_id = run_async(store.add_issue_to_project(7))

        assert item_id == "PVTI_new"
        assert gateway.mutations[-1] == ("add", {"projectId": "PVT_1", "contentId": "I_7"})
