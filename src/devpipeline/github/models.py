"""Data models for GitHub API responses used by the pipeline."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class CreatedIssue(BaseModel):
    """An issue created through the gateway."""

    number: int = Field(..., gt=0)
    url: str = ""
    node_id: Optional[str] = None

    @classmethod
    def from_github_response(cls, data: Dict[str, Any]) -> "CreatedIssue":
        return cls(
            number=data["number"],
            url=data.get("html_url", ""),
            node_id=data.get("node_id"),
        )


class IssueDetails(BaseModel):
    """Issue fields the workflow reads."""

    number: int
    title: str = ""
    body: str = ""
    state: str = "open"
    url: str = ""
    labels: List[str] = Field(default_factory=list)
    node_id: Optional[str] = None

    @classmethod
    def from_github_response(cls, data: Dict[str, Any]) -> "IssueDetails":
        return cls(
            number=data["number"],
            title=data.get("title") or "",
            body=data.get("body") or "",
            state=data.get("state", "open"),
            url=data.get("html_url", ""),
            labels=[
                label["name"] if isinstance(label, dict) else str(label)
                for label in data.get("labels", [])
            ],
            node_id=data.get("node_id"),
        )


class IssueComment(BaseModel):
    """A comment on an issue or pull request."""

    id: int
    body: str = ""
    author: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_github_response(cls, data: Dict[str, Any]) -> "IssueComment":
        user = data.get("user") or {}
        return cls(
            id=data["id"],
            body=data.get("body") or "",
            author=user.get("login"),
            created_at=data.get("created_at"),
        )


class CreatedPullRequest(BaseModel):
    """A pull request created through the gateway."""

    number: int = Field(..., gt=0)
    url: str = ""

    @classmethod
    def from_github_response(cls, data: Dict[str, Any]) -> "CreatedPullRequest":
        return cls(number=data["number"], url=data.get("html_url", ""))


class PullRequestDetails(BaseModel):
    """Pull request state as seen by the workflow.

    Attributes:
        number: PR number.
        title: PR title, used as the saved commit title on approval.
        body: PR description.
        state: "open" or "closed".
        merged: Whether the PR has been merged.
        head_branch: Actual head ref of the PR.
        base_branch: Base ref the PR targets.
        merge_commit_sha: Merge commit SHA once merged.
        url: HTML URL.
        node_id: GraphQL node id, needed for revert requests.
    """

    number: int
    title: str = ""
    body: str = ""
    state: str = "open"
    merged: bool = False
    head_branch: str = ""
    base_branch: str = ""
    merge_commit_sha: Optional[str] = None
    url: str = ""
    node_id: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.state == "open" and not self.merged

    @classmethod
    def from_github_response(cls, data: Dict[str, Any]) -> "PullRequestDetails":
        merged = bool(data.get("merged") or data.get("merged_at"))
        return cls(
            number=data["number"],
            title=data.get("title") or "",
            body=data.get("body") or "",
            state=data.get("state", "open"),
            merged=merged,
            head_branch=(data.get("head") or {}).get("ref", ""),
            base_branch=(data.get("base") or {}).get("ref", ""),
            merge_commit_sha=data.get("merge_commit_sha") if merged else None,
            url=data.get("html_url", ""),
            node_id=data.get("node_id"),
        )


class OpenPullRequestRef(BaseModel):
    """An open PR located for an issue, with its actual head branch."""

    pr_number: int
    branch_name: str


class RevertPullRequest(BaseModel):
    """A revert PR created for a merged PR."""

    number: int
    url: str = ""
