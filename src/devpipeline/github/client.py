"""GitHub API client for the issue/PR gateway.

This module provides an async wrapper around the GitHub REST and GraphQL
APIs for one repository:
- Issues and issue comments, including find/update by embedded marker
- Pull requests: create, inspect, merge, review, revert
- Branches and repository files
- GraphQL passthrough for Projects V2 fields

The client does not retry on its own. Rate-limit responses are classified
as RateLimitError so callers can wrap safely repeatable calls with
``with_rate_limit_retry``; every other failure propagates immediately so
non-idempotent calls such as issue or PR creation are never duplicated.
"""

import base64
import logging
import re
import time
from typing import Any, Dict, Iterable, List, Optional

import httpx

from src.devpipeline.github.models import (
    CreatedIssue,
    CreatedPullRequest,
    IssueComment,
    IssueDetails,
    OpenPullRequestRef,
    PullRequestDetails,
    RevertPullRequest,
)


logger = logging.getLogger(__name__)

PAGE_SIZE = 100


class GitHubAPIError(Exception):
    """Raised when a GitHub API request fails.

    Attributes:
        message: Human-readable error description.
        status_code: HTTP status code from the response.
        response_body: Response body from GitHub API.
        request_url: The URL that was requested.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_body: Optional[str] = None,
        request_url: Optional[str] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.response_body = response_body
        self.request_url = request_url
        super().__init__(message)


class RateLimitError(GitHubAPIError):
    """Raised when GitHub API rate limit is exceeded.

    Attributes:
        reset_at: Unix timestamp when the rate limit resets.
        retry_after: Seconds to wait before retrying.
    """

    def __init__(
        self,
        message: str,
        reset_at: Optional[int] = None,
        retry_after: Optional[int] = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.reset_at = reset_at
        self.retry_after = retry_after


class GitHubClient:
    """Async GitHub API client bound to a single repository.

    Attributes:
        token: GitHub API token (PAT or GitHub App token).
        owner: Repository owner.
        repo: Repository name.
        base_url: Base URL for GitHub API (default: https://api.github.com).
        timeout: Request timeout in seconds.

    Example:
        >>> client = GitHubClient(token="ghp_xxx", owner="octo", repo="app")
        >>> async with client:
        ...     await client.add_issue_comment(123, "Hello!")
    """

    def __init__(
        self,
        token: str,
        owner: str,
        repo: str,
        base_url: str = "https://api.github.com",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the GitHub client.

        Args:
            token: GitHub API token for authentication.
            owner: Repository owner (user or organization).
            repo: Repository name.
            base_url: Base URL for GitHub API. Use this to support
                      GitHub Enterprise Server endpoints.
            timeout: Request timeout in seconds.
            transport: Optional httpx transport, used by tests.
        """
        self.token = token
        self.owner = owner
        self.repo = repo
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._default_branch: Optional[str] = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get the HTTP client, creating it if necessary."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._default_headers(),
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    @property
    def repo_path(self) -> str:
        return f"/repos/{self.owner}/{self.repo}"

    def _default_headers(self) -> Dict[str, str]:
        """Build default headers for GitHub API requests."""
        return {
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "User-Agent": "DevPipeline/1.0",
        }

    async def close(self) -> None:
        """Close the HTTP client and release resources."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "GitHubClient":
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit - close the client."""
        await self.close()

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    def _parse_int_header(self, headers: httpx.Headers, name: str) -> Optional[int]:
        """Parse an integer header value, None if absent or invalid."""
        value = headers.get(name)
        if value is not None:
            try:
                return int(value)
            except ValueError:
                pass
        return None

    def _is_rate_limited(self, response: httpx.Response) -> bool:
        """Classify a response as a primary or secondary rate limit."""
        if response.status_code == 429:
            return True
        if response.status_code != 403:
            return False
        remaining = self._parse_int_header(response.headers, "x-ratelimit-remaining")
        if remaining == 0:
            return True
        return "rate limit" in response.text.lower()

    def _rate_limit_error(self, response: httpx.Response) -> RateLimitError:
        """Build a RateLimitError from rate limit headers."""
        reset_at = self._parse_int_header(response.headers, "x-ratelimit-reset")

        retry_after = None
        if reset_at is not None:
            retry_after = max(0, reset_at - int(time.time()))

        retry_after_header = self._parse_int_header(response.headers, "retry-after")
        if retry_after_header is not None:
            retry_after = retry_after_header

        logger.warning(
            "GitHub API rate limit exceeded",
            extra={
                "status_code": response.status_code,
                "reset_at": reset_at,
                "retry_after": retry_after,
            },
        )

        return RateLimitError(
            message="GitHub API rate limit exceeded",
            status_code=response.status_code,
            response_body=response.text,
            request_url=str(response.url),
            reset_at=reset_at,
            retry_after=retry_after,
        )

    async def _request(
        self,
        method: str,
        path: str,
        json_data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        allowed_statuses: Iterable[int] = (),
    ) -> httpx.Response:
        """Make a single HTTP request.

        Args:
            method: HTTP method (GET, POST, PUT, DELETE, PATCH).
            path: API path (e.g., /repos/owner/repo/issues/1/comments).
            json_data: Optional JSON body for the request.
            params: Optional query parameters.
            allowed_statuses: Error statuses returned to the caller instead
                of raising (e.g. 404 for existence checks).

        Returns:
            The HTTP response from GitHub.

        Raises:
            RateLimitError: If the response is a rate limit response.
            GitHubAPIError: For any other failed request.
        """
        try:
            response = await self.client.request(
                method=method,
                url=path,
                json=json_data,
                params=params,
            )
        except httpx.RequestError as e:
            logger.error(
                "GitHub API request error",
                extra={"path": path, "method": method, "error": str(e)},
            )
            raise GitHubAPIError(
                message=f"Request to GitHub failed: {e}",
                request_url=f"{self.base_url}{path}",
            ) from e

        if self._is_rate_limited(response):
            raise self._rate_limit_error(response)

        if response.status_code >= 400 and response.status_code not in allowed_statuses:
            error_body = response.text
            logger.error(
                "GitHub API error",
                extra={
                    "status_code": response.status_code,
                    "path": path,
                    "method": method,
                    "response_body": error_body[:500],
                },
            )
            raise GitHubAPIError(
                message=f"GitHub API error: {response.status_code}",
                status_code=response.status_code,
                response_body=error_body,
                request_url=str(response.url),
            )

        return response

    async def _paginate(self, path: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Fetch every page of a list endpoint."""
        results: List[Dict[str, Any]] = []
        page = 1
        while True:
            query = dict(params or {})
            query.update({"per_page": PAGE_SIZE, "page": page})
            response = await self._request("GET", path, params=query)
            batch = response.json()
            results.extend(batch)
            if len(batch) < PAGE_SIZE:
                return results
            page += 1

    async def graphql(self, query: str, variables: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Execute a GraphQL query or mutation.

        Returns:
            The ``data`` object of the response.

        Raises:
            RateLimitError: If GraphQL reports a rate limit.
            GitHubAPIError: If the response carries errors.
        """
        response = await self._request(
            "POST",
            "/graphql",
            json_data={"query": query, "variables": variables or {}},
        )
        payload = response.json()
        errors = payload.get("errors")
        if errors:
            message = "; ".join(str(err.get("message", err)) for err in errors)
            if any(err.get("type") == "RATE_LIMITED" for err in errors if isinstance(err, dict)):
                raise RateLimitError(message=f"GraphQL rate limit: {message}", status_code=403)
            raise GitHubAPIError(
                message=f"GraphQL error: {message}",
                status_code=response.status_code,
                response_body=response.text,
            )
        return payload.get("data") or {}

    # -------------------------------------------------------------------------
    # Issues and comments
    # -------------------------------------------------------------------------

    async def create_issue(
        self,
        title: str,
        body: str,
        labels: Optional[List[str]] = None,
    ) -> CreatedIssue:
        """Create an issue.

        Raises:
            GitHubAPIError: If the request fails.
        """
        logger.info(
            "Creating issue",
            extra={"repo": self.repo, "title": title, "labels": labels or []},
        )
        json_data: Dict[str, Any] = {"title": title, "body": body}
        if labels:
            json_data["labels"] = labels
        response = await self._request("POST", f"{self.repo_path}/issues", json_data=json_data)
        issue = CreatedIssue.from_github_response(response.json())
        logger.info(
            "Issue created successfully",
            extra={"repo": self.repo, "issue_number": issue.number},
        )
        return issue

    async def get_issue(self, issue_number: int) -> Optional[IssueDetails]:
        """Get issue details, or None if the issue does not exist."""
        response = await self._request(
            "GET",
            f"{self.repo_path}/issues/{issue_number}",
            allowed_statuses=(404, 410),
        )
        if response.status_code in (404, 410):
            return None
        return IssueDetails.from_github_response(response.json())

    async def add_issue_comment(self, issue_number: int, body: str) -> IssueComment:
        """Create a comment on an issue or pull request."""
        logger.info(
            "Creating comment on issue",
            extra={"repo": self.repo, "issue_number": issue_number, "body_length": len(body)},
        )
        response = await self._request(
            "POST",
            f"{self.repo_path}/issues/{issue_number}/comments",
            json_data={"body": body},
        )
        comment = IssueComment.from_github_response(response.json())
        logger.info(
            "Comment created successfully",
            extra={"repo": self.repo, "issue_number": issue_number, "comment_id": comment.id},
        )
        return comment

    async def get_issue_comments(self, issue_number: int) -> List[IssueComment]:
        """List all comments on an issue, oldest first."""
        data = await self._paginate(f"{self.repo_path}/issues/{issue_number}/comments")
        return [IssueComment.from_github_response(item) for item in data]

    async def find_issue_comment_by_marker(
        self,
        issue_number: int,
        marker: str,
    ) -> Optional[IssueComment]:
        """Return the most recent comment containing ``marker``."""
        for comment in reversed(await self.get_issue_comments(issue_number)):
            if marker in comment.body:
                return comment
        return None

    async def update_issue_comment(self, comment_id: int, body: str) -> IssueComment:
        """Replace the body of an existing comment."""
        logger.info("Updating comment", extra={"repo": self.repo, "comment_id": comment_id})
        response = await self._request(
            "PATCH",
            f"{self.repo_path}/issues/comments/{comment_id}",
            json_data={"body": body},
        )
        return IssueComment.from_github_response(response.json())

    async def upsert_issue_comment(
        self,
        issue_number: int,
        marker: str,
        body: str,
    ) -> IssueComment:
        """Update the comment carrying ``marker`` in place, or create it."""
        existing = await self.find_issue_comment_by_marker(issue_number, marker)
        if existing is not None:
            return await self.update_issue_comment(existing.id, body)
        return await self.add_issue_comment(issue_number, body)

    # -------------------------------------------------------------------------
    # Pull requests
    # -------------------------------------------------------------------------

    async def create_pull_request(
        self,
        head: str,
        base: str,
        title: str,
        body: str,
    ) -> CreatedPullRequest:
        """Create a pull request.

        Raises:
            GitHubAPIError: If the request fails.
        """
        logger.info(
            "Creating pull request",
            extra={"repo": self.repo, "title": title, "head": head, "base": base},
        )
        response = await self._request(
            "POST",
            f"{self.repo_path}/pulls",
            json_data={"title": title, "body": body, "head": head, "base": base},
        )
        pr = CreatedPullRequest.from_github_response(response.json())
        logger.info(
            "Pull request created successfully",
            extra={"repo": self.repo, "pr_number": pr.number, "pr_url": pr.url},
        )
        return pr

    async def get_pr_details(self, pr_number: int) -> Optional[PullRequestDetails]:
        """Get PR details, or None if the PR does not exist."""
        response = await self._request(
            "GET",
            f"{self.repo_path}/pulls/{pr_number}",
            allowed_statuses=(404,),
        )
        if response.status_code == 404:
            return None
        return PullRequestDetails.from_github_response(response.json())

    async def list_open_pull_requests(self) -> List[PullRequestDetails]:
        """List open pull requests in the repository."""
        data = await self._paginate(f"{self.repo_path}/pulls", params={"state": "open"})
        return [PullRequestDetails.from_github_response(item) for item in data]

    async def merge_pull_request(
        self,
        pr_number: int,
        commit_title: str,
        commit_message: str = "",
        merge_method: str = "squash",
    ) -> str:
        """Merge a pull request.

        Merging is idempotent: a PR that is already merged returns its
        existing merge commit SHA instead of raising.

        Returns:
            The merge commit SHA.

        Raises:
            GitHubAPIError: If the PR cannot be merged.
        """
        logger.info(
            "Merging pull request",
            extra={"repo": self.repo, "pr_number": pr_number, "merge_method": merge_method},
        )
        response = await self._request(
            "PUT",
            f"{self.repo_path}/pulls/{pr_number}/merge",
            json_data={
                "commit_title": commit_title,
                "commit_message": commit_message,
                "merge_method": merge_method,
            },
            allowed_statuses=(405, 409),
        )

        if response.status_code in (405, 409):
            details = await self.get_pr_details(pr_number)
            if details is not None and details.merged and details.merge_commit_sha:
                logger.info(
                    "Pull request already merged",
                    extra={"repo": self.repo, "pr_number": pr_number},
                )
                return details.merge_commit_sha
            raise GitHubAPIError(
                message=f"Pull request #{pr_number} is not mergeable",
                status_code=response.status_code,
                response_body=response.text,
                request_url=str(response.url),
            )

        sha = response.json().get("sha", "")
        logger.info(
            "Pull request merged successfully",
            extra={"repo": self.repo, "pr_number": pr_number, "sha": sha},
        )
        return sha

    async def get_merge_commit_sha(self, pr_number: int) -> Optional[str]:
        """Return the merge commit SHA of a merged PR, or None."""
        details = await self.get_pr_details(pr_number)
        if details is None or not details.merged:
            return None
        return details.merge_commit_sha

    async def close_pull_request(self, pr_number: int) -> None:
        """Close a pull request without merging."""
        logger.info("Closing pull request", extra={"repo": self.repo, "pr_number": pr_number})
        await self._request(
            "PATCH",
            f"{self.repo_path}/pulls/{pr_number}",
            json_data={"state": "closed"},
        )

    async def create_revert_pr(
        self,
        pr_number: int,
        title: Optional[str] = None,
        body: Optional[str] = None,
    ) -> Optional[RevertPullRequest]:
        """Ask GitHub to open a revert PR for a merged PR.

        Returns:
            The revert PR, or None when GitHub cannot construct one (for
            example when the revert conflicts).
        """
        details = await self.get_pr_details(pr_number)
        if details is None or not details.node_id:
            return None

        mutation = """
        mutation($id: ID!, $title: String, $body: String) {
          revertPullRequest(input: {pullRequestId: $id, title: $title, body: $body}) {
            revertPullRequest { number url }
          }
        }
        """
        try:
            data = await self.graphql(
                mutation,
                {"id": details.node_id, "title": title, "body": body},
            )
        except RateLimitError:
            raise
        except GitHubAPIError as e:
            logger.warning(
                "Revert PR could not be created",
                extra={"repo": self.repo, "pr_number": pr_number, "error": e.message},
            )
            return None

        revert = ((data.get("revertPullRequest") or {}).get("revertPullRequest")) or None
        if not revert:
            return None
        return RevertPullRequest(number=revert["number"], url=revert.get("url", ""))

    async def find_open_pr_for_issue(self, issue_number: int) -> Optional[OpenPullRequestRef]:
        """Find the open PR linked to an issue.

        A PR is linked when its body references the issue ("Closes #N",
        "Part of #N") or its head branch embeds ``issue-N``. The actual head
        branch of the PR is returned; callers must not recompute it.
        """
        body_re = re.compile(
            rf"(?:close[sd]?|fix(?:e[sd])?|resolve[sd]?|part of)\s+#{issue_number}\b",
            re.IGNORECASE,
        )
        branch_re = re.compile(rf"(?:^|/)issue-{issue_number}(?:-|$)")
        for pr in await self.list_open_pull_requests():
            if body_re.search(pr.body) or branch_re.search(pr.head_branch):
                return OpenPullRequestRef(pr_number=pr.number, branch_name=pr.head_branch)
        return None

    async def find_open_pr_for_branch(self, branch: str) -> Optional[int]:
        """Return the number of the open PR whose head is ``branch``."""
        response = await self._request(
            "GET",
            f"{self.repo_path}/pulls",
            params={"state": "open", "head": f"{self.owner}:{branch}"},
        )
        items = response.json()
        return items[0]["number"] if items else None

    async def submit_pr_review(self, pr_number: int, event: str, body: str) -> None:
        """Submit a review (APPROVE, REQUEST_CHANGES or COMMENT)."""
        logger.info(
            "Submitting pull request review",
            extra={"repo": self.repo, "pr_number": pr_number, "event": event},
        )
        await self._request(
            "POST",
            f"{self.repo_path}/pulls/{pr_number}/reviews",
            json_data={"event": event, "body": body},
        )

    async def add_pr_comment(self, pr_number: int, body: str) -> IssueComment:
        """Comment on a pull request conversation."""
        return await self.add_issue_comment(pr_number, body)

    async def get_pr_comments(self, pr_number: int) -> List[IssueComment]:
        """List conversation comments on a pull request."""
        return await self.get_issue_comments(pr_number)

    # -------------------------------------------------------------------------
    # Branches and files
    # -------------------------------------------------------------------------

    async def get_default_branch(self) -> str:
        """Return the repository's default branch (cached)."""
        if self._default_branch is None:
            response = await self._request("GET", self.repo_path)
            self._default_branch = response.json().get("default_branch", "main")
        return self._default_branch

    async def branch_exists(self, branch: str) -> bool:
        """Check whether a branch exists."""
        response = await self._request(
            "GET",
            f"{self.repo_path}/branches/{branch}",
            allowed_statuses=(404,),
        )
        return response.status_code != 404

    async def create_branch(self, branch: str, from_branch: str) -> None:
        """Create ``branch`` pointing at the head of ``from_branch``."""
        logger.info(
            "Creating branch",
            extra={"repo": self.repo, "branch": branch, "from_branch": from_branch},
        )
        ref = await self._request("GET", f"{self.repo_path}/git/ref/heads/{from_branch}")
        sha = ref.json()["object"]["sha"]
        await self._request(
            "POST",
            f"{self.repo_path}/git/refs",
            json_data={"ref": f"refs/heads/{branch}", "sha": sha},
        )

    async def delete_branch(self, branch: str) -> None:
        """Delete a branch; a missing branch is not an error."""
        response = await self._request(
            "DELETE",
            f"{self.repo_path}/git/refs/heads/{branch}",
            allowed_statuses=(404, 422),
        )
        if response.status_code in (404, 422):
            logger.debug(
                "Branch not found (already deleted)",
                extra={"repo": self.repo, "branch": branch},
            )
            return
        logger.info("Branch deleted", extra={"repo": self.repo, "branch": branch})

    async def get_file_contents(self, path: str, ref: Optional[str] = None) -> Optional[str]:
        """Read a text file, or None if it does not exist."""
        response = await self._request(
            "GET",
            f"{self.repo_path}/contents/{path}",
            params={"ref": ref} if ref else None,
            allowed_statuses=(404,),
        )
        if response.status_code == 404:
            return None
        data = response.json()
        return base64.b64decode(data.get("content", "")).decode("utf-8")

    async def create_or_update_file(
        self,
        path: str,
        content: str,
        message: str,
        branch: str,
    ) -> None:
        """Commit ``content`` to ``path`` on ``branch``."""
        existing = await self._request(
            "GET",
            f"{self.repo_path}/contents/{path}",
            params={"ref": branch},
            allowed_statuses=(404,),
        )
        json_data: Dict[str, Any] = {
            "message": message,
            "content": base64.b64encode(content.encode("utf-8")).decode("ascii"),
            "branch": branch,
        }
        if existing.status_code != 404:
            json_data["sha"] = existing.json().get("sha")

        logger.info(
            "Committing file",
            extra={"repo": self.repo, "path": path, "branch": branch},
        )
        await self._request("PUT", f"{self.repo_path}/contents/{path}", json_data=json_data)

    async def health_check(self) -> bool:
        """Check if the GitHub API is accessible."""
        try:
            response = await self.client.get(self.repo_path)
            return response.status_code == 200
        except Exception as e:
            logger.warning(
                "GitHub API health check failed",
                extra={"error": str(e)},
            )
            return False
