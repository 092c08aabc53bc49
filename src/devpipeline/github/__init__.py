"""GitHub issue/PR gateway.

This module provides the gateway to the external issue tracker:
- Issues and comments, with find/update by embedded marker
- Pull requests, reviews, merges and revert PRs
- Branches and repository files
- A rate-limit retry wrapper for safely repeatable calls
"""

from src.devpipeline.github.client import (
    GitHubAPIError,
    GitHubClient,
    RateLimitError,
)
from src.devpipeline.github.models import (
    CreatedIssue,
    CreatedPullRequest,
    IssueComment,
    IssueDetails,
    OpenPullRequestRef,
    PullRequestDetails,
    RevertPullRequest,
)
from src.devpipeline.github.retry import calculate_backoff, with_rate_limit_retry

__all__ = [
    "CreatedIssue",
    "CreatedPullRequest",
    "GitHubAPIError",
    "GitHubClient",
    "IssueComment",
    "IssueDetails",
    "OpenPullRequestRef",
    "PullRequestDetails",
    "RateLimitError",
    "RevertPullRequest",
    "calculate_backoff",
    "with_rate_limit_retry",
]
