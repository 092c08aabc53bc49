"""Durable text artifacts keyed by issue number and artifact type.

Design documents, decisions and clarifications are written here before any
review status changes, so readers prefer this store and only fall back to
parsing issue comments when an artifact is absent. Writes are last-write-wins
with no versioning.
"""

import logging
from typing import Optional, Protocol, runtime_checkable

from src.devpipeline.state.repository import DatabaseError, PostgresDatabase


logger = logging.getLogger(__name__)

ARTIFACT_TYPES = ("product-dev", "product", "tech", "decision", "clarification")


def artifact_locator(issue_number: int, artifact_type: str) -> str:
    """Stable locator string returned by ``save``."""
    return f"artifacts://issue-{issue_number}/{artifact_type}"


def _check_type(artifact_type: str) -> None:
    if artifact_type not in ARTIFACT_TYPES:
        raise ValueError(
            f"Unknown artifact type: {artifact_type}. "
            f"Must be one of: {', '.join(ARTIFACT_TYPES)}"
        )


@runtime_checkable
class ArtifactStore(Protocol):
    """Durable per-issue document store."""

    async def save(self, issue_number: int, artifact_type: str, content: str) -> str:
        """Write an artifact, returning its locator."""
        ...

    async def read(self, issue_number: int, artifact_type: str) -> Optional[str]:
        """Read an artifact, None if absent."""
        ...

    async def delete(self, issue_number: int, artifact_type: Optional[str] = None) -> None:
        """Delete one artifact, or all of an issue's artifacts."""
        ...


class PostgresArtifactStore:
    """ArtifactStore backed by the ``artifacts`` table."""

    def __init__(self, db: PostgresDatabase):
        self.db = db

    async def save(self, issue_number: int, artifact_type: str, content: str) -> str:
        _check_type(artifact_type)
        try:
            async with self.db.pool.acquire() as conn:
                await conn.execute(
                    """
                    INSERT INTO artifacts (issue_number, artifact_type, content, updated_at)
                    VALUES ($1, $2, $3, NOW())
                    ON CONFLICT (issue_number, artifact_type) DO UPDATE SET
                        content = EXCLUDED.content,
                        updated_at = EXCLUDED.updated_at
                    """,
                    issue_number,
                    artifact_type,
                    content,
                )
        except Exception as e:
            logger.error(
                "Failed to save artifact",
                extra={
                    "issue_number": issue_number,
                    "artifact_type": artifact_type,
                    "error": str(e),
                },
            )
            raise DatabaseError(f"Failed to save artifact: {e}", original_error=e) from e

        logger.info(
            "Saved artifact",
            extra={
                "issue_number": issue_number,
                "artifact_type": artifact_type,
                "length": len(content),
            },
        )
        return artifact_locator(issue_number, artifact_type)

    async def read(self, issue_number: int, artifact_type: str) -> Optional[str]:
        _check_type(artifact_type)
        try:
            async with self.db.pool.acquire() as conn:
                return await conn.fetchval(
                    """
                    SELECT content FROM artifacts
                    WHERE issue_number = $1 AND artifact_type = $2
                    """,
                    issue_number,
                    artifact_type,
                )
        except Exception as e:
            logger.error(
                "Failed to read artifact",
                extra={
                    "issue_number": issue_number,
                    "artifact_type": artifact_type,
                    "error": str(e),
                },
            )
            raise DatabaseError(f"Failed to read artifact: {e}", original_error=e) from e

    async def delete(self, issue_number: int, artifact_type: Optional[str] = None) -> None:
        if artifact_type is not None:
            _check_type(artifact_type)
        try:
            async with self.db.pool.acquire() as conn:
                if artifact_type is None:
                    await conn.execute(
                        "DELETE FROM artifacts WHERE issue_number = $1", issue_number
                    )
                else:
                    await conn.execute(
                        "DELETE FROM artifacts WHERE issue_number = $1 AND artifact_type = $2",
                        issue_number,
                        artifact_type,
                    )
        except Exception as e:
            logger.error(
                "Failed to delete artifact",
                extra={
                    "issue_number": issue_number,
                    "artifact_type": artifact_type,
                    "error": str(e),
                },
            )
            raise DatabaseError(f"Failed to delete artifact: {e}", original_error=e) from e
