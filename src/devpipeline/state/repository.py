"""PostgreSQL persistence for work items and intake records.

This module implements the WorkItemRepository and IntakeRepository protocols
using asyncpg. It provides:
- A shared connection pool (PostgresDatabase) used by every repository
- JSONB columns for artifacts, labels and history
- Upsert semantics (last write wins) for work item records

The schema lives in migrations/001_work_items.sql and must be applied
before use.
"""

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, List, Optional

import asyncpg

from src.devpipeline.state.models import (
    HistoryEntry,
    IntakeRecord,
    IntakeStatus,
    ItemType,
    ReviewStatus,
    SourceRef,
    WorkItemArtifacts,
    WorkItemRecord,
    WorkItemStatus,
)


logger = logging.getLogger(__name__)


class DatabaseError(Exception):
    """Raised when a database operation fails.

    Attributes:
        message: Human-readable error description.
        original_error: The underlying exception, if any.
    """

    def __init__(
        self,
        message: str,
        original_error: Optional[Exception] = None,
    ):
        self.message = message
        self.original_error = original_error
        super().__init__(message)


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _json_value(raw: Any) -> Any:
    # asyncpg returns JSONB as text unless a codec is registered
    if isinstance(raw, str):
        return json.loads(raw)
    return raw


class PostgresDatabase:
    """Owns the asyncpg pool shared by the repositories.

    Example:
        >>> async with PostgresDatabase("postgresql://...") as db:
        ...     items = PostgresWorkItemRepository(db)
        ...     record = await items.get("abc")
    """

    def __init__(
        self,
        connection_string: str,
        min_pool_size: int = 2,
        max_pool_size: int = 10,
    ):
        self.connection_string = connection_string
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: Optional[asyncpg.Pool] = None

    @property
    def pool(self) -> asyncpg.Pool:
        """Get the connection pool, raising if not connected.

        Raises:
            DatabaseError: If the pool is not initialized.
        """
        if self._pool is None:
            raise DatabaseError(
                "Database pool not initialized. Call connect() first."
            )
        return self._pool

    async def connect(self) -> None:
        """Initialize the connection pool.

        Raises:
            DatabaseError: If connection fails.
        """
        if self._pool is not None:
            logger.warning("Connection pool already initialized")
            return

        try:
            logger.info(
                "Connecting to PostgreSQL",
                extra={
                    "min_pool_size": self.min_pool_size,
                    "max_pool_size": self.max_pool_size,
                },
            )
            self._pool = await asyncpg.create_pool(
                self.connection_string,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
            )
            logger.info("PostgreSQL connection pool established")
        except Exception as e:
            logger.error(
                "Failed to connect to PostgreSQL",
                extra={"error": str(e)},
            )
            raise DatabaseError(
                f"Failed to connect to PostgreSQL: {e}",
                original_error=e,
            ) from e

    async def disconnect(self) -> None:
        """Close the connection pool."""
        if self._pool is not None:
            logger.info("Closing PostgreSQL connection pool")
            await self._pool.close()
            self._pool = None

    async def __aenter__(self) -> "PostgresDatabase":
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.disconnect()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[asyncpg.Connection]:
        """Yield a connection with an active transaction."""
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                yield conn

    async def health_check(self) -> bool:
        """Check if the database connection is healthy."""
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                return True
        except Exception as e:
            logger.warning(
                "Database health check failed",
                extra={"error": str(e)},
            )
            return False


_WORK_ITEM_COLUMNS = """
    id,
    type,
    title,
    description,
    status,
    review_status,
    implementation_phase,
    github_issue_number,
    github_issue_url,
    github_project_item_id,
    source_collection,
    source_id,
    artifacts,
    labels,
    history,
    created_at,
    updated_at
"""


class PostgresWorkItemRepository:
    """PostgreSQL implementation of the WorkItemRepository protocol."""

    def __init__(self, db: PostgresDatabase):
        self.db = db

    @staticmethod
    def _row_to_record(row: asyncpg.Record) -> WorkItemRecord:
        source_ref = None
        if row["source_collection"] and row["source_id"]:
            source_ref = SourceRef(collection=row["source_collection"], id=row["source_id"])

        return WorkItemRecord(
            id=row["id"],
            type=ItemType(row["type"]),
            title=row["title"],
            description=row["description"],
            status=WorkItemStatus(row["status"]) if row["status"] else None,
            review_status=ReviewStatus(row["review_status"]) if row["review_status"] else None,
            implementation_phase=row["implementation_phase"],
            github_issue_number=row["github_issue_number"],
            github_issue_url=row["github_issue_url"],
            github_project_item_id=row["github_project_item_id"],
            source_ref=source_ref,
            artifacts=WorkItemArtifacts.model_validate(_json_value(row["artifacts"]) or {}),
            labels=_json_value(row["labels"]) or [],
            history=[HistoryEntry.model_validate(h) for h in _json_value(row["history"]) or []],
            created_at=_utc(row["created_at"]),
            updated_at=_utc(row["updated_at"]),
        )

    async def _fetch_one(self, where: str, *args: Any) -> Optional[WorkItemRecord]:
        try:
            async with self.db.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"SELECT {_WORK_ITEM_COLUMNS} FROM work_items WHERE {where}",
                    *args,
                )
        except DatabaseError:
            raise
        except Exception as e:
            logger.error(
                "Failed to get work item",
                extra={"where": where, "error": str(e)},
            )
            raise DatabaseError(f"Failed to get work item: {e}", original_error=e) from e
        return self._row_to_record(row) if row else None

    async def get(self, item_id: str) -> Optional[WorkItemRecord]:
        return await self._fetch_one("id = $1", item_id)

    async def find_by_issue_number(self, issue_number: int) -> Optional[WorkItemRecord]:
        return await self._fetch_one("github_issue_number = $1", issue_number)

    async def find_by_source_ref(self, collection: str, source_id: str) -> Optional[WorkItemRecord]:
        return await self._fetch_one(
            "source_collection = $1 AND source_id = $2", collection, source_id
        )

    async def list_items(
        self,
        status: Optional[WorkItemStatus] = None,
        review_status: Optional[ReviewStatus] = None,
        limit: Optional[int] = None,
    ) -> List[WorkItemRecord]:
        """List records ordered by creation time.

        Args:
            status: Only records in this status.
            review_status: Only records with this review status.
            limit: Maximum number of records.

        Raises:
            DatabaseError: If the query fails.
        """
        clauses: List[str] = []
        args: List[Any] = []
        if status is not None:
            args.append(status.value)
            clauses.append(f"status = ${len(args)}")
        if review_status is not None:
            args.append(review_status.value)
            clauses.append(f"review_status = ${len(args)}")

        query = f"SELECT {_WORK_ITEM_COLUMNS} FROM work_items"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at ASC"
        if limit is not None:
            args.append(limit)
            query += f" LIMIT ${len(args)}"

        try:
            async with self.db.pool.acquire() as conn:
                rows = await conn.fetch(query, *args)
        except DatabaseError:
            raise
        except Exception as e:
            logger.error(
                "Failed to list work items",
                extra={
                    "status": status.value if status else None,
                    "review_status": review_status.value if review_status else None,
                    "error": str(e),
                },
            )
            raise DatabaseError(f"Failed to list work items: {e}", original_error=e) from e

        return [self._row_to_record(row) for row in rows]

    async def save(self, record: WorkItemRecord) -> WorkItemRecord:
        """Insert or replace a work item record.

        Raises:
            DatabaseError: If the write fails.
        """
        source = record.source_ref
        try:
            async with self.db.transaction() as conn:
                await conn.execute(
                    f"""
                    INSERT INTO work_items ({_WORK_ITEM_COLUMNS})
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12,
                            $13, $14, $15, $16, $17)
                    ON CONFLICT (id) DO UPDATE SET
                        type = EXCLUDED.type,
                        title = EXCLUDED.title,
                        description = EXCLUDED.description,
                        status = EXCLUDED.status,
                        review_status = EXCLUDED.review_status,
                        implementation_phase = EXCLUDED.implementation_phase,
                        github_issue_number = EXCLUDED.github_issue_number,
                        github_issue_url = EXCLUDED.github_issue_url,
                        github_project_item_id = EXCLUDED.github_project_item_id,
                        source_collection = EXCLUDED.source_collection,
                        source_id = EXCLUDED.source_id,
                        artifacts = EXCLUDED.artifacts,
                        labels = EXCLUDED.labels,
                        history = EXCLUDED.history,
                        updated_at = EXCLUDED.updated_at
                    """,
                    record.id,
                    record.type.value,
                    record.title,
                    record.description,
                    record.status.value if record.status else None,
                    record.review_status.value if record.review_status else None,
                    record.implementation_phase,
                    record.github_issue_number,
                    record.github_issue_url,
                    record.github_project_item_id,
                    source.collection if source else None,
                    source.id if source else None,
                    record.artifacts.model_dump_json(by_alias=False),
                    json.dumps(record.labels),
                    json.dumps([h.model_dump(mode="json") for h in record.history]),
                    record.created_at,
                    record.updated_at,
                )
        except Exception as e:
            logger.error(
                "Failed to save work item",
                extra={"item_id": record.id, "error": str(e)},
            )
            raise DatabaseError(f"Failed to save work item: {e}", original_error=e) from e

        logger.debug(
            "Saved work item",
            extra={
                "item_id": record.id,
                "status": record.status.value if record.status else None,
            },
        )
        return record

    async def delete(self, item_id: str) -> bool:
        try:
            async with self.db.pool.acquire() as conn:
                result = await conn.execute("DELETE FROM work_items WHERE id = $1", item_id)
        except Exception as e:
            logger.error(
                "Failed to delete work item",
                extra={"item_id": item_id, "error": str(e)},
            )
            raise DatabaseError(f"Failed to delete work item: {e}", original_error=e) from e

        deleted = int(result.split()[-1]) > 0
        if deleted:
            logger.info("Deleted work item", extra={"item_id": item_id})
        return deleted

    async def append_history(self, item_id: str, entry: HistoryEntry) -> None:
        """Append an audit entry without rewriting the rest of the record."""
        try:
            async with self.db.pool.acquire() as conn:
                await conn.execute(
                    """
                    UPDATE work_items
                    SET history = history || $2::jsonb, updated_at = NOW()
                    WHERE id = $1
                    """,
                    item_id,
                    json.dumps([entry.model_dump(mode="json")]),
                )
        except Exception as e:
            logger.error(
                "Failed to append work item history",
                extra={"item_id": item_id, "action": entry.action, "error": str(e)},
            )
            raise DatabaseError(
                f"Failed to append work item history: {e}", original_error=e
            ) from e


class PostgresIntakeRepository:
    """PostgreSQL implementation of the IntakeRepository protocol."""

    def __init__(self, db: PostgresDatabase):
        self.db = db

    @staticmethod
    def _row_to_record(row: asyncpg.Record) -> IntakeRecord:
        return IntakeRecord(
            id=row["id"],
            collection=row["collection"],
            title=row["title"],
            description=row["description"],
            status=IntakeStatus(row["status"]),
            github_issue_number=row["github_issue_number"],
            github_issue_url=row["github_issue_url"],
            created_at=_utc(row["created_at"]),
        )

    async def _fetch_one(self, where: str, *args: Any) -> Optional[IntakeRecord]:
        try:
            async with self.db.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"""
                    SELECT collection, id, title, description, status,
                           github_issue_number, github_issue_url, created_at
                    FROM intake_records
                    WHERE {where}
                    """,
                    *args,
                )
        except DatabaseError:
            raise
        except Exception as e:
            logger.error(
                "Failed to get intake record",
                extra={"where": where, "error": str(e)},
            )
            raise DatabaseError(f"Failed to get intake record: {e}", original_error=e) from e
        return self._row_to_record(row) if row else None

    async def get(self, collection: str, record_id: str) -> Optional[IntakeRecord]:
        return await self._fetch_one("collection = $1 AND id = $2", collection, record_id)

    async def find_by_issue_number(self, issue_number: int) -> Optional[IntakeRecord]:
        return await self._fetch_one("github_issue_number = $1", issue_number)

    async def save(self, record: IntakeRecord) -> IntakeRecord:
        try:
            async with self.db.pool.acquire() as conn:
                await conn.execute(
                    """
                    INSERT INTO intake_records (
                        collection, id, title, description, status,
                        github_issue_number, github_issue_url, created_at
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                    ON CONFLICT (collection, id) DO UPDATE SET
                        title = EXCLUDED.title,
                        description = EXCLUDED.description,
                        status = EXCLUDED.status,
                        github_issue_number = EXCLUDED.github_issue_number,
                        github_issue_url = EXCLUDED.github_issue_url
                    """,
                    record.collection,
                    record.id,
                    record.title,
                    record.description,
                    record.status.value,
                    record.github_issue_number,
                    record.github_issue_url,
                    record.created_at,
                )
        except Exception as e:
            logger.error(
                "Failed to save intake record",
                extra={"collection": record.collection, "record_id": record.id, "error": str(e)},
            )
            raise DatabaseError(f"Failed to save intake record: {e}", original_error=e) from e
        return record

    async def update_status(self, collection: str, record_id: str, status: IntakeStatus) -> None:
        try:
            async with self.db.pool.acquire() as conn:
                await conn.execute(
                    "UPDATE intake_records SET status = $3 WHERE collection = $1 AND id = $2",
                    collection,
                    record_id,
                    status.value,
                )
        except Exception as e:
            logger.error(
                "Failed to update intake status",
                extra={
                    "collection": collection,
                    "record_id": record_id,
                    "status": status.value,
                    "error": str(e),
                },
            )
            raise DatabaseError(f"Failed to update intake status: {e}", original_error=e) from e

    async def delete(self, collection: str, record_id: str) -> bool:
        try:
            async with self.db.pool.acquire() as conn:
                result = await conn.execute(
                    "DELETE FROM intake_records WHERE collection = $1 AND id = $2",
                    collection,
                    record_id,
                )
        except Exception as e:
            logger.error(
                "Failed to delete intake record",
                extra={"collection": collection, "record_id": record_id, "error": str(e)},
            )
            raise DatabaseError(f"Failed to delete intake record: {e}", original_error=e) from e
        return int(result.split()[-1]) > 0
