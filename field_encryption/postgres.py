"""
PostgreSQL storage backends.

This module provides asyncpg implementations of the storage interfaces:
- PostgresFieldMetadata: Data dictionary annotations (field_metadata)
- PostgresRecordStore: Field values, one row per field (record_data)
- PostgresQueueStore: Delivery queue with claim leases (delivery_queue)
- PostgresTemplateStore: Message templates (message_templates)
- PostgresAuditLog: Audit trail (audit_log)

Tables are defined in schema.sql.

Queue claiming:
- Due rows are locked with FOR UPDATE SKIP LOCKED and leased by setting
  claimed_until in the same statement, so overlapping workers never claim the
  same entry
- Each claim stamps a fresh claim_token. Before delivering an entry the worker
  locks its row, checking the token, and keeps the lock until the outcome is
  written. A worker whose lease ran out and was reclaimed by another finds a
  different token and skips the entry
- A worker that dies mid-batch leaves its entries claimable again once the
  lease expires; its row locks go with its connection

Driver error messages are not propagated; only the error class is, so stored
values cannot leak into logs.
"""

from __future__ import annotations

import secrets
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import AsyncIterator, Dict, List, Mapping, Optional, Tuple

import asyncpg

from .codec import PLACEHOLDER_PATTERN
from .errors import StorageError, TemplateNotFoundError
from .models import MessageTemplate, QueueEntry, QueueStatus, RecordCoordinate
from .storage import (
    AuditLog,
    FieldMetadataSource,
    QueueClaim,
    QueueStore,
    RecordStore,
    TemplateStore,
)


# =============================================================================
# Field Metadata
# =============================================================================


class PostgresFieldMetadata(FieldMetadataSource):
    """Data dictionary stored in field_metadata."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def get_field_annotations(self, project_id: int) -> List[Tuple[str, str]]:
        query = """
            SELECT field_name, COALESCE(field_annotation, '') AS field_annotation
            FROM field_metadata
            WHERE project_id = $1
            ORDER BY field_order, field_name
        """
        try:
            rows = await self._pool.fetch(query, project_id)
            return [(row["field_name"], row["field_annotation"]) for row in rows]
        except Exception as e:
            raise StorageError(f"Failed to get field metadata: {type(e).__name__}") from None


# =============================================================================
# Record Data
# =============================================================================


class PostgresRecordStore(RecordStore):
    """Field values stored one row per (coordinate, field) in record_data."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def read_record(self, coord: RecordCoordinate) -> Optional[Dict[str, str]]:
        query = """
            SELECT field_name, value
            FROM record_data
            WHERE project_id = $1 AND record = $2 AND event_id = $3 AND instance = $4
        """
        try:
            rows = await self._pool.fetch(
                query, coord.project_id, coord.record, coord.event_id, coord.instance
            )
        except Exception as e:
            raise StorageError(f"Failed to read record {coord}: {type(e).__name__}") from None
        if not rows:
            return None
        return {row["field_name"]: row["value"] for row in rows}

    async def write_fields(self, coord: RecordCoordinate, changes: Mapping[str, str]) -> int:
        if not changes:
            return 0
        query = """
            UPDATE record_data AS d
            SET value = c.value
            FROM unnest($5::text[], $6::text[]) AS c(field_name, value)
            WHERE d.project_id = $1 AND d.record = $2 AND d.event_id = $3
              AND d.instance = $4 AND d.field_name = c.field_name
        """
        names = list(changes)
        try:
            status = await self._pool.execute(
                query,
                coord.project_id,
                coord.record,
                coord.event_id,
                coord.instance,
                names,
                [changes[name] for name in names],
            )
        except Exception as e:
            raise StorageError(f"Failed to write record {coord}: {type(e).__name__}") from None
        return _affected_rows(status)


# =============================================================================
# Delivery Queue
# =============================================================================


_QUEUE_COLUMNS = """
    entry_id, project_id, record, event_id, instance, recipient, scheduled_at,
    status::TEXT AS status, failure_reason, sent_at, template_id,
    participant_token, attempts, claim_token
"""


class _PostgresQueueClaim(QueueClaim):
    """Row lock on one entry, held in an open transaction on ``conn``."""

    def __init__(self, conn: asyncpg.Connection, entry_id: int) -> None:
        self._conn = conn
        self._entry_id = entry_id

    async def mark_sent(self, sent_at: datetime) -> None:
        query = """
            UPDATE delivery_queue
            SET status = 'SENT'::delivery_status, sent_at = $2, failure_reason = NULL,
                claimed_until = NULL, claim_token = NULL, attempts = attempts + 1
            WHERE entry_id = $1
        """
        await self._update(query, sent_at)

    async def mark_failed(self, reason: str) -> None:
        query = """
            UPDATE delivery_queue
            SET status = 'FAILED_RETRYABLE'::delivery_status, failure_reason = $2,
                claimed_until = NULL, claim_token = NULL, attempts = attempts + 1
            WHERE entry_id = $1
        """
        await self._update(query, reason)

    async def _update(self, query: str, value) -> None:
        try:
            status = await self._conn.execute(query, self._entry_id, value)
        except Exception as e:
            raise StorageError(
                f"Failed to update queue entry {self._entry_id}: {type(e).__name__}"
            ) from None
        if _affected_rows(status) == 0:
            raise StorageError(f"Queue entry not found: {self._entry_id}")


class PostgresQueueStore(QueueStore):
    """Delivery queue stored in delivery_queue."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def claim_due(
        self, now: datetime, limit: int, lease: timedelta
    ) -> List[QueueEntry]:
        query = f"""
            UPDATE delivery_queue AS q
            SET claimed_until = $3, claim_token = $5
            FROM (
                SELECT entry_id
                FROM delivery_queue
                WHERE scheduled_at <= $1
                  AND status IN ('QUEUED', 'FAILED_RETRYABLE')
                  AND recipient ~ $4
                  AND (claimed_until IS NULL OR claimed_until <= $1)
                ORDER BY scheduled_at, entry_id
                LIMIT $2
                FOR UPDATE SKIP LOCKED
            ) AS due
            WHERE q.entry_id = due.entry_id
            RETURNING {_prefixed("q", _QUEUE_COLUMNS)}
        """
        token = secrets.token_hex(16)
        try:
            rows = await self._pool.fetch(
                query, now, limit, now + lease, PLACEHOLDER_PATTERN, token
            )
        except Exception as e:
            raise StorageError(f"Failed to claim queue entries: {type(e).__name__}") from None
        entries = [self._row_to_entry(row) for row in rows]
        # RETURNING does not preserve the subquery's order
        entries.sort(key=lambda entry: (entry.scheduled_at, entry.id))
        return entries

    @asynccontextmanager
    async def hold(self, entry: QueueEntry) -> AsyncIterator[Optional[QueueClaim]]:
        # The row lock lives as long as the transaction; claim_due skips it
        query = """
            SELECT entry_id
            FROM delivery_queue
            WHERE entry_id = $1 AND claim_token = $2
              AND status IN ('QUEUED', 'FAILED_RETRYABLE')
            FOR UPDATE SKIP LOCKED
        """
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                try:
                    row = await conn.fetchrow(query, entry.id, entry.claim_token)
                except Exception as e:
                    raise StorageError(
                        f"Failed to lock queue entry {entry.id}: {type(e).__name__}"
                    ) from None
                yield _PostgresQueueClaim(conn, entry.id) if row is not None else None

    async def get_entry(self, entry_id: int) -> Optional[QueueEntry]:
        query = f"SELECT {_QUEUE_COLUMNS} FROM delivery_queue WHERE entry_id = $1"
        try:
            row = await self._pool.fetchrow(query, entry_id)
        except Exception as e:
            raise StorageError(f"Failed to get queue entry: {type(e).__name__}") from None
        return self._row_to_entry(row) if row is not None else None

    @staticmethod
    def _row_to_entry(row: asyncpg.Record) -> QueueEntry:
        """Convert database row to QueueEntry."""
        return QueueEntry(
            id=row["entry_id"],
            coordinate=RecordCoordinate(
                project_id=row["project_id"],
                record=row["record"],
                event_id=row["event_id"],
                instance=row["instance"],
            ),
            recipient=row["recipient"],
            scheduled_at=row["scheduled_at"],
            template_id=row["template_id"],
            participant_token=row["participant_token"],
            status=QueueStatus.from_str(row["status"]),
            failure_reason=row["failure_reason"],
            sent_at=row["sent_at"],
            attempts=row["attempts"],
            claim_token=row["claim_token"],
        )


# =============================================================================
# Templates and Audit
# =============================================================================


class PostgresTemplateStore(TemplateStore):
    """Message templates stored in message_templates."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def get_template(self, template_id: int) -> MessageTemplate:
        query = """
            SELECT template_id, sender, subject, body
            FROM message_templates
            WHERE template_id = $1
        """
        try:
            row = await self._pool.fetchrow(query, template_id)
        except Exception as e:
            raise StorageError(f"Failed to get message template: {type(e).__name__}") from None
        if row is None:
            raise TemplateNotFoundError(f"Message template not found: {template_id}")
        return MessageTemplate(
            id=row["template_id"],
            sender=row["sender"],
            subject=row["subject"],
            body=row["body"],
        )


class PostgresAuditLog(AuditLog):
    """Audit trail stored in audit_log."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def log_event(
        self,
        category: str,
        message: str,
        project_id: Optional[int] = None,
        record: Optional[str] = None,
    ) -> None:
        query = """
            INSERT INTO audit_log (category, message, project_id, record)
            VALUES ($1, $2, $3, $4)
        """
        try:
            await self._pool.execute(query, category, message, project_id, record)
        except Exception as e:
            raise StorageError(f"Failed to write audit entry: {type(e).__name__}") from None


# =============================================================================
# Helpers
# =============================================================================


def _affected_rows(status: str) -> int:
    """Row count from a command status such as ``UPDATE 3``."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (AttributeError, ValueError):
        return 0


def _prefixed(alias: str, columns: str) -> str:
    """Qualify a column list with a table alias."""
    return ", ".join(f"{alias}.{column.strip()}" for column in columns.split(","))
