"""
Storage abstractions for the host platform's data.

This module provides:
- FieldMetadataSource: Field annotations from the project's data dictionary
- RecordStore: Read/write of field values by record coordinate
- QueueStore: Pending outbound messages (claim, hold, mark sent, mark failed)
- TemplateStore: Message templates referenced by queue entries
- AuditLog: Platform audit trail
- In-memory implementations of each, for testing

All methods are async to support both in-memory and database backends.
"""

from __future__ import annotations

import asyncio
import secrets
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import (
    AsyncContextManager,
    AsyncIterator,
    Dict,
    List,
    Mapping,
    Optional,
    Set,
    Tuple,
)

from .codec import is_encrypted
from .errors import StorageError, TemplateNotFoundError
from .models import (
    DELIVERABLE_STATUSES,
    MessageTemplate,
    QueueEntry,
    QueueStatus,
    RecordCoordinate,
)


# =============================================================================
# Interfaces
# =============================================================================


class FieldMetadataSource(ABC):
    """Data dictionary lookup."""

    @abstractmethod
    async def get_field_annotations(self, project_id: int) -> List[Tuple[str, str]]:
        """Return (field_name, annotation) pairs in dictionary order."""
        ...


class RecordStore(ABC):
    """Field values keyed by record coordinate."""

    @abstractmethod
    async def read_record(self, coord: RecordCoordinate) -> Optional[Dict[str, str]]:
        """
        Fetch all field values stored for one coordinate.

        For ``coord.instance > 1`` only that repeat instance's values are
        returned. Returns None if nothing is stored for the coordinate.
        """
        ...

    @abstractmethod
    async def write_fields(self, coord: RecordCoordinate, changes: Mapping[str, str]) -> int:
        """
        Overwrite the given fields of exactly this coordinate.

        Values are written as-is, without field validation. Returns the number
        of field values updated.
        """
        ...


class QueueClaim(ABC):
    """
    Exclusive hold on one claimed entry while it is delivered.

    Obtained from ``QueueStore.hold``. While held, no other worker can claim
    the entry, even after its lease has expired.
    """

    @abstractmethod
    async def mark_sent(self, sent_at: datetime) -> None:
        """Set status SENT, record ``sent_at``, clear the failure reason and claim."""
        ...

    @abstractmethod
    async def mark_failed(self, reason: str) -> None:
        """Set status FAILED_RETRYABLE with ``reason`` and release the claim."""
        ...


class QueueStore(ABC):
    """Persisted queue of pending outbound messages."""

    @abstractmethod
    async def claim_due(
        self, now: datetime, limit: int, lease: timedelta
    ) -> List[QueueEntry]:
        """
        Atomically claim deliverable entries addressed to placeholders.

        Selects entries with ``scheduled_at <= now``, status QUEUED or
        FAILED_RETRYABLE and an encrypted recipient that are neither leased nor
        held by another worker, oldest first, at most ``limit``. Claimed
        entries are leased until ``now + lease`` and carry a fresh
        ``claim_token``.
        """
        ...

    @abstractmethod
    def hold(self, entry: QueueEntry) -> AsyncContextManager[Optional[QueueClaim]]:
        """
        Lock a claimed entry for delivery.

        Yields a QueueClaim if ``entry.claim_token`` is still the entry's
        current claim, or None if another worker has claimed it since (after
        the lease expired) or it is no longer deliverable. The hold is released
        on exit.
        """
        ...

    @abstractmethod
    async def get_entry(self, entry_id: int) -> Optional[QueueEntry]:
        """Get an entry by ID."""
        ...


class TemplateStore(ABC):
    """Invitation/reminder templates."""

    @abstractmethod
    async def get_template(self, template_id: int) -> MessageTemplate:
        """
        Get a template by ID.

        Raises:
            TemplateNotFoundError: If no template has this ID
        """
        ...


class AuditLog(ABC):
    """Platform audit trail. Never receives plaintext values or key material."""

    @abstractmethod
    async def log_event(
        self,
        category: str,
        message: str,
        project_id: Optional[int] = None,
        record: Optional[str] = None,
    ) -> None:
        """Append an audit entry."""
        ...


# =============================================================================
# In-Memory Implementations
# =============================================================================


class InMemoryFieldMetadata(FieldMetadataSource):
    """Data dictionaries held in memory, keyed by project."""

    def __init__(self) -> None:
        self._dictionaries: Dict[int, List[Tuple[str, str]]] = {}

    def set_dictionary(self, project_id: int, fields: List[Tuple[str, str]]) -> None:
        self._dictionaries[project_id] = list(fields)

    async def get_field_annotations(self, project_id: int) -> List[Tuple[str, str]]:
        return list(self._dictionaries.get(project_id, []))


class InMemoryRecordStore(RecordStore):
    """
    Thread-safe in-memory record store for testing.

    Uses asyncio.Lock for safe concurrent access. Writes only update
    coordinates that already hold data, like an update statement would.
    """

    def __init__(self) -> None:
        self._records: Dict[RecordCoordinate, Dict[str, str]] = {}
        self._lock = asyncio.Lock()
        self.reads = 0
        self.writes = 0

    def put(self, coord: RecordCoordinate, values: Mapping[str, str]) -> None:
        """Seed values for a coordinate (as a participant submission would)."""
        self._records.setdefault(coord, {}).update(values)

    def snapshot(self, coord: RecordCoordinate) -> Dict[str, str]:
        return dict(self._records.get(coord, {}))

    async def read_record(self, coord: RecordCoordinate) -> Optional[Dict[str, str]]:
        async with self._lock:
            self.reads += 1
            values = self._records.get(coord)
            return dict(values) if values is not None else None

    async def write_fields(self, coord: RecordCoordinate, changes: Mapping[str, str]) -> int:
        async with self._lock:
            self.writes += 1
            values = self._records.get(coord)
            if values is None:
                return 0
            values.update(changes)
            return len(changes)


class _InMemoryQueueClaim(QueueClaim):
    def __init__(self, store: InMemoryQueueStore, entry_id: int) -> None:
        self._store = store
        self._entry_id = entry_id

    async def mark_sent(self, sent_at: datetime) -> None:
        async with self._store._lock:
            entry = self._store._release(self._entry_id)
            entry.status = QueueStatus.SENT
            entry.sent_at = sent_at
            entry.failure_reason = None

    async def mark_failed(self, reason: str) -> None:
        async with self._store._lock:
            entry = self._store._release(self._entry_id)
            entry.status = QueueStatus.FAILED_RETRYABLE
            entry.failure_reason = reason


class InMemoryQueueStore(QueueStore):
    """
    Thread-safe in-memory delivery queue for testing.

    Claiming happens under the lock, so overlapping claims never return the
    same entry twice. Held entries are skipped by ``claim_due`` the way
    PostgreSQL's SKIP LOCKED skips row locks.
    """

    def __init__(self) -> None:
        self._entries: Dict[int, QueueEntry] = {}
        self._claimed_until: Dict[int, datetime] = {}
        self._claim_tokens: Dict[int, str] = {}
        self._held: Set[int] = set()
        self._lock = asyncio.Lock()

    def add(self, entry: QueueEntry) -> None:
        """Enqueue an entry (as the platform's scheduler would)."""
        self._entries[entry.id] = replace(entry)

    def claimed_until(self, entry_id: int) -> Optional[datetime]:
        return self._claimed_until.get(entry_id)

    async def claim_due(
        self, now: datetime, limit: int, lease: timedelta
    ) -> List[QueueEntry]:
        async with self._lock:
            due = [
                entry
                for entry in self._entries.values()
                if entry.scheduled_at <= now
                and entry.status in DELIVERABLE_STATUSES
                and is_encrypted(entry.recipient)
                and entry.id not in self._held
                and not self._is_leased(entry.id, now)
            ]
            due.sort(key=lambda e: (e.scheduled_at, e.id))
            token = secrets.token_hex(16)
            claimed = due[:limit]
            for entry in claimed:
                self._claimed_until[entry.id] = now + lease
                self._claim_tokens[entry.id] = token
            return [replace(entry, claim_token=token) for entry in claimed]

    @asynccontextmanager
    async def hold(self, entry: QueueEntry) -> AsyncIterator[Optional[QueueClaim]]:
        async with self._lock:
            current = self._entries.get(entry.id)
            acquired = (
                current is not None
                and current.status in DELIVERABLE_STATUSES
                and entry.id not in self._held
                and entry.claim_token is not None
                and self._claim_tokens.get(entry.id) == entry.claim_token
            )
            if acquired:
                self._held.add(entry.id)

        if not acquired:
            yield None
            return
        try:
            yield _InMemoryQueueClaim(self, entry.id)
        finally:
            async with self._lock:
                self._held.discard(entry.id)

    async def get_entry(self, entry_id: int) -> Optional[QueueEntry]:
        async with self._lock:
            entry = self._entries.get(entry_id)
            return replace(entry) if entry is not None else None

    def _is_leased(self, entry_id: int, now: datetime) -> bool:
        until = self._claimed_until.get(entry_id)
        return until is not None and until > now

    def _release(self, entry_id: int) -> QueueEntry:
        """Count the attempt and drop lease and claim token. Caller holds the lock."""
        entry = self._entries.get(entry_id)
        if entry is None:
            raise StorageError(f"Queue entry not found: {entry_id}")
        entry.attempts += 1
        self._claimed_until.pop(entry_id, None)
        self._claim_tokens.pop(entry_id, None)
        return entry


class InMemoryTemplateStore(TemplateStore):
    """Templates held in memory."""

    def __init__(self) -> None:
        self._templates: Dict[int, MessageTemplate] = {}

    def add(self, template: MessageTemplate) -> None:
        self._templates[template.id] = template

    async def get_template(self, template_id: int) -> MessageTemplate:
        template = self._templates.get(template_id)
        if template is None:
            raise TemplateNotFoundError(f"Message template not found: {template_id}")
        return template


@dataclass
class AuditEvent:
    """One audit entry as recorded by ``InMemoryAuditLog``."""

    category: str
    message: str
    project_id: Optional[int] = None
    record: Optional[str] = None


class InMemoryAuditLog(AuditLog):
    """Audit entries collected in a list."""

    def __init__(self) -> None:
        self.events: List[AuditEvent] = []

    async def log_event(
        self,
        category: str,
        message: str,
        project_id: Optional[int] = None,
        record: Optional[str] = None,
    ) -> None:
        self.events.append(AuditEvent(category, message, project_id, record))
