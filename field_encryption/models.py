"""
Data structures shared across the field encryption components.

This module provides:
- RecordCoordinate: Identifies one logical set of field values
- QueueStatus / QueueEntry: Pending outbound messages owned by the scheduler
- MessageTemplate: Sender, subject and body referenced by a queue entry
- Attachment / OutboundEmail: A message handed to the mail transport
- EncryptionStatus / EncryptionOutcome: Result of one record encryption pass
- BatchResult: Aggregate result of one delivery queue run
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional, Tuple

from .errors import StorageError


# =============================================================================
# Record Coordinates
# =============================================================================


@dataclass(frozen=True)
class RecordCoordinate:
    """
    (project, record, event, repeat instance) of one logical record.

    Non-repeating data is instance 1; ``RecordCoordinate.of`` normalizes the
    empty/zero instance the platform passes for it.
    """

    project_id: int
    record: str
    event_id: int
    instance: int = 1

    @classmethod
    def of(
        cls,
        project_id: int,
        record: str,
        event_id: int,
        instance: Optional[int] = None,
    ) -> RecordCoordinate:
        """Build a coordinate, treating a missing or zero instance as 1."""
        return cls(
            project_id=int(project_id),
            record=str(record),
            event_id=int(event_id),
            instance=int(instance) if instance else 1,
        )

    @property
    def is_repeating(self) -> bool:
        return self.instance > 1

    def __str__(self) -> str:
        return f"{self.project_id}:{self.record}:{self.event_id}:{self.instance}"


# =============================================================================
# Delivery Queue
# =============================================================================


class QueueStatus(Enum):
    """Queue entry status (matches database ENUM)."""

    QUEUED = "QUEUED"  # Waiting for its scheduled time
    SENT = "SENT"  # Delivered to the mail transport
    FAILED_RETRYABLE = "FAILED_RETRYABLE"  # Last attempt failed, picked up again next run

    def __str__(self) -> str:
        return self.value

    @classmethod
    def from_str(cls, s: str) -> QueueStatus:
        """Parse from string."""
        try:
            return cls(s.upper())
        except ValueError:
            raise StorageError(f"Invalid queue status: {s}")


DELIVERABLE_STATUSES: Tuple[QueueStatus, ...] = (
    QueueStatus.QUEUED,
    QueueStatus.FAILED_RETRYABLE,
)


@dataclass
class QueueEntry:
    """Pending outbound message created by the platform's scheduler."""

    id: int
    coordinate: RecordCoordinate
    recipient: str  # Placeholder or plaintext address
    scheduled_at: datetime
    template_id: int
    participant_token: str  # Unique per participant, builds the survey link
    status: QueueStatus = QueueStatus.QUEUED
    failure_reason: Optional[str] = None
    sent_at: Optional[datetime] = None
    attempts: int = 0
    claim_token: Optional[str] = None  # Set by claim_due; identifies the claiming run

    @property
    def is_deliverable(self) -> bool:
        return self.status in DELIVERABLE_STATUSES


@dataclass
class MessageTemplate:
    """Invitation/reminder template referenced by queue entries."""

    id: int
    sender: str
    subject: str
    body: str


@dataclass
class Attachment:
    """File attached to an outbound message."""

    filename: str
    content: bytes
    mime_type: str = "application/octet-stream"

    def __repr__(self) -> str:
        return f"Attachment(filename={self.filename!r}, size={len(self.content)})"


@dataclass
class OutboundEmail:
    """A message handed to the mail transport."""

    to: str
    sender: str
    subject: str
    body: str
    cc: str = ""
    bcc: str = ""
    sender_name: str = ""
    project_id: Optional[int] = None
    attachments: List[Attachment] = field(default_factory=list)

    def __repr__(self) -> str:
        # Recipients may be decrypted addresses
        return f"OutboundEmail(subject={self.subject[:50]!r}, project_id={self.project_id})"


# =============================================================================
# Results
# =============================================================================


class EncryptionStatus(Enum):
    """Result of one record encryption pass."""

    ENCRYPTED = "ENCRYPTED"  # At least one field was encrypted and written
    UNCHANGED = "UNCHANGED"  # Nothing eligible (empty, absent or already encrypted)
    SKIPPED_IN_FLIGHT = "SKIPPED_IN_FLIGHT"  # Coordinate already being processed
    RECORD_NOT_FOUND = "RECORD_NOT_FOUND"  # Store returned no data for the coordinate
    WRITE_NOT_APPLIED = "WRITE_NOT_APPLIED"  # Store reported zero rows affected
    FAILED = "FAILED"  # Fetch, encrypt or write raised

    def __str__(self) -> str:
        return self.value


@dataclass
class EncryptionOutcome:
    """Result of ``RecordEncryptor.encrypt_record``."""

    coordinate: RecordCoordinate
    status: EncryptionStatus
    fields_encrypted: List[str] = field(default_factory=list)
    error: Optional[str] = None  # Error class and message, never field values

    @property
    def ok(self) -> bool:
        return self.status not in (EncryptionStatus.FAILED, EncryptionStatus.WRITE_NOT_APPLIED)


@dataclass
class BatchResult:
    """Aggregate result of one delivery queue run."""

    claimed: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0  # Claim taken over by another worker before delivery

    def __str__(self) -> str:
        return (
            f"claimed={self.claimed} sent={self.sent} failed={self.failed} "
            f"skipped={self.skipped}"
        )
