"""
Write-path encryption of tagged fields.

``RecordEncryptor.encrypt_record`` runs after a record is saved or a survey is
completed. It reads the coordinate's current values once, encrypts every tagged
field that holds a non-empty plaintext value and writes back only those
fields. Values that already have the placeholder shape are never touched, so a
second pass over the same record changes nothing.

Failures are returned as an ``EncryptionOutcome`` rather than raised; the hook
boundary decides what to do with them.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable

from .codec import FieldCodec
from .errors import FieldEncryptionError
from .guard import ReentrancyGuard
from .logging_config import describe_error
from .models import EncryptionOutcome, EncryptionStatus, RecordCoordinate
from .storage import AuditLog, RecordStore

logger = logging.getLogger(__name__)

AUDIT_CATEGORY = "Field Encryption Module"


class RecordEncryptor:
    """Encrypt the tagged fields of one record coordinate, exactly once."""

    def __init__(
        self,
        codec: FieldCodec,
        records: RecordStore,
        guard: ReentrancyGuard,
        audit: AuditLog,
    ) -> None:
        self._codec = codec
        self._records = records
        self._guard = guard
        self._audit = audit

    async def encrypt_record(
        self, coord: RecordCoordinate, tagged_fields: Iterable[str]
    ) -> EncryptionOutcome:
        """
        Encrypt eligible tagged fields of ``coord``.

        Args:
            coord: Record coordinate that triggered the pass
            tagged_fields: Field names carrying the encryption tag

        Returns:
            EncryptionOutcome; never raises for fetch, encrypt or write failures
        """
        with self._guard.hold(coord) as acquired:
            if not acquired:
                logger.info("Skipping %s: already being processed", coord)
                return EncryptionOutcome(coord, EncryptionStatus.SKIPPED_IN_FLIGHT)

            try:
                return await self._encrypt(coord, list(tagged_fields))
            except FieldEncryptionError as e:
                logger.error("Encryption failed for %s: %s", coord, describe_error(e))
                return EncryptionOutcome(coord, EncryptionStatus.FAILED, error=describe_error(e))
            except Exception as e:
                logger.exception("Unexpected error encrypting %s", coord)
                return EncryptionOutcome(coord, EncryptionStatus.FAILED, error=describe_error(e))

    async def _encrypt(self, coord: RecordCoordinate, tagged_fields: list) -> EncryptionOutcome:
        if not tagged_fields:
            return EncryptionOutcome(coord, EncryptionStatus.UNCHANGED)

        values = await self._records.read_record(coord)
        if not values:
            logger.warning("No stored data for %s", coord)
            return EncryptionOutcome(coord, EncryptionStatus.RECORD_NOT_FOUND)

        changes: Dict[str, str] = {}
        for field_name in tagged_fields:
            value = values.get(field_name)
            if not value or self._codec.is_encrypted(value):
                continue
            changes[field_name] = self._codec.encrypt(str(value))

        if not changes:
            logger.debug("Nothing to encrypt for %s", coord)
            return EncryptionOutcome(coord, EncryptionStatus.UNCHANGED)

        fields = list(changes)
        affected = await self._records.write_fields(coord, changes)
        if affected == 0:
            logger.warning(
                "Write of encrypted fields %s for %s affected no rows; not retrying",
                fields,
                coord,
            )
            return EncryptionOutcome(coord, EncryptionStatus.WRITE_NOT_APPLIED, fields_encrypted=fields)

        logger.info("Encrypted %d field(s) for %s: %s", len(fields), coord, fields)
        await self._record_audit(coord, fields)
        return EncryptionOutcome(coord, EncryptionStatus.ENCRYPTED, fields_encrypted=fields)

    async def _record_audit(self, coord: RecordCoordinate, fields: list) -> None:
        try:
            await self._audit.log_event(
                AUDIT_CATEGORY,
                "Encrypted fields: " + ", ".join(fields),
                project_id=coord.project_id,
                record=coord.record,
            )
        except FieldEncryptionError as e:
            # Values are already encrypted at this point
            logger.warning("Audit entry for %s not recorded: %s", coord, describe_error(e))
