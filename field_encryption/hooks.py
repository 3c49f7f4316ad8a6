"""
Platform hook boundary.

``FieldEncryptionModule`` exposes the components behind the hook names the
survey platform calls. This is where error policy is decided:

- save / survey-complete: encryption failures are logged and swallowed so the
  participant's submission always completes
- data entry form / survey page / report: masking only, no key access
- email: outbound intercept, fails open
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .codec import FieldCodec
from .encryptor import RecordEncryptor
from .errors import FieldEncryptionError
from .guard import ReentrancyGuard
from .intercept import OutboundIntercept
from .keys import KeyProvider
from .logging_config import describe_error
from .mailer import Mailer
from .masking import PRIVACY_NOTICE, mask_record, mask_rows, masked_fields
from .metadata import TaggedFieldResolver
from .models import EncryptionOutcome, EncryptionStatus, OutboundEmail, RecordCoordinate
from .storage import AuditLog, FieldMetadataSource, RecordStore

logger = logging.getLogger(__name__)


@dataclass
class MaskedForm:
    """Values to render on a form plus the fields to render read-only."""

    values: Dict[str, Any]
    readonly_fields: List[str] = field(default_factory=list)


class FieldEncryptionModule:
    """Field encryption hooks for one platform installation."""

    def __init__(
        self,
        resolver: TaggedFieldResolver,
        encryptor: RecordEncryptor,
        intercept: OutboundIntercept,
    ) -> None:
        self._resolver = resolver
        self._encryptor = encryptor
        self._intercept = intercept

    @classmethod
    def build(
        cls,
        key_provider: KeyProvider,
        metadata: FieldMetadataSource,
        records: RecordStore,
        audit: AuditLog,
        mailer: Mailer,
        guard: Optional[ReentrancyGuard] = None,
    ) -> FieldEncryptionModule:
        """
        Wire the components from their collaborators.

        Args:
            key_provider: Source of the encryption key, called per operation
            metadata: Data dictionary lookup
            records: Record read/write
            audit: Platform audit trail
            mailer: Send operation for intercepted mail
            guard: Reentrancy guard; a fresh one if not given

        Returns:
            FieldEncryptionModule instance
        """
        codec = FieldCodec(key_provider)
        return cls(
            resolver=TaggedFieldResolver(metadata),
            encryptor=RecordEncryptor(codec, records, guard or ReentrancyGuard(), audit),
            intercept=OutboundIntercept(codec, mailer),
        )

    # -------------------------------------------------------------------------
    # Write path
    # -------------------------------------------------------------------------

    async def on_save_record(
        self,
        project_id: int,
        record: str,
        instrument: str,
        event_id: int,
        repeat_instance: Optional[int] = None,
    ) -> EncryptionOutcome:
        """Triggered when a record is saved from a data entry form."""
        return await self._encrypt(project_id, record, instrument, event_id, repeat_instance)

    async def on_survey_complete(
        self,
        project_id: int,
        record: str,
        instrument: str,
        event_id: int,
        repeat_instance: Optional[int] = None,
    ) -> EncryptionOutcome:
        """Triggered when a participant completes a survey."""
        return await self._encrypt(project_id, record, instrument, event_id, repeat_instance)

    async def _encrypt(
        self,
        project_id: int,
        record: str,
        instrument: str,
        event_id: int,
        repeat_instance: Optional[int],
    ) -> EncryptionOutcome:
        coord = RecordCoordinate.of(project_id, record, event_id, repeat_instance)
        logger.debug("Encryption triggered for %s (instrument %s)", coord, instrument)

        try:
            tagged = await self._resolver.tagged_fields(coord.project_id)
        except FieldEncryptionError as e:
            logger.error("Tagged field lookup failed for %s: %s", coord, describe_error(e))
            return EncryptionOutcome(coord, EncryptionStatus.FAILED, error=describe_error(e))

        if not tagged:
            return EncryptionOutcome(coord, EncryptionStatus.UNCHANGED)

        outcome = await self._encryptor.encrypt_record(coord, tagged)
        if not outcome.ok:
            # Submission carries on; the value stays as submitted until the next save
            logger.error("Record %s left unencrypted (%s)", coord, outcome.status)
        return outcome

    # -------------------------------------------------------------------------
    # Read surfaces
    # -------------------------------------------------------------------------

    async def on_data_entry_form_top(self, project_id: int) -> Optional[str]:
        """Privacy notice shown above forms of projects with encrypted fields."""
        tagged = await self._resolver.tagged_fields(project_id)
        return PRIVACY_NOTICE if tagged else None

    async def on_data_entry_form(self, project_id: int, values: Mapping[str, Any]) -> MaskedForm:
        """Mask encrypted values on a data entry form."""
        return await self._mask_form(project_id, values)

    async def on_survey_page(self, project_id: int, values: Mapping[str, Any]) -> MaskedForm:
        """Mask encrypted values on a survey page."""
        return await self._mask_form(project_id, values)

    async def on_report_data(
        self, project_id: int, rows: Iterable[Mapping[str, Any]]
    ) -> List[Dict[str, Any]]:
        """Mask encrypted values in report and export rows."""
        tagged = await self._resolver.tagged_fields(project_id)
        if not tagged:
            return [dict(row) for row in rows]
        return mask_rows(rows, tagged)

    async def _mask_form(self, project_id: int, values: Mapping[str, Any]) -> MaskedForm:
        tagged = await self._resolver.tagged_fields(project_id)
        return MaskedForm(
            values=mask_record(values, tagged),
            readonly_fields=masked_fields(values, tagged),
        )

    # -------------------------------------------------------------------------
    # Email
    # -------------------------------------------------------------------------

    async def on_email(self, message: OutboundEmail) -> bool:
        """
        Outbound email hook.

        Returns:
            True if the module already sent the message and the platform must
            not send the original
        """
        return await self._intercept.on_outbound_email(message)
