"""
Delivery of queued messages addressed to encrypted placeholders.

The platform's scheduler queues invitations and reminders without knowing that
the recipient field holds a placeholder; handed to the mail transport as-is they
would bounce off the ``xx.xx`` domain. ``DeliveryQueueProcessor`` polls the
queue, claims due entries whose recipient is a placeholder, decrypts the
address, fills in the participant's survey link and sends.

Queue state machine (per entry):

    QUEUED ----------> SENT
      |                 ^
      v                 |
    FAILED_RETRYABLE ---+   (retried on every run, no attempt ceiling)

Each entry is handled independently; one failure never aborts the batch.
Every entry is delivered under ``QueueStore.hold``: if its lease ran out and
another worker claimed it in the meantime, it is skipped, and while it is held
no other worker can claim it.
Neither the decrypted address nor the placeholder is logged or written to the
queue's failure reason.
"""

from __future__ import annotations

import asyncio
import html
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
from urllib.parse import urlencode

from .codec import FieldCodec
from .errors import AuthenticationFailure, FieldEncryptionError
from .logging_config import describe_error, fingerprint
from .mailer import Mailer
from .models import BatchResult, OutboundEmail, QueueEntry
from .storage import QueueClaim, QueueStore, TemplateStore

logger = logging.getLogger(__name__)

SURVEY_LINK_TOKEN = "[survey-link]"
SURVEY_URL_TOKEN = "[survey-url]"

DEFAULT_BATCH_SIZE = 200
DEFAULT_POLL_INTERVAL = 30.0
DEFAULT_CLAIM_LEASE = timedelta(minutes=5)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def build_survey_link(base_url: str, participant_token: str) -> str:
    """Per-participant survey URL."""
    separator = "&" if "?" in base_url else "?"
    return f"{base_url}{separator}{urlencode({'s': participant_token})}"


def substitute_links(body: str, url: str) -> str:
    """Replace the clickable-link and plain-URL tokens in a message body."""
    anchor = f'<a href="{html.escape(url, quote=True)}">{html.escape(url)}</a>'
    return body.replace(SURVEY_LINK_TOKEN, anchor).replace(SURVEY_URL_TOKEN, url)


class DeliveryQueueProcessor:
    """Poll the delivery queue and send messages addressed to placeholders."""

    def __init__(
        self,
        codec: FieldCodec,
        queue: QueueStore,
        templates: TemplateStore,
        mailer: Mailer,
        survey_base_url: str,
        batch_size: int = DEFAULT_BATCH_SIZE,
        claim_lease: timedelta = DEFAULT_CLAIM_LEASE,
        clock: Optional[Clock] = None,
    ) -> None:
        """
        Initialize the processor.

        Args:
            codec: Codec used to decrypt recipients
            queue: Queue store holding the scheduler's entries
            templates: Message templates referenced by entries
            mailer: Send operation
            survey_base_url: Base URL of participant survey links
            batch_size: Maximum entries claimed per run
            claim_lease: How long a claimed entry is hidden from other workers
            clock: Returns the current time (UTC); defaults to the system clock
        """
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self._codec = codec
        self._queue = queue
        self._templates = templates
        self._mailer = mailer
        self._survey_base_url = survey_base_url
        self._batch_size = batch_size
        self._claim_lease = claim_lease
        self._clock = clock or _utcnow

    async def run_once(self) -> BatchResult:
        """
        Claim and process one batch of due entries.

        Returns:
            BatchResult with claimed, sent, failed and skipped counts

        Raises:
            StorageError: If the batch could not be claimed
        """
        now = self._clock()
        entries = await self._queue.claim_due(now, self._batch_size, self._claim_lease)
        result = BatchResult(claimed=len(entries))

        for entry in entries:
            delivered = await self._process_entry(entry)
            if delivered is None:
                result.skipped += 1
            elif delivered:
                result.sent += 1
            else:
                result.failed += 1

        if entries:
            logger.info("Delivery run complete: %s", result)
        else:
            logger.debug("Delivery run complete: nothing due")
        return result

    async def run_forever(
        self,
        interval: float = DEFAULT_POLL_INTERVAL,
        stop: Optional[asyncio.Event] = None,
    ) -> None:
        """Run batches every ``interval`` seconds until ``stop`` is set."""
        stop = stop or asyncio.Event()
        while not stop.is_set():
            try:
                await self.run_once()
            except FieldEncryptionError as e:
                logger.error("Delivery run failed: %s", describe_error(e))
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    async def _process_entry(self, entry: QueueEntry) -> Optional[bool]:
        """
        Deliver one entry under a hold and record the outcome.

        Returns:
            True if sent, False if failed, None if another worker holds the
            claim now
        """
        try:
            async with self._queue.hold(entry) as claim:
                if claim is None:
                    logger.warning(
                        "Queue entry %s was reclaimed by another worker; skipping", entry.id
                    )
                    return None
                return await self._deliver_held(entry, claim)
        except Exception as e:
            # Lease expiry makes the entry claimable again
            logger.error("Could not update queue entry %s: %s", entry.id, describe_error(e))
            return False

    async def _deliver_held(self, entry: QueueEntry, claim: QueueClaim) -> bool:
        try:
            await self._deliver(entry)
        except Exception as e:
            reason = describe_error(e)
            logger.warning(
                "Delivery of queue entry %s (recipient %s) failed: %s",
                entry.id,
                fingerprint(entry.recipient),
                reason,
            )
            await claim.mark_failed(reason)
            return False

        await claim.mark_sent(self._clock())
        return True

    async def _deliver(self, entry: QueueEntry) -> None:
        recipient = self._codec.decrypt(entry.recipient)
        if recipient == entry.recipient:
            raise AuthenticationFailure("Recipient did not decrypt")

        template = await self._templates.get_template(entry.template_id)
        url = build_survey_link(self._survey_base_url, entry.participant_token)

        await self._mailer.send(
            OutboundEmail(
                to=recipient,
                sender=template.sender,
                subject=template.subject,
                body=substitute_links(template.body, url),
                project_id=entry.coordinate.project_id,
            )
        )

