"""
Tests for the delivery queue processor.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from field_encryption import (
    DeliveryQueueProcessor,
    InMemoryMailer,
    QueueEntry,
    QueueStatus,
    RecordCoordinate,
)
from field_encryption.delivery import build_survey_link, substitute_links
from field_encryption.logging_config import fingerprint

from .conftest import NOW, PROJECT_ID, SURVEY_BASE_URL

COORD = RecordCoordinate(PROJECT_ID, "101", 52, 1)


def _entry(entry_id, recipient, minutes_ago=5, **kwargs) -> QueueEntry:
    return QueueEntry(
        id=entry_id,
        coordinate=COORD,
        recipient=recipient,
        scheduled_at=NOW - timedelta(minutes=minutes_ago),
        template_id=kwargs.pop("template_id", 1),
        participant_token=kwargs.pop("participant_token", f"TOKEN{entry_id}"),
        **kwargs,
    )


@pytest.fixture
def processor(codec, queue, templates, mailer, clock) -> DeliveryQueueProcessor:
    return DeliveryQueueProcessor(
        codec=codec,
        queue=queue,
        templates=templates,
        mailer=mailer,
        survey_base_url=SURVEY_BASE_URL,
        clock=clock,
    )


# =============================================================================
# Link substitution
# =============================================================================


def test_build_survey_link():
    assert build_survey_link("https://x.org/surveys/", "AbC123") == "https://x.org/surveys/?s=AbC123"
    assert build_survey_link("https://x.org/?lang=fr", "AbC123") == "https://x.org/?lang=fr&s=AbC123"


def test_substitute_links():
    url = "https://x.org/surveys/?s=AbC&x=1"
    body = "Click [survey-link] or copy [survey-url]."

    assert substitute_links(body, url) == (
        'Click <a href="https://x.org/surveys/?s=AbC&amp;x=1">'
        "https://x.org/surveys/?s=AbC&amp;x=1</a> or copy https://x.org/surveys/?s=AbC&x=1."
    )


# =============================================================================
# Queue state machine
# =============================================================================


async def test_scenario_placeholder_is_delivered(processor, queue, mailer, codec):
    queue.add(_entry(1, codec.encrypt("p@uvic.ca")))

    result = await processor.run_once()

    assert (result.claimed, result.sent, result.failed) == (1, 1, 0)
    assert len(mailer.sent) == 1
    message = mailer.sent[0]
    assert message.to == "p@uvic.ca"
    assert message.sender == "study@uvic.ca"
    assert message.subject == "Your follow-up survey"
    assert message.project_id == PROJECT_ID
    assert f'<a href="{SURVEY_BASE_URL}?s=TOKEN1">' in message.body
    assert "[survey-link]" not in message.body and "[survey-url]" not in message.body

    entry = await queue.get_entry(1)
    assert entry.status is QueueStatus.SENT
    assert entry.sent_at == NOW
    assert entry.failure_reason is None
    assert entry.attempts == 1
    assert queue.claimed_until(1) is None


async def test_undecryptable_recipient_becomes_retryable(processor, queue, mailer, codec, clock):
    placeholder = codec.encrypt("p@uvic.ca")
    tampered = placeholder[:10] + ("A" if placeholder[10] != "A" else "B") + placeholder[11:]
    queue.add(_entry(1, tampered))

    result = await processor.run_once()

    assert (result.sent, result.failed) == (0, 1)
    assert mailer.sent == []
    entry = await queue.get_entry(1)
    assert entry.status is QueueStatus.FAILED_RETRYABLE
    assert entry.failure_reason
    assert "ENC_" not in entry.failure_reason
    assert entry.sent_at is None

    # Still selectable on the next run
    clock.advance(30)
    again = await processor.run_once()
    assert again.claimed == 1
    assert (await queue.get_entry(1)).attempts == 2


async def test_send_failure_then_success(codec, queue, templates, clock):
    queue.add(_entry(1, codec.encrypt("p@uvic.ca")))
    failing = InMemoryMailer(fail_with="SMTP timeout")
    processor = DeliveryQueueProcessor(codec, queue, templates, failing, SURVEY_BASE_URL, clock=clock)

    await processor.run_once()
    entry = await queue.get_entry(1)
    assert entry.status is QueueStatus.FAILED_RETRYABLE
    assert entry.failure_reason == "DeliveryError: SMTP timeout"

    failing.fail_with = None
    clock.advance(30)
    await processor.run_once()
    entry = await queue.get_entry(1)
    assert entry.status is QueueStatus.SENT
    assert entry.failure_reason is None
    assert entry.sent_at == clock.now
    assert failing.sent[0].to == "p@uvic.ca"


async def test_missing_template_is_retryable(processor, queue, codec):
    queue.add(_entry(1, codec.encrypt("p@uvic.ca"), template_id=404))

    await processor.run_once()

    entry = await queue.get_entry(1)
    assert entry.status is QueueStatus.FAILED_RETRYABLE
    assert entry.failure_reason.startswith("TemplateNotFoundError")


async def test_one_failure_does_not_abort_batch(processor, queue, mailer, codec):
    queue.add(_entry(1, "ENC_AAAA@xx.xx", minutes_ago=10))
    queue.add(_entry(2, codec.encrypt("second@uvic.ca"), minutes_ago=5))

    result = await processor.run_once()

    assert (result.claimed, result.sent, result.failed) == (2, 1, 1)
    assert [m.to for m in mailer.sent] == ["second@uvic.ca"]
    assert (await queue.get_entry(1)).status is QueueStatus.FAILED_RETRYABLE
    assert (await queue.get_entry(2)).status is QueueStatus.SENT


async def test_selection_filters(processor, queue, mailer, codec):
    queue.add(_entry(1, "plain@uvic.ca"))
    queue.add(_entry(2, codec.encrypt("future@uvic.ca"), minutes_ago=-10))
    queue.add(_entry(3, codec.encrypt("done@uvic.ca"), status=QueueStatus.SENT))
    queue.add(_entry(4, codec.encrypt("due@uvic.ca")))

    result = await processor.run_once()

    assert result.claimed == 1
    assert [m.to for m in mailer.sent] == ["due@uvic.ca"]
    assert (await queue.get_entry(1)).status is QueueStatus.QUEUED
    assert (await queue.get_entry(2)).status is QueueStatus.QUEUED


async def test_oldest_first_and_batch_cap(codec, queue, templates, mailer, clock):
    for entry_id, minutes_ago in [(1, 5), (2, 50), (3, 20), (4, 1)]:
        queue.add(_entry(entry_id, codec.encrypt(f"p{entry_id}@uvic.ca"), minutes_ago=minutes_ago))
    processor = DeliveryQueueProcessor(
        codec, queue, templates, mailer, SURVEY_BASE_URL, batch_size=2, clock=clock
    )

    first = await processor.run_once()
    second = await processor.run_once()

    assert first.claimed == 2 and second.claimed == 2
    assert [m.to for m in mailer.sent] == ["p2@uvic.ca", "p3@uvic.ca", "p1@uvic.ca", "p4@uvic.ca"]


async def test_overlapping_claims_never_double_send(codec, queue, templates, mailer, clock):
    for entry_id in range(1, 6):
        queue.add(_entry(entry_id, codec.encrypt(f"p{entry_id}@uvic.ca")))
    workers = [
        DeliveryQueueProcessor(codec, queue, templates, mailer, SURVEY_BASE_URL, batch_size=3, clock=clock)
        for _ in range(2)
    ]

    results = await asyncio.gather(*(w.run_once() for w in workers))

    assert sum(r.claimed for r in results) == 5
    assert sorted(m.to for m in mailer.sent) == [f"p{i}@uvic.ca" for i in range(1, 6)]


async def test_claimed_entry_is_leased(queue, codec):
    queue.add(_entry(1, codec.encrypt("p@uvic.ca")))

    claimed = await queue.claim_due(NOW, 10, timedelta(minutes=5))
    assert [e.id for e in claimed] == [1]
    assert await queue.claim_due(NOW + timedelta(minutes=1), 10, timedelta(minutes=5)) == []

    # Lease expiry makes an abandoned entry claimable again
    reclaimed = await queue.claim_due(NOW + timedelta(minutes=6), 10, timedelta(minutes=5))
    assert [e.id for e in reclaimed] == [1]


async def test_logs_counts_without_addresses(processor, queue, codec, caplog):
    caplog.set_level("DEBUG", logger="field_encryption")
    placeholder = codec.encrypt("p@uvic.ca")
    queue.add(_entry(1, placeholder))
    queue.add(_entry(2, "ENC_AAAA@xx.xx"))

    await processor.run_once()

    assert "claimed=2 sent=1 failed=1" in caplog.text
    assert "p@uvic.ca" not in caplog.text
    assert placeholder not in caplog.text
    assert fingerprint("ENC_AAAA@xx.xx") in caplog.text


async def test_run_forever_stops(processor, queue, codec, mailer):
    queue.add(_entry(1, codec.encrypt("p@uvic.ca")))
    stop = asyncio.Event()

    task = asyncio.create_task(processor.run_forever(interval=0.01, stop=stop))
    for _ in range(100):
        if mailer.sent:
            break
        await asyncio.sleep(0.01)
    stop.set()
    await asyncio.wait_for(task, timeout=1)

    assert [m.to for m in mailer.sent] == ["p@uvic.ca"]


def test_batch_size_must_be_positive(codec, queue, templates, mailer):
    with pytest.raises(ValueError):
        DeliveryQueueProcessor(codec, queue, templates, mailer, SURVEY_BASE_URL, batch_size=0)


# =============================================================================
# Claim ownership
# =============================================================================


class _StallingMailer(InMemoryMailer):
    """Runs ``stall`` once, right after the first message is sent."""

    def __init__(self, stall) -> None:
        super().__init__()
        self._stall = stall

    async def send(self, message):
        await super().send(message)
        if self._stall is not None:
            stall, self._stall = self._stall, None
            await stall()


async def test_lease_expiring_mid_batch_never_double_sends(codec, queue, templates, clock):
    queue.add(_entry(1, codec.encrypt("p1@uvic.ca"), minutes_ago=10))
    queue.add(_entry(2, codec.encrypt("p2@uvic.ca"), minutes_ago=5))
    other_mailer = InMemoryMailer()
    other = DeliveryQueueProcessor(codec, queue, templates, other_mailer, SURVEY_BASE_URL, clock=clock)
    other_results = []

    async def slow_send():
        # The first worker's lease runs out while it is still busy
        clock.advance(6 * 60)
        other_results.append(await other.run_once())

    mailer = _StallingMailer(slow_send)
    worker = DeliveryQueueProcessor(codec, queue, templates, mailer, SURVEY_BASE_URL, clock=clock)

    result = await worker.run_once()

    assert sorted(m.to for m in mailer.sent + other_mailer.sent) == ["p1@uvic.ca", "p2@uvic.ca"]
    assert [m.to for m in mailer.sent] == ["p1@uvic.ca"]
    assert [m.to for m in other_mailer.sent] == ["p2@uvic.ca"]
    assert (result.claimed, result.sent, result.failed, result.skipped) == (2, 1, 0, 1)
    assert (other_results[0].claimed, other_results[0].sent) == (1, 1)
    for entry_id in (1, 2):
        entry = await queue.get_entry(entry_id)
        assert entry.status is QueueStatus.SENT
        assert entry.attempts == 1


async def test_hold_rejects_stale_claim(queue, codec):
    lease = timedelta(minutes=5)
    queue.add(_entry(1, codec.encrypt("p@uvic.ca")))
    [stale] = await queue.claim_due(NOW, 10, lease)
    [current] = await queue.claim_due(NOW + timedelta(minutes=6), 10, lease)
    assert stale.claim_token != current.claim_token

    async with queue.hold(stale) as claim:
        assert claim is None

    async with queue.hold(current) as claim:
        assert claim is not None
        # Held entries stay unclaimable after their lease runs out
        assert await queue.claim_due(NOW + timedelta(minutes=30), 10, lease) == []
        await claim.mark_sent(NOW)

    entry = await queue.get_entry(1)
    assert entry.status is QueueStatus.SENT
    assert entry.claim_token is None
    assert queue.claimed_until(1) is None

    # A finished entry cannot be held again with its old token
    async with queue.hold(current) as claim:
        assert claim is None


class _QuotingMailer(InMemoryMailer):
    """Third-party transport whose errors quote the recipient."""

    async def send(self, message):
        raise RuntimeError(f"550 mailbox unavailable: {message.to}")


async def test_foreign_error_messages_are_not_recorded(codec, queue, templates, clock, caplog):
    queue.add(_entry(1, codec.encrypt("p@uvic.ca")))
    processor = DeliveryQueueProcessor(
        codec, queue, templates, _QuotingMailer(), SURVEY_BASE_URL, clock=clock
    )

    await processor.run_once()

    entry = await queue.get_entry(1)
    assert entry.status is QueueStatus.FAILED_RETRYABLE
    assert entry.failure_reason == "RuntimeError"
    assert "p@uvic.ca" not in caplog.text
