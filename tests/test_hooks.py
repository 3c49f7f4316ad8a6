"""
Tests for tagged field lookup, masking and the platform hook boundary.
"""

from __future__ import annotations

import pytest

from field_encryption import (
    ENCRYPTED_DISPLAY_TOKEN,
    EncryptionStatus,
    EnvironmentKeyProvider,
    FieldEncryptionModule,
    OutboundEmail,
    RecordCoordinate,
    StaticKeyProvider,
    StorageError,
    TaggedFieldResolver,
    decrypt_value,
    find_tagged_fields,
    mask,
    mask_rows,
)
from field_encryption.masking import PRIVACY_NOTICE
from field_encryption.storage import InMemoryFieldMetadata

from .conftest import PROJECT_ID


@pytest.fixture
def module(key, metadata, records, audit, mailer) -> FieldEncryptionModule:
    return FieldEncryptionModule.build(StaticKeyProvider(key), metadata, records, audit, mailer)


# =============================================================================
# Tagged fields
# =============================================================================


def test_find_tagged_fields_is_case_insensitive_and_ordered():
    annotations = [
        ("email", "@ENCRYPT"),
        ("name", ""),
        ("alt_email", "@HIDDEN @Encrypt"),
        ("notes", None),
        ("phone", "@ENCRYPTED-LATER"),
    ]
    assert find_tagged_fields(annotations) == ["email", "alt_email", "phone"]


async def test_resolver_is_not_cached(metadata):
    resolver = TaggedFieldResolver(metadata)
    assert await resolver.tagged_fields(PROJECT_ID) == ["participant_email", "backup_email"]

    metadata.set_dictionary(PROJECT_ID, [("participant_email", "")])
    assert await resolver.tagged_fields(PROJECT_ID) == []


async def test_resolver_empty_dictionary():
    assert await TaggedFieldResolver(InMemoryFieldMetadata()).tagged_fields(99) == []


# =============================================================================
# Masking
# =============================================================================


def test_mask_hides_encrypted_tagged_value(codec):
    placeholder = codec.encrypt("alice@example.org")

    masked = mask(placeholder, {"participant_email"}, "participant_email")

    assert masked == ENCRYPTED_DISPLAY_TOKEN
    assert masked != placeholder
    assert "alice" not in masked


def test_mask_passes_through_everything_else(codec):
    placeholder = codec.encrypt("alice@example.org")
    tagged = {"participant_email"}

    assert mask("alice@example.org", tagged, "participant_email") == "alice@example.org"
    assert mask(placeholder, tagged, "notes") == placeholder
    assert mask("", tagged, "participant_email") == ""
    assert mask(None, tagged, "participant_email") is None


def test_mask_never_touches_key(monkeypatch, key):
    from field_encryption import encrypt_value

    placeholder = encrypt_value("alice@example.org", key)
    monkeypatch.delenv("FIELD_ENCRYPTION_KEY", raising=False)

    rows = mask_rows([{"participant_email": placeholder}], ["participant_email"])
    assert rows == [{"participant_email": ENCRYPTED_DISPLAY_TOKEN}]


# =============================================================================
# Hook boundary
# =============================================================================


async def test_save_record_encrypts_tagged_fields(module, records, key):
    coord = RecordCoordinate.of(PROJECT_ID, "7", 52, None)
    records.put(coord, {"participant_email": "alice@example.org", "first_name": "Alice"})

    outcome = await module.on_save_record(PROJECT_ID, "7", "contact", 52, None)

    assert outcome.status is EncryptionStatus.ENCRYPTED
    assert decrypt_value(records.snapshot(coord)["participant_email"], key) == "alice@example.org"


async def test_survey_complete_encrypts_repeat_instance(module, records, key):
    coord = RecordCoordinate.of(PROJECT_ID, "7", 52, 2)
    records.put(coord, {"backup_email": "alt@example.org"})

    outcome = await module.on_survey_complete(PROJECT_ID, "7", "followup", 52, 2)

    assert outcome.status is EncryptionStatus.ENCRYPTED
    assert outcome.fields_encrypted == ["backup_email"]
    assert decrypt_value(records.snapshot(coord)["backup_email"], key) == "alt@example.org"


async def test_save_record_without_tagged_fields_is_noop(module, records):
    coord = RecordCoordinate.of(99, "7", 52, None)
    records.put(coord, {"email": "alice@example.org"})

    outcome = await module.on_save_record(99, "7", "contact", 52)

    assert outcome.status is EncryptionStatus.UNCHANGED
    assert records.reads == 0


async def test_save_record_swallows_missing_key(metadata, records, audit, mailer, monkeypatch):
    monkeypatch.delenv("FIELD_ENCRYPTION_KEY", raising=False)
    module = FieldEncryptionModule.build(EnvironmentKeyProvider(), metadata, records, audit, mailer)
    coord = RecordCoordinate.of(PROJECT_ID, "7", 52, None)
    records.put(coord, {"participant_email": "alice@example.org"})

    outcome = await module.on_save_record(PROJECT_ID, "7", "contact", 52)

    assert outcome.status is EncryptionStatus.FAILED


class _BrokenMetadata(InMemoryFieldMetadata):
    async def get_field_annotations(self, project_id):
        raise StorageError("dictionary unavailable")


async def test_save_record_swallows_metadata_failure(key, records, audit, mailer):
    module = FieldEncryptionModule.build(
        StaticKeyProvider(key), _BrokenMetadata(), records, audit, mailer
    )

    outcome = await module.on_save_record(PROJECT_ID, "7", "contact", 52)

    assert outcome.status is EncryptionStatus.FAILED
    assert "dictionary unavailable" in outcome.error


async def test_privacy_notice(module):
    assert await module.on_data_entry_form_top(PROJECT_ID) == PRIVACY_NOTICE
    assert await module.on_data_entry_form_top(99) is None


async def test_forms_and_survey_pages_are_masked(module, codec):
    placeholder = codec.encrypt("alice@example.org")
    values = {"participant_email": placeholder, "first_name": "Alice", "backup_email": ""}

    for surface in (module.on_data_entry_form, module.on_survey_page):
        form = await surface(PROJECT_ID, values)
        assert form.values == {
            "participant_email": ENCRYPTED_DISPLAY_TOKEN,
            "first_name": "Alice",
            "backup_email": "",
        }
        assert form.readonly_fields == ["participant_email"]


async def test_report_rows_are_masked(module, codec):
    rows = [
        {"record_id": "1", "participant_email": codec.encrypt("a@example.org")},
        {"record_id": "2", "participant_email": "legacy@example.org"},
    ]

    masked = await module.on_report_data(PROJECT_ID, rows)

    assert masked == [
        {"record_id": "1", "participant_email": ENCRYPTED_DISPLAY_TOKEN},
        {"record_id": "2", "participant_email": "legacy@example.org"},
    ]


async def test_email_hook_delegates_to_intercept(module, mailer, codec):
    message = OutboundEmail(
        to=codec.encrypt("p@uvic.ca"),
        sender="study@uvic.ca",
        subject="Reminder",
        body="Hello",
    )

    assert await module.on_email(message) is True
    assert mailer.sent[0].to == "p@uvic.ca"
