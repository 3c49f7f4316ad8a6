"""
Pytest configuration and fixtures for field encryption tests.
"""

from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import AsyncGenerator

import asyncpg
import pytest
from dotenv import load_dotenv

from field_encryption import (
    FieldCodec,
    InMemoryAuditLog,
    InMemoryFieldMetadata,
    InMemoryMailer,
    InMemoryQueueStore,
    InMemoryRecordStore,
    InMemoryTemplateStore,
    MessageTemplate,
    ReentrancyGuard,
    SecureKey,
    StaticKeyProvider,
)

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
SURVEY_BASE_URL = "https://surveys.example.org/surveys/"
PROJECT_ID = 14


@pytest.fixture
def key() -> SecureKey:
    return SecureKey.generate()


@pytest.fixture
def codec(key: SecureKey) -> FieldCodec:
    return FieldCodec(StaticKeyProvider(key))


@pytest.fixture
def guard() -> ReentrancyGuard:
    return ReentrancyGuard()


@pytest.fixture
def records() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture
def metadata() -> InMemoryFieldMetadata:
    """Project 14: participant_email and backup_email carry the tag."""
    source = InMemoryFieldMetadata()
    source.set_dictionary(
        PROJECT_ID,
        [
            ("record_id", ""),
            ("participant_email", "@ENCRYPT"),
            ("first_name", "@HIDDEN-SURVEY"),
            ("backup_email", "@READONLY @encrypt"),
        ],
    )
    return source


@pytest.fixture
def audit() -> InMemoryAuditLog:
    return InMemoryAuditLog()


@pytest.fixture
def mailer() -> InMemoryMailer:
    return InMemoryMailer()


@pytest.fixture
def queue() -> InMemoryQueueStore:
    return InMemoryQueueStore()


@pytest.fixture
def templates() -> InMemoryTemplateStore:
    store = InMemoryTemplateStore()
    store.add(
        MessageTemplate(
            id=1,
            sender="study@uvic.ca",
            subject="Your follow-up survey",
            body="<p>Please complete the survey: [survey-link]</p><p>Or paste [survey-url]</p>",
        )
    )
    return store


@pytest.fixture
def clock():
    """Fixed clock at NOW; advance with ``clock.advance(seconds)``."""

    class _Clock:
        def __init__(self) -> None:
            self.now = NOW

        def __call__(self) -> datetime:
            return self.now

        def advance(self, seconds: float) -> None:
            self.now = self.now + timedelta(seconds=seconds)

    return _Clock()


@pytest.fixture
async def pg_pool() -> AsyncGenerator[asyncpg.Pool, None]:
    """Create a PostgreSQL connection pool for testing."""
    # Load environment from project root
    env_path = Path(__file__).parent.parent / ".env"
    load_dotenv(env_path)

    database_url = os.environ.get("DATABASE_URL")
    if not database_url:
        pytest.skip("DATABASE_URL not set, skipping PostgreSQL tests")

    pool = await asyncpg.create_pool(database_url)
    if pool is None:
        pytest.skip("Failed to create PostgreSQL connection pool")

    schema = (Path(__file__).parent.parent / "schema.sql").read_text()
    await pool.execute(schema)
    await pool.execute(
        "TRUNCATE TABLE delivery_queue, message_templates, record_data, "
        "field_metadata, audit_log RESTART IDENTITY CASCADE"
    )

    yield pool

    await pool.close()
