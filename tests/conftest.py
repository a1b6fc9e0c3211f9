"""Shared test fixtures and configuration."""
import logging
import os
from datetime import datetime, timezone

import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

# Set test environment variables before importing the app
os.environ.setdefault("OPENAI_API_KEY", "test-key")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from voice_bridge.db.database import create_session_factory
from voice_bridge.db.models import (
    AiAgent,
    Base,
    CalendarEvent,
    KnowledgeBase,
    KnowledgeDocument,
)
from voice_bridge.services.persistence.calendar import CalendarStore
from voice_bridge.services.scheduling import SchedulingEngine

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

AGENCY_ID = "agency-1"
AGENT_PHONE = "+15550001111"

# Wednesday, mid-morning
FIXED_NOW = datetime(2026, 10, 14, 10, 15, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def reset_logging():
    """Reset logging configuration before each test"""
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    logging.basicConfig(level=logging.NOTSET)
    yield


@pytest.fixture
async def db_engine():
    """In-memory database shared by every session of one test."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


@pytest.fixture
def calendar_store(session_factory):
    return CalendarStore(session_factory)


@pytest.fixture
def scheduling_engine(calendar_store):
    """Engine pinned to FIXED_NOW in UTC."""
    return SchedulingEngine(calendar_store, timezone_name="UTC", clock=lambda: FIXED_NOW)


@pytest.fixture
def add_event(session_factory):
    """Insert a calendar entry directly (naive UTC, as stored)."""

    async def _add(start, end, status="scheduled", agency_id=AGENCY_ID, title="Busy"):
        event = CalendarEvent(
            agency_id=agency_id,
            title=title,
            start_time=start.astimezone(timezone.utc).replace(tzinfo=None),
            end_time=end.astimezone(timezone.utc).replace(tzinfo=None),
            status=status,
        )
        async with session_factory() as session:
            session.add(event)
            await session.commit()
        return event

    return _add


@pytest.fixture
async def agent(session_factory):
    """An active agent with one knowledge base holding an active and an archived document."""
    knowledge_base = KnowledgeBase(name="Office info")
    knowledge_base.documents = [
        KnowledgeDocument(name="Hours", content="Open 9 to 5 on weekdays.", status="active"),
        KnowledgeDocument(name="Old prices", content="Everything is free.", status="archived"),
    ]
    record = AiAgent(
        agency_id=AGENCY_ID,
        name="Front Desk",
        phone_number=AGENT_PHONE,
        status="active",
        voice_model="shimmer",
        system_prompt="You answer calls for Acme Dental.",
        system_greeting="Thanks for calling Acme Dental, how can I help?",
        language="en",
    )
    record.knowledge_bases = [knowledge_base]
    async with session_factory() as session:
        session.add(record)
        await session.commit()
    return record
