"""Database models for the records the bridge reads and writes.

The tables belong to the front-end application; these mappings cover only the
columns the bridge uses. All timestamps are stored as naive UTC.
"""
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Table,
    Text,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Current time as naive UTC, the storage convention for every column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


ai_agent_knowledge_bases = Table(
    "ai_agent_knowledge_bases",
    Base.metadata,
    Column("ai_agent_id", String(36), ForeignKey("ai_agents.id"), primary_key=True),
    Column("knowledge_base_id", String(36), ForeignKey("knowledge_bases.id"), primary_key=True),
)


class AiAgent(Base):
    """Voice agent configuration bound to a phone number."""

    __tablename__ = "ai_agents"

    id = Column(String(36), primary_key=True, default=new_id)
    agency_id = Column(String(36), index=True, nullable=False)
    name = Column(String, nullable=False)
    phone_number = Column(String, index=True, nullable=True)
    status = Column(String, default="active", nullable=False)  # active, inactive
    voice_model = Column(String, nullable=True)
    system_prompt = Column(Text, nullable=True)
    system_greeting = Column(Text, nullable=True)
    language = Column(String(5), default="en", nullable=False)

    # Relationships
    knowledge_bases = relationship(
        "KnowledgeBase", secondary=ai_agent_knowledge_bases, back_populates="agents"
    )


class KnowledgeBase(Base):
    """A named collection of reference documents."""

    __tablename__ = "knowledge_bases"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String, nullable=False)

    # Relationships
    agents = relationship(
        "AiAgent", secondary=ai_agent_knowledge_bases, back_populates="knowledge_bases"
    )
    documents = relationship(
        "KnowledgeDocument", back_populates="knowledge_base", cascade="all, delete-orphan"
    )


class KnowledgeDocument(Base):
    """Document text folded into agent instructions."""

    __tablename__ = "knowledge_documents"

    id = Column(String(36), primary_key=True, default=new_id)
    knowledge_base_id = Column(String(36), ForeignKey("knowledge_bases.id"), nullable=False)
    name = Column(String, nullable=False)
    content = Column(Text, nullable=False)
    status = Column(String, default="active", nullable=False)  # active, archived

    # Relationships
    knowledge_base = relationship("KnowledgeBase", back_populates="documents")


class Conversation(Base):
    """One voice conversation handled by an agent."""

    __tablename__ = "conversations"

    id = Column(String(36), primary_key=True, default=new_id)
    ai_agent_id = Column(String(36), ForeignKey("ai_agents.id"), nullable=False)
    agency_id = Column(String(36), index=True, nullable=False)
    call_sid = Column(String, index=True, nullable=True)
    channel = Column(String, default="voice", nullable=False)
    status = Column(String, default="active", nullable=False)  # active, completed
    started_at = Column(DateTime, default=utcnow, nullable=False)
    ended_at = Column(DateTime, nullable=True)

    # Relationships
    messages = relationship(
        "ConversationMessage",
        back_populates="conversation",
        order_by="ConversationMessage.id",
    )


class ConversationMessage(Base):
    """Append-only transcript turn."""

    __tablename__ = "conversation_messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(String(36), ForeignKey("conversations.id"), index=True, nullable=False)
    role = Column(String, nullable=False)  # user, assistant
    content = Column(Text, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    # Relationships
    conversation = relationship("Conversation", back_populates="messages")


class CalendarEvent(Base):
    """Calendar entry for an agency; appointments booked by phone land here."""

    __tablename__ = "calendar_events"

    id = Column(String(36), primary_key=True, default=new_id)
    agency_id = Column(String(36), index=True, nullable=False)
    title = Column(String, nullable=False)
    start_time = Column(DateTime, index=True, nullable=False)
    end_time = Column(DateTime, index=True, nullable=False)
    status = Column(String, default="scheduled", nullable=False)  # scheduled, cancelled, completed
    event_type = Column(String, default="appointment", nullable=False)
    notes = Column(Text, nullable=True)
    conversation_id = Column(String(36), ForeignKey("conversations.id"), nullable=True)
    event_metadata = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
