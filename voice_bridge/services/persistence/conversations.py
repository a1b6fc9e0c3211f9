"""Conversation log persistence service."""
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from voice_bridge.db.models import Conversation, ConversationMessage
from voice_bridge.models.call_session import AgentProfile, TranscriptTurn
from voice_bridge.services.persistence.calendar import to_storage


class ConversationLog:
    """Opens, appends to and completes conversation records for voice calls."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def open(self, agent: AgentProfile, call_sid: Optional[str] = None) -> str:
        """Create an active conversation record and return its id."""
        conversation = Conversation(
            ai_agent_id=agent.agent_id,
            agency_id=agent.agency_id,
            call_sid=call_sid,
            channel="voice",
            status="active",
        )
        async with self.session_factory() as session:
            session.add(conversation)
            await session.commit()
            await session.refresh(conversation)
        return conversation.id

    async def append_turn(self, conversation_id: str, turn: TranscriptTurn) -> None:
        """Append one transcript turn. Turns are never edited or removed."""
        message = ConversationMessage(
            conversation_id=conversation_id,
            role=turn.role,
            content=turn.text,
            created_at=to_storage(turn.timestamp),
        )
        async with self.session_factory() as session:
            session.add(message)
            await session.commit()

    async def complete(self, conversation_id: str, ended_at: datetime) -> None:
        """Mark the conversation completed with its end timestamp."""
        async with self.session_factory() as session:
            conversation = await session.get(Conversation, conversation_id)
            if conversation is None:
                return
            conversation.status = "completed"
            conversation.ended_at = to_storage(ended_at)
            await session.commit()

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        """Get a conversation record by id."""
        async with self.session_factory() as session:
            return await session.get(Conversation, conversation_id)

    async def get_messages(self, conversation_id: str) -> List[ConversationMessage]:
        """Transcript turns in the order they were appended."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(ConversationMessage)
                .where(ConversationMessage.conversation_id == conversation_id)
                .order_by(ConversationMessage.id)
            )
            return list(result.scalars().all())
