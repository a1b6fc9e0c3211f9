"""Agent lookup service."""
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.orm import selectinload

from voice_bridge.db.models import AiAgent, KnowledgeBase


class AgentRepository:
    """Read-only access to agent records and their knowledge documents."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def find_active_by_phone(self, phone_number: str) -> Optional[AiAgent]:
        """Get the active agent bound to a phone number, with knowledge loaded."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(AiAgent)
                .where(AiAgent.phone_number == phone_number, AiAgent.status == "active")
                .options(
                    selectinload(AiAgent.knowledge_bases).selectinload(
                        KnowledgeBase.documents
                    )
                )
                .limit(1)
            )
            return result.scalars().first()
