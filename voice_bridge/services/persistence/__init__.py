"""Stores for agents, calendar events and conversation logs."""

from voice_bridge.services.persistence.agents import AgentRepository
from voice_bridge.services.persistence.calendar import CalendarStore
from voice_bridge.services.persistence.conversations import ConversationLog

__all__ = ["AgentRepository", "CalendarStore", "ConversationLog"]
