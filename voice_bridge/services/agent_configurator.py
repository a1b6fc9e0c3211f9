"""
Resolves the agent answering a called number and builds its Realtime session setup.

The configurator turns an agent record into an immutable ``AgentProfile`` (voice,
instructions with knowledge excerpts, greeting, tool declarations) and renders the
client events that configure a fresh Realtime session for it.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from voice_bridge.audio.codec import AudioFrameCodec
from voice_bridge.config.constants import (
    DEFAULT_MAX_RESPONSE_OUTPUT_TOKENS,
    DEFAULT_TEMPERATURE,
    DEFAULT_TRANSCRIPTION_MODEL,
    DEFAULT_VOICE,
    LOGGER_NAME,
    TURN_DETECTION,
)
from voice_bridge.db.models import AiAgent
from voice_bridge.models.call_session import AgentProfile
from voice_bridge.models.openai_schemas import (
    ClientEvent,
    ConversationItemContentParam,
    ConversationItemCreateEvent,
    MessageItem,
    MessageRole,
    ResponseCreateEvent,
    SessionConfig,
    SessionUpdateEvent,
)
from voice_bridge.services.persistence.agents import AgentRepository

logger = logging.getLogger(LOGGER_NAME)

FALLBACK_SYSTEM_PROMPT = "You are a helpful AI assistant."

LANGUAGE_NAMES = {
    "en": "English",
    "es": "Spanish",
    "fr": "French",
    "de": "German",
    "it": "Italian",
    "pt": "Portuguese",
    "nl": "Dutch",
    "pl": "Polish",
    "ja": "Japanese",
    "zh": "Chinese",
}

TOOL_DEFINITIONS: Tuple[Dict[str, Any], ...] = (
    {
        "type": "function",
        "name": "check_availability",
        "description": "Check available appointment slots for scheduling",
        "parameters": {
            "type": "object",
            "properties": {
                "date": {
                    "type": "string",
                    "description": 'Date to check (YYYY-MM-DD or "tomorrow", "next monday")',
                },
                "duration": {
                    "type": "number",
                    "description": "Meeting duration in minutes (default 30)",
                },
            },
            "required": ["date"],
        },
    },
    {
        "type": "function",
        "name": "book_appointment",
        "description": "Book an appointment at a specific date and time",
        "parameters": {
            "type": "object",
            "properties": {
                "dateTime": {
                    "type": "string",
                    "description": "ISO 8601 datetime for the appointment",
                },
                "duration": {
                    "type": "number",
                    "description": "Duration in minutes (default 30)",
                },
                "title": {
                    "type": "string",
                    "description": "Appointment title/reason",
                },
                "notes": {
                    "type": "string",
                    "description": "Additional notes",
                },
            },
            "required": ["dateTime"],
        },
    },
    {
        "type": "function",
        "name": "get_next_available_slot",
        "description": (
            "Find the next available appointment slot. Use when user wants to book "
            "but has not specified a date."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "duration": {
                    "type": "number",
                    "description": "Meeting duration in minutes (default 30)",
                },
                "daysToSearch": {
                    "type": "number",
                    "description": "Days to search ahead (default 7, max 30)",
                },
            },
            "required": [],
        },
    },
)


class AgentNotFoundError(LookupError):
    """No active agent is bound to the called number."""


def language_preamble(language: Optional[str]) -> str:
    name = LANGUAGE_NAMES.get((language or "en").lower(), "English")
    return f"You must respond only in {name}. Never switch languages under any circumstances."


def render_knowledge(documents: List[Tuple[str, str]]) -> str:
    """Knowledge block for the instructions, or an empty string without documents."""
    if not documents:
        return ""
    joined = "\n\n---\n\n".join(f"{name}:\n{content}" for name, content in documents)
    return (
        f"KNOWLEDGE BASE:\n{joined}\n\n"
        "Use this knowledge base to accurately answer questions. "
        "If you don't know something, say so."
    )


def build_instructions(
    system_prompt: Optional[str],
    documents: List[Tuple[str, str]],
    language: Optional[str] = "en",
) -> str:
    """Language constraint, then the agent prompt, then knowledge if any."""
    sections = [language_preamble(language), (system_prompt or "").strip() or FALLBACK_SYSTEM_PROMPT]
    knowledge = render_knowledge(documents)
    if knowledge:
        sections.append(knowledge)
    return "\n\n".join(sections)


def active_documents(agent: AiAgent) -> List[Tuple[str, str]]:
    return [
        (document.name, document.content)
        for knowledge_base in agent.knowledge_bases
        for document in knowledge_base.documents
        if document.status == "active"
    ]


class AgentSessionConfigurator:
    """Builds agent profiles and the Realtime session setup for them."""

    def __init__(self, agent_repository: AgentRepository, codec: AudioFrameCodec):
        self.agent_repository = agent_repository
        self.codec = codec

    async def resolve(self, called_phone: Optional[str]) -> AgentProfile:
        """
        Resolve the agent bound to ``called_phone``.

        Raises:
            AgentNotFoundError: When no active agent answers that number.
        """
        phone = (called_phone or "").strip()
        if not phone:
            raise AgentNotFoundError("call has no called number")

        agent = await self.agent_repository.find_active_by_phone(phone)
        if agent is None:
            raise AgentNotFoundError(f"no active agent for {phone}")

        documents = active_documents(agent)
        profile = AgentProfile(
            agent_id=agent.id,
            agency_id=agent.agency_id,
            name=agent.name,
            voice=agent.voice_model or DEFAULT_VOICE,
            language=agent.language or "en",
            instructions=build_instructions(agent.system_prompt, documents, agent.language),
            greeting=(agent.system_greeting or "").strip() or None,
            tools=TOOL_DEFINITIONS,
            knowledge_document_count=len(documents),
        )
        logger.info(
            f"Resolved agent {profile.name} ({profile.agent_id}) for {phone}: "
            f"voice={profile.voice}, language={profile.language}, "
            f"documents={profile.knowledge_document_count}, greeting={bool(profile.greeting)}"
        )
        return profile

    def build_session_update(self, profile: AgentProfile) -> SessionUpdateEvent:
        """The single session.update sent when the AI leg opens."""
        input_format, output_format = self.codec.session_formats()
        return SessionUpdateEvent(
            session=SessionConfig(
                voice=profile.voice,
                instructions=profile.instructions,
                tools=[dict(tool) for tool in profile.tools],
                input_audio_format=input_format,
                output_audio_format=output_format,
                input_audio_transcription={"model": DEFAULT_TRANSCRIPTION_MODEL},
                turn_detection=dict(TURN_DETECTION),
                temperature=DEFAULT_TEMPERATURE,
                max_response_output_tokens=DEFAULT_MAX_RESPONSE_OUTPUT_TOKENS,
            )
        )

    def build_greeting_events(self, profile: AgentProfile) -> List[ClientEvent]:
        """Priming message plus response trigger, or nothing without a greeting."""
        if not profile.greeting:
            return []
        prompt = (
            "[SYSTEM: The caller just connected. "
            f'Greet them by saying exactly: "{profile.greeting}"]'
        )
        return [
            ConversationItemCreateEvent(
                item=MessageItem(
                    role=MessageRole.USER,
                    content=[ConversationItemContentParam(type="input_text", text=prompt)],
                )
            ),
            ResponseCreateEvent(),
        ]
