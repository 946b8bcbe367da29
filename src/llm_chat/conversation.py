"""Conversation transcripts driven by the streaming controller."""

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import AsyncIterator, Callable, Optional

from .config import AppSettings
from .llm.controller import StreamingRequestController
from .llm.errors import RequestInProgressError
from .llm.summarizer import DEFAULT_TITLE, ConversationSummarizer
from .llm.types import ChatMessage, RequestConfig, Role, StreamDelta, StreamState

logger = logging.getLogger(__name__)

INTERRUPTED_MARKER = "\n\n[Response interrupted]"


@dataclass
class ConversationRecord:
    """What gets handed to the store after every turn."""
    id: str
    model: str
    system_prompt: str
    user_prompt: str
    language: str
    messages: list[ChatMessage] = field(default_factory=list)
    title: str = DEFAULT_TITLE
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "model": self.model,
            "system_prompt": self.system_prompt,
            "user_prompt": self.user_prompt,
            "language": self.language,
            "updated_at": self.updated_at.isoformat(),
            "messages": [m.to_dict() for m in self.messages],
        }


class ConversationStore(ABC):
    """Durable storage for conversations, keyed by conversation ID."""

    @abstractmethod
    async def upsert(self, record: ConversationRecord) -> None:
        ...

    @abstractmethod
    async def get(self, conversation_id: str) -> Optional[ConversationRecord]:
        ...


class InMemoryConversationStore(ConversationStore):
    def __init__(self):
        self._records: dict[str, ConversationRecord] = {}

    async def upsert(self, record: ConversationRecord) -> None:
        self._records[record.id] = replace(record, messages=list(record.messages))

    async def get(self, conversation_id: str) -> Optional[ConversationRecord]:
        return self._records.get(conversation_id)


def settle_reply(state: StreamState, text: str, error: Optional[str] = None) -> Optional[ChatMessage]:
    """Turn a finished request into the assistant message to keep, if any.

    Partial output of a cancelled or failed request is kept with an
    interruption marker. A failure with no output becomes an error message.
    """
    if state is StreamState.COMPLETED:
        return ChatMessage.text_message(Role.ASSISTANT, text) if text else None
    if state is StreamState.CANCELLED:
        return ChatMessage.text_message(Role.ASSISTANT, text + INTERRUPTED_MARKER) if text else None
    if state is StreamState.FAILED:
        if text:
            return ChatMessage.text_message(Role.ASSISTANT, text + INTERRUPTED_MARKER, is_error=True)
        return ChatMessage.text_message(Role.ASSISTANT, f"Error: {error or 'request failed'}", is_error=True)
    return None


class ChatSession:
    """One conversation: its transcript, its controller and its persistence."""

    def __init__(
        self,
        settings: AppSettings,
        store: ConversationStore,
        controller: StreamingRequestController | None = None,
        summarizer: ConversationSummarizer | None = None,
        conversation_id: Optional[str] = None,
        messages: Optional[list[ChatMessage]] = None,
        title: Optional[str] = None,
        on_idle: Optional[Callable[["ChatSession"], None]] = None,
    ):
        self.settings = settings
        self.store = store
        self.controller = controller or StreamingRequestController(
            watchdog_timeout=settings.watchdog_seconds,
            request_timeout=settings.request_timeout,
        )
        self.summarizer = summarizer
        self.id = conversation_id or str(uuid.uuid4())
        self.messages: list[ChatMessage] = list(messages or [])
        self.title = title
        self.on_idle = on_idle
        self.model = settings.model_name
        self.language = settings.language

    @classmethod
    def from_record(cls, record: ConversationRecord, settings: AppSettings, store: ConversationStore, **kwargs) -> "ChatSession":
        title = record.title if record.title != DEFAULT_TITLE else None
        session = cls(settings, store, conversation_id=record.id, messages=record.messages, title=title, **kwargs)
        session.model = record.model
        session.language = record.language
        return session

    @property
    def is_streaming(self) -> bool:
        return self.controller.state.is_active

    async def send(
        self,
        text: str,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        language: Optional[str] = None,
    ) -> AsyncIterator[StreamDelta]:
        """Append a user turn and stream the assistant reply.

        The reply (or its interrupted/error form) is appended and the
        conversation persisted once the stream ends, however it ends. `on_idle`
        is called afterwards.

        Raises:
            RequestInProgressError: If a reply is still streaming.
            ValueError: If the message is blank.
        """
        if not text.strip():
            raise ValueError("message must not be empty")
        if self.is_streaming:
            raise RequestInProgressError("A reply is still streaming; cancel it first")

        self.model = model or self.model
        self.language = language or self.language
        config = self.settings.request_config(
            text,
            history=self.messages,
            model=self.model,
            temperature=temperature,
            language=self.language,
        )
        self.messages.append(ChatMessage.text_message(Role.USER, text))

        deltas = self.controller.stream(config)
        try:
            async for delta in deltas:
                yield delta
        finally:
            await deltas.aclose()
            await self.controller.join()
            await self._settle(config)
            if self.on_idle is not None:
                self.on_idle(self)

    def cancel(self) -> str:
        """Stop the streaming reply; returns the text received so far."""
        return self.controller.cancel()

    async def _settle(self, config: RequestConfig):
        outcome = self.controller.outcome
        if outcome is not None:
            reply = settle_reply(outcome.state, outcome.text, outcome.error)
            if reply is not None:
                self.messages.append(reply)
        if self.title is None and any(not m.is_user for m in self.messages):
            self.title = await self._generate_title(config)
        await self.save()

    async def _generate_title(self, config: RequestConfig) -> str:
        if self.summarizer is None:
            return DEFAULT_TITLE
        return await self.summarizer.summarize(self.messages, config)

    def record(self) -> ConversationRecord:
        return ConversationRecord(
            id=self.id,
            model=self.model,
            system_prompt=self.settings.system_prompt,
            user_prompt=self.settings.user_prompt,
            language=self.language,
            messages=list(self.messages),
            title=self.title or DEFAULT_TITLE,
        )

    async def save(self):
        try:
            await self.store.upsert(self.record())
        except Exception:
            logger.exception("Failed to save conversation %s", self.id)
