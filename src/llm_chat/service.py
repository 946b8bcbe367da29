"""Shared state behind the HTTP routes."""

import logging
from typing import Optional

import httpx
from fastapi import Request

from .config import AppSettings
from .conversation import ChatSession, ConversationStore, InMemoryConversationStore
from .llm.context import ContextWindowManager
from .llm.controller import StreamingRequestController
from .llm.endpoints import list_models
from .llm.summarizer import ConversationSummarizer

logger = logging.getLogger(__name__)


class ChatService:
    """Owns the HTTP client, the conversation store and live chat sessions."""

    def __init__(
        self,
        settings: AppSettings,
        client: httpx.AsyncClient | None = None,
        store: ConversationStore | None = None,
    ):
        self.settings = settings
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient()
        self.store = store or InMemoryConversationStore()
        self.summarizer = ConversationSummarizer(self.client, timeout=settings.request_timeout)
        self.sessions: dict[str, ChatSession] = {}

    def new_controller(self) -> StreamingRequestController:
        return StreamingRequestController(
            client=self.client,
            context_manager=ContextWindowManager(self.summarizer),
            watchdog_timeout=self.settings.watchdog_seconds,
            request_timeout=self.settings.request_timeout,
        )

    async def get_session(self, conversation_id: Optional[str] = None) -> ChatSession:
        """Return the live session for an ID, reloading it from the store if needed.

        Only sessions with a turn in flight stay live; `release` drops the rest.

        Raises:
            KeyError: If an ID is given that neither a live session nor the
                store knows about.
        """
        if conversation_id is None:
            session = ChatSession(
                self.settings,
                self.store,
                controller=self.new_controller(),
                summarizer=self.summarizer,
                on_idle=self.release,
            )
            self.sessions[session.id] = session
            return session

        session = self.sessions.get(conversation_id)
        if session is not None:
            return session
        record = await self.store.get(conversation_id)
        if record is None:
            raise KeyError(conversation_id)
        session = ChatSession.from_record(
            record,
            self.settings,
            self.store,
            controller=self.new_controller(),
            summarizer=self.summarizer,
            on_idle=self.release,
        )
        self.sessions[session.id] = session
        return session

    def release(self, session: ChatSession):
        """Forget a session once its turn has settled; the store keeps the record."""
        if session.is_streaming or self.sessions.get(session.id) is not session:
            return
        del self.sessions[session.id]
        logger.debug("Released idle session %s", session.id)

    async def list_models(self, timeout: float = 30.0) -> list[str]:
        return await list_models(self.client, self.settings.endpoint_url, self.settings.api_token, timeout=timeout)

    async def aclose(self):
        for session in self.sessions.values():
            session.cancel()
        await self.summarizer.close()
        if self._owns_client:
            await self.client.aclose()


def get_chat_service(request: Request) -> ChatService:
    """FastAPI dependency: the service attached to the app at creation time."""
    return request.app.state.chat_service
