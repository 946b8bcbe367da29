"""Short LLM-generated summaries of conversation history."""

import logging
import re
from typing import Optional

import httpx

from .endpoints import build_headers, normalize_endpoint
from .errors import ConfigurationError
from .types import ChatMessage, ImageContent, RequestConfig, TextContent

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "New Conversation"
IMAGE_TITLE = "Image Conversation"
TITLE_CHARS = 50

SUMMARY_SYSTEM_PROMPT = (
    "You are a helpful assistant that generates short, concise titles (5 words max) "
    "for chat conversations. The title should capture the main topic or question."
)
SUMMARY_USER_PROMPT = "Please create a short, concise title (5 words max) for this conversation:\n\n{transcript}"


def build_transcript(messages: list[ChatMessage]) -> str:
    """Render messages as "Role: text" blocks.

    With more than three messages only the first exchange is included.
    """
    parts = []
    for index, message in enumerate(messages):
        role = "User" if message.is_user else "Assistant"
        parts.append(f"{role}: {message.text}\n\n")
        if index >= 1 and len(messages) > 3:
            break
    return "".join(parts)


def fallback_title(messages: list[ChatMessage]) -> str:
    first_user = next((m for m in messages if m.is_user), None)
    if first_user is None:
        return DEFAULT_TITLE
    if isinstance(first_user.content, ImageContent):
        return IMAGE_TITLE
    if isinstance(first_user.content, TextContent):
        text = first_user.content.text
        return text[:TITLE_CHARS] + ("..." if len(text) > TITLE_CHARS else "")
    return DEFAULT_TITLE


def clean_title(content: str) -> str:
    title = content.strip()
    title = re.sub(r'^"', "", title)
    title = re.sub(r'"$', "", title)
    return title.strip()


class ConversationSummarizer:
    """Asks the endpoint for a five-word summary of a conversation."""

    def __init__(self, client: httpx.AsyncClient | None = None, timeout: float = 30.0):
        self._client = client
        self._owns_client = client is None
        self.timeout = timeout

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client

    async def try_summarize(self, messages: list[ChatMessage], config: RequestConfig) -> Optional[str]:
        """Return the model's summary, or None if it could not be obtained."""
        if not messages:
            return None
        if not config.has_token:
            logger.info("No API token configured; skipping LLM summary")
            return None
        try:
            url = normalize_endpoint(config.endpoint_url, use_chat_endpoint=True)
        except ConfigurationError as e:
            logger.warning("Cannot summarize conversation: %s", e)
            return None

        payload = {
            "model": config.model,
            "messages": [
                {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
                {"role": "user", "content": SUMMARY_USER_PROMPT.format(transcript=build_transcript(messages))},
            ],
            "max_tokens": 20,
            "stream": False,
        }
        client = await self._get_client()
        try:
            response = await client.post(
                url,
                json=payload,
                headers=build_headers(config.api_token, config.organization_id),
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            logger.warning("Summary request failed: %s", e)
            return None

        if not response.is_success:
            logger.warning("Summary request returned status %s", response.status_code)
            return None
        try:
            content = response.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError):
            logger.warning("Summary response had an unexpected shape")
            return None
        if not isinstance(content, str):
            return None
        return clean_title(content) or None

    async def summarize(self, messages: list[ChatMessage], config: RequestConfig) -> str:
        """Best-effort summary; never raises, degrades to a truncated first message."""
        try:
            summary = await self.try_summarize(messages, config)
        except Exception:
            logger.exception("Unexpected error while summarizing conversation")
            summary = None
        if summary is None:
            return fallback_title(messages)
        return summary

    async def close(self):
        if self._client and self._owns_client:
            await self._client.aclose()
            self._client = None
