"""Fit conversation history into a model's context window."""

import logging
from dataclasses import dataclass
from typing import Optional

from .summarizer import ConversationSummarizer
from .tokens import context_budget, count_context_tokens
from .types import ChatMessage, ImageContent, RequestConfig, Role, TextContent

logger = logging.getLogger(__name__)

KEEP_AT_START = 3
KEEP_AT_END = 5
DIGEST_CHARS = 100
SUMMARY_TEMPLATE = "[Summary of previous conversation: {summary}]"


@dataclass
class PreparedContext:
    messages: list[ChatMessage]
    was_compressed: bool


def local_digest(messages: list[ChatMessage]) -> str:
    """Summarize by listing the start of every user message, one per line."""
    lines = []
    for message in messages:
        if not message.is_user:
            continue
        if isinstance(message.content, TextContent):
            text = message.content.text
            lines.append(text[:DIGEST_CHARS] + ("..." if len(text) > DIGEST_CHARS else ""))
        elif isinstance(message.content, ImageContent):
            lines.append("[Image]")
    return "\n".join(lines) if lines else "Previous conversation"


class ContextWindowManager:
    """Keeps the head and tail of a long history and summarizes the middle."""

    def __init__(self, summarizer: Optional[ConversationSummarizer] = None):
        self.summarizer = summarizer

    async def prepare(
        self,
        history: list[ChatMessage],
        system_prompt: str,
        model: str,
        config: Optional[RequestConfig] = None,
    ) -> PreparedContext:
        """Return history unchanged if it fits, otherwise a compressed copy.

        Args:
            history: Prior turns, oldest first.
            system_prompt: The system prompt that will precede the history.
            model: Model name used to look up the context ceiling.
            config: Endpoint settings for the summarizer; without it the local
                digest is used.
        """
        history = list(history)
        if not history:
            return PreparedContext(messages=[], was_compressed=False)

        budget = context_budget(model)
        total = count_context_tokens(history, system_prompt)
        if total <= budget.usable:
            return PreparedContext(messages=history, was_compressed=False)

        keep_start = min(KEEP_AT_START, len(history))
        keep_end = min(KEEP_AT_END, len(history) - keep_start)
        head = history[:keep_start]
        middle = history[keep_start:len(history) - keep_end]
        tail = history[len(history) - keep_end:]
        logger.info(
            "History over budget for %s (%d > %d tokens); keeping %d+%d, summarizing %d",
            model, total, budget.usable, len(head), len(tail), len(middle),
        )

        messages = list(head)
        if middle:
            summary = await self._summarize(middle, config)
            messages.append(
                ChatMessage.text_message(Role.ASSISTANT, SUMMARY_TEMPLATE.format(summary=summary))
            )
        messages.extend(tail)
        return PreparedContext(messages=messages, was_compressed=True)

    async def _summarize(self, middle: list[ChatMessage], config: Optional[RequestConfig]) -> str:
        if self.summarizer is not None and config is not None:
            try:
                summary = await self.summarizer.try_summarize(middle, config)
            except Exception:
                logger.exception("Summarizer failed; using local digest")
                summary = None
            if summary:
                return summary
        return local_digest(middle)


async def prepare_context(
    history: list[ChatMessage],
    system_prompt: str,
    model: str,
    summarizer: Optional[ConversationSummarizer] = None,
    config: Optional[RequestConfig] = None,
) -> tuple[list[ChatMessage], bool]:
    prepared = await ContextWindowManager(summarizer).prepare(history, system_prompt, model, config)
    return prepared.messages, prepared.was_compressed
