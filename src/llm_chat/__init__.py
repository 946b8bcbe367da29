"""Streaming chat client for OpenAI-compatible LLM endpoints."""

from .llm import (
    ContextWindowManager,
    ConversationSummarizer,
    RequestConfig,
    StreamDecoder,
    StreamingRequestController,
    estimate_tokens,
    max_tokens_for_model,
    prepare_context,
)

__version__ = "0.1.0"

__all__ = [
    "ContextWindowManager",
    "ConversationSummarizer",
    "RequestConfig",
    "StreamDecoder",
    "StreamingRequestController",
    "estimate_tokens",
    "max_tokens_for_model",
    "prepare_context",
]
