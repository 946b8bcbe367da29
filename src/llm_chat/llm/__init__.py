"""LLM streaming pipeline."""

from .context import ContextWindowManager, PreparedContext, prepare_context
from .controller import StreamHandle, StreamOutcome, StreamingRequestController
from .decoder import StreamDecoder, decode_stream
from .endpoints import list_models, normalize_endpoint
from .errors import (
    ChatStreamError,
    ConfigurationError,
    RequestInProgressError,
    TransportError,
    UpstreamError,
)
from .summarizer import ConversationSummarizer
from .tokens import context_budget, context_usage, estimate_tokens, max_tokens_for_model
from .types import (
    ChatMessage,
    ContextBudget,
    ImageContent,
    Language,
    RequestConfig,
    Role,
    StreamDelta,
    StreamState,
    TextContent,
)

__all__ = [
    "ChatMessage",
    "ChatStreamError",
    "ConfigurationError",
    "ContextBudget",
    "ContextWindowManager",
    "ConversationSummarizer",
    "ImageContent",
    "Language",
    "PreparedContext",
    "RequestConfig",
    "RequestInProgressError",
    "Role",
    "StreamDecoder",
    "StreamDelta",
    "StreamHandle",
    "StreamOutcome",
    "StreamState",
    "StreamingRequestController",
    "TextContent",
    "TransportError",
    "UpstreamError",
    "context_budget",
    "context_usage",
    "decode_stream",
    "estimate_tokens",
    "list_models",
    "max_tokens_for_model",
    "normalize_endpoint",
    "prepare_context",
]
