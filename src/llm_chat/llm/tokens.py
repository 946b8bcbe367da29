"""Rough token accounting for context window management.

Counts are a character-based heuristic, not BPE tokenization. Treat them as an
upper-bound estimate rather than the exact figure the remote API will bill.
"""

import math

from .types import ChatMessage, ContextBudget, ImageContent, TextContent

TOKENS_PER_CHAR = 0.25
TOKENS_PER_MESSAGE = 4
IMAGE_TOKEN_COST = 1000
DEFAULT_MAX_TOKENS = 4096

# Most specific first: "gpt-4-turbo" also contains "gpt-4".
MODEL_MAX_TOKENS: list[tuple[str, int]] = [
    ("gpt-4-turbo", 128000),
    ("gpt-4", 8192),
    ("gpt-3.5-turbo-16k", 16384),
    ("gpt-3.5-turbo", 4096),
]


def estimate_tokens(text: str) -> int:
    return math.floor(len(text) * TOKENS_PER_CHAR) + TOKENS_PER_MESSAGE


def estimate_message_tokens(message: ChatMessage) -> int:
    if isinstance(message.content, TextContent):
        return estimate_tokens(message.content.text)
    if isinstance(message.content, ImageContent):
        return IMAGE_TOKEN_COST
    raise TypeError(f"unknown message content: {message.content!r}")


def max_tokens_for_model(model_name: str) -> int:
    name = (model_name or "").lower()
    for fragment, max_tokens in MODEL_MAX_TOKENS:
        if fragment in name:
            return max_tokens
    return DEFAULT_MAX_TOKENS


def context_budget(model_name: str) -> ContextBudget:
    return ContextBudget.for_max_tokens(max_tokens_for_model(model_name))


def count_context_tokens(history: list[ChatMessage], system_prompt: str) -> int:
    return estimate_tokens(system_prompt) + sum(estimate_message_tokens(m) for m in history)


def context_usage(history: list[ChatMessage], system_prompt: str, model: str) -> tuple[int, int, float, bool]:
    """Report how much of the model's window a conversation occupies.

    Returns:
        (total_tokens, max_tokens, percent_used capped at 100, over_budget)
    """
    budget = context_budget(model)
    total = count_context_tokens(history, system_prompt)
    percent = min(total / budget.max_tokens * 100, 100.0)
    return total, budget.max_tokens, percent, total > budget.usable
