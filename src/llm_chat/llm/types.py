"""Types for the LLM streaming pipeline."""

import base64
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Union


class Role(str, Enum):
    """Author of a chat turn."""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class TextContent:
    text: str


@dataclass(frozen=True)
class ImageContent:
    """Raw image bytes; `base64` gives the wire encoding."""
    data: bytes
    media_type: str = "image/jpeg"

    @classmethod
    def from_base64(cls, encoded: str, media_type: str = "image/jpeg") -> "ImageContent":
        return cls(data=base64.b64decode(encoded), media_type=media_type)

    @property
    def base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")

    @property
    def data_url(self) -> str:
        return f"data:{self.media_type};base64,{self.base64}"


MessageContent = Union[TextContent, ImageContent]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ChatMessage:
    """A single immutable turn in a conversation."""
    role: Role
    content: MessageContent
    timestamp: datetime = field(default_factory=_utcnow)
    is_error: bool = False
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @classmethod
    def text_message(cls, role: Role, text: str, is_error: bool = False) -> "ChatMessage":
        return cls(role=Role(role), content=TextContent(text), is_error=is_error)

    @classmethod
    def image_message(cls, role: Role, data: bytes, media_type: str = "image/jpeg") -> "ChatMessage":
        return cls(role=Role(role), content=ImageContent(data, media_type))

    @property
    def is_user(self) -> bool:
        return self.role is Role.USER

    @property
    def text(self) -> str:
        """Text of the message, or an "[Image]" placeholder for image content."""
        if isinstance(self.content, TextContent):
            return self.content.text
        if isinstance(self.content, ImageContent):
            return "[Image]"
        raise TypeError(f"unknown message content: {self.content!r}")

    def to_dict(self) -> dict:
        if isinstance(self.content, TextContent):
            content = {"type": "text", "text": self.content.text}
        elif isinstance(self.content, ImageContent):
            content = {
                "type": "image",
                "data": self.content.base64,
                "media_type": self.content.media_type,
            }
        else:
            raise TypeError(f"unknown message content: {self.content!r}")
        return {
            "id": self.id,
            "role": self.role.value,
            "content": content,
            "timestamp": self.timestamp.isoformat(),
            "is_error": self.is_error,
        }


@dataclass(frozen=True)
class StreamDelta:
    """An incremental unit of assistant output."""
    text: str
    is_final: bool = False
    is_error: bool = False


class StreamState(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (StreamState.COMPLETED, StreamState.CANCELLED, StreamState.FAILED)

    @property
    def is_active(self) -> bool:
        return self in (StreamState.SENDING, StreamState.STREAMING)


class Language(str, Enum):
    """Response languages and the instruction that enforces each one."""
    SYSTEM = "System"
    ENGLISH = "English"
    SPANISH = "Spanish"
    FRENCH = "French"
    GERMAN = "German"
    ITALIAN = "Italian"
    PORTUGUESE = "Portuguese"
    RUSSIAN = "Russian"
    JAPANESE = "Japanese"
    CHINESE = "Chinese"
    KOREAN = "Korean"

    @classmethod
    def parse(cls, value: Union[str, "Language", None]) -> "Language":
        if isinstance(value, Language):
            return value
        if not value:
            return cls.ENGLISH
        for language in cls:
            if language.value.lower() == value.strip().lower():
                return language
        raise ValueError(f"unsupported language: {value}")

    @property
    def is_default(self) -> bool:
        return self in (Language.SYSTEM, Language.ENGLISH)

    @property
    def prompt_instruction(self) -> Optional[str]:
        return _LANGUAGE_INSTRUCTIONS.get(self)


_LANGUAGE_INSTRUCTIONS = {
    Language.ENGLISH: "Please respond in English.",
    Language.SPANISH: "Por favor, responde en español.",
    Language.FRENCH: "Veuillez répondre en français.",
    Language.GERMAN: "Bitte antworten Sie auf Deutsch.",
    Language.ITALIAN: "Per favore, rispondi in italiano.",
    Language.PORTUGUESE: "Por favor, responda em português.",
    Language.RUSSIAN: "Пожалуйста, ответьте на русском языке.",
    Language.JAPANESE: "日本語で回答してください。",
    Language.CHINESE: "请用中文回答。",
    Language.KOREAN: "한국어로 대답해 주세요.",
}


MIN_TEMPERATURE = 0.0
MAX_TEMPERATURE = 2.0


def clamp_temperature(value: float) -> float:
    return max(MIN_TEMPERATURE, min(MAX_TEMPERATURE, float(value)))


@dataclass
class RequestConfig:
    """Parameters for one streaming chat call."""
    endpoint_url: str
    model: str
    message: str
    api_token: Optional[str] = None
    use_chat_endpoint: bool = True
    temperature: float = 1.0
    system_prompt: str = ""
    user_prompt_template: str = ""
    history: list[ChatMessage] = field(default_factory=list)
    preferred_language: Language = Language.ENGLISH
    organization_id: Optional[str] = None

    def __post_init__(self):
        self.temperature = clamp_temperature(self.temperature)
        self.preferred_language = Language.parse(self.preferred_language)
        self.history = list(self.history)

    @property
    def has_token(self) -> bool:
        return bool(self.api_token and self.api_token.strip())


@dataclass(frozen=True)
class ContextBudget:
    """Token ceiling for a model, minus the share reserved for the reply."""
    max_tokens: int
    reserved_buffer: int

    @classmethod
    def for_max_tokens(cls, max_tokens: int) -> "ContextBudget":
        return cls(max_tokens=max_tokens, reserved_buffer=min(1000, max_tokens // 4))

    @property
    def usable(self) -> int:
        return self.max_tokens - self.reserved_buffer
