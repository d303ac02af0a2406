"""Request models shared by every adapter."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

Role = Literal["user", "assistant", "system"]


@dataclass(frozen=True)
class ChatMessage:
    role: Role
    content: str

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChatMessage:
        role = str(data.get("role") or "user").lower()
        if role not in ("user", "assistant", "system"):
            role = "user"
        content = data.get("content")
        return cls(role=role, content=content if isinstance(content, str) else str(content or ""))

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class SendRequest:
    """Canonical envelope handed to exactly one adapter invocation."""

    credential: str
    provider_id: str
    model: str
    messages: tuple[ChatMessage, ...]
    account_id: str | None = None
    conversation_id: str | None = None
    stream: bool = True
    search: bool = False
    thinking: bool | None = None
    temperature: float | None = None
    ref_file_ids: tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        if not self.messages:
            raise ValueError("SendRequest requires at least one message")
        # Lists passed by callers are frozen so the adapter cannot mutate history.
        object.__setattr__(self, "messages", tuple(self.messages))
        object.__setattr__(self, "ref_file_ids", tuple(self.ref_file_ids))

    @property
    def last_message(self) -> ChatMessage:
        return self.messages[-1]

    def first_user_text(self) -> str:
        for message in self.messages:
            if message.role == "user":
                return message.content
        return ""


@dataclass
class ConversationSummary:
    id: str
    title: str
    updated_at: str | None = None


@dataclass
class ConversationDetail:
    id: str
    title: str
    messages: list[ChatMessage]


@dataclass
class UploadedFile:
    id: str
    name: str
    status: str
    size: int | None = None


@dataclass
class ModelInfo:
    id: str
    name: str = ""
    description: str = ""
    context_length: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name or self.id,
            "description": self.description,
            "context_length": self.context_length,
        }
