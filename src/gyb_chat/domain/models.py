"""Domain models for the chat application."""

from datetime import datetime, timezone
from typing import Annotated, Dict, List, Literal, Optional, Union, get_args
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator

DEFAULT_TITLE = "New Chat"

Role = Literal["user", "assistant", "system"]
ROLES = get_args(Role)
ChatStatus = Literal["idle", "awaiting_reply", "error_surfaced"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TextPart(BaseModel):
    """Text fragment of a structured payload."""

    model_config = ConfigDict(frozen=True)

    type: Literal["text"] = "text"
    text: str


class ImagePart(BaseModel):
    """Image fragment of a structured payload (data URL or remote reference)."""

    model_config = ConfigDict(frozen=True)

    type: Literal["image"] = "image"
    url: str


Part = Annotated[Union[TextPart, ImagePart], Field(discriminator="type")]


class PlainText(BaseModel):
    """Plain text message content."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["plain"] = "plain"
    text: str

    def as_text(self) -> str:
        return self.text

    def has_image(self) -> bool:
        return False


class Structured(BaseModel):
    """Ordered text/image parts, optionally describing an uploaded file."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["structured"] = "structured"
    parts: List[Part]
    file_name: Optional[str] = None
    file_type: Optional[str] = None

    def has_image(self) -> bool:
        return any(isinstance(part, ImagePart) for part in self.parts)

    def has_file(self) -> bool:
        return bool(self.file_name and self.file_type)

    def texts(self) -> List[str]:
        return [part.text for part in self.parts if isinstance(part, TextPart)]

    def last_text(self) -> Optional[str]:
        texts = self.texts()
        return texts[-1] if texts else None

    def as_text(self) -> str:
        return "\n".join(self.texts())


MessageContent = Annotated[Union[PlainText, Structured], Field(discriminator="kind")]

content_adapter: TypeAdapter = TypeAdapter(MessageContent)


def _wrap_plain(value):
    if isinstance(value, str):
        return PlainText(text=value)
    return value


def _check_role_fields(role: str, sender_id: Optional[str], ai_agent: Optional[str]) -> None:
    if role == "assistant":
        if sender_id is not None:
            raise ValueError("assistant messages cannot have a sender_id")
        if not ai_agent:
            raise ValueError("assistant messages must carry an ai_agent")
    elif role == "user" and ai_agent is not None:
        raise ValueError("user messages cannot carry an ai_agent")


class MessageDraft(BaseModel):
    """A message before the store assigns its id and timestamp."""

    model_config = ConfigDict(frozen=True)

    role: Role = "user"
    content: MessageContent
    sender_id: Optional[str] = None
    ai_agent: Optional[str] = None

    @field_validator("content", mode="before")
    @classmethod
    def coerce_content(cls, value):
        return _wrap_plain(value)

    @model_validator(mode="after")
    def validate_role_fields(self) -> "MessageDraft":
        _check_role_fields(self.role, self.sender_id, self.ai_agent)
        return self


class Message(BaseModel):
    """Message model. Immutable once stored."""

    model_config = ConfigDict(frozen=True)

    id: UUID = Field(default_factory=uuid4)
    chat_id: UUID
    role: Role = "user"
    content: MessageContent
    sender_id: Optional[str] = None
    ai_agent: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("content", mode="before")
    @classmethod
    def coerce_content(cls, value):
        return _wrap_plain(value)

    @model_validator(mode="after")
    def validate_role_fields(self) -> "Message":
        _check_role_fields(self.role, self.sender_id, self.ai_agent)
        return self


class Conversation(BaseModel):
    """Conversation model."""

    id: UUID = Field(default_factory=uuid4)
    owner_id: str
    title: str = DEFAULT_TITLE
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    messages: List[Message] = Field(default_factory=list)


class Attachment(BaseModel):
    """Raw uploaded file. Never persisted."""

    file_name: str
    content_type: str = "application/octet-stream"
    data: bytes

    @property
    def is_image(self) -> bool:
        return self.content_type.lower().startswith("image/")


class ChatTurn(BaseModel):
    """Provider-agnostic message shape sent to the completion service."""

    model_config = ConfigDict(frozen=True)

    role: Role
    content: MessageContent

    @field_validator("content", mode="before")
    @classmethod
    def coerce_content(cls, value):
        return _wrap_plain(value)


class ComposedTurn(BaseModel):
    """A normalized user turn plus the attachment kept for document analysis."""

    turn: ChatTurn
    attachment: Optional[Attachment] = None


class ChatState(BaseModel):
    """Observable controller state consumed by the UI layer."""

    chats: List[Conversation] = Field(default_factory=list)
    chats_available: bool = True
    current_chat_id: Optional[UUID] = None
    is_loading: bool = False
    error: Optional[str] = None
    statuses: Dict[UUID, ChatStatus] = Field(default_factory=dict)

    def status_of(self, chat_id: UUID) -> ChatStatus:
        return self.statuses.get(chat_id, "idle")

    def find(self, chat_id: UUID) -> Optional[Conversation]:
        return next((chat for chat in self.chats if chat.id == chat_id), None)
