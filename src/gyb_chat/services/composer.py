"""Turns raw user input into provider-agnostic chat turns."""

import base64
from typing import Iterable, List, Optional, Union

import structlog

from ..domain.models import (
    Attachment,
    ChatTurn,
    ComposedTurn,
    ImagePart,
    Message,
    MessageContent,
    PlainText,
    Structured,
    TextPart,
)

logger = structlog.get_logger()

DOCUMENT_PROMPT = "Please analyze this file."


def to_data_url(attachment: Attachment) -> str:
    encoded = base64.b64encode(attachment.data).decode("ascii")
    return f"data:{attachment.content_type};base64,{encoded}"


class MessageComposer:
    """Pure transform from user input to ``ComposedTurn``.

    ``compose`` never raises: anything it cannot make sense of degrades to a
    plain-text echo of the original string.
    """

    def compose(self, text: Optional[str], attachment: Optional[Attachment] = None) -> ComposedTurn:
        raw = text if isinstance(text, str) else ("" if text is None else str(text))
        try:
            if attachment is None:
                return self._plain(raw)
            if attachment.is_image:
                return self._compose_image(raw, attachment)
            return self._compose_document(raw, attachment)
        except (AttributeError, TypeError, ValueError) as e:
            logger.warning("compose_degraded_to_text", error=str(e))
            return self._plain(raw)

    def _plain(self, text: str) -> ComposedTurn:
        return ComposedTurn(turn=ChatTurn(role="user", content=PlainText(text=text)))

    def _compose_image(self, text: str, attachment: Attachment) -> ComposedTurn:
        parts: List[Union[TextPart, ImagePart]] = [ImagePart(url=to_data_url(attachment))]
        if text.strip():
            parts.append(TextPart(text=text.strip()))
        content = Structured(parts=parts, file_name=attachment.file_name, file_type="image")
        return ComposedTurn(turn=ChatTurn(role="user", content=content))

    def _compose_document(self, text: str, attachment: Attachment) -> ComposedTurn:
        content = Structured(
            parts=[
                TextPart(text=f"Analyzing file: {attachment.file_name}"),
                TextPart(text=text.strip() or DOCUMENT_PROMPT),
            ],
            file_name=attachment.file_name,
            file_type=attachment.content_type,
        )
        # The raw file travels with the turn for the dispatcher, it is never stored.
        return ComposedTurn(turn=ChatTurn(role="user", content=content), attachment=attachment)

    def ensure_content(self, value: Union[str, MessageContent]) -> MessageContent:
        if isinstance(value, (PlainText, Structured)):
            return value
        return self.compose(value).turn.content

    def normalize(self, messages: Iterable[Message]) -> List[ChatTurn]:
        """Convert stored messages into the turn shape used for dispatch."""
        return [ChatTurn(role=message.role, content=message.content) for message in messages]
