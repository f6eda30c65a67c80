"""Test suite for turn composition."""

import base64
from uuid import uuid4

from gyb_chat.domain.models import Attachment, ImagePart, Message, PlainText, Structured, TextPart
from gyb_chat.services.composer import DOCUMENT_PROMPT, MessageComposer

PNG = Attachment(file_name="chart.png", content_type="image/png", data=b"\x89PNG fake")
PDF = Attachment(file_name="report.pdf", content_type="application/pdf", data=b"%PDF-1.4 fake")


def test_plain_text_turn():
    composed = MessageComposer().compose("Hello")
    assert composed.turn.role == "user"
    assert composed.turn.content == PlainText(text="Hello")
    assert composed.attachment is None


def test_image_with_text_has_image_then_text():
    """Exactly one image part followed by exactly one text part."""
    content = MessageComposer().compose("What does this chart show?", PNG).turn.content

    assert isinstance(content, Structured)
    assert [type(part) for part in content.parts] == [ImagePart, TextPart]
    assert content.parts[1].text == "What does this chart show?"
    assert content.parts[0].url == "data:image/png;base64," + base64.b64encode(PNG.data).decode()
    assert content.file_name == "chart.png"
    assert content.file_type == "image"


def test_image_without_text_is_single_image_part():
    for text in ("", "   ", None):
        content = MessageComposer().compose(text, PNG).turn.content
        assert len(content.parts) == 1
        assert isinstance(content.parts[0], ImagePart)


def test_image_turn_does_not_retain_raw_file():
    assert MessageComposer().compose("look", PNG).attachment is None


def test_document_turn_keeps_file_for_dispatch():
    composed = MessageComposer().compose("Summarize the risks", PDF)
    content = composed.turn.content

    assert content.texts() == ["Analyzing file: report.pdf", "Summarize the risks"]
    assert content.file_name == "report.pdf"
    assert content.file_type == "application/pdf"
    assert not content.has_image()
    assert composed.attachment is PDF


def test_document_without_question_uses_default_prompt():
    content = MessageComposer().compose("", PDF).turn.content
    assert content.last_text() == DOCUMENT_PROMPT


def test_malformed_attachment_degrades_to_plain_text():
    """Composition never raises."""

    class Broken:
        file_name = "broken.bin"
        is_image = True
        content_type = "image/png"
        data = None  # not bytes

    composed = MessageComposer().compose("original words", Broken())
    assert composed.turn.content == PlainText(text="original words")


def test_non_string_input_is_echoed():
    assert MessageComposer().compose(42).turn.content == PlainText(text="42")
    assert MessageComposer().compose(None).turn.content == PlainText(text="")


def test_normalize_keeps_roles_and_content():
    chat_id = uuid4()
    messages = [
        Message(chat_id=chat_id, role="user", content="Hello"),
        Message(chat_id=chat_id, role="assistant", content="Hi there", ai_agent="CEO"),
    ]
    turns = MessageComposer().normalize(messages)
    assert [t.role for t in turns] == ["user", "assistant"]
    assert [t.content.as_text() for t in turns] == ["Hello", "Hi there"]


def test_ensure_content_passes_structured_through():
    structured = Structured(parts=[TextPart(text="a")])
    composer = MessageComposer()
    assert composer.ensure_content(structured) is structured
    assert composer.ensure_content("b") == PlainText(text="b")
