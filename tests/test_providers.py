"""Test suite for provider message translation."""

import asyncio
import base64
from types import SimpleNamespace

import pytest

from gyb_chat.domain.errors import DispatchError
from gyb_chat.domain.models import Attachment, ChatTurn, ImagePart, Structured, TextPart
from gyb_chat.services.composer import MessageComposer
from gyb_chat.services.dispatcher import AIDispatcher
from gyb_chat.services.providers import gemini_provider
from gyb_chat.services.providers.gemini_provider import GeminiProvider, parse_data_url, to_gemini_content
from gyb_chat.services.providers.openai_provider import OpenAIProvider, to_openai_message

DATA_URL = "data:image/png;base64," + base64.b64encode(b"png bytes").decode()
PDF = Attachment(file_name="report.pdf", content_type="application/pdf", data=b"pdf")


def fake_client(completion):
    """Minimal stand-in for AsyncOpenAI exposing chat.completions.create."""
    calls = []

    async def create(**kwargs):
        calls.append(kwargs)
        return completion

    client = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))
    return client, calls


def image_turn(role="user"):
    return ChatTurn(
        role=role,
        content=Structured(parts=[ImagePart(url=DATA_URL), TextPart(text="What is this?")], file_name="a.png", file_type="image"),
    )


def test_openai_plain_message():
    assert to_openai_message(ChatTurn(role="assistant", content="Hi")) == {"role": "assistant", "content": "Hi"}


def test_openai_image_message():
    message = to_openai_message(image_turn())
    assert message["role"] == "user"
    assert message["content"] == [
        {"type": "image_url", "image_url": {"url": DATA_URL}},
        {"type": "text", "text": "What is this?"},
    ]


def test_openai_non_user_structured_is_flattened():
    assert to_openai_message(image_turn("assistant")) == {"role": "assistant", "content": "What is this?"}


def test_parse_data_url():
    assert parse_data_url(DATA_URL) == {"mime_type": "image/png", "data": b"png bytes"}
    assert parse_data_url("https://example.com/cat.png") is None
    assert parse_data_url("data:image/png,raw") is None


def test_gemini_content_roles_and_parts():
    assert to_gemini_content(ChatTurn(role="assistant", content="Hi")) == {"role": "model", "parts": ["Hi"]}

    content = to_gemini_content(image_turn())
    assert content["role"] == "user"
    assert content["parts"] == [{"mime_type": "image/png", "data": b"png bytes"}, "What is this?"]


@pytest.mark.asyncio
async def test_openai_text_completion_request():
    """The persona prompt leads, history follows in order."""
    completion = SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content="Hello back"))])
    client, calls = fake_client(completion)
    provider = OpenAIProvider(client=client, text_model="test-model")

    reply = await provider.complete_text(
        "Be brief.",
        [ChatTurn(role="user", content="Hello"), ChatTurn(role="assistant", content="Hi"), ChatTurn(role="user", content="Bye")],
        max_tokens=500,
        temperature=0.7,
    )

    assert reply == "Hello back"
    kwargs = calls[0]
    assert kwargs["model"] == "test-model"
    assert kwargs["max_tokens"] == 500
    assert [m["content"] for m in kwargs["messages"]] == ["Be brief.", "Hello", "Hi", "Bye"]
    assert kwargs["messages"][0]["role"] == "system"


@pytest.mark.asyncio
async def test_openai_empty_choices_is_none():
    client, _ = fake_client(SimpleNamespace(choices=[]))
    provider = OpenAIProvider(client=client)
    assert await provider.complete_vision("prompt", image_turn(), max_tokens=500) is None


def fake_genai(monkeypatch, file_state="ACTIVE", reply="Quarterly summary"):
    """Replace the Gemini SDK calls; returns the list of deleted file names."""
    deleted = []

    class FakeModel:
        def __init__(self, model_name, system_instruction=None):
            self.system_instruction = system_instruction

        async def generate_content_async(self, contents, generation_config=None):
            return SimpleNamespace(text=reply)

    def upload_file(data, mime_type=None, display_name=None):
        return SimpleNamespace(name="files/report")

    def get_file(name):
        return SimpleNamespace(name=name, state=SimpleNamespace(name=file_state))

    monkeypatch.setattr(gemini_provider.genai, "GenerativeModel", FakeModel)
    monkeypatch.setattr(gemini_provider.genai, "upload_file", upload_file)
    monkeypatch.setattr(gemini_provider.genai, "get_file", get_file)
    monkeypatch.setattr(gemini_provider.genai, "delete_file", deleted.append)
    monkeypatch.setattr(gemini_provider, "FILE_POLL_INTERVAL", 0.01)
    return deleted


def assert_released(provider):
    assert provider._threads == {}
    assert provider._runs == {}
    assert provider._thread_runs == {}


@pytest.mark.asyncio
async def test_gemini_document_analysis_releases_upload(monkeypatch):
    """A finished analysis returns the reply and deletes the uploaded file."""
    deleted = fake_genai(monkeypatch)
    provider = GeminiProvider()
    dispatcher = AIDispatcher(provider, poll_interval=0.01, poll_max_wait=2.0, poll_max_attempts=50)
    composed = MessageComposer().compose("What are the risks?", PDF)

    reply = await dispatcher.complete([], composed.turn, attachment=composed.attachment)

    assert reply == "Quarterly summary"
    assert deleted == ["files/report"]
    assert_released(provider)


@pytest.mark.asyncio
async def test_gemini_failed_file_processing(monkeypatch):
    deleted = fake_genai(monkeypatch, file_state="FAILED")
    provider = GeminiProvider()
    dispatcher = AIDispatcher(provider, poll_interval=0.01, poll_max_wait=2.0, poll_max_attempts=50)
    composed = MessageComposer().compose("", PDF)

    with pytest.raises(DispatchError) as excinfo:
        await dispatcher.complete([], composed.turn, attachment=composed.attachment)

    assert excinfo.value.kind == "provider"
    assert deleted == ["files/report"]
    assert_released(provider)


@pytest.mark.asyncio
async def test_gemini_cancel_run_stops_task(monkeypatch):
    """Cancelling a run that is still waiting on its file stops it and cleans up."""
    deleted = fake_genai(monkeypatch, file_state="PROCESSING")
    provider = GeminiProvider()
    assistant_id = await provider.create_assistant("Analyst", "Analyze files.")
    thread_id = await provider.create_thread()
    await provider.add_thread_message(thread_id, "Summarize", await provider.upload_file(PDF))
    run_id = await provider.start_run(thread_id, assistant_id)
    task = provider._runs[run_id]

    await asyncio.sleep(0.03)
    assert await provider.get_run_status(thread_id, run_id) == "in_progress"
    await provider.cancel_run(thread_id, run_id)

    with pytest.raises(asyncio.CancelledError):
        await task
    assert deleted == ["files/report"]
    assert_released(provider)


@pytest.mark.asyncio
async def test_gemini_cancelled_task_reports_cancelled(monkeypatch):
    deleted = fake_genai(monkeypatch, file_state="PROCESSING")
    provider = GeminiProvider()
    assistant_id = await provider.create_assistant("Analyst", "Analyze files.")
    thread_id = await provider.create_thread()
    await provider.add_thread_message(thread_id, "Summarize", "files/report")
    run_id = await provider.start_run(thread_id, assistant_id)

    provider._runs[run_id].cancel()
    await asyncio.sleep(0.01)

    assert await provider.get_run_status(thread_id, run_id) == "cancelled"
    assert deleted == ["files/report"]
    assert_released(provider)
