"""Test suite for the conversation controller."""

import asyncio

import pytest

from fakes import (
    FailingDeleteRepository,
    FakeProvider,
    FlakyListingRepository,
    SelectiveFailureProvider,
    SlowProvider,
)
from gyb_chat.domain.errors import PersistenceError
from gyb_chat.domain.models import Attachment, ImagePart, Structured
from gyb_chat.repositories.memory import InMemoryRepository
from gyb_chat.services.controller import (
    DELETE_FAILED,
    REPLY_FAILED,
    ControllerRegistry,
    ConversationController,
)
from gyb_chat.services.dispatcher import AIDispatcher

PNG = Attachment(file_name="cat.png", content_type="image/png", data=b"png")
PDF = Attachment(file_name="report.pdf", content_type="application/pdf", data=b"pdf")


def record_statuses(controller, chat_id):
    """Collect the distinct status transitions a subscriber observes."""
    seen = []

    def listener(state):
        status = state.statuses.get(chat_id)
        if status is not None and (not seen or seen[-1] != status):
            seen.append(status)

    controller.subscribe(listener)
    return seen


@pytest.mark.asyncio
async def test_send_and_receive_reply(controller, repository):
    """A text turn is stored, answered and both turns are visible in order."""
    await controller.on_auth_changed("alice")
    chat_id = await controller.create_new_chat()
    created = await repository.get_conversation(chat_id)

    message = await controller.add_message(chat_id, "Hello", sender_id="alice", persona="CEO")

    messages = await repository.get_messages(chat_id)
    assert [m.role for m in messages] == ["user", "assistant"]
    assert messages[0].id == message.id
    assert messages[0].content.as_text() == "Hello"
    assert messages[1].content.as_text() == "Hi there"
    assert messages[1].ai_agent == "CEO"
    assert messages[1].sender_id is None

    conversation = await repository.get_conversation(chat_id)
    assert created.updated_at < messages[0].created_at < messages[1].created_at
    assert conversation.updated_at == messages[1].created_at

    assert controller.state.error is None
    assert controller.state.status_of(chat_id) == "idle"
    assert controller.state.current_chat_id == chat_id
    # The change feed keeps the visible list in sync.
    assert len(controller.state.find(chat_id).messages) == 2


@pytest.mark.asyncio
async def test_image_only_turn_goes_to_vision(controller, repository, provider):
    await controller.on_auth_changed("alice")
    chat_id = await controller.create_new_chat()

    await controller.add_message(chat_id, "", sender_id="alice", attachment=PNG)

    user_message = (await repository.get_messages(chat_id))[0]
    assert isinstance(user_message.content, Structured)
    assert len(user_message.content.parts) == 1
    assert isinstance(user_message.content.parts[0], ImagePart)
    assert provider.calls == ["vision"]


@pytest.mark.asyncio
async def test_failed_reply_keeps_user_message(repository):
    """The user's turn survives a provider failure and the error is surfaced."""
    provider = FakeProvider(error=ConnectionError("network down"))
    controller = ConversationController(repository, AIDispatcher(provider))
    await controller.on_auth_changed("alice")
    chat_id = await controller.create_new_chat()
    statuses = record_statuses(controller, chat_id)

    message = await controller.add_message(chat_id, "Hello", sender_id="alice")

    assert message is not None
    messages = await repository.get_messages(chat_id)
    assert [m.id for m in messages] == [message.id]
    assert controller.state.error == REPLY_FAILED
    assert controller.state.status_of(chat_id) == "idle"
    assert statuses == ["idle", "awaiting_reply", "error_surfaced", "idle"]

    controller.clear_error()
    assert controller.state.error is None


@pytest.mark.asyncio
async def test_role_fields_are_normalized(controller, repository):
    """Stored assistant turns never carry sender_id; user turns never carry ai_agent."""
    await controller.on_auth_changed("alice")
    chat_id = await controller.create_new_chat()

    await controller.add_message(chat_id, "Hello", sender_id="alice", persona="CTO")
    await controller.add_message(chat_id, "Manual note", role="assistant", sender_id="alice", persona="CTO")

    messages = await repository.get_messages(chat_id)
    for message in messages:
        if message.role == "assistant":
            assert message.sender_id is None
            assert message.ai_agent == "CTO"
        else:
            assert message.ai_agent is None
            assert message.sender_id == "alice"
    # Assistant turns added directly are not answered.
    assert len(messages) == 3


@pytest.mark.asyncio
async def test_empty_message_is_rejected(controller, repository, provider):
    await controller.on_auth_changed("alice")
    chat_id = await controller.create_new_chat()

    assert await controller.add_message(chat_id, "   ", sender_id="alice") is None

    assert controller.state.error == "Message must not be empty"
    assert await repository.get_messages(chat_id) == []
    assert provider.calls == []


@pytest.mark.asyncio
async def test_rename_chat(controller, repository):
    await controller.on_auth_changed("alice")
    chat_id = await controller.create_new_chat()

    assert await controller.rename_chat(chat_id, "  Hiring plan  ") is True
    assert (await repository.get_conversation(chat_id)).title == "Hiring plan"

    assert await controller.rename_chat(chat_id, "   ") is False
    assert controller.state.error == "Chat title must not be empty"
    assert (await repository.get_conversation(chat_id)).title == "Hiring plan"


@pytest.mark.asyncio
async def test_delete_current_chat(controller, repository):
    await controller.on_auth_changed("alice")
    chat_id = await controller.create_new_chat()
    await controller.add_message(chat_id, "Hello", sender_id="alice")

    assert await controller.delete_chat(chat_id) is True

    assert controller.state.current_chat_id is None
    assert controller.state.find(chat_id) is None
    assert chat_id not in controller.state.statuses
    assert await repository.get_conversation(chat_id) is None


@pytest.mark.asyncio
async def test_sign_out_clears_state(controller):
    await controller.on_auth_changed("alice")
    await controller.create_new_chat()
    assert len(controller.state.chats) == 1

    await controller.on_auth_changed(None)

    assert controller.state.chats == []
    assert controller.state.current_chat_id is None
    assert controller.owner_id is None


@pytest.mark.asyncio
async def test_owners_see_only_their_chats(repository, dispatcher):
    registry = ControllerRegistry(repository, dispatcher)
    alice = await registry.for_owner("alice")
    bob = await registry.for_owner("bob")

    await alice.create_new_chat()

    assert len(alice.state.chats) == 1
    assert bob.state.chats == []
    assert await registry.for_owner("alice") is alice

    await registry.sign_out("alice")
    assert alice.state.chats == []
    assert await registry.for_owner("alice") is not alice


@pytest.mark.asyncio
async def test_load_failure_marks_chats_unavailable(dispatcher):
    """A store outage is distinct from having no conversations."""

    class BrokenRepository(InMemoryRepository):
        async def list_for_owner(self, owner_id):
            raise PersistenceError("store offline")

    controller = ConversationController(BrokenRepository(), dispatcher)
    await controller.on_auth_changed("alice")

    assert controller.state.chats_available is False
    assert controller.state.error == "Failed to load chats"
    assert controller.state.is_loading is False


@pytest.mark.asyncio
async def test_rapid_turns_are_answered_in_order(repository):
    """A second turn sent while the first is pending sees the first reply."""
    provider = SlowProvider(delay=0.05)
    controller = ConversationController(repository, AIDispatcher(provider))
    await controller.on_auth_changed("alice")
    chat_id = await controller.create_new_chat()

    first = asyncio.create_task(controller.add_message(chat_id, "First", sender_id="alice"))
    while controller.state.status_of(chat_id) != "awaiting_reply":
        await asyncio.sleep(0.001)
    second = asyncio.create_task(controller.add_message(chat_id, "Second", sender_id="alice"))
    await first

    # The first reply landing does not mark the chat idle while the second waits.
    assert not second.done()
    assert controller.state.status_of(chat_id) == "awaiting_reply"
    await second

    messages = await repository.get_messages(chat_id)
    assert [m.content.as_text() for m in messages] == ["First", "Second", "echo: First", "echo: Second"]

    second_request = provider.text_requests[1]["turns"]
    assert [t.content.as_text() for t in second_request] == ["First", "echo: First", "Second"]
    assert controller.state.status_of(chat_id) == "idle"


@pytest.mark.asyncio
async def test_unknown_role_is_rejected(controller, repository, provider):
    await controller.on_auth_changed("alice")
    chat_id = await controller.create_new_chat()

    assert await controller.add_message(chat_id, "hi", role="bot", sender_id="alice") is None

    assert controller.state.error == "Unknown message role: bot"
    assert await repository.get_messages(chat_id) == []
    assert provider.calls == []


@pytest.mark.asyncio
async def test_turn_errors_stay_with_their_chat(repository):
    """A failure in one chat is not reported as the outcome of another."""
    controller = ConversationController(repository, AIDispatcher(SelectiveFailureProvider(fail_on="boom")))
    await controller.on_auth_changed("alice")
    failing = await controller.create_new_chat()
    healthy = await controller.create_new_chat()

    failed, answered = await asyncio.gather(
        controller.send(failing, "boom", sender_id="alice"),
        controller.send(healthy, "hello", sender_id="alice"),
    )

    assert failed.message is not None
    assert failed.error == REPLY_FAILED
    assert failed.error_kind == "provider"
    assert answered.message is not None
    assert answered.error is None
    assert [m.role for m in await repository.get_messages(healthy)] == ["user", "assistant"]
    assert [m.role for m in await repository.get_messages(failing)] == ["user"]


@pytest.mark.asyncio
async def test_listing_failure_after_write_keeps_turn(dispatcher):
    """The stored turn is reported and answered even if the list refresh fails."""
    repository = FlakyListingRepository()
    controller = ConversationController(repository, dispatcher)
    await controller.on_auth_changed("alice")
    chat_id = await controller.create_new_chat()
    repository.fail_listing = True

    result = await controller.send(chat_id, "Hello", sender_id="alice")

    assert result.message is not None
    assert result.error is None
    messages = await repository.get_messages(chat_id)
    assert [m.role for m in messages] == ["user", "assistant"]
    assert messages[0].id == result.message.id
    assert controller.state.status_of(chat_id) == "idle"


@pytest.mark.asyncio
async def test_failed_delete_keeps_chat(dispatcher):
    repository = FailingDeleteRepository()
    controller = ConversationController(repository, dispatcher)
    await controller.on_auth_changed("alice")
    chat_id = await controller.create_new_chat()
    await controller.add_message(chat_id, "Hello", sender_id="alice")

    assert await controller.delete_chat(chat_id) is False

    assert controller.state.error == DELETE_FAILED
    assert controller.state.current_chat_id == chat_id
    assert await repository.get_conversation(chat_id) is not None
    assert len(await repository.get_messages(chat_id)) == 2


async def start_document_turn(controller, provider, chat_id):
    """Send a document turn and wait until its run is being polled."""
    task = asyncio.create_task(controller.send(chat_id, "Summarize", sender_id="alice", attachment=PDF))
    while provider.status_checks == 0:
        await asyncio.sleep(0.005)
    return task


@pytest.mark.asyncio
async def test_cancel_aborts_document_turn(repository):
    provider = FakeProvider(run_statuses=["in_progress"])
    dispatcher = AIDispatcher(provider, poll_interval=0.02, poll_max_wait=10.0, poll_max_attempts=10_000)
    controller = ConversationController(repository, dispatcher)
    await controller.on_auth_changed("alice")
    chat_id = await controller.create_new_chat()

    task = await start_document_turn(controller, provider, chat_id)
    controller.cancel(chat_id)
    result = await task

    assert result.error == REPLY_FAILED
    assert result.error_kind == "cancelled"
    assert provider.cancelled_runs == ["run-1"]
    assert [m.id for m in await repository.get_messages(chat_id)] == [result.message.id]
    assert controller.state.status_of(chat_id) == "idle"


@pytest.mark.asyncio
async def test_delete_during_document_turn(repository):
    """Deleting a chat cancels its pending run and leaves no status behind."""
    provider = FakeProvider(run_statuses=["in_progress"])
    dispatcher = AIDispatcher(provider, poll_interval=0.02, poll_max_wait=10.0, poll_max_attempts=10_000)
    controller = ConversationController(repository, dispatcher)
    await controller.on_auth_changed("alice")
    chat_id = await controller.create_new_chat()

    task = await start_document_turn(controller, provider, chat_id)
    assert await controller.delete_chat(chat_id) is True
    result = await task

    assert result.error_kind == "cancelled"
    assert provider.cancelled_runs == ["run-1"]
    assert await repository.get_conversation(chat_id) is None
    assert chat_id not in controller.state.statuses
    assert controller.state.find(chat_id) is None
