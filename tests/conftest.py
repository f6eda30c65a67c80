import pytest

from fakes import FakeProvider
from gyb_chat.repositories.memory import InMemoryRepository
from gyb_chat.services.controller import ConversationController
from gyb_chat.services.dispatcher import AIDispatcher


@pytest.fixture
def repository():
    return InMemoryRepository()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def dispatcher(provider):
    return AIDispatcher(provider, poll_interval=0.01, poll_max_wait=2.0, poll_max_attempts=50)


@pytest.fixture
def controller(repository, dispatcher):
    return ConversationController(repository, dispatcher)
