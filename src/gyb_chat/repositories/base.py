"""Base repository interface."""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, List, Optional
from uuid import UUID

import structlog

from ..domain.errors import ChatError
from ..domain.models import Conversation, Message, MessageDraft, utcnow

logger = structlog.get_logger()

ChangeListener = Callable[[List[Conversation]], Awaitable[None]]


class MonotonicClock:
    """Hands out strictly increasing UTC timestamps."""

    def __init__(self) -> None:
        self._last: Optional[datetime] = None

    def now(self) -> datetime:
        now = utcnow()
        if self._last is not None and now <= self._last:
            now = self._last + timedelta(microseconds=1)
        self._last = now
        return now


class Repository(ABC):
    """Abstract base class for conversation stores.

    Every mutating operation publishes the owner's refreshed conversation
    list to the listeners registered through ``subscribe``.
    """

    def __init__(self) -> None:
        self._listeners: Dict[str, List[ChangeListener]] = {}

    @abstractmethod
    async def create_conversation(self, owner_id: str) -> Conversation:
        """Create a new, empty conversation."""
        pass

    @abstractmethod
    async def get_conversation(self, chat_id: UUID) -> Optional[Conversation]:
        """Retrieve a conversation with its messages."""
        pass

    @abstractmethod
    async def list_for_owner(self, owner_id: str) -> List[Conversation]:
        """List an owner's conversations, most recently updated first."""
        pass

    @abstractmethod
    async def get_messages(self, chat_id: UUID) -> List[Message]:
        """Get a conversation's messages in creation order."""
        pass

    @abstractmethod
    async def get_message(self, message_id: UUID) -> Optional[Message]:
        """Retrieve a single message."""
        pass

    @abstractmethod
    async def append(self, chat_id: UUID, draft: MessageDraft) -> Message:
        """Store a message, assigning its id and timestamp."""
        pass

    @abstractmethod
    async def rename(self, chat_id: UUID, title: str) -> bool:
        """Change a conversation's title."""
        pass

    @abstractmethod
    async def delete(self, chat_id: UUID) -> bool:
        """Delete a conversation and all of its messages."""
        pass

    def subscribe(self, owner_id: str, listener: ChangeListener) -> Callable[[], None]:
        """Register a change-feed listener; returns the unsubscribe callable."""
        self._listeners.setdefault(owner_id, []).append(listener)

        def unsubscribe() -> None:
            listeners = self._listeners.get(owner_id, [])
            if listener in listeners:
                listeners.remove(listener)
            if not listeners:
                self._listeners.pop(owner_id, None)

        return unsubscribe

    async def _publish(self, owner_id: str) -> None:
        listeners = list(self._listeners.get(owner_id, []))
        if not listeners:
            return
        try:
            conversations = await self.list_for_owner(owner_id)
        except ChatError as e:
            # The mutation is already committed; subscribers catch up on the next one.
            logger.error("change_feed_refresh_error", owner_id=owner_id, error=str(e))
            return
        for listener in listeners:
            try:
                await listener(conversations)
            except Exception as e:
                logger.error("change_listener_error", owner_id=owner_id, error=str(e))
