"""In-memory repository implementation."""

import asyncio
from typing import Dict, List, Optional
from uuid import UUID, uuid4

import structlog

from ..domain.errors import PersistenceError
from ..domain.models import Conversation, Message, MessageDraft
from .base import MonotonicClock, Repository

logger = structlog.get_logger()


class InMemoryRepository(Repository):
    """Async-safe in-memory repository implementation."""

    def __init__(self) -> None:
        super().__init__()
        self._conversations: Dict[UUID, Conversation] = {}
        self._messages: Dict[UUID, List[Message]] = {}
        self._index: Dict[UUID, Message] = {}
        self._async_lock = asyncio.Lock()
        self._clock = MonotonicClock()
        logger.info("repository_initialized", backend="memory")

    def _snapshot(self, chat_id: UUID) -> Conversation:
        conversation = self._conversations[chat_id]
        return conversation.model_copy(update={"messages": list(self._messages[chat_id])})

    async def create_conversation(self, owner_id: str) -> Conversation:
        async with self._async_lock:
            now = self._clock.now()
            conversation = Conversation(owner_id=owner_id, created_at=now, updated_at=now)
            self._conversations[conversation.id] = conversation
            self._messages[conversation.id] = []
            logger.info("conversation_created", conversation_id=str(conversation.id), owner_id=owner_id)
            snapshot = self._snapshot(conversation.id)
        await self._publish(owner_id)
        return snapshot

    async def get_conversation(self, chat_id: UUID) -> Optional[Conversation]:
        async with self._async_lock:
            if chat_id not in self._conversations:
                logger.warning("conversation_not_found", conversation_id=str(chat_id))
                return None
            return self._snapshot(chat_id)

    async def list_for_owner(self, owner_id: str) -> List[Conversation]:
        async with self._async_lock:
            conversations = [
                self._snapshot(chat_id)
                for chat_id, conversation in self._conversations.items()
                if conversation.owner_id == owner_id
            ]
        return sorted(conversations, key=lambda c: c.updated_at, reverse=True)

    async def get_messages(self, chat_id: UUID) -> List[Message]:
        async with self._async_lock:
            if chat_id not in self._conversations:
                logger.error("conversation_not_found_for_messages", conversation_id=str(chat_id))
                raise PersistenceError(f"Conversation {chat_id} not found")
            return sorted(self._messages[chat_id], key=lambda m: m.created_at)

    async def get_message(self, message_id: UUID) -> Optional[Message]:
        async with self._async_lock:
            return self._index.get(message_id)

    async def append(self, chat_id: UUID, draft: MessageDraft) -> Message:
        async with self._async_lock:
            conversation = self._conversations.get(chat_id)
            if conversation is None:
                logger.error("conversation_not_found_for_message", conversation_id=str(chat_id))
                raise PersistenceError(f"Conversation {chat_id} not found")

            message = Message(
                id=uuid4(),
                chat_id=chat_id,
                created_at=self._clock.now(),
                **draft.model_dump(exclude={"content"}),
                content=draft.content,
            )
            self._messages[chat_id].append(message)
            self._index[message.id] = message
            self._conversations[chat_id] = conversation.model_copy(update={"updated_at": message.created_at})
            owner_id = conversation.owner_id

            logger.info("message_added", conversation_id=str(chat_id), message_role=message.role)
        await self._publish(owner_id)
        return message

    async def rename(self, chat_id: UUID, title: str) -> bool:
        async with self._async_lock:
            conversation = self._conversations.get(chat_id)
            if conversation is None:
                logger.warning("conversation_not_found_for_rename", conversation_id=str(chat_id))
                return False
            self._conversations[chat_id] = conversation.model_copy(
                update={"title": title, "updated_at": self._clock.now()}
            )
            owner_id = conversation.owner_id
            logger.info("conversation_renamed", conversation_id=str(chat_id))
        await self._publish(owner_id)
        return True

    async def delete(self, chat_id: UUID) -> bool:
        async with self._async_lock:
            conversation = self._conversations.pop(chat_id, None)
            if conversation is None:
                logger.warning("conversation_not_found_for_delete", conversation_id=str(chat_id))
                return False
            for message in self._messages.pop(chat_id, []):
                self._index.pop(message.id, None)
            logger.info("conversation_deleted", conversation_id=str(chat_id))
        await self._publish(conversation.owner_id)
        return True
