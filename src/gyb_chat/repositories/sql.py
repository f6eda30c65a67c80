"""SQLAlchemy repository implementation."""

import asyncio
from datetime import datetime, timezone
from typing import List, Optional
from uuid import UUID, uuid4

import structlog
from sqlalchemy import JSON, Column, DateTime, ForeignKey, String, delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base, relationship, selectinload

from ..domain.errors import PersistenceError
from ..domain.models import DEFAULT_TITLE, Conversation, Message, MessageDraft, content_adapter
from .base import MonotonicClock, Repository

logger = structlog.get_logger()

Base = declarative_base()


class ConversationRecord(Base):
    __tablename__ = "conversations"

    id = Column(String(36), primary_key=True)
    owner_id = Column(String, nullable=False, index=True)
    title = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False, index=True)

    messages = relationship(
        "MessageRecord",
        back_populates="conversation",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="MessageRecord.created_at",
    )


class MessageRecord(Base):
    __tablename__ = "messages"

    id = Column(String(36), primary_key=True)
    chat_id = Column(String(36), ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False, index=True)
    # user | assistant | system
    role = Column(String, nullable=False)
    # Tagged union, see domain.models.MessageContent
    content = Column(JSON, nullable=False)
    sender_id = Column(String, nullable=True)
    ai_agent = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)

    conversation = relationship("ConversationRecord", back_populates="messages")


def _aware(value: datetime) -> datetime:
    # SQLite drops tzinfo on the way back.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_message(record: MessageRecord) -> Message:
    return Message(
        id=UUID(record.id),
        chat_id=UUID(record.chat_id),
        role=record.role,
        content=content_adapter.validate_python(record.content),
        sender_id=record.sender_id,
        ai_agent=record.ai_agent,
        created_at=_aware(record.created_at),
    )


def _to_conversation(record: ConversationRecord) -> Conversation:
    return Conversation(
        id=UUID(record.id),
        owner_id=record.owner_id,
        title=record.title,
        created_at=_aware(record.created_at),
        updated_at=_aware(record.updated_at),
        messages=sorted((_to_message(m) for m in record.messages), key=lambda m: m.created_at),
    )


class SQLRepository(Repository):
    """Repository backed by an async SQLAlchemy engine."""

    def __init__(self, database_url: str) -> None:
        super().__init__()
        self.engine = create_async_engine(database_url, future=True)
        self.session_factory = async_sessionmaker(self.engine, expire_on_commit=False)
        self._write_lock = asyncio.Lock()
        self._schema_lock = asyncio.Lock()
        self._schema_ready = False
        self._clock = MonotonicClock()
        logger.info("repository_initialized", backend="sql", url=self.engine.url.render_as_string(hide_password=True))

    async def init_models(self) -> None:
        """Create tables if they do not exist yet."""
        async with self._schema_lock:
            if self._schema_ready:
                return
            try:
                async with self.engine.begin() as conn:
                    await conn.run_sync(Base.metadata.create_all)
            except SQLAlchemyError as e:
                logger.error("schema_init_error", error=str(e))
                raise PersistenceError("Failed to initialize database schema") from e
            self._schema_ready = True

    async def close(self) -> None:
        await self.engine.dispose()

    async def create_conversation(self, owner_id: str) -> Conversation:
        await self.init_models()
        try:
            async with self._write_lock:
                now = self._clock.now()
                record = ConversationRecord(
                    id=str(uuid4()), owner_id=owner_id, title=DEFAULT_TITLE,
                    created_at=now, updated_at=now,
                )
                async with self.session_factory() as session:
                    async with session.begin():
                        session.add(record)
        except SQLAlchemyError as e:
            logger.error("create_conversation_error", owner_id=owner_id, error=str(e))
            raise PersistenceError("Failed to create conversation") from e

        conversation = Conversation(
            id=UUID(record.id), owner_id=owner_id, title=record.title, created_at=now, updated_at=now,
        )
        logger.info("conversation_created", conversation_id=str(conversation.id), owner_id=owner_id)
        await self._publish(owner_id)
        return conversation

    async def get_conversation(self, chat_id: UUID) -> Optional[Conversation]:
        await self.init_models()
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(ConversationRecord)
                    .where(ConversationRecord.id == str(chat_id))
                    .options(selectinload(ConversationRecord.messages))
                )
                record = result.scalar_one_or_none()
                if record is None:
                    logger.warning("conversation_not_found", conversation_id=str(chat_id))
                    return None
                return _to_conversation(record)
        except SQLAlchemyError as e:
            logger.error("get_conversation_error", conversation_id=str(chat_id), error=str(e))
            raise PersistenceError("Failed to read conversation") from e

    async def list_for_owner(self, owner_id: str) -> List[Conversation]:
        await self.init_models()
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(ConversationRecord)
                    .where(ConversationRecord.owner_id == owner_id)
                    .order_by(ConversationRecord.updated_at.desc())
                    .options(selectinload(ConversationRecord.messages))
                )
                return [_to_conversation(record) for record in result.scalars()]
        except SQLAlchemyError as e:
            logger.error("list_conversations_error", owner_id=owner_id, error=str(e))
            raise PersistenceError("Failed to list conversations") from e

    async def get_messages(self, chat_id: UUID) -> List[Message]:
        await self.init_models()
        try:
            async with self.session_factory() as session:
                if await session.get(ConversationRecord, str(chat_id)) is None:
                    raise PersistenceError(f"Conversation {chat_id} not found")
                result = await session.execute(
                    select(MessageRecord)
                    .where(MessageRecord.chat_id == str(chat_id))
                    .order_by(MessageRecord.created_at)
                )
                return [_to_message(record) for record in result.scalars()]
        except SQLAlchemyError as e:
            logger.error("get_messages_error", conversation_id=str(chat_id), error=str(e))
            raise PersistenceError("Failed to read messages") from e

    async def get_message(self, message_id: UUID) -> Optional[Message]:
        await self.init_models()
        try:
            async with self.session_factory() as session:
                record = await session.get(MessageRecord, str(message_id))
                return _to_message(record) if record is not None else None
        except SQLAlchemyError as e:
            logger.error("get_message_error", message_id=str(message_id), error=str(e))
            raise PersistenceError("Failed to read message") from e

    async def append(self, chat_id: UUID, draft: MessageDraft) -> Message:
        await self.init_models()
        try:
            async with self._write_lock:
                async with self.session_factory() as session:
                    async with session.begin():
                        conversation = await session.get(ConversationRecord, str(chat_id))
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
                        session.add(MessageRecord(
                            id=str(message.id),
                            chat_id=str(chat_id),
                            role=message.role,
                            content=message.content.model_dump(mode="json"),
                            sender_id=message.sender_id,
                            ai_agent=message.ai_agent,
                            created_at=message.created_at,
                        ))
                        conversation.updated_at = message.created_at
                        owner_id = conversation.owner_id
        except SQLAlchemyError as e:
            logger.error("append_message_error", conversation_id=str(chat_id), error=str(e))
            raise PersistenceError("Failed to store message") from e

        logger.info("message_added", conversation_id=str(chat_id), message_role=message.role)
        await self._publish(owner_id)
        return message

    async def rename(self, chat_id: UUID, title: str) -> bool:
        await self.init_models()
        try:
            async with self._write_lock:
                async with self.session_factory() as session:
                    async with session.begin():
                        conversation = await session.get(ConversationRecord, str(chat_id))
                        if conversation is None:
                            logger.warning("conversation_not_found_for_rename", conversation_id=str(chat_id))
                            return False
                        conversation.title = title
                        conversation.updated_at = self._clock.now()
                        owner_id = conversation.owner_id
        except SQLAlchemyError as e:
            logger.error("rename_conversation_error", conversation_id=str(chat_id), error=str(e))
            raise PersistenceError("Failed to rename conversation") from e

        logger.info("conversation_renamed", conversation_id=str(chat_id))
        await self._publish(owner_id)
        return True

    async def delete(self, chat_id: UUID) -> bool:
        await self.init_models()
        try:
            async with self._write_lock:
                async with self.session_factory() as session:
                    async with session.begin():
                        conversation = await session.get(ConversationRecord, str(chat_id))
                        if conversation is None:
                            logger.warning("conversation_not_found_for_delete", conversation_id=str(chat_id))
                            return False
                        owner_id = conversation.owner_id
                        await session.execute(delete(MessageRecord).where(MessageRecord.chat_id == str(chat_id)))
                        await session.delete(conversation)
        except SQLAlchemyError as e:
            logger.error("delete_conversation_error", conversation_id=str(chat_id), error=str(e))
            raise PersistenceError("Failed to delete conversation") from e

        logger.info("conversation_deleted", conversation_id=str(chat_id))
        await self._publish(owner_id)
        return True
