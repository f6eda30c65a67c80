"""Conversation controller: orchestrates store, composer and dispatcher.

One controller exists per signed-in owner. It keeps the observable
``ChatState`` the UI renders and never lets an error escape: every
``ChatError`` raised below it ends up in ``state.error``.
"""

import asyncio
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Union
from uuid import UUID

import structlog

from ..domain.errors import ChatError, DispatchError, ValidationError
from ..domain.models import (
    Attachment,
    ChatState,
    ChatStatus,
    ChatTurn,
    ComposedTurn,
    Conversation,
    Message,
    MessageContent,
    MessageDraft,
    PlainText,
    ROLES,
    Structured,
)
from ..repositories.base import Repository
from .composer import MessageComposer
from .dispatcher import AIDispatcher, CancellationToken
from .personas import DEFAULT_PERSONA
from .request_queue import RequestQueue

logger = structlog.get_logger()

StateListener = Callable[[ChatState], None]

LOAD_FAILED = "Failed to load chats"
CREATE_FAILED = "Failed to create new chat"
SEND_FAILED = "Failed to send message"
REPLY_FAILED = "Failed to get AI response"
DELETE_FAILED = "Failed to delete chat"
RENAME_FAILED = "Failed to update chat title"


@dataclass
class TurnResult:
    """Outcome of one submitted turn."""

    message: Optional[Message] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None


class ConversationController:
    """Per-owner orchestrator publishing ``ChatState`` to subscribers."""

    def __init__(
        self,
        repository: Repository,
        dispatcher: AIDispatcher,
        request_queue: Optional[RequestQueue] = None,
        composer: Optional[MessageComposer] = None,
        default_persona: str = DEFAULT_PERSONA,
    ):
        self.repository = repository
        self.dispatcher = dispatcher
        self.request_queue = request_queue or RequestQueue()
        self.composer = composer or MessageComposer()
        self.default_persona = default_persona
        self.state = ChatState()
        self.owner_id: Optional[str] = None
        self._listeners: List[StateListener] = []
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._cancel_tokens: Dict[UUID, CancellationToken] = {}
        # Turns per chat still waiting on their reply
        self._pending: Dict[UUID, int] = {}

    # -- state publication -------------------------------------------------

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _broadcast(self) -> None:
        snapshot = self.state.model_copy(deep=True)
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.error("state_listener_error", owner_id=self.owner_id, error=str(e))

    def _set_status(self, chat_id: UUID, status: ChatStatus) -> None:
        self.state.statuses[chat_id] = status
        self._broadcast()

    def _surface(self, error: ChatError, message: str) -> str:
        logger.error("controller_error", owner_id=self.owner_id, error=str(error), error_type=type(error).__name__)
        self.state.error = str(error) if isinstance(error, ValidationError) else message
        self._broadcast()
        return self.state.error

    async def _on_store_change(self, conversations: List[Conversation]) -> None:
        self.state.chats = conversations
        self.state.chats_available = True
        self._broadcast()

    def clear_error(self) -> None:
        self.state.error = None
        self._broadcast()

    # -- identity ----------------------------------------------------------

    async def on_auth_changed(self, owner_id: Optional[str]) -> None:
        """Reload conversations for a new identity, or clear them on sign-out."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        for token in self._cancel_tokens.values():
            token.cancel()
        self.owner_id = owner_id

        if owner_id is None:
            self.state = ChatState()
            self._broadcast()
            return

        self.state.is_loading = True
        self._broadcast()
        try:
            self.state.chats = await self.repository.list_for_owner(owner_id)
            self.state.chats_available = True
        except ChatError as e:
            # Unavailable, which is not the same as "no conversations".
            self.state.chats = []
            self.state.chats_available = False
            self._surface(e, LOAD_FAILED)
        finally:
            self.state.is_loading = False
        self._unsubscribe = self.repository.subscribe(owner_id, self._on_store_change)
        self._broadcast()

    # -- conversation lifecycle --------------------------------------------

    def set_current_chat(self, chat_id: Optional[UUID]) -> None:
        self.state.current_chat_id = chat_id
        self._broadcast()

    async def create_new_chat(self) -> Optional[UUID]:
        if self.owner_id is None:
            return None
        try:
            conversation = await self.repository.create_conversation(self.owner_id)
        except ChatError as e:
            self._surface(e, CREATE_FAILED)
            return None
        self.state.current_chat_id = conversation.id
        self._set_status(conversation.id, "idle")
        return conversation.id

    async def rename_chat(self, chat_id: UUID, title: str) -> bool:
        try:
            if not title or not title.strip():
                raise ValidationError("Chat title must not be empty")
            renamed = await self.repository.rename(chat_id, title.strip())
        except ChatError as e:
            self._surface(e, RENAME_FAILED)
            return False
        if not renamed:
            self.state.error = RENAME_FAILED
            self._broadcast()
        return renamed

    async def delete_chat(self, chat_id: UUID) -> bool:
        self.cancel(chat_id)
        try:
            deleted = await self.repository.delete(chat_id)
        except ChatError as e:
            self._surface(e, DELETE_FAILED)
            return False
        if not deleted:
            self.state.error = DELETE_FAILED
            self._broadcast()
            return False
        self.state.statuses.pop(chat_id, None)
        if self.state.current_chat_id == chat_id:
            self.state.current_chat_id = None
        self._broadcast()
        return True

    def cancel(self, chat_id: UUID) -> None:
        """Abort a pending document analysis for ``chat_id``, if any."""
        token = self._cancel_tokens.get(chat_id)
        if token is not None:
            token.cancel()

    # -- messages ----------------------------------------------------------

    def _compose(
        self, content: Union[str, MessageContent], role: str, attachment: Optional[Attachment]
    ) -> ComposedTurn:
        if role not in ROLES:
            raise ValidationError(f"Unknown message role: {role}")
        if isinstance(content, (PlainText, Structured)):
            if isinstance(content, PlainText) and not content.text.strip():
                raise ValidationError("Message must not be empty")
            return ComposedTurn(turn=ChatTurn(role=role, content=content))

        text = content or ""
        if not text.strip() and attachment is None:
            raise ValidationError("Message must not be empty")
        if role != "user":
            return ComposedTurn(turn=ChatTurn(role=role, content=self.composer.ensure_content(text)))
        return self.composer.compose(text, attachment)

    async def _persist(
        self,
        chat_id: UUID,
        content: MessageContent,
        role: str,
        sender_id: Optional[str],
        ai_agent: Optional[str],
    ) -> Message:
        draft = MessageDraft(
            role=role,
            content=content,
            sender_id=None if role == "assistant" else sender_id,
            ai_agent=ai_agent if role == "assistant" else None,
        )
        return await self.repository.append(chat_id, draft)

    async def add_message(
        self,
        chat_id: UUID,
        content: Union[str, MessageContent],
        role: str = "user",
        sender_id: Optional[str] = None,
        persona: Optional[str] = None,
        attachment: Optional[Attachment] = None,
    ) -> Optional[Message]:
        """Persist a turn and, for user turns, obtain and persist the reply.

        Returns the stored message, or ``None`` when it could not be stored.
        A failed reply leaves the user's message in place.
        """
        result = await self.send(chat_id, content, role, sender_id, persona, attachment)
        return result.message

    async def send(
        self,
        chat_id: UUID,
        content: Union[str, MessageContent],
        role: str = "user",
        sender_id: Optional[str] = None,
        persona: Optional[str] = None,
        attachment: Optional[Attachment] = None,
    ) -> TurnResult:
        """Like ``add_message``, but also reports this turn's own error.

        ``state.error`` is shared by every request of the owner; callers that
        need the outcome of one particular turn read it from the result.
        """
        persona_name = persona or self.default_persona
        try:
            composed = self._compose(content, role, attachment)
            message = await self._persist(chat_id, composed.turn.content, role, sender_id, persona_name)
        except ChatError as e:
            return TurnResult(error=self._surface(e, SEND_FAILED))

        if role != "user":
            return TurnResult(message=message)

        self._pending[chat_id] = self._pending.get(chat_id, 0) + 1
        self._set_status(chat_id, "awaiting_reply")
        result = TurnResult(message=message)
        try:
            await self.request_queue.enqueue_request(chat_id, self._respond, chat_id, message, composed, persona_name)
        except (ChatError, TimeoutError) as e:
            if isinstance(e, TimeoutError):
                e = DispatchError(str(e), kind="timeout")
            result.error = REPLY_FAILED
            result.error_kind = e.kind if isinstance(e, DispatchError) else None
            if chat_id in self.state.statuses:
                self.state.statuses[chat_id] = "error_surfaced"
            self._surface(e, REPLY_FAILED)
        finally:
            remaining = self._pending[chat_id] - 1
            if remaining:
                self._pending[chat_id] = remaining
            else:
                del self._pending[chat_id]

        if chat_id in self.state.statuses:
            # Other turns for this chat may still be waiting on their reply.
            self._set_status(chat_id, "awaiting_reply" if remaining else "idle")
        return result

    def _history_for(self, messages: List[Message], message: Message) -> List[Message]:
        # Later user turns are still queued behind this one; leave them out.
        return [
            m for m in messages
            if m.id != message.id and not (m.role == "user" and m.created_at > message.created_at)
        ]

    async def _respond(
        self, chat_id: UUID, message: Message, composed: ComposedTurn, persona: str
    ) -> Message:
        """Generate and store the assistant reply to ``message``.

        The reply goes through the same ``_persist`` path an assistant turn
        passed to ``add_message`` takes, so it is stored but not answered.
        """
        stored = await self.repository.get_messages(chat_id)
        history = self.composer.normalize(self._history_for(stored, message))

        token = CancellationToken()
        self._cancel_tokens[chat_id] = token
        try:
            reply = await self.dispatcher.complete(
                history,
                composed.turn,
                persona=persona,
                attachment=composed.attachment,
                cancel=token,
            )
        finally:
            if self._cancel_tokens.get(chat_id) is token:
                del self._cancel_tokens[chat_id]

        return await self._persist(chat_id, PlainText(text=reply), "assistant", None, persona)


class ControllerRegistry:
    """Keeps one controller per authenticated owner."""

    def __init__(
        self,
        repository: Repository,
        dispatcher: AIDispatcher,
        request_queue: Optional[RequestQueue] = None,
        default_persona: str = DEFAULT_PERSONA,
    ):
        self.repository = repository
        self.dispatcher = dispatcher
        self.request_queue = request_queue or RequestQueue()
        self.default_persona = default_persona
        self._controllers: Dict[str, ConversationController] = {}
        self._lock = asyncio.Lock()

    async def for_owner(self, owner_id: str) -> ConversationController:
        async with self._lock:
            controller = self._controllers.get(owner_id)
            if controller is None:
                controller = ConversationController(
                    self.repository,
                    self.dispatcher,
                    request_queue=self.request_queue,
                    default_persona=self.default_persona,
                )
                await controller.on_auth_changed(owner_id)
                self._controllers[owner_id] = controller
            return controller

    async def sign_out(self, owner_id: str) -> None:
        async with self._lock:
            controller = self._controllers.pop(owner_id, None)
        if controller is not None:
            await controller.on_auth_changed(None)
