"""AI dispatcher: routes a turn to the right completion path."""

import asyncio
from typing import List, Optional

import structlog

from ..domain.errors import DispatchError
from ..domain.models import Attachment, ChatTurn, Structured
from .personas import resolve_persona
from .providers.base import RUN_COMPLETED, RUN_FAILED_STATUSES, CompletionProvider

logger = structlog.get_logger()

ASSISTANT_NAME = "File Analysis Assistant"
ASSISTANT_INSTRUCTIONS = "You are a helpful assistant that can analyze files and answer questions about them."
NO_ANALYSIS = "No analysis available"

PATH_VISION = "vision"
PATH_DOCUMENT = "document"
PATH_TEXT = "text"


class CancellationToken:
    """Lets the controller abort a pending document analysis."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds; True if cancelled meanwhile."""
        try:
            await asyncio.wait_for(self._event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True


class AssistantResource:
    """Process-wide document-analysis assistant, created on first use.

    Concurrent first callers share one creation; a failed creation is not
    cached so the next caller tries again.
    """

    def __init__(
        self,
        provider: CompletionProvider,
        name: str = ASSISTANT_NAME,
        instructions: str = ASSISTANT_INSTRUCTIONS,
    ):
        self.provider = provider
        self.name = name
        self.instructions = instructions
        self._assistant_id: Optional[str] = None
        self._lock = asyncio.Lock()

    async def get(self) -> str:
        if self._assistant_id is not None:
            return self._assistant_id
        async with self._lock:
            if self._assistant_id is None:
                self._assistant_id = await self.provider.create_assistant(self.name, self.instructions)
                logger.info("assistant_initialized", provider=self.provider.name, assistant_id=self._assistant_id)
            return self._assistant_id


class AIDispatcher:
    """Sends history plus the new turn to the completion service."""

    def __init__(
        self,
        provider: CompletionProvider,
        assistant: Optional[AssistantResource] = None,
        max_tokens: int = 500,
        temperature: float = 0.7,
        poll_interval: float = 1.0,
        poll_max_wait: float = 120.0,
        poll_max_attempts: int = 120,
    ):
        self.provider = provider
        self.assistant = assistant or AssistantResource(provider)
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.poll_interval = poll_interval
        self.poll_max_wait = poll_max_wait
        self.poll_max_attempts = poll_max_attempts

    def dispatch_path(self, turn: ChatTurn, attachment: Optional[Attachment] = None) -> str:
        content = turn.content
        if content.has_image():
            return PATH_VISION
        if isinstance(content, Structured) and content.has_file() and attachment is not None:
            return PATH_DOCUMENT
        return PATH_TEXT

    async def complete(
        self,
        history: List[ChatTurn],
        turn: ChatTurn,
        persona: Optional[str] = None,
        attachment: Optional[Attachment] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> str:
        """Generate the assistant reply for ``turn``.

        Raises:
            DispatchError: on any provider failure, timeout, cancellation or
                empty completion. Nothing is retried here.
        """
        path = self.dispatch_path(turn, attachment)
        profile = resolve_persona(persona)
        logger.info(
            "dispatch_started",
            path=path,
            persona=profile.name,
            provider=self.provider.name,
            history_length=len(history),
        )

        try:
            if path == PATH_VISION:
                reply = await self.provider.complete_vision(profile.system_prompt, turn, self.max_tokens)
            elif path == PATH_DOCUMENT:
                reply = await self._analyze_document(turn, attachment, cancel)
            else:
                reply = await self.provider.complete_text(
                    profile.system_prompt, [*history, turn], self.max_tokens, self.temperature
                )
        except DispatchError:
            raise
        except Exception as e:
            logger.error("dispatch_failed", path=path, provider=self.provider.name, error=str(e))
            raise DispatchError(f"Failed to generate AI response: {e}", kind="provider") from e

        if not reply:
            logger.error("dispatch_empty_response", path=path, provider=self.provider.name)
            raise DispatchError("Completion service returned no text", kind="malformed")

        logger.info("dispatch_completed", path=path, reply_length=len(reply))
        return reply

    async def _analyze_document(
        self, turn: ChatTurn, attachment: Attachment, cancel: Optional[CancellationToken]
    ) -> str:
        question = turn.content.last_text() or ""
        file_id = await self.provider.upload_file(attachment)
        assistant_id = await self.assistant.get()
        thread_id = await self.provider.create_thread()
        await self.provider.add_thread_message(thread_id, question, file_id)
        run_id = await self.provider.start_run(thread_id, assistant_id)
        logger.info("document_run_started", thread_id=thread_id, run_id=run_id, file_id=file_id)

        await self._wait_for_run(thread_id, run_id, cancel)
        return await self.provider.latest_thread_message(thread_id) or NO_ANALYSIS

    async def _wait_for_run(self, thread_id: str, run_id: str, cancel: Optional[CancellationToken]) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.poll_max_wait
        attempts = 0

        try:
            while True:
                status = await self.provider.get_run_status(thread_id, run_id)
                attempts += 1
                if status == RUN_COMPLETED:
                    logger.info("document_run_completed", run_id=run_id, attempts=attempts)
                    return
                if status in RUN_FAILED_STATUSES:
                    raise DispatchError(f"Document analysis ended with status {status}", kind="provider")
                if attempts >= self.poll_max_attempts or loop.time() >= deadline:
                    logger.warning("document_run_timeout", run_id=run_id, attempts=attempts, status=status)
                    await self._abandon_run(thread_id, run_id)
                    raise DispatchError("Document analysis timed out", kind="timeout")

                if cancel is None:
                    await asyncio.sleep(self.poll_interval)
                elif cancel.cancelled or await cancel.wait(self.poll_interval):
                    logger.info("document_run_cancelled", run_id=run_id)
                    await self._abandon_run(thread_id, run_id)
                    raise DispatchError("Document analysis cancelled", kind="cancelled")
        except asyncio.CancelledError:
            # Interrupted from outside, e.g. by the request queue timeout.
            logger.info("document_run_interrupted", run_id=run_id)
            await self._abandon_run(thread_id, run_id)
            raise

    async def _abandon_run(self, thread_id: str, run_id: str) -> None:
        try:
            await self.provider.cancel_run(thread_id, run_id)
        except Exception as e:
            # The run is already being reported as failed to the caller.
            logger.warning("run_cancel_failed", run_id=run_id, error=str(e))
