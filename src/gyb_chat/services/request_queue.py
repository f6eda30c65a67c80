"""Per-conversation request queue.

Requests for the same conversation run strictly one at a time, in arrival
order; requests for different conversations run concurrently up to
``max_concurrent``.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Set
from uuid import UUID

import structlog

logger = structlog.get_logger()


@dataclass
class QueuedRequest:
    """Represents a queued request with its context."""

    chat_id: UUID
    task: Callable[..., Awaitable[Any]]
    args: tuple
    kwargs: dict
    future: asyncio.Future
    sequence_number: int


class RequestQueue:
    """Handles request queuing and processing."""

    def __init__(self, max_concurrent: int = 10, queue_timeout: float = 180.0) -> None:
        self.max_concurrent = max_concurrent
        self.queue_timeout = queue_timeout
        self.semaphore = asyncio.Semaphore(max_concurrent)
        self.queues: Dict[UUID, asyncio.Queue] = {}
        self._workers: Set[asyncio.Task] = set()
        self._sequence_counters: Dict[UUID, int] = {}
        logger.info("request_queue_initialized", max_concurrent=max_concurrent, queue_timeout=queue_timeout)

    def _next_sequence(self, chat_id: UUID) -> int:
        sequence = self._sequence_counters.get(chat_id, 0)
        self._sequence_counters[chat_id] = sequence + 1
        return sequence

    async def _execute(self, request: QueuedRequest) -> None:
        async with self.semaphore:
            try:
                result = await asyncio.wait_for(
                    request.task(*request.args, **request.kwargs),
                    timeout=self.queue_timeout,
                )
                if not request.future.done():
                    request.future.set_result(result)
            except asyncio.TimeoutError:
                logger.error("request_timeout", conversation_id=str(request.chat_id), sequence=request.sequence_number)
                if not request.future.done():
                    request.future.set_exception(TimeoutError("Request processing timed out"))
            except asyncio.CancelledError:
                if not request.future.done():
                    request.future.cancel()
                raise
            except Exception as e:
                logger.error(
                    "request_processing_error",
                    conversation_id=str(request.chat_id),
                    sequence=request.sequence_number,
                    error=str(e),
                )
                if not request.future.done():
                    request.future.set_exception(e)

    async def _process_queue(self, chat_id: UUID, queue: asyncio.Queue) -> None:
        """Drain a conversation's queue, then retire it."""
        try:
            while not queue.empty():
                request = queue.get_nowait()
                await self._execute(request)
                queue.task_done()
        except asyncio.CancelledError:
            logger.info("queue_processor_cancelled", conversation_id=str(chat_id))
            while not queue.empty():
                queue.get_nowait().future.cancel()
            raise
        finally:
            # No await between the empty check above and this point, so no
            # request can slip into a queue that is being retired.
            if self.queues.get(chat_id) is queue and queue.empty():
                del self.queues[chat_id]
                self._sequence_counters.pop(chat_id, None)

    async def enqueue_request(
        self,
        chat_id: UUID,
        task: Callable[..., Awaitable[Any]],
        *args: Any,
        **kwargs: Any
    ) -> Any:
        """Enqueue a request and wait for its execution."""
        future = asyncio.get_running_loop().create_future()
        request = QueuedRequest(
            chat_id=chat_id,
            task=task,
            args=args,
            kwargs=kwargs,
            future=future,
            sequence_number=self._next_sequence(chat_id),
        )

        queue = self.queues.get(chat_id)
        if queue is None:
            queue = asyncio.Queue()
            self.queues[chat_id] = queue
            queue.put_nowait(request)
            worker = asyncio.create_task(self._process_queue(chat_id, queue))
            self._workers.add(worker)
            worker.add_done_callback(self._workers.discard)
        else:
            queue.put_nowait(request)

        logger.debug("request_enqueued", conversation_id=str(chat_id), sequence=request.sequence_number)
        return await future

    async def cleanup(self) -> None:
        """Cancel outstanding work and clear all queues."""
        workers = list(self._workers)
        for worker in workers:
            if not worker.done():
                worker.cancel()
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)

        self.queues.clear()
        self._workers.clear()
        self._sequence_counters.clear()
        logger.info("request_queue_cleaned_up")
