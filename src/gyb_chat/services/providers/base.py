"""Completion service contract used by the dispatcher."""

from abc import ABC, abstractmethod
from typing import List, Optional

from ...domain.models import Attachment, ChatTurn

RUN_COMPLETED = "completed"
RUN_FAILED_STATUSES = frozenset({"failed", "cancelled", "expired", "incomplete"})


class CompletionProvider(ABC):
    """Abstract hosted completion service.

    The text and vision calls return the generated text, or ``None`` when the
    service answered without any. The remaining methods are the primitives of
    the asynchronous document-analysis flow: upload a file, bind it to a
    thread, start a run against a long-lived assistant and poll its status.
    """

    name = "base"

    @abstractmethod
    async def complete_text(
        self, system_prompt: str, turns: List[ChatTurn], max_tokens: int, temperature: float
    ) -> Optional[str]:
        pass

    @abstractmethod
    async def complete_vision(self, system_prompt: str, turn: ChatTurn, max_tokens: int) -> Optional[str]:
        pass

    @abstractmethod
    async def upload_file(self, attachment: Attachment) -> str:
        """Upload a document and return the provider's file id."""
        pass

    @abstractmethod
    async def create_assistant(self, name: str, instructions: str) -> str:
        pass

    @abstractmethod
    async def create_thread(self) -> str:
        pass

    @abstractmethod
    async def add_thread_message(self, thread_id: str, text: str, file_id: str) -> None:
        pass

    @abstractmethod
    async def start_run(self, thread_id: str, assistant_id: str) -> str:
        pass

    @abstractmethod
    async def get_run_status(self, thread_id: str, run_id: str) -> str:
        pass

    @abstractmethod
    async def cancel_run(self, thread_id: str, run_id: str) -> None:
        pass

    @abstractmethod
    async def latest_thread_message(self, thread_id: str) -> Optional[str]:
        pass
