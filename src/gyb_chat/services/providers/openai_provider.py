"""OpenAI completion provider."""

from typing import Any, Dict, List, Optional

import structlog
from openai import AsyncOpenAI

from ...domain.models import Attachment, ChatTurn, ImagePart, PlainText
from .base import CompletionProvider

logger = structlog.get_logger()

FILE_SEARCH_TOOL = {"type": "file_search"}


def to_openai_message(turn: ChatTurn) -> Dict[str, Any]:
    """Translate a chat turn into the chat-completions message format."""
    content = turn.content
    if isinstance(content, PlainText):
        return {"role": turn.role, "content": content.text}
    if turn.role != "user":
        # Only user turns may carry image parts.
        return {"role": turn.role, "content": content.as_text()}

    parts: List[Dict[str, Any]] = []
    for part in content.parts:
        if isinstance(part, ImagePart):
            parts.append({"type": "image_url", "image_url": {"url": part.url}})
        else:
            parts.append({"type": "text", "text": part.text})
    return {"role": turn.role, "content": parts}


class OpenAIProvider(CompletionProvider):
    """Chat completions for text and vision, Assistants API for documents."""

    name = "openai"

    def __init__(
        self,
        api_key: Optional[str] = None,
        text_model: str = "gpt-4-turbo-preview",
        vision_model: str = "gpt-4o",
        document_model: str = "gpt-4-turbo-preview",
        client: Optional[AsyncOpenAI] = None,
    ):
        self.client = client or AsyncOpenAI(api_key=api_key)
        self.text_model = text_model
        self.vision_model = vision_model
        self.document_model = document_model
        logger.info("llm_provider_init", provider=self.name, model=text_model)

    @staticmethod
    def _first_choice(completion) -> Optional[str]:
        if not completion.choices:
            return None
        return completion.choices[0].message.content

    async def complete_text(
        self, system_prompt: str, turns: List[ChatTurn], max_tokens: int, temperature: float
    ) -> Optional[str]:
        completion = await self.client.chat.completions.create(
            model=self.text_model,
            messages=[{"role": "system", "content": system_prompt}, *(to_openai_message(t) for t in turns)],
            temperature=temperature,
            max_tokens=max_tokens,
        )
        return self._first_choice(completion)

    async def complete_vision(self, system_prompt: str, turn: ChatTurn, max_tokens: int) -> Optional[str]:
        completion = await self.client.chat.completions.create(
            model=self.vision_model,
            messages=[{"role": "system", "content": system_prompt}, to_openai_message(turn)],
            max_tokens=max_tokens,
        )
        return self._first_choice(completion)

    async def upload_file(self, attachment: Attachment) -> str:
        uploaded = await self.client.files.create(
            file=(attachment.file_name, attachment.data, attachment.content_type),
            purpose="assistants",
        )
        logger.info("file_uploaded", provider=self.name, file_id=uploaded.id, file_name=attachment.file_name)
        return uploaded.id

    async def create_assistant(self, name: str, instructions: str) -> str:
        assistant = await self.client.beta.assistants.create(
            name=name,
            instructions=instructions,
            model=self.document_model,
            tools=[FILE_SEARCH_TOOL],
        )
        return assistant.id

    async def create_thread(self) -> str:
        thread = await self.client.beta.threads.create()
        return thread.id

    async def add_thread_message(self, thread_id: str, text: str, file_id: str) -> None:
        await self.client.beta.threads.messages.create(
            thread_id,
            role="user",
            content=text,
            attachments=[{"file_id": file_id, "tools": [FILE_SEARCH_TOOL]}],
        )

    async def start_run(self, thread_id: str, assistant_id: str) -> str:
        run = await self.client.beta.threads.runs.create(thread_id, assistant_id=assistant_id)
        return run.id

    async def get_run_status(self, thread_id: str, run_id: str) -> str:
        run = await self.client.beta.threads.runs.retrieve(run_id, thread_id=thread_id)
        return run.status

    async def cancel_run(self, thread_id: str, run_id: str) -> None:
        await self.client.beta.threads.runs.cancel(run_id, thread_id=thread_id)

    async def latest_thread_message(self, thread_id: str) -> Optional[str]:
        messages = await self.client.beta.threads.messages.list(thread_id, order="desc", limit=1)
        if not messages.data:
            return None
        for block in messages.data[0].content:
            if block.type == "text":
                return block.text.value
        return None
