"""Google Gemini completion provider."""

import asyncio
import base64
import io
from typing import Any, Dict, List, Optional
from uuid import uuid4

import google.generativeai as genai
import structlog

from ...domain.models import Attachment, ChatTurn, ImagePart, PlainText
from .base import CompletionProvider

logger = structlog.get_logger()

FILE_POLL_INTERVAL = 1.0


def parse_data_url(url: str) -> Optional[Dict[str, Any]]:
    """Split a base64 data URL into a Gemini inline-data blob."""
    if not url.startswith("data:") or "," not in url:
        return None
    header, encoded = url.split(",", 1)
    if not header.endswith(";base64"):
        return None
    mime_type = header[len("data:"):].split(";", 1)[0] or "application/octet-stream"
    return {"mime_type": mime_type, "data": base64.b64decode(encoded)}


def to_gemini_content(turn: ChatTurn) -> Dict[str, Any]:
    """Translate a chat turn into a Gemini ``Content`` dict."""
    role = "model" if turn.role == "assistant" else "user"
    content = turn.content
    if isinstance(content, PlainText):
        return {"role": role, "parts": [content.text]}

    parts: List[Any] = []
    for part in content.parts:
        if isinstance(part, ImagePart):
            blob = parse_data_url(part.url)
            parts.append(blob if blob is not None else f"Image: {part.url}")
        else:
            parts.append(part.text)
    return {"role": role, "parts": parts or [""]}


def _response_text(response) -> Optional[str]:
    try:
        return response.text
    except ValueError as e:
        # Raised when the candidate was blocked or has no text parts.
        logger.warning("gemini_empty_response", error=str(e))
        return None


class GeminiProvider(CompletionProvider):
    """Gemini models for all three dispatch paths.

    Gemini has no hosted assistants or threads, so those are kept in process:
    an assistant is a named system instruction, a thread is a list of turns
    and a run is a task that waits for the uploaded file to finish processing
    on the Gemini File API before generating the analysis.
    """

    name = "gemini"

    def __init__(self, api_key: Optional[str] = None, model_name: str = "gemini-1.5-flash"):
        if api_key:
            genai.configure(api_key=api_key)
        self.model_name = model_name
        self._assistants: Dict[str, str] = {}
        self._threads: Dict[str, List[Dict[str, Any]]] = {}
        self._runs: Dict[str, asyncio.Task] = {}
        # thread id -> run id
        self._thread_runs: Dict[str, str] = {}
        logger.info("llm_provider_init", provider=self.name, model=model_name)

    def _model(self, system_prompt: str):
        return genai.GenerativeModel(self.model_name, system_instruction=system_prompt)

    async def complete_text(
        self, system_prompt: str, turns: List[ChatTurn], max_tokens: int, temperature: float
    ) -> Optional[str]:
        response = await self._model(system_prompt).generate_content_async(
            [to_gemini_content(turn) for turn in turns],
            generation_config=genai.GenerationConfig(max_output_tokens=max_tokens, temperature=temperature),
        )
        return _response_text(response)

    async def complete_vision(self, system_prompt: str, turn: ChatTurn, max_tokens: int) -> Optional[str]:
        response = await self._model(system_prompt).generate_content_async(
            [to_gemini_content(turn)],
            generation_config=genai.GenerationConfig(max_output_tokens=max_tokens),
        )
        return _response_text(response)

    async def upload_file(self, attachment: Attachment) -> str:
        uploaded = await asyncio.to_thread(
            genai.upload_file,
            io.BytesIO(attachment.data),
            mime_type=attachment.content_type,
            display_name=attachment.file_name,
        )
        logger.info("file_uploaded", provider=self.name, file_id=uploaded.name, file_name=attachment.file_name)
        return uploaded.name

    async def create_assistant(self, name: str, instructions: str) -> str:
        assistant_id = f"asst_{uuid4().hex}"
        self._assistants[assistant_id] = instructions
        logger.info("assistant_registered", provider=self.name, assistant_id=assistant_id, name=name)
        return assistant_id

    async def create_thread(self) -> str:
        thread_id = f"thread_{uuid4().hex}"
        self._threads[thread_id] = []
        return thread_id

    async def add_thread_message(self, thread_id: str, text: str, file_id: str) -> None:
        self._threads[thread_id].append({"role": "user", "text": text, "file_id": file_id})

    async def _wait_for_file(self, file_id: str):
        uploaded = await asyncio.to_thread(genai.get_file, file_id)
        while uploaded.state.name == "PROCESSING":
            await asyncio.sleep(FILE_POLL_INTERVAL)
            uploaded = await asyncio.to_thread(genai.get_file, file_id)
        if uploaded.state.name != "ACTIVE":
            raise RuntimeError(f"File {file_id} ended in state {uploaded.state.name}")
        return uploaded

    async def _run(self, thread_id: str, assistant_id: str) -> None:
        thread = self._threads[thread_id]
        contents: List[Dict[str, Any]] = []
        for entry in thread:
            parts: List[Any] = []
            if entry.get("file_id"):
                parts.append(await self._wait_for_file(entry["file_id"]))
            parts.append(entry["text"])
            contents.append({"role": entry["role"], "parts": parts})

        response = await self._model(self._assistants[assistant_id]).generate_content_async(contents)
        thread.append({"role": "model", "text": _response_text(response) or ""})

    async def start_run(self, thread_id: str, assistant_id: str) -> str:
        if thread_id not in self._threads or assistant_id not in self._assistants:
            raise KeyError(f"Unknown thread {thread_id} or assistant {assistant_id}")
        run_id = f"run_{uuid4().hex}"
        self._runs[run_id] = asyncio.create_task(self._run(thread_id, assistant_id))
        self._thread_runs[thread_id] = run_id
        return run_id

    async def _release(self, thread_id: str) -> None:
        """Forget a finished thread and delete the files it uploaded."""
        thread = self._threads.pop(thread_id, [])
        run_id = self._thread_runs.pop(thread_id, None)
        if run_id is not None:
            self._runs.pop(run_id, None)
        for entry in thread:
            if not entry.get("file_id"):
                continue
            try:
                await asyncio.to_thread(genai.delete_file, entry["file_id"])
            except Exception as e:
                # Gemini expires uploads on its own after 48 hours.
                logger.warning("gemini_file_delete_failed", file_id=entry["file_id"], error=str(e))

    async def get_run_status(self, thread_id: str, run_id: str) -> str:
        task = self._runs[run_id]
        if not task.done():
            return "in_progress"
        if task.cancelled():
            status = "cancelled"
        elif task.exception() is not None:
            logger.error("gemini_run_failed", run_id=run_id, error=str(task.exception()))
            status = "failed"
        else:
            return "completed"
        await self._release(thread_id)
        return status

    async def cancel_run(self, thread_id: str, run_id: str) -> None:
        task = self._runs.get(run_id)
        if task is not None and not task.done():
            task.cancel()
        await self._release(thread_id)

    async def latest_thread_message(self, thread_id: str) -> Optional[str]:
        reply = None
        for entry in reversed(self._threads.get(thread_id, [])):
            if entry["role"] == "model":
                reply = entry["text"] or None
                break
        await self._release(thread_id)
        return reply
