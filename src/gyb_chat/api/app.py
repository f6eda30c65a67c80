"""
FastAPI Application Module

HTTP surface over the conversation controller. The UI layer uses it to list,
create, rename and delete chats, send text or attachment turns and read the
controller state (loading/error flags and per-chat reply status).

Key Features:
- One controller per caller identity (``X-User-Id`` header)
- Rate limiting per caller and path
- Structured logging and Prometheus metrics
- CORS and OpenTelemetry support

Run with ``uvicorn gyb_chat.api.app:create_app --factory``.
"""

from contextlib import asynccontextmanager
from typing import List, Optional
from uuid import UUID

from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, Request, Response, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from prometheus_client import CollectorRegistry, Counter, generate_latest
from pydantic import BaseModel, Field, field_validator
from structlog import get_logger

from ..bootstrap import Services, build_services
from ..domain.models import Attachment, ChatState, Conversation, Message
from ..services.controller import ConversationController
from ..services.personas import Persona, list_personas
from .rate_limiter import RateLimiter, RateLimitExceeded, rate_limit_middleware

# Registry for isolated metric collection
CUSTOM_REGISTRY = CollectorRegistry()

REQUESTS = Counter("requests_total", "Total HTTP requests", registry=CUSTOM_REGISTRY)
ERRORS = Counter("errors_total", "Total failed HTTP requests", registry=CUSTOM_REGISTRY)
TURNS = Counter("turns_total", "User turns accepted", registry=CUSTOM_REGISTRY)
REPLY_FAILURES = Counter("reply_failures_total", "User turns left without an AI reply", registry=CUSTOM_REGISTRY)

logger = get_logger()


class MessageCreate(BaseModel):
    """Defines the structure for message creation requests"""
    content: str = Field(min_length=1)
    persona: Optional[str] = None

    @field_validator("content")
    @classmethod
    def content_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Message must not be empty")
        return value


class ChatRename(BaseModel):
    title: str = Field(min_length=1)


class TurnResponse(BaseModel):
    """The stored user message and the error left by the reply, if any"""
    message: Message
    error: Optional[str] = None


def create_app(services: Optional[Services] = None) -> FastAPI:
    """Build the application around an already wired service graph."""
    services = services or build_services()
    settings = services.settings
    rate_limiter = RateLimiter(rate_limit=settings.rate_limit, time_window=settings.rate_window)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Handles app startup/shutdown and resource management"""
        init_models = getattr(services.repository, "init_models", None)
        if init_models is not None:
            await init_models()
        await rate_limiter.start()
        logger.info("application_startup_complete")

        yield

        await services.request_queue.cleanup()
        await rate_limiter.stop()
        close = getattr(services.repository, "close", None)
        if close is not None:
            await close()
        logger.info("application_shutdown_complete")

    app = FastAPI(
        title="GYB Chat API",
        description="Conversational assistant pipeline with persona-driven LLM replies",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.services = services
    app.state.rate_limiter = rate_limiter

    # Enable cross-origin requests
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Set up request tracing
    FastAPIInstrumentor.instrument_app(app)

    @app.middleware("http")
    async def logging_middleware(request: Request, call_next):
        """Tracks requests and enforces rate limits"""
        REQUESTS.inc()
        logger.info("request_started", path=request.url.path, method=request.method)
        try:
            await rate_limit_middleware(request, rate_limiter)
        except RateLimitExceeded as e:
            ERRORS.inc()
            return JSONResponse(status_code=429, content={"detail": str(e)})
        try:
            response = await call_next(request)
        except Exception as e:
            ERRORS.inc()
            logger.error("request_failed", path=request.url.path, error=str(e))
            raise
        if response.status_code >= 500:
            ERRORS.inc()
        return response

    def get_owner_id(x_user_id: Optional[str] = Header(default=None)) -> str:
        """Identity supplied by the auth provider in front of this service"""
        if not x_user_id:
            raise HTTPException(status_code=401, detail="Missing X-User-Id header")
        return x_user_id

    async def get_controller(owner_id: str = Depends(get_owner_id)) -> ConversationController:
        return await services.controllers.for_owner(owner_id)

    async def get_owned_chat(
        chat_id: UUID,
        owner_id: str = Depends(get_owner_id),
    ) -> Conversation:
        conversation = await services.repository.get_conversation(chat_id)
        if conversation is None or conversation.owner_id != owner_id:
            raise HTTPException(status_code=404, detail="Chat not found")
        return conversation

    async def run_turn(
        controller: ConversationController,
        chat_id: UUID,
        content: str,
        owner_id: str,
        persona: Optional[str],
        attachment: Optional[Attachment] = None,
    ) -> TurnResponse:
        result = await controller.send(
            chat_id, content, role="user", sender_id=owner_id, persona=persona, attachment=attachment
        )
        if result.message is None:
            raise HTTPException(status_code=500, detail=result.error or "Failed to send message")
        TURNS.inc()
        if result.error:
            REPLY_FAILURES.inc()
        return TurnResponse(message=result.message, error=result.error)

    @app.get("/personas", response_model=List[Persona])
    async def personas() -> List[Persona]:
        """Lists the selectable assistant personas"""
        return list_personas()

    @app.get("/state", response_model=ChatState)
    async def state(controller: ConversationController = Depends(get_controller)) -> ChatState:
        """Returns the caller's conversation state, loading and error flags"""
        return controller.state

    @app.get("/chats", response_model=List[Conversation])
    async def list_chats(controller: ConversationController = Depends(get_controller)) -> List[Conversation]:
        """Gets the caller's chats, most recently updated first"""
        if not controller.state.chats_available:
            await controller.on_auth_changed(controller.owner_id)
        if not controller.state.chats_available:
            raise HTTPException(status_code=503, detail=controller.state.error or "Chats unavailable")
        return controller.state.chats

    @app.post("/chats", response_model=Conversation)
    async def create_chat(controller: ConversationController = Depends(get_controller)) -> Conversation:
        """Starts a new chat and makes it current"""
        chat_id = await controller.create_new_chat()
        conversation = await services.repository.get_conversation(chat_id) if chat_id else None
        if conversation is None:
            raise HTTPException(status_code=500, detail=controller.state.error or "Failed to create new chat")
        return conversation

    @app.get("/chats/{chat_id}", response_model=Conversation)
    async def get_chat(conversation: Conversation = Depends(get_owned_chat)) -> Conversation:
        """Retrieves a chat with its messages"""
        return conversation

    @app.patch("/chats/{chat_id}", response_model=Conversation)
    async def rename_chat(
        body: ChatRename,
        conversation: Conversation = Depends(get_owned_chat),
        controller: ConversationController = Depends(get_controller),
    ) -> Conversation:
        """Changes a chat's title"""
        if not await controller.rename_chat(conversation.id, body.title):
            raise HTTPException(status_code=422, detail=controller.state.error or "Failed to update chat title")
        return await services.repository.get_conversation(conversation.id)

    @app.delete("/chats/{chat_id}", status_code=204)
    async def delete_chat(
        conversation: Conversation = Depends(get_owned_chat),
        controller: ConversationController = Depends(get_controller),
    ) -> Response:
        """Deletes a chat and all of its messages"""
        if not await controller.delete_chat(conversation.id):
            raise HTTPException(status_code=500, detail=controller.state.error or "Failed to delete chat")
        return Response(status_code=204)

    @app.post("/chats/{chat_id}/messages", response_model=TurnResponse)
    async def create_message(
        body: MessageCreate,
        conversation: Conversation = Depends(get_owned_chat),
        owner_id: str = Depends(get_owner_id),
        controller: ConversationController = Depends(get_controller),
    ) -> TurnResponse:
        """
        Stores the user's message and generates the AI reply.
        A failed reply still returns the stored message, with ``error`` set.
        """
        return await run_turn(controller, conversation.id, body.content, owner_id, body.persona)

    @app.post("/chats/{chat_id}/attachments", response_model=TurnResponse)
    async def create_attachment_message(
        file: UploadFile = File(...),
        content: str = Form(default=""),
        persona: Optional[str] = Form(default=None),
        conversation: Conversation = Depends(get_owned_chat),
        owner_id: str = Depends(get_owner_id),
        controller: ConversationController = Depends(get_controller),
    ) -> TurnResponse:
        """Sends an image or document, optionally with a question about it"""
        attachment = Attachment(
            file_name=file.filename or "upload",
            content_type=file.content_type or "application/octet-stream",
            data=await file.read(),
        )
        return await run_turn(controller, conversation.id, content, owner_id, persona, attachment=attachment)

    @app.post("/chats/{chat_id}/cancel", status_code=202)
    async def cancel_reply(
        conversation: Conversation = Depends(get_owned_chat),
        controller: ConversationController = Depends(get_controller),
    ) -> Response:
        """Abandons a pending document analysis for the chat"""
        controller.cancel(conversation.id)
        return Response(status_code=202)

    @app.post("/auth/sign-out", status_code=204)
    async def sign_out(owner_id: str = Depends(get_owner_id)) -> Response:
        """Drops the caller's controller state"""
        await services.controllers.sign_out(owner_id)
        return Response(status_code=204)

    @app.get("/metrics")
    async def metrics():
        """Provides Prometheus metrics for system monitoring"""
        return Response(generate_latest(CUSTOM_REGISTRY), media_type="text/plain")

    return app
