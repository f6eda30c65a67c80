"""Builds the service graph once at startup."""

from dataclasses import dataclass
from typing import Optional

import structlog

from .config import Settings, get_settings
from .repositories.base import Repository
from .services.controller import ControllerRegistry
from .services.dispatcher import AIDispatcher, AssistantResource
from .services.providers.base import CompletionProvider
from .services.request_queue import RequestQueue

logger = structlog.get_logger()


@dataclass
class Services:
    settings: Settings
    repository: Repository
    provider: CompletionProvider
    dispatcher: AIDispatcher
    request_queue: RequestQueue
    controllers: ControllerRegistry


def build_repository(settings: Settings) -> Repository:
    if settings.store_backend == "sql":
        from .repositories.sql import SQLRepository

        return SQLRepository(settings.database_url)
    from .repositories.memory import InMemoryRepository

    return InMemoryRepository()


def build_provider(settings: Settings) -> CompletionProvider:
    if settings.llm_provider == "gemini":
        from .services.providers.gemini_provider import GeminiProvider

        return GeminiProvider(api_key=settings.gemini_api_key, model_name=settings.gemini_model)
    from .services.providers.openai_provider import OpenAIProvider

    return OpenAIProvider(
        api_key=settings.openai_api_key,
        text_model=settings.text_model,
        vision_model=settings.vision_model,
        document_model=settings.document_model,
    )


def build_services(
    settings: Optional[Settings] = None,
    repository: Optional[Repository] = None,
    provider: Optional[CompletionProvider] = None,
) -> Services:
    settings = settings or get_settings()
    repository = repository or build_repository(settings)
    provider = provider or build_provider(settings)

    dispatcher = AIDispatcher(
        provider,
        assistant=AssistantResource(provider),
        max_tokens=settings.max_tokens,
        temperature=settings.temperature,
        poll_interval=settings.poll_interval,
        poll_max_wait=settings.poll_max_wait,
        poll_max_attempts=settings.poll_max_attempts,
    )
    request_queue = RequestQueue(max_concurrent=settings.max_concurrent, queue_timeout=settings.queue_timeout)
    controllers = ControllerRegistry(
        repository, dispatcher, request_queue=request_queue, default_persona=settings.default_persona
    )
    logger.info(
        "services_built",
        store_backend=type(repository).__name__,
        llm_provider=provider.name,
    )
    return Services(
        settings=settings,
        repository=repository,
        provider=provider,
        dispatcher=dispatcher,
        request_queue=request_queue,
        controllers=controllers,
    )
