"""Switchboard entry point.

Wires the components and starts the server:
  Settings -> CompletionClient -> ChatService -> Classifier -> RouterService -> App -> Uvicorn

Services are plain objects built once here and passed down; the
Starlette lifespan opens and closes the completion client's HTTP pool on
the same event loop as uvicorn.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

import httpx
import uvicorn
from starlette.applications import Starlette

from switchboard.api.tools import ToolDispatcher, register_builtin_tools
from switchboard.config import Settings
from switchboard.llm.chat import ChatService
from switchboard.llm.client import CompletionClient
from switchboard.llm.retry import RetryPolicy
from switchboard.routing.classifier import Classifier
from switchboard.routing.router import RouterService

logger = logging.getLogger(__name__)


@dataclass
class Services:
    client: CompletionClient
    chat: ChatService
    router: RouterService
    dispatcher: ToolDispatcher


def build_services(settings: Settings, http: httpx.AsyncClient | None = None) -> Services:
    """Construct every component in dependency order.

    Nothing touches the network here; call ``services.client.start()``
    (the app lifespan does) before issuing requests. Pass ``http`` to
    run against a mock transport.
    """
    client = CompletionClient(settings, http=http)
    retry = RetryPolicy(
        max_attempts=settings.retry_max_attempts,
        initial_delay_s=settings.retry_initial_delay,
        max_delay_s=settings.retry_max_delay,
        retry_rate_limits=settings.retry_rate_limits,
    )
    chat = ChatService(
        client,
        model_ids=settings.model_ids,
        retry=retry,
        max_tokens=settings.max_tokens,
        temperature=settings.temperature,
        max_tool_iterations=settings.max_tool_iterations,
    )
    classifier = Classifier(
        chat,
        timeout_ms=settings.classification_timeout_ms,
        max_tokens=settings.classifier_max_tokens,
        fallback=settings.classifier_fallback,
    )
    router = RouterService(classifier, model_ids=settings.model_ids)

    dispatcher = ToolDispatcher()
    register_builtin_tools(dispatcher)

    return Services(client=client, chat=chat, router=router, dispatcher=dispatcher)


def build_app(settings: Settings, services: Services | None = None) -> Starlette:
    """Build the Starlette app with a lifespan that owns the HTTP client."""
    services = services or build_services(settings)

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        await services.client.start()
        app.state.services = services
        logger.info(
            "Switchboard started: fast=%s balanced=%s reasoning=%s",
            settings.fast_model,
            settings.balanced_model,
            settings.reasoning_model,
        )
        yield
        logger.info("Shutting down Switchboard...")
        await services.client.close()

    # Import here to keep module import light for build_services callers
    from switchboard.api.rest import create_app

    return create_app(
        chat_service=services.chat,
        router=services.router,
        dispatcher=services.dispatcher,
        settings=settings,
        lifespan=lifespan,
    )


def main() -> None:
    """Entry point -- parse settings, build app, run server."""
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    logger.info("Starting Switchboard on %s:%d", settings.host, settings.port)
    logger.info(
        "Retry: max_attempts=%d rate_limits=%s; classifier timeout=%dms",
        settings.retry_max_attempts,
        settings.retry_rate_limits,
        settings.classification_timeout_ms,
    )

    if not settings.anthropic_api_key and not settings.anthropic_auth_token:
        logger.warning(
            "Neither ANTHROPIC_API_KEY nor ANTHROPIC_AUTH_TOKEN is set -- "
            "startup will fail with a ConfigurationError"
        )

    app = build_app(settings)

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
