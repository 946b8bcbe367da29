"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI

from .config import AppSettings, settings as default_settings
from .conversation import ConversationStore
from .llm.errors import ChatStreamError
from .routes import chat, models
from .service import ChatService

logger = logging.getLogger(__name__)


async def _check_endpoint_connectivity(service: ChatService):
    """Attempt a lightweight models listing against the configured endpoint."""
    logger.info("Endpoint: %s", service.settings.endpoint_url)
    logger.info("Model: %s", service.settings.model_name)
    try:
        available = await service.list_models(timeout=5)
    except ChatStreamError as e:
        logger.warning("Cannot list models at %s: %s", service.settings.endpoint_url, e.message)
        logger.warning("Chat requests will fail until the endpoint is reachable.")
        return
    logger.info("Endpoint is reachable, %d model(s) advertised", len(available))
    if available and service.settings.model_name not in available:
        logger.warning("Configured model %s is not in the advertised list", service.settings.model_name)


def create_app(
    settings: AppSettings | None = None,
    client: httpx.AsyncClient | None = None,
    store: ConversationStore | None = None,
) -> FastAPI:
    settings = settings or default_settings
    service = ChatService(settings, client=client, store=store)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await _check_endpoint_connectivity(service)
        yield
        await service.aclose()
        logger.info("Chat sessions closed")

    app = FastAPI(title="LLM Chat", lifespan=lifespan)
    app.state.chat_service = service
    app.include_router(chat.router)
    app.include_router(models.router)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app


logging.basicConfig(
    level=default_settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
    datefmt="%H:%M:%S",
)

app = create_app()
