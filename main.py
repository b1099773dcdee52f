import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from openai import AsyncOpenAI

from dal.local_adapter import LocalAdapter
from dal.persistence_adapter import PersistenceAdapter
from dal.remote_adapter import RemoteAdapter
from routes.chat_route import router as chat_router
from routes.live_ws import router as live_router
from services.auth.principal import Principal, PrincipalProvider
from services.chat.conversation_store import ConversationStore
from services.chat.send_orchestrator import SendOrchestrator
from services.openai.completion_client import CompletionClient, is_valid_credential
from utils.config import Settings
from utils.database_init import AsyncDatabaseInitializer

LOGGER = logging.getLogger(__name__)


def build_adapter(settings: Settings) -> PersistenceAdapter:
    """Select the persistence adapter named by the settings."""
    if settings.persistence == "remote":
        return RemoteAdapter(AsyncDatabaseInitializer(settings.database_dir))
    return LocalAdapter(settings.local_store_path)


def build_openai_client(settings: Settings) -> AsyncOpenAI:
    # The SDK requires some key at construction; each request supplies its own.
    try:
        return AsyncOpenAI(
            api_key=settings.openai_api_key or "unset",
            base_url=settings.openai_base_url,
            max_retries=settings.openai_max_retries,
        )
    except Exception as exc:
        raise RuntimeError("Failed to initialize OpenAI Async client") from exc


def create_app(
    settings: Optional[Settings] = None,
    completion_client: Optional[CompletionClient] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application instance.

    `completion_client` overrides the OpenAI-backed client (used by tests).
    """
    settings = settings or Settings.from_env()
    logging.basicConfig(level=settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Lifespan manager to initialize:
          - the persistence adapter selected by CHAT_PERSISTENCE
          - the conversation store (loaded from the adapter)
          - the completion client and send orchestrator
        and attach them to `app.state`.
        """
        adapter = build_adapter(settings)
        principals = PrincipalProvider(
            Principal(id=settings.principal_id) if settings.principal_id else None
        )
        store = ConversationStore(adapter, principals, model=settings.model)
        await store.initialize()

        openai_client = None
        client = completion_client
        if client is None:
            if not is_valid_credential(settings.openai_api_key):
                LOGGER.warning("OPENAI_API_KEY is missing or malformed; turns will fail until it is set")
            openai_client = build_openai_client(settings)
            client = CompletionClient(openai_client)

        app.state.settings = settings
        app.state.principals = principals
        app.state.persistence_adapter = adapter
        app.state.conversation_store = store
        app.state.send_orchestrator = SendOrchestrator(
            store, client, settings.openai_api_key, streaming=settings.streaming
        )

        try:
            yield
        finally:
            await adapter.close()
            if openai_client is not None:
                await openai_client.close()

    app = FastAPI(lifespan=lifespan)

    @app.get("/health")
    async def health(request: Request):
        """
        Simple health check that reports the persistence backend and store state.
        """
        store = getattr(request.app.state, "conversation_store", None)
        return {
            "ok": True,
            "persistence": settings.persistence,
            "store_initialized": store is not None,
            "streaming": bool(store and store.is_streaming),
        }

    app.include_router(chat_router)
    app.include_router(live_router)

    return app


app = create_app()
