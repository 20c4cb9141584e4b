"""
FastAPI backend for the mail sync service.
Provides REST API endpoints for sync triggers, status, folder setup, sender
screening, provider webhooks and scheduled dispatch.
"""

import logging
from contextlib import asynccontextmanager
from typing import Callable, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from mail_sync.config import SyncSettings, load_settings
from mail_sync.dispatch import DispatchJob
from mail_sync.storage import SyncStorage
from mail_sync.sync import SyncOrchestrator
from mail_sync.triggers import TriggerQueue
from mail_sync.webhooks import WebhookIngress

from api.auth_middleware import AuthMiddleware, TokenSessions
from api.sync_routes import router as sync_router

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[SyncSettings] = None,
    provider_factory: Optional[Callable] = None,
    run_dispatch_loop: bool = True
) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Settings to use (default: loaded from config.ini)
        provider_factory: Provider builder override, used by tests
        run_dispatch_loop: Start the in-process dispatch loop on startup
    """
    settings = settings or load_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler."""
        logger.info("Starting mail sync API...")

        storage = SyncStorage(settings.db_path)
        orchestrator = SyncOrchestrator(storage, settings, provider_factory=provider_factory)
        queue = TriggerQueue(orchestrator, retry_delay=settings.debounce_seconds)
        dispatch = DispatchJob(storage, queue, settings)

        app.state.storage = storage
        app.state.orchestrator = orchestrator
        app.state.queue = queue
        app.state.webhooks = WebhookIngress(storage, queue, debounce_seconds=settings.debounce_seconds)
        app.state.dispatch = dispatch

        queue.start()
        if run_dispatch_loop and settings.dispatch_interval_seconds > 0:
            await dispatch.start_periodic()
        logger.info(f"Mail sync service ready (database {settings.db_path})")

        yield

        # Shutdown
        logger.info("Shutting down mail sync API...")
        await dispatch.stop_periodic()
        await queue.stop()
        await orchestrator.shutdown()

    app = FastAPI(
        title="Mail Sync API",
        description="REST API for multi-provider email synchronization",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.settings = settings

    # Auth runs inside CORS so preflight requests are answered
    app.add_middleware(AuthMiddleware, user_auth=TokenSessions(settings.api_tokens))

    # CORS middleware for frontend
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:5173", "http://localhost:3000", "http://127.0.0.1:5173"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(sync_router)

    @app.get("/api/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "service": "mail-sync-api"}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
