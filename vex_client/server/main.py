"""
MODULE OVERVIEW:
The FastAPI application factory for the webhook receiver.

WHAT IS HAPPENING HERE:
`create_app()` mounts the webhook router at `/api/v1/vex/webhooks` and wires it to a
`SessionRegistry`. Sessions are started inside the `lifespan` context, once the event
loop exists, and destroyed in its `finally` block when Uvicorn shuts down, so no
reconnect timer outlives the server.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import Iterable

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from vex_client.client.orchestrator import SessionOrchestrator
from vex_client.client.outbox import PersistentOutbox
from vex_client.server.middleware import TimingMiddleware
from vex_client.server.webhooks import create_webhook_router
from vex_client.shared.config import VEX_WEBHOOK_PATH, ClientConfig
from vex_client.shared.registry import SessionRegistry


def create_app(
    registry: SessionRegistry | None = None,
    session_configs: Iterable[ClientConfig] = (),
    outbox: PersistentOutbox | None = None,
    verbose: bool = False,
) -> FastAPI:
    registry = registry if registry is not None else SessionRegistry()
    configs = list(session_configs)
    sessions: list[SessionOrchestrator] = []

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # STARTUP
        logger.info(f"Webhook receiver starting with {len(configs)} configured sessions")
        if outbox is not None:
            outbox.start()
        for config in configs:
            client = SessionOrchestrator(config, registry=registry, outbox=outbox, autostart=False)
            client.start()
            sessions.append(client)

        yield

        # SHUTDOWN
        logger.info("Webhook receiver shutting down. Destroying sessions...")
        await asyncio.gather(*(client.destroy() for client in sessions), return_exceptions=True)
        sessions.clear()
        if outbox is not None:
            outbox.destroy()
        logger.info("Shutdown complete.")

    app = FastAPI(
        title="VEX Webhook Receiver",
        description="Receives session events pushed by the VEX backend",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.registry = registry

    app.add_middleware(TimingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(
        create_webhook_router(registry.get, verbose=verbose),
        prefix=VEX_WEBHOOK_PATH,
        tags=["Webhooks"],
    )

    @app.get("/healthz", tags=["Ops"])
    async def health_check():
        return {"status": "ok", "sessions": len(registry)}

    return app
