"""
MODULE OVERVIEW:
The sandbox backend application factory.

WHAT IS HAPPENING HERE:
A FastAPI app that speaks exactly the client-facing protocol the sync layer consumes:
booking submission, status polling and the push channel. Its state (a BookingStore)
hangs off `app.state`, so every create_app() call is independent, which is what the
tests rely on. The `lifespan` context drops all open channels on shutdown.
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from loguru import logger

from roadside_sync.server.booking_store import BookingStore
from roadside_sync.server.routes import jobs, websocket
from roadside_sync.shared.config import Settings
from roadside_sync.shared.config import settings as default_settings


def create_app(settings: Settings = default_settings) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Roadside sandbox backend starting up...")
        yield
        logger.info(f"Sandbox shutting down. Dropping {len(app.state.store.channels)} channels.")
        app.state.store.channels.clear()

    app = FastAPI(
        title="Roadside Sync Sandbox",
        description="Protocol-only stand-in for the marketplace backend",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.store = BookingStore(
        match_after_polls=settings.SANDBOX_MATCH_AFTER_POLLS,
        reject_submissions=settings.SANDBOX_CUSTOMER_REJECT,
    )

    app.include_router(jobs.router, tags=["Jobs"])
    app.include_router(websocket.router, tags=["Push"])

    @app.get("/healthz", tags=["Ops"])
    async def health_check():
        return {"status": "ok"}

    @app.get("/stats", tags=["Ops"])
    async def get_stats(request: Request):
        return request.app.state.store.get_stats()

    return app
