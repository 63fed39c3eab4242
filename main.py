"""
External Service Connection Manager — application entry point.
"""

from __future__ import annotations

import logging
import sys
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config.settings import config
from connectors.registry import ConnectorRegistry
from connectors.routes import router as connectors_router
from core.factory import OrchestratorHub

logging.basicConfig(
    level=logging.DEBUG if config.debug else logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(name)s — %(message)s",
    stream=sys.stdout,
)
for _noisy in ("httpcore", "httpx", "aiosqlite", "sqlalchemy.engine"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


def create_app(hub: Optional[OrchestratorHub] = None) -> FastAPI:
    app = FastAPI(
        title="External Service Connection Manager",
        version="1.0.0",
        description="Connects GitHub, Netlify, Vercel, Supabase and Firebase accounts.",
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    hub = hub or OrchestratorHub()
    app.state.connector_hub = hub

    # Routes
    app.include_router(connectors_router, prefix="/api/v1/connectors")

    @app.on_event("startup")
    async def on_startup():
        logger.info("Discovering connectors…")
        ConnectorRegistry().discover()

        await hub.startup()

        if config.app_session_token:
            logger.info("Reconciling persisted connections…")
            hub.get(config.app_session_token).start_reconcile()

        logger.info("Application ready to accept requests.")

    @app.on_event("shutdown")
    async def on_shutdown():
        await hub.aclose()

    return app


app = create_app()

if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=config.host,
        port=config.port,
        reload=config.debug,
        log_level="debug" if config.debug else "info",
    )
