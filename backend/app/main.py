"""FastAPI application wiring for the price streaming service."""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.streaming import StreamingService, create_stream_router, create_streaming_service

logger = logging.getLogger(__name__)


def create_app(service: StreamingService | None = None) -> FastAPI:
    """Build the app around one streaming service context.

    Run with ``uvicorn --factory app.main:create_app``.
    """
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    service = service or create_streaming_service()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting price streaming service")
        await service.start()
        yield
        await service.shutdown()

    app = FastAPI(title="Ticker Stream", lifespan=lifespan)
    app.state.streaming = service
    app.include_router(create_stream_router(service))
    return app

