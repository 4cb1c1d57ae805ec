"""HTTP endpoints for subscriptions, health and SSE price streaming."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncGenerator

from fastapi import APIRouter, Header, Request
from fastapi.responses import StreamingResponse

from .service import StreamingService

logger = logging.getLogger(__name__)


def create_stream_router(service: StreamingService) -> APIRouter:
    """Create the router with a reference to the streaming service.

    The session id comes from the ``X-Session-Id`` header, which the
    authentication layer in front of this service is expected to set.
    """
    router = APIRouter(prefix="/api", tags=["streaming"])

    @router.post("/tickers/{symbol}")
    async def subscribe(symbol: str, x_session_id: str = Header(...)) -> dict:
        result = await service.subscribe(x_session_id, symbol)
        return result.to_dict()

    @router.delete("/tickers/{symbol}")
    async def unsubscribe(symbol: str, x_session_id: str = Header(...)) -> dict:
        result = await service.unsubscribe(x_session_id, symbol)
        return result.to_dict()

    @router.get("/tickers")
    async def stream_info() -> list[dict]:
        return service.stream_info()

    @router.get("/prices/summary")
    async def price_summary() -> dict:
        return service.price_summary()

    @router.get("/health")
    async def health() -> dict:
        return service.health_check().to_dict()

    @router.get("/stream/prices")
    async def stream_prices(request: Request, x_session_id: str = Header(...)) -> StreamingResponse:
        """SSE endpoint for live price updates of the session's subscriptions.

        Each event carries one update:

            data: {"symbol": "BTCUSD", "price": "115,730.65", ...}

        Includes a retry directive so the browser auto-reconnects on
        disconnection (EventSource built-in behavior).
        """
        return StreamingResponse(
            _generate_events(service, x_session_id, request),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",  # Disable nginx buffering if proxied
            },
        )

    return router


async def _generate_events(
    service: StreamingService,
    session_id: str,
    request: Request,
) -> AsyncGenerator[str, None]:
    """Yield SSE-formatted price events until the client disconnects."""
    # Tell the client to retry after 1 second if the connection drops
    yield "retry: 1000\n\n"

    logger.info("SSE client connected: session %s", session_id)
    updates = service.stream_updates(session_id, should_stop=request.is_disconnected)
    try:
        async for delivery in updates:
            if await request.is_disconnected():
                logger.info("SSE client disconnected: session %s", session_id)
                break
            yield f"data: {json.dumps(delivery.to_dict())}\n\n"
    finally:
        await updates.aclose()
