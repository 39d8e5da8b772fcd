"""API routes for targets, observations and the live event stream.

Endpoints:
  GET  /api/targets                    — all target descriptors
  GET  /api/status/{target_id}         — latest observed status (or null)
  GET  /api/observations/{target_id}   — full history, newest first
  GET  /api/events                     — SSE stream of bus messages
  GET  /api/health                     — controller + sweeper liveness
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, StreamingResponse

from observatory.events.bus import (
    BusClosed,
    ConnectedMessage,
    Message,
    ObservationMessage,
    Subscription,
    SubscriberLagged,
)

logger = logging.getLogger(__name__)

router = APIRouter()

KEEPALIVE_SECONDS = 30


def message_to_dict(message: Message) -> dict[str, Any]:
    """Wire form of a bus message."""
    if isinstance(message, ObservationMessage):
        return {"type": "observation", "observation": message.observation.to_dict()}
    if isinstance(message, ConnectedMessage):
        return {"type": "connected"}
    raise TypeError(f"Unknown message: {message!r}")


# ── Query endpoints ──────────────────────────────────────────────────────────


@router.get("/targets")
def list_targets(request: Request) -> list[dict[str, Any]]:
    store = request.app.state.store
    return [t.to_dict() for t in store.list_targets()]


@router.get("/status/{target_id}")
def target_status(target_id: str, request: Request) -> dict[str, Any] | None:
    store = request.app.state.store
    latest = store.get_latest(target_id)
    return latest.to_dict() if latest else None


@router.get("/observations/{target_id}")
def target_observations(
    target_id: str, request: Request, limit: int | None = None,
) -> list[dict[str, Any]]:
    store = request.app.state.store
    return [o.to_dict() for o in store.get_history(target_id, limit)]


@router.get("/health")
def service_health(request: Request) -> JSONResponse:
    """Liveness of every controller and the sweeper; 503 if any has died."""
    scheduler = request.app.state.scheduler
    sweeper = request.app.state.sweeper
    sweeper_status = sweeper.status()
    failed = [c.target_id for c in scheduler.failed]
    ok = not failed and sweeper_status["alive"]
    body = {
        "status": "ok" if ok else "degraded",
        "failed_controllers": failed,
        "controllers": scheduler.status(),
        "sweeper": sweeper_status,
        "subscribers": request.app.state.bus.subscriber_count,
    }
    return JSONResponse(body, status_code=200 if ok else 503)


# ── SSE stream ───────────────────────────────────────────────────────────────


async def event_stream(
    subscription: Subscription,
    is_disconnected: Callable[[], Awaitable[bool]],
    keepalive: float = KEEPALIVE_SECONDS,
) -> AsyncIterator[str]:
    """Render bus messages as SSE frames until the client goes away."""
    try:
        while not await is_disconnected():
            try:
                message = await asyncio.wait_for(subscription.recv(), timeout=keepalive)
            except asyncio.TimeoutError:
                yield ": keepalive\n\n"
                continue
            except SubscriberLagged as e:
                logger.debug("SSE client lagged, skipped %d messages", e.missed)
                continue
            except BusClosed:
                break
            yield f"data: {json.dumps(message_to_dict(message))}\n\n"
    finally:
        subscription.close()


@router.get("/events")
async def events(request: Request) -> StreamingResponse:
    """Server-Sent Events stream of live observations."""
    subscription = request.app.state.bus.subscribe()
    return StreamingResponse(
        event_stream(subscription, request.is_disconnected),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
