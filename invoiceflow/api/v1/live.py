"""
Live batch updates

  WS  /api/v1/ws/batches?token=…             subscribe to any number of batches
  GET /api/v1/batches/{batch_id}/events      SSE stream for one batch

WebSocket protocol (JSON text frames):

  client → {"action": "subscribe",   "batch_id": "<id>" | "*"}
  client → {"action": "unsubscribe", "batch_id": "<id>" | "*"}
  server → {"type": "subscribed" | "unsubscribed", "batch_id": …}
  server → {"type": "batch_update" | "document_update", "timestamp": …, "data": {…}}
  server → {"type": "heartbeat", "status": "ALIVE", …}
  server → {"type": "error", "message": …}

Subscribing to a specific batch first sends its current snapshot, so a
client that connects late starts from the right state. Delivery is
best-effort: a client that cannot keep up loses messages, never blocks
the pipeline.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncGenerator

from fastapi import APIRouter, Depends, HTTPException, Request, WebSocket, WebSocketDisconnect, status
from fastapi.responses import StreamingResponse

from invoiceflow.auth.dependencies import Pipeline
from invoiceflow.auth.rbac import require_role
from invoiceflow.auth.token import verify_token
from invoiceflow.auth.users import User
from invoiceflow.core.errors import NotFoundError
from invoiceflow.domain.status import BatchStatus
from invoiceflow.notifications.gateway import BROADCAST, NotificationGateway, batch_snapshot
from invoiceflow.services.pipeline import BatchPipeline

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Live updates"])

SSE_KEEPALIVE_SECONDS = 15.0


def _sse_event(event: str, data: dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data, default=str)}\n\n"


# ---------------------------------------------------------------------------
# GET /batches/{batch_id}/events (SSE stream)
# ---------------------------------------------------------------------------

@router.get(
    "/batches/{batch_id}/events",
    summary="Stream one batch's updates via Server-Sent Events",
    description=(
        "Emits `batch_update` and `document_update` events, `heartbeat` events and "
        "keepalive comments. The stream ends with a `done` event once the batch is terminal."
    ),
    response_class=StreamingResponse,
)
async def stream_batch_events(
    batch_id: str,
    request: Request,
    pipeline: Pipeline,
    user: User = Depends(require_role("viewer")),
) -> StreamingResponse:
    gateway = pipeline.gateway
    # subscribed before the snapshot is read: an update landing in between is queued, not lost
    subscriber = gateway.register()
    gateway.subscribe(subscriber.id, batch_id)
    try:
        batch = await pipeline.repository.get_batch(batch_id)
    except NotFoundError:
        gateway.unregister(subscriber.id)
        raise

    async def event_generator() -> AsyncGenerator[str, None]:
        try:
            snapshot = batch_snapshot(batch)
            yield _sse_event("connected", {"batch_id": batch_id, "data": snapshot})
            if batch.is_terminal:
                yield _sse_event("done", {"batch_id": batch_id, "status": snapshot["status"]})
                return

            while True:
                if await request.is_disconnected():
                    logger.debug("SSE client disconnected | batch=%s", batch_id)
                    break
                try:
                    message = await asyncio.wait_for(subscriber.queue.get(), timeout=SSE_KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    # keep proxies from closing an idle connection
                    yield ": keepalive\n\n"
                    continue

                yield _sse_event(message["type"], message)
                if message["type"] == "batch_update" and BatchStatus(message["data"]["status"]).is_terminal:
                    yield _sse_event("done", {"batch_id": batch_id, "status": message["data"]["status"]})
                    break
        finally:
            gateway.unregister(subscriber.id)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control":     "no-cache",
            "Connection":        "keep-alive",
            "X-Accel-Buffering": "no",   # disable nginx buffering for SSE
        },
    )


# ---------------------------------------------------------------------------
# WS /ws/batches
# ---------------------------------------------------------------------------

async def _authenticate(websocket: WebSocket) -> User | None:
    token = websocket.query_params.get("token")
    if not token:
        auth = websocket.headers.get("authorization", "")
        token = auth[7:] if auth.lower().startswith("bearer ") else None
    if not token:
        return None
    try:
        return await verify_token(token, websocket.app.state.users, websocket.app.state.settings)
    except HTTPException:
        return None


@router.websocket("/ws/batches")
async def batch_updates_socket(websocket: WebSocket) -> None:
    user = await _authenticate(websocket)
    if user is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    pipeline = websocket.app.state.pipeline
    gateway: NotificationGateway = pipeline.gateway
    subscriber = gateway.register()
    logger.info("WS connected | user=%s subscriber=%s", user.username, subscriber.id)

    async def pump() -> None:
        while True:
            message = await subscriber.queue.get()
            await websocket.send_json(message)

    sender = asyncio.create_task(pump(), name=f"ws-{subscriber.id}")
    try:
        while True:
            raw = await websocket.receive_text()
            reply = await _handle_client_message(raw, subscriber.id, pipeline, gateway)
            if reply is not None:
                await websocket.send_json(reply)
    except WebSocketDisconnect:
        logger.info("WS disconnected | user=%s subscriber=%s", user.username, subscriber.id)
    finally:
        sender.cancel()
        await asyncio.gather(sender, return_exceptions=True)
        gateway.unregister(subscriber.id)


async def _handle_client_message(
    raw: str,
    subscriber_id: str,
    pipeline: BatchPipeline,
    gateway: NotificationGateway,
) -> dict[str, Any] | None:
    try:
        msg = json.loads(raw)
    except json.JSONDecodeError:
        return {"type": "error", "message": "Frames must be JSON objects."}
    if not isinstance(msg, dict):
        return {"type": "error", "message": "Frames must be JSON objects."}

    action, batch_id = msg.get("action"), msg.get("batch_id")
    if action not in ("subscribe", "unsubscribe") or not isinstance(batch_id, str) or not batch_id:
        return {"type": "error", "message": "Expected {\"action\": \"subscribe\"|\"unsubscribe\", \"batch_id\": …}."}

    if action == "unsubscribe":
        gateway.unsubscribe(subscriber_id, batch_id)
        return {"type": "unsubscribed", "batch_id": batch_id}

    if batch_id == BROADCAST:
        gateway.subscribe(subscriber_id, batch_id)
        return {"type": "subscribed", "batch_id": batch_id}

    try:
        batch = await pipeline.repository.get_batch(batch_id)
    except NotFoundError as exc:
        return {"type": "error", "message": exc.message}
    gateway.subscribe(subscriber_id, batch_id)
    return {"type": "subscribed", "batch_id": batch_id, "data": batch_snapshot(batch)}

