"""Live-update WebSocket.

Each connection subscribes to the LiveUpdateHub and receives
{"event": ..., "data": ...} frames in publish order. Client frames are
read only to notice disconnects.
"""

import asyncio

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from leadflow.messaging.live import Subscription, SubscriptionDropped
from leadflow.observability.logging import get_logger
from leadflow.observability.redaction import safe_log_context

router = APIRouter(tags=["live"])

logger = get_logger(__name__)


async def _drain_client(websocket: WebSocket) -> None:
    while True:
        await websocket.receive_text()


async def _forward_events(websocket: WebSocket, subscription: Subscription) -> None:
    while True:
        event = await subscription.next_event()
        await websocket.send_json(event.to_dict())


@router.websocket("/ws")
async def live_updates(websocket: WebSocket) -> None:
    hub = websocket.app.state.services.hub
    # Subscribe before accepting so no event published after the
    # handshake is missed
    subscription = hub.subscribe()
    try:
        await websocket.accept()
        reader = asyncio.create_task(_drain_client(websocket))
        writer = asyncio.create_task(_forward_events(websocket, subscription))
        done, pending = await asyncio.wait(
            {reader, writer}, return_when=asyncio.FIRST_COMPLETED
        )
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        for task in done:
            exc = task.exception()
            if isinstance(exc, SubscriptionDropped):
                # 1013: try again later
                await websocket.close(code=1013)
            elif exc is not None and not isinstance(exc, WebSocketDisconnect):
                logger.warning(
                    "live connection closed with error",
                    extra={"extra_fields": safe_log_context(error_type=type(exc).__name__)},
                )
    finally:
        subscription.close()
