import asyncio
import contextlib
import logging
from uuid import UUID

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, status

from app.core.deps import get_actor
from app.core.errors import FulfillmentError
from app.notifications.realtime import RealtimeHub, order_channel, restaurant_channel
from app.schemas.actor import Actor
from app.services.access import ensure_order_access

log = logging.getLogger("api.realtime")

router = APIRouter()


async def _stream(websocket: WebSocket, hub: RealtimeHub, channel: str) -> None:
    """Forwards hub messages of `channel` to the socket until the client goes away."""
    # Subscribed before the handshake completes, so nothing published after it is missed
    queue = hub.subscribe(channel)

    async def forward():
        while True:
            message = await queue.get()
            await websocket.send_json(message)

    try:
        await websocket.accept()
        log.info(f"Realtime subscriber joined {channel} ({hub.subscriber_count(channel)} connected)")
        sender = asyncio.create_task(forward())
        try:
            # Inbound frames are ignored; receiving only detects the disconnect
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            sender.cancel()
            with contextlib.suppress(asyncio.CancelledError, WebSocketDisconnect, RuntimeError):
                await sender
    finally:
        hub.unsubscribe(channel, queue)
        log.info(f"Realtime subscriber left {channel}")


@router.websocket("/ws/restaurants/{restaurant_id}")
async def restaurant_ws(websocket: WebSocket, restaurant_id: UUID, actor: Actor = Depends(get_actor)) -> None:
    """Live feed of every order event of one restaurant, for kitchen and staff dashboards."""
    if not actor.can_manage(restaurant_id):
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    hub = websocket.app.state.container.hub
    await _stream(websocket, hub, restaurant_channel(restaurant_id))


@router.websocket("/ws/orders/{order_id}")
async def order_ws(websocket: WebSocket, order_id: UUID, actor: Actor = Depends(get_actor)) -> None:
    """Live status of a single order, for the customer's tracking view."""
    container = websocket.app.state.container
    try:
        order = await container.orders.get(order_id)
        ensure_order_access(actor, order.restaurant_id, order.customer_user_id, order.guest_token)
    except FulfillmentError as e:
        log.info(f"Rejected realtime subscription to order {order_id}: {e.message}")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    await _stream(websocket, container.hub, order_channel(order_id))
