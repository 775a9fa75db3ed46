"""
Outbox relay.

Polls unpublished OutboxEvents in created_at order and hands each one to the
handler registered for its type. Events of one aggregate (one order, one
inventory item) are relayed in order: once an event fails, the later events of
the same aggregate wait for the next poll.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional

from app.core.config import BATCH_SIZE, LOG_LEVEL, MAX_ATTEMPTS, POLLING_INTERVAL
from app.core.db import close_db, init_db
from app.models.outbox import OutboxEvent

log = logging.getLogger("outbox_poller")

EventHandler = Callable[[OutboxEvent], Awaitable[None]]


async def publish_order_event(event: OutboxEvent) -> None:
    # Downstream consumers (analytics, loyalty, reporting) subscribe to these
    payload = event.payload
    log.info(
        f"PUBLISH {event.event_type} order={payload.get('order_id')} "
        f"{payload.get('previous')} -> {payload.get('current')}"
    )


async def handle_low_stock_alert(event: OutboxEvent) -> None:
    payload = event.payload
    log.warning(
        f"LOW STOCK: {payload.get('name')} ({payload.get('inventory_item_id')}) at "
        f"{payload.get('current_stock')} {payload.get('unit')}, threshold {payload.get('reorder_threshold')}"
    )


async def handle_deduction_degraded(event: OutboxEvent) -> None:
    payload = event.payload
    log.warning(
        f"RECONCILE: order {payload.get('order_id')} completed with "
        f"{len(payload.get('failed_lines') or [])} failed and {len(payload.get('skipped_lines') or [])} "
        f"skipped deduction line(s); error={payload.get('error')}"
    )


EVENT_HANDLERS: Dict[str, EventHandler] = {
    "order.created.v1": publish_order_event,
    "order.updated.v1": publish_order_event,
    "order.status_changed.v1": publish_order_event,
    "order.payment_status_changed.v1": publish_order_event,
    "order.cancelled.v1": publish_order_event,
    "inventory.low_stock_alert.v1": handle_low_stock_alert,
    "inventory.deduction.degraded.v1": handle_deduction_degraded,
}


async def dispatch_event(event: OutboxEvent, handlers: Dict[str, EventHandler]) -> None:
    """Routes an OutboxEvent to the handler registered for its type."""
    handler = handlers.get(event.event_type)
    if handler is None:
        log.warning(f"No handler found for event type: {event.event_type}")
        return
    log.debug(f"Dispatching {event.event_type} (ID: {event.id.hex[:8]}...)")
    await handler(event)


async def poll_outbox_for_new_events(handlers: Optional[Dict[str, EventHandler]] = None) -> int:
    """
    Relays one batch of unpublished events. Returns how many were published.
    """
    handlers = EVENT_HANDLERS if handlers is None else handlers
    # Select events that haven't been published and haven't exceeded max attempts
    events = await OutboxEvent.filter(published=False, attempts__lt=MAX_ATTEMPTS).order_by("created_at").limit(BATCH_SIZE)

    published = 0
    blocked: set = set()
    for event in events:
        if event.aggregate_id is not None and event.aggregate_id in blocked:
            continue
        try:
            await dispatch_event(event, handlers)
        except Exception as e:
            event.attempts += 1
            event.last_error = f"{type(e).__name__}: {e}"
            await event.save(update_fields=["attempts", "last_error"])
            log.error(f"Event {event.id} ({event.event_type}) failed, attempt {event.attempts}/{MAX_ATTEMPTS}: {e}")
            if event.aggregate_id is not None:
                blocked.add(event.aggregate_id)
            continue

        event.published = True
        await event.save(update_fields=["published"])
        published += 1
    return published


async def start_outbox_poller(handlers: Optional[Dict[str, EventHandler]] = None):
    """Main loop for the poller service."""
    await init_db()
    log.info("Outbox poller started")
    try:
        while True:
            try:
                await poll_outbox_for_new_events(handlers)
            except Exception as e:
                log.error(f"Poller encountered a critical DB error: {e}")
            await asyncio.sleep(POLLING_INTERVAL)
    finally:
        await close_db()


if __name__ == "__main__":
    logging.basicConfig(level=LOG_LEVEL, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    try:
        asyncio.run(start_outbox_poller())
    except KeyboardInterrupt:
        log.info("Poller service stopped.")
