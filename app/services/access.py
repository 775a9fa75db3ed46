from typing import Optional
from uuid import UUID

from app.core.errors import Forbidden
from app.schemas.actor import Actor


def ensure_order_access(
    actor: Actor,
    restaurant_id: UUID,
    customer_user_id: Optional[str] = None,
    guest_token: Optional[str] = None,
) -> None:
    """Tenant check: restaurant staff in scope, or the customer who owns the order."""
    if actor.can_manage(restaurant_id):
        return
    if actor.owns(customer_user_id, guest_token):
        return
    raise Forbidden("Actor is not allowed to act on this order.", actor=actor.audit_id)
