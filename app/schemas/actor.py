from enum import Enum
from typing import List, Optional
import uuid

from pydantic import BaseModel, Field


class ActorRole(str, Enum):
    CUSTOMER = "customer"
    STAFF = "staff"
    RESTAURANT_ADMIN = "restaurant_admin"
    SYSTEM_ADMIN = "system_admin"
    SERVICE = "service"  # Another backend service (e.g. the order service calling inventory)


UNSCOPED_ROLES = frozenset({ActorRole.SYSTEM_ADMIN, ActorRole.SERVICE})


class Actor(BaseModel):
    """
    Identity resolved by the authentication layer. The core trusts it and only
    performs tenant / ownership checks against it.
    """
    actor_id: Optional[str] = None
    guest_token: Optional[str] = None
    role: ActorRole = ActorRole.CUSTOMER
    restaurant_ids: List[uuid.UUID] = Field(default_factory=list)

    @property
    def audit_id(self) -> str:
        if self.actor_id:
            return self.actor_id
        if self.guest_token:
            return f"guest:{self.guest_token}"
        return "anonymous"

    def can_manage(self, restaurant_id: uuid.UUID) -> bool:
        if self.role in UNSCOPED_ROLES:
            return True
        if self.role == ActorRole.CUSTOMER:
            return False
        return restaurant_id in self.restaurant_ids

    def owns(self, customer_user_id: Optional[str], guest_token: Optional[str]) -> bool:
        if self.actor_id and customer_user_id:
            return self.actor_id == customer_user_id
        if self.guest_token and guest_token:
            return self.guest_token == guest_token
        return False


def service_actor(name: str = "fulfillment") -> Actor:
    return Actor(actor_id=f"service:{name}", role=ActorRole.SERVICE)
