import logging
from typing import Optional, Sequence
from uuid import UUID

import httpx
from pydantic import ValidationError

from app.core.config import DEDUCTION_SERVICE_TIMEOUT, DEDUCTION_SERVICE_URL
from app.core.errors import StorageError
from app.schemas.actor import Actor
from app.schemas.inventory import BatchResult, DeductionLine

log = logging.getLogger("deduction_client")


class HttpDeductionClient:
    """
    Calls a remote inventory service's deduction endpoint. Used by the order
    state machine instead of the in-process engine when inventory runs apart.
    """

    def __init__(
        self,
        base_url: str = DEDUCTION_SERVICE_URL,
        timeout: float = DEDUCTION_SERVICE_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def deduct(
        self,
        restaurant_id: UUID,
        lines: Sequence[DeductionLine],
        actor: Optional[Actor] = None,
        reference: Optional[str] = None,
    ) -> BatchResult:
        body = {
            "restaurant_id": str(restaurant_id),
            "items": [line.model_dump(mode="json") for line in lines],
            "order_id": reference,
        }
        headers = {"X-Actor-Role": "service"}
        if actor and actor.actor_id:
            headers["X-Actor-Id"] = actor.actor_id

        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self.transport
            ) as client:
                response = await client.post("/api/v1/inventory/deductions", json=body, headers=headers)
                response.raise_for_status()
        except httpx.HTTPError as e:
            log.error(f"Inventory service deduction failed (ref={reference}): {e}")
            raise StorageError(f"Inventory service unavailable: {e}") from e

        try:
            return BatchResult.model_validate(response.json()["data"])
        except (ValueError, KeyError, TypeError, ValidationError) as e:
            log.error(f"Inventory service returned an unreadable deduction result (ref={reference}): {e}")
            raise StorageError(f"Inventory service returned an invalid response: {e}") from e
