"""Carrier selection client (external black box).

WHAT:
    Asks the carrier-selection service which carrier/service should ship an
    order and writes the answer onto the order.

WHY:
    Carrier choice (scores, learned performance, forced rules) lives in a
    separate service. The pipeline only needs: carrier chosen, no carrier,
    or call failed. A failure never touches the persisted order or its
    lines; the arq job retries it (see ordersync/workers/arq_worker.py).

REFERENCES:
    - ordersync/workers/arq_worker.py (process_carrier_selection_job)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional
from uuid import UUID

import httpx
from sqlalchemy.orm import Session

from ordersync.errors import ExternalCallError
from ordersync.models import CarrierSelectionStatusEnum, Order

logger = logging.getLogger(__name__)


@dataclass
class CarrierChoice:
    carrier_name: str
    service_name: Optional[str] = None


class CarrierSelectionClient:
    """HTTP client for the carrier-selection service.

    Usage:
        client = CarrierSelectionClient(base_url=settings.CARRIER_SELECTION_URL)
        choice = await client.select_carrier(order.id)
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        api_key: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not base_url:
            raise ExternalCallError("CARRIER_SELECTION_URL is not configured", service="carrier_selection")
        self.base_url = base_url
        self.timeout = timeout
        self.api_key = api_key
        self._transport = transport

    async def select_carrier(self, order_id: UUID) -> Optional[CarrierChoice]:
        """Request a carrier for `order_id`.

        Returns:
            CarrierChoice, or None when the service found no suitable carrier

        Raises:
            ExternalCallError: Timeout, transport error, non-2xx or unreadable body
        """
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.base_url, json={"order_id": str(order_id)}, headers=headers)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as e:
            raise ExternalCallError(
                f"Carrier selection returned HTTP {e.response.status_code}",
                service="carrier_selection",
                status_code=e.response.status_code,
            ) from e
        except httpx.TimeoutException as e:
            raise ExternalCallError(f"Carrier selection timed out after {self.timeout}s", service="carrier_selection") from e
        except httpx.RequestError as e:
            raise ExternalCallError(f"Carrier selection request failed: {e}", service="carrier_selection") from e
        except ValueError as e:
            raise ExternalCallError("Carrier selection returned invalid JSON", service="carrier_selection") from e

        return _parse_choice(data)


def _parse_choice(data: Any) -> Optional[CarrierChoice]:
    if not isinstance(data, dict):
        raise ExternalCallError("Carrier selection returned an unexpected body", service="carrier_selection")

    carrier = data.get("carrier") or {}
    if isinstance(carrier, str):
        carrier = {"name": carrier}
    name = carrier.get("name") or data.get("carrier_name")
    if not name:
        return None
    return CarrierChoice(carrier_name=name, service_name=carrier.get("code") or data.get("service_name"))


async def apply_carrier_selection(db: Session, order_id: UUID, client: CarrierSelectionClient) -> Order:
    """Run carrier selection for one order and persist the outcome.

    Only carrier fields and the selection status are written. Errors from the
    client propagate (after the attempt counter is saved) so the caller can
    retry.

    Raises:
        LookupError: Order does not exist
        ExternalCallError: Carrier selection call failed
    """
    order = db.get(Order, order_id)
    if order is None:
        raise LookupError(f"Order {order_id} not found")

    order.carrier_selection_attempts = (order.carrier_selection_attempts or 0) + 1
    try:
        choice = await client.select_carrier(order.id)
    except ExternalCallError as e:
        order.carrier_selection_error = e.message
        db.commit()
        raise

    if choice is None:
        order.carrier_selection_status = CarrierSelectionStatusEnum.no_carrier
        logger.info("[CARRIER] %s: no carrier selected", order.order_number)
    else:
        order.carrier_name = choice.carrier_name
        order.service_name = choice.service_name
        order.carrier_selection_status = CarrierSelectionStatusEnum.selected
        logger.info("[CARRIER] %s: %s / %s", order.order_number, choice.carrier_name, choice.service_name)
    order.carrier_selection_error = None
    db.commit()
    return order
