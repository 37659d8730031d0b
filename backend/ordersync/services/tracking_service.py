"""Tracking updates from SendCloud parcels.

WHAT:
    - map_parcel_status(): SendCloud parcel status id → order status
    - apply_tracking_update(): write carrier/tracking fields of a parcel onto
      the matching order (webhook `parcel_status_changed`)
    - refresh_missing_tracking(): scheduled pull for orders still lacking a
      tracking number

WHY:
    Tracking events only ever update existing orders. They never create
    orders or lines and never touch stock.

REFERENCES:
    - https://api.sendcloud.dev/docs/sendcloud-public-api/parcel-statuses
    - ordersync/routers/sendcloud_webhooks.py
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from ordersync.models import Order, OrderStatusEnum
from ordersync.services.sendcloud_client import SendCloudAPIError, SendCloudClient

logger = logging.getLogger(__name__)

# Status progression; tracking never moves an order backwards
_PROGRESSION = {
    OrderStatusEnum.in_preparation: 1,
    OrderStatusEnum.in_transit: 2,
    OrderStatusEnum.delivered: 3,
}


@dataclass
class TrackingUpdateResult:
    found: bool
    order_id: Optional[UUID] = None
    order_number: Optional[str] = None
    status: Optional[str] = None
    updated_fields: List[str] = field(default_factory=list)


@dataclass
class TrackingRefreshStats:
    total: int = 0
    updated: int = 0
    no_parcel: int = 0
    errors: int = 0
    error_messages: List[str] = field(default_factory=list)


def map_parcel_status(status_id: Optional[int]) -> Optional[OrderStatusEnum]:
    """1000-1999 in preparation, 2000-2999 in transit, 3000+ delivered."""
    if status_id is None:
        return None
    try:
        status_id = int(status_id)
    except (TypeError, ValueError):
        return None
    if 1000 <= status_id < 2000:
        return OrderStatusEnum.in_preparation
    if 2000 <= status_id < 3000:
        return OrderStatusEnum.in_transit
    if status_id >= 3000:
        return OrderStatusEnum.delivered
    return None


def _name_of(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        return value.get("name") or value.get("code")
    return value or None


def _parcel_fields(parcel: Dict[str, Any]) -> Dict[str, Any]:
    label = parcel.get("label") or {}
    return {
        "carrier_name": _name_of(parcel.get("carrier")),
        "service_name": _name_of(parcel.get("shipment") or parcel.get("shipping_method")),
        "tracking_number": parcel.get("tracking_number") or None,
        "tracking_url": parcel.get("tracking_url") or None,
        "label_url": (label.get("label_printer") if isinstance(label, dict) else None) or parcel.get("label_url"),
        "shipment_id": str(parcel["id"]) if parcel.get("id") is not None else None,
    }


def find_order_for_parcel(db: Session, parcel: Dict[str, Any]) -> Optional[Order]:
    external_id = parcel.get("external_order_id") or parcel.get("order_id")
    if external_id:
        order = db.query(Order).filter(Order.external_id == str(external_id)).first()
        if order is not None:
            return order
    order_number = parcel.get("order_number")
    if order_number:
        return (
            db.query(Order)
            .filter(Order.order_number == str(order_number))
            .order_by(Order.created_at)
            .first()
        )
    return None


def apply_tracking_update(db: Session, parcel: Dict[str, Any], order: Optional[Order] = None) -> TrackingUpdateResult:
    """Apply one parcel's carrier/tracking data to its order.

    Empty parcel fields never blank out values already on the order.
    Archived orders keep their status.
    """
    if order is None:
        order = find_order_for_parcel(db, parcel)
    if order is None:
        logger.info("[TRACKING] No order for parcel %s (order_number=%s)", parcel.get("id"), parcel.get("order_number"))
        return TrackingUpdateResult(found=False, order_number=parcel.get("order_number"))

    updated: List[str] = []
    for column, value in _parcel_fields(parcel).items():
        if value and getattr(order, column) != value:
            setattr(order, column, value)
            updated.append(column)

    status = parcel.get("status") or {}
    new_status = map_parcel_status(status.get("id") if isinstance(status, dict) else None)
    if (
        new_status is not None
        and order.status != OrderStatusEnum.archived
        and _PROGRESSION[new_status] > _PROGRESSION.get(order.status, 0)
    ):
        order.status = new_status
        updated.append("status")

    db.commit()
    if updated:
        logger.info("[TRACKING] %s updated: %s", order.order_number, ", ".join(updated))
    return TrackingUpdateResult(
        found=True,
        order_id=order.id,
        order_number=order.order_number,
        status=order.status.value,
        updated_fields=updated,
    )


async def refresh_missing_tracking(db: Session, client: SendCloudClient, limit: int = 200) -> TrackingRefreshStats:
    """Fetch parcels for orders that have an external id but no tracking number."""
    orders = (
        db.query(Order)
        .filter(
            Order.external_id.isnot(None),
            Order.tracking_number.is_(None),
            Order.status != OrderStatusEnum.archived,
        )
        .order_by(Order.created_at)
        .limit(limit)
        .all()
    )
    stats = TrackingRefreshStats(total=len(orders))
    logger.info("[TRACKING] Refreshing tracking for %s orders", stats.total)

    for order in orders:
        try:
            parcel = await client.get_parcel_for_order(order.external_id)
        except SendCloudAPIError as e:
            stats.errors += 1
            stats.error_messages.append(f"{order.order_number}: {e}")
            logger.warning("[TRACKING] Parcel lookup failed for %s: %s", order.order_number, e)
            continue

        if parcel is None:
            stats.no_parcel += 1
            continue

        result = apply_tracking_update(db, parcel, order=order)
        if result.updated_fields:
            stats.updated += 1

    logger.info(
        "[TRACKING] Refresh complete: %s updated, %s without parcel, %s errors",
        stats.updated, stats.no_parcel, stats.errors,
    )
    return stats
