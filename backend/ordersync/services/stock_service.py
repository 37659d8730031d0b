"""Stock ledger: availability reads and atomic reservations.

WHAT:
    reserve_stock() decrements `products.stock_available` with a single
    conditional UPDATE and records a StockReservation row.

WHY:
    Read-then-write in application code lets two concurrent imports both see
    "5 available" and reserve 4 each. The conditional update makes the check
    and the decrement one statement: either the full quantity is reserved or
    nothing changes.

REFERENCES:
    - ordersync/services/line_resolver.py (caller)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.orm import Session

from ordersync.models import Product, StockReservation

logger = logging.getLogger(__name__)


@dataclass
class ReservationResult:
    success: bool
    reservation_id: Optional[UUID] = None
    available_after: Optional[int] = None


def get_available_stock(db: Session, product_id: UUID) -> int:
    """Current available quantity for a product (0 if unknown)."""
    available = db.query(Product.stock_available).filter(Product.id == product_id).scalar()
    return int(available or 0)


def reserve_stock(
    db: Session,
    product_id: UUID,
    quantity: int,
    order_id: UUID,
    origin_reference: Optional[str] = None,
) -> ReservationResult:
    """Reserve `quantity` units of a product for an order, all or nothing.

    Args:
        db: Session (the caller owns the transaction)
        product_id: Product to reserve
        quantity: Units requested, must be positive
        order_id: Order the reservation belongs to
        origin_reference: Human reference stored on the ledger row (order number)

    Returns:
        ReservationResult(success=False) when less than `quantity` is available
    """
    if quantity <= 0:
        raise ValueError(f"Reservation quantity must be positive, got {quantity}")

    stmt = (
        update(Product)
        .where(Product.id == product_id, Product.stock_available >= quantity)
        .values(stock_available=Product.stock_available - quantity)
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt)

    if result.rowcount != 1:
        logger.info("[STOCK] Insufficient stock for product %s (requested %s)", product_id, quantity)
        return ReservationResult(success=False, available_after=get_available_stock(db, product_id))

    # Keep any loaded Product instance in line with the row we just changed
    product = db.get(Product, product_id)
    if product is not None:
        db.refresh(product, ["stock_available"])

    reservation = StockReservation(
        product_id=product_id,
        order_id=order_id,
        quantity=quantity,
        origin_reference=origin_reference,
    )
    db.add(reservation)
    db.flush()

    available_after = product.stock_available if product is not None else get_available_stock(db, product_id)
    logger.info(
        "[STOCK] Reserved %s x product %s for order %s (%s left)",
        quantity, product_id, origin_reference or order_id, available_after,
    )
    return ReservationResult(success=True, reservation_id=reservation.id, available_after=available_after)
