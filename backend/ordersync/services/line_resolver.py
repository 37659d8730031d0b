"""Line-item resolution, stock reservation and aggregate order status.

WHAT:
    For every line of a freshly created order:
    1. Resolve the product by SKU, then EAN, else create a minimal product
    2. Read available stock and reserve the full quantity when possible
    3. Persist the OrderLine with name/price/weight snapshots
    Then derive the order status from the per-line outcomes.

WHY:
    - Lines run sequentially so a SKU appearing twice in one order sees the
      stock left by the previous line.
    - Each line runs in a SAVEPOINT: one failing line never takes the order
      header or the other lines down with it.

REFERENCES:
    - ordersync/services/stock_service.py (atomic reservation)
    - ordersync/services/order_sync_service.py (caller)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, List, Optional
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ordersync.errors import ProductResolutionError
from ordersync.models import LineStatusEnum, Order, OrderLine, OrderStatusEnum, Product, ProductEnrichmentStatusEnum
from ordersync.services.payloads import CanonicalLine
from ordersync.services.stock_service import get_available_stock, reserve_stock
from ordersync.services.tenant_context import PipelineContext

logger = logging.getLogger(__name__)


# =============================================================================
# RESULT SCHEMAS
# =============================================================================

@dataclass
class ProductResolution:
    product: Product
    created: bool = False


@dataclass
class LineProcessingSummary:
    """Per-order counts of line outcomes."""
    lines_created: int = 0
    products_existing: int = 0
    products_created: int = 0
    reserved: int = 0
    insufficient: int = 0
    not_found: int = 0
    errors: int = 0
    first_error: Optional[str] = None
    statuses: List[LineStatusEnum] = field(default_factory=list)
    created_product_ids: List[UUID] = field(default_factory=list)

    def record_error(self, message: str) -> None:
        self.errors += 1
        if self.first_error is None:
            self.first_error = message


# =============================================================================
# PRODUCT RESOLUTION
# =============================================================================

def resolve_product(db: Session, line: CanonicalLine, ctx: PipelineContext) -> ProductResolution:
    """Find the product for a line, creating it when the catalogue lacks it.

    Created products start with enrichment_status=pending; the enrichment
    job fills in catalogue data from SendCloud later.

    Raises:
        ProductResolutionError: Blank SKU, SKU unknown and auto-creation
            disabled, or the insert failed and no concurrent row exists
    """
    sku = (line.sku or "").strip()
    if not sku:
        raise ProductResolutionError("Line item has no SKU", sku=line.sku)

    product = db.query(Product).filter(Product.reference == sku).first()
    if product is None and line.ean:
        product = db.query(Product).filter(Product.ean == line.ean).first()
    if product is not None:
        return ProductResolution(product=product, created=False)

    if not ctx.auto_create_products:
        raise ProductResolutionError(f"Unknown SKU {sku} and product auto-creation is disabled", sku=sku)

    product = Product(
        reference=sku,
        ean=line.ean,
        name=line.name or sku,
        unit_weight_kg=line.weight_kg if line.weight_kg is not None else Decimal(str(ctx.default_product_weight_kg)),
        unit_price=line.unit_price,
        stock_available=0,
        client_id=ctx.client_id,
        created_during_ingestion=True,
        enrichment_status=ProductEnrichmentStatusEnum.pending,
    )
    try:
        with db.begin_nested():
            db.add(product)
            db.flush()
    except SQLAlchemyError as e:
        # Savepoint rolled back; a concurrent import may have inserted the SKU
        product = db.query(Product).filter(Product.reference == sku).first()
        if product is not None:
            logger.info("[LINES] Product %s created concurrently, reusing it", sku)
            return ProductResolution(product=product, created=False)
        logger.warning("[LINES] Could not create product %s: %s", sku, e)
        raise ProductResolutionError(f"Could not create product {sku}: {e.__class__.__name__}", sku=sku) from e
    logger.info("[LINES] Created product %s during ingestion (client=%s)", sku, ctx.client_id)
    return ProductResolution(product=product, created=True)


# =============================================================================
# LINE PROCESSING
# =============================================================================

def _line_value(line: CanonicalLine, unit_price: Optional[Decimal]) -> Optional[Decimal]:
    if line.total_price is not None:
        return line.total_price
    if unit_price is None:
        return None
    return unit_price * line.quantity


@dataclass
class _LineOutcome:
    status: LineStatusEnum
    product_created: Optional[bool] = None
    product_id: Optional[UUID] = None
    error: Optional[str] = None


def _process_line(db: Session, order: Order, line: CanonicalLine, ctx: PipelineContext) -> _LineOutcome:
    try:
        resolution = resolve_product(db, line, ctx)
    except ProductResolutionError as e:
        logger.warning("[LINES] %s: %s", order.order_number, e.message)
        db.add(OrderLine(
            order_id=order.id,
            product_reference=line.sku or "",
            product_name=line.name,
            quantity=line.quantity,
            unit_price=line.unit_price,
            line_value=_line_value(line, line.unit_price),
            unit_weight_kg=line.weight_kg,
            status=LineStatusEnum.product_not_found,
            error_message=e.message,
        ))
        db.flush()
        return _LineOutcome(status=LineStatusEnum.product_not_found, error=e.message)

    product = resolution.product
    available = get_available_stock(db, product.id)
    status = LineStatusEnum.stock_insufficient
    if available >= line.quantity:
        reservation = reserve_stock(db, product.id, line.quantity, order.id, origin_reference=order.order_number)
        if reservation.success:
            status = LineStatusEnum.reserved
    if status == LineStatusEnum.stock_insufficient:
        logger.info(
            "[LINES] %s: insufficient stock for %s (%s available, %s requested)",
            order.order_number, product.reference, available, line.quantity,
        )

    unit_price = line.unit_price if line.unit_price is not None else product.unit_price
    db.add(OrderLine(
        order_id=order.id,
        product_id=product.id,
        product_reference=product.reference,
        product_name=line.name or product.name,
        quantity=line.quantity,
        unit_price=unit_price,
        line_value=_line_value(line, unit_price),
        unit_weight_kg=product.unit_weight_kg,
        status=status,
    ))
    db.flush()
    return _LineOutcome(status=status, product_created=resolution.created, product_id=product.id)


def process_lines(db: Session, order: Order, lines: Iterable[CanonicalLine], ctx: PipelineContext) -> LineProcessingSummary:
    """Resolve, reserve and persist every line of `order`, one at a time.

    The order header must already be flushed. A line that fails unexpectedly
    is rolled back to its savepoint and recorded as an `error` line.
    """
    summary = LineProcessingSummary()

    for line in lines:
        savepoint = db.begin_nested()
        try:
            outcome = _process_line(db, order, line, ctx)
            savepoint.commit()
        except Exception as e:
            savepoint.rollback()
            logger.exception("[LINES] %s: line %s failed", order.order_number, line.sku)
            outcome = _LineOutcome(status=LineStatusEnum.error, error=f"{line.sku or '?'}: {e}")
            db.add(OrderLine(
                order_id=order.id,
                product_reference=line.sku or "",
                product_name=line.name,
                quantity=line.quantity,
                unit_price=line.unit_price,
                status=LineStatusEnum.error,
                error_message=str(e),
            ))
            db.flush()

        if outcome.product_created is True:
            summary.products_created += 1
            summary.created_product_ids.append(outcome.product_id)
        elif outcome.product_created is False:
            summary.products_existing += 1

        if outcome.status == LineStatusEnum.reserved:
            summary.reserved += 1
        elif outcome.status == LineStatusEnum.stock_insufficient:
            summary.insufficient += 1
        elif outcome.status == LineStatusEnum.product_not_found:
            summary.not_found += 1
        if outcome.error:
            summary.record_error(outcome.error)

        summary.lines_created += 1
        summary.statuses.append(outcome.status)

    return summary


# =============================================================================
# AGGREGATE STATUS
# =============================================================================

def compute_order_status(line_statuses: Iterable[LineStatusEnum]) -> OrderStatusEnum:
    """Aggregate order status, most restrictive outcome first.

    - any product_not_found                -> products_not_found
    - else any stock_insufficient or error -> awaiting_restock
    - else                                 -> ready_to_pick

    An order without lines has nothing missing and is ready_to_pick.
    """
    statuses = list(line_statuses)
    if LineStatusEnum.product_not_found in statuses:
        return OrderStatusEnum.products_not_found
    if any(s in (LineStatusEnum.stock_insufficient, LineStatusEnum.error, LineStatusEnum.pending) for s in statuses):
        return OrderStatusEnum.awaiting_restock
    return OrderStatusEnum.ready_to_pick
