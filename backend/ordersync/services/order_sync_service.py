"""Order sync pipeline.

WHAT:
    Runs one inbound order (or a batch) through the whole pipeline:
    decode → detect tenant → dedupe → persist header → lines & stock
    → aggregate status → sender attribution → carrier selection pending

WHY:
    - HTTP import, the SendCloud webhook and the scheduled SendCloud sync all
      share this logic; routers and jobs stay thin.
    - Each order commits on its own: a failing order rolls back alone and
      never aborts the batch.

REFERENCES:
    - ordersync/services/payloads.py (decode)
    - ordersync/services/line_resolver.py (lines, stock, status)
    - ordersync/services/sender_attribution.py (sender)
    - ordersync/workers/arq_worker.py (carrier selection job)
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, time as dt_time
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ordersync.errors import BatchPayloadError, ValidationError
from ordersync.models import CarrierSelectionStatusEnum, Order, OrderStatusEnum
from ordersync.services.dedup import find_existing_order
from ordersync.services.line_resolver import compute_order_status, process_lines
from ordersync.services.payloads import CanonicalOrder, decode_order_payload
from ordersync.services.sender_attribution import attribute_sender
from ordersync.services.tenant_context import PipelineContext, detect_client
from ordersync.telemetry import capture_exception

logger = logging.getLogger(__name__)


# =============================================================================
# RESPONSE SCHEMAS
# =============================================================================

@dataclass
class OrderResult:
    """Outcome of one order, always present in the batch summary."""
    order_number: Optional[str]
    success: bool
    already_exists: bool = False
    created: bool = False
    order_id: Optional[UUID] = None
    status: Optional[str] = None
    error: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    lines: Optional[Dict[str, Any]] = None
    created_product_ids: List[UUID] = field(default_factory=list)


@dataclass
class BatchSummary:
    total: int = 0
    processed: int = 0
    existing: int = 0
    errors: int = 0
    results: List[OrderResult] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return self.errors == 0

    @property
    def created_order_ids(self) -> List[UUID]:
        return [r.order_id for r in self.results if r.created and r.order_id is not None]

    @property
    def created_product_ids(self) -> List[UUID]:
        """Products created lazily by this batch (enrichment pending)."""
        return [product_id for r in self.results for product_id in r.created_product_ids]

    def add(self, result: OrderResult) -> None:
        self.results.append(result)
        if not result.success:
            self.errors += 1
        elif result.already_exists:
            self.existing += 1
        else:
            self.processed += 1


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def _build_order(canonical: CanonicalOrder, ctx: PipelineContext, status: OrderStatusEnum) -> Order:
    """Map the canonical order onto a new Order row (header only)."""
    return Order(
        external_id=canonical.external_id,
        order_number=canonical.order_number,
        source="sendcloud",
        client_id=ctx.client_id,
        sub_client=ctx.sub_client,
        integration_id=canonical.integration_id,
        customer_name=canonical.customer_name,
        customer_email=canonical.customer_email,
        customer_phone=canonical.customer_phone,
        delivery_name=canonical.delivery_name,
        delivery_company=canonical.delivery_company,
        delivery_address_line1=canonical.address_line1,
        delivery_address_line2=canonical.address_line2,
        delivery_postal_code=canonical.postal_code,
        delivery_city=canonical.city,
        delivery_country_code=canonical.country_code,
        total_value=canonical.total_value,
        currency=canonical.currency,
        incoterm=canonical.incoterm,
        shipping_priority=canonical.shipping_priority,
        requested_ship_date=datetime.combine(canonical.requested_ship_date, dt_time.min),
        tags=canonical.tags,
        status=status,
        carrier_name=canonical.carrier_name,
        service_name=canonical.service_name,
        tracking_number=canonical.tracking_number,
        tracking_url=canonical.tracking_url,
        label_url=canonical.label_url,
    )


def _existing_result(canonical: CanonicalOrder, order_id: Optional[UUID], ctx: PipelineContext) -> OrderResult:
    return OrderResult(
        order_number=canonical.order_number,
        success=True,
        already_exists=True,
        order_id=order_id,
        warnings=list(ctx.warnings),
    )


def _archive_cancelled(db: Session, canonical: CanonicalOrder, ctx: PipelineContext) -> OrderResult:
    """Cancelled upstream: archive the existing order, or record it archived."""
    duplicate = find_existing_order(db, canonical.external_id, canonical.order_number, ctx.client_id)
    if duplicate.exists:
        order = db.get(Order, duplicate.order_id)
        order.status = OrderStatusEnum.archived
        db.commit()
        logger.info("[ORDER_SYNC] %s cancelled upstream, archived %s", canonical.order_number, order.id)
        result = _existing_result(canonical, order.id, ctx)
        result.status = OrderStatusEnum.archived.value
        return result

    order = _build_order(canonical, ctx, OrderStatusEnum.archived)
    db.add(order)
    db.commit()
    logger.info("[ORDER_SYNC] %s cancelled upstream, created archived (%s)", canonical.order_number, order.id)
    return OrderResult(
        order_number=canonical.order_number,
        success=True,
        order_id=order.id,
        status=OrderStatusEnum.archived.value,
        warnings=list(ctx.warnings),
    )


# =============================================================================
# PIPELINE
# =============================================================================

def _run_pipeline(db: Session, canonical: CanonicalOrder, ctx: PipelineContext) -> OrderResult:
    detection = detect_client(db, canonical.integration_id, canonical.customer_email)
    ctx.apply_detection(detection)
    ctx.warnings.extend(canonical.warnings)

    if canonical.cancelled:
        return _archive_cancelled(db, canonical, ctx)

    duplicate = find_existing_order(db, canonical.external_id, canonical.order_number, ctx.client_id)
    if duplicate.exists:
        return _existing_result(canonical, duplicate.order_id, ctx)

    order = _build_order(canonical, ctx, OrderStatusEnum.pending)
    db.add(order)
    try:
        db.flush()
    except IntegrityError:
        # Concurrent import inserted the same external id first
        db.rollback()
        duplicate = find_existing_order(db, canonical.external_id, canonical.order_number, ctx.client_id)
        logger.info("[ORDER_SYNC] %s inserted concurrently, treating as existing", canonical.order_number)
        return _existing_result(canonical, duplicate.order_id, ctx)

    summary = process_lines(db, order, canonical.lines, ctx)
    order.status = compute_order_status(summary.statuses)

    attribution = attribute_sender(db, order, ctx.sender_config_id)
    if attribution.warning:
        ctx.warnings.append(attribution.warning)

    order.carrier_selection_status = CarrierSelectionStatusEnum.pending
    db.commit()

    line_counts = asdict(summary)
    line_counts.pop("statuses")
    line_counts.pop("created_product_ids")
    logger.info(
        "[ORDER_SYNC] %s created (%s): %s lines, status=%s, sender=%s",
        order.order_number, order.id, summary.lines_created, order.status.value, attribution.source or "none",
    )
    return OrderResult(
        order_number=order.order_number,
        success=True,
        created=True,
        order_id=order.id,
        status=order.status.value,
        warnings=list(ctx.warnings),
        lines=line_counts,
        created_product_ids=list(summary.created_product_ids),
    )


def process_order(db: Session, payload: Any, ctx: PipelineContext) -> OrderResult:
    """Run one raw order payload through the pipeline.

    WHAT:
        Never raises for per-order problems: validation failures and
        unexpected errors are rolled back and returned as a failed result.

    Args:
        db: Session; committed once per order
        payload: Raw order JSON (dict)
        ctx: Base context; a fresh per-order copy is derived from it

    Returns:
        OrderResult (success, already_exists, order_id, status, warnings, error)
    """
    ctx = ctx.for_order()
    order_number = None
    if isinstance(payload, dict):
        order_number = payload.get("order_number") or payload.get("order_id") or payload.get("id")
        order_number = str(order_number) if order_number is not None else None

    try:
        canonical = decode_order_payload(
            payload,
            default_currency=ctx.default_currency,
            unknown_country_policy=ctx.unknown_country_policy,
        )
    except ValidationError as e:
        logger.warning("[ORDER_SYNC] Invalid payload %s: %s", order_number or "?", e.message)
        return OrderResult(order_number=e.order_number or order_number, success=False, error=e.message)

    try:
        return _run_pipeline(db, canonical, ctx)
    except Exception as e:
        db.rollback()
        logger.exception("[ORDER_SYNC] Failed to process order %s", canonical.order_number)
        capture_exception(e, extra={"order_number": canonical.order_number, "external_id": canonical.external_id})
        return OrderResult(
            order_number=canonical.order_number,
            success=False,
            error=str(e),
            warnings=list(ctx.warnings),
        )


def process_batch(db: Session, payloads: Any, ctx: PipelineContext) -> BatchSummary:
    """Process a batch of raw orders sequentially.

    Raises:
        BatchPayloadError: `payloads` is not a non-empty list (the only
            batch-fatal error; everything else is reported per order)
    """
    if not isinstance(payloads, list) or not payloads:
        raise BatchPayloadError("Invalid request: a non-empty orders array is required")

    start_time = time.time()
    summary = BatchSummary(total=len(payloads))
    logger.info("[ORDER_SYNC] Processing batch of %s orders", summary.total)

    for payload in payloads:
        summary.add(process_order(db, payload, ctx))

    summary.duration_seconds = time.time() - start_time
    logger.info(
        "[ORDER_SYNC] Batch done in %.2fs: %s created, %s existing, %s errors",
        summary.duration_seconds, summary.processed, summary.existing, summary.errors,
    )
    return summary


# =============================================================================
# RE-ATTRIBUTION
# =============================================================================

def reattribute_order(db: Session, order_id: UUID, ctx: PipelineContext) -> OrderResult:
    """Re-run sender attribution and queue carrier selection again.

    WHAT:
        Only sender/carrier-selection fields change. When the order had no
        tenant, detection is retried first (a mapping may have been added).

    Raises:
        LookupError: Order does not exist
    """
    order = db.get(Order, order_id)
    if order is None:
        raise LookupError(f"Order {order_id} not found")

    ctx = ctx.for_order()
    detection = detect_client(db, order.integration_id, order.customer_email)
    if order.client_id is None:
        ctx.apply_detection(detection)
        order.client_id = ctx.client_id
        order.sub_client = order.sub_client or ctx.sub_client
    elif detection.client_id == order.client_id:
        ctx.sender_config_id = detection.sender_config_id

    attribution = attribute_sender(db, order, ctx.sender_config_id)
    if attribution.warning:
        ctx.warnings.append(attribution.warning)

    order.carrier_selection_status = CarrierSelectionStatusEnum.pending
    order.carrier_selection_attempts = 0
    order.carrier_selection_error = None
    db.commit()

    logger.info("[ORDER_SYNC] Re-attributed %s (sender=%s)", order.order_number, attribution.source or "none")
    return OrderResult(
        order_number=order.order_number,
        success=True,
        already_exists=True,
        order_id=order.id,
        status=order.status.value,
        warnings=list(ctx.warnings),
    )
