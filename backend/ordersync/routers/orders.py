"""Order import and re-attribution endpoints.

WHAT:
    Thin HTTP wrappers around the order sync pipeline:
    - POST /orders/import: batch import, per-order summary
    - POST /orders/{order_id}/attribution: re-run sender attribution

WHY:
    - Routers handle auth + request parsing only
    - Pipeline logic is shared with the SendCloud webhook and scheduled pulls
    - Carrier selection runs in the arq worker; this router only enqueues it

REFERENCES:
    - ordersync/services/order_sync_service.py
    - ordersync/workers/arq_enqueue.py
"""

from __future__ import annotations

import logging
from typing import Any, List
from uuid import UUID

from fastapi import APIRouter, Body, Depends, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ordersync.database import get_db
from ordersync.deps import Settings, get_settings, require_api_key
from ordersync.errors import BatchPayloadError
from ordersync.schemas import OrderResultResponse, order_result_to_response
from ordersync.services.order_sync_service import BatchSummary, process_batch, reattribute_order
from ordersync.services.tenant_context import PipelineContext
from ordersync.workers.arq_enqueue import enqueue_carrier_selections, enqueue_product_enrichments

logger = logging.getLogger(__name__)


# =============================================================================
# Pydantic Response Models
# =============================================================================

class BatchImportResponse(BaseModel):
    """Summary of a batch import; one result per submitted order."""

    success: bool = Field(description="True when no order failed")
    total: int = Field(description="Orders submitted")
    processed: int = Field(description="Orders created")
    existing: int = Field(description="Orders already imported (skipped)")
    errors: int = Field(description="Orders that failed and were rolled back")
    duration_seconds: float = Field(default=0.0, description="Processing time")
    carrier_selection_enqueued: int = Field(default=0, description="Carrier selection jobs queued")
    product_enrichment_enqueued: int = Field(default=0, description="Catalogue lookups queued for new products")
    results: List[OrderResultResponse] = Field(default_factory=list)


def _to_api_response(summary: BatchSummary, enqueued: int, enrichments: int = 0) -> BatchImportResponse:
    """Convert the internal BatchSummary dataclass to the API model."""
    return BatchImportResponse(
        success=summary.success,
        total=summary.total,
        processed=summary.processed,
        existing=summary.existing,
        errors=summary.errors,
        duration_seconds=round(summary.duration_seconds, 3),
        carrier_selection_enqueued=enqueued,
        product_enrichment_enqueued=enrichments,
        results=[order_result_to_response(r) for r in summary.results],
    )


# =============================================================================
# Router setup
# =============================================================================

router = APIRouter(
    prefix="/orders",
    tags=["Orders"],
    dependencies=[Depends(require_api_key)],
)


# =============================================================================
# Endpoints
# =============================================================================

@router.post("/import", response_model=BatchImportResponse)
async def import_orders(
    body: Any = Body(default=None),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> BatchImportResponse:
    """Import a batch of orders: `{"orders": [...]}`.

    Each order is processed and committed on its own; a failing order is
    reported in `results` and never aborts the batch. A missing or empty
    `orders` array is rejected with 400.
    """
    orders = body.get("orders") if isinstance(body, dict) else None
    logger.info("[ORDERS_API] Import requested (%s orders)", len(orders) if isinstance(orders, list) else 0)

    try:
        summary = process_batch(db, orders, PipelineContext.from_settings(settings))
    except BatchPayloadError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)

    enqueued = await enqueue_carrier_selections(summary.created_order_ids)
    enrichments = await enqueue_product_enrichments(summary.created_product_ids)
    return _to_api_response(summary, enqueued, enrichments)


@router.post("/{order_id}/attribution", response_model=OrderResultResponse)
async def rerun_attribution(
    order_id: UUID,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> OrderResultResponse:
    """Re-run sender attribution for one order and queue carrier selection.

    Use after fixing client mappings or sender rules for an order that was
    imported without a sender.
    """
    try:
        result = reattribute_order(db, order_id, PipelineContext.from_settings(settings))
    except LookupError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Order {order_id} not found")

    await enqueue_carrier_selections([order_id])
    return order_result_to_response(result)
