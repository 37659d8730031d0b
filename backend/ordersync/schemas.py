"""Shared API response schemas.

Endpoint-specific request/response models live next to their router;
this module holds the ones shared across routers.
"""

from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from ordersync.services.order_sync_service import OrderResult


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(description="Service status", examples=["ok"])


class OrderResultResponse(BaseModel):
    """Outcome of one order in an import, webhook or re-attribution."""

    model_config = ConfigDict(from_attributes=True)

    order_number: Optional[str] = Field(default=None, description="Order number as received")
    success: bool = Field(description="False when the order failed and was rolled back")
    already_exists: bool = Field(default=False, description="Order was already imported; nothing changed")
    created: bool = Field(default=False, description="A new order was persisted")
    order_id: Optional[UUID] = Field(default=None, description="Stored order id")
    status: Optional[str] = Field(default=None, description="Aggregate order status")
    error: Optional[str] = Field(default=None, description="Error message for failed orders")
    warnings: List[str] = Field(default_factory=list, description="Non-fatal issues (attribution, country)")
    lines: Optional[Dict[str, Any]] = Field(default=None, description="Line processing counts")


class JobEnqueuedResponse(BaseModel):
    """Background job acknowledgement."""

    job_id: Optional[str] = Field(default=None, description="arq job id, None when a duplicate was skipped")
    status: str = Field(description="enqueued | skipped_or_duplicate")


def order_result_to_response(result: OrderResult) -> OrderResultResponse:
    """Convert the internal OrderResult dataclass to its API model."""
    return OrderResultResponse(
        order_number=result.order_number,
        success=result.success,
        already_exists=result.already_exists,
        created=result.created,
        order_id=result.order_id,
        status=result.status,
        error=result.error,
        warnings=list(result.warnings),
        lines=result.lines,
    )
