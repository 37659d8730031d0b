"""SendCloud webhook endpoint.

WHAT:
    POST /webhooks/sendcloud receives two kinds of calls:
    1. parcel_status_changed: carrier/tracking update for an existing order
    2. anything else: an order body, ingested through the order pipeline

WHY:
    - Webhooks are the low-latency path; the scheduled pull catches misses
    - Every call is stored in webhook_logs with its outcome for auditing
      and replay

SECURITY:
    Shared secret in the `X-Webhook-Token` header (or `token` query
    parameter), compared in constant time with SENDCLOUD_WEBHOOK_SECRET.

REFERENCES:
    - https://api.sendcloud.dev/docs/sendcloud-public-api/webhooks
    - ordersync/services/tracking_service.py
    - ordersync/services/order_sync_service.py
"""

import hmac
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ordersync.database import get_db
from ordersync.deps import Settings, get_settings
from ordersync.models import WebhookLog, WebhookLogStatusEnum
from ordersync.schemas import OrderResultResponse, order_result_to_response
from ordersync.services.order_sync_service import process_order
from ordersync.services.tenant_context import PipelineContext
from ordersync.services.tracking_service import apply_tracking_update
from ordersync.workers.arq_enqueue import enqueue_carrier_selections, enqueue_product_enrichments

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])

PARCEL_STATUS_CHANGED = "parcel_status_changed"


class WebhookResponse(BaseModel):
    """Acknowledgement returned to SendCloud."""

    received: bool = True
    webhook_log_id: Optional[str] = Field(default=None, description="webhook_logs row id")
    action: str = Field(description="tracking_update | order")
    order: Optional[OrderResultResponse] = Field(default=None, description="Order pipeline outcome")
    tracking_found: Optional[bool] = Field(default=None, description="Parcel matched an order")
    updated_fields: list[str] = Field(default_factory=list)


# =============================================================================
# TOKEN VERIFICATION
# =============================================================================

def verify_webhook_token(provided: Optional[str], secret: Optional[str]) -> bool:
    """Constant-time comparison of the shared webhook secret.

    Returns False when no secret is configured.
    """
    if not secret:
        logger.error("[SENDCLOUD_WEBHOOK] SENDCLOUD_WEBHOOK_SECRET not configured")
        return False
    if not provided:
        return False
    return hmac.compare_digest(provided.encode(), secret.encode())


# =============================================================================
# ENDPOINT
# =============================================================================

@router.post("/sendcloud", response_model=WebhookResponse)
async def handle_sendcloud_webhook(
    request: Request,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> WebhookResponse:
    """Handle a SendCloud webhook call.

    RESPONSE:
        200 with the outcome, also when the order itself failed (the failure
        is in `order.error` and webhook_logs); 400 for an empty or invalid
        body or a parcel that is not an object (logged as `error`); 401 for
        a bad token.
    """
    token = request.headers.get("X-Webhook-Token") or request.query_params.get("token")
    if not verify_webhook_token(token, settings.SENDCLOUD_WEBHOOK_SECRET):
        logger.warning("[SENDCLOUD_WEBHOOK] Invalid token from %s", request.client.host if request.client else "?")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook token")

    body = await request.body()
    payload = None
    if body:
        try:
            payload = await request.json()
        except ValueError as e:
            logger.error("[SENDCLOUD_WEBHOOK] Failed to parse JSON: %s", e)

    if not isinstance(payload, dict) or not payload:
        db.add(WebhookLog(
            payload=None,
            status=WebhookLogStatusEnum.error,
            error="Empty or invalid JSON payload",
            processed_at=datetime.utcnow(),
        ))
        db.commit()
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Empty or invalid JSON payload")

    log = WebhookLog(payload=payload, status=WebhookLogStatusEnum.received)
    db.add(log)
    db.commit()
    log_id = log.id

    if payload.get("action") == PARCEL_STATUS_CHANGED:
        parcel = payload.get("parcel") or {}
        log = db.get(WebhookLog, log_id)
        if not isinstance(parcel, dict):
            log.status = WebhookLogStatusEnum.error
            log.error = "Invalid parcel payload"
            log.processed_at = datetime.utcnow()
            db.commit()
            logger.error("[SENDCLOUD_WEBHOOK] Parcel is %s, not an object", type(parcel).__name__)
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid parcel payload")

        result = apply_tracking_update(db, parcel)
        log = db.get(WebhookLog, log_id)
        log.status = WebhookLogStatusEnum.processed
        log.order_id = result.order_id
        log.error = None if result.found else "No order for parcel"
        log.processed_at = datetime.utcnow()
        db.commit()

        logger.info("[SENDCLOUD_WEBHOOK] Parcel %s status change handled (found=%s)", parcel.get("id"), result.found)
        return WebhookResponse(
            webhook_log_id=str(log_id),
            action="tracking_update",
            tracking_found=result.found,
            updated_fields=result.updated_fields,
        )

    order_data = payload.get("order") if isinstance(payload.get("order"), dict) else payload
    result = process_order(db, order_data, PipelineContext.from_settings(settings))

    log = db.get(WebhookLog, log_id)
    if not result.success:
        log.status = WebhookLogStatusEnum.error
        log.error = result.error
    elif result.already_exists:
        log.status = WebhookLogStatusEnum.already_exists
    else:
        log.status = WebhookLogStatusEnum.processed
    log.order_id = result.order_id
    log.processed_at = datetime.utcnow()
    db.commit()

    if result.created:
        await enqueue_carrier_selections([result.order_id])
        await enqueue_product_enrichments(result.created_product_ids)

    logger.info(
        "[SENDCLOUD_WEBHOOK] Order %s: %s",
        result.order_number, log.status.value,
    )
    return WebhookResponse(
        webhook_log_id=str(log_id),
        action="order",
        order=order_result_to_response(result),
    )
