"""ARQ async worker - background job processor.

WHAT:
    Runs the slow, external parts of order sync outside the request:
    - carrier selection for newly created (or re-attributed) orders
    - SendCloud catalogue enrichment for products created during ingestion
    - SendCloud order pulls (on demand and scheduled)
    - tracking refresh for orders still missing a tracking number

WHY:
    - The import endpoint answers as soon as orders are persisted
    - Carrier-selection outages are retried here with a growing delay and
      never touch the stored order beyond its selection status
    - Worker handles orchestration, services handle logic

USAGE:
    # Start worker
    arq ordersync.workers.arq_worker.WorkerSettings

    # Or use the start script
    python -m ordersync.workers.start_arq_worker

REFERENCES:
    - https://arq-docs.helpmanual.io/
    - ordersync/services/carrier_selection.py
    - ordersync/services/product_enrichment.py
    - ordersync/services/sendcloud_client.py
    - ordersync/services/tracking_service.py
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional
from uuid import UUID

from arq import Retry, cron

from ordersync.database import SessionLocal
from ordersync.deps import get_settings
from ordersync.errors import ExternalCallError
from ordersync.models import CarrierSelectionStatusEnum, Order, Product, ProductEnrichmentStatusEnum
from ordersync.services.carrier_selection import CarrierSelectionClient, apply_carrier_selection
from ordersync.services.product_enrichment import apply_product_enrichment
from ordersync.services.sendcloud_client import SendCloudAPIError, SendCloudClient, sync_sendcloud_orders
from ordersync.services.tenant_context import PipelineContext
from ordersync.services.tracking_service import refresh_missing_tracking
from ordersync.telemetry import capture_exception
from ordersync.workers.arq_enqueue import (
    QUEUE_NAME,
    carrier_selection_job_id,
    enqueue_unique_job,
    get_redis_settings,
    product_enrichment_job_id,
)

logger = logging.getLogger(__name__)

RETRY_BASE_DELAY_SECONDS = 30
SWEEP_MIN_AGE = timedelta(minutes=10)
SWEEP_BATCH_SIZE = 100


def retry_delay(job_try: int) -> int:
    """Delay before the next carrier-selection try: 30s, 60s, 120s ..."""
    return RETRY_BASE_DELAY_SECONDS * 2 ** (max(job_try, 1) - 1)


def _sendcloud_client() -> Optional[SendCloudClient]:
    settings = get_settings()
    if not settings.SENDCLOUD_API_PUBLIC_KEY or not settings.SENDCLOUD_API_SECRET_KEY:
        return None
    return SendCloudClient(
        public_key=settings.SENDCLOUD_API_PUBLIC_KEY,
        secret_key=settings.SENDCLOUD_API_SECRET_KEY,
        base_url=settings.SENDCLOUD_API_BASE_URL,
    )


# =============================================================================
# CARRIER SELECTION
# =============================================================================

async def process_carrier_selection_job(ctx: Dict, order_id: str) -> Dict:
    """Ask the carrier-selection service for one order.

    WHAT:
        Calls the service and stores carrier/service on the order. On an
        external failure the job is retried (arq.Retry) until
        CARRIER_SELECTION_MAX_TRIES; the last failure marks the order's
        carrier selection as `failed`.

    Args:
        ctx: ARQ context (`job_try` is 1 on the first attempt)
        order_id: Order UUID

    Returns:
        Dict with selection outcome
    """
    settings = get_settings()
    job_try = ctx.get("job_try", 1)
    logger.info("[ARQ] Carrier selection for order %s (try %s/%s)", order_id, job_try, settings.CARRIER_SELECTION_MAX_TRIES)

    db = SessionLocal()
    try:
        client = CarrierSelectionClient(
            base_url=settings.CARRIER_SELECTION_URL,
            timeout=settings.EXTERNAL_CALL_TIMEOUT_SECONDS,
            api_key=settings.CARRIER_SELECTION_API_KEY,
        )
        order = await apply_carrier_selection(db, UUID(order_id), client)
        return {
            "success": True,
            "order_id": order_id,
            "status": order.carrier_selection_status.value,
            "carrier": order.carrier_name,
            "service": order.service_name,
        }

    except LookupError as e:
        logger.warning("[ARQ] Carrier selection skipped: %s", e)
        return {"success": False, "order_id": order_id, "error": str(e)}

    except ExternalCallError as e:
        if job_try < settings.CARRIER_SELECTION_MAX_TRIES:
            delay = retry_delay(job_try)
            logger.warning("[ARQ] Carrier selection failed for %s, retrying in %ss: %s", order_id, delay, e.message)
            raise Retry(defer=delay) from e

        order = db.get(Order, UUID(order_id))
        if order is not None:
            order.carrier_selection_status = CarrierSelectionStatusEnum.failed
            order.carrier_selection_error = e.message
            db.commit()
        logger.error("[ARQ] Carrier selection gave up for %s after %s tries: %s", order_id, job_try, e.message)
        capture_exception(e, extra={
            "operation": "process_carrier_selection_job",
            "order_id": order_id,
            "job_try": job_try,
        })
        return {"success": False, "order_id": order_id, "status": CarrierSelectionStatusEnum.failed.value, "error": e.message}

    finally:
        db.close()


async def scheduled_carrier_selection_sweep(ctx: Dict) -> Dict:
    """Re-enqueue orders whose carrier selection is still pending.

    Covers orders whose enqueue was lost (Redis down during import). Job ids
    are per order, so orders already queued or running are skipped by arq.
    """
    cutoff = datetime.utcnow() - SWEEP_MIN_AGE
    redis = ctx["redis"]

    db = SessionLocal()
    try:
        order_ids = [
            row.id for row in (
                db.query(Order.id)
                .filter(
                    Order.carrier_selection_status == CarrierSelectionStatusEnum.pending,
                    Order.updated_at < cutoff,
                )
                .order_by(Order.created_at)
                .limit(SWEEP_BATCH_SIZE)
                .all()
            )
        ]
    finally:
        db.close()

    enqueued = 0
    for order_id in order_ids:
        job = await enqueue_unique_job(
            redis,
            "process_carrier_selection_job",
            str(order_id),
            job_id=carrier_selection_job_id(order_id),
        )
        if job:
            enqueued += 1

    if order_ids:
        logger.info("[ARQ] Carrier selection sweep: %s pending, %s enqueued", len(order_ids), enqueued)
    return {"pending": len(order_ids), "enqueued": enqueued}


# =============================================================================
# PRODUCT ENRICHMENT
# =============================================================================

async def process_product_enrichment_job(ctx: Dict, product_id: str) -> Dict:
    """Look a lazily created product up in the SendCloud catalogue.

    Retries SendCloud failures like carrier selection does, up to
    PRODUCT_ENRICHMENT_MAX_TRIES; the last failure marks the product
    `failed`. Without SendCloud credentials the product stays `pending`.
    """
    settings = get_settings()
    job_try = ctx.get("job_try", 1)

    client = _sendcloud_client()
    if client is None:
        logger.info("[ARQ] SendCloud credentials not configured, enrichment of %s skipped", product_id)
        return {"success": False, "product_id": product_id, "error": "SendCloud credentials not configured"}

    db = SessionLocal()
    try:
        product = await apply_product_enrichment(db, UUID(product_id), client)
        return {
            "success": True,
            "product_id": product_id,
            "status": product.enrichment_status.value,
        }

    except LookupError as e:
        logger.warning("[ARQ] Product enrichment skipped: %s", e)
        return {"success": False, "product_id": product_id, "error": str(e)}

    except ExternalCallError as e:
        if job_try < settings.PRODUCT_ENRICHMENT_MAX_TRIES:
            delay = retry_delay(job_try)
            logger.warning("[ARQ] Enrichment failed for %s, retrying in %ss: %s", product_id, delay, e.message)
            raise Retry(defer=delay) from e

        product = db.get(Product, UUID(product_id))
        if product is not None:
            product.enrichment_status = ProductEnrichmentStatusEnum.failed
            product.enrichment_error = e.message
            db.commit()
        logger.error("[ARQ] Enrichment gave up for %s after %s tries: %s", product_id, job_try, e.message)
        capture_exception(e, extra={
            "operation": "process_product_enrichment_job",
            "product_id": product_id,
            "job_try": job_try,
        })
        return {"success": False, "product_id": product_id, "status": ProductEnrichmentStatusEnum.failed.value, "error": e.message}

    finally:
        db.close()


async def scheduled_product_enrichment_sweep(ctx: Dict) -> Dict:
    """Re-enqueue products still waiting for enrichment."""
    if _sendcloud_client() is None:
        return {"pending": 0, "enqueued": 0}

    cutoff = datetime.utcnow() - SWEEP_MIN_AGE
    redis = ctx["redis"]

    db = SessionLocal()
    try:
        product_ids = [
            row.id for row in (
                db.query(Product.id)
                .filter(
                    Product.enrichment_status == ProductEnrichmentStatusEnum.pending,
                    Product.updated_at < cutoff,
                )
                .order_by(Product.created_at)
                .limit(SWEEP_BATCH_SIZE)
                .all()
            )
        ]
    finally:
        db.close()

    enqueued = 0
    for product_id in product_ids:
        job = await enqueue_unique_job(
            redis,
            "process_product_enrichment_job",
            str(product_id),
            job_id=product_enrichment_job_id(product_id),
        )
        if job:
            enqueued += 1

    if product_ids:
        logger.info("[ARQ] Enrichment sweep: %s pending, %s enqueued", len(product_ids), enqueued)
    return {"pending": len(product_ids), "enqueued": enqueued}


# =============================================================================
# SENDCLOUD
# =============================================================================

async def process_sendcloud_sync_job(ctx: Dict, mode: str = "incremental", since: Optional[str] = None) -> Dict:
    """Pull SendCloud orders and run them through the pipeline.

    Args:
        ctx: ARQ context
        mode: "incremental" or "full"
        since: ISO datetime overriding the incremental window

    Returns:
        Dict with sync results
    """
    logger.info("[ARQ] Starting SendCloud sync (mode=%s, since=%s)", mode, since)

    client = _sendcloud_client()
    if client is None:
        logger.warning("[ARQ] SendCloud credentials not configured, sync skipped")
        return {"success": False, "error": "SendCloud credentials not configured"}

    db = SessionLocal()
    try:
        response = await sync_sendcloud_orders(
            db=db,
            client=client,
            ctx=PipelineContext.from_settings(get_settings()),
            mode=mode,
            since=datetime.fromisoformat(since) if since else None,
        )

        created_ids = response.summary.created_order_ids if response.summary else []
        product_ids = response.summary.created_product_ids if response.summary else []
        for order_id in created_ids:
            await enqueue_unique_job(
                ctx["redis"],
                "process_carrier_selection_job",
                str(order_id),
                job_id=carrier_selection_job_id(order_id),
            )
        for product_id in product_ids:
            await enqueue_unique_job(
                ctx["redis"],
                "process_product_enrichment_job",
                str(product_id),
                job_id=product_enrichment_job_id(product_id),
            )

        return {
            "success": response.success,
            "sync_run_id": str(response.sync_run_id) if response.sync_run_id else None,
            "found": response.found,
            "created": len(created_ids),
            "message": response.message,
            "errors": response.errors,
        }

    except Exception as e:
        logger.exception("[ARQ] SendCloud sync failed: %s", e)
        capture_exception(e, extra={"operation": "process_sendcloud_sync_job", "mode": mode})
        return {"success": False, "error": str(e)}
    finally:
        db.close()


async def scheduled_sendcloud_sync(ctx: Dict) -> Dict:
    """Cron: incremental pull, the safety net for lost webhooks."""
    return await process_sendcloud_sync_job(ctx, "incremental", None)


async def scheduled_tracking_refresh(ctx: Dict) -> Dict:
    """Cron: fetch parcels for orders that still lack a tracking number."""
    client = _sendcloud_client()
    if client is None:
        logger.info("[ARQ] SendCloud credentials not configured, tracking refresh skipped")
        return {"success": False, "error": "SendCloud credentials not configured"}

    db = SessionLocal()
    try:
        stats = await refresh_missing_tracking(db, client)
        return {
            "success": stats.errors == 0,
            "total": stats.total,
            "updated": stats.updated,
            "no_parcel": stats.no_parcel,
            "errors": stats.errors,
        }
    except SendCloudAPIError as e:
        logger.error("[ARQ] Tracking refresh failed: %s", e)
        capture_exception(e, extra={"operation": "scheduled_tracking_refresh"})
        return {"success": False, "error": str(e)}
    finally:
        db.close()


# =============================================================================
# WORKER LIFECYCLE
# =============================================================================

async def startup(ctx: Dict) -> None:
    """Worker startup - initialize resources and log config."""
    import platform

    from ordersync.telemetry import init_sentry

    init_sentry()

    logger.info("=" * 60)
    logger.info("[ARQ] Worker starting up")
    logger.info("=" * 60)
    logger.info("[ARQ] Python: %s", platform.python_version())
    logger.info("[ARQ] Host: %s", platform.node())
    logger.info("[ARQ] Queue: %s", QUEUE_NAME)
    logger.info("[ARQ] Carrier selection max tries: %s", get_settings().CARRIER_SELECTION_MAX_TRIES)
    logger.info("=" * 60)

    ctx["startup_time"] = datetime.now(timezone.utc)
    ctx["jobs_processed"] = 0


async def shutdown(ctx: Dict) -> None:
    """Worker shutdown - log stats."""
    jobs = ctx.get("jobs_processed", 0)
    uptime = datetime.now(timezone.utc) - ctx.get("startup_time", datetime.now(timezone.utc))

    logger.info("=" * 60)
    logger.info("[ARQ] Worker shutting down")
    logger.info("[ARQ] Jobs processed: %s", jobs)
    logger.info("[ARQ] Uptime: %s", uptime)
    logger.info("=" * 60)


async def on_job_end(ctx: Dict) -> None:
    """Called after each job completes."""
    ctx["jobs_processed"] = ctx.get("jobs_processed", 0) + 1


# =============================================================================
# WORKER SETTINGS
# =============================================================================

class WorkerSettings:
    """ARQ worker configuration.

    - max_tries covers the carrier-selection and enrichment retries; each
      job compares job_try with its own limit. Other jobs return their
      errors instead of raising, so they never retry
    - cron: SendCloud pull every 5 minutes, tracking refresh every 15,
      carrier-selection and enrichment sweeps every 10
    """

    functions = [
        process_carrier_selection_job,
        process_product_enrichment_job,
        process_sendcloud_sync_job,
    ]

    cron_jobs = [
        cron(scheduled_sendcloud_sync, minute=set(range(0, 60, 5)), run_at_startup=False),
        cron(scheduled_tracking_refresh, minute=set(range(2, 60, 15))),
        cron(scheduled_carrier_selection_sweep, minute=set(range(7, 60, 10))),
        cron(scheduled_product_enrichment_sweep, minute=set(range(8, 60, 10))),
    ]

    # Lifecycle hooks
    on_startup = startup
    on_shutdown = shutdown
    after_job_end = on_job_end

    redis_settings = get_redis_settings()

    max_jobs = 10
    job_timeout = 600
    keep_result = 3600
    retry_jobs = True
    max_tries = max(get_settings().CARRIER_SELECTION_MAX_TRIES, get_settings().PRODUCT_ENRICHMENT_MAX_TRIES, 1)
    health_check_interval = 30

    queue_name = QUEUE_NAME
