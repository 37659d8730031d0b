"""SendCloud REST API client and order pull.

WHAT:
    - SendCloudClient: basic-auth httpx client with retries, page-based
      pagination over v3 orders, v2 parcels fallback, parcel lookup by
      external order id
    - sync_sendcloud_orders(): pull orders for a time window, run them
      through the pipeline, and record a SyncRun row

WHY:
    Webhooks get lost; the scheduled pull is the safety net that makes sure
    every SendCloud order eventually lands in the warehouse.

REFERENCES:
    - https://api.sendcloud.dev/docs/sendcloud-public-api/orders
    - https://api.sendcloud.dev/docs/sendcloud-public-api/parcels
    - ordersync/services/order_sync_service.py (process_batch)
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import httpx
from sqlalchemy.orm import Session

from ordersync.errors import ExternalCallError
from ordersync.models import SyncRun, SyncRunStatusEnum
from ordersync.services.order_sync_service import BatchSummary, process_batch
from ordersync.services.tenant_context import PipelineContext

logger = logging.getLogger(__name__)

PAGE_SIZE = 100
MAX_PAGES = 50
INCREMENTAL_WINDOW = timedelta(minutes=5)
FULL_WINDOW = timedelta(days=90)


class SendCloudAPIError(ExternalCallError):
    """SendCloud API failure (transport, retries exhausted, non-2xx)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message, service="sendcloud", status_code=status_code)


class SendCloudClient:
    """REST client for the SendCloud panel API.

    Usage:
        client = SendCloudClient(public_key="...", secret_key="...")
        orders = await client.get_all_orders(since=datetime.utcnow() - timedelta(days=1))
    """

    def __init__(
        self,
        public_key: str,
        secret_key: str,
        base_url: str = "https://panel.sendcloud.sc/api",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not public_key or not secret_key:
            raise SendCloudAPIError("SENDCLOUD_API_PUBLIC_KEY or SENDCLOUD_API_SECRET_KEY missing")
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._auth = httpx.BasicAuth(public_key, secret_key)
        self._transport = transport

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None, retries: int = 3) -> Dict[str, Any]:
        """GET with retry on 429/5xx/transport errors.

        Raises:
            SendCloudAPIError: Non-retryable status or retries exhausted
        """
        url = f"{self.base_url}{path}"
        last_error: Optional[str] = None

        for attempt in range(retries):
            try:
                async with httpx.AsyncClient(timeout=self.timeout, auth=self._auth, transport=self._transport) as client:
                    response = await client.get(url, params=params, headers={"Accept": "application/json"})

                if response.status_code == 429:
                    retry_after = float(response.headers.get("Retry-After", 2))
                    logger.warning("[SENDCLOUD_CLIENT] Rate limited, waiting %ss (attempt %s/%s)", retry_after, attempt + 1, retries)
                    last_error = "HTTP 429"
                    await asyncio.sleep(retry_after)
                    continue

                if response.status_code >= 500:
                    last_error = f"HTTP {response.status_code}"
                    logger.warning("[SENDCLOUD_CLIENT] %s on %s (attempt %s/%s)", last_error, path, attempt + 1, retries)
                    if attempt < retries - 1:
                        await asyncio.sleep(1 * (attempt + 1))
                    continue

                if response.status_code >= 400:
                    raise SendCloudAPIError(
                        f"SendCloud {path} returned HTTP {response.status_code}: {response.text[:200]}",
                        status_code=response.status_code,
                    )

                return response.json()

            except httpx.RequestError as e:
                last_error = str(e)
                logger.warning("[SENDCLOUD_CLIENT] Request error: %s (attempt %s/%s)", e, attempt + 1, retries)
                if attempt < retries - 1:
                    await asyncio.sleep(1 * (attempt + 1))

        raise SendCloudAPIError(f"SendCloud {path} failed after {retries} attempts: {last_error}")

    # =========================================================================
    # ORDERS (v3)
    # =========================================================================

    async def get_all_orders(self, since: datetime) -> List[Dict[str, Any]]:
        """All v3 orders updated since `since`, page by page."""
        orders: List[Dict[str, Any]] = []
        for page in range(1, MAX_PAGES + 1):
            data = await self._get(
                "/v3/orders",
                params={"updated_at__gte": since.isoformat(), "page": page, "limit": PAGE_SIZE},
            )
            batch = data.get("data") or data.get("orders") or []
            orders.extend(batch)
            if len(batch) < PAGE_SIZE:
                break

        logger.info("[SENDCLOUD_CLIENT] Fetched %s v3 orders since %s", len(orders), since.isoformat())
        return orders

    # =========================================================================
    # PARCELS (v2)
    # =========================================================================

    async def get_all_parcels(self, since: datetime, date_param: str = "updated_after") -> List[Dict[str, Any]]:
        parcels: List[Dict[str, Any]] = []
        for page in range(1, MAX_PAGES + 1):
            data = await self._get(
                "/v2/parcels",
                params={date_param: since.isoformat(), "page": page, "per_page": PAGE_SIZE},
            )
            batch = data.get("parcels") or []
            parcels.extend(batch)
            if len(batch) < PAGE_SIZE:
                break

        logger.info("[SENDCLOUD_CLIENT] Fetched %s v2 parcels since %s", len(parcels), since.isoformat())
        return parcels

    # =========================================================================
    # PRODUCTS (v3)
    # =========================================================================

    async def get_product_by_sku(self, sku: str) -> Optional[Dict[str, Any]]:
        """Catalogue entry for `sku`, or None when SendCloud does not know it.

        Returns the raw product (description, weight, ean, hs_code,
        origin_country).
        """
        try:
            data = await self._get("/v3/products", params={"sku": sku})
        except SendCloudAPIError as e:
            if e.status_code == 404:
                return None
            raise
        products = data.get("products") or data.get("data") or []
        return products[0] if products else None

    async def get_parcel_for_order(self, external_order_id: str) -> Optional[Dict[str, Any]]:
        """First parcel created for an external order id, or None."""
        data = await self._get("/v2/parcels", params={"external_order_id": external_order_id})
        parcels = data.get("parcels") or []
        return parcels[0] if parcels else None


def parcel_to_order_payload(parcel: Dict[str, Any]) -> Dict[str, Any]:
    """Reshape a v2 parcel into the flat order payload the pipeline decodes."""
    label = parcel.get("label") or {}
    return {
        "id": parcel.get("id"),
        "order_number": parcel.get("order_number") or f"PARCEL-{parcel.get('id')}",
        "name": parcel.get("name") or parcel.get("company_name"),
        "company_name": parcel.get("company_name"),
        "email": parcel.get("email"),
        "telephone": parcel.get("telephone"),
        "address": parcel.get("address"),
        "address_2": parcel.get("address_2"),
        "city": parcel.get("city"),
        "postal_code": parcel.get("postal_code"),
        "country": parcel.get("country"),
        "carrier": parcel.get("carrier"),
        "shipping_method": parcel.get("shipment"),
        "tracking_number": parcel.get("tracking_number"),
        "tracking_url": parcel.get("tracking_url"),
        "label_url": label.get("label_printer") if isinstance(label, dict) else None,
        "parcel_items": parcel.get("parcel_items") or [],
    }


# =============================================================================
# SCHEDULED PULL
# =============================================================================

@dataclass
class SendCloudSyncResponse:
    """Response from a SendCloud order pull."""
    success: bool
    sync_run_id: Optional[Any] = None
    mode: str = "incremental"
    strategy: Optional[str] = None
    found: int = 0
    summary: Optional[BatchSummary] = None
    errors: List[str] = field(default_factory=list)
    message: str = ""


def sync_window_start(mode: str, since: Optional[datetime] = None, now: Optional[datetime] = None) -> datetime:
    """Start of the pull window: 90 days (full), explicit `since`, or 5 minutes."""
    now = now or datetime.utcnow()
    if mode == "full":
        return now - FULL_WINDOW
    if since is not None:
        return since
    return now - INCREMENTAL_WINDOW


def _unique_by_id(items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    seen: Dict[str, Dict[str, Any]] = {}
    for item in items:
        seen[str(item.get("id"))] = item
    return list(seen.values())


async def sync_sendcloud_orders(
    db: Session,
    client: SendCloudClient,
    ctx: PipelineContext,
    mode: str = "incremental",
    since: Optional[datetime] = None,
) -> SendCloudSyncResponse:
    """Pull SendCloud orders for the window and ingest them.

    WHAT:
        v3 orders first; v2 parcels when v3 yields nothing. Items are
        de-duplicated by id before the batch runs. A SyncRun row records
        counts, duration and errors.
    """
    start_time = time.time()
    date_min = sync_window_start(mode, since)
    run_mode = "custom" if (mode != "full" and since is not None) else mode
    sync_run = SyncRun(mode=run_mode, status=SyncRunStatusEnum.running)
    db.add(sync_run)
    db.commit()

    response = SendCloudSyncResponse(success=False, sync_run_id=sync_run.id, mode=run_mode)
    logger.info("[SENDCLOUD_SYNC] Mode %s, window from %s", run_mode, date_min.isoformat())

    items: List[Dict[str, Any]] = []
    try:
        items = _unique_by_id(await client.get_all_orders(date_min))
        response.strategy = "orders_v3"
    except SendCloudAPIError as e:
        response.errors.append(f"v3 orders: {e}")
        logger.warning("[SENDCLOUD_SYNC] v3 orders failed: %s", e)

    if not items:
        try:
            date_param = "created_after" if mode == "full" else "updated_after"
            parcels = _unique_by_id(await client.get_all_parcels(date_min, date_param=date_param))
            items = [parcel_to_order_payload(p) for p in parcels]
            if items:
                response.strategy = "parcels_v2"
        except SendCloudAPIError as e:
            response.errors.append(f"v2 parcels: {e}")
            logger.warning("[SENDCLOUD_SYNC] v2 parcels failed: %s", e)

    response.found = len(items)
    sync_run.orders_found = len(items)
    db.commit()

    if items:
        summary = process_batch(db, items, ctx)
        response.summary = summary
        sync_run.orders_created = summary.processed
        sync_run.orders_existing = summary.existing
        sync_run.orders_errors = summary.errors
        response.errors.extend(
            f"{r.order_number}: {r.error}" for r in summary.results if not r.success and r.error
        )

    fetch_failed = not items and len(response.errors) > 0
    if fetch_failed:
        sync_run.status = SyncRunStatusEnum.error
    elif sync_run.orders_errors:
        sync_run.status = SyncRunStatusEnum.partial
    else:
        sync_run.status = SyncRunStatusEnum.success

    response.success = sync_run.status == SyncRunStatusEnum.success
    response.message = (
        f"{response.found} found, {sync_run.orders_created} created, "
        f"{sync_run.orders_existing} existing, {sync_run.orders_errors} errors"
    )
    sync_run.finished_at = datetime.utcnow()
    sync_run.duration_ms = int((time.time() - start_time) * 1000)
    sync_run.error_message = "; ".join(response.errors)[:2000] or None
    sync_run.details = {"date_min": date_min.isoformat(), "strategy": response.strategy}
    db.commit()

    logger.info("[SENDCLOUD_SYNC] %s (%s)", response.message, sync_run.status.value)
    return response
