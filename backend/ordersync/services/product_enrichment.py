"""Catalogue enrichment for products created during ingestion.

WHAT:
    A product created because an order referenced an unknown SKU only has
    the SKU, the line's name and a default weight. This looks the SKU up in
    the SendCloud product catalogue and fills in name, weight, EAN, HS code
    and origin country.

WHY:
    The lookup is an external call: it runs in an arq job with retries,
    never inside order ingestion. Order lines keep the snapshot taken at
    ingestion time; only the product row changes.

REFERENCES:
    - ordersync/workers/arq_worker.py (process_product_enrichment_job)
    - https://api.sendcloud.dev/docs/sendcloud-public-api/products
"""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from ordersync.errors import ExternalCallError
from ordersync.models import Product, ProductEnrichmentStatusEnum
from ordersync.services.sendcloud_client import SendCloudClient

logger = logging.getLogger(__name__)


def parse_weight_kg(weight: Any) -> Optional[Decimal]:
    """SendCloud weight (`{"value": "250", "unit": "g"}`, or a bare number in kg) to kg."""
    unit = "kg"
    if isinstance(weight, dict):
        unit = str(weight.get("unit") or "kg").lower()
        weight = weight.get("value")
    if weight is None or isinstance(weight, bool):
        return None
    try:
        value = Decimal(str(weight))
    except InvalidOperation:
        return None
    if value <= 0:
        return None
    if unit in ("g", "gram", "grams"):
        value = value / 1000
    return value.quantize(Decimal("0.001"))


def apply_catalogue_entry(product: Product, entry: Dict[str, Any]) -> None:
    """Copy SendCloud catalogue fields onto `product`.

    The SendCloud description and weight replace the placeholders set at
    creation; an EAN already known locally is kept.
    """
    name = entry.get("description") or entry.get("name")
    if name:
        product.name = str(name)

    weight = parse_weight_kg(entry.get("weight"))
    if weight is not None:
        product.unit_weight_kg = weight

    if not product.ean and entry.get("ean"):
        product.ean = str(entry["ean"])
    if entry.get("hs_code"):
        product.hs_code = str(entry["hs_code"])

    origin = entry.get("origin_country")
    if isinstance(origin, str) and len(origin.strip()) == 2:
        product.origin_country_code = origin.strip().upper()


async def apply_product_enrichment(db: Session, product_id: UUID, client: SendCloudClient) -> Product:
    """Enrich one pending product and persist the outcome.

    Products that are not `pending` are returned untouched, so a job that
    runs twice does no extra calls.

    Raises:
        LookupError: Product does not exist
        ExternalCallError: SendCloud lookup failed (attempt counter saved first)
    """
    product = db.get(Product, product_id)
    if product is None:
        raise LookupError(f"Product {product_id} not found")
    if product.enrichment_status != ProductEnrichmentStatusEnum.pending:
        logger.info("[ENRICHMENT] %s is %s, nothing to do", product.reference, product.enrichment_status.value)
        return product

    product.enrichment_attempts = (product.enrichment_attempts or 0) + 1
    try:
        entry = await client.get_product_by_sku(product.reference)
    except ExternalCallError as e:
        product.enrichment_error = e.message
        db.commit()
        raise

    if entry is None:
        product.enrichment_status = ProductEnrichmentStatusEnum.not_found
        logger.info("[ENRICHMENT] %s unknown to SendCloud", product.reference)
    else:
        apply_catalogue_entry(product, entry)
        product.enrichment_status = ProductEnrichmentStatusEnum.enriched
        product.enriched_at = datetime.utcnow()
        logger.info(
            "[ENRICHMENT] %s enriched (weight=%s, hs=%s, origin=%s)",
            product.reference, product.unit_weight_kg, product.hs_code, product.origin_country_code,
        )
    product.enrichment_error = None
    db.commit()
    return product
