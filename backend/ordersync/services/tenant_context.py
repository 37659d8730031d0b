"""Request-scoped pipeline context and tenant detection.

WHAT:
    - PipelineContext: everything one import run needs (settings snapshot,
      detected tenant, warnings), created per request or per job
    - detect_client(): resolves the tenant of an inbound order from the
      client-mapping table (integration id first, then e-mail domain)

WHY:
    Tenant selection must never live in module state: two concurrent imports
    for different merchants would otherwise attribute each other's orders.

REFERENCES:
    - ordersync/models.py (ClientMapping)
    - ordersync/services/order_sync_service.py (creates one context per order)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from ordersync.deps import Settings
from ordersync.models import ClientMapping

logger = logging.getLogger(__name__)


@dataclass
class ClientDetection:
    """Outcome of a client-mapping lookup."""
    client_id: Optional[UUID] = None
    sub_client: Optional[str] = None
    sender_config_id: Optional[UUID] = None
    matched_on: Optional[str] = None  # "integration_id" | "email_domain"
    ambiguous: bool = False
    warning: Optional[str] = None


@dataclass
class PipelineContext:
    """Explicit per-request state threaded through the pipeline."""
    default_product_weight_kg: float = 0.5
    auto_create_products: bool = True
    unknown_country_policy: str = "fallback"
    default_currency: str = "EUR"
    client_id: Optional[UUID] = None
    sub_client: Optional[str] = None
    sender_config_id: Optional[UUID] = None
    warnings: List[str] = field(default_factory=list)

    @classmethod
    def from_settings(cls, settings: Settings) -> "PipelineContext":
        return cls(
            default_product_weight_kg=settings.DEFAULT_PRODUCT_WEIGHT_KG,
            auto_create_products=settings.AUTO_CREATE_PRODUCTS,
            unknown_country_policy=settings.UNKNOWN_COUNTRY_POLICY,
            default_currency=settings.DEFAULT_CURRENCY,
        )

    def for_order(self) -> "PipelineContext":
        """Fresh copy for one order: same settings, no tenant, no warnings."""
        return replace(self, client_id=None, sub_client=None, sender_config_id=None, warnings=[])

    def apply_detection(self, detection: ClientDetection) -> None:
        self.client_id = detection.client_id
        self.sub_client = detection.sub_client
        self.sender_config_id = detection.sender_config_id
        if detection.warning:
            self.warnings.append(detection.warning)


def email_domain(email: Optional[str]) -> Optional[str]:
    if not email or "@" not in email:
        return None
    domain = email.rsplit("@", 1)[1].strip().lower()
    return domain or None


def _resolve_tier(mappings: List[ClientMapping], matched_on: str, key: str) -> Optional[ClientDetection]:
    if not mappings:
        return None

    client_ids = {m.client_id for m in mappings}
    if len(client_ids) > 1:
        warning = f"Ambiguous client mapping for {matched_on} {key!r}: {len(client_ids)} clients match"
        logger.warning("[TENANT] %s", warning)
        return ClientDetection(matched_on=matched_on, ambiguous=True, warning=warning)

    # Same client on every row; the oldest row supplies sub_client / sender config
    mapping = sorted(mappings, key=lambda m: (m.created_at is None, m.created_at, str(m.id)))[0]
    return ClientDetection(
        client_id=mapping.client_id,
        sub_client=mapping.sub_client,
        sender_config_id=mapping.sender_config_id,
        matched_on=matched_on,
    )


def detect_client(db: Session, integration_id: Optional[str], email: Optional[str]) -> ClientDetection:
    """Detect the tenant of an order from its integration id or customer e-mail.

    WHAT:
        Integration id is tried first; the e-mail domain only when the
        integration id is absent or unmapped.

    WHY:
        When several distinct clients match at the same tier nobody is
        attributed: a wrong tenant would reserve another merchant's stock.
        The order is still ingested and the warning is surfaced.

    Returns:
        ClientDetection (client_id is None when nothing or too much matched)
    """
    if integration_id:
        mappings = (
            db.query(ClientMapping)
            .filter(ClientMapping.integration_id == str(integration_id), ClientMapping.is_active.is_(True))
            .all()
        )
        detection = _resolve_tier(mappings, "integration_id", str(integration_id))
        if detection is not None:
            return detection

    domain = email_domain(email)
    if domain:
        mappings = (
            db.query(ClientMapping)
            .filter(ClientMapping.email_domain == domain, ClientMapping.is_active.is_(True))
            .all()
        )
        detection = _resolve_tier(mappings, "email_domain", domain)
        if detection is not None:
            return detection

    return ClientDetection()
