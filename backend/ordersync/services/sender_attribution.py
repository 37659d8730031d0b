"""Sender attribution: pick the ship-from identity of an order.

WHAT:
    1. Active sender rules of the tenant, highest priority first
       (ties: oldest rule first, then id)
    2. First rule whose condition matches the order wins
    3. No match: sender config of the client mapping, then the tenant default
    4. Nothing at all: AttributionWarning recorded on the order

WHY:
    Merchants ship several brands from our warehouse; each brand's parcels
    must carry that brand's return address. Rules are data, edited in the
    back-office, so evaluation has to be deterministic for equal priorities.

REFERENCES:
    - ordersync/models.py (SenderRule, SenderConfiguration)
    - ordersync/services/order_sync_service.py (caller)
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field
from typing import Iterable, List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from ordersync.errors import AttributionWarning
from ordersync.models import Order, SenderConditionTypeEnum, SenderConfiguration, SenderRule

logger = logging.getLogger(__name__)


@dataclass
class OrderFacts:
    """The order attributes sender rules can look at."""
    customer_name: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    sub_client: Optional[str] = None

    @classmethod
    def from_order(cls, order: Order) -> "OrderFacts":
        return cls(customer_name=order.customer_name, tags=list(order.tags or []), sub_client=order.sub_client)


@dataclass
class SenderAttribution:
    config: Optional[SenderConfiguration] = None
    rule: Optional[SenderRule] = None
    source: Optional[str] = None  # "rule" | "mapping" | "default"
    warning: Optional[str] = None


def _norm(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def rule_matches(rule: SenderRule, facts: OrderFacts) -> bool:
    """Evaluate one rule condition against the order facts (case-insensitive)."""
    expected = _norm(rule.condition_value)
    condition = rule.condition_type

    if condition == SenderConditionTypeEnum.customer_name_exact:
        return bool(facts.customer_name) and _norm(facts.customer_name) == expected
    if condition == SenderConditionTypeEnum.customer_name_contains:
        return bool(expected) and expected in _norm(facts.customer_name)
    if condition == SenderConditionTypeEnum.order_tags:
        wanted = {_norm(tag) for tag in (rule.condition_value or "").split(",") if tag.strip()}
        present = {_norm(tag) for tag in facts.tags}
        return bool(wanted & present)
    if condition == SenderConditionTypeEnum.sub_client_exact:
        return bool(facts.sub_client) and _norm(facts.sub_client) == expected

    logger.warning("[SENDER_RULES] Unknown condition type %r on rule %s", condition, rule.id)
    return False


def load_active_rules(db: Session, client_id: UUID) -> List[SenderRule]:
    return (
        db.query(SenderRule)
        .filter(SenderRule.client_id == client_id, SenderRule.is_active.is_(True))
        .order_by(SenderRule.priority.desc(), SenderRule.created_at.asc(), SenderRule.id.asc())
        .all()
    )


def _usable_config(db: Session, config_id: Optional[UUID], client_id: UUID) -> Optional[SenderConfiguration]:
    if config_id is None:
        return None
    config = db.get(SenderConfiguration, config_id)
    if config is None or not config.is_active or config.client_id != client_id:
        logger.warning("[SENDER_RULES] Sender config %s missing, inactive or foreign to client %s", config_id, client_id)
        return None
    return config


def select_first_matching_rule(rules: Iterable[SenderRule], facts: OrderFacts) -> Optional[SenderRule]:
    for rule in rules:
        if rule_matches(rule, facts):
            return rule
    return None


def select_sender(
    db: Session,
    client_id: Optional[UUID],
    facts: OrderFacts,
    mapping_sender_config_id: Optional[UUID] = None,
) -> SenderAttribution:
    """Choose the sender configuration for an order of `client_id`.

    Returns:
        SenderAttribution; `config` is None and `warning` is set when
        nothing applies (no tenant, no matching rule, no default)
    """
    if client_id is None:
        return SenderAttribution(warning="No client detected, sender left unset")

    for rule in load_active_rules(db, client_id):
        if not rule_matches(rule, facts):
            continue
        config = _usable_config(db, rule.sender_config_id, client_id)
        if config is not None:
            logger.info("[SENDER_RULES] Rule %r (priority %s) matched", rule.name, rule.priority)
            return SenderAttribution(config=config, rule=rule, source="rule")

    config = _usable_config(db, mapping_sender_config_id, client_id)
    if config is not None:
        return SenderAttribution(config=config, source="mapping")

    config = (
        db.query(SenderConfiguration)
        .filter(
            SenderConfiguration.client_id == client_id,
            SenderConfiguration.is_default.is_(True),
            SenderConfiguration.is_active.is_(True),
        )
        .order_by(SenderConfiguration.created_at.asc(), SenderConfiguration.id.asc())
        .first()
    )
    if config is not None:
        return SenderAttribution(config=config, source="default")

    return SenderAttribution(warning=f"No sender rule matched and client {client_id} has no default sender configuration")


def apply_sender_snapshot(order: Order, config: SenderConfiguration, rule: Optional[SenderRule] = None) -> None:
    """Copy the sender identity onto the order; later config edits leave it untouched."""
    order.sender_config_id = config.id
    order.sender_rule_id = rule.id if rule is not None else None
    order.sender_name = config.name
    order.sender_company = config.company
    order.sender_email = config.email
    order.sender_phone = config.phone
    order.sender_address_line1 = config.address_line1
    order.sender_address_line2 = config.address_line2
    order.sender_postal_code = config.postal_code
    order.sender_city = config.city
    order.sender_country_code = config.country_code
    order.attribution_warning = None


def clear_sender_snapshot(order: Order) -> None:
    order.sender_config_id = None
    order.sender_rule_id = None
    order.sender_name = None
    order.sender_company = None
    order.sender_email = None
    order.sender_phone = None
    order.sender_address_line1 = None
    order.sender_address_line2 = None
    order.sender_postal_code = None
    order.sender_city = None
    order.sender_country_code = None


def attribute_sender(db: Session, order: Order, mapping_sender_config_id: Optional[UUID] = None) -> SenderAttribution:
    """Select and apply the sender of `order`. Only sender fields are written."""
    attribution = select_sender(db, order.client_id, OrderFacts.from_order(order), mapping_sender_config_id)

    if attribution.config is not None:
        apply_sender_snapshot(order, attribution.config, attribution.rule)
    else:
        clear_sender_snapshot(order)
        order.attribution_warning = attribution.warning
        warnings.warn(attribution.warning, AttributionWarning, stacklevel=2)
        logger.warning("[SENDER_RULES] %s: %s", order.order_number, attribution.warning)

    return attribution
