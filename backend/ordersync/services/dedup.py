"""Duplicate order detection.

Two independent lookups, external id then order number. Historical rows may
carry only one of the two identifiers (partial imports, manual creation), so
a single OR query keyed on the pair could miss a duplicate.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from ordersync.models import Order

logger = logging.getLogger(__name__)


@dataclass
class DuplicateCheck:
    exists: bool
    order_id: Optional[UUID] = None
    matched_on: Optional[str] = None  # "external_id" | "order_number"


def find_existing_order(
    db: Session,
    external_id: Optional[str],
    order_number: Optional[str],
    client_id: Optional[UUID] = None,
) -> DuplicateCheck:
    """Return whether an order already exists for this external id or order number.

    The external id is globally unique, so it is checked without tenant scope.
    Order numbers are only unique per merchant: the lookup is scoped to the
    client when one was detected.
    """
    if external_id:
        order_id = db.query(Order.id).filter(Order.external_id == str(external_id)).scalar()
        if order_id is not None:
            logger.info("[DEDUP] Order with external id %s already exists (%s)", external_id, order_id)
            return DuplicateCheck(exists=True, order_id=order_id, matched_on="external_id")

    if order_number:
        query = db.query(Order.id).filter(Order.order_number == str(order_number))
        if client_id is not None:
            query = query.filter(Order.client_id == client_id)
        order_id = query.order_by(Order.created_at).limit(1).scalar()
        if order_id is not None:
            logger.info("[DEDUP] Order number %s already exists (%s)", order_number, order_id)
            return DuplicateCheck(exists=True, order_id=order_id, matched_on="order_number")

    return DuplicateCheck(exists=False)
