"""Inbound order payload decoding.

WHAT:
    Turns a raw external order payload into one canonical order:
    - Two explicit payload shapes (flat address fields, nested `shipping_address`)
    - Country normalization to ISO-2
    - Line items under any of the field names producers use

WHY:
    - SendCloud v2 parcels, v3 orders and CSV/n8n imports all send slightly
      different JSON. Decoding once at the boundary keeps the pipeline free of
      optional-field probing.
    - Pure transform: no database access, safe to unit test in isolation.

REFERENCES:
    - ordersync/services/order_sync_service.py (consumer)
    - https://api.sendcloud.dev/docs/sendcloud-public-api/orders
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from ordersync.errors import ValidationError

logger = logging.getLogger(__name__)


# =============================================================================
# COUNTRY NORMALIZATION
# =============================================================================

DEFAULT_COUNTRY = "FR"

COUNTRY_NAMES: Dict[str, str] = {
    "FRANCE": "FR",
    "BELGIUM": "BE",
    "BELGIQUE": "BE",
    "GERMANY": "DE",
    "ALLEMAGNE": "DE",
    "DEUTSCHLAND": "DE",
    "SPAIN": "ES",
    "ESPAGNE": "ES",
    "ESPAÑA": "ES",
    "ITALY": "IT",
    "ITALIE": "IT",
    "ITALIA": "IT",
    "NETHERLANDS": "NL",
    "PAYS-BAS": "NL",
    "NEDERLAND": "NL",
    "UK": "GB",
    "UNITED KINGDOM": "GB",
    "ROYAUME-UNI": "GB",
    "GREAT BRITAIN": "GB",
    "LUXEMBOURG": "LU",
    "SWITZERLAND": "CH",
    "SUISSE": "CH",
    "PORTUGAL": "PT",
    "AUSTRIA": "AT",
    "AUTRICHE": "AT",
    "IRELAND": "IE",
    "IRLANDE": "IE",
}


def _as_iso2(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    code = value.strip().upper()
    if len(code) == 2 and code.isalpha():
        return code
    return None


def _lookup_country(value: Any) -> Optional[str]:
    """Return the ISO-2 code for `value`, or None when it is not recognized."""
    if isinstance(value, str):
        return _as_iso2(value) or COUNTRY_NAMES.get(value.strip().upper())
    if isinstance(value, dict):
        return _as_iso2(value.get("iso_2"))
    return None


def normalize_country(value: Any) -> str:
    """Normalize any country representation to an uppercase ISO-2 code.

    Accepts a 2-letter code (any case, surrounding whitespace ignored), a
    known country name, or an object exposing `iso_2`. Anything else maps to
    "FR". Never raises, never returns None.
    """
    return _lookup_country(value) or DEFAULT_COUNTRY


def is_known_country(value: Any) -> bool:
    """True when `value` was recognized rather than defaulted to FR."""
    return _lookup_country(value) is not None


# =============================================================================
# FIELD HELPERS
# =============================================================================

def _money(value: Any) -> Any:
    """Unwrap `{"value": ...}` money objects; leave numbers/strings to pydantic."""
    if isinstance(value, dict):
        return value.get("value")
    if isinstance(value, str) and not value.strip():
        return None
    return value


def _named(value: Any) -> Any:
    """Carrier / shipping method arrive either as a string or as `{"name": ...}`."""
    if isinstance(value, dict):
        return value.get("name")
    return value


def _first(*values: Optional[str]) -> Optional[str]:
    for value in values:
        if value:
            return value
    return None


# =============================================================================
# PAYLOAD SHAPES
# =============================================================================

class LineItemPayload(BaseModel):
    """One ordered item. SKU and name field names vary per producer."""

    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    sku: Optional[str] = Field(default=None, validation_alias=AliasChoices("sku", "SKU", "reference"))
    name: Optional[str] = Field(default=None, validation_alias=AliasChoices("name", "description", "title"))
    quantity: int = Field(default=1, ge=1)
    ean: Optional[str] = None
    unit_price: Optional[Decimal] = Field(default=None, validation_alias=AliasChoices("unit_price", "price", "value"))
    total_price: Optional[Decimal] = None
    weight: Optional[Decimal] = None

    @model_validator(mode="before")
    @classmethod
    def _flatten_nested(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if data.get("quantity") is None:
            data["quantity"] = 1
        if not data.get("ean") and isinstance(data.get("properties"), dict):
            data["ean"] = data["properties"].get("ean")
        if data.get("weight") is None:
            measurement = data.get("measurement") or {}
            weight = measurement.get("weight") if isinstance(measurement, dict) else None
            if isinstance(weight, dict):
                data["weight"] = weight.get("value")
        return data

    @field_validator("unit_price", "total_price", "weight", mode="before")
    @classmethod
    def _unwrap_money(cls, value: Any) -> Any:
        return _money(value)


class ShippingAddressPayload(BaseModel):
    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    name: Optional[str] = None
    company_name: Optional[str] = None
    address: Optional[str] = Field(default=None, validation_alias=AliasChoices("address", "address_line_1"))
    address_2: Optional[str] = Field(default=None, validation_alias=AliasChoices("address_2", "address_line_2"))
    house_number: Optional[str] = None
    city: Optional[str] = None
    postal_code: Optional[str] = None
    country: Any = Field(default=None, validation_alias=AliasChoices("country", "country_code"))
    email: Optional[str] = None
    telephone: Optional[str] = Field(default=None, validation_alias=AliasChoices("telephone", "phone_number", "phone"))


class FlatOrderPayload(BaseModel):
    """Order whose delivery address sits at the top level (v2 parcels, CSV imports)."""

    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    id: Optional[str] = None
    order_number: Optional[str] = None
    order_id: Optional[str] = None
    status: Optional[str] = None

    name: Optional[str] = None
    company_name: Optional[str] = None
    email: Optional[str] = None
    telephone: Optional[str] = None
    address: Optional[str] = None
    address_2: Optional[str] = None
    city: Optional[str] = None
    postal_code: Optional[str] = None
    country: Any = None

    total_order_value: Optional[Decimal] = None
    currency: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    integration_id: Optional[str] = None
    shipment: Optional[Dict[str, Any]] = None

    carrier: Optional[str] = None
    shipping_method: Optional[str] = None
    tracking_number: Optional[str] = None
    tracking_url: Optional[str] = None
    label_url: Optional[str] = None

    items: List[LineItemPayload] = Field(
        default_factory=list,
        validation_alias=AliasChoices("order_items", "order_products", "parcel_items"),
    )

    @model_validator(mode="before")
    @classmethod
    def _pull_nested_ids(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        integration = data.get("integration")
        if not data.get("integration_id") and isinstance(integration, dict):
            data["integration_id"] = integration.get("id")
        if data.get("total_order_value") is None:
            payment = data.get("payment_details") or {}
            if isinstance(payment, dict):
                data["total_order_value"] = payment.get("total_price")
        if isinstance(data.get("status"), dict):
            data["status"] = data["status"].get("code") or data["status"].get("message")
        return data

    @field_validator("total_order_value", mode="before")
    @classmethod
    def _unwrap_total(cls, value: Any) -> Any:
        return _money(value)

    @field_validator("carrier", "shipping_method", mode="before")
    @classmethod
    def _unwrap_named(cls, value: Any) -> Any:
        return _named(value)

    @field_validator("tags", mode="before")
    @classmethod
    def _split_tags(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return [tag.strip() for tag in value.split(",") if tag.strip()]
        return value

    @field_validator("items", mode="before")
    @classmethod
    def _null_items(cls, value: Any) -> Any:
        return [] if value is None else value


class NestedOrderPayload(FlatOrderPayload):
    """Order carrying a `shipping_address` object (v3 orders API).

    Flat fields may still be present; nested values take precedence.
    """

    shipping_address: ShippingAddressPayload


# =============================================================================
# CANONICAL ORDER
# =============================================================================

@dataclass
class CanonicalLine:
    sku: str
    name: Optional[str]
    quantity: int
    ean: Optional[str] = None
    unit_price: Optional[Decimal] = None
    total_price: Optional[Decimal] = None
    weight_kg: Optional[Decimal] = None


@dataclass
class CanonicalOrder:
    """Shape-independent order produced by decode_order_payload()."""
    external_id: str
    order_number: str
    customer_name: str
    customer_email: Optional[str]
    customer_phone: Optional[str]
    delivery_name: str
    delivery_company: Optional[str]
    address_line1: str
    address_line2: Optional[str]
    postal_code: str
    city: str
    country_code: str
    country_recognized: bool
    total_value: Decimal
    currency: str
    incoterm: str
    shipping_priority: str
    requested_ship_date: date
    cancelled: bool = False
    tags: List[str] = field(default_factory=list)
    integration_id: Optional[str] = None
    carrier_name: Optional[str] = None
    service_name: Optional[str] = None
    tracking_number: Optional[str] = None
    tracking_url: Optional[str] = None
    label_url: Optional[str] = None
    lines: List[CanonicalLine] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


def _parse_shape(raw: Dict[str, Any]) -> Union[FlatOrderPayload, NestedOrderPayload]:
    if isinstance(raw.get("shipping_address"), dict):
        return NestedOrderPayload.model_validate(raw)
    return FlatOrderPayload.model_validate(raw)


def decode_order_payload(
    raw: Any,
    default_currency: str = "EUR",
    unknown_country_policy: str = "fallback",
) -> CanonicalOrder:
    """Decode one raw order payload into a CanonicalOrder.

    WHAT:
        Selects the payload shape, validates it, and unifies both shapes.
        Order number resolution: order_number, then order_id, then id.

    Args:
        raw: Parsed JSON object for one order
        default_currency: Currency used when the payload has none
        unknown_country_policy: "fallback" maps unknown countries to FR with a
            warning; "reject" raises ValidationError

    Raises:
        ValidationError: Not an object, wrong field types, no identifier,
            or unknown country under the "reject" policy
    """
    if not isinstance(raw, dict):
        raise ValidationError(f"Order payload must be a JSON object, got {type(raw).__name__}")

    try:
        payload = _parse_shape(raw)
    except PydanticValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        raise ValidationError(
            f"Invalid order payload ({location}: {first.get('msg')})",
            order_number=_first(*(str(raw.get(k)) for k in ("order_number", "order_id", "id") if raw.get(k))),
        ) from e

    order_number = _first(payload.order_number, payload.order_id, payload.id)
    if not order_number:
        raise ValidationError("Order payload has neither an id nor an order number")
    external_id = payload.id or order_number

    nested = payload.shipping_address if isinstance(payload, NestedOrderPayload) else None

    raw_country = nested.country if nested is not None and nested.country else payload.country
    recognized = is_known_country(raw_country)
    warnings: List[str] = []
    if not recognized:
        if unknown_country_policy == "reject":
            raise ValidationError(f"Unrecognized country {raw_country!r}", order_number=order_number)
        warnings.append(f"Unrecognized country {raw_country!r}, defaulted to {DEFAULT_COUNTRY}")
        logger.warning("[PAYLOADS] %s: unrecognized country %r, defaulting to %s", order_number, raw_country, DEFAULT_COUNTRY)
    country_code = normalize_country(raw_country)

    customer_name = _first(nested.name if nested else None, payload.name, payload.company_name) or "Unknown customer"
    address_line1 = _first(nested.address if nested else None, payload.address) or ""
    if nested is not None and nested.house_number and nested.address and nested.house_number not in nested.address:
        address_line1 = f"{nested.address} {nested.house_number}"

    lines: List[CanonicalLine] = []
    for item in payload.items:
        lines.append(CanonicalLine(
            sku=(item.sku or "").strip(),
            name=item.name,
            quantity=item.quantity,
            ean=item.ean,
            unit_price=item.unit_price,
            total_price=item.total_price,
            weight_kg=item.weight,
        ))

    shipment_method = (payload.shipment or {}).get("method")

    return CanonicalOrder(
        external_id=external_id,
        order_number=order_number,
        customer_name=customer_name,
        customer_email=_first(nested.email if nested else None, payload.email),
        customer_phone=_first(nested.telephone if nested else None, payload.telephone),
        delivery_name=customer_name,
        delivery_company=_first(nested.company_name if nested else None, payload.company_name),
        address_line1=address_line1,
        address_line2=_first(nested.address_2 if nested else None, payload.address_2),
        postal_code=_first(nested.postal_code if nested else None, payload.postal_code) or "",
        city=_first(nested.city if nested else None, payload.city) or "",
        country_code=country_code,
        country_recognized=recognized,
        total_value=payload.total_order_value or Decimal("0"),
        currency=payload.currency or default_currency,
        incoterm="DDP" if country_code == "FR" else "DAP",
        shipping_priority="express" if shipment_method == "express" else "standard",
        requested_ship_date=date.today() + timedelta(days=1),
        cancelled=(payload.status or "").lower() == "cancelled",
        tags=payload.tags,
        integration_id=payload.integration_id,
        carrier_name=payload.carrier,
        service_name=payload.shipping_method,
        tracking_number=payload.tracking_number,
        tracking_url=payload.tracking_url,
        label_url=payload.label_url,
        lines=lines,
        warnings=warnings,
    )
