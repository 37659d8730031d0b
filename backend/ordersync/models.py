"""SQLAlchemy ORM models and enums.

This module defines the warehouse schema using UUID primary keys and explicit
relationships. Tenants (`clients`) own products, sender configurations and
sender rules; orders carry a snapshot of the sender and carrier chosen for
them so later configuration edits never rewrite shipped history.
"""

import uuid
from datetime import datetime
import enum

from sqlalchemy import Column, String, DateTime, Enum, Integer, ForeignKey, Numeric, JSON, Text, Boolean, UniqueConstraint, Index, CheckConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship, declarative_base


# Single Base used by the entire application
Base = declarative_base()


# Enums ---------------------------------------------------------

class OrderStatusEnum(str, enum.Enum):
    """Fulfilment status of an order.

    The first four values are set by ingestion (see
    services/line_resolver.compute_order_status); the rest are driven by
    tracking updates and cancellation.
    """
    pending = "pending"
    products_not_found = "products_not_found"
    awaiting_restock = "awaiting_restock"
    ready_to_pick = "ready_to_pick"
    in_preparation = "in_preparation"
    in_transit = "in_transit"
    delivered = "delivered"
    archived = "archived"


class LineStatusEnum(str, enum.Enum):
    pending = "pending"
    reserved = "reserved"
    stock_insufficient = "stock_insufficient"
    product_not_found = "product_not_found"
    error = "error"


class SenderConditionTypeEnum(str, enum.Enum):
    customer_name_exact = "customer_name_exact"
    customer_name_contains = "customer_name_contains"
    order_tags = "order_tags"  # Comma-separated tags, any one matches
    sub_client_exact = "sub_client_exact"


class ProductEnrichmentStatusEnum(str, enum.Enum):
    """Catalogue enrichment of products created during ingestion."""
    not_needed = "not_needed"  # Created by hand or by a catalogue import
    pending = "pending"
    enriched = "enriched"
    not_found = "not_found"  # Unknown to the shipping platform too
    failed = "failed"


class CarrierSelectionStatusEnum(str, enum.Enum):
    not_requested = "not_requested"
    pending = "pending"
    selected = "selected"
    no_carrier = "no_carrier"
    failed = "failed"


class WebhookLogStatusEnum(str, enum.Enum):
    received = "received"
    processed = "processed"
    already_exists = "already_exists"
    error = "error"


class SyncRunStatusEnum(str, enum.Enum):
    running = "running"
    success = "success"
    partial = "partial"
    error = "error"


# Tenants -------------------------------------------------------

class Client(Base):
    """A warehouse tenant (a merchant whose stock we hold and ship)."""
    __tablename__ = "clients"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    mappings = relationship("ClientMapping", back_populates="client", cascade="all, delete-orphan")
    sender_configurations = relationship("SenderConfiguration", back_populates="client", cascade="all, delete-orphan")
    sender_rules = relationship("SenderRule", back_populates="client", cascade="all, delete-orphan")

    def __str__(self):
        return self.name


class ClientMapping(Base):
    """Maps an external integration or e-mail domain to a tenant.

    WHAT: Lookup table used to detect which client an inbound order belongs to
    WHY: External platforms know nothing about our tenants; the integration id
         (preferred) or the customer e-mail domain is the only link we get
    """
    __tablename__ = "client_mappings"
    __table_args__ = (
        Index("ix_client_mappings_integration_id", "integration_id"),
        Index("ix_client_mappings_email_domain", "email_domain"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    client_id = Column(UUID(as_uuid=True), ForeignKey("clients.id"), nullable=False)
    integration_id = Column(String, nullable=True)
    email_domain = Column(String, nullable=True)  # Stored lower-cased, e.g. "shop.fr"
    sender_config_id = Column(UUID(as_uuid=True), ForeignKey("sender_configurations.id"), nullable=True)
    sub_client = Column(String, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    client = relationship("Client", back_populates="mappings")
    sender_config = relationship("SenderConfiguration")


# Catalogue & stock ---------------------------------------------

class Product(Base):
    """Stocked product, identified by its SKU (`reference`).

    `stock_available` must only be decremented through
    services/stock_service.reserve_stock (conditional update).
    """
    __tablename__ = "products"
    __table_args__ = (
        CheckConstraint("stock_available >= 0", name="ck_products_stock_non_negative"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    client_id = Column(UUID(as_uuid=True), ForeignKey("clients.id"), nullable=True)
    reference = Column(String, nullable=False, unique=True)  # SKU
    ean = Column(String, nullable=True, index=True)
    name = Column(String, nullable=False)
    unit_weight_kg = Column(Numeric(10, 3), nullable=False, default=0)
    unit_price = Column(Numeric(18, 4), nullable=True)
    stock_available = Column(Integer, nullable=False, default=0)
    hs_code = Column(String, nullable=True)
    origin_country_code = Column(String(2), nullable=True)
    created_during_ingestion = Column(Boolean, default=False, nullable=False)
    enrichment_status = Column(
        Enum(ProductEnrichmentStatusEnum, values_callable=lambda obj: [e.value for e in obj]),
        default=ProductEnrichmentStatusEnum.not_needed,
        nullable=False,
        index=True,
    )
    enrichment_attempts = Column(Integer, default=0, nullable=False)
    enrichment_error = Column(Text, nullable=True)
    enriched_at = Column(DateTime, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __str__(self):
        return f"{self.reference} - {self.name}"


class StockReservation(Base):
    """Ledger row written for every successful reservation."""
    __tablename__ = "stock_reservations"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    product_id = Column(UUID(as_uuid=True), ForeignKey("products.id"), nullable=False, index=True)
    order_id = Column(UUID(as_uuid=True), ForeignKey("orders.id"), nullable=False)
    quantity = Column(Integer, nullable=False)
    origin_reference = Column(String, nullable=True)  # Order number the reservation was made for
    created_at = Column(DateTime, default=datetime.utcnow)

    product = relationship("Product")


# Orders --------------------------------------------------------

class Order(Base):
    """Warehouse order with delivery address, sender snapshot and carrier choice.

    WHAT: One row per external order, created once by ingestion and then only
          mutated in place (status, tracking, re-attribution)
    WHY: external_id is globally unique so a replayed import or webhook can
         never create a second copy of the same order
    """
    __tablename__ = "orders"
    __table_args__ = (
        UniqueConstraint("external_id", "order_number", name="uq_order_external_number"),
        Index("ix_orders_client_order_number", "client_id", "order_number"),
        Index("ix_orders_carrier_selection_status", "carrier_selection_status", "updated_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    external_id = Column(String, nullable=False, unique=True)
    order_number = Column(String, nullable=False, index=True)
    source = Column(String, nullable=False, default="sendcloud")

    # Tenant
    client_id = Column(UUID(as_uuid=True), ForeignKey("clients.id"), nullable=True)
    sub_client = Column(String, nullable=True)
    integration_id = Column(String, nullable=True)  # Kept for re-running tenant detection

    # Customer
    customer_name = Column(String, nullable=True)
    customer_email = Column(String, nullable=True)
    customer_phone = Column(String, nullable=True)

    # Delivery address
    delivery_name = Column(String, nullable=True)
    delivery_company = Column(String, nullable=True)
    delivery_address_line1 = Column(String, nullable=True)
    delivery_address_line2 = Column(String, nullable=True)
    delivery_postal_code = Column(String, nullable=True)
    delivery_city = Column(String, nullable=True)
    delivery_country_code = Column(String(2), nullable=False, default="FR")

    # Totals & shipping terms
    total_value = Column(Numeric(18, 4), nullable=True)
    currency = Column(String, nullable=False, default="EUR")
    incoterm = Column(String, nullable=True)  # DDP domestic, DAP abroad
    shipping_priority = Column(String, nullable=False, default="standard")
    requested_ship_date = Column(DateTime, nullable=True)
    tags = Column(JSON, nullable=True)  # List of tag strings

    status = Column(
        Enum(OrderStatusEnum, values_callable=lambda obj: [e.value for e in obj]),
        default=OrderStatusEnum.pending,
        nullable=False,
    )

    # Sender snapshot (copied from SenderConfiguration at attribution time)
    sender_config_id = Column(UUID(as_uuid=True), ForeignKey("sender_configurations.id"), nullable=True)
    sender_rule_id = Column(UUID(as_uuid=True), ForeignKey("sender_rules.id"), nullable=True)
    sender_name = Column(String, nullable=True)
    sender_company = Column(String, nullable=True)
    sender_email = Column(String, nullable=True)
    sender_phone = Column(String, nullable=True)
    sender_address_line1 = Column(String, nullable=True)
    sender_address_line2 = Column(String, nullable=True)
    sender_postal_code = Column(String, nullable=True)
    sender_city = Column(String, nullable=True)
    sender_country_code = Column(String(2), nullable=True)
    attribution_warning = Column(Text, nullable=True)

    # Carrier
    carrier_name = Column(String, nullable=True)
    service_name = Column(String, nullable=True)
    tracking_number = Column(String, nullable=True)
    tracking_url = Column(String, nullable=True)
    label_url = Column(String, nullable=True)
    shipment_id = Column(String, nullable=True)
    carrier_selection_status = Column(
        Enum(CarrierSelectionStatusEnum, values_callable=lambda obj: [e.value for e in obj]),
        default=CarrierSelectionStatusEnum.not_requested,
        nullable=False,
    )
    carrier_selection_attempts = Column(Integer, default=0, nullable=False)
    carrier_selection_error = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    client = relationship("Client")
    lines = relationship("OrderLine", back_populates="order", cascade="all, delete-orphan")
    sender_config = relationship("SenderConfiguration")
    sender_rule = relationship("SenderRule")

    def __str__(self):
        return self.order_number


class OrderLine(Base):
    """Order line with name/price/weight snapshotted at ingestion time."""
    __tablename__ = "order_lines"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    order_id = Column(UUID(as_uuid=True), ForeignKey("orders.id"), nullable=False, index=True)

    # Nullable: product may be unresolvable (status product_not_found)
    product_id = Column(UUID(as_uuid=True), ForeignKey("products.id"), nullable=True)

    product_reference = Column(String, nullable=False)
    product_name = Column(String, nullable=True)
    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(Numeric(18, 4), nullable=True)
    line_value = Column(Numeric(18, 4), nullable=True)  # unit_price * quantity
    unit_weight_kg = Column(Numeric(10, 3), nullable=True)
    status = Column(
        Enum(LineStatusEnum, values_callable=lambda obj: [e.value for e in obj]),
        default=LineStatusEnum.pending,
        nullable=False,
    )
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    order = relationship("Order", back_populates="lines")
    product = relationship("Product")


# Sender attribution --------------------------------------------

class SenderConfiguration(Base):
    """Sender identity printed on labels for a tenant (name, address, contact)."""
    __tablename__ = "sender_configurations"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    client_id = Column(UUID(as_uuid=True), ForeignKey("clients.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    company = Column(String, nullable=True)
    email = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    address_line1 = Column(String, nullable=True)
    address_line2 = Column(String, nullable=True)
    postal_code = Column(String, nullable=True)
    city = Column(String, nullable=True)
    country_code = Column(String(2), nullable=True)
    eori_number = Column(String, nullable=True)
    vat_number = Column(String, nullable=True)
    is_default = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    client = relationship("Client", back_populates="sender_configurations")

    def __str__(self):
        return self.name


class SenderRule(Base):
    """Conditional rule choosing a sender configuration for matching orders.

    Rules are evaluated by priority (highest first); the first match wins.
    Equal priorities fall back to creation order, then id.
    """
    __tablename__ = "sender_rules"
    __table_args__ = (
        Index("ix_sender_rules_client_priority", "client_id", "priority"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    client_id = Column(UUID(as_uuid=True), ForeignKey("clients.id"), nullable=False)
    name = Column(String, nullable=False)
    condition_type = Column(
        Enum(SenderConditionTypeEnum, values_callable=lambda obj: [e.value for e in obj]),
        nullable=False,
    )
    condition_value = Column(String, nullable=False)
    sender_config_id = Column(UUID(as_uuid=True), ForeignKey("sender_configurations.id"), nullable=False)
    priority = Column(Integer, default=0, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    client = relationship("Client", back_populates="sender_rules")
    sender_config = relationship("SenderConfiguration")

    def __str__(self):
        return self.name


# Audit ---------------------------------------------------------

class WebhookLog(Base):
    """Every inbound webhook call, with its outcome."""
    __tablename__ = "webhook_logs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    source = Column(String, nullable=False, default="sendcloud")
    payload = Column(JSON, nullable=True)
    status = Column(
        Enum(WebhookLogStatusEnum, values_callable=lambda obj: [e.value for e in obj]),
        default=WebhookLogStatusEnum.received,
        nullable=False,
    )
    order_id = Column(UUID(as_uuid=True), ForeignKey("orders.id"), nullable=True)
    error = Column(Text, nullable=True)
    received_at = Column(DateTime, default=datetime.utcnow, index=True)
    processed_at = Column(DateTime, nullable=True)


class SyncRun(Base):
    """One pull of orders from the shipping platform (incremental, full or custom)."""
    __tablename__ = "sync_runs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    mode = Column(String, nullable=False)  # incremental | full | custom
    status = Column(
        Enum(SyncRunStatusEnum, values_callable=lambda obj: [e.value for e in obj]),
        default=SyncRunStatusEnum.running,
        nullable=False,
    )
    orders_found = Column(Integer, default=0, nullable=False)
    orders_created = Column(Integer, default=0, nullable=False)
    orders_existing = Column(Integer, default=0, nullable=False)
    orders_errors = Column(Integer, default=0, nullable=False)
    started_at = Column(DateTime, default=datetime.utcnow)
    finished_at = Column(DateTime, nullable=True)
    duration_ms = Column(Integer, nullable=True)
    error_message = Column(Text, nullable=True)
    details = Column(JSON, nullable=True)
