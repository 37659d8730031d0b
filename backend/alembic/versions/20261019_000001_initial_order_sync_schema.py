"""Initial order sync schema (tenants, catalogue, orders, sender rules, audit)

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19 09:00:00.000000

WHAT:
    Creates every table used by order ingestion and attribution:
    - clients, client_mappings: tenants and how inbound orders map to them
    - sender_configurations, sender_rules: label sender identities + rules
    - products, stock_reservations: catalogue, stock and reservation ledger
    - orders, order_lines: ingested orders with sender/carrier snapshot
    - webhook_logs, sync_runs: audit of webhook calls and SendCloud pulls

WHY:
    orders.external_id is unique so replayed imports and webhooks can never
    create a second copy of an order.

REFERENCES:
    - ordersync/models.py
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = '20261019_000001'
down_revision = None
branch_labels = None
depends_on = None


ORDER_STATUS = sa.Enum(
    'pending', 'products_not_found', 'awaiting_restock', 'ready_to_pick',
    'in_preparation', 'in_transit', 'delivered', 'archived',
    name='orderstatusenum',
)
LINE_STATUS = sa.Enum(
    'pending', 'reserved', 'stock_insufficient', 'product_not_found', 'error',
    name='linestatusenum',
)
SENDER_CONDITION = sa.Enum(
    'customer_name_exact', 'customer_name_contains', 'order_tags', 'sub_client_exact',
    name='senderconditiontypeenum',
)
CARRIER_SELECTION_STATUS = sa.Enum(
    'not_requested', 'pending', 'selected', 'no_carrier', 'failed',
    name='carrierselectionstatusenum',
)
WEBHOOK_LOG_STATUS = sa.Enum(
    'received', 'processed', 'already_exists', 'error',
    name='webhooklogstatusenum',
)
SYNC_RUN_STATUS = sa.Enum(
    'running', 'success', 'partial', 'error',
    name='syncrunstatusenum',
)


def upgrade() -> None:
    # =========================================================================
    # STEP 1: Tenants and sender configuration
    # =========================================================================
    op.create_table(
        'clients',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
    )

    op.create_table(
        'sender_configurations',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('client_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('clients.id'), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('company', sa.String(), nullable=True),
        sa.Column('email', sa.String(), nullable=True),
        sa.Column('phone', sa.String(), nullable=True),
        sa.Column('address_line1', sa.String(), nullable=True),
        sa.Column('address_line2', sa.String(), nullable=True),
        sa.Column('postal_code', sa.String(), nullable=True),
        sa.Column('city', sa.String(), nullable=True),
        sa.Column('country_code', sa.String(2), nullable=True),
        sa.Column('eori_number', sa.String(), nullable=True),
        sa.Column('vat_number', sa.String(), nullable=True),
        sa.Column('is_default', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index('ix_sender_configurations_client_id', 'sender_configurations', ['client_id'])

    op.create_table(
        'client_mappings',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('client_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('clients.id'), nullable=False),
        sa.Column('integration_id', sa.String(), nullable=True),
        sa.Column('email_domain', sa.String(), nullable=True),
        sa.Column('sender_config_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('sender_configurations.id'), nullable=True),
        sa.Column('sub_client', sa.String(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index('ix_client_mappings_integration_id', 'client_mappings', ['integration_id'])
    op.create_index('ix_client_mappings_email_domain', 'client_mappings', ['email_domain'])

    op.create_table(
        'sender_rules',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('client_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('clients.id'), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('condition_type', SENDER_CONDITION, nullable=False),
        sa.Column('condition_value', sa.String(), nullable=False),
        sa.Column('sender_config_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('sender_configurations.id'), nullable=False),
        sa.Column('priority', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
    )
    # Rule evaluation order: priority desc, then creation order
    op.create_index('ix_sender_rules_client_priority', 'sender_rules', ['client_id', 'priority'])

    # =========================================================================
    # STEP 2: Catalogue
    # =========================================================================
    op.create_table(
        'products',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('client_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('clients.id'), nullable=True),
        sa.Column('reference', sa.String(), nullable=False, unique=True),
        sa.Column('ean', sa.String(), nullable=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('unit_weight_kg', sa.Numeric(10, 3), nullable=False, server_default='0'),
        sa.Column('unit_price', sa.Numeric(18, 4), nullable=True),
        sa.Column('stock_available', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_during_ingestion', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), onupdate=sa.func.now()),
        sa.CheckConstraint('stock_available >= 0', name='ck_products_stock_non_negative'),
    )
    op.create_index('ix_products_ean', 'products', ['ean'])

    # =========================================================================
    # STEP 3: Orders and lines
    # =========================================================================
    op.create_table(
        'orders',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('external_id', sa.String(), nullable=False, unique=True),
        sa.Column('order_number', sa.String(), nullable=False),
        sa.Column('source', sa.String(), nullable=False, server_default='sendcloud'),
        sa.Column('client_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('clients.id'), nullable=True),
        sa.Column('sub_client', sa.String(), nullable=True),
        sa.Column('integration_id', sa.String(), nullable=True),
        sa.Column('customer_name', sa.String(), nullable=True),
        sa.Column('customer_email', sa.String(), nullable=True),
        sa.Column('customer_phone', sa.String(), nullable=True),
        sa.Column('delivery_name', sa.String(), nullable=True),
        sa.Column('delivery_company', sa.String(), nullable=True),
        sa.Column('delivery_address_line1', sa.String(), nullable=True),
        sa.Column('delivery_address_line2', sa.String(), nullable=True),
        sa.Column('delivery_postal_code', sa.String(), nullable=True),
        sa.Column('delivery_city', sa.String(), nullable=True),
        sa.Column('delivery_country_code', sa.String(2), nullable=False, server_default='FR'),
        sa.Column('total_value', sa.Numeric(18, 4), nullable=True),
        sa.Column('currency', sa.String(), nullable=False, server_default='EUR'),
        sa.Column('incoterm', sa.String(), nullable=True),
        sa.Column('shipping_priority', sa.String(), nullable=False, server_default='standard'),
        sa.Column('requested_ship_date', sa.DateTime(), nullable=True),
        sa.Column('tags', sa.JSON(), nullable=True),
        sa.Column('status', ORDER_STATUS, nullable=False, server_default='pending'),
        sa.Column('sender_config_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('sender_configurations.id'), nullable=True),
        sa.Column('sender_rule_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('sender_rules.id'), nullable=True),
        sa.Column('sender_name', sa.String(), nullable=True),
        sa.Column('sender_company', sa.String(), nullable=True),
        sa.Column('sender_email', sa.String(), nullable=True),
        sa.Column('sender_phone', sa.String(), nullable=True),
        sa.Column('sender_address_line1', sa.String(), nullable=True),
        sa.Column('sender_address_line2', sa.String(), nullable=True),
        sa.Column('sender_postal_code', sa.String(), nullable=True),
        sa.Column('sender_city', sa.String(), nullable=True),
        sa.Column('sender_country_code', sa.String(2), nullable=True),
        sa.Column('attribution_warning', sa.Text(), nullable=True),
        sa.Column('carrier_name', sa.String(), nullable=True),
        sa.Column('service_name', sa.String(), nullable=True),
        sa.Column('tracking_number', sa.String(), nullable=True),
        sa.Column('tracking_url', sa.String(), nullable=True),
        sa.Column('label_url', sa.String(), nullable=True),
        sa.Column('shipment_id', sa.String(), nullable=True),
        sa.Column('carrier_selection_status', CARRIER_SELECTION_STATUS, nullable=False,
                  server_default='not_requested'),
        sa.Column('carrier_selection_attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('carrier_selection_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), onupdate=sa.func.now()),
        sa.UniqueConstraint('external_id', 'order_number', name='uq_order_external_number'),
    )
    op.create_index('ix_orders_order_number', 'orders', ['order_number'])
    op.create_index('ix_orders_client_order_number', 'orders', ['client_id', 'order_number'])
    # Carrier-selection sweep scans pending orders by age
    op.create_index('ix_orders_carrier_selection_status', 'orders', ['carrier_selection_status', 'updated_at'])

    op.create_table(
        'order_lines',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('order_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('orders.id'), nullable=False),
        sa.Column('product_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('products.id'), nullable=True),
        sa.Column('product_reference', sa.String(), nullable=False),
        sa.Column('product_name', sa.String(), nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('unit_price', sa.Numeric(18, 4), nullable=True),
        sa.Column('line_value', sa.Numeric(18, 4), nullable=True),
        sa.Column('unit_weight_kg', sa.Numeric(10, 3), nullable=True),
        sa.Column('status', LINE_STATUS, nullable=False, server_default='pending'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index('ix_order_lines_order_id', 'order_lines', ['order_id'])

    op.create_table(
        'stock_reservations',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('product_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('products.id'), nullable=False),
        sa.Column('order_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('orders.id'), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('origin_reference', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index('ix_stock_reservations_product_id', 'stock_reservations', ['product_id'])

    # =========================================================================
    # STEP 4: Audit
    # =========================================================================
    op.create_table(
        'webhook_logs',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('source', sa.String(), nullable=False, server_default='sendcloud'),
        sa.Column('payload', sa.JSON(), nullable=True),
        sa.Column('status', WEBHOOK_LOG_STATUS, nullable=False, server_default='received'),
        sa.Column('order_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('orders.id'), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('received_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_webhook_logs_received_at', 'webhook_logs', ['received_at'])

    op.create_table(
        'sync_runs',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('mode', sa.String(), nullable=False),
        sa.Column('status', SYNC_RUN_STATUS, nullable=False, server_default='running'),
        sa.Column('orders_found', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('orders_created', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('orders_existing', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('orders_errors', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('started_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('finished_at', sa.DateTime(), nullable=True),
        sa.Column('duration_ms', sa.Integer(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('details', sa.JSON(), nullable=True),
    )


def downgrade() -> None:
    op.drop_table('sync_runs')
    op.drop_table('webhook_logs')
    op.drop_table('stock_reservations')
    op.drop_table('order_lines')
    op.drop_table('orders')
    op.drop_table('products')
    op.drop_table('sender_rules')
    op.drop_table('client_mappings')
    op.drop_table('sender_configurations')
    op.drop_table('clients')

    bind = op.get_bind()
    for enum_type in (SYNC_RUN_STATUS, WEBHOOK_LOG_STATUS, CARRIER_SELECTION_STATUS,
                      SENDER_CONDITION, LINE_STATUS, ORDER_STATUS):
        enum_type.drop(bind, checkfirst=True)
