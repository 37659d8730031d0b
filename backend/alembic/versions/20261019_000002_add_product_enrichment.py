"""Add product enrichment state and customs fields

Revision ID: 20261019_000002
Revises: 20261019_000001
Create Date: 2026-10-19 15:00:00.000000

WHAT:
    - products.enrichment_status (+ attempts, error, enriched_at)
    - products.hs_code, products.origin_country_code

WHY:
    Products created during ingestion only know their SKU. A background job
    fetches name, weight, EAN and customs data from SendCloud; the status
    column keeps products still waiting for it visible.

REFERENCES:
    - ordersync/workers/arq_worker.py (process_product_enrichment_job)
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20261019_000002'
down_revision = '20261019_000001'
branch_labels = None
depends_on = None


ENRICHMENT_STATUS = sa.Enum(
    'not_needed', 'pending', 'enriched', 'not_found', 'failed',
    name='productenrichmentstatusenum',
)


def upgrade() -> None:
    ENRICHMENT_STATUS.create(op.get_bind(), checkfirst=True)

    op.add_column('products', sa.Column('hs_code', sa.String(), nullable=True))
    op.add_column('products', sa.Column('origin_country_code', sa.String(2), nullable=True))
    op.add_column(
        'products',
        sa.Column('enrichment_status', ENRICHMENT_STATUS, nullable=False, server_default='not_needed'),
    )
    op.add_column(
        'products',
        sa.Column('enrichment_attempts', sa.Integer(), nullable=False, server_default='0'),
    )
    op.add_column('products', sa.Column('enrichment_error', sa.Text(), nullable=True))
    op.add_column('products', sa.Column('enriched_at', sa.DateTime(), nullable=True))

    # Enrichment sweep scans pending products
    op.create_index('ix_products_enrichment_status', 'products', ['enrichment_status'])


def downgrade() -> None:
    op.drop_index('ix_products_enrichment_status', table_name='products')
    op.drop_column('products', 'enriched_at')
    op.drop_column('products', 'enrichment_error')
    op.drop_column('products', 'enrichment_attempts')
    op.drop_column('products', 'enrichment_status')
    op.drop_column('products', 'origin_country_code')
    op.drop_column('products', 'hs_code')

    ENRICHMENT_STATUS.drop(op.get_bind(), checkfirst=True)
