"""Collection schema

Revision ID: 001_collection_schema
Revises: 
Create Date: 2026-10-17 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001_collection_schema'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Products table
    op.create_table(
        'products',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('asin', sa.String(length=16), nullable=False),
        sa.Column('domain', sa.String(length=32), nullable=False),
        sa.Column('url', sa.Text(), nullable=False),
        sa.Column('title', sa.Text(), nullable=True),
        sa.Column('tier', sa.String(length=16), nullable=False, server_default='daily'),
        sa.Column('tier_mode', sa.String(length=16), nullable=False, server_default='auto'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('next_scrape_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('consecutive_failures', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('last_price', sa.Numeric(precision=12, scale=2), nullable=True),
        sa.Column('last_scraped_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_price_change_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('asin', 'domain', name='uq_product_asin_domain')
    )
    op.create_index('ix_products_due', 'products', ['is_active', 'next_scrape_at'])

    # Price history table
    op.create_table(
        'price_history',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('price', sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=True),
        sa.Column('scraped_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], )
    )
    op.create_index('ix_price_history_product_scraped', 'price_history', ['product_id', 'scraped_at'])

    # Collection jobs table
    op.create_table(
        'collection_jobs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('asin', sa.String(length=16), nullable=False),
        sa.Column('domain', sa.String(length=32), nullable=False),
        sa.Column('scheduled_for', sa.DateTime(timezone=True), nullable=False),
        sa.Column('priority', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('state', sa.String(length=16), nullable=False, server_default='queued'),
        sa.Column('route_hint', sa.String(length=32), nullable=True),
        sa.Column('dedupe_key', sa.String(length=128), nullable=False),
        sa.Column('attempt_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_attempts', sa.Integer(), nullable=False, server_default='5'),
        sa.Column('leased_by', sa.String(length=64), nullable=True),
        sa.Column('lease_until', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('next_scheduled_for', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ),
        sa.UniqueConstraint('dedupe_key', name='uq_collection_job_dedupe_key')
    )
    op.create_index('ix_collection_jobs_claim', 'collection_jobs', ['state', 'scheduled_for', 'priority'])
    op.create_index('ix_collection_jobs_lease', 'collection_jobs', ['state', 'lease_until'])

    # Collection attempts table
    op.create_table(
        'collection_attempts',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('job_id', sa.Integer(), nullable=True),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('collector_id', sa.String(length=64), nullable=True),
        sa.Column('executor', sa.String(length=32), nullable=False),
        sa.Column('method', sa.String(length=32), nullable=False),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('http_status', sa.Integer(), nullable=True),
        sa.Column('blocked_signal', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('error_code', sa.String(length=32), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('price', sa.Numeric(precision=12, scale=2), nullable=True),
        sa.Column('currency', sa.String(length=3), nullable=True),
        sa.Column('confidence', sa.Float(), nullable=True),
        sa.Column('debug', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('finished_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['job_id'], ['collection_jobs.id'], ),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], )
    )
    op.create_index('ix_collection_attempts_product', 'collection_attempts', ['product_id', 'finished_at'])

    # Collectors table
    op.create_table(
        'collectors',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('user_id', sa.String(length=64), nullable=True),
        sa.Column('name', sa.String(length=128), nullable=False),
        sa.Column('kind', sa.String(length=32), nullable=False, server_default='collector'),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='active'),
        sa.Column('capabilities', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('metadata', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('last_seen_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id')
    )


def downgrade() -> None:
    op.drop_table('collectors')
    op.drop_index('ix_collection_attempts_product', table_name='collection_attempts')
    op.drop_table('collection_attempts')
    op.drop_index('ix_collection_jobs_lease', table_name='collection_jobs')
    op.drop_index('ix_collection_jobs_claim', table_name='collection_jobs')
    op.drop_table('collection_jobs')
    op.drop_index('ix_price_history_product_scraped', table_name='price_history')
    op.drop_table('price_history')
    op.drop_index('ix_products_due', table_name='products')
    op.drop_table('products')
