"""Catalog and product import job schema

Revision ID: 001_catalog_import_schema
Revises:
Create Date: 2025-10-14

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001_catalog_import_schema'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """
    Create the catalog and import tracking tables.

    Tables created:
    - products: Catalog products, SKU unique per business
    - product_import_jobs: Bulk import jobs with counters, row results
      and the pre-images needed for rollback
    """

    # Create products table
    op.create_table(
        'products',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('business_id', sa.String(length=36), nullable=False, comment='Owning business'),
        sa.Column('name', sa.String(length=255), nullable=False, comment='Display name'),
        sa.Column('sku', sa.String(length=64), nullable=False, comment='Stock keeping unit, unique per business'),
        sa.Column('primary_barcode', sa.String(length=64), nullable=True, comment='UPC/EAN/GTIN'),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('category_name', sa.String(length=255), nullable=True),
        sa.Column('brand', sa.String(length=255), nullable=True),
        sa.Column('selling_price', sa.Numeric(precision=12, scale=2), nullable=False, server_default='0'),
        sa.Column('purchase_price', sa.Numeric(precision=12, scale=2), nullable=False, server_default='0'),
        sa.Column('quantity', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('tax_class', sa.String(length=50), nullable=False, server_default='standard'),
        sa.Column('unit_of_measure', sa.String(length=50), nullable=False, server_default='each'),
        sa.Column('weight', sa.Numeric(precision=10, scale=3), nullable=True),
        sa.Column('weight_unit', sa.String(length=10), nullable=False, server_default='kg'),
        sa.Column('tags', postgresql.JSONB(astext_type=sa.Text()), server_default='[]', nullable=False),
        sa.Column('created_at', sa.TIMESTAMP(), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('business_id', 'sku', name='uq_products_business_sku'),
        comment='Catalog products, one row per sellable item'
    )

    # Create indexes for products
    op.create_index('ix_products_business_id', 'products', ['business_id'])
    op.create_index('idx_products_business_barcode', 'products', ['business_id', 'primary_barcode'])
    op.create_index('idx_products_business_name', 'products', ['business_id', 'name'])

    # Create product_import_jobs table
    op.create_table(
        'product_import_jobs',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('business_id', sa.String(length=36), nullable=False, comment='Owning business'),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending', comment='Current job status'),
        sa.Column('file_name', sa.String(length=255), nullable=False),
        sa.Column('file_type', sa.String(length=20), nullable=False, comment="'csv' or 'xlsx'"),
        sa.Column('file_size', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('file_path', sa.String(length=512), nullable=True, comment='Stored upload, read again when processing starts'),
        sa.Column('total_rows', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('valid_rows', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('processed_rows', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('updated_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('skipped_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('failed_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('duplicate_action', sa.String(length=20), nullable=False, server_default='skip'),
        sa.Column('column_mapping', postgresql.JSONB(astext_type=sa.Text()), nullable=True, comment='File header -> product field key'),
        sa.Column('errors', postgresql.JSONB(astext_type=sa.Text()), server_default='[]', nullable=False),
        sa.Column('warnings', postgresql.JSONB(astext_type=sa.Text()), server_default='[]', nullable=False),
        sa.Column('results', postgresql.JSONB(astext_type=sa.Text()), server_default='[]', nullable=False),
        sa.Column('pre_images', postgresql.JSONB(astext_type=sa.Text()), server_default='{}', nullable=False,
                  comment='Row number -> product fields before an update (for rollback)'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_by', sa.String(length=255), nullable=True, comment='User or API key that created the job'),
        sa.Column('created_at', sa.TIMESTAMP(), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.Column('started_at', sa.TIMESTAMP(), nullable=True),
        sa.Column('completed_at', sa.TIMESTAMP(), nullable=True),
        sa.Column('rollback_at', sa.TIMESTAMP(), nullable=True),
        sa.CheckConstraint(
            "status IN ('pending', 'validating', 'validated', 'processing', "
            "'completed', 'failed', 'cancelled', 'rolled_back')",
            name='product_import_jobs_status_check'
        ),
        sa.CheckConstraint(
            "duplicate_action IN ('skip', 'update', 'create_new')",
            name='product_import_jobs_duplicate_action_check'
        ),
        sa.CheckConstraint(
            'created_count + updated_count + skipped_count + failed_count = processed_rows',
            name='product_import_jobs_counters_check'
        ),
        sa.PrimaryKeyConstraint('id'),
        comment='Tracks bulk product imports and their row outcomes'
    )

    # Create indexes for product_import_jobs
    op.create_index('idx_import_jobs_business_status', 'product_import_jobs', ['business_id', 'status'])
    op.create_index('idx_import_jobs_business_created', 'product_import_jobs', ['business_id', 'created_at'])


def downgrade() -> None:
    """
    Remove the catalog and import tracking tables.
    """
    # Drop product_import_jobs indexes
    op.drop_index('idx_import_jobs_business_created', table_name='product_import_jobs')
    op.drop_index('idx_import_jobs_business_status', table_name='product_import_jobs')

    # Drop product_import_jobs table
    op.drop_table('product_import_jobs')

    # Drop products indexes
    op.drop_index('idx_products_business_name', table_name='products')
    op.drop_index('idx_products_business_barcode', table_name='products')
    op.drop_index('ix_products_business_id', table_name='products')

    # Drop products table
    op.drop_table('products')
