"""initial stock ledger schema

Revision ID: 3f9c2a71d0b4
Revises:
Create Date: 2026-10-18 00:00:00.000000

Creates the valuation ledger schema:
- stores, products: foreign-key targets
- purchase/sale/return/adjustment/transfer documents and their lines
- stocks: current (quantity, average_cost) per store and product
- ledger_entries: append-only movements with before/after snapshots
- reprocessing_runs / reprocessing_run_items: audit of retroactive replays
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '3f9c2a71d0b4'
down_revision = None
branch_labels = None
depends_on = None


def _document_columns():
    return [
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='DRAFT'),
        sa.Column('date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('notes', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
    ]


def _create_document_table(name, extra_columns, extra_constraints=()):
    op.create_table(
        name,
        *_document_columns(),
        *extra_columns,
        sa.PrimaryKeyConstraint('id'),
        *extra_constraints,
        sqlite_autoincrement=True
    )
    op.create_index(f'ix_{name}_status', name, ['status'])
    op.create_index(f'ix_{name}_date', name, ['date'])


def _create_line_table(name, document_table, price_columns):
    op.create_table(
        name,
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('document_id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('quantity', sa.Numeric(18, 3), nullable=False),
        *price_columns,
        sa.ForeignKeyConstraint(['document_id'], [f'{document_table}.id'], ),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('document_id', 'product_id', name=f'uq_{name}_document_product'),
        sqlite_autoincrement=True
    )
    op.create_index(f'ix_{name}_document_id', name, ['document_id'])
    op.create_index(f'ix_{name}_product_id', name, ['product_id'])


def upgrade():
    # ============================================================================
    # Catalog
    # ============================================================================
    op.create_table(
        'stores',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('code', sa.String(length=32), nullable=False),
        sa.Column('name', sa.String(length=120), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('code', name='uq_stores_code'),
        sqlite_autoincrement=True
    )
    op.create_table(
        'products',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('sku', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('sku', name='uq_products_sku'),
        sqlite_autoincrement=True
    )

    # ============================================================================
    # Causing documents
    # ============================================================================
    _create_document_table(
        'purchase_documents',
        [
            sa.Column('store_id', sa.Integer(), nullable=False),
            sa.Column('vendor_name', sa.String(length=255), nullable=True),
        ],
        [sa.ForeignKeyConstraint(['store_id'], ['stores.id'], )],
    )
    _create_document_table('sale_documents', [sa.Column('store_id', sa.Integer(), nullable=False)],
                           [sa.ForeignKeyConstraint(['store_id'], ['stores.id'], )])
    _create_document_table('return_documents', [sa.Column('store_id', sa.Integer(), nullable=False)],
                           [sa.ForeignKeyConstraint(['store_id'], ['stores.id'], )])
    _create_document_table('adjustment_documents', [sa.Column('store_id', sa.Integer(), nullable=False)],
                           [sa.ForeignKeyConstraint(['store_id'], ['stores.id'], )])
    for name in ('purchase_documents', 'sale_documents', 'return_documents', 'adjustment_documents'):
        op.create_index(f'ix_{name}_store_id', name, ['store_id'])

    _create_document_table(
        'transfer_documents',
        [
            sa.Column('source_store_id', sa.Integer(), nullable=False),
            sa.Column('destination_store_id', sa.Integer(), nullable=False),
        ],
        [
            sa.ForeignKeyConstraint(['source_store_id'], ['stores.id'], ),
            sa.ForeignKeyConstraint(['destination_store_id'], ['stores.id'], ),
            sa.CheckConstraint('source_store_id <> destination_store_id',
                               name='ck_transfer_documents_distinct_stores'),
        ],
    )
    op.create_index('ix_transfer_documents_source_store_id', 'transfer_documents', ['source_store_id'])
    op.create_index('ix_transfer_documents_destination_store_id', 'transfer_documents', ['destination_store_id'])

    _create_line_table('purchase_lines', 'purchase_documents',
                       [sa.Column('price', sa.Numeric(18, 2), nullable=False)])
    _create_line_table('sale_lines', 'sale_documents', [
        sa.Column('price', sa.Numeric(18, 2), nullable=False),
        sa.Column('cost_price', sa.Numeric(18, 2), nullable=True),
    ])
    _create_line_table('return_lines', 'return_documents',
                       [sa.Column('price', sa.Numeric(18, 2), nullable=True)])
    _create_line_table('adjustment_lines', 'adjustment_documents',
                       [sa.Column('price', sa.Numeric(18, 2), nullable=True)])
    _create_line_table('transfer_lines', 'transfer_documents',
                       [sa.Column('cost_price', sa.Numeric(18, 2), nullable=True)])

    # ============================================================================
    # stocks: current position per (store, product), cache of the ledger fold
    # ============================================================================
    op.create_table(
        'stocks',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('store_id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('quantity', sa.Numeric(18, 3), nullable=False),
        sa.Column('average_cost', sa.Numeric(18, 2), nullable=False),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.ForeignKeyConstraint(['store_id'], ['stores.id'], ),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('store_id', 'product_id', name='uq_stocks_store_product'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_stocks_store_id', 'stocks', ['store_id'])
    op.create_index('ix_stocks_product_id', 'stocks', ['product_id'])

    # ============================================================================
    # ledger_entries: append-only, healed only through REVERSAL/CORRECTION rows
    # ============================================================================
    op.create_table(
        'ledger_entries',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('movement_type', sa.String(length=16), nullable=False),
        sa.Column('store_id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),

        # Business time (document date) vs system time (insertion order)
        sa.Column('date', sa.DateTime(timezone=True), nullable=False),

        sa.Column('quantity_delta', sa.Numeric(18, 3), nullable=False),
        sa.Column('quantity_before', sa.Numeric(18, 3), nullable=False),
        sa.Column('quantity_after', sa.Numeric(18, 3), nullable=False),
        sa.Column('cost_before', sa.Numeric(18, 2), nullable=False),
        sa.Column('cost_after', sa.Numeric(18, 2), nullable=False),
        sa.Column('monetary_amount', sa.Numeric(20, 5), nullable=False),

        sa.Column('reason', sa.String(length=16), nullable=False, server_default='INITIAL'),
        sa.Column('parent_entry_id', sa.Integer(), nullable=True),
        sa.Column('causation_id', sa.String(length=64), nullable=True),
        sa.Column('batch_id', sa.String(length=64), nullable=True),

        sa.Column('purchase_document_id', sa.Integer(), nullable=True),
        sa.Column('sale_document_id', sa.Integer(), nullable=True),
        sa.Column('return_document_id', sa.Integer(), nullable=True),
        sa.Column('adjustment_document_id', sa.Integer(), nullable=True),
        sa.Column('transfer_document_id', sa.Integer(), nullable=True),

        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),

        sa.ForeignKeyConstraint(['store_id'], ['stores.id'], ),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ),
        sa.ForeignKeyConstraint(['parent_entry_id'], ['ledger_entries.id'], ),
        sa.ForeignKeyConstraint(['purchase_document_id'], ['purchase_documents.id'], ),
        sa.ForeignKeyConstraint(['sale_document_id'], ['sale_documents.id'], ),
        sa.ForeignKeyConstraint(['return_document_id'], ['return_documents.id'], ),
        sa.ForeignKeyConstraint(['adjustment_document_id'], ['adjustment_documents.id'], ),
        sa.ForeignKeyConstraint(['transfer_document_id'], ['transfer_documents.id'], ),
        sa.CheckConstraint(
            "(CASE WHEN purchase_document_id IS NULL THEN 0 ELSE 1 END)"
            " + (CASE WHEN sale_document_id IS NULL THEN 0 ELSE 1 END)"
            " + (CASE WHEN return_document_id IS NULL THEN 0 ELSE 1 END)"
            " + (CASE WHEN adjustment_document_id IS NULL THEN 0 ELSE 1 END)"
            " + (CASE WHEN transfer_document_id IS NULL THEN 0 ELSE 1 END) = 1",
            name='ck_ledger_entries_single_document',
        ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_ledger_store_product_date', 'ledger_entries', ['store_id', 'product_id', 'date'])
    for column in (
        'movement_type', 'store_id', 'product_id', 'date', 'reason', 'parent_entry_id',
        'causation_id', 'batch_id', 'purchase_document_id', 'sale_document_id',
        'return_document_id', 'adjustment_document_id', 'transfer_document_id',
    ):
        op.create_index(f'ix_ledger_entries_{column}', 'ledger_entries', [column])

    # ============================================================================
    # Reprocessing audit
    # ============================================================================
    op.create_table(
        'reprocessing_runs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('causation_id', sa.String(length=64), nullable=False),
        sa.Column('document_ref', sa.String(length=64), nullable=True),
        sa.Column('from_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='PENDING'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('finished_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_reprocessing_runs_causation_id', 'reprocessing_runs', ['causation_id'])
    op.create_index('ix_reprocessing_runs_status', 'reprocessing_runs', ['status'])

    op.create_table(
        'reprocessing_run_items',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('run_id', sa.Integer(), nullable=False),
        sa.Column('store_id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('old_quantity', sa.Numeric(18, 3), nullable=True),
        sa.Column('new_quantity', sa.Numeric(18, 3), nullable=True),
        sa.Column('old_average_cost', sa.Numeric(18, 2), nullable=True),
        sa.Column('new_average_cost', sa.Numeric(18, 2), nullable=True),
        sa.Column('passes', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('repairs', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('converged', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['run_id'], ['reprocessing_runs.id'], ),
        sa.ForeignKeyConstraint(['store_id'], ['stores.id'], ),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_reprocessing_run_items_run_id', 'reprocessing_run_items', ['run_id'])
    op.create_index('ix_reprocessing_items_store_product', 'reprocessing_run_items', ['store_id', 'product_id'])


def downgrade():
    """Drop all tables (destructive operation)."""
    op.drop_table('reprocessing_run_items')
    op.drop_table('reprocessing_runs')
    op.drop_table('ledger_entries')
    op.drop_table('stocks')
    for name in ('transfer_lines', 'adjustment_lines', 'return_lines', 'sale_lines', 'purchase_lines'):
        op.drop_table(name)
    for name in ('transfer_documents', 'adjustment_documents', 'return_documents',
                 'sale_documents', 'purchase_documents'):
        op.drop_table(name)
    op.drop_table('products')
    op.drop_table('stores')
