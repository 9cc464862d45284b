"""Initial schema: master data, numbered documents, kardex, approval outbox

Revision ID: 20261016_initial
Revises:
Create Date: 2026-10-16

This migration adds:
1. Clients, warehouses, products and price list entries
2. Documents (all families) and document lines
3. Sequence counters (one row per family and scope)
4. Ledger entries (append-only kardex) and cached stock balances
5. Submission outbox for the approval service
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20261016_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # ==========================================================================
    # 1. MASTER DATA
    # ==========================================================================
    op.create_table('clients',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('code', sa.String(length=32), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('tax_id', sa.String(length=32), nullable=True),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.PrimaryKeyConstraint('id', name='pk_clients'),
        sa.UniqueConstraint('code', name='uq_clients_code'),
        sqlite_autoincrement=True
    )

    op.create_table('warehouses',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('code', sa.String(length=16), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.PrimaryKeyConstraint('id', name='pk_warehouses'),
        sa.UniqueConstraint('code', name='uq_warehouses_code'),
        sqlite_autoincrement=True
    )

    op.create_table('products',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('sku', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('tax_rate', sa.Numeric(precision=5, scale=2), nullable=False, server_default='0'),
        sa.Column('last_cost', sa.Numeric(precision=18, scale=4), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.PrimaryKeyConstraint('id', name='pk_products'),
        sa.UniqueConstraint('sku', name='uq_products_sku'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('products', schema=None) as batch_op:
        batch_op.create_index('ix_products_active_name', ['is_active', 'name'], unique=False)

    op.create_table('price_list_entries',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('price_list', sa.String(length=8), nullable=False),
        sa.Column('price', sa.Numeric(precision=18, scale=2), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], name='fk_price_list_entries_product_id_products'),
        sa.PrimaryKeyConstraint('id', name='pk_price_list_entries'),
        sa.UniqueConstraint('product_id', 'price_list', name='uq_price_list_entries_product_list'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('price_list_entries', schema=None) as batch_op:
        batch_op.create_index('ix_price_list_entries_product_id', ['product_id'], unique=False)

    # ==========================================================================
    # 2. DOCUMENTS
    # ==========================================================================
    op.create_table('documents',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('family', sa.String(length=24), nullable=False),
        sa.Column('sequence_number', sa.Integer(), nullable=False),
        sa.Column('document_number', sa.String(length=32), nullable=False),
        sa.Column('scope_key', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('warehouse_id', sa.Integer(), nullable=True),
        sa.Column('client_id', sa.Integer(), nullable=True),
        sa.Column('supplier_name', sa.String(length=255), nullable=True),
        sa.Column('origin_id', sa.Integer(), nullable=True),
        sa.Column('consolidated_into_id', sa.Integer(), nullable=True),
        sa.Column('subtotal', sa.Numeric(precision=18, scale=2), nullable=False, server_default='0'),
        sa.Column('discount', sa.Numeric(precision=18, scale=2), nullable=False, server_default='0'),
        sa.Column('tax', sa.Numeric(precision=18, scale=2), nullable=False, server_default='0'),
        sa.Column('total', sa.Numeric(precision=18, scale=2), nullable=False, server_default='0'),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='DRAFT'),
        sa.Column('approval_token', sa.String(length=255), nullable=True),
        sa.Column('rejection_reason', sa.Text(), nullable=True),
        sa.Column('rejection_kind', sa.String(length=16), nullable=True),
        sa.Column('dispatch_status', sa.String(length=16), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_by', sa.String(length=64), nullable=True),
        sa.Column('issued_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('committed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('submitted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('approved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('rejected_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('voided_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('void_reason', sa.String(length=255), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.ForeignKeyConstraint(['warehouse_id'], ['warehouses.id'], name='fk_documents_warehouse_id_warehouses'),
        sa.ForeignKeyConstraint(['client_id'], ['clients.id'], name='fk_documents_client_id_clients'),
        sa.ForeignKeyConstraint(['origin_id'], ['documents.id'], name='fk_documents_origin_id_documents'),
        sa.ForeignKeyConstraint(['consolidated_into_id'], ['documents.id'], name='fk_documents_consolidated_into_id_documents'),
        sa.PrimaryKeyConstraint('id', name='pk_documents'),
        sa.UniqueConstraint('family', 'scope_key', 'sequence_number', name='uq_documents_family_scope_number'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('documents', schema=None) as batch_op:
        batch_op.create_index('ix_documents_family', ['family'], unique=False)
        batch_op.create_index('ix_documents_document_number', ['document_number'], unique=False)
        batch_op.create_index('ix_documents_warehouse_id', ['warehouse_id'], unique=False)
        batch_op.create_index('ix_documents_client_id', ['client_id'], unique=False)
        batch_op.create_index('ix_documents_origin_id', ['origin_id'], unique=False)
        batch_op.create_index('ix_documents_consolidated_into_id', ['consolidated_into_id'], unique=False)
        batch_op.create_index('ix_documents_status', ['status'], unique=False)
        batch_op.create_index('ix_documents_family_status', ['family', 'status'], unique=False)
        batch_op.create_index('ix_documents_family_scope_id', ['family', 'scope_key', 'id'], unique=False)

    op.create_table('document_lines',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('document_id', sa.Integer(), nullable=False),
        sa.Column('line_number', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('origin_line_id', sa.Integer(), nullable=True),
        sa.Column('quantity', sa.Numeric(precision=18, scale=4), nullable=False),
        sa.Column('unit_price', sa.Numeric(precision=18, scale=2), nullable=False, server_default='0'),
        sa.Column('discount_rate', sa.Numeric(precision=5, scale=2), nullable=False, server_default='0'),
        sa.Column('tax_rate', sa.Numeric(precision=5, scale=2), nullable=False, server_default='0'),
        sa.Column('subtotal', sa.Numeric(precision=18, scale=2), nullable=False, server_default='0'),
        sa.Column('discount', sa.Numeric(precision=18, scale=2), nullable=False, server_default='0'),
        sa.Column('tax', sa.Numeric(precision=18, scale=2), nullable=False, server_default='0'),
        sa.Column('total', sa.Numeric(precision=18, scale=2), nullable=False, server_default='0'),
        sa.Column('received_quantity', sa.Numeric(precision=18, scale=4), nullable=False, server_default='0'),
        sa.CheckConstraint('quantity > 0', name='ck_document_lines_positive_quantity'),
        sa.ForeignKeyConstraint(['document_id'], ['documents.id'], name='fk_document_lines_document_id_documents'),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], name='fk_document_lines_product_id_products'),
        sa.ForeignKeyConstraint(['origin_line_id'], ['document_lines.id'], name='fk_document_lines_origin_line_id_document_lines'),
        sa.PrimaryKeyConstraint('id', name='pk_document_lines'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('document_lines', schema=None) as batch_op:
        batch_op.create_index('ix_document_lines_document_id', ['document_id'], unique=False)
        batch_op.create_index('ix_document_lines_product_id', ['product_id'], unique=False)
        batch_op.create_index('ix_document_lines_origin_line', ['origin_line_id'], unique=False)

    # ==========================================================================
    # 3. SEQUENCE COUNTERS
    # ==========================================================================
    op.create_table('sequence_counters',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('family', sa.String(length=24), nullable=False),
        sa.Column('scope_key', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_number', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.PrimaryKeyConstraint('id', name='pk_sequence_counters'),
        sa.UniqueConstraint('family', 'scope_key', name='uq_sequence_counters_family_scope'),
        sqlite_autoincrement=True
    )

    # ==========================================================================
    # 4. KARDEX
    # ==========================================================================
    op.create_table('ledger_entries',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('warehouse_id', sa.Integer(), nullable=False),
        sa.Column('kind', sa.String(length=8), nullable=False),
        sa.Column('quantity', sa.Numeric(precision=18, scale=4), nullable=False),
        sa.Column('unit_cost', sa.Numeric(precision=18, scale=4), nullable=False, server_default='0'),
        sa.Column('unit_price', sa.Numeric(precision=18, scale=2), nullable=False, server_default='0'),
        sa.Column('base_price', sa.Numeric(precision=18, scale=4), nullable=False, server_default='0'),
        sa.Column('document_family', sa.String(length=24), nullable=False),
        sa.Column('document_id', sa.Integer(), nullable=False),
        sa.Column('document_number', sa.Integer(), nullable=False),
        sa.Column('reversal_of_id', sa.Integer(), nullable=True),
        sa.Column('balance_after', sa.Numeric(precision=18, scale=4), nullable=False),
        sa.Column('actor', sa.String(length=64), nullable=True),
        sa.Column('note', sa.String(length=255), nullable=True),
        sa.Column('occurred_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], name='fk_ledger_entries_product_id_products'),
        sa.ForeignKeyConstraint(['warehouse_id'], ['warehouses.id'], name='fk_ledger_entries_warehouse_id_warehouses'),
        sa.ForeignKeyConstraint(['reversal_of_id'], ['ledger_entries.id'], name='fk_ledger_entries_reversal_of_id_ledger_entries'),
        sa.PrimaryKeyConstraint('id', name='pk_ledger_entries'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('ledger_entries', schema=None) as batch_op:
        batch_op.create_index('ix_ledger_entries_product_id', ['product_id'], unique=False)
        batch_op.create_index('ix_ledger_entries_warehouse_id', ['warehouse_id'], unique=False)
        batch_op.create_index('ix_ledger_entries_reversal_of_id', ['reversal_of_id'], unique=False)
        batch_op.create_index('ix_ledger_entries_occurred_at', ['occurred_at'], unique=False)
        batch_op.create_index('ix_ledger_entries_product_warehouse_id', ['product_id', 'warehouse_id', 'id'], unique=False)
        batch_op.create_index('ix_ledger_entries_document', ['document_family', 'document_id'], unique=False)

    op.create_table('stock_balances',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('warehouse_id', sa.Integer(), nullable=False),
        sa.Column('on_hand', sa.Numeric(precision=18, scale=4), nullable=False, server_default='0'),
        sa.Column('value', sa.Numeric(precision=18, scale=2), nullable=False, server_default='0'),
        sa.Column('last_entry_id', sa.Integer(), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], name='fk_stock_balances_product_id_products'),
        sa.ForeignKeyConstraint(['warehouse_id'], ['warehouses.id'], name='fk_stock_balances_warehouse_id_warehouses'),
        sa.PrimaryKeyConstraint('id', name='pk_stock_balances'),
        sa.UniqueConstraint('product_id', 'warehouse_id', name='uq_stock_balances_product_warehouse'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('stock_balances', schema=None) as batch_op:
        batch_op.create_index('ix_stock_balances_product_id', ['product_id'], unique=False)
        batch_op.create_index('ix_stock_balances_warehouse_id', ['warehouse_id'], unique=False)

    # ==========================================================================
    # 5. APPROVAL OUTBOX
    # ==========================================================================
    op.create_table('submission_outbox',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('document_id', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='PENDING'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('enqueued_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('claimed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['document_id'], ['documents.id'], name='fk_submission_outbox_document_id_documents'),
        sa.PrimaryKeyConstraint('id', name='pk_submission_outbox'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('submission_outbox', schema=None) as batch_op:
        batch_op.create_index('ix_submission_outbox_document_id', ['document_id'], unique=False)
        batch_op.create_index('ix_submission_outbox_status_id', ['status', 'id'], unique=False)


def downgrade():
    op.drop_table('submission_outbox')
    op.drop_table('stock_balances')
    op.drop_table('ledger_entries')
    op.drop_table('sequence_counters')
    op.drop_table('document_lines')
    op.drop_table('documents')
    op.drop_table('price_list_entries')
    op.drop_table('products')
    op.drop_table('warehouses')
    op.drop_table('clients')
