"""Initial ledger schema

Revision ID: 001
Revises:
Create Date: 2026-10-17

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# Enum labels are the Python member names, as SQLAlchemy stores them
ENUMS = {
    'periodtype': ('MONTHLY', 'QUARTERLY', 'YTD', 'YEARLY'),
    'statementstatus': ('DRAFT', 'SUBMITTED', 'RECONCILIATION_ONLY', 'POSTED'),
    'linetype': ('INCOME', 'FEE', 'TAX_COLLECTED', 'ITC', 'EXPENSE', 'OTHER', 'METRIC'),
    'evidence': ('EXTRACTED', 'INFERRED'),
    'jobstatus': ('STARTED', 'SUCCEEDED', 'FAILED'),
    'ledgersourcetype': ('RECEIPT', 'STATEMENT', 'RECONCILIATION', 'MANUAL', 'ADJUSTMENT'),
    'receiptstatus': ('DRAFT', 'SUBMITTED', 'HOLD', 'READY_FOR_POSTING', 'POSTED'),
    'reconciliationstatus': ('PENDING', 'COMPLETED', 'FAILED'),
    'filesource': ('STATEMENT_UPLOAD', 'RECEIPT_UPLOAD'),
}


def uuid_type():
    return sa.String(36).with_variant(postgresql.UUID(as_uuid=True), 'postgresql')


def enum(name):
    return postgresql.ENUM(*ENUMS[name], name=name, create_type=False)


def money():
    return sa.Numeric(18, 2)


def upgrade() -> None:
    bind = op.get_bind()
    for name, labels in ENUMS.items():
        postgresql.ENUM(*labels, name=name).create(bind, checkfirst=True)

    op.create_table(
        'file_objects',
        sa.Column('id', uuid_type(), nullable=False),
        sa.Column('tenant_id', uuid_type(), nullable=False),
        sa.Column('blob_path', sa.String(500), nullable=False),
        sa.Column('sha256', sa.String(64), nullable=False),
        sa.Column('size', sa.BigInteger(), nullable=False),
        sa.Column('content_type', sa.String(100), nullable=False),
        sa.Column('original_name', sa.String(255), nullable=True),
        sa.Column('source', enum('filesource'), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_file_objects_tenant_id', 'file_objects', ['tenant_id'])
    op.create_index('ix_file_objects_tenant_source_sha', 'file_objects', ['tenant_id', 'source', 'sha256'])

    op.create_table(
        'statements',
        sa.Column('id', uuid_type(), nullable=False),
        sa.Column('tenant_id', uuid_type(), nullable=False),
        sa.Column('file_object_id', uuid_type(), nullable=True),
        sa.Column('provider', sa.String(100), nullable=False),
        sa.Column('period_type', enum('periodtype'), nullable=False),
        sa.Column('period_key', sa.String(20), nullable=False),
        sa.Column('period_start', sa.Date(), nullable=False),
        sa.Column('period_end', sa.Date(), nullable=False),
        sa.Column('vendor_name', sa.String(255), nullable=True),
        sa.Column('statement_total_amount', money(), nullable=True),
        sa.Column('tax_amount', money(), nullable=True),
        sa.Column('currency_code', sa.String(3), nullable=True),
        sa.Column('currency_evidence', enum('evidence'), nullable=True),
        sa.Column('status', enum('statementstatus'), nullable=False),
        sa.Column('income_total', money(), nullable=False),
        sa.Column('fee_total', money(), nullable=False),
        sa.Column('tax_total', money(), nullable=False),
        sa.Column('line_count', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['file_object_id'], ['file_objects.id']),
        sa.UniqueConstraint('tenant_id', 'provider', 'period_type', 'period_key', name='uq_statements_natural_key'),
    )
    op.create_index('ix_statements_tenant_id', 'statements', ['tenant_id'])
    op.create_index('ix_statements_tenant_provider_start', 'statements', ['tenant_id', 'provider', 'period_start'])

    op.create_table(
        'statement_lines',
        sa.Column('id', uuid_type(), nullable=False),
        sa.Column('tenant_id', uuid_type(), nullable=False),
        sa.Column('statement_id', uuid_type(), nullable=False),
        sa.Column('line_date', sa.Date(), nullable=False),
        sa.Column('line_type', enum('linetype'), nullable=False),
        sa.Column('description', sa.String(500), nullable=True),
        sa.Column('currency_code', sa.String(3), nullable=True),
        sa.Column('currency_evidence', enum('evidence'), nullable=False),
        sa.Column('classification_evidence', enum('evidence'), nullable=False),
        sa.Column('is_metric', sa.Boolean(), nullable=False),
        sa.Column('metric_key', sa.String(100), nullable=True),
        sa.Column('metric_value', sa.Numeric(18, 3), nullable=True),
        sa.Column('unit', sa.String(20), nullable=True),
        sa.Column('money_amount', money(), nullable=True),
        sa.Column('tax_amount', money(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['statement_id'], ['statements.id'], ondelete='CASCADE'),
        sa.CheckConstraint(
            'NOT (is_metric AND (money_amount IS NOT NULL OR tax_amount IS NOT NULL))',
            name='ck_statement_lines_metric_xor_money',
        ),
    )
    op.create_index('ix_statement_lines_tenant_id', 'statement_lines', ['tenant_id'])
    op.create_index('ix_statement_lines_statement_id', 'statement_lines', ['statement_id'])

    op.create_table(
        'receipts',
        sa.Column('id', uuid_type(), nullable=False),
        sa.Column('tenant_id', uuid_type(), nullable=False),
        sa.Column('file_object_id', uuid_type(), nullable=False),
        sa.Column('status', enum('receiptstatus'), nullable=False),
        sa.Column('hold_reason', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['file_object_id'], ['file_objects.id']),
    )
    op.create_index('ix_receipts_tenant_id', 'receipts', ['tenant_id'])

    op.create_table(
        'receipt_extractions',
        sa.Column('id', uuid_type(), nullable=False),
        sa.Column('tenant_id', uuid_type(), nullable=False),
        sa.Column('receipt_id', uuid_type(), nullable=False),
        sa.Column('model_version', sa.String(50), nullable=False),
        sa.Column('vendor_name', sa.String(255), nullable=True),
        sa.Column('receipt_date', sa.Date(), nullable=True),
        sa.Column('total', money(), nullable=True),
        sa.Column('tax', money(), nullable=True),
        sa.Column('currency_code', sa.String(3), nullable=True),
        sa.Column('confidence', sa.Numeric(9, 4), nullable=False),
        sa.Column('normalized_fields_json', sa.JSON(), nullable=True),
        sa.Column('raw_text', sa.Text(), nullable=True),
        sa.Column('extracted_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['receipt_id'], ['receipts.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_receipt_extractions_tenant_id', 'receipt_extractions', ['tenant_id'])

    op.create_table(
        'processing_jobs',
        sa.Column('id', uuid_type(), nullable=False),
        sa.Column('tenant_id', uuid_type(), nullable=False),
        sa.Column('job_type', sa.String(64), nullable=False),
        sa.Column('dedupe_key', sa.String(255), nullable=False),
        sa.Column('status', enum('jobstatus'), nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tenant_id', 'job_type', 'dedupe_key', name='uq_processing_jobs_dedupe'),
    )
    op.create_index('ix_processing_jobs_tenant_id', 'processing_jobs', ['tenant_id'])

    op.create_table(
        'ledger_entries',
        sa.Column('id', uuid_type(), nullable=False),
        sa.Column('tenant_id', uuid_type(), nullable=False),
        sa.Column('entry_date', sa.Date(), nullable=False),
        sa.Column('source_type', enum('ledgersourcetype'), nullable=False),
        sa.Column('source_id', sa.String(100), nullable=False),
        sa.Column('posted_by', sa.String(50), nullable=False),
        sa.Column('correlation_id', sa.String(64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tenant_id', 'source_type', 'source_id', name='uq_ledger_entries_source'),
    )
    op.create_index('ix_ledger_entries_tenant_id', 'ledger_entries', ['tenant_id'])
    op.create_index('ix_ledger_entries_entry_date', 'ledger_entries', ['entry_date'])

    op.create_table(
        'ledger_lines',
        sa.Column('id', uuid_type(), nullable=False),
        sa.Column('tenant_id', uuid_type(), nullable=False),
        sa.Column('ledger_entry_id', uuid_type(), nullable=False),
        sa.Column('line_type', enum('linetype'), nullable=False),
        sa.Column('category_id', uuid_type(), nullable=True),
        sa.Column('amount', money(), nullable=False),
        sa.Column('gst_hst', money(), nullable=False),
        sa.Column('deductible_pct', sa.Numeric(9, 4), nullable=False),
        sa.Column('memo', sa.String(500), nullable=True),
        sa.Column('account_code', sa.String(50), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['ledger_entry_id'], ['ledger_entries.id']),
    )
    op.create_index('ix_ledger_lines_tenant_id', 'ledger_lines', ['tenant_id'])
    op.create_index('ix_ledger_lines_ledger_entry_id', 'ledger_lines', ['ledger_entry_id'])

    op.create_table(
        'ledger_source_links',
        sa.Column('id', uuid_type(), nullable=False),
        sa.Column('tenant_id', uuid_type(), nullable=False),
        sa.Column('ledger_line_id', uuid_type(), nullable=False),
        sa.Column('receipt_id', uuid_type(), nullable=True),
        sa.Column('statement_line_id', uuid_type(), nullable=True),
        sa.Column('file_object_id', uuid_type(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['ledger_line_id'], ['ledger_lines.id']),
        sa.ForeignKeyConstraint(['receipt_id'], ['receipts.id']),
        sa.ForeignKeyConstraint(['file_object_id'], ['file_objects.id']),
        sa.UniqueConstraint('ledger_line_id', 'receipt_id', 'file_object_id', name='uq_ledger_source_links_receipt'),
        sa.UniqueConstraint(
            'ledger_line_id', 'statement_line_id', 'file_object_id',
            name='uq_ledger_source_links_statement_line',
        ),
    )
    op.create_index('ix_ledger_source_links_tenant_id', 'ledger_source_links', ['tenant_id'])
    op.create_index('ix_ledger_source_links_statement_line_id', 'ledger_source_links', ['statement_line_id'])
    op.create_index('ix_ledger_source_links_line', 'ledger_source_links', ['ledger_line_id'])

    op.create_table(
        'reconciliation_runs',
        sa.Column('id', uuid_type(), nullable=False),
        sa.Column('tenant_id', uuid_type(), nullable=False),
        sa.Column('provider', sa.String(100), nullable=False),
        sa.Column('period_type', sa.String(20), nullable=False, server_default='Yearly'),
        sa.Column('period_key', sa.String(20), nullable=False),
        sa.Column('yearly_statement_id', uuid_type(), nullable=True),
        sa.Column('monthly_income_total', money(), nullable=False),
        sa.Column('yearly_income_total', money(), nullable=False),
        sa.Column('variance_amount', money(), nullable=False),
        sa.Column('status', enum('reconciliationstatus'), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['yearly_statement_id'], ['statements.id']),
        sa.UniqueConstraint(
            'tenant_id', 'provider', 'period_type', 'period_key',
            name='uq_reconciliation_runs_natural_key',
        ),
    )
    op.create_index('ix_reconciliation_runs_tenant_id', 'reconciliation_runs', ['tenant_id'])

    op.create_table(
        'reconciliation_variances',
        sa.Column('id', uuid_type(), nullable=False),
        sa.Column('tenant_id', uuid_type(), nullable=False),
        sa.Column('reconciliation_run_id', uuid_type(), nullable=False),
        sa.Column('metric_key', sa.String(100), nullable=False),
        sa.Column('monthly_value', sa.Numeric(18, 3), nullable=False),
        sa.Column('yearly_value', sa.Numeric(18, 3), nullable=False),
        sa.Column('variance_amount', sa.Numeric(18, 3), nullable=False),
        sa.Column('notes', sa.String(500), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['reconciliation_run_id'], ['reconciliation_runs.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('reconciliation_run_id', 'metric_key', name='uq_reconciliation_variances_metric'),
    )
    op.create_index('ix_reconciliation_variances_tenant_id', 'reconciliation_variances', ['tenant_id'])

    op.create_table(
        'ledger_snapshots',
        sa.Column('id', uuid_type(), nullable=False),
        sa.Column('tenant_id', uuid_type(), nullable=False),
        sa.Column('period_type', sa.String(20), nullable=False),
        sa.Column('period_key', sa.String(20), nullable=False),
        sa.Column('calculated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('authority_score', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('evidence_pct', sa.Numeric(9, 4), nullable=False),
        sa.Column('estimated_pct', sa.Numeric(9, 4), nullable=False),
        sa.Column('totals_json', sa.JSON(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tenant_id', 'period_type', 'period_key', name='uq_ledger_snapshots_period'),
    )
    op.create_index('ix_ledger_snapshots_tenant_id', 'ledger_snapshots', ['tenant_id'])

    op.create_table(
        'snapshot_details',
        sa.Column('id', uuid_type(), nullable=False),
        sa.Column('tenant_id', uuid_type(), nullable=False),
        sa.Column('snapshot_id', uuid_type(), nullable=False),
        sa.Column('metric_key', sa.String(50), nullable=False),
        sa.Column('value', money(), nullable=False),
        sa.Column('evidence_pct', sa.Numeric(9, 4), nullable=False),
        sa.Column('estimated_pct', sa.Numeric(9, 4), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['snapshot_id'], ['ledger_snapshots.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('snapshot_id', 'metric_key', name='uq_snapshot_details_metric'),
    )
    op.create_index('ix_snapshot_details_tenant_id', 'snapshot_details', ['tenant_id'])

    op.create_table(
        'audit_events',
        sa.Column('id', uuid_type(), nullable=False),
        sa.Column('tenant_id', uuid_type(), nullable=False),
        sa.Column('actor_user_id', sa.String(100), nullable=False),
        sa.Column('action', sa.String(100), nullable=False),
        sa.Column('entity_type', sa.String(100), nullable=False),
        sa.Column('entity_id', sa.String(100), nullable=False),
        sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('correlation_id', sa.String(64), nullable=True),
        sa.Column('metadata_json', sa.JSON(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_audit_events_tenant_occurred', 'audit_events', ['tenant_id', 'occurred_at'])
    op.create_index('ix_audit_events_entity', 'audit_events', ['entity_type', 'entity_id'])


def downgrade() -> None:
    for table in (
        'audit_events',
        'snapshot_details',
        'ledger_snapshots',
        'reconciliation_variances',
        'reconciliation_runs',
        'ledger_source_links',
        'ledger_lines',
        'ledger_entries',
        'processing_jobs',
        'receipt_extractions',
        'receipts',
        'statement_lines',
        'statements',
        'file_objects',
    ):
        op.drop_table(table)

    bind = op.get_bind()
    for name in ENUMS:
        sa.Enum(name=name).drop(bind, checkfirst=True)
