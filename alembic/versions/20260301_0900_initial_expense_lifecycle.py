"""Initial expense lifecycle schema - directory, reports, policy caps, ledger batches, audit chain

Revision ID: 20260301_0900_initial
Revises:
Create Date: 2026-03-01 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '20260301_0900_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


employee_role = postgresql.ENUM('employee', 'manager', 'finance', 'admin', name='employee_role', create_type=False)
report_status = postgresql.ENUM(
    'draft', 'submitted', 'manager_approved', 'needs_changes', 'denied', 'finance_finalized',
    name='report_status', create_type=False,
)
expense_category = postgresql.ENUM(
    'airfare', 'lodging', 'meal', 'ground_transport', 'mileage', 'supplies', 'other',
    name='expense_category', create_type=False,
)
approval_decision = postgresql.ENUM('approved', 'denied', 'needs_changes', name='approval_decision', create_type=False)
cap_limit_type = postgresql.ENUM('per_diem', 'per_item', name='cap_limit_type', create_type=False)
batch_status = postgresql.ENUM('pending', 'submitting', 'exported', 'failed', name='batch_status', create_type=False)


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    # Create ENUMs
    for enum_type in (employee_role, report_status, expense_category, approval_decision, cap_limit_type, batch_status):
        enum_type.create(op.get_bind(), checkfirst=True)

    # =====================================================
    # EMPLOYEE DIRECTORY
    # =====================================================
    op.create_table(
        'employees',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('hr_identifier', sa.String(64), nullable=False),
        sa.Column('full_name', sa.String(200), nullable=False),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('department', sa.String(100), nullable=True),
        sa.Column('role', employee_role, nullable=False, server_default='employee'),
        sa.Column('manager_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('employees.id', ondelete='SET NULL'), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('hr_identifier', name='uq_employees_hr_identifier'),
    )
    op.create_index('ix_employees_manager_id', 'employees', ['manager_id'])

    # =====================================================
    # POLICY CONFIGURATION
    # =====================================================
    op.create_table(
        'policy_caps',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('policy_key', sa.String(100), nullable=False),
        sa.Column('category', expense_category, nullable=True),
        sa.Column('limit_type', cap_limit_type, nullable=False),
        sa.Column('amount_cents', sa.BigInteger(), nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('active_from', sa.Date(), nullable=False),
        sa.Column('active_to', sa.Date(), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_policy_caps_policy_key', 'policy_caps', ['policy_key'])

    op.create_table(
        'mileage_rates',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('effective_date', sa.Date(), nullable=False),
        sa.Column('rate_cents_per_mile', sa.Numeric(precision=10, scale=3), nullable=False),
        sa.Column('source_reference', sa.String(200), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('effective_date', name='uq_mileage_rates_effective_date'),
    )

    # =====================================================
    # LEDGER BATCHES (referenced by expense_reports)
    # =====================================================
    op.create_table(
        'netsuite_batches',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('batch_reference', sa.String(50), nullable=False),
        sa.Column('finalized_by', postgresql.UUID(as_uuid=True), sa.ForeignKey('employees.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('finalized_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('status', batch_status, nullable=False, server_default='pending'),
        sa.Column('attempt_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('claim_token', sa.String(64), nullable=True),
        sa.Column('claimed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('submission_timed_out', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('exported_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('ledger_reference', sa.String(100), nullable=True),
        sa.Column('ledger_response', postgresql.JSONB(), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('batch_reference', name='uq_netsuite_batches_batch_reference'),
    )
    op.create_index('ix_netsuite_batches_status', 'netsuite_batches', ['status'])

    # =====================================================
    # EXPENSE REPORTS
    # =====================================================
    op.create_table(
        'expense_reports',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('employee_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('employees.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('reporting_period_start', sa.Date(), nullable=False),
        sa.Column('reporting_period_end', sa.Date(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='USD'),
        sa.Column('total_amount_cents', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('total_reimbursable_cents', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('status', report_status, nullable=False, server_default='draft'),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('submitted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('finalized_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('export_batch_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('netsuite_batches.id', ondelete='SET NULL'), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_expense_reports_employee_id', 'expense_reports', ['employee_id'])
    op.create_index('ix_expense_reports_status', 'expense_reports', ['status'])
    op.create_index('ix_expense_reports_export_batch_id', 'expense_reports', ['export_batch_id'])

    op.create_table(
        'expense_items',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('report_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('expense_reports.id', ondelete='CASCADE'), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('expense_date', sa.Date(), nullable=False),
        sa.Column('category', expense_category, nullable=False),
        sa.Column('amount_cents', sa.BigInteger(), nullable=False),
        sa.Column('reimbursable', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('payment_method', sa.String(50), nullable=False, server_default='personal_card'),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('attendees', sa.Text(), nullable=True),
        sa.Column('location', sa.String(200), nullable=True),
        sa.Column('distance_miles', sa.Numeric(precision=10, scale=2), nullable=True),
        sa.Column('gl_account_code', sa.String(20), nullable=True),
        sa.Column('is_policy_exception', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('policy_exception_reasons', postgresql.JSONB(), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_expense_items_report_id', 'expense_items', ['report_id'])
    op.create_index('ix_expense_items_category', 'expense_items', ['category'])

    op.create_table(
        'receipts',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('expense_item_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('expense_items.id', ondelete='CASCADE'), nullable=False),
        sa.Column('file_key', sa.String(500), nullable=False),
        sa.Column('file_name', sa.String(255), nullable=False),
        sa.Column('mime_type', sa.String(100), nullable=False),
        sa.Column('size_bytes', sa.BigInteger(), nullable=False),
        sa.Column('uploaded_by', postgresql.UUID(as_uuid=True), sa.ForeignKey('employees.id', ondelete='SET NULL'), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_receipts_expense_item_id', 'receipts', ['expense_item_id'])

    op.create_table(
        'approvals',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('report_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('expense_reports.id', ondelete='CASCADE'), nullable=False),
        sa.Column('approver_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('employees.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('role', sa.String(20), nullable=False),
        sa.Column('decision', approval_decision, nullable=False),
        sa.Column('comment', sa.Text(), nullable=True),
        sa.Column('override_justification', sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_approvals_report_id', 'approvals', ['report_id'])
    op.create_index('ix_approvals_approver_id', 'approvals', ['approver_id'])

    # =====================================================
    # JOURNAL LINES
    # =====================================================
    op.create_table(
        'journal_lines',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('batch_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('netsuite_batches.id', ondelete='CASCADE'), nullable=False),
        sa.Column('report_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('expense_reports.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('expense_item_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('expense_items.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('line_number', sa.Integer(), nullable=False),
        sa.Column('gl_account', sa.String(20), nullable=False),
        sa.Column('amount_cents', sa.BigInteger(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('department', sa.String(100), nullable=True),
        sa.Column('memo', sa.String(500), nullable=True),
        sa.Column('tax_code', sa.String(30), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('batch_id', 'line_number', name='uq_journal_lines_batch_line'),
        sa.UniqueConstraint('batch_id', 'expense_item_id', name='uq_journal_lines_batch_item'),
    )
    op.create_index('ix_journal_lines_batch_id', 'journal_lines', ['batch_id'])
    op.create_index('ix_journal_lines_report_id', 'journal_lines', ['report_id'])

    # =====================================================
    # AUDIT CHAIN (append-only)
    # =====================================================
    op.create_table(
        'audit_logs',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('entity_type', sa.String(50), nullable=False),
        sa.Column('entity_id', sa.String(64), nullable=False),
        sa.Column('sequence', sa.Integer(), nullable=False),
        sa.Column('event_type', sa.String(50), nullable=False),
        sa.Column('old_value', postgresql.JSONB(), nullable=True),
        sa.Column('new_value', postgresql.JSONB(), nullable=True),
        sa.Column('performed_by', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('performed_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('ip_address', sa.String(45), nullable=True),
        sa.Column('user_agent', sa.Text(), nullable=True),
        sa.Column('previous_hash', sa.String(64), nullable=False),
        sa.Column('signature_hash', sa.String(64), nullable=False),
        sa.UniqueConstraint('entity_type', 'entity_id', 'sequence', name='uq_audit_logs_entity_sequence'),
        sa.UniqueConstraint('signature_hash', name='uq_audit_logs_signature_hash'),
    )
    op.create_index('ix_audit_logs_entity_lookup', 'audit_logs', ['entity_type', 'entity_id'])
    op.create_index('ix_audit_logs_event_type', 'audit_logs', ['event_type'])
    op.create_index('ix_audit_logs_performed_by', 'audit_logs', ['performed_by'])

    # Reject UPDATE/DELETE at the database level as well
    op.execute("""
        CREATE OR REPLACE FUNCTION audit_logs_reject_mutation() RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION 'audit_logs is append-only';
        END;
        $$ LANGUAGE plpgsql
    """)
    op.execute("""
        CREATE TRIGGER audit_logs_append_only
        BEFORE UPDATE OR DELETE ON audit_logs
        FOR EACH ROW EXECUTE FUNCTION audit_logs_reject_mutation()
    """)


def downgrade() -> None:
    """Drop all expense lifecycle tables."""
    op.execute('DROP TRIGGER IF EXISTS audit_logs_append_only ON audit_logs')
    op.execute('DROP FUNCTION IF EXISTS audit_logs_reject_mutation()')

    op.drop_table('audit_logs')
    op.drop_table('journal_lines')
    op.drop_table('approvals')
    op.drop_table('receipts')
    op.drop_table('expense_items')
    op.drop_table('expense_reports')
    op.drop_table('netsuite_batches')
    op.drop_table('mileage_rates')
    op.drop_table('policy_caps')
    op.drop_table('employees')

    # Drop enums
    for enum_type in (batch_status, cap_limit_type, approval_decision, expense_category, report_status, employee_role):
        enum_type.drop(op.get_bind(), checkfirst=True)
