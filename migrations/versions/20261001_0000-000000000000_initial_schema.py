"""initial_schema

Revision ID: 000000000000
Revises:
Create Date: 2026-10-01 00:00:00.000000

Leases, residents, verification periods, income documents and override requests.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '000000000000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create enums
    op.execute("CREATE TYPE verificationstatus AS ENUM ('IN_PROGRESS', 'FINALIZED')")
    op.execute("CREATE TYPE verificationreason AS ENUM ('ANNUAL_RECERTIFICATION', 'INITIAL_CERTIFICATION', 'NEW_LEASE_TERM', 'OTHER')")
    op.execute("CREATE TYPE documenttype AS ENUM ('W2', 'PAYSTUB', 'BANK_STATEMENT', 'OFFER_LETTER', 'SOCIAL_SECURITY')")
    op.execute("CREATE TYPE documentstatus AS ENUM ('PROCESSING', 'COMPLETED', 'NEEDS_REVIEW')")
    op.execute("CREATE TYPE socialsecurityform AS ENUM ('SSA_1099', 'BENEFIT_LETTER')")
    op.execute("CREATE TYPE overridetype AS ENUM ('VALIDATION_EXCEPTION', 'INCOME_DISCREPANCY', 'DOCUMENT_REVIEW')")
    op.execute("CREATE TYPE overridestatus AS ENUM ('PENDING', 'APPROVED', 'DENIED')")

    # Create leases table
    op.create_table('leases',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('unit_label', sa.String(length=50), nullable=True),
        sa.Column('lease_start_date', sa.Date(), nullable=True),
        sa.Column('lease_end_date', sa.Date(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )

    # Create residents table
    op.create_table('residents',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('lease_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('annualized_income', sa.Numeric(12, 2), nullable=True),
        sa.Column('calculated_annualized_income', sa.Numeric(12, 2), nullable=True),
        sa.Column('verified_income', sa.Numeric(12, 2), nullable=True),
        sa.Column('income_finalized', sa.Boolean(), nullable=False),
        sa.Column('has_no_income', sa.Boolean(), nullable=False),
        sa.Column('finalized_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['lease_id'], ['leases.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_residents_lease_id', 'residents', ['lease_id'])

    # Create income_verifications table
    op.create_table('income_verifications',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('lease_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('status', postgresql.ENUM('IN_PROGRESS', 'FINALIZED', name='verificationstatus', create_type=False), nullable=False),
        sa.Column('reason', postgresql.ENUM('ANNUAL_RECERTIFICATION', 'INITIAL_CERTIFICATION', 'NEW_LEASE_TERM', 'OTHER', name='verificationreason', create_type=False), nullable=False),
        sa.Column('verification_period_start', sa.Date(), nullable=True),
        sa.Column('verification_period_end', sa.Date(), nullable=True),
        sa.Column('due_date', sa.Date(), nullable=True),
        sa.Column('calculated_verified_income', sa.Numeric(12, 2), nullable=True),
        sa.Column('finalized_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('lease_year', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['lease_id'], ['leases.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_income_verifications_lease_id', 'income_verifications', ['lease_id'])
    # At most one IN_PROGRESS verification per lease
    op.create_index(
        'uq_income_verifications_one_in_progress',
        'income_verifications',
        ['lease_id'],
        unique=True,
        postgresql_where=sa.text("status = 'IN_PROGRESS'"),
    )

    # Create income_documents table
    op.create_table('income_documents',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('verification_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('resident_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('document_type', postgresql.ENUM('W2', 'PAYSTUB', 'BANK_STATEMENT', 'OFFER_LETTER', 'SOCIAL_SECURITY', name='documenttype', create_type=False), nullable=False),
        sa.Column('status', postgresql.ENUM('PROCESSING', 'COMPLETED', 'NEEDS_REVIEW', name='documentstatus', create_type=False), nullable=False),
        sa.Column('upload_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('document_date', sa.Date(), nullable=True),
        sa.Column('original_filename', sa.String(length=255), nullable=True),
        sa.Column('file_path', sa.Text(), nullable=True),
        sa.Column('content_hash', sa.String(length=64), nullable=True),
        sa.Column('box1_wages', sa.Numeric(12, 2), nullable=True),
        sa.Column('box3_ss_wages', sa.Numeric(12, 2), nullable=True),
        sa.Column('box5_med_wages', sa.Numeric(12, 2), nullable=True),
        sa.Column('tax_year', sa.String(length=4), nullable=True),
        sa.Column('pay_period_start_date', sa.Date(), nullable=True),
        sa.Column('pay_period_end_date', sa.Date(), nullable=True),
        sa.Column('gross_pay_amount', sa.Numeric(12, 2), nullable=True),
        sa.Column('pay_frequency', sa.String(length=20), nullable=True),
        sa.Column('employer_name', sa.String(length=255), nullable=True),
        sa.Column('employee_name', sa.String(length=255), nullable=True),
        sa.Column('social_security_form', postgresql.ENUM('SSA_1099', 'BENEFIT_LETTER', name='socialsecurityform', create_type=False), nullable=True),
        sa.Column('monthly_benefit', sa.Numeric(12, 2), nullable=True),
        sa.Column('annual_benefit', sa.Numeric(12, 2), nullable=True),
        sa.Column('entered_annual_income', sa.Numeric(12, 2), nullable=True),
        sa.Column('calculated_annualized_income', sa.Numeric(12, 2), nullable=True),
        sa.Column('extraction_confidence', sa.Float(), nullable=True),
        sa.Column('validation_result', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('review_reason', sa.Text(), nullable=True),
        sa.Column('processing_started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('processing_completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['verification_id'], ['income_verifications.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['resident_id'], ['residents.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_income_documents_verification_id', 'income_documents', ['verification_id'])
    op.create_index('ix_income_documents_resident_type', 'income_documents', ['resident_id', 'document_type'])
    op.create_index('ix_income_documents_status', 'income_documents', ['status'])

    # Create override_requests table
    op.create_table('override_requests',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('type', postgresql.ENUM('VALIDATION_EXCEPTION', 'INCOME_DISCREPANCY', 'DOCUMENT_REVIEW', name='overridetype', create_type=False), nullable=False),
        sa.Column('status', postgresql.ENUM('PENDING', 'APPROVED', 'DENIED', name='overridestatus', create_type=False), nullable=False),
        sa.Column('user_explanation', sa.Text(), nullable=False),
        sa.Column('admin_notes', sa.Text(), nullable=True),
        sa.Column('document_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('resident_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('verification_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('requester_id', sa.String(length=255), nullable=False),
        sa.Column('reviewer_id', sa.String(length=255), nullable=True),
        sa.Column('reviewed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['document_id'], ['income_documents.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['resident_id'], ['residents.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['verification_id'], ['income_verifications.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_override_requests_status', 'override_requests', ['status'])
    op.create_index('ix_override_requests_document_id', 'override_requests', ['document_id'])


def downgrade() -> None:
    op.drop_table('override_requests')
    op.drop_table('income_documents')
    op.drop_table('income_verifications')
    op.drop_table('residents')
    op.drop_table('leases')

    op.execute('DROP TYPE IF EXISTS overridestatus')
    op.execute('DROP TYPE IF EXISTS overridetype')
    op.execute('DROP TYPE IF EXISTS socialsecurityform')
    op.execute('DROP TYPE IF EXISTS documentstatus')
    op.execute('DROP TYPE IF EXISTS documenttype')
    op.execute('DROP TYPE IF EXISTS verificationreason')
    op.execute('DROP TYPE IF EXISTS verificationstatus')
