"""SQLAlchemy database models."""

import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from income_verification.database import Base

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


def local_now():
    """Return current time in local timezone."""
    return datetime.now().astimezone()


class VerificationStatus(str, enum.Enum):
    """Verification period status enumeration."""

    IN_PROGRESS = "IN_PROGRESS"
    FINALIZED = "FINALIZED"


class VerificationReason(str, enum.Enum):
    """Why a verification period was opened."""

    ANNUAL_RECERTIFICATION = "ANNUAL_RECERTIFICATION"
    INITIAL_CERTIFICATION = "INITIAL_CERTIFICATION"
    NEW_LEASE_TERM = "NEW_LEASE_TERM"
    OTHER = "OTHER"


class DocumentType(str, enum.Enum):
    """Income document type enumeration."""

    W2 = "W2"
    PAYSTUB = "PAYSTUB"
    BANK_STATEMENT = "BANK_STATEMENT"
    OFFER_LETTER = "OFFER_LETTER"
    SOCIAL_SECURITY = "SOCIAL_SECURITY"


class DocumentStatus(str, enum.Enum):
    """Income document status enumeration."""

    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    NEEDS_REVIEW = "NEEDS_REVIEW"


class SocialSecurityForm(str, enum.Enum):
    """Which Social Security artifact was detected."""

    SSA_1099 = "SSA_1099"
    BENEFIT_LETTER = "BENEFIT_LETTER"


class OverrideType(str, enum.Enum):
    """Override request type enumeration."""

    VALIDATION_EXCEPTION = "VALIDATION_EXCEPTION"
    INCOME_DISCREPANCY = "INCOME_DISCREPANCY"
    DOCUMENT_REVIEW = "DOCUMENT_REVIEW"


class OverrideStatus(str, enum.Enum):
    """Override request status enumeration."""

    PENDING = "PENDING"
    APPROVED = "APPROVED"
    DENIED = "DENIED"


class Lease(Base):
    """A lease on a unit; the scope of a recertification."""

    __tablename__ = "leases"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    unit_label = Column(String(50), nullable=True)
    lease_start_date = Column(Date, nullable=True)  # None = future lease
    lease_end_date = Column(Date, nullable=True)
    created_at = Column(DateTime(timezone=True), default=local_now, nullable=False)

    # Relationships
    residents = relationship(
        "Resident", back_populates="lease", cascade="all, delete-orphan", order_by="Resident.name"
    )
    verifications = relationship(
        "IncomeVerification", back_populates="lease", cascade="all, delete-orphan"
    )


class Resident(Base):
    """A person on a lease."""

    __tablename__ = "residents"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    lease_id = Column(Uuid, ForeignKey("leases.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(255), nullable=False)
    annualized_income = Column(Numeric(12, 2), nullable=True)  # Declared on the rent roll
    calculated_annualized_income = Column(Numeric(12, 2), nullable=True)  # Aggregator output only
    verified_income = Column(Numeric(12, 2), nullable=True)  # Frozen on finalize
    income_finalized = Column(Boolean, default=False, nullable=False)
    has_no_income = Column(Boolean, default=False, nullable=False)
    finalized_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=local_now, nullable=False)

    # Relationships
    lease = relationship("Lease", back_populates="residents")
    documents = relationship("IncomeDocument", back_populates="resident")


class IncomeVerification(Base):
    """One recertification cycle for a lease."""

    __tablename__ = "income_verifications"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    lease_id = Column(Uuid, ForeignKey("leases.id", ondelete="CASCADE"), nullable=False)
    status = Column(
        Enum(VerificationStatus), default=VerificationStatus.IN_PROGRESS, nullable=False
    )
    reason = Column(
        Enum(VerificationReason),
        default=VerificationReason.ANNUAL_RECERTIFICATION,
        nullable=False,
    )
    verification_period_start = Column(Date, nullable=True)
    verification_period_end = Column(Date, nullable=True)
    due_date = Column(Date, nullable=True)
    calculated_verified_income = Column(Numeric(12, 2), nullable=True)
    finalized_at = Column(DateTime(timezone=True), nullable=True)
    lease_year = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), default=local_now, nullable=False)
    updated_at = Column(
        DateTime(timezone=True), default=local_now, onupdate=local_now, nullable=False
    )

    # Relationships
    lease = relationship("Lease", back_populates="verifications")
    documents = relationship(
        "IncomeDocument", back_populates="verification", cascade="all, delete-orphan"
    )
    override_requests = relationship(
        "OverrideRequest", back_populates="verification", cascade="all, delete-orphan"
    )


class IncomeDocument(Base):
    """One uploaded income artifact."""

    __tablename__ = "income_documents"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    verification_id = Column(
        Uuid, ForeignKey("income_verifications.id", ondelete="CASCADE"), nullable=False
    )
    resident_id = Column(Uuid, ForeignKey("residents.id", ondelete="CASCADE"), nullable=False)
    document_type = Column(Enum(DocumentType), nullable=False)
    status = Column(Enum(DocumentStatus), default=DocumentStatus.PROCESSING, nullable=False)
    upload_date = Column(DateTime(timezone=True), default=local_now, nullable=False)
    document_date = Column(Date, nullable=True)

    # Stored file
    original_filename = Column(String(255), nullable=True)
    file_path = Column(Text, nullable=True)
    content_hash = Column(String(64), nullable=True)  # SHA-256

    # W-2 fields
    box1_wages = Column(Numeric(12, 2), nullable=True)
    box3_ss_wages = Column(Numeric(12, 2), nullable=True)
    box5_med_wages = Column(Numeric(12, 2), nullable=True)
    tax_year = Column(String(4), nullable=True)

    # Paystub fields
    pay_period_start_date = Column(Date, nullable=True)
    pay_period_end_date = Column(Date, nullable=True)
    gross_pay_amount = Column(Numeric(12, 2), nullable=True)
    pay_frequency = Column(String(20), nullable=True)  # WEEKLY, BI-WEEKLY, SEMI-MONTHLY, MONTHLY

    # Shared identity fields
    employer_name = Column(String(255), nullable=True)
    employee_name = Column(String(255), nullable=True)

    # Social Security fields
    social_security_form = Column(Enum(SocialSecurityForm), nullable=True)
    monthly_benefit = Column(Numeric(12, 2), nullable=True)
    annual_benefit = Column(Numeric(12, 2), nullable=True)  # SSA-1099 box 5

    # Reviewer-entered annual figure for manual-entry types
    entered_annual_income = Column(Numeric(12, 2), nullable=True)

    # Outcome
    calculated_annualized_income = Column(Numeric(12, 2), nullable=True)
    extraction_confidence = Column(Float, nullable=True)
    validation_result = Column(JSONType, nullable=True)
    review_reason = Column(Text, nullable=True)
    processing_started_at = Column(DateTime(timezone=True), nullable=True)
    processing_completed_at = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    verification = relationship("IncomeVerification", back_populates="documents")
    resident = relationship("Resident", back_populates="documents")
    override_requests = relationship(
        "OverrideRequest", back_populates="document", cascade="all, delete-orphan"
    )


class OverrideRequest(Base):
    """Escalation asking a reviewer to decide what automation could not."""

    __tablename__ = "override_requests"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    type = Column(Enum(OverrideType), nullable=False)
    status = Column(Enum(OverrideStatus), default=OverrideStatus.PENDING, nullable=False)
    user_explanation = Column(Text, nullable=False)
    admin_notes = Column(Text, nullable=True)
    document_id = Column(
        Uuid, ForeignKey("income_documents.id", ondelete="CASCADE"), nullable=True
    )
    resident_id = Column(Uuid, ForeignKey("residents.id", ondelete="CASCADE"), nullable=True)
    verification_id = Column(
        Uuid, ForeignKey("income_verifications.id", ondelete="CASCADE"), nullable=True
    )
    requester_id = Column(String(255), nullable=False)
    reviewer_id = Column(String(255), nullable=True)
    reviewed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=local_now, nullable=False)
    updated_at = Column(
        DateTime(timezone=True), default=local_now, onupdate=local_now, nullable=False
    )

    # Relationships
    document = relationship("IncomeDocument", back_populates="override_requests")
    resident = relationship("Resident")
    verification = relationship("IncomeVerification", back_populates="override_requests")


# Database Indexes
Index("ix_residents_lease_id", Resident.lease_id)
Index("ix_income_verifications_lease_id", IncomeVerification.lease_id)
Index(
    "uq_income_verifications_one_in_progress",
    IncomeVerification.lease_id,
    unique=True,
    postgresql_where=IncomeVerification.status == VerificationStatus.IN_PROGRESS,
    sqlite_where=IncomeVerification.status == VerificationStatus.IN_PROGRESS,
)
Index("ix_income_documents_verification_id", IncomeDocument.verification_id)
Index(
    "ix_income_documents_resident_type",
    IncomeDocument.resident_id,
    IncomeDocument.document_type,
)
Index("ix_income_documents_status", IncomeDocument.status)
Index("ix_override_requests_status", OverrideRequest.status)
Index("ix_override_requests_document_id", OverrideRequest.document_id)
