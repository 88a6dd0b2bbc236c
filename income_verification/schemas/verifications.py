"""Pydantic schemas for leases, residents and verifications."""
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from income_verification.models.db_models import VerificationReason, VerificationStatus
from income_verification.services.reconciler import DiscrepancyResolution


# Leases and residents
class ResidentCreate(BaseModel):
    """Schema for adding a resident to a lease."""
    name: str = Field(..., min_length=1, max_length=255)
    annualized_income: Optional[Decimal] = Field(None, ge=0, description="Declared (rent-roll) income")


class ResidentResponse(BaseModel):
    """Schema for resident response."""
    id: UUID
    lease_id: UUID
    name: str
    annualized_income: Optional[Decimal] = None
    calculated_annualized_income: Optional[Decimal] = None
    verified_income: Optional[Decimal] = None
    income_finalized: bool
    has_no_income: bool
    finalized_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class LeaseCreate(BaseModel):
    """Schema for creating a lease."""
    name: str = Field(..., min_length=1, max_length=255)
    unit_label: Optional[str] = Field(None, max_length=50)
    lease_start_date: Optional[date] = Field(None, description="Leave empty for a future lease")
    lease_end_date: Optional[date] = None
    residents: List[ResidentCreate] = []


class VerificationResponse(BaseModel):
    """Schema for verification response."""
    id: UUID
    lease_id: UUID
    status: VerificationStatus
    reason: VerificationReason
    verification_period_start: Optional[date] = None
    verification_period_end: Optional[date] = None
    due_date: Optional[date] = None
    calculated_verified_income: Optional[Decimal] = None
    finalized_at: Optional[datetime] = None
    lease_year: Optional[int] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class LeaseResponse(BaseModel):
    """Lease with residents, the active verification and finalization progress."""
    id: UUID
    name: str
    unit_label: Optional[str] = None
    lease_start_date: Optional[date] = None
    lease_end_date: Optional[date] = None
    residents: List[ResidentResponse] = []
    active_verification: Optional[VerificationResponse] = None
    residents_finalized: int = 0
    residents_total: int = 0

    model_config = ConfigDict(from_attributes=True)


# Verifications
class VerificationStart(BaseModel):
    """Schema for starting a verification."""
    reason: VerificationReason = VerificationReason.ANNUAL_RECERTIFICATION
    verification_period_start: Optional[date] = None
    verification_period_end: Optional[date] = None
    due_date: Optional[date] = None
    supersede: bool = Field(
        False, description="Finalize an in-progress verification first (new lease term)"
    )


class VerificationFinalize(BaseModel):
    """Schema for lease-wide finalization."""
    calculated_verified_income: Optional[Decimal] = Field(
        None, description="Figure the caller saw; must match the engine's total within $1"
    )


class VerificationDetail(VerificationResponse):
    """Verification with residents and document counts."""
    residents: List[ResidentResponse] = []
    document_counts: Dict[str, int] = {}


# Discrepancies
class DiscrepancyResponse(BaseModel):
    """One resident's declared vs verified income."""
    resident_id: UUID
    resident_name: str
    declared_income: Decimal
    verified_income: Decimal
    difference: Decimal
    resolved: bool
    pending_override_id: Optional[UUID] = None
    explanation: str


class DiscrepancyListResponse(BaseModel):
    """Discrepancy check for a verification."""
    verification_id: UUID
    all_residents_finalized: bool
    discrepancies: List[DiscrepancyResponse] = []


class DiscrepancyResolutionRequest(BaseModel):
    """Schema for settling a discrepancy."""
    resolution: DiscrepancyResolution
    requester_id: str = Field(..., min_length=1)
    explanation: Optional[str] = None


class DiscrepancyResolutionResponse(BaseModel):
    """Outcome of settling a discrepancy."""
    resolution: DiscrepancyResolution
    resident: ResidentResponse
    override_request_id: Optional[UUID] = None
    verification_status: VerificationStatus
    lease: Dict[str, Any] = {}


class DateCheckResponse(BaseModel):
    """Lease date pre-check result."""
    requires_date_confirmation: bool
    message: str
    reason: Optional[str] = None
    months_difference: Optional[int] = None
    lease_start_date: Optional[date] = None
    document_date: Optional[date] = None
