"""Pydantic schemas for income documents."""
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from income_verification.models.db_models import DocumentStatus, DocumentType, SocialSecurityForm


class DocumentResponse(BaseModel):
    """Document response."""
    id: UUID
    verification_id: UUID
    resident_id: UUID
    document_type: DocumentType
    status: DocumentStatus
    upload_date: datetime
    document_date: Optional[date] = None
    original_filename: Optional[str] = None

    box1_wages: Optional[Decimal] = None
    box3_ss_wages: Optional[Decimal] = None
    box5_med_wages: Optional[Decimal] = None
    tax_year: Optional[str] = None

    pay_period_start_date: Optional[date] = None
    pay_period_end_date: Optional[date] = None
    gross_pay_amount: Optional[Decimal] = None
    pay_frequency: Optional[str] = None

    employer_name: Optional[str] = None
    employee_name: Optional[str] = None
    social_security_form: Optional[SocialSecurityForm] = None
    monthly_benefit: Optional[Decimal] = None
    annual_benefit: Optional[Decimal] = None
    entered_annual_income: Optional[Decimal] = None

    calculated_annualized_income: Optional[Decimal] = None
    extraction_confidence: Optional[float] = None
    validation_result: Optional[Dict[str, Any]] = None
    review_reason: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class DocumentStatusResponse(BaseModel):
    """Polling view of a document's analysis job."""
    document_id: UUID
    status: Optional[DocumentStatus] = None
    job_state: Optional[str] = None
    message: Optional[str] = None
    review_reason: Optional[str] = None
    calculated_annualized_income: Optional[Decimal] = None
