"""Pydantic schemas for override requests."""
from datetime import datetime
from typing import Any, Dict, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from income_verification.models.db_models import OverrideStatus, OverrideType


class OverrideRequestCreate(BaseModel):
    """Creation contract for an override request."""
    type: OverrideType
    user_explanation: str = Field(..., min_length=1)
    document_id: Optional[UUID] = None
    resident_id: Optional[UUID] = None
    verification_id: Optional[UUID] = None
    requester_id: str = Field(..., min_length=1)


class OverrideRequestResolve(BaseModel):
    """Resolution contract for an override request."""
    status: OverrideStatus
    admin_notes: Optional[str] = None
    reviewer_id: str = Field(..., min_length=1)
    corrected_values: Optional[Dict[str, Any]] = Field(
        None, description="Reviewer-entered document values applied on approval"
    )


class OverrideRequestResponse(BaseModel):
    """Override request response."""
    id: UUID
    type: OverrideType
    status: OverrideStatus
    user_explanation: str
    admin_notes: Optional[str] = None
    document_id: Optional[UUID] = None
    resident_id: Optional[UUID] = None
    verification_id: Optional[UUID] = None
    requester_id: str
    reviewer_id: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class CleanupResponse(BaseModel):
    """Result of reclaiming stuck documents."""
    reclaimed: int
    document_ids: list[UUID] = []
