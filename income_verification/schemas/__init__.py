"""Pydantic schemas package."""
from income_verification.schemas.documents import DocumentResponse, DocumentStatusResponse
from income_verification.schemas.overrides import (
    CleanupResponse,
    OverrideRequestCreate,
    OverrideRequestResolve,
    OverrideRequestResponse,
)
from income_verification.schemas.verifications import (
    DateCheckResponse,
    DiscrepancyListResponse,
    DiscrepancyResolutionRequest,
    DiscrepancyResolutionResponse,
    DiscrepancyResponse,
    LeaseCreate,
    LeaseResponse,
    ResidentCreate,
    ResidentResponse,
    VerificationDetail,
    VerificationFinalize,
    VerificationResponse,
    VerificationStart,
)

__all__ = [
    "CleanupResponse",
    "DateCheckResponse",
    "DiscrepancyListResponse",
    "DiscrepancyResolutionRequest",
    "DiscrepancyResolutionResponse",
    "DiscrepancyResponse",
    "DocumentResponse",
    "DocumentStatusResponse",
    "LeaseCreate",
    "LeaseResponse",
    "OverrideRequestCreate",
    "OverrideRequestResolve",
    "OverrideRequestResponse",
    "ResidentCreate",
    "ResidentResponse",
    "VerificationDetail",
    "VerificationFinalize",
    "VerificationResponse",
    "VerificationStart",
]
