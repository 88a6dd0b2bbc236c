"""Database models package."""
from income_verification.models.db_models import (
    DocumentStatus,
    DocumentType,
    IncomeDocument,
    IncomeVerification,
    Lease,
    OverrideRequest,
    OverrideStatus,
    OverrideType,
    Resident,
    SocialSecurityForm,
    VerificationReason,
    VerificationStatus,
)

__all__ = [
    "Lease",
    "Resident",
    "IncomeVerification",
    "IncomeDocument",
    "OverrideRequest",
    "DocumentType",
    "DocumentStatus",
    "SocialSecurityForm",
    "VerificationStatus",
    "VerificationReason",
    "OverrideType",
    "OverrideStatus",
]
