"""Error taxonomy for the income verification engine.

Every error carries a human-readable ``explanation`` suitable for display and
for the override-request audit trail, plus the HTTP status the API layer
answers with.
"""

from typing import Any, Dict, List, Optional
from uuid import UUID


class IncomeVerificationError(Exception):
    """Base class for engine errors."""

    status_code = 400
    error_code = "income_verification_error"

    def __init__(self, explanation: str):
        self.explanation = explanation
        super().__init__(explanation)

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.error_code, "detail": self.explanation}


class NotFound(IncomeVerificationError):
    """A referenced lease, resident, verification, document or override does not exist."""

    status_code = 404
    error_code = "not_found"


class ExtractionFailure(IncomeVerificationError):
    """The document analyzer was unreachable, failed, or timed out."""

    status_code = 502
    error_code = "extraction_failure"

    def __init__(self, explanation: str, model_id: Optional[str] = None):
        self.model_id = model_id
        super().__init__(explanation)


class ValidationFailure(IncomeVerificationError):
    """Extracted fields were missing or below the confidence threshold."""

    status_code = 422
    error_code = "validation_failure"

    def __init__(self, explanation: str, errors: Optional[List[str]] = None):
        self.errors = errors or []
        super().__init__(explanation)


class DuplicateDetected(IncomeVerificationError):
    """The upload repeats a pay period or tax year already on record."""

    status_code = 409
    error_code = "duplicate_document"

    def __init__(self, explanation: str, conflicting_document_id: UUID):
        self.conflicting_document_id = conflicting_document_id
        super().__init__(explanation)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["conflicting_document_id"] = str(self.conflicting_document_id)
        return data


class TimelinessFailure(IncomeVerificationError):
    """The document date falls outside the acceptable window for the lease."""

    status_code = 422
    error_code = "timeliness_failure"


class IdentityMismatchFailure(IncomeVerificationError):
    """The name on the document does not plausibly match the resident."""

    status_code = 422
    error_code = "identity_mismatch"


class EligibilityFailure(IncomeVerificationError):
    """One or both of the timeliness and identity checks failed."""

    status_code = 422
    error_code = "eligibility_failure"

    def __init__(self, failures: List[IncomeVerificationError]):
        self.failures = failures
        super().__init__("; ".join(f.explanation for f in failures))


class LeaseConflict(IncomeVerificationError):
    """A verification is already in progress for the lease."""

    status_code = 409
    error_code = "verification_in_progress"

    def __init__(self, existing_verification_id: UUID):
        self.existing_verification_id = existing_verification_id
        super().__init__(
            f"Lease already has verification {existing_verification_id} in progress. "
            "Finalize or cancel it before starting a new one."
        )

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["existing_verification_id"] = str(self.existing_verification_id)
        return data


class InvalidTransition(IncomeVerificationError):
    """The requested state change is not allowed from the current state."""

    status_code = 409
    error_code = "invalid_transition"


class VerificationClosed(InvalidTransition):
    """The verification is finalized and can no longer change."""

    error_code = "verification_finalized"


class ResidentFinalized(InvalidTransition):
    """The resident's income is frozen; unfinalize before modifying."""

    error_code = "resident_finalized"


class FinalizationBlocked(InvalidTransition):
    """Preconditions for finalizing a resident or a lease are not met."""

    error_code = "finalization_blocked"

    def __init__(self, explanation: str, reasons: Optional[List[str]] = None):
        self.reasons = reasons or [explanation]
        super().__init__(explanation)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["reasons"] = self.reasons
        return data


class StaleIncomeFigure(InvalidTransition):
    """The caller's income figure no longer matches the engine's calculation."""

    error_code = "stale_income_figure"


class OverrideAlreadyResolved(InvalidTransition):
    """The override request was already approved or denied."""

    error_code = "override_already_resolved"
