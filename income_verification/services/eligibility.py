"""Timeliness and identity checks, plus the lease date pre-check."""

import logging
import re
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, List, Optional, Sequence

from dateutil.relativedelta import relativedelta

from income_verification.config import settings
from income_verification.exceptions import (
    EligibilityFailure,
    IdentityMismatchFailure,
    IncomeVerificationError,
    TimelinessFailure,
)
from income_verification.models.db_models import DocumentType, IncomeDocument
from income_verification.services.document_kinds import kind_for

logger = logging.getLogger(__name__)

# Non-W-2 documents may predate the lease start by this much
EARLIEST_DOCUMENT_OFFSET = relativedelta(months=6)
LATEST_DOCUMENT_OFFSET = relativedelta(years=10)

_NAME_SPLIT = re.compile(r"[\s,]+")


def name_tokens(name: str) -> set:
    """Lowercase name tokens longer than one character."""
    return {token for token in _NAME_SPLIT.split(name.lower()) if len(token) > 1}


def names_match(resident_name: str, extracted_name: Optional[str]) -> bool:
    """
    Whether an extracted name plausibly belongs to the resident.

    Two shared tokens match, as does either name containing the other. A
    missing extracted name never matches.
    """
    if not extracted_name or not extracted_name.strip():
        return False
    shared = name_tokens(resident_name) & name_tokens(extracted_name)
    if len(shared) >= 2:
        return True
    resident_lower = resident_name.strip().lower()
    extracted_lower = extracted_name.strip().lower()
    return resident_lower in extracted_lower or extracted_lower in resident_lower


def acceptable_w2_years(lease_start: date) -> List[int]:
    """Tax years a W-2 may carry for a lease starting on ``lease_start``."""
    years = [lease_start.year - 1]
    # Early-year leases may not have the prior year's W-2 issued yet
    if lease_start.month <= 3:
        years.append(lease_start.year - 2)
    return years


@dataclass
class DateCheckResult:
    """Outcome of the lease date pre-check."""

    requires_date_confirmation: bool
    message: str
    reason: Optional[str] = None
    months_difference: Optional[int] = None
    lease_start_date: Optional[date] = None
    document_date: Optional[date] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requires_date_confirmation": self.requires_date_confirmation,
            "message": self.message,
            "reason": self.reason,
            "months_difference": self.months_difference,
            "lease_start_date": self.lease_start_date.isoformat() if self.lease_start_date else None,
            "document_date": self.document_date.isoformat() if self.document_date else None,
        }


class EligibilityChecker:
    """Checks that a document is timely for the lease and belongs to the resident."""

    def check_timeliness(
        self, document: IncomeDocument, lease_start: Optional[date]
    ) -> Optional[TimelinessFailure]:
        """Return a failure when the document date is outside the lease window."""
        if lease_start is None:
            # Future lease: nothing to measure against
            return None

        if document.document_type == DocumentType.W2:
            years = acceptable_w2_years(lease_start)
            tax_year = int(document.tax_year) if document.tax_year and document.tax_year.isdigit() else None
            if tax_year in years:
                return None
            expected = " or ".join(str(y) for y in years)
            return TimelinessFailure(
                f"W-2 tax year {document.tax_year or 'unknown'} is not acceptable for a lease "
                f"starting {lease_start.isoformat()} (expected {expected})"
            )

        document_date = document.document_date
        if document_date is None:
            return TimelinessFailure("Document date could not be determined")
        earliest = lease_start - EARLIEST_DOCUMENT_OFFSET
        latest = lease_start + LATEST_DOCUMENT_OFFSET
        if earliest <= document_date <= latest:
            return None
        return TimelinessFailure(
            f"Document date {document_date.isoformat()} is outside the acceptable window "
            f"{earliest.isoformat()} to {latest.isoformat()} for a lease starting {lease_start.isoformat()}"
        )

    def check_identity(
        self, document: IncomeDocument, resident_name: str
    ) -> Optional[IdentityMismatchFailure]:
        """Return a failure when the name on the document does not match the resident."""
        extracted = kind_for(document.document_type).identity_name(document)
        if names_match(resident_name, extracted):
            return None
        if not extracted:
            return IdentityMismatchFailure(
                f"No name found on the document to match against resident '{resident_name}'"
            )
        return IdentityMismatchFailure(
            f"Name on document '{extracted}' does not match resident '{resident_name}'"
        )

    def check(self, document: IncomeDocument, resident_name: str, lease_start: Optional[date]) -> None:
        """
        Run both checks.

        Raises:
            EligibilityFailure: Carrying every failing check, so both reasons surface together
        """
        failures: List[IncomeVerificationError] = [
            failure
            for failure in (
                self.check_timeliness(document, lease_start),
                self.check_identity(document, resident_name),
            )
            if failure is not None
        ]
        if failures:
            logger.info(f"Document {document.id} failed eligibility: {[f.explanation for f in failures]}")
            raise EligibilityFailure(failures)

    def check_dates(
        self,
        lease_start: Optional[date],
        evidence_dates: Sequence[Optional[date]],
        readable_count: int,
    ) -> DateCheckResult:
        """
        Decide whether the caller must confirm which lease the documents belong to.

        ``evidence_dates`` holds the date each readable document evidences.
        """
        if lease_start is None:
            return DateCheckResult(False, "Future lease - no date validation required")
        if readable_count == 0:
            return DateCheckResult(False, "No documents could be read - proceeding with normal upload")

        threshold = lease_start + relativedelta(months=settings.DATE_CONFIRMATION_MONTHS)
        dates = [d for d in evidence_dates if d is not None]
        late = [d for d in dates if d > threshold]
        if not late:
            return DateCheckResult(
                False, f"All {len(dates)} readable documents are within acceptable date range"
            )

        latest = max(late)
        months_difference = (latest - lease_start).days // 30
        logger.info(
            f"Date confirmation required: document date {latest} is {months_difference} months "
            f"after lease start {lease_start}"
        )
        return DateCheckResult(
            requires_date_confirmation=True,
            message=(
                f"{len(late)} of {len(dates)} readable documents are from {months_difference} "
                "months after lease start - confirmation required"
            ),
            reason="date_discrepancy",
            months_difference=months_difference,
            lease_start_date=lease_start,
            document_date=latest,
        )
