"""Field validation for extracted income documents.

This module provides:
1. Presence checks - required fields per document type
2. Confidence gating - fields below the threshold count as absent
3. Plausibility checks - values that look like extraction mistakes go to review
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional

from income_verification.config import settings
from income_verification.models.db_models import SocialSecurityForm
from income_verification.rules.loader import DocumentPolicy, derive_pay_frequency
from income_verification.services.extraction.adapter import ExtractedField, Extraction

logger = logging.getLogger(__name__)


@dataclass
class ValidationVerdict:
    """Result of validating one extraction."""

    is_valid: bool
    needs_admin_review: bool
    confidence: float
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    extracted_data: Dict[str, Any] = field(default_factory=dict)

    @property
    def explanation(self) -> str:
        """Display string summarizing failing fields and confidence."""
        parts = []
        if self.errors:
            parts.append(f"Errors: {'; '.join(self.errors)}")
        if self.warnings:
            parts.append(f"Warnings: {'; '.join(self.warnings)}")
        parts.append(f"Confidence: {self.confidence * 100:.1f}%")
        return " | ".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "needs_admin_review": self.needs_admin_review,
            "confidence": self.confidence,
            "errors": self.errors,
            "warnings": self.warnings,
            "extracted_data": {k: _jsonable(v) for k, v in self.extracted_data.items()},
            "explanation": self.explanation,
        }


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, date):
        return value.isoformat()
    return value


class _Check:
    """Accumulates errors, warnings and confidence while one document is validated."""

    def __init__(self, extraction: Extraction, policy: DocumentPolicy, threshold: float):
        self.extraction = extraction
        self.policy = policy
        self.threshold = threshold
        self.errors: List[str] = []
        self.warnings: List[str] = []
        self.confidences: List[float] = []
        self.data: Dict[str, Any] = {}
        self.needs_review = False

    def candidates(self, canonical_name: str) -> List[ExtractedField]:
        return self.extraction.all_of(self.policy.aliases_for(canonical_name))

    def accept(self, canonical_name: str, label: str, required: bool = True) -> Optional[ExtractedField]:
        """
        Best candidate for a canonical field, or None when absent.

        The candidate with the highest confidence wins. A candidate below the
        threshold is reported and treated as absent.
        """
        candidates = self.candidates(canonical_name)
        if not candidates:
            return None
        best = max(candidates, key=lambda c: c.confidence)
        if best.confidence < self.threshold:
            self.warnings.append(f"Low confidence ({best.confidence * 100:.1f}%) on {label} extraction")
            if required:
                self.confidences.append(best.confidence)
            return None
        self.confidences.append(best.confidence)
        return best

    def flag(self, warning: str) -> None:
        self.warnings.append(warning)
        self.needs_review = True

    def verdict(self) -> ValidationVerdict:
        if self.errors:
            self.needs_review = True
        confidence = min(self.confidences) if self.confidences else 0.0
        if confidence < self.threshold:
            self.needs_review = True
        return ValidationVerdict(
            is_valid=not self.errors and not self.needs_review,
            needs_admin_review=self.needs_review,
            confidence=confidence,
            errors=self.errors,
            warnings=self.warnings,
            extracted_data=self.data,
        )


class FieldValidator:
    """Validates extracted fields per document type."""

    # Per-period gross pay outside this range is probably a misread
    MAX_REASONABLE_GROSS_PAY = Decimal("50000")
    MIN_REASONABLE_GROSS_PAY = Decimal("100")

    # YTD / gross below this ratio on a large gross suggests the YTD figure was read as gross
    SUSPICIOUS_YTD_RATIO = Decimal("10")
    YTD_CHECK_MIN_GROSS = Decimal("5000")

    # Gross pay candidates differing by more than this factor conflict
    CONFLICTING_GROSS_RATIO = Decimal("2")

    # W-2 wage boxes differing by more than this factor need a second look
    WAGE_BOX_RATIO = Decimal("1.5")

    MAX_PAY_PERIOD_DAYS = 31

    def __init__(self, threshold: Optional[float] = None):
        self.threshold = settings.EXTRACTION_CONFIDENCE_THRESHOLD if threshold is None else threshold

    def _start(self, extraction: Extraction, policy: DocumentPolicy) -> _Check:
        check = _Check(extraction, policy, self.threshold)
        if not extraction.has_fields:
            check.errors.append("Document analyzer failed to extract any fields from the document")
            check.warnings.append("No fields extracted - document may need manual review")
        return check

    # =========================================================================
    # W-2
    # =========================================================================

    def validate_w2(self, extraction: Extraction, policy: DocumentPolicy) -> ValidationVerdict:
        """
        Validate a W-2 extraction.

        Requires at least one wage box, employer name, employee name and tax year.
        """
        check = self._start(extraction, policy)
        wages: Dict[str, Decimal] = {}
        for name, label in (
            ("box1_wages", "Box 1 wages"),
            ("box3_ss_wages", "Box 3 Social Security wages"),
            ("box5_med_wages", "Box 5 Medicare wages"),
        ):
            candidate = check.accept(name, label, required=False)
            amount = candidate.as_decimal() if candidate else None
            if amount is not None and amount > 0:
                wages[name] = amount
                check.data[name] = amount

        missing = []
        if not wages:
            check.errors.append("No wage amounts found in W-2 document")

        employer = check.accept("employer_name", "employer name")
        if employer and employer.as_text():
            check.data["employer_name"] = employer.as_text()
        else:
            missing.append("employer name")

        employee = check.accept("employee_name", "employee name")
        if employee and employee.as_text():
            check.data["employee_name"] = employee.as_text()
        else:
            missing.append("employee name")

        tax_year = check.accept("tax_year", "tax year")
        tax_year_text = _tax_year(tax_year)
        if tax_year_text:
            check.data["tax_year"] = tax_year_text
        else:
            missing.append("tax year")

        if missing:
            check.errors.append(f"Missing required fields: {', '.join(missing)}")

        if len(wages) > 1:
            if max(wages.values()) / min(wages.values()) > self.WAGE_BOX_RATIO:
                check.flag("Significant discrepancy between wage amounts - may need review")

        return check.verdict()

    # =========================================================================
    # PAYSTUB
    # =========================================================================

    def validate_paystub(self, extraction: Extraction, policy: DocumentPolicy) -> ValidationVerdict:
        """
        Validate a paystub extraction and derive its pay frequency.

        Requires gross pay, pay-period start and end, and an employee or employer name.
        """
        check = self._start(extraction, policy)
        missing = []

        gross_field = check.accept("gross_pay_amount", "gross pay")
        gross = gross_field.as_decimal() if gross_field else None
        if gross is None or gross <= 0:
            if not check.candidates("gross_pay_amount"):
                check.errors.append("No gross pay amount found in document")
            missing.append("gross pay")
        else:
            check.data["gross_pay_amount"] = gross
            self._check_gross_pay(check, gross)

        start_field = check.accept("pay_period_start_date", "pay period start date")
        start = start_field.as_date() if start_field else None
        end_field = check.accept("pay_period_end_date", "pay period end date")
        end = end_field.as_date() if end_field else None
        if start is None:
            missing.append("pay period start date")
        else:
            check.data["pay_period_start_date"] = start
        if end is None:
            missing.append("pay period end date")
        else:
            check.data["pay_period_end_date"] = end

        employee = check.accept("employee_name", "employee name", required=False)
        employer = check.accept("employer_name", "employer name", required=False)
        if employee and employee.as_text():
            check.data["employee_name"] = employee.as_text()
        if employer and employer.as_text():
            check.data["employer_name"] = employer.as_text()
        if "employee_name" not in check.data and "employer_name" not in check.data:
            missing.append("employee or employer name")

        if missing:
            check.errors.append(f"Missing required fields: {', '.join(missing)}")

        if start is not None and end is not None:
            days = (end - start).days
            if days <= 0:
                check.flag("Pay period start date is after or equal to end date")
            else:
                if days > self.MAX_PAY_PERIOD_DAYS:
                    check.flag(f"Pay period is {days} days long - seems unusually long")
                check.data["pay_frequency"] = derive_pay_frequency(days)

        return check.verdict()

    def _check_gross_pay(self, check: _Check, gross: Decimal) -> None:
        if gross > self.MAX_REASONABLE_GROSS_PAY:
            check.flag(f"Gross pay amount (${gross:,.2f}) seems unusually high - may be YTD amount")
        if gross < self.MIN_REASONABLE_GROSS_PAY:
            check.flag(f"Gross pay amount (${gross:,.2f}) seems unusually low")

        ytd_values = [
            value for value in (c.as_decimal() for c in check.candidates("ytd_gross_pay")) if value
        ]
        if ytd_values:
            ratio = max(ytd_values) / gross
            if ratio < self.SUSPICIOUS_YTD_RATIO and gross > self.YTD_CHECK_MIN_GROSS:
                check.flag(
                    f"Extracted gross pay (${gross:,.2f}) may be YTD amount rather than period amount"
                )

        candidates = [
            (c.name, c.as_decimal()) for c in check.candidates("gross_pay_amount")
        ]
        values = [value for _, value in candidates if value and value > 0]
        if len(values) > 1 and max(values) / min(values) > self.CONFLICTING_GROSS_RATIO:
            listed = ", ".join(f"{name}: ${value}" for name, value in candidates)
            check.flag(f"Multiple conflicting gross pay values found: {listed}")

    # =========================================================================
    # SOCIAL SECURITY
    # =========================================================================

    def validate_social_security(
        self, extraction: Extraction, policy: DocumentPolicy
    ) -> ValidationVerdict:
        """
        Validate an SSA-1099 or a benefit letter.

        The typed 1099-SSA model yields an annual net benefit; a benefit letter
        read by the layout model yields a monthly amount. Either must be positive.
        """
        check = self._start(extraction, policy)

        beneficiary = check.accept("beneficiary_name", "beneficiary name", required=False)
        if beneficiary and beneficiary.as_text():
            check.data["employee_name"] = beneficiary.as_text()

        annual_field = None if extraction.is_layout else check.accept("annual_benefit", "net benefits")
        annual = annual_field.as_decimal() if annual_field else None
        if annual is not None and annual > 0:
            check.data["social_security_form"] = SocialSecurityForm.SSA_1099.value
            check.data["annual_benefit"] = annual
            tax_year = _tax_year(check.accept("tax_year", "tax year", required=False))
            if tax_year:
                check.data["tax_year"] = tax_year
            return check.verdict()

        monthly_field = check.accept("monthly_benefit", "monthly benefit")
        monthly = monthly_field.as_decimal() if monthly_field else None
        if monthly is not None and monthly > 0:
            check.data["social_security_form"] = SocialSecurityForm.BENEFIT_LETTER.value
            check.data["monthly_benefit"] = monthly
            letter_date = check.accept("letter_date", "letter date", required=False)
            if letter_date and letter_date.as_date():
                check.data["letter_date"] = letter_date.as_date()
        else:
            check.errors.append("No positive Social Security benefit amount found in document")

        return check.verdict()

    # =========================================================================
    # MANUAL ENTRY
    # =========================================================================

    def manual_entry(self, extraction: Extraction, policy: DocumentPolicy) -> ValidationVerdict:
        """Verdict for types whose figures are always entered by a reviewer."""
        return ValidationVerdict(
            is_valid=False,
            needs_admin_review=True,
            confidence=extraction.confidence,
            errors=[f"{policy.label} requires manual entry"],
        )


def _tax_year(candidate: Optional[ExtractedField]) -> Optional[str]:
    """Four-digit tax year from a field that may hold a number, date or string."""
    if candidate is None or candidate.value is None:
        return None
    value = candidate.value
    if isinstance(value, date):
        return str(value.year)
    if isinstance(value, Decimal):
        value = int(value)
    text = str(value).strip()
    digits = "".join(ch for ch in text if ch.isdigit())
    if len(digits) >= 4:
        return digits[:4]
    return None


# Singleton instance
_validator_instance: Optional[FieldValidator] = None


def get_field_validator() -> FieldValidator:
    """Get or create the field validator instance."""
    global _validator_instance
    if _validator_instance is None:
        _validator_instance = FieldValidator()
    return _validator_instance
