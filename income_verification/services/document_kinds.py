"""Per-document-type behavior.

Each document type is one ``DocumentKind`` variant. The pipeline selects the
variant once with ``kind_for`` and calls it for validation, for copying
extracted values onto the document row, for the evidenced date, for duplicate
matching and for the document's own income contribution.
"""

import logging
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional

from income_verification.models.db_models import DocumentType, IncomeDocument, SocialSecurityForm
from income_verification.rules.loader import (
    DocumentPolicy,
    derive_pay_frequency,
    get_document_policy,
    get_pay_frequency_multiplier,
)
from income_verification.services.extraction.adapter import Extraction, parse_amount, parse_date
from income_verification.services.validation.field_validator import FieldValidator, ValidationVerdict

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")

MONEY_FIELDS = {
    "box1_wages",
    "box3_ss_wages",
    "box5_med_wages",
    "gross_pay_amount",
    "monthly_benefit",
    "annual_benefit",
    "entered_annual_income",
}
DATE_FIELDS = {"pay_period_start_date", "pay_period_end_date", "letter_date", "document_date"}

# Reviewer-facing names accepted for the manual annual figure
ANNUAL_INCOME_KEYS = ("annual_income", "calculated_annualized_income", "entered_annual_income")


def money(value: Decimal) -> Decimal:
    """Round to cents."""
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def normalize_employer(name: Optional[str]) -> Optional[str]:
    """Lowercased, trimmed employer name with inner whitespace collapsed."""
    if not name:
        return None
    normalized = " ".join(name.split()).lower()
    return normalized or None


def coerce_value(name: str, value: Any) -> Any:
    """Convert a reviewer- or analyzer-supplied value to the column's type."""
    if value is None or value == "":
        return None
    if name in MONEY_FIELDS:
        if isinstance(value, Decimal):
            return money(value)
        if isinstance(value, (int, float)):
            return money(Decimal(str(value)))
        amount = parse_amount(str(value))
        if amount is None:
            raise ValueError(f"{name} is not an amount: {value!r}")
        return money(amount)
    if name in DATE_FIELDS:
        if isinstance(value, date):
            return value
        parsed = parse_date(str(value))
        if parsed is None:
            raise ValueError(f"{name} is not a date: {value!r}")
        return parsed
    if name == "tax_year":
        return str(value).strip()[:4]
    return str(value).strip()


def _within(a: Optional[Decimal], b: Optional[Decimal], tolerance: Decimal) -> bool:
    if a is None or b is None:
        return False
    return abs(Decimal(a) - Decimal(b)) <= tolerance


class DocumentKind:
    """Behavior shared by all document types."""

    document_type: DocumentType
    # Columns copied from validated data onto the document row
    fields: tuple = ()
    # Employer sources are grouped by employer during aggregation
    employer_source = True

    @property
    def policy(self) -> DocumentPolicy:
        return get_document_policy(self.document_type)

    def validate(self, extraction: Extraction, validator: FieldValidator) -> ValidationVerdict:
        raise NotImplementedError

    def apply_extracted(self, document: IncomeDocument, data: Dict[str, Any]) -> None:
        """Copy validated values onto the document row."""
        for name in self.fields:
            if name in data:
                setattr(document, name, coerce_value(name, data[name]))
        document.document_date = self.evidence_date(data)

    def apply_corrections(self, document: IncomeDocument, values: Dict[str, Any]) -> List[str]:
        """
        Apply reviewer-entered values. Returns the names that were changed.

        Raises:
            ValueError: If a value cannot be converted
        """
        changed = []
        for name, value in values.items():
            if name in self.fields:
                setattr(document, name, coerce_value(name, value))
                changed.append(name)
        if changed:
            document.document_date = self.evidence_date(self.current_data(document))
        return changed

    def current_data(self, document: IncomeDocument) -> Dict[str, Any]:
        return {name: getattr(document, name) for name in self.fields}

    def evidence_date(self, data: Dict[str, Any]) -> Optional[date]:
        """The date a document evidences income for."""
        return None

    def identity_name(self, document: IncomeDocument) -> Optional[str]:
        return document.employee_name

    def duplicate_of(
        self, document: IncomeDocument, candidate: IncomeDocument, tolerance: Decimal
    ) -> bool:
        return False

    def annual_income(self, document: IncomeDocument) -> Optional[Decimal]:
        """This document's income contribution taken on its own."""
        return None

    def completion_errors(self, document: IncomeDocument) -> List[str]:
        """Fields that must be present before the document can be COMPLETED."""
        return []


class W2Kind(DocumentKind):
    document_type = DocumentType.W2
    fields = ("box1_wages", "box3_ss_wages", "box5_med_wages", "employer_name", "employee_name", "tax_year")

    def validate(self, extraction: Extraction, validator: FieldValidator) -> ValidationVerdict:
        return validator.validate_w2(extraction, self.policy)

    def evidence_date(self, data: Dict[str, Any]) -> Optional[date]:
        # A W-2 evidences income through the end of its tax year
        tax_year = data.get("tax_year")
        if tax_year and str(tax_year).isdigit():
            return date(int(tax_year), 12, 31)
        return None

    def duplicate_of(
        self, document: IncomeDocument, candidate: IncomeDocument, tolerance: Decimal
    ) -> bool:
        return (
            document.tax_year is not None
            and document.tax_year == candidate.tax_year
            and normalize_employer(document.employer_name) == normalize_employer(candidate.employer_name)
            and _within(document.box1_wages, candidate.box1_wages, tolerance)
        )

    def annual_income(self, document: IncomeDocument) -> Optional[Decimal]:
        # Highest of boxes 1, 3 and 5
        boxes = [
            Decimal(b)
            for b in (document.box1_wages, document.box3_ss_wages, document.box5_med_wages)
            if b is not None
        ]
        return money(max(boxes)) if boxes else None

    def completion_errors(self, document: IncomeDocument) -> List[str]:
        errors = []
        if self.annual_income(document) is None:
            errors.append("at least one wage box")
        if not document.tax_year:
            errors.append("tax year")
        return errors


class PaystubKind(DocumentKind):
    document_type = DocumentType.PAYSTUB
    fields = (
        "gross_pay_amount",
        "pay_period_start_date",
        "pay_period_end_date",
        "pay_frequency",
        "employer_name",
        "employee_name",
    )

    def validate(self, extraction: Extraction, validator: FieldValidator) -> ValidationVerdict:
        return validator.validate_paystub(extraction, self.policy)

    def apply_extracted(self, document: IncomeDocument, data: Dict[str, Any]) -> None:
        super().apply_extracted(document, data)
        self._derive_frequency(document)

    def apply_corrections(self, document: IncomeDocument, values: Dict[str, Any]) -> List[str]:
        changed = super().apply_corrections(document, values)
        if "pay_frequency" not in values and (
            "pay_period_start_date" in changed or "pay_period_end_date" in changed
        ):
            document.pay_frequency = None
        self._derive_frequency(document)
        return changed

    def _derive_frequency(self, document: IncomeDocument) -> None:
        if document.pay_frequency:
            return
        start, end = document.pay_period_start_date, document.pay_period_end_date
        if start and end and end > start:
            document.pay_frequency = derive_pay_frequency((end - start).days)

    def evidence_date(self, data: Dict[str, Any]) -> Optional[date]:
        return data.get("pay_period_end_date")

    def duplicate_of(
        self, document: IncomeDocument, candidate: IncomeDocument, tolerance: Decimal
    ) -> bool:
        return (
            document.pay_period_start_date is not None
            and document.pay_period_end_date is not None
            and document.pay_period_start_date == candidate.pay_period_start_date
            and document.pay_period_end_date == candidate.pay_period_end_date
            and normalize_employer(document.employer_name) == normalize_employer(candidate.employer_name)
            and _within(document.gross_pay_amount, candidate.gross_pay_amount, tolerance)
        )

    def annual_income(self, document: IncomeDocument) -> Optional[Decimal]:
        if document.gross_pay_amount is None:
            return None
        multiplier = get_pay_frequency_multiplier(document.pay_frequency)
        return money(Decimal(document.gross_pay_amount) * multiplier)

    def completion_errors(self, document: IncomeDocument) -> List[str]:
        errors = []
        if document.gross_pay_amount is None:
            errors.append("gross pay")
        if document.pay_period_start_date is None or document.pay_period_end_date is None:
            errors.append("pay period dates")
        return errors


class SocialSecurityKind(DocumentKind):
    document_type = DocumentType.SOCIAL_SECURITY
    fields = ("social_security_form", "monthly_benefit", "annual_benefit", "employee_name", "tax_year")
    employer_source = False

    def validate(self, extraction: Extraction, validator: FieldValidator) -> ValidationVerdict:
        return validator.validate_social_security(extraction, self.policy)

    def apply_extracted(self, document: IncomeDocument, data: Dict[str, Any]) -> None:
        data = dict(data)
        # An SSA-1099 reports the annual total; the monthly figure is for display only
        if data.get("annual_benefit") is not None and data.get("monthly_benefit") is None:
            data["monthly_benefit"] = Decimal(data["annual_benefit"]) / 12
        super().apply_extracted(document, data)
        if data.get("social_security_form"):
            document.social_security_form = SocialSecurityForm(data["social_security_form"])

    def apply_corrections(self, document: IncomeDocument, values: Dict[str, Any]) -> List[str]:
        values = dict(values)
        if values.get("annual_benefit") is not None and values.get("monthly_benefit") is None:
            values["monthly_benefit"] = coerce_value("annual_benefit", values["annual_benefit"]) / 12
        elif values.get("monthly_benefit") is not None and "annual_benefit" not in values:
            # A corrected monthly figure replaces the reported annual total
            values["annual_benefit"] = None
        form = values.pop("social_security_form", None)
        changed = super().apply_corrections(document, values)
        if form:
            document.social_security_form = SocialSecurityForm(form)
            changed.append("social_security_form")
        return changed

    def current_data(self, document: IncomeDocument) -> Dict[str, Any]:
        data = super().current_data(document)
        data["letter_date"] = document.document_date
        return data

    def evidence_date(self, data: Dict[str, Any]) -> Optional[date]:
        form = data.get("social_security_form")
        form = getattr(form, "value", form)
        if form == SocialSecurityForm.SSA_1099.value:
            tax_year = data.get("tax_year")
            if tax_year and str(tax_year).isdigit():
                return date(int(tax_year), 12, 31)
            return None
        return data.get("letter_date")

    def annual_income(self, document: IncomeDocument) -> Optional[Decimal]:
        if document.annual_benefit is not None:
            return money(Decimal(document.annual_benefit))
        if document.monthly_benefit is None:
            return None
        return money(Decimal(document.monthly_benefit) * 12)

    def completion_errors(self, document: IncomeDocument) -> List[str]:
        income = self.annual_income(document)
        if income is None or income <= 0:
            return ["monthly benefit"]
        return []


class ManualEntryKind(DocumentKind):
    """Bank statements and offer letters: a reviewer enters the annual figure."""

    fields = ("employer_name", "employee_name", "entered_annual_income")
    employer_source = False

    def __init__(self, document_type: DocumentType):
        self.document_type = document_type

    def validate(self, extraction: Extraction, validator: FieldValidator) -> ValidationVerdict:
        return validator.manual_entry(extraction, self.policy)

    def apply_corrections(self, document: IncomeDocument, values: Dict[str, Any]) -> List[str]:
        values = dict(values)
        for key in ANNUAL_INCOME_KEYS:
            if key in values:
                values["entered_annual_income"] = values.pop(key)
        return super().apply_corrections(document, values)

    def annual_income(self, document: IncomeDocument) -> Optional[Decimal]:
        if document.entered_annual_income is None:
            return None
        return money(Decimal(document.entered_annual_income))

    def completion_errors(self, document: IncomeDocument) -> List[str]:
        if document.entered_annual_income is None:
            return ["annual income"]
        return []


_KINDS: Dict[DocumentType, DocumentKind] = {
    DocumentType.W2: W2Kind(),
    DocumentType.PAYSTUB: PaystubKind(),
    DocumentType.SOCIAL_SECURITY: SocialSecurityKind(),
    DocumentType.BANK_STATEMENT: ManualEntryKind(DocumentType.BANK_STATEMENT),
    DocumentType.OFFER_LETTER: ManualEntryKind(DocumentType.OFFER_LETTER),
}


def kind_for(document_type) -> DocumentKind:
    """Variant implementing a document type."""
    return _KINDS[DocumentType(document_type)]
