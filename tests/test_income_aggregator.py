"""Tests for income aggregation."""
from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from income_verification.models.db_models import (
    DocumentStatus,
    DocumentType,
    IncomeDocument,
    IncomeVerification,
    Resident,
    SocialSecurityForm,
    VerificationStatus,
)
from income_verification.services import income_aggregator
from income_verification.services.document_kinds import kind_for
from income_verification.services.income_aggregator import (
    DEFAULT_EMPLOYER,
    calculate_resident_income,
    group_pay_frequency,
)


def w2(box1=None, box3=None, box5=None, employer="Acme Corp", tax_year="2025"):
    return IncomeDocument(
        id=uuid4(),
        document_type=DocumentType.W2,
        status=DocumentStatus.COMPLETED,
        box1_wages=box1,
        box3_ss_wages=box3,
        box5_med_wages=box5,
        employer_name=employer,
        tax_year=tax_year,
    )


def paystub(gross, frequency="BI-WEEKLY", employer="Acme Corp", end=date(2026, 1, 14)):
    return IncomeDocument(
        id=uuid4(),
        document_type=DocumentType.PAYSTUB,
        status=DocumentStatus.COMPLETED,
        gross_pay_amount=Decimal(gross),
        pay_frequency=frequency,
        employer_name=employer,
        pay_period_end_date=end,
    )


# =============================================================================
# RESIDENT CALCULATION
# =============================================================================

def test_w2_uses_highest_wage_box():
    """Test using the highest W-2 wage box."""
    income = calculate_resident_income([w2(Decimal("50000"), Decimal("52000"), Decimal("51000"))])

    assert income.total == Decimal("52000.00")


def test_paystubs_average_times_frequency():
    """Test annualizing averaged paystubs."""
    income = calculate_resident_income([paystub("2000"), paystub("2200")])

    # (2000 + 2200) / 2 * 26
    assert income.total == Decimal("54600.00")


def test_w2_wins_over_paystubs_from_same_employer():
    """Test a W-2 replacing paystubs from its employer."""
    documents = [w2(Decimal("45000")), paystub("2000")]

    income = calculate_resident_income(documents)

    assert income.total == Decimal("45000.00")
    assert income.employer_income == {"acme corp": Decimal("45000.00")}
    # Each document still reports its own share
    assert income.document_income[documents[1].id] == Decimal("52000.00")


def test_latest_w2_tax_year_is_used():
    """Test using the latest W-2 tax year."""
    income = calculate_resident_income(
        [w2(Decimal("60000"), tax_year="2024"), w2(Decimal("45000"), tax_year="2025")]
    )

    assert income.total == Decimal("45000.00")


def test_employers_are_summed_and_names_normalized():
    """Test summing employers with normalized names."""
    documents = [
        paystub("1000", employer="Acme  Corp"),
        paystub("1000", employer="acme corp"),
        w2(Decimal("12000"), employer="Corner Bakery"),
    ]

    income = calculate_resident_income(documents)

    assert set(income.employer_income) == {"acme corp", "corner bakery"}
    assert income.total == Decimal("38000.00")


def test_documents_without_employer_share_default_group():
    """Test grouping documents without an employer."""
    income = calculate_resident_income([paystub("500", employer=None)])

    assert DEFAULT_EMPLOYER in income.employer_income


def test_social_security_and_manual_entry_are_other_income():
    """Test counting benefits and manual entries as other income."""
    ss = IncomeDocument(
        id=uuid4(),
        document_type=DocumentType.SOCIAL_SECURITY,
        monthly_benefit=Decimal("1200"),
    )
    bank = IncomeDocument(
        id=uuid4(),
        document_type=DocumentType.BANK_STATEMENT,
        entered_annual_income=Decimal("3000"),
    )

    income = calculate_resident_income([ss, bank, w2(Decimal("20000"))])

    assert income.other_income == {ss.id: Decimal("14400.00"), bank.id: Decimal("3000.00")}
    assert income.total == Decimal("37400.00")


def test_ssa_1099_annual_total_is_kept_exact():
    """An annual benefit not divisible into whole monthly cents still counts in full."""
    ss = IncomeDocument(id=uuid4(), document_type=DocumentType.SOCIAL_SECURITY)
    kind_for(DocumentType.SOCIAL_SECURITY).apply_extracted(
        ss, {"social_security_form": "SSA_1099", "annual_benefit": Decimal("10000"), "tax_year": "2025"}
    )

    income = calculate_resident_income([ss])

    assert ss.monthly_benefit == Decimal("833.33")
    assert ss.social_security_form == SocialSecurityForm.SSA_1099
    assert income.total == Decimal("10000.00")


def test_corrected_social_security_amounts():
    """A reviewer's annual figure is kept exact; a monthly figure replaces it."""
    kind = kind_for(DocumentType.SOCIAL_SECURITY)
    ss = IncomeDocument(id=uuid4(), document_type=DocumentType.SOCIAL_SECURITY)

    kind.apply_corrections(ss, {"annual_benefit": "10,000.00"})
    assert kind.annual_income(ss) == Decimal("10000.00")
    assert kind.completion_errors(ss) == []

    kind.apply_corrections(ss, {"monthly_benefit": "900"})
    assert ss.annual_benefit is None
    assert kind.annual_income(ss) == Decimal("10800.00")


def test_has_no_income_is_zero():
    """Test a resident marked as having no income."""
    income = calculate_resident_income([w2(Decimal("45000"))], has_no_income=True)

    assert income.total == Decimal("0.00")
    assert income.document_income == {}


def test_group_pay_frequency_majority():
    """Test the most common frequency winning."""
    stubs = [paystub("100", "WEEKLY"), paystub("100", "WEEKLY"), paystub("100", "BI-WEEKLY")]

    assert group_pay_frequency(stubs) == "WEEKLY"


def test_group_pay_frequency_tie_goes_to_most_recent():
    """Test a frequency tie going to the latest stub."""
    stubs = [
        paystub("100", "WEEKLY", end=date(2026, 1, 7)),
        paystub("100", "BI-WEEKLY", end=date(2026, 1, 14)),
    ]

    assert group_pay_frequency(stubs) == "BI-WEEKLY"


def test_group_pay_frequency_defaults_when_unknown():
    """Test the default frequency."""
    assert group_pay_frequency([paystub("100", None)]) == "BI-WEEKLY"


# =============================================================================
# RECOMPUTE
# =============================================================================

@pytest.mark.asyncio
async def test_recompute_sets_resident_and_lease_totals(session_maker, seeded, make_document):
    """Test recomputing resident and lease totals."""
    completed = await make_document(DocumentType.W2, box1_wages=Decimal("45000"), tax_year="2025")
    review = await make_document(
        DocumentType.W2,
        DocumentStatus.NEEDS_REVIEW,
        box1_wages=Decimal("90000"),
        tax_year="2025",
        employer_name="Other Co",
    )

    async with session_maker() as db:
        total = await income_aggregator.recompute(db, seeded.verification.id)
        await db.commit()

    async with session_maker() as db:
        resident = await db.get(Resident, seeded.resident.id)
        verification = await db.get(IncomeVerification, seeded.verification.id)
        assert total == Decimal("45000.00")
        assert resident.calculated_annualized_income == Decimal("45000.00")
        assert verification.calculated_verified_income == Decimal("45000.00")
        assert (await db.get(IncomeDocument, completed.id)).calculated_annualized_income == Decimal("45000.00")
        assert (await db.get(IncomeDocument, review.id)).calculated_annualized_income is None


@pytest.mark.asyncio
async def test_recompute_is_idempotent(session_maker, seeded, make_document):
    """Test recomputing twice."""
    await make_document(DocumentType.PAYSTUB, gross_pay_amount=Decimal("2000"), pay_frequency="BI-WEEKLY")
    await make_document(DocumentType.PAYSTUB, gross_pay_amount=Decimal("2200"), pay_frequency="BI-WEEKLY")

    async with session_maker() as db:
        first = await income_aggregator.recompute(db, seeded.verification.id)
        second = await income_aggregator.recompute(db, seeded.verification.id)

    assert first == second == Decimal("54600.00")


@pytest.mark.asyncio
async def test_recompute_keeps_finalized_figure(session_maker, seeded, make_document):
    """Test that recompute leaves a finalized verification alone."""
    async with session_maker() as db:
        verification = await db.get(IncomeVerification, seeded.verification.id)
        verification.status = VerificationStatus.FINALIZED
        verification.calculated_verified_income = Decimal("41000.00")
        await db.commit()
    await make_document(DocumentType.W2, box1_wages=Decimal("45000"), tax_year="2025")

    async with session_maker() as db:
        total = await income_aggregator.recompute(db, seeded.verification.id)

    assert total == Decimal("41000.00")
