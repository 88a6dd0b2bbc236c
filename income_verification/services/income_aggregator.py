"""Income aggregation: documents to resident and lease annualized income."""

import logging
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from income_verification.exceptions import NotFound
from income_verification.models.db_models import (
    DocumentStatus,
    DocumentType,
    IncomeDocument,
    IncomeVerification,
    Resident,
    VerificationStatus,
)
from income_verification.rules.loader import get_document_policy, get_pay_frequency_multiplier
from income_verification.services.document_kinds import kind_for, money, normalize_employer

logger = logging.getLogger(__name__)

DEFAULT_EMPLOYER = "default"
ZERO = Decimal("0.00")


@dataclass
class ResidentIncome:
    """Breakdown of one resident's calculated income."""

    total: Decimal = ZERO
    employer_income: Dict[str, Decimal] = field(default_factory=dict)
    other_income: Dict[UUID, Decimal] = field(default_factory=dict)
    document_income: Dict[UUID, Decimal] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": float(self.total),
            "employer_income": {k: float(v) for k, v in self.employer_income.items()},
            "other_income": {str(k): float(v) for k, v in self.other_income.items()},
        }


def employer_key(document: IncomeDocument) -> str:
    return normalize_employer(document.employer_name) or DEFAULT_EMPLOYER


def group_pay_frequency(paystubs: List[IncomeDocument]) -> Optional[str]:
    """
    Most common pay frequency among a group's paystubs.

    Ties go to the frequency of the most recent stub among the tied ones.
    """
    frequencies = [p.pay_frequency for p in paystubs if p.pay_frequency]
    if not frequencies:
        return get_document_policy(DocumentType.PAYSTUB).default_pay_frequency
    counts = Counter(frequencies)
    top = max(counts.values())
    tied = {freq for freq, count in counts.items() if count == top}
    if len(tied) == 1:
        return tied.pop()
    recent = sorted(
        (p for p in paystubs if p.pay_frequency in tied),
        key=lambda p: (p.pay_period_end_date is not None, p.pay_period_end_date),
        reverse=True,
    )
    return recent[0].pay_frequency


def annualize_paystubs(paystubs: List[IncomeDocument]) -> Optional[Decimal]:
    """Average gross pay across the stubs times the group's frequency multiplier."""
    amounts = [Decimal(p.gross_pay_amount) for p in paystubs if p.gross_pay_amount is not None]
    if not amounts:
        return None
    average = sum(amounts) / len(amounts)
    return money(average * get_pay_frequency_multiplier(group_pay_frequency(paystubs)))


def annualize_employer_group(
    documents: List[IncomeDocument],
) -> Tuple[Optional[Decimal], Dict[UUID, Decimal]]:
    """
    Income from one employer group, and each document's share.

    A W-2 wins over paystubs. With several W-2s the latest tax year is used,
    highest figure first.
    """
    shares: Dict[UUID, Decimal] = {}
    w2s = [d for d in documents if d.document_type == DocumentType.W2]
    paystubs = [d for d in documents if d.document_type == DocumentType.PAYSTUB]

    w2_kind = kind_for(DocumentType.W2)
    w2_income = None
    best_w2_key = None
    for w2 in w2s:
        income = w2_kind.annual_income(w2)
        if income is None:
            continue
        shares[w2.id] = income
        key = (w2.tax_year or "", income)
        if best_w2_key is None or key > best_w2_key:
            best_w2_key = key
            w2_income = income

    paystub_income = annualize_paystubs(paystubs)
    if paystub_income is not None:
        for paystub in paystubs:
            shares[paystub.id] = paystub_income

    return (w2_income if w2_income is not None else paystub_income), shares


def calculate_resident_income(
    documents: Iterable[IncomeDocument], has_no_income: bool = False
) -> ResidentIncome:
    """Full calculation over a resident's COMPLETED documents."""
    result = ResidentIncome()
    if has_no_income:
        return result

    groups: Dict[str, List[IncomeDocument]] = defaultdict(list)
    for document in documents:
        kind = kind_for(document.document_type)
        if kind.employer_source:
            groups[employer_key(document)].append(document)
            continue
        income = kind.annual_income(document)
        if income is not None:
            result.other_income[document.id] = income
            result.document_income[document.id] = income

    for key, group in groups.items():
        income, shares = annualize_employer_group(group)
        result.document_income.update(shares)
        if income is not None:
            result.employer_income[key] = income

    result.total = money(
        sum(result.employer_income.values(), ZERO) + sum(result.other_income.values(), ZERO)
    )
    return result


async def recompute(db: AsyncSession, verification_id: UUID) -> Decimal:
    """
    Recalculate every resident total and the verification total from scratch.

    Runs inside the caller's transaction and only flushes. A finalized
    verification keeps its frozen figures.
    """
    verification = await db.get(IncomeVerification, verification_id)
    if verification is None:
        raise NotFound(f"Verification {verification_id} not found")
    if verification.status == VerificationStatus.FINALIZED:
        return verification.calculated_verified_income

    residents = (
        await db.execute(select(Resident).where(Resident.lease_id == verification.lease_id))
    ).scalars().all()
    documents = (
        await db.execute(
            select(IncomeDocument).where(IncomeDocument.verification_id == verification_id)
        )
    ).scalars().all()

    completed: Dict[UUID, List[IncomeDocument]] = defaultdict(list)
    for document in documents:
        if document.status == DocumentStatus.COMPLETED:
            completed[document.resident_id].append(document)
        else:
            document.calculated_annualized_income = None

    lease_total = ZERO
    for resident in residents:
        income = calculate_resident_income(completed[resident.id], resident.has_no_income)
        resident.calculated_annualized_income = income.total
        for document in completed[resident.id]:
            document.calculated_annualized_income = income.document_income.get(document.id)
        lease_total += income.total

    verification.calculated_verified_income = money(lease_total)
    await db.flush()
    logger.info(f"Recomputed verification {verification_id}: lease total ${lease_total}")
    return verification.calculated_verified_income
