"""Discrepancy detection between declared and verified income."""

import enum
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from income_verification.config import settings
from income_verification.models.db_models import (
    IncomeVerification,
    OverrideRequest,
    OverrideStatus,
    OverrideType,
    Resident,
)

logger = logging.getLogger(__name__)


class DiscrepancyResolution(str, enum.Enum):
    """The three ways a discrepancy can be settled."""

    ACCEPT_VERIFIED = "ACCEPT_VERIFIED"  # Declared income becomes the verified figure
    MODIFY = "MODIFY"  # Reopen the resident for document changes
    ESCALATE = "ESCALATE"  # Ask a reviewer via an INCOME_DISCREPANCY override


@dataclass
class Discrepancy:
    """Declared vs verified income for one resident."""

    resident_id: UUID
    resident_name: str
    declared_income: Decimal
    verified_income: Decimal
    resolved: bool = False
    pending_override_id: Optional[UUID] = None

    @property
    def difference(self) -> Decimal:
        return self.verified_income - self.declared_income

    @property
    def explanation(self) -> str:
        return (
            f"Declared income ${self.declared_income:,.2f} for {self.resident_name} differs from "
            f"verified income ${self.verified_income:,.2f} by ${abs(self.difference):,.2f}"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resident_id": str(self.resident_id),
            "resident_name": self.resident_name,
            "declared_income": float(self.declared_income),
            "verified_income": float(self.verified_income),
            "difference": float(self.difference),
            "resolved": self.resolved,
            "pending_override_id": str(self.pending_override_id) if self.pending_override_id else None,
            "explanation": self.explanation,
        }


def resident_verified_figure(resident: Resident) -> Decimal:
    """The figure compared against declared income."""
    if resident.income_finalized and resident.verified_income is not None:
        return Decimal(resident.verified_income)
    return Decimal(resident.calculated_annualized_income or 0)


class DiscrepancyReconciler:
    """Compares rent-roll declared income with verified income per resident."""

    def __init__(self, tolerance: Optional[Decimal] = None):
        self.tolerance = (
            Decimal(str(settings.DISCREPANCY_TOLERANCE)) if tolerance is None else tolerance
        )

    async def find_discrepancies(
        self, db: AsyncSession, verification: IncomeVerification
    ) -> List[Discrepancy]:
        """
        Every resident whose declared and verified income differ by more than the tolerance.

        Leases with no declared income on any resident are skipped entirely. A
        discrepancy with an APPROVED INCOME_DISCREPANCY override is marked resolved.
        """
        residents = (
            await db.execute(
                select(Resident)
                .where(Resident.lease_id == verification.lease_id)
                .order_by(Resident.name)
            )
        ).scalars().all()

        if all(r.annualized_income is None for r in residents):
            logger.info(f"No declared income on lease {verification.lease_id}; skipping discrepancy check")
            return []

        overrides = (
            await db.execute(
                select(OverrideRequest).where(
                    OverrideRequest.verification_id == verification.id,
                    OverrideRequest.type == OverrideType.INCOME_DISCREPANCY,
                )
            )
        ).scalars().all()
        approved = {o.resident_id for o in overrides if o.status == OverrideStatus.APPROVED}
        pending = {o.resident_id: o.id for o in overrides if o.status == OverrideStatus.PENDING}

        discrepancies = []
        for resident in residents:
            declared = Decimal(resident.annualized_income or 0)
            verified = resident_verified_figure(resident)
            if abs(declared - verified) <= self.tolerance:
                continue
            discrepancies.append(
                Discrepancy(
                    resident_id=resident.id,
                    resident_name=resident.name,
                    declared_income=declared,
                    verified_income=verified,
                    resolved=resident.id in approved,
                    pending_override_id=pending.get(resident.id),
                )
            )
        return discrepancies

    async def unresolved(
        self, db: AsyncSession, verification: IncomeVerification
    ) -> List[Discrepancy]:
        return [d for d in await self.find_discrepancies(db, verification) if not d.resolved]
