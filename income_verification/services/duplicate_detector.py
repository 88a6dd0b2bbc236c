"""Duplicate detection for income documents."""

import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy import Select, select
from sqlalchemy.ext.asyncio import AsyncSession

from income_verification.config import settings
from income_verification.exceptions import DuplicateDetected
from income_verification.models.db_models import DocumentStatus, IncomeDocument
from income_verification.services.document_kinds import kind_for

logger = logging.getLogger(__name__)


class DuplicateDetector:
    """Blocks re-submission of a pay period or tax year already on record."""

    def __init__(self, tolerance: Optional[Decimal] = None):
        self.tolerance = (
            Decimal(str(settings.DUPLICATE_AMOUNT_TOLERANCE)) if tolerance is None else tolerance
        )

    async def find_duplicate(
        self, db: AsyncSession, document: IncomeDocument
    ) -> Optional[IncomeDocument]:
        """
        Find an existing document that ``document`` repeats.

        Candidates are the resident's COMPLETED or NEEDS_REVIEW documents of the
        same type, newest first. A store error is logged and treated as no
        duplicate so that it never blocks an upload. The lookup runs in a
        savepoint so a failed query leaves the caller's transaction usable.
        """
        kind = kind_for(document.document_type)
        await db.flush()
        try:
            async with db.begin_nested():
                result = await db.execute(self.candidates_query(document))
                candidates = result.scalars().all()
        except Exception as e:
            logger.error(f"Duplicate check failed for document {document.id}, allowing upload: {e}")
            return None

        for candidate in candidates:
            if kind.duplicate_of(document, candidate, self.tolerance):
                return candidate
        return None

    def candidates_query(self, document: IncomeDocument) -> Select:
        return (
            select(IncomeDocument)
            .where(
                IncomeDocument.resident_id == document.resident_id,
                IncomeDocument.document_type == document.document_type,
                IncomeDocument.status.in_([DocumentStatus.COMPLETED, DocumentStatus.NEEDS_REVIEW]),
                IncomeDocument.id != document.id,
            )
            .order_by(IncomeDocument.upload_date.desc())
        )

    async def reject(
        self, db: AsyncSession, document: IncomeDocument, original: IncomeDocument
    ) -> DuplicateDetected:
        """Delete the repeated document row and describe the conflict."""
        reason = self.describe(document, original)
        await db.delete(document)
        await db.flush()
        logger.warning(f"Duplicate document {document.id} rejected: {reason}")
        return DuplicateDetected(reason, original.id)

    @staticmethod
    def describe(document: IncomeDocument, original: IncomeDocument) -> str:
        employer = original.employer_name or "unknown employer"
        if original.pay_period_start_date is not None:
            return (
                f"A paystub from {employer} for pay period {original.pay_period_start_date} to "
                f"{original.pay_period_end_date} with gross pay ${original.gross_pay_amount} "
                f"is already on record (document {original.id})."
            )
        return (
            f"A {original.tax_year} W-2 from {employer} with box 1 wages "
            f"${original.box1_wages} is already on record (document {original.id})."
        )
