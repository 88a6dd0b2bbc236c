"""Verification, document and resident state transitions."""

import logging
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from income_verification.config import settings
from income_verification.exceptions import (
    FinalizationBlocked,
    InvalidTransition,
    LeaseConflict,
    NotFound,
    ResidentFinalized,
    StaleIncomeFigure,
    ValidationFailure,
    VerificationClosed,
)
from income_verification.models.db_models import (
    DocumentStatus,
    IncomeDocument,
    IncomeVerification,
    Lease,
    OverrideRequest,
    OverrideStatus,
    OverrideType,
    Resident,
    VerificationReason,
    VerificationStatus,
    local_now,
)
from income_verification.services import income_aggregator
from income_verification.services.document_kinds import kind_for, money
from income_verification.services.file_handler import FileHandler
from income_verification.services.override_service import OverrideService
from income_verification.services.reconciler import (
    DiscrepancyReconciler,
    DiscrepancyResolution,
    resident_verified_figure,
)

logger = logging.getLogger(__name__)


class LifecycleManager:
    """State machine for verifications, documents and resident finalization."""

    def __init__(
        self,
        overrides: Optional[OverrideService] = None,
        reconciler: Optional[DiscrepancyReconciler] = None,
        file_handler: Optional[FileHandler] = None,
    ):
        self.overrides = overrides or OverrideService()
        self.reconciler = reconciler or DiscrepancyReconciler()
        self.file_handler = file_handler or FileHandler()

    # =========================================================================
    # LOOKUPS
    # =========================================================================

    async def get_lease(self, db: AsyncSession, lease_id: UUID) -> Lease:
        lease = await db.get(Lease, lease_id)
        if lease is None:
            raise NotFound(f"Lease {lease_id} not found")
        return lease

    async def get_verification(self, db: AsyncSession, verification_id: UUID) -> IncomeVerification:
        verification = await db.get(IncomeVerification, verification_id)
        if verification is None:
            raise NotFound(f"Verification {verification_id} not found")
        return verification

    async def get_open_verification(self, db: AsyncSession, verification_id: UUID) -> IncomeVerification:
        verification = await self.get_verification(db, verification_id)
        if verification.status != VerificationStatus.IN_PROGRESS:
            raise VerificationClosed(f"Verification {verification_id} is finalized")
        return verification

    async def get_resident(
        self, db: AsyncSession, verification: IncomeVerification, resident_id: UUID
    ) -> Resident:
        resident = await db.get(Resident, resident_id)
        if resident is None or resident.lease_id != verification.lease_id:
            raise NotFound(f"Resident {resident_id} not found on this lease")
        return resident

    async def get_document(self, db: AsyncSession, document_id: UUID) -> IncomeDocument:
        document = await db.get(IncomeDocument, document_id)
        if document is None:
            raise NotFound(f"Document {document_id} not found")
        return document

    async def lease_residents(self, db: AsyncSession, lease_id: UUID) -> List[Resident]:
        result = await db.execute(
            select(Resident).where(Resident.lease_id == lease_id).order_by(Resident.name)
        )
        return list(result.scalars().all())

    async def in_progress_for_lease(
        self, db: AsyncSession, lease_id: UUID, for_update: bool = False
    ) -> Optional[IncomeVerification]:
        query = select(IncomeVerification).where(
            IncomeVerification.lease_id == lease_id,
            IncomeVerification.status == VerificationStatus.IN_PROGRESS,
        )
        if for_update:
            query = query.with_for_update()
        return (await db.execute(query)).scalar_one_or_none()

    # =========================================================================
    # VERIFICATION
    # =========================================================================

    async def start_verification(
        self,
        db: AsyncSession,
        lease_id: UUID,
        reason: VerificationReason = VerificationReason.ANNUAL_RECERTIFICATION,
        verification_period_start: Optional[date] = None,
        verification_period_end: Optional[date] = None,
        due_date: Optional[date] = None,
        supersede: bool = False,
    ) -> IncomeVerification:
        """
        Open a verification for a lease.

        With ``supersede`` (a deliberately new lease term) an existing
        IN_PROGRESS verification is finalized in the same transaction first.

        Raises:
            LeaseConflict: If one is already in progress and ``supersede`` is not set
        """
        await self.get_lease(db, lease_id)
        existing = await self.in_progress_for_lease(db, lease_id, for_update=True)
        if existing is not None:
            if not supersede:
                raise LeaseConflict(existing.id)
            await self._finalize(db, existing, superseded=True)

        lease_year = (
            await db.execute(
                select(func.count()).select_from(IncomeVerification).where(
                    IncomeVerification.lease_id == lease_id
                )
            )
        ).scalar_one() + 1

        # Resident finalization belongs to one verification
        for resident in await self.lease_residents(db, lease_id):
            resident.income_finalized = False
            resident.finalized_at = None
            resident.has_no_income = False
            resident.verified_income = None
            resident.calculated_annualized_income = None

        verification = IncomeVerification(
            lease_id=lease_id,
            status=VerificationStatus.IN_PROGRESS,
            reason=reason,
            verification_period_start=verification_period_start,
            verification_period_end=verification_period_end,
            due_date=due_date,
            lease_year=lease_year,
        )
        db.add(verification)
        try:
            await db.flush()
        except IntegrityError:
            # Lost a race with a concurrent start for the same lease
            await db.rollback()
            current = await self.in_progress_for_lease(db, lease_id)
            if current is None:
                raise
            raise LeaseConflict(current.id)
        logger.info(f"Started verification {verification.id} for lease {lease_id} ({reason.value})")
        return verification

    async def cancel_verification(self, db: AsyncSession, verification_id: UUID) -> None:
        """Delete an IN_PROGRESS verification that has no documents."""
        verification = await self.get_open_verification(db, verification_id)
        count = (
            await db.execute(
                select(func.count()).select_from(IncomeDocument).where(
                    IncomeDocument.verification_id == verification_id
                )
            )
        ).scalar_one()
        if count:
            raise InvalidTransition(
                f"Verification {verification_id} has {count} documents and cannot be cancelled"
            )
        await db.delete(verification)
        await db.flush()
        logger.info(f"Cancelled verification {verification_id}")

    async def finalize_verification(
        self,
        db: AsyncSession,
        verification_id: UUID,
        calculated_income: Optional[Decimal] = None,
    ) -> IncomeVerification:
        """
        Finalize the lease-wide verified income.

        Raises:
            FinalizationBlocked: If a resident is not finalized or a discrepancy is unresolved
            StaleIncomeFigure: If ``calculated_income`` does not match the engine's total
        """
        verification = await self.get_open_verification(db, verification_id)
        residents = await self.lease_residents(db, verification.lease_id)
        reasons = self._lease_blockers(residents)
        if not reasons:
            for discrepancy in await self.reconciler.unresolved(db, verification):
                reasons.append(f"Unresolved discrepancy: {discrepancy.explanation}")
        if reasons:
            raise FinalizationBlocked("; ".join(reasons), reasons)

        total = self._verified_total(residents)
        if calculated_income is not None:
            tolerance = Decimal(str(settings.DISCREPANCY_TOLERANCE))
            if abs(Decimal(str(calculated_income)) - total) > tolerance:
                raise StaleIncomeFigure(
                    f"Submitted income ${Decimal(str(calculated_income)):,.2f} does not match "
                    f"verified income ${total:,.2f}"
                )
        await self._finalize(db, verification)
        return verification

    def _lease_blockers(self, residents: List[Resident]) -> List[str]:
        if not residents:
            return ["Lease has no residents"]
        return [f"Resident {r.name} is not finalized" for r in residents if not r.income_finalized]

    def _verified_total(self, residents: List[Resident]) -> Decimal:
        return money(sum((Decimal(r.verified_income or 0) for r in residents), Decimal("0")))

    async def _finalize(
        self, db: AsyncSession, verification: IncomeVerification, superseded: bool = False
    ) -> None:
        if superseded:
            # Freeze whatever the documents currently support
            await income_aggregator.recompute(db, verification.id)
        else:
            residents = await self.lease_residents(db, verification.lease_id)
            verification.calculated_verified_income = self._verified_total(residents)
        verification.status = VerificationStatus.FINALIZED
        verification.finalized_at = local_now()
        await db.flush()
        logger.info(
            f"Finalized verification {verification.id} "
            f"({'superseded' if superseded else 'complete'}): ${verification.calculated_verified_income}"
        )

    async def reconcile(self, db: AsyncSession, verification: IncomeVerification) -> Dict[str, Any]:
        """
        Run the discrepancy check once every resident is finalized.

        With nothing unresolved the verification is finalized automatically.
        """
        residents = await self.lease_residents(db, verification.lease_id)
        if verification.status != VerificationStatus.IN_PROGRESS or self._lease_blockers(residents):
            return {"checked": False, "finalized": verification.status == VerificationStatus.FINALIZED}

        discrepancies = await self.reconciler.find_discrepancies(db, verification)
        unresolved = [d for d in discrepancies if not d.resolved]
        if unresolved:
            logger.info(
                f"Verification {verification.id} has {len(unresolved)} unresolved discrepancies"
            )
        else:
            await self._finalize(db, verification)
        return {
            "checked": True,
            "finalized": not unresolved,
            "discrepancies": [d.to_dict() for d in discrepancies],
        }

    # =========================================================================
    # RESIDENT
    # =========================================================================

    async def finalize_resident(
        self, db: AsyncSession, verification_id: UUID, resident_id: UUID
    ) -> Resident:
        """
        Freeze a resident's verified income at the calculated figure.

        Raises:
            ResidentFinalized: If already finalized
            FinalizationBlocked: If documents are processing, awaiting review,
                or no completed document shows income
        """
        verification = await self.get_open_verification(db, verification_id)
        resident = await self.get_resident(db, verification, resident_id)
        if resident.income_finalized:
            raise ResidentFinalized(f"Resident {resident.name} is already finalized")

        await income_aggregator.recompute(db, verification.id)
        reasons = await self._resident_blockers(db, verification, resident)
        if reasons:
            raise FinalizationBlocked("; ".join(reasons), reasons)

        resident.verified_income = resident.calculated_annualized_income or Decimal("0.00")
        resident.income_finalized = True
        resident.finalized_at = local_now()
        await db.flush()
        logger.info(f"Finalized resident {resident.id} at ${resident.verified_income}")

        await self.reconcile(db, verification)
        return resident

    async def _resident_blockers(
        self, db: AsyncSession, verification: IncomeVerification, resident: Resident
    ) -> List[str]:
        documents = (
            await db.execute(
                select(IncomeDocument).where(
                    IncomeDocument.verification_id == verification.id,
                    IncomeDocument.resident_id == resident.id,
                )
            )
        ).scalars().all()

        reasons = []
        processing = [d for d in documents if d.status == DocumentStatus.PROCESSING]
        if processing:
            reasons.append(f"{len(processing)} documents are still processing")

        review_ids = [d.id for d in documents if d.status == DocumentStatus.NEEDS_REVIEW]
        if review_ids:
            pending = (
                await db.execute(
                    select(func.count()).select_from(OverrideRequest).where(
                        OverrideRequest.document_id.in_(review_ids),
                        OverrideRequest.status == OverrideStatus.PENDING,
                    )
                )
            ).scalar_one()
            if pending:
                reasons.append(f"{pending} documents are awaiting review")

        if not resident.has_no_income:
            has_income = any(
                d.status == DocumentStatus.COMPLETED
                and d.calculated_annualized_income is not None
                and d.calculated_annualized_income > 0
                for d in documents
            )
            if not has_income:
                reasons.append("No completed document with positive income")
        return reasons

    async def mark_no_income(
        self, db: AsyncSession, verification_id: UUID, resident_id: UUID
    ) -> Resident:
        """Record that the resident has no income and finalize at $0."""
        verification = await self.get_open_verification(db, verification_id)
        resident = await self.get_resident(db, verification, resident_id)
        if resident.income_finalized:
            raise ResidentFinalized(f"Resident {resident.name} is already finalized")
        resident.has_no_income = True
        await db.flush()
        logger.info(f"Resident {resident.id} marked as having no income")
        return await self.finalize_resident(db, verification_id, resident_id)

    async def unfinalize_resident(
        self, db: AsyncSession, verification_id: UUID, resident_id: UUID
    ) -> Resident:
        """Reopen a resident for document changes."""
        verification = await self.get_open_verification(db, verification_id)
        resident = await self.get_resident(db, verification, resident_id)
        self._reopen(resident)
        await income_aggregator.recompute(db, verification.id)
        logger.info(f"Unfinalized resident {resident.id}")
        return resident

    def _reopen(self, resident: Resident) -> None:
        resident.income_finalized = False
        resident.finalized_at = None
        resident.verified_income = None
        resident.has_no_income = False

    # =========================================================================
    # DOCUMENTS
    # =========================================================================

    async def ensure_modifiable(
        self, db: AsyncSession, verification_id: UUID, resident_id: UUID
    ) -> tuple:
        """
        Verification and resident that may take document changes.

        Raises:
            VerificationClosed: If the verification is finalized
            ResidentFinalized: If the resident is finalized
        """
        verification = await self.get_open_verification(db, verification_id)
        resident = await self.get_resident(db, verification, resident_id)
        if resident.income_finalized:
            raise ResidentFinalized(
                f"Resident {resident.name} is finalized; unfinalize before changing documents"
            )
        return verification, resident

    async def delete_document(self, db: AsyncSession, document_id: UUID) -> None:
        """Delete a document (cancelling any analysis) and recompute income."""
        document = await self.get_document(db, document_id)
        verification, _ = await self.ensure_modifiable(
            db, document.verification_id, document.resident_id
        )
        file_path = document.file_path
        await db.delete(document)
        await db.flush()
        await income_aggregator.recompute(db, verification.id)
        if file_path:
            self.file_handler.delete_file(file_path)
        logger.info(f"Deleted document {document_id}")

    # =========================================================================
    # OVERRIDES AND DISCREPANCIES
    # =========================================================================

    async def resolve_override(
        self,
        db: AsyncSession,
        override_id: UUID,
        status: OverrideStatus,
        reviewer_id: str,
        admin_notes: Optional[str] = None,
        corrected_values: Optional[Dict[str, Any]] = None,
    ) -> OverrideRequest:
        """
        Apply a reviewer decision.

        Approving a document override promotes the document to COMPLETED with
        its original or corrected values. A denied discrepancy override reopens
        the resident; an approved one counts the discrepancy as resolved.

        Raises:
            OverrideAlreadyResolved: If the override is not PENDING
            ValidationFailure: If corrected values are malformed or required values are missing
        """
        override = await self.overrides.get(db, override_id)
        self.overrides.close(override, status, reviewer_id, admin_notes)

        if override.document_id is not None and status == OverrideStatus.APPROVED:
            await self._approve_document(db, override.document_id, corrected_values or {})

        if override.type == OverrideType.INCOME_DISCREPANCY and override.verification_id:
            verification = await self.get_verification(db, override.verification_id)
            if status == OverrideStatus.DENIED and override.resident_id:
                resident = await db.get(Resident, override.resident_id)
                if resident is not None and verification.status == VerificationStatus.IN_PROGRESS:
                    self._reopen(resident)
                    await income_aggregator.recompute(db, verification.id)
                    logger.info(f"Discrepancy denied; reopened resident {resident.id}")
            else:
                await self.reconcile(db, verification)

        await db.flush()
        return override

    async def _approve_document(
        self, db: AsyncSession, document_id: UUID, corrected_values: Dict[str, Any]
    ) -> IncomeDocument:
        document = await self.get_document(db, document_id)
        verification, _ = await self.ensure_modifiable(
            db, document.verification_id, document.resident_id
        )
        if document.status == DocumentStatus.PROCESSING:
            raise InvalidTransition(f"Document {document_id} is still processing")

        kind = kind_for(document.document_type)
        try:
            changed = kind.apply_corrections(document, corrected_values)
        except ValueError as e:
            raise ValidationFailure(str(e), [str(e)]) from e

        missing = kind.completion_errors(document)
        if missing:
            raise ValidationFailure(
                f"Cannot complete document without: {', '.join(missing)}", missing
            )

        document.status = DocumentStatus.COMPLETED
        document.review_reason = None
        document.processing_completed_at = document.processing_completed_at or local_now()
        await db.flush()
        await income_aggregator.recompute(db, verification.id)
        logger.info(
            f"Document {document.id} approved by reviewer"
            + (f" with corrected {', '.join(changed)}" if changed else "")
        )
        return document

    async def resolve_discrepancy(
        self,
        db: AsyncSession,
        verification_id: UUID,
        resident_id: UUID,
        resolution: DiscrepancyResolution,
        requester_id: str,
        explanation: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Settle one resident's discrepancy and re-run the lease finalization check.

        Raises:
            InvalidTransition: If the resident has no unresolved discrepancy
        """
        verification = await self.get_open_verification(db, verification_id)
        resident = await self.get_resident(db, verification, resident_id)
        discrepancy = next(
            (
                d
                for d in await self.reconciler.unresolved(db, verification)
                if d.resident_id == resident.id
            ),
            None,
        )
        if discrepancy is None:
            raise InvalidTransition(f"Resident {resident.name} has no unresolved discrepancy")

        result: Dict[str, Any] = {"resolution": resolution.value, "discrepancy": discrepancy.to_dict()}
        if resolution == DiscrepancyResolution.ACCEPT_VERIFIED:
            resident.annualized_income = resident_verified_figure(resident)
            await db.flush()
            logger.info(f"Declared income for resident {resident.id} set to ${resident.annualized_income}")
        elif resolution == DiscrepancyResolution.MODIFY:
            self._reopen(resident)
            await income_aggregator.recompute(db, verification.id)
            logger.info(f"Resident {resident.id} reopened to modify documents")
        else:
            text = discrepancy.explanation
            if explanation:
                text = f"{text}. {explanation}"
            override = await self.overrides.create_automatic(
                db,
                OverrideType.INCOME_DISCREPANCY,
                text,
                resident_id=resident.id,
                verification_id=verification.id,
                requester_id=requester_id,
            )
            result["override_request_id"] = str(override.id)

        result["lease"] = await self.reconcile(db, verification)
        return result
