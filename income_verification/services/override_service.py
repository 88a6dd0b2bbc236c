"""Override request creation and lookup."""

import logging
from typing import List, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from income_verification.config import settings
from income_verification.exceptions import NotFound, OverrideAlreadyResolved
from income_verification.models.db_models import (
    IncomeDocument,
    IncomeVerification,
    OverrideRequest,
    OverrideStatus,
    OverrideType,
    Resident,
    local_now,
)

logger = logging.getLogger(__name__)


def _same_reference(column, value):
    return column.is_(None) if value is None else column == value


class OverrideService:
    """Creates, finds and closes override requests."""

    async def create(
        self,
        db: AsyncSession,
        type: OverrideType,
        user_explanation: str,
        requester_id: str,
        document_id: Optional[UUID] = None,
        resident_id: Optional[UUID] = None,
        verification_id: Optional[UUID] = None,
    ) -> OverrideRequest:
        """
        Create an override request from a caller.

        References are checked; a document reference fills in its resident and
        verification when those are not given.

        Raises:
            NotFound: If a referenced row does not exist
        """
        if document_id is not None:
            document = await db.get(IncomeDocument, document_id)
            if document is None:
                raise NotFound(f"Document {document_id} not found")
            resident_id = resident_id or document.resident_id
            verification_id = verification_id or document.verification_id
        if resident_id is not None and await db.get(Resident, resident_id) is None:
            raise NotFound(f"Resident {resident_id} not found")
        if verification_id is not None and await db.get(IncomeVerification, verification_id) is None:
            raise NotFound(f"Verification {verification_id} not found")

        override = OverrideRequest(
            type=type,
            status=OverrideStatus.PENDING,
            user_explanation=user_explanation,
            document_id=document_id,
            resident_id=resident_id,
            verification_id=verification_id,
            requester_id=requester_id,
        )
        db.add(override)
        await db.flush()
        logger.info(f"Created {type.value} override request {override.id} by {requester_id}")
        return override

    async def find_pending(
        self,
        db: AsyncSession,
        type: OverrideType,
        document_id: Optional[UUID] = None,
        resident_id: Optional[UUID] = None,
        verification_id: Optional[UUID] = None,
    ) -> Optional[OverrideRequest]:
        """PENDING override of the given type with exactly these references."""
        result = await db.execute(
            select(OverrideRequest)
            .where(
                OverrideRequest.type == type,
                OverrideRequest.status == OverrideStatus.PENDING,
                _same_reference(OverrideRequest.document_id, document_id),
                _same_reference(OverrideRequest.resident_id, resident_id),
                _same_reference(OverrideRequest.verification_id, verification_id),
            )
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def create_automatic(
        self,
        db: AsyncSession,
        type: OverrideType,
        explanation: str,
        document_id: Optional[UUID] = None,
        resident_id: Optional[UUID] = None,
        verification_id: Optional[UUID] = None,
        requester_id: Optional[str] = None,
    ) -> OverrideRequest:
        """Create an override unless an identical one is already pending."""
        existing = await self.find_pending(db, type, document_id, resident_id, verification_id)
        if existing is not None:
            logger.info(f"Reusing pending {type.value} override request {existing.id}")
            return existing

        override = OverrideRequest(
            type=type,
            status=OverrideStatus.PENDING,
            user_explanation=explanation,
            document_id=document_id,
            resident_id=resident_id,
            verification_id=verification_id,
            requester_id=requester_id or settings.SYSTEM_REQUESTER_ID,
        )
        db.add(override)
        await db.flush()
        logger.info(f"Created {type.value} override request {override.id}: {explanation}")
        return override

    async def get(self, db: AsyncSession, override_id: UUID) -> OverrideRequest:
        override = await db.get(OverrideRequest, override_id)
        if override is None:
            raise NotFound(f"Override request {override_id} not found")
        return override

    async def list(
        self,
        db: AsyncSession,
        status: Optional[OverrideStatus] = None,
        verification_id: Optional[UUID] = None,
        skip: int = 0,
        limit: int = 100,
    ) -> List[OverrideRequest]:
        query = select(OverrideRequest)
        if status is not None:
            query = query.where(OverrideRequest.status == status)
        if verification_id is not None:
            query = query.where(OverrideRequest.verification_id == verification_id)
        result = await db.execute(
            query.order_by(OverrideRequest.created_at.desc()).offset(skip).limit(limit)
        )
        return list(result.scalars().all())

    def close(
        self,
        override: OverrideRequest,
        status: OverrideStatus,
        reviewer_id: str,
        admin_notes: Optional[str] = None,
    ) -> None:
        """
        Record a reviewer decision.

        Raises:
            OverrideAlreadyResolved: If the override is no longer PENDING
        """
        if override.status != OverrideStatus.PENDING:
            raise OverrideAlreadyResolved(
                f"Override request {override.id} was already {override.status.value}"
            )
        if status == OverrideStatus.PENDING:
            raise ValueError("Override requests can only be resolved to APPROVED or DENIED")
        override.status = status
        override.reviewer_id = reviewer_id
        override.admin_notes = admin_notes
        override.reviewed_at = local_now()
        logger.info(f"Override request {override.id} {status.value} by {reviewer_id}")
