"""Document intake and the background analysis pipeline.

Upload persists a PROCESSING document and enqueues a job. The job runs
extraction, validation, duplicate detection and eligibility checks, then
commits the document's final status together with the income recompute.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple
from uuid import UUID

from fastapi import UploadFile
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from income_verification.database import async_session_maker
from income_verification.exceptions import EligibilityFailure, ExtractionFailure
from income_verification.models.db_models import (
    DocumentStatus,
    DocumentType,
    IncomeDocument,
    Lease,
    OverrideType,
    Resident,
    local_now,
)
from income_verification.rules.loader import get_document_policy
from income_verification.services import income_aggregator
from income_verification.services.document_kinds import kind_for
from income_verification.services.duplicate_detector import DuplicateDetector
from income_verification.services.eligibility import DateCheckResult, EligibilityChecker
from income_verification.services.extraction.adapter import Extraction, ExtractionAdapter
from income_verification.services.file_handler import FileHandler
from income_verification.services.lifecycle import LifecycleManager
from income_verification.services.override_service import OverrideService
from income_verification.services.validation.field_validator import (
    FieldValidator,
    ValidationVerdict,
    get_field_validator,
)

logger = logging.getLogger(__name__)


@dataclass
class JobOutcome:
    """What happened to one analysis job."""

    document_id: UUID
    state: str  # queued, processing, completed, needs_review, duplicate, deleted, skipped
    message: Optional[str] = None
    conflicting_document_id: Optional[UUID] = None
    updated_at: datetime = field(default_factory=local_now)
    # Set once a client has been told about a rejected duplicate
    polled: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "document_id": str(self.document_id),
            "state": self.state,
            "message": self.message,
            "conflicting_document_id": (
                str(self.conflicting_document_id) if self.conflicting_document_id else None
            ),
            "updated_at": self.updated_at.isoformat(),
        }


class DocumentPipeline:
    """Runs one document from PROCESSING to COMPLETED or NEEDS_REVIEW."""

    def __init__(
        self,
        adapter: ExtractionAdapter,
        session_maker: async_sessionmaker = async_session_maker,
        validator: Optional[FieldValidator] = None,
        detector: Optional[DuplicateDetector] = None,
        checker: Optional[EligibilityChecker] = None,
        overrides: Optional[OverrideService] = None,
        file_handler: Optional[FileHandler] = None,
    ):
        self.adapter = adapter
        self.session_maker = session_maker
        self.validator = validator or get_field_validator()
        self.detector = detector or DuplicateDetector()
        self.checker = checker or EligibilityChecker()
        self.overrides = overrides or OverrideService()
        self.file_handler = file_handler or FileHandler()
        # Serializes duplicate read -> persist per (resident, document type);
        # an entry lives only while some job holds or waits on it
        self._locks: Dict[Tuple[UUID, str], asyncio.Lock] = {}
        self._lock_waiters: Dict[Tuple[UUID, str], int] = {}

    async def process(self, document_id: UUID, extraction: Optional[Extraction] = None) -> JobOutcome:
        """
        Process one document. Never raises.

        Any unexpected error routes the document to NEEDS_REVIEW with a
        DOCUMENT_REVIEW override.
        """
        try:
            return await self._process(document_id, extraction)
        except Exception as e:
            logger.exception(f"Analysis job for document {document_id} failed: {e}")
            explanation = f"Processing failed: {e}"
            await self.route_to_review(document_id, explanation)
            return JobOutcome(document_id, "needs_review", explanation)

    async def _process(self, document_id: UUID, extraction: Optional[Extraction]) -> JobOutcome:
        async with self.session_maker() as db:
            document = await db.get(IncomeDocument, document_id)
            if document is None:
                logger.info(f"Document {document_id} was deleted before analysis")
                return JobOutcome(document_id, "deleted", "Document was deleted")
            if document.status != DocumentStatus.PROCESSING:
                return JobOutcome(document_id, "skipped", f"Document is {document.status.value}")
            document.processing_started_at = local_now()
            document_type = document.document_type
            resident_id = document.resident_id
            file_path = document.file_path
            await db.commit()

        if extraction is None:
            try:
                content = self.file_handler.read_bytes(file_path)
                extraction = await self.adapter.extract(content, document_type)
            except ExtractionFailure as e:
                explanation = f"Extraction failed: {e.explanation}"
                await self.route_to_review(document_id, explanation)
                return JobOutcome(document_id, "needs_review", explanation)

        kind = kind_for(document_type)
        verdict = kind.validate(extraction, self.validator)

        async with self._resident_lock((resident_id, document_type.value)):
            return await self._persist(document_id, extraction, verdict)

    @asynccontextmanager
    async def _resident_lock(self, key: Tuple[UUID, str]):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_waiters[key] = self._lock_waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_waiters[key] -= 1
            if not self._lock_waiters[key]:
                del self._lock_waiters[key]
                del self._locks[key]

    async def _persist(
        self, document_id: UUID, extraction: Extraction, verdict: ValidationVerdict
    ) -> JobOutcome:
        async with self.session_maker() as db:
            document = await db.get(IncomeDocument, document_id)
            if document is None:
                return JobOutcome(document_id, "deleted", "Document was deleted")

            resident = (
                await db.execute(
                    select(Resident).where(Resident.id == document.resident_id).with_for_update()
                )
            ).scalar_one()
            await db.refresh(document)
            if document.status != DocumentStatus.PROCESSING:
                return JobOutcome(document_id, "skipped", f"Document is {document.status.value}")

            kind = kind_for(document.document_type)
            kind.apply_extracted(document, verdict.extracted_data)
            document.extraction_confidence = verdict.confidence
            document.validation_result = {
                **verdict.to_dict(),
                "extraction": extraction.to_dict(),
            }

            original = await self.detector.find_duplicate(db, document)
            if original is not None:
                file_path = document.file_path
                error = await self.detector.reject(db, document, original)
                await db.commit()
                if file_path:
                    self.file_handler.delete_file(file_path)
                return JobOutcome(document_id, "duplicate", error.explanation, original.id)

            policy = get_document_policy(document.document_type)
            review: Optional[Tuple[OverrideType, str]] = None
            if policy.manual_review or not verdict.is_valid:
                review = (OverrideType.DOCUMENT_REVIEW, verdict.explanation)
            else:
                lease = await db.get(Lease, resident.lease_id)
                try:
                    self.checker.check(document, resident.name, lease.lease_start_date)
                except EligibilityFailure as e:
                    review = (OverrideType.VALIDATION_EXCEPTION, e.explanation)

            document.processing_completed_at = local_now()
            if review is None:
                document.status = DocumentStatus.COMPLETED
                document.review_reason = None
            else:
                override_type, explanation = review
                document.status = DocumentStatus.NEEDS_REVIEW
                document.review_reason = explanation
                await self.overrides.create_automatic(
                    db,
                    override_type,
                    explanation,
                    document_id=document.id,
                    resident_id=document.resident_id,
                    verification_id=document.verification_id,
                )
            await db.flush()
            await income_aggregator.recompute(db, document.verification_id)
            await db.commit()

            logger.info(f"Document {document_id} processed: {document.status.value}")
            if review is None:
                return JobOutcome(document_id, "completed", "Document verified")
            return JobOutcome(document_id, "needs_review", review[1])

    async def route_to_review(self, document_id: UUID, explanation: str) -> None:
        """Move a PROCESSING document to NEEDS_REVIEW with a DOCUMENT_REVIEW override."""
        try:
            async with self.session_maker() as db:
                await mark_needs_review(db, self.overrides, document_id, explanation)
                await db.commit()
        except Exception as e:
            logger.exception(f"Could not route document {document_id} to review: {e}")


async def mark_needs_review(
    db: AsyncSession, overrides: OverrideService, document_id: UUID, explanation: str
) -> bool:
    """Route a PROCESSING document to review in the caller's transaction."""
    document = await db.get(IncomeDocument, document_id)
    if document is None or document.status != DocumentStatus.PROCESSING:
        return False
    document.status = DocumentStatus.NEEDS_REVIEW
    document.review_reason = explanation
    document.processing_completed_at = local_now()
    await overrides.create_automatic(
        db,
        OverrideType.DOCUMENT_REVIEW,
        explanation,
        document_id=document.id,
        resident_id=document.resident_id,
        verification_id=document.verification_id,
    )
    await db.flush()
    await income_aggregator.recompute(db, document.verification_id)
    logger.warning(f"Document {document_id} routed to review: {explanation}")
    return True


class DocumentIntake:
    """Synchronous half of an upload: the date pre-check and the PROCESSING insert."""

    def __init__(
        self,
        adapter: ExtractionAdapter,
        lifecycle: Optional[LifecycleManager] = None,
        validator: Optional[FieldValidator] = None,
        checker: Optional[EligibilityChecker] = None,
        file_handler: Optional[FileHandler] = None,
    ):
        self.adapter = adapter
        self.lifecycle = lifecycle or LifecycleManager()
        self.validator = validator or get_field_validator()
        self.checker = checker or EligibilityChecker()
        self.file_handler = file_handler or FileHandler()

    async def read_evidence(
        self, content: bytes, document_type: DocumentType
    ) -> Tuple[Optional[Extraction], Optional[ValidationVerdict]]:
        """Extract and validate for the pre-check; an unreadable document yields (None, None)."""
        if get_document_policy(document_type).manual_review:
            return None, None
        try:
            extraction = await self.adapter.extract(content, document_type)
        except ExtractionFailure as e:
            logger.warning(f"Date pre-check could not read document: {e.explanation}")
            return None, None
        return extraction, kind_for(document_type).validate(extraction, self.validator)

    async def check_dates(
        self,
        db: AsyncSession,
        verification_id: UUID,
        files: Sequence[Tuple[bytes, DocumentType]],
    ) -> DateCheckResult:
        """Pre-check only: nothing is persisted."""
        verification = await self.lifecycle.get_verification(db, verification_id)
        lease = await self.lifecycle.get_lease(db, verification.lease_id)
        if lease.lease_start_date is None:
            return self.checker.check_dates(None, [], 0)

        dates = []
        readable = 0
        for content, document_type in files:
            _, verdict = await self.read_evidence(content, document_type)
            if verdict is None or not verdict.is_valid:
                continue
            readable += 1
            dates.append(kind_for(document_type).evidence_date(verdict.extracted_data))
        return self.checker.check_dates(lease.lease_start_date, dates, readable)

    async def submit(
        self,
        db: AsyncSession,
        verification_id: UUID,
        resident_id: UUID,
        document_type: DocumentType,
        file: UploadFile,
        date_confirmed: bool = False,
    ) -> Tuple[Optional[IncomeDocument], Optional[Extraction], Optional[DateCheckResult]]:
        """
        Accept an upload.

        Returns the new PROCESSING document and any extraction already made
        for the pre-check, or a date-check result asking for confirmation (in
        which case nothing is persisted).

        Raises:
            VerificationClosed: If the verification is finalized
            ResidentFinalized: If the resident is finalized
        """
        verification, resident = await self.lifecycle.ensure_modifiable(
            db, verification_id, resident_id
        )
        lease = await self.lifecycle.get_lease(db, verification.lease_id)

        extraction = None
        if not date_confirmed and lease.lease_start_date is not None:
            content = await self.file_handler.read_upload(file)
            extraction, verdict = await self.read_evidence(content, document_type)
            if verdict is not None and verdict.is_valid:
                evidence = kind_for(document_type).evidence_date(verdict.extracted_data)
                result = self.checker.check_dates(lease.lease_start_date, [evidence], 1)
                if result.requires_date_confirmation:
                    return None, None, result

        _, file_path, _, content_hash = await self.file_handler.save_upload(
            file, str(verification.id)
        )
        document = IncomeDocument(
            verification_id=verification.id,
            resident_id=resident.id,
            document_type=document_type,
            status=DocumentStatus.PROCESSING,
            original_filename=file.filename,
            file_path=file_path,
            content_hash=content_hash,
            processing_started_at=local_now(),
        )
        db.add(document)
        await db.flush()
        logger.info(
            f"Accepted {document_type.value} upload {document.id} for resident {resident.id}"
        )
        return document, extraction, None


async def processing_document_ids(db: AsyncSession) -> List[UUID]:
    """Ids of every document still PROCESSING."""
    result = await db.execute(
        select(IncomeDocument.id).where(IncomeDocument.status == DocumentStatus.PROCESSING)
    )
    return list(result.scalars().all())
