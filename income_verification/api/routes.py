"""API routes for leases, verifications and documents."""

import logging
from typing import List, Union
from uuid import UUID

from fastapi import APIRouter, Depends, File, Form, Response, UploadFile
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from income_verification.database import get_db
from income_verification.exceptions import DuplicateDetected, NotFound
from income_verification.models.db_models import (
    DocumentType,
    IncomeDocument,
    Lease,
    Resident,
    local_now,
)
from income_verification.schemas.documents import DocumentResponse, DocumentStatusResponse
from income_verification.schemas.verifications import (
    DateCheckResponse,
    DiscrepancyListResponse,
    DiscrepancyResolutionRequest,
    DiscrepancyResolutionResponse,
    LeaseCreate,
    LeaseResponse,
    ResidentCreate,
    ResidentResponse,
    VerificationDetail,
    VerificationFinalize,
    VerificationResponse,
    VerificationStart,
)
from income_verification.services.document_pipeline import DocumentIntake
from income_verification.services.file_handler import FileHandler
from income_verification.services.lifecycle import LifecycleManager
from income_verification.services.task_queue import get_analysis_queue, get_outcome, remove_outcome

logger = logging.getLogger(__name__)

# Create router
api_router = APIRouter(prefix="/api")

# Shared services
lifecycle = LifecycleManager()
file_handler = FileHandler()


def get_intake() -> DocumentIntake:
    """Intake bound to the running queue's extraction adapter."""
    return DocumentIntake(get_analysis_queue().pipeline.adapter, lifecycle=lifecycle)


# =============================================================================
# LEASES
# =============================================================================

async def _lease_response(db: AsyncSession, lease_id: UUID) -> LeaseResponse:
    result = await db.execute(
        select(Lease)
        .options(selectinload(Lease.residents))
        .where(Lease.id == lease_id)
        .execution_options(populate_existing=True)
    )
    lease = result.scalar_one_or_none()
    if lease is None:
        raise NotFound(f"Lease {lease_id} not found")

    active = await lifecycle.in_progress_for_lease(db, lease_id)
    residents = [ResidentResponse.model_validate(r) for r in lease.residents]
    return LeaseResponse(
        id=lease.id,
        name=lease.name,
        unit_label=lease.unit_label,
        lease_start_date=lease.lease_start_date,
        lease_end_date=lease.lease_end_date,
        residents=residents,
        active_verification=VerificationResponse.model_validate(active) if active else None,
        residents_finalized=sum(1 for r in lease.residents if r.income_finalized),
        residents_total=len(lease.residents),
    )


@api_router.post("/leases", response_model=LeaseResponse, status_code=201)
async def create_lease(lease_data: LeaseCreate, db: AsyncSession = Depends(get_db)):
    """Create a lease, optionally with its residents."""
    lease = Lease(
        name=lease_data.name,
        unit_label=lease_data.unit_label,
        lease_start_date=lease_data.lease_start_date,
        lease_end_date=lease_data.lease_end_date,
    )
    db.add(lease)
    await db.flush()
    for resident_data in lease_data.residents:
        db.add(
            Resident(
                lease_id=lease.id,
                name=resident_data.name,
                annualized_income=resident_data.annualized_income,
            )
        )
    await db.commit()
    logger.info(f"Created lease {lease.id} with {len(lease_data.residents)} residents")
    return await _lease_response(db, lease.id)


@api_router.get("/leases/{lease_id}", response_model=LeaseResponse)
async def get_lease(lease_id: UUID, db: AsyncSession = Depends(get_db)):
    """Get a lease with residents, the active verification and finalization progress."""
    return await _lease_response(db, lease_id)


@api_router.post("/leases/{lease_id}/residents", response_model=ResidentResponse, status_code=201)
async def add_resident(
    lease_id: UUID, resident_data: ResidentCreate, db: AsyncSession = Depends(get_db)
):
    """Add a resident to a lease."""
    await lifecycle.get_lease(db, lease_id)
    resident = Resident(
        lease_id=lease_id,
        name=resident_data.name,
        annualized_income=resident_data.annualized_income,
    )
    db.add(resident)
    await db.commit()
    await db.refresh(resident)
    return resident


# =============================================================================
# VERIFICATIONS
# =============================================================================

@api_router.post(
    "/leases/{lease_id}/verifications", response_model=VerificationResponse, status_code=201
)
async def start_verification(
    lease_id: UUID, data: VerificationStart, db: AsyncSession = Depends(get_db)
):
    """Start a verification; 409 with the existing id when one is in progress."""
    verification = await lifecycle.start_verification(
        db,
        lease_id,
        reason=data.reason,
        verification_period_start=data.verification_period_start,
        verification_period_end=data.verification_period_end,
        due_date=data.due_date,
        supersede=data.supersede,
    )
    await db.commit()
    await db.refresh(verification)
    return verification


@api_router.get("/verifications/{verification_id}", response_model=VerificationDetail)
async def get_verification(verification_id: UUID, db: AsyncSession = Depends(get_db)):
    """Get a verification with its residents and document counts by status."""
    verification = await lifecycle.get_verification(db, verification_id)
    residents = await lifecycle.lease_residents(db, verification.lease_id)
    counts = await db.execute(
        select(IncomeDocument.status, func.count())
        .where(IncomeDocument.verification_id == verification_id)
        .group_by(IncomeDocument.status)
    )
    return VerificationDetail(
        **VerificationResponse.model_validate(verification).model_dump(),
        residents=[ResidentResponse.model_validate(r) for r in residents],
        document_counts={status.value: count for status, count in counts.all()},
    )


@api_router.delete("/verifications/{verification_id}", status_code=204)
async def cancel_verification(verification_id: UUID, db: AsyncSession = Depends(get_db)):
    """Cancel an in-progress verification that has no documents."""
    await lifecycle.cancel_verification(db, verification_id)
    await db.commit()
    return Response(status_code=204)


@api_router.patch("/verifications/{verification_id}", response_model=VerificationResponse)
async def finalize_verification(
    verification_id: UUID, data: VerificationFinalize, db: AsyncSession = Depends(get_db)
):
    """Finalize lease-wide verified income."""
    verification = await lifecycle.finalize_verification(
        db, verification_id, data.calculated_verified_income
    )
    await db.commit()
    await db.refresh(verification)
    return verification


@api_router.patch(
    "/verifications/{verification_id}/residents/{resident_id}/finalize",
    response_model=ResidentResponse,
)
async def finalize_resident(
    verification_id: UUID, resident_id: UUID, db: AsyncSession = Depends(get_db)
):
    """Freeze a resident's verified income."""
    resident = await lifecycle.finalize_resident(db, verification_id, resident_id)
    await db.commit()
    await db.refresh(resident)
    return resident


@api_router.patch(
    "/verifications/{verification_id}/residents/{resident_id}/unfinalize",
    response_model=ResidentResponse,
)
async def unfinalize_resident(
    verification_id: UUID, resident_id: UUID, db: AsyncSession = Depends(get_db)
):
    """Reopen a resident for document changes."""
    resident = await lifecycle.unfinalize_resident(db, verification_id, resident_id)
    await db.commit()
    await db.refresh(resident)
    return resident


@api_router.patch(
    "/verifications/{verification_id}/residents/{resident_id}/no-income",
    response_model=ResidentResponse,
)
async def mark_no_income(
    verification_id: UUID, resident_id: UUID, db: AsyncSession = Depends(get_db)
):
    """Finalize a resident who has no income at $0."""
    resident = await lifecycle.mark_no_income(db, verification_id, resident_id)
    await db.commit()
    await db.refresh(resident)
    return resident


# =============================================================================
# DOCUMENTS
# =============================================================================

@api_router.post("/verifications/{verification_id}/check-dates", response_model=DateCheckResponse)
async def check_dates(
    verification_id: UUID,
    files: List[UploadFile] = File(...),
    document_types: List[DocumentType] = Form(...),
    db: AsyncSession = Depends(get_db),
    intake: DocumentIntake = Depends(get_intake),
):
    """Check whether documents belong to the current lease instance. Nothing is stored."""
    contents = [(await file_handler.read_upload(f), t) for f, t in zip(files, document_types)]
    result = await intake.check_dates(db, verification_id, contents)
    return DateCheckResponse(**result.to_dict())


@api_router.post(
    "/verifications/{verification_id}/upload",
    response_model=Union[DocumentResponse, DateCheckResponse],
    status_code=202,
)
async def upload_document(
    verification_id: UUID,
    response: Response,
    file: UploadFile = File(...),
    document_type: DocumentType = Form(...),
    resident_id: UUID = Form(...),
    date_confirmed: bool = Form(False),
    db: AsyncSession = Depends(get_db),
    intake: DocumentIntake = Depends(get_intake),
):
    """
    Submit a document for analysis.

    Answers 202 with the PROCESSING document, or 200 with a date-confirmation
    request when the document looks like it belongs to a later lease.
    """
    document, extraction, date_check = await intake.submit(
        db, verification_id, resident_id, document_type, file, date_confirmed
    )
    if date_check is not None:
        response.status_code = 200
        return DateCheckResponse(**date_check.to_dict())

    await db.commit()
    await db.refresh(document)
    await get_analysis_queue().enqueue(document.id, extraction)
    return DocumentResponse.model_validate(document)


@api_router.get("/documents/{document_id}", response_model=DocumentResponse)
async def get_document(document_id: UUID, db: AsyncSession = Depends(get_db)):
    """Get a document by ID."""
    return await lifecycle.get_document(db, document_id)


@api_router.get("/documents/{document_id}/status", response_model=DocumentStatusResponse)
async def get_document_status(document_id: UUID, db: AsyncSession = Depends(get_db)):
    """Poll a document's analysis; a rejected duplicate answers 409 with the conflicting id."""
    outcome = get_outcome(document_id)
    document = await db.get(IncomeDocument, document_id)
    if document is None:
        if outcome is not None and outcome.state == "duplicate":
            outcome.polled = True
            outcome.updated_at = local_now()
            raise DuplicateDetected(outcome.message, outcome.conflicting_document_id)
        raise NotFound(f"Document {document_id} not found")

    return DocumentStatusResponse(
        document_id=document.id,
        status=document.status,
        job_state=outcome.state if outcome else None,
        message=outcome.message if outcome else None,
        review_reason=document.review_reason,
        calculated_annualized_income=document.calculated_annualized_income,
    )


@api_router.delete("/documents/{document_id}", status_code=204)
async def delete_document(document_id: UUID, db: AsyncSession = Depends(get_db)):
    """Delete a document and recompute income."""
    await lifecycle.delete_document(db, document_id)
    await db.commit()
    remove_outcome(document_id)
    return Response(status_code=204)


# =============================================================================
# DISCREPANCIES
# =============================================================================

@api_router.get(
    "/verifications/{verification_id}/discrepancies", response_model=DiscrepancyListResponse
)
async def get_discrepancies(verification_id: UUID, db: AsyncSession = Depends(get_db)):
    """Declared vs verified income per resident."""
    verification = await lifecycle.get_verification(db, verification_id)
    residents = await lifecycle.lease_residents(db, verification.lease_id)
    discrepancies = await lifecycle.reconciler.find_discrepancies(db, verification)
    return DiscrepancyListResponse(
        verification_id=verification.id,
        all_residents_finalized=bool(residents) and all(r.income_finalized for r in residents),
        discrepancies=[d.to_dict() for d in discrepancies],
    )


@api_router.post(
    "/verifications/{verification_id}/residents/{resident_id}/resolve-discrepancy",
    response_model=DiscrepancyResolutionResponse,
)
async def resolve_discrepancy(
    verification_id: UUID,
    resident_id: UUID,
    data: DiscrepancyResolutionRequest,
    db: AsyncSession = Depends(get_db),
):
    """Accept the verified figure, reopen the resident, or escalate to a reviewer."""
    result = await lifecycle.resolve_discrepancy(
        db, verification_id, resident_id, data.resolution, data.requester_id, data.explanation
    )
    await db.commit()
    verification = await lifecycle.get_verification(db, verification_id)
    resident = await db.get(Resident, resident_id)
    await db.refresh(verification)
    await db.refresh(resident)
    return DiscrepancyResolutionResponse(
        resolution=data.resolution,
        resident=ResidentResponse.model_validate(resident),
        override_request_id=result.get("override_request_id"),
        verification_status=verification.status,
        lease=result.get("lease", {}),
    )
