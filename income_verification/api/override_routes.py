"""API routes for override requests and admin maintenance."""

import logging
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from income_verification.api.routes import lifecycle
from income_verification.database import get_db
from income_verification.models.db_models import OverrideStatus
from income_verification.schemas.overrides import (
    CleanupResponse,
    OverrideRequestCreate,
    OverrideRequestResolve,
    OverrideRequestResponse,
)
from income_verification.services.task_queue import sweep_stuck_documents

logger = logging.getLogger(__name__)

override_router = APIRouter(prefix="/api", tags=["overrides"])


# =============================================================================
# OVERRIDE REQUESTS
# =============================================================================

@override_router.post("/override-requests", response_model=OverrideRequestResponse, status_code=201)
async def create_override_request(
    data: OverrideRequestCreate, db: AsyncSession = Depends(get_db)
):
    """Ask a reviewer to override a document, validation or discrepancy outcome."""
    override = await lifecycle.overrides.create(
        db,
        data.type,
        data.user_explanation,
        data.requester_id,
        document_id=data.document_id,
        resident_id=data.resident_id,
        verification_id=data.verification_id,
    )
    await db.commit()
    await db.refresh(override)
    return override


@override_router.get("/override-requests", response_model=List[OverrideRequestResponse])
async def list_override_requests(
    status: Optional[OverrideStatus] = None,
    verification_id: Optional[UUID] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
):
    """List override requests, newest first."""
    return await lifecycle.overrides.list(
        db, status=status, verification_id=verification_id, skip=skip, limit=limit
    )


@override_router.get("/override-requests/{override_id}", response_model=OverrideRequestResponse)
async def get_override_request(override_id: UUID, db: AsyncSession = Depends(get_db)):
    """Get an override request by ID."""
    return await lifecycle.overrides.get(db, override_id)


# =============================================================================
# ADMIN
# =============================================================================

@override_router.patch(
    "/admin/override-requests/{override_id}", response_model=OverrideRequestResponse
)
async def resolve_override_request(
    override_id: UUID, data: OverrideRequestResolve, db: AsyncSession = Depends(get_db)
):
    """Approve or deny an override request."""
    override = await lifecycle.resolve_override(
        db,
        override_id,
        data.status,
        data.reviewer_id,
        admin_notes=data.admin_notes,
        corrected_values=data.corrected_values,
    )
    await db.commit()
    await db.refresh(override)
    logger.info(f"Override {override_id} {data.status.value} by {data.reviewer_id}")
    return override


@override_router.post("/admin/cleanup-stuck-documents", response_model=CleanupResponse)
async def cleanup_stuck_documents(
    minutes: Optional[int] = Query(None, ge=0, description="Override the stuck threshold"),
    db: AsyncSession = Depends(get_db),
):
    """Route documents stuck in PROCESSING to manual review."""
    reclaimed = await sweep_stuck_documents(db, minutes=minutes, overrides=lifecycle.overrides)
    await db.commit()
    return CleanupResponse(reclaimed=len(reclaimed), document_ids=reclaimed)
