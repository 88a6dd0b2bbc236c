"""Shared fixtures: in-memory database, seeded lease, fake document analyzer."""
from datetime import date
from decimal import Decimal
from types import SimpleNamespace
from uuid import uuid4

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from income_verification.config import settings
from income_verification.database import Base
from income_verification.models.db_models import (
    DocumentStatus,
    DocumentType,
    IncomeDocument,
    IncomeVerification,
    Lease,
    Resident,
    VerificationStatus,
)
from income_verification.services import task_queue
from income_verification.services.document_pipeline import DocumentPipeline
from income_verification.services.extraction import ExtractionAdapter
from income_verification.services.validation import FieldValidator
from payloads import FakeAnalyzer


# =============================================================================
# DATABASE
# =============================================================================

@pytest.fixture
async def engine():
    """In-memory SQLite engine shared by every session in a test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture(autouse=True)
def upload_dir(tmp_path, monkeypatch):
    """Store uploads under the test's temporary directory."""
    directory = tmp_path / "uploads"
    directory.mkdir()
    monkeypatch.setattr(settings, "UPLOAD_DIR", directory)
    return directory


@pytest.fixture
async def seeded(session_maker):
    """A lease starting 2026-03-01 with one resident declaring $40,000 and an open verification."""
    async with session_maker() as db:
        lease = Lease(name="Maple Court 4B", unit_label="4B", lease_start_date=date(2026, 3, 1))
        db.add(lease)
        await db.flush()
        resident = Resident(lease_id=lease.id, name="Jane Doe", annualized_income=Decimal("40000"))
        db.add(resident)
        await db.flush()
        verification = IncomeVerification(
            lease_id=lease.id, status=VerificationStatus.IN_PROGRESS, lease_year=1
        )
        db.add(verification)
        await db.commit()
    return SimpleNamespace(lease=lease, resident=resident, verification=verification)


@pytest.fixture
def make_document(session_maker, seeded, tmp_path):
    """Insert a document with a stored file for the seeded resident."""

    async def _make(
        document_type: DocumentType,
        status: DocumentStatus = DocumentStatus.COMPLETED,
        resident_id=None,
        **values,
    ) -> IncomeDocument:
        async with session_maker() as db:
            file_path = tmp_path / f"{uuid4()}.pdf"
            file_path.write_bytes(b"%PDF-1.4 test document")
            document = IncomeDocument(
                verification_id=seeded.verification.id,
                resident_id=resident_id or seeded.resident.id,
                document_type=document_type,
                status=status,
                original_filename=file_path.name,
                file_path=str(file_path),
                **values,
            )
            db.add(document)
            await db.commit()
            return document

    return _make


# =============================================================================
# PIPELINE
# =============================================================================

@pytest.fixture
def analyzer():
    return FakeAnalyzer()


@pytest.fixture
def adapter(analyzer):
    return ExtractionAdapter(analyzer)


@pytest.fixture
def pipeline(adapter, session_maker):
    return DocumentPipeline(adapter, session_maker=session_maker, validator=FieldValidator(0.9))


@pytest.fixture(autouse=True)
def clear_job_outcomes():
    """The outcome registry and queue are process-wide."""
    yield
    task_queue._job_outcomes.clear()
    task_queue.set_analysis_queue(None)
