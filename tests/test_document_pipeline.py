"""Integration tests for the background document pipeline."""
import asyncio
from decimal import Decimal
from pathlib import Path

import pytest
from sqlalchemy import literal_column, select, table

from income_verification.exceptions import ExtractionFailure
from income_verification.models.db_models import (
    DocumentStatus,
    DocumentType,
    IncomeDocument,
    OverrideRequest,
    OverrideStatus,
    OverrideType,
    Resident,
)
from income_verification.services.document_pipeline import DocumentPipeline
from income_verification.services.duplicate_detector import DuplicateDetector
from income_verification.services.validation import FieldValidator
from payloads import (
    LAYOUT_MODEL,
    PAYSTUB_MODEL,
    SSA_MODEL,
    W2_MODEL,
    benefit_letter_result,
    paystub_result,
    ssa_1099_result,
    w2_result,
)


async def load(session_maker, document_id):
    async with session_maker() as db:
        document = await db.get(IncomeDocument, document_id)
        overrides = (
            await db.execute(select(OverrideRequest).where(OverrideRequest.document_id == document_id))
        ).scalars().all()
        return document, list(overrides)


async def resident_income(session_maker, resident_id):
    async with session_maker() as db:
        return (await db.get(Resident, resident_id)).calculated_annualized_income


# =============================================================================
# HAPPY PATH
# =============================================================================

@pytest.mark.asyncio
async def test_w2_is_verified_and_counted(pipeline, analyzer, session_maker, seeded, make_document):
    """Test processing a valid W-2."""
    analyzer.results[W2_MODEL] = w2_result(box1=45000.0, confidence=0.95)
    uploaded = await make_document(DocumentType.W2, DocumentStatus.PROCESSING)

    outcome = await pipeline.process(uploaded.id)

    document, overrides = await load(session_maker, uploaded.id)
    assert outcome.state == "completed"
    assert document.status == DocumentStatus.COMPLETED
    assert document.box1_wages == Decimal("45000.00")
    assert document.tax_year == "2025"
    assert document.employer_name == "Acme Corp"
    assert document.extraction_confidence == 0.95
    assert document.calculated_annualized_income == Decimal("45000.00")
    assert document.validation_result["is_valid"] is True
    assert document.processing_completed_at is not None
    assert overrides == []
    assert await resident_income(session_maker, seeded.resident.id) == Decimal("45000.00")


@pytest.mark.asyncio
async def test_paystub_frequency_is_derived(pipeline, analyzer, session_maker, seeded, make_document):
    """Test deriving pay frequency from the pay period."""
    analyzer.results[PAYSTUB_MODEL] = paystub_result(gross=2000.0, start="2026-01-01", end="2026-01-15")
    uploaded = await make_document(DocumentType.PAYSTUB, DocumentStatus.PROCESSING)

    await pipeline.process(uploaded.id)

    document, _ = await load(session_maker, uploaded.id)
    assert document.status == DocumentStatus.COMPLETED
    assert document.pay_frequency == "BI-WEEKLY"
    assert document.document_date.isoformat() == "2026-01-15"
    assert await resident_income(session_maker, seeded.resident.id) == Decimal("52000.00")


@pytest.mark.asyncio
async def test_precheck_extraction_is_reused(pipeline, adapter, analyzer, session_maker, make_document):
    """Test reusing the upload-time extraction."""
    analyzer.results[W2_MODEL] = w2_result()
    extraction = await adapter.extract(b"doc", DocumentType.W2)
    uploaded = await make_document(DocumentType.W2, DocumentStatus.PROCESSING)

    outcome = await pipeline.process(uploaded.id, extraction)

    assert outcome.state == "completed"
    assert analyzer.calls == [W2_MODEL]


# =============================================================================
# REVIEW ROUTING
# =============================================================================

@pytest.mark.asyncio
async def test_low_confidence_goes_to_review(pipeline, analyzer, session_maker, seeded, make_document):
    """Test routing a low-confidence W-2 to review."""
    analyzer.results[W2_MODEL] = w2_result(confidence=0.72)
    uploaded = await make_document(DocumentType.W2, DocumentStatus.PROCESSING)

    outcome = await pipeline.process(uploaded.id)

    document, overrides = await load(session_maker, uploaded.id)
    assert outcome.state == "needs_review"
    assert document.status == DocumentStatus.NEEDS_REVIEW
    assert "Confidence: 72.0%" in document.review_reason
    assert document.calculated_annualized_income is None
    assert len(overrides) == 1
    assert overrides[0].type == OverrideType.DOCUMENT_REVIEW
    assert overrides[0].status == OverrideStatus.PENDING
    assert overrides[0].resident_id == seeded.resident.id
    assert overrides[0].requester_id == "system"
    assert await resident_income(session_maker, seeded.resident.id) == Decimal("0.00")


@pytest.mark.asyncio
async def test_ineligible_document_raises_validation_exception(
    pipeline, analyzer, session_maker, make_document
):
    """Test an old W-2 for another person."""
    analyzer.results[W2_MODEL] = w2_result(employee="Robert Smith", tax_year=2019)
    uploaded = await make_document(DocumentType.W2, DocumentStatus.PROCESSING)

    await pipeline.process(uploaded.id)

    document, overrides = await load(session_maker, uploaded.id)
    assert document.status == DocumentStatus.NEEDS_REVIEW
    assert "W-2 tax year 2019" in document.review_reason
    assert "Robert Smith" in document.review_reason
    assert [o.type for o in overrides] == [OverrideType.VALIDATION_EXCEPTION]


@pytest.mark.asyncio
async def test_manual_entry_type_always_reviewed(pipeline, session_maker, make_document):
    """Test that bank statements always need review."""
    uploaded = await make_document(DocumentType.BANK_STATEMENT, DocumentStatus.PROCESSING)

    await pipeline.process(uploaded.id)

    document, overrides = await load(session_maker, uploaded.id)
    assert document.status == DocumentStatus.NEEDS_REVIEW
    assert "Bank statement requires manual entry" in document.review_reason
    assert [o.type for o in overrides] == [OverrideType.DOCUMENT_REVIEW]


@pytest.mark.asyncio
async def test_extraction_failure_goes_to_review(pipeline, analyzer, session_maker, make_document):
    """Test routing an extraction failure to review."""
    analyzer.results[W2_MODEL] = ExtractionFailure("Analysis timed out after 60 status checks", W2_MODEL)
    uploaded = await make_document(DocumentType.W2, DocumentStatus.PROCESSING)

    outcome = await pipeline.process(uploaded.id)

    document, overrides = await load(session_maker, uploaded.id)
    assert outcome.state == "needs_review"
    assert document.status == DocumentStatus.NEEDS_REVIEW
    assert document.review_reason.startswith("Extraction failed")
    assert len(overrides) == 1


@pytest.mark.asyncio
async def test_unexpected_error_never_leaves_document_processing(
    pipeline, session_maker, make_document
):
    """Test that a missing file still ends in review."""
    uploaded = await make_document(DocumentType.W2, DocumentStatus.PROCESSING)
    Path(uploaded.file_path).unlink()

    outcome = await pipeline.process(uploaded.id)

    document, _ = await load(session_maker, uploaded.id)
    assert outcome.state == "needs_review"
    assert document.status == DocumentStatus.NEEDS_REVIEW
    assert document.review_reason.startswith("Processing failed")


@pytest.mark.asyncio
async def test_deleted_document_is_skipped(pipeline, session_maker, make_document):
    """Test a job for a deleted document."""
    uploaded = await make_document(DocumentType.W2, DocumentStatus.PROCESSING)
    async with session_maker() as db:
        await db.delete(await db.get(IncomeDocument, uploaded.id))
        await db.commit()

    outcome = await pipeline.process(uploaded.id)

    assert outcome.state == "deleted"


@pytest.mark.asyncio
async def test_already_processed_document_is_skipped(pipeline, analyzer, make_document):
    """Test a job for a document that is no longer PROCESSING."""
    uploaded = await make_document(DocumentType.W2, DocumentStatus.COMPLETED)

    outcome = await pipeline.process(uploaded.id)

    assert outcome.state == "skipped"
    assert analyzer.calls == []


# =============================================================================
# DUPLICATES
# =============================================================================

@pytest.mark.asyncio
async def test_repeated_w2_is_rejected(pipeline, analyzer, session_maker, seeded, make_document):
    """Test rejecting a repeated W-2."""
    analyzer.results[W2_MODEL] = [w2_result(), w2_result()]
    first = await make_document(DocumentType.W2, DocumentStatus.PROCESSING)
    second = await make_document(DocumentType.W2, DocumentStatus.PROCESSING)

    assert (await pipeline.process(first.id)).state == "completed"
    outcome = await pipeline.process(second.id)

    assert outcome.state == "duplicate"
    assert outcome.conflicting_document_id == first.id
    assert "already on record" in outcome.message
    assert not Path(second.file_path).exists()
    async with session_maker() as db:
        remaining = (
            await db.execute(
                select(IncomeDocument).where(IncomeDocument.resident_id == seeded.resident.id)
            )
        ).scalars().all()
    assert [d.id for d in remaining] == [first.id]
    assert await resident_income(session_maker, seeded.resident.id) == Decimal("45000.00")


@pytest.mark.asyncio
async def test_repeated_paystub_within_tolerance_is_rejected(pipeline, analyzer, make_document):
    """Test rejecting a paystub within a cent of one on record."""
    analyzer.results[PAYSTUB_MODEL] = [
        paystub_result(gross=2000.00),
        paystub_result(gross=2000.01, employer="ACME  corp"),
    ]
    first = await make_document(DocumentType.PAYSTUB, DocumentStatus.PROCESSING)
    second = await make_document(DocumentType.PAYSTUB, DocumentStatus.PROCESSING)

    await pipeline.process(first.id)
    outcome = await pipeline.process(second.id)

    assert outcome.state == "duplicate"
    assert outcome.conflicting_document_id == first.id


@pytest.mark.asyncio
async def test_different_pay_period_is_not_a_duplicate(
    pipeline, analyzer, session_maker, seeded, make_document
):
    """Test two paystubs for different pay periods."""
    analyzer.results[PAYSTUB_MODEL] = [
        paystub_result(gross=2000.0, start="2026-01-01", end="2026-01-14"),
        paystub_result(gross=2200.0, start="2026-01-15", end="2026-01-28"),
    ]
    first = await make_document(DocumentType.PAYSTUB, DocumentStatus.PROCESSING)
    second = await make_document(DocumentType.PAYSTUB, DocumentStatus.PROCESSING)

    await pipeline.process(first.id)
    outcome = await pipeline.process(second.id)

    assert outcome.state == "completed"
    assert await resident_income(session_maker, seeded.resident.id) == Decimal("54600.00")


@pytest.mark.asyncio
async def test_benefit_letter_counts_as_other_income(
    pipeline, analyzer, session_maker, seeded, make_document
):
    """Test a benefit letter read by the layout model."""
    letter = benefit_letter_result()
    letter["keyValuePairs"].append(
        {"key": {"content": "Name"}, "value": {"content": "Jane Doe"}, "confidence": 0.95}
    )
    analyzer.results[SSA_MODEL] = {}
    analyzer.results[LAYOUT_MODEL] = letter
    uploaded = await make_document(DocumentType.SOCIAL_SECURITY, DocumentStatus.PROCESSING)

    await pipeline.process(uploaded.id)

    document, _ = await load(session_maker, uploaded.id)
    assert document.monthly_benefit == Decimal("1250.00")
    assert document.document_date.isoformat() == "2026-01-15"
    assert await resident_income(session_maker, seeded.resident.id) == Decimal("15000.00")


@pytest.mark.asyncio
async def test_ssa_1099_counts_full_annual_benefit(
    pipeline, analyzer, session_maker, seeded, make_document
):
    """An SSA-1099 total that does not split into whole monthly cents is counted exactly."""
    analyzer.results[SSA_MODEL] = ssa_1099_result(annual=10000.0)
    uploaded = await make_document(DocumentType.SOCIAL_SECURITY, DocumentStatus.PROCESSING)

    outcome = await pipeline.process(uploaded.id)

    document, _ = await load(session_maker, uploaded.id)
    assert outcome.state == "completed"
    assert document.annual_benefit == Decimal("10000.00")
    assert document.calculated_annualized_income == Decimal("10000.00")
    assert await resident_income(session_maker, seeded.resident.id) == Decimal("10000.00")


# =============================================================================
# CONCURRENCY AND STORE ERRORS
# =============================================================================

class UnavailableStoreDetector(DuplicateDetector):
    """Duplicate lookup that fails in the database."""

    def candidates_query(self, document):
        return select(literal_column("*")).select_from(table("missing_documents_table"))


@pytest.mark.asyncio
async def test_duplicate_lookup_error_allows_document(
    adapter, analyzer, session_maker, seeded, make_document
):
    """A failed duplicate lookup never blocks a valid document."""
    pipeline = DocumentPipeline(
        adapter,
        session_maker=session_maker,
        validator=FieldValidator(0.9),
        detector=UnavailableStoreDetector(),
    )
    analyzer.results[W2_MODEL] = w2_result(box1=45000.0)
    uploaded = await make_document(DocumentType.W2, DocumentStatus.PROCESSING)

    outcome = await pipeline.process(uploaded.id)

    document, overrides = await load(session_maker, uploaded.id)
    assert outcome.state == "completed"
    assert document.status == DocumentStatus.COMPLETED
    assert document.box1_wages == Decimal("45000.00")
    assert overrides == []
    assert await resident_income(session_maker, seeded.resident.id) == Decimal("45000.00")


@pytest.mark.asyncio
async def test_concurrent_identical_paystubs_keep_one(
    pipeline, analyzer, session_maker, seeded, make_document
):
    """Two jobs for the same pay period run together; only one document survives."""
    analyzer.results[PAYSTUB_MODEL] = [paystub_result(), paystub_result()]
    first = await make_document(DocumentType.PAYSTUB, DocumentStatus.PROCESSING)
    second = await make_document(DocumentType.PAYSTUB, DocumentStatus.PROCESSING)

    outcomes = await asyncio.gather(pipeline.process(first.id), pipeline.process(second.id))

    assert sorted(o.state for o in outcomes) == ["completed", "duplicate"]
    async with session_maker() as db:
        remaining = (
            await db.execute(
                select(IncomeDocument).where(IncomeDocument.resident_id == seeded.resident.id)
            )
        ).scalars().all()
    assert len(remaining) == 1
    assert pipeline._locks == {}


@pytest.mark.asyncio
async def test_resident_locks_are_released(pipeline, analyzer, make_document):
    """No lock entry outlives the jobs that used it."""
    analyzer.results[W2_MODEL] = w2_result()
    uploaded = await make_document(DocumentType.W2, DocumentStatus.PROCESSING)

    await pipeline.process(uploaded.id)

    assert pipeline._locks == {}
    assert pipeline._lock_waiters == {}
