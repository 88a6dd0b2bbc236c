"""API tests: requests go through the app while analysis runs on the in-process queue."""
from datetime import timedelta
from decimal import Decimal
from uuid import UUID

import httpx
import pytest

from income_verification.database import get_db
from income_verification.main import app
from income_verification.models.db_models import DocumentStatus, DocumentType, local_now
from income_verification.services.task_queue import (
    AnalysisQueue,
    get_analysis_queue,
    get_outcome,
    set_analysis_queue,
)
from payloads import PAYSTUB_MODEL, W2_MODEL, paystub_result, w2_result

PDF = b"%PDF-1.4 uploaded document"


@pytest.fixture
async def client(session_maker, pipeline):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    queue = AnalysisQueue(pipeline, workers=1)
    set_analysis_queue(queue)
    await queue.start(sweep=False)

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    await queue.stop()
    app.dependency_overrides.clear()


async def upload(client, seeded, document_type="W2", filename="w2.pdf", **form):
    data = {"document_type": document_type, "resident_id": str(seeded.resident.id), **form}
    return await client.post(
        f"/api/verifications/{seeded.verification.id}/upload",
        data=data,
        files={"file": (filename, PDF, "application/pdf")},
    )


# =============================================================================
# LEASES AND VERIFICATIONS
# =============================================================================

@pytest.mark.asyncio
async def test_health(client):
    """Test the health check endpoint."""
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


@pytest.mark.asyncio
async def test_lease_and_verification_lifecycle(client):
    """Test creating a lease, starting, conflicting on and cancelling a verification."""
    response = await client.post(
        "/api/leases",
        json={
            "name": "Birch Row 12",
            "lease_start_date": "2026-06-01",
            "residents": [{"name": "Ana Ruiz", "annualized_income": "32000"}],
        },
    )
    assert response.status_code == 201
    lease = response.json()
    assert lease["residents_total"] == 1
    assert lease["active_verification"] is None

    response = await client.post(f"/api/leases/{lease['id']}/verifications", json={})
    assert response.status_code == 201
    verification = response.json()
    assert verification["status"] == "IN_PROGRESS"
    assert verification["lease_year"] == 1

    response = await client.post(f"/api/leases/{lease['id']}/verifications", json={})
    assert response.status_code == 409
    assert response.json()["error"] == "verification_in_progress"
    assert response.json()["existing_verification_id"] == verification["id"]

    response = await client.get(f"/api/leases/{lease['id']}")
    assert response.json()["active_verification"]["id"] == verification["id"]

    response = await client.delete(f"/api/verifications/{verification['id']}")
    assert response.status_code == 204
    response = await client.get(f"/api/verifications/{verification['id']}")
    assert response.status_code == 404
    assert response.json()["error"] == "not_found"


@pytest.mark.asyncio
async def test_add_resident(client, seeded):
    """Test adding a resident to an existing lease."""
    response = await client.post(
        f"/api/leases/{seeded.lease.id}/residents", json={"name": "Sam Doe"}
    )

    assert response.status_code == 201
    assert response.json()["income_finalized"] is False
    response = await client.get(f"/api/leases/{seeded.lease.id}")
    assert response.json()["residents_total"] == 2


# =============================================================================
# UPLOAD AND ANALYSIS
# =============================================================================

@pytest.mark.asyncio
async def test_upload_is_analyzed_in_background(client, seeded, analyzer):
    """Test an upload answering 202 and completing on the queue."""
    analyzer.results[W2_MODEL] = w2_result(box1=45000.0)

    response = await upload(client, seeded)

    assert response.status_code == 202
    document = response.json()
    assert document["status"] == "PROCESSING"

    await get_analysis_queue().join()
    response = await client.get(f"/api/documents/{document['id']}/status")
    status = response.json()
    assert status["status"] == "COMPLETED"
    assert status["job_state"] == "completed"
    assert Decimal(status["calculated_annualized_income"]) == Decimal("45000")
    # The pre-check extraction is reused by the worker
    assert analyzer.calls == [W2_MODEL]

    response = await client.get(f"/api/verifications/{seeded.verification.id}")
    assert response.json()["document_counts"] == {"COMPLETED": 1}


@pytest.mark.asyncio
async def test_duplicate_upload_reports_conflict(client, seeded, analyzer):
    """Test polling a rejected duplicate upload."""
    analyzer.results[W2_MODEL] = [w2_result(), w2_result()]

    first = (await upload(client, seeded)).json()
    await get_analysis_queue().join()
    second = (await upload(client, seeded)).json()
    await get_analysis_queue().join()

    response = await client.get(f"/api/documents/{second['id']}/status")
    assert response.status_code == 409
    assert response.json()["error"] == "duplicate_document"
    assert response.json()["conflicting_document_id"] == first["id"]
    assert get_outcome(UUID(second["id"])).polled

    response = await client.get(f"/api/documents/{second['id']}")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_late_document_asks_for_date_confirmation(client, seeded, analyzer):
    """Test a late paystub asking for confirmation before it is stored."""
    analyzer.results[PAYSTUB_MODEL] = [
        paystub_result(start="2026-09-16", end="2026-09-30"),
        paystub_result(start="2026-09-16", end="2026-09-30"),
    ]

    response = await upload(client, seeded, "PAYSTUB", "stub.pdf")

    assert response.status_code == 200
    check = response.json()
    assert check["requires_date_confirmation"] is True
    assert check["months_difference"] == 7
    response = await client.get(f"/api/verifications/{seeded.verification.id}")
    assert response.json()["document_counts"] == {}

    response = await upload(client, seeded, "PAYSTUB", "stub.pdf", date_confirmed="true")
    assert response.status_code == 202
    await get_analysis_queue().join()
    assert analyzer.calls == [PAYSTUB_MODEL, PAYSTUB_MODEL]


@pytest.mark.asyncio
async def test_check_dates_for_several_files(client, seeded, analyzer):
    """Test the date pre-check across several files."""
    analyzer.results[W2_MODEL] = w2_result(tax_year=2025)
    analyzer.results[PAYSTUB_MODEL] = paystub_result(start="2026-01-01", end="2026-01-14")

    response = await client.post(
        f"/api/verifications/{seeded.verification.id}/check-dates",
        data={"document_types": ["W2", "PAYSTUB"]},
        files=[
            ("files", ("w2.pdf", PDF, "application/pdf")),
            ("files", ("stub.pdf", PDF, "application/pdf")),
        ],
    )

    assert response.status_code == 200
    assert response.json()["requires_date_confirmation"] is False


@pytest.mark.asyncio
async def test_upload_rejects_unsupported_file_type(client, seeded):
    """Test rejecting an unsupported file extension."""
    response = await upload(client, seeded, filename="w2.exe")

    assert response.status_code == 400
    assert "not allowed" in response.json()["detail"]


@pytest.mark.asyncio
async def test_delete_document(client, seeded, make_document):
    """Test deleting a document."""
    document = await make_document(DocumentType.W2, box1_wages=Decimal("45000"), tax_year="2025")

    response = await client.delete(f"/api/documents/{document.id}")

    assert response.status_code == 204
    assert (await client.get(f"/api/documents/{document.id}")).status_code == 404


# =============================================================================
# FINALIZATION AND DISCREPANCIES
# =============================================================================

@pytest.mark.asyncio
async def test_discrepancy_resolution_finalizes_lease(client, seeded, make_document):
    """Test accepting verified income through the API."""
    await make_document(
        DocumentType.W2,
        box1_wages=Decimal("45000"),
        tax_year="2025",
        employee_name="Jane Doe",
    )
    base = f"/api/verifications/{seeded.verification.id}/residents/{seeded.resident.id}"

    response = await client.patch(f"{base}/finalize")
    assert response.status_code == 200
    assert response.json()["income_finalized"] is True

    response = await client.get(f"/api/verifications/{seeded.verification.id}/discrepancies")
    listing = response.json()
    assert listing["all_residents_finalized"] is True
    assert Decimal(listing["discrepancies"][0]["difference"]) == Decimal("5000")

    response = await client.patch(
        f"/api/verifications/{seeded.verification.id}", json={"calculated_verified_income": "45000"}
    )
    assert response.status_code == 409
    assert response.json()["error"] == "finalization_blocked"

    response = await client.post(
        f"{base}/resolve-discrepancy",
        json={"resolution": "ACCEPT_VERIFIED", "requester_id": "manager-1"},
    )
    assert response.status_code == 200
    assert response.json()["verification_status"] == "FINALIZED"

    response = await client.get(f"/api/verifications/{seeded.verification.id}")
    assert Decimal(response.json()["calculated_verified_income"]) == Decimal("45000")


@pytest.mark.asyncio
async def test_finalize_resident_without_income_is_blocked(client, seeded):
    """Test finalizing a resident with no income."""
    response = await client.patch(
        f"/api/verifications/{seeded.verification.id}/residents/{seeded.resident.id}/finalize"
    )

    assert response.status_code == 409
    assert response.json()["reasons"] == ["No completed document with positive income"]


# =============================================================================
# OVERRIDES
# =============================================================================

@pytest.mark.asyncio
async def test_manual_entry_review_and_approval(client, seeded):
    """Test reviewing and approving a bank statement."""
    response = await upload(client, seeded, "BANK_STATEMENT", "statement.pdf")
    document_id = response.json()["id"]
    await get_analysis_queue().join()

    response = await client.get(
        "/api/override-requests",
        params={"status": "PENDING", "verification_id": str(seeded.verification.id)},
    )
    overrides = response.json()
    assert [o["type"] for o in overrides] == ["DOCUMENT_REVIEW"]
    assert overrides[0]["document_id"] == document_id

    resolve = {
        "status": "APPROVED",
        "reviewer_id": "admin-1",
        "corrected_values": {"annual_income": "30000"},
    }
    response = await client.patch(f"/api/admin/override-requests/{overrides[0]['id']}", json=resolve)
    assert response.status_code == 200
    assert response.json()["status"] == "APPROVED"

    document = (await client.get(f"/api/documents/{document_id}")).json()
    assert document["status"] == "COMPLETED"
    assert Decimal(document["entered_annual_income"]) == Decimal("30000")

    response = await client.patch(f"/api/admin/override-requests/{overrides[0]['id']}", json=resolve)
    assert response.status_code == 409
    assert response.json()["error"] == "override_already_resolved"


@pytest.mark.asyncio
async def test_create_override_request(client, seeded, make_document):
    """Test creating an override request for a document."""
    document = await make_document(DocumentType.W2, DocumentStatus.NEEDS_REVIEW)

    response = await client.post(
        "/api/override-requests",
        json={
            "type": "VALIDATION_EXCEPTION",
            "user_explanation": "W-2 was reissued by the employer",
            "document_id": str(document.id),
            "requester_id": "manager-1",
        },
    )

    assert response.status_code == 201
    override = response.json()
    assert override["status"] == "PENDING"
    assert override["resident_id"] == str(seeded.resident.id)
    assert override["verification_id"] == str(seeded.verification.id)
    response = await client.get(f"/api/override-requests/{override['id']}")
    assert response.json()["user_explanation"] == "W-2 was reissued by the employer"


@pytest.mark.asyncio
async def test_cleanup_stuck_documents(client, make_document):
    """Test the stuck-document cleanup endpoint."""
    stuck = await make_document(
        DocumentType.W2,
        DocumentStatus.PROCESSING,
        processing_started_at=local_now() - timedelta(minutes=30),
    )

    response = await client.post("/api/admin/cleanup-stuck-documents", params={"minutes": 5})

    assert response.json() == {"reclaimed": 1, "document_ids": [str(stuck.id)]}
    response = await client.get(f"/api/documents/{stuck.id}/status")
    assert response.json()["status"] == "NEEDS_REVIEW"
    assert response.json()["job_state"] == "needs_review"
