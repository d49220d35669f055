"""API tests for the therapy pipeline (services patched, session mocked)."""
import uuid
from datetime import datetime
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

from fastapi.testclient import TestClient

from app.errors import BadRequestError, ConflictError, MergeError, PreconditionFailedError
from app.services.approval import MergeSummary
from app.worker.queue import QueueStats


def _job(**overrides):
    fields = dict(
        id=uuid.uuid4(),
        document_id=uuid.uuid4(),
        job_type="extraction",
        priority=3,
        status="pending",
        attempts=0,
        max_attempts=3,
        error=None,
        created_at=datetime(2024, 5, 1, 9, 0),
        started_at=None,
        completed_at=None,
    )
    fields.update(overrides)
    return SimpleNamespace(**fields)


def _document(**overrides):
    fields = dict(
        id=uuid.uuid4(),
        file_name="report.pdf",
        file_path="gs://test-bucket/documents/report.pdf",
        file_hash="a" * 64,
        company_name="Gilead",
        report_type="quarterly",
        reporting_period="Q2-2024",
        uploaded_by="ana",
        uploaded_at=datetime(2024, 8, 1),
    )
    fields.update(overrides)
    return SimpleNamespace(**fields)


def test_health(client: TestClient):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json().get("status") == "ok"


def test_invalid_uuid_is_400(client: TestClient):
    r = client.get("/queue/jobs/not-a-uuid")
    assert r.status_code == 400
    assert r.json()["detail"] == "Invalid job ID"


# --- upload ---

def test_upload_rejects_non_pdf(client: TestClient):
    r = client.post("/upload", files={"file": ("notes.txt", b"hello", "text/plain")}, data={"uploaded_by": "ana"})
    assert r.status_code == 400
    assert "PDF" in r.json()["detail"]


def test_upload_registers_and_queues(client: TestClient, document_store, db_session):
    document = _document()
    job = _job(document_id=document.id, priority=1)
    with patch("app.services.documents.find_by_hash", AsyncMock(return_value=None)), \
         patch("app.services.documents.register_document", AsyncMock(return_value=document)) as register, \
         patch("app.worker.queue.enqueue", AsyncMock(return_value=job)) as enqueue:
        r = client.post(
            "/upload",
            files={"file": ("report.pdf", b"%PDF-1.7 body", "application/pdf")},
            data={"uploaded_by": "ana", "company_name": "Gilead", "priority": "high"},
        )

    assert r.status_code == 200
    data = r.json()
    assert data["id"] == str(document.id)
    assert data["job"]["priority_label"] == "high"
    assert "gs://test-bucket/documents/report.pdf" in document_store.objects
    assert register.await_args.kwargs["company_name"] == "Gilead"
    enqueue.assert_awaited_once_with(db_session, document.id, "high", max_attempts=3)
    db_session.commit.assert_awaited()


def test_upload_duplicate_is_409_and_not_stored(client: TestClient, document_store):
    with patch("app.services.documents.find_by_hash", AsyncMock(return_value=_document(file_name="first.pdf"))):
        r = client.post(
            "/upload",
            files={"file": ("again.pdf", b"%PDF-1.7 body", "application/pdf")},
            data={"uploaded_by": "ana"},
        )
    assert r.status_code == 409
    assert "first.pdf" in r.json()["detail"]
    assert document_store.objects == {}


# --- queue ---

def test_enqueue_conflict_is_409(client: TestClient):
    with patch("app.worker.queue.enqueue", AsyncMock(side_effect=ConflictError("Document already in queue"))):
        r = client.post(f"/documents/{uuid.uuid4()}/queue", json={"priority": "medium"})
    assert r.status_code == 409
    assert r.json() == {"detail": "Document already in queue"}


def test_enqueue_without_body_uses_low_priority(client: TestClient, db_session):
    document_id = uuid.uuid4()
    with patch("app.worker.queue.enqueue", AsyncMock(return_value=_job(document_id=document_id))) as enqueue:
        r = client.post(f"/documents/{document_id}/queue")
    assert r.status_code == 200
    enqueue.assert_awaited_once_with(db_session, document_id, "low", max_attempts=3)


def test_cancel_completed_job_is_412(client: TestClient):
    with patch("app.worker.queue.cancel", AsyncMock(side_effect=PreconditionFailedError("Cannot cancel completed jobs"))):
        r = client.post(f"/queue/jobs/{uuid.uuid4()}/cancel")
    assert r.status_code == 412
    assert r.json()["detail"] == "Cannot cancel completed jobs"


def test_cancel_returns_job(client: TestClient):
    job = _job(status="failed", error="Job cancelled by admin")
    with patch("app.worker.queue.cancel", AsyncMock(return_value=job)):
        r = client.post(f"/queue/jobs/{job.id}/cancel")
    assert r.status_code == 200
    assert r.json()["success"] is True
    assert r.json()["job"]["error"] == "Job cancelled by admin"


def test_queue_stats(client: TestClient):
    result = QueueStats(pending=2, processing=1, completed=5, failed=1, total=9, stuck=1, avg_processing_time_minutes=4)
    with patch("app.worker.queue.stats", AsyncMock(return_value=result)):
        r = client.get("/queue/stats")
    assert r.status_code == 200
    assert r.json() == result.to_dict()


def test_claim_empty_queue(client: TestClient):
    with patch("app.worker.queue.claim_next", AsyncMock(return_value=None)):
        r = client.post("/queue/claim")
    assert r.status_code == 200
    assert r.json() == {"job": None}


def test_cleanup_rejects_zero_days(client: TestClient):
    r = client.post("/queue/cleanup", json={"older_than_days": 0})
    assert r.status_code == 422


def test_cleanup_default_days(client: TestClient, db_session):
    with patch("app.worker.queue.cleanup", AsyncMock(return_value=3)) as cleanup:
        r = client.post("/queue/cleanup")
    assert r.json() == {"deleted_count": 3}
    cleanup.assert_awaited_once_with(db_session, 30)


def test_bad_status_update_is_400(client: TestClient):
    with patch("app.worker.queue.update_status", AsyncMock(side_effect=BadRequestError("Invalid status: pending"))):
        r = client.post(f"/queue/jobs/{uuid.uuid4()}/status", json={"status": "pending"})
    assert r.status_code == 400


# --- extractions ---

def test_approve_returns_merge_summary(client: TestClient, db_session):
    extraction_id = uuid.uuid4()
    summary = MergeSummary(therapies_created=1, revenue_inserted=4)
    with patch("app.services.approval.approve_extraction", AsyncMock(return_value=summary)) as approve:
        r = client.post(f"/extractions/{extraction_id}/approve", json={"actor": "reviewer"})
    assert r.status_code == 200
    assert r.json()["merged"]["revenue_inserted"] == 4
    approve.assert_awaited_once_with(db_session, extraction_id, "reviewer")


def test_approve_requires_actor(client: TestClient):
    r = client.post(f"/extractions/{uuid.uuid4()}/approve", json={"actor": ""})
    assert r.status_code == 422


def test_failed_merge_is_500_with_message(client: TestClient):
    error = MergeError("Approval failed and was rolled back; extraction is still pending: boom")
    with patch("app.services.approval.approve_extraction", AsyncMock(side_effect=error)):
        r = client.post(f"/extractions/{uuid.uuid4()}/approve", json={"actor": "reviewer"})
    assert r.status_code == 500
    assert "still pending" in r.json()["detail"]


def test_reject_decided_extraction_is_400(client: TestClient):
    error = BadRequestError("Cannot reject an already processed extraction")
    with patch("app.services.approval.reject_extraction", AsyncMock(side_effect=error)):
        r = client.post(f"/extractions/{uuid.uuid4()}/reject", json={"actor": "reviewer"})
    assert r.status_code == 400


def test_revenue_timeline_empty(client: TestClient):
    with patch("app.main.load_revenue_timeline", AsyncMock(return_value=[])):
        r = client.get("/revenue/timeline")
    assert r.status_code == 200
    assert r.json() == {"revenue": []}


# --- queue tunables from the environment ---

def _client_from_env(db_session, document_store, **env):
    import os

    from app.main import create_app, get_db

    with patch.dict(os.environ, env):
        app = create_app(database=AsyncMock(), document_store=document_store)

    async def _get_db():
        yield db_session

    app.dependency_overrides[get_db] = _get_db
    return TestClient(app)


def test_enqueue_uses_configured_max_attempts(db_session, document_store):
    client = _client_from_env(db_session, document_store, QUEUE_DEFAULT_MAX_ATTEMPTS="5")
    document_id = uuid.uuid4()
    with patch("app.worker.queue.enqueue", AsyncMock(return_value=_job(document_id=document_id, max_attempts=5))) as enqueue:
        r = client.post(f"/documents/{document_id}/queue", json={"priority": "high"})
    assert r.status_code == 200
    assert r.json()["max_attempts"] == 5
    enqueue.assert_awaited_once_with(db_session, document_id, "high", max_attempts=5)


def test_cleanup_default_comes_from_environment(db_session, document_store):
    client = _client_from_env(db_session, document_store, QUEUE_CLEANUP_DAYS="7")
    with patch("app.worker.queue.cleanup", AsyncMock(return_value=0)) as cleanup:
        client.post("/queue/cleanup")
    cleanup.assert_awaited_once_with(db_session, 7)


def test_cleanup_explicit_days_override_default(client: TestClient, db_session):
    with patch("app.worker.queue.cleanup", AsyncMock(return_value=1)) as cleanup:
        client.post("/queue/cleanup", json={"older_than_days": 90})
    cleanup.assert_awaited_once_with(db_session, 90)


def test_stuck_flag_uses_configured_timeout(db_session, document_store):
    from datetime import timedelta, timezone

    client = _client_from_env(db_session, document_store, QUEUE_STUCK_JOB_TIMEOUT_MINUTES="10")
    started = datetime.now(timezone.utc).replace(tzinfo=None) - timedelta(minutes=20)
    job = _job(status="processing", started_at=started)
    with patch("app.worker.queue.get_job", AsyncMock(return_value=job)):
        r = client.get(f"/queue/jobs/{job.id}")
    assert r.json()["is_stuck"] is True


# --- document delete / companies / bulk import ---

def test_delete_document_removes_stored_file(client: TestClient, document_store):
    document = _document()
    document_store.objects[document.file_path] = b"%PDF"
    with patch("app.services.documents.delete_document", AsyncMock(return_value=document)):
        r = client.delete(f"/documents/{document.id}")
    assert r.status_code == 200
    assert r.json()["deleted_from_gcs"] is True
    assert document_store.objects == {}


def test_delete_document_survives_storage_error(client: TestClient, document_store):
    document = _document()
    document_store.delete = AsyncMock(side_effect=RuntimeError("gcs unavailable"))
    with patch("app.services.documents.delete_document", AsyncMock(return_value=document)):
        r = client.delete(f"/documents/{document.id}")
    assert r.status_code == 200
    assert r.json()["deleted_from_gcs"] is False


def test_refused_document_delete_keeps_file(client: TestClient, document_store):
    document = _document()
    document_store.objects[document.file_path] = b"%PDF"
    error = PreconditionFailedError("Cannot delete document with extractions or jobs")
    with patch("app.services.documents.delete_document", AsyncMock(side_effect=error)):
        r = client.delete(f"/documents/{document.id}")
    assert r.status_code == 412
    assert document.file_path in document_store.objects


def test_company_options(client: TestClient):
    with patch("app.services.documents.list_company_options", AsyncMock(return_value=["Gilead", "Novartis"])):
        r = client.get("/documents/companies")
    assert r.status_code == 200
    assert r.json() == {"companies": ["Gilead", "Novartis"]}


def test_bulk_import_route(client: TestClient, db_session, document_store):
    outcome = {"results": [], "summary": {"total": 0, "successful": 0, "failed": 0}}
    with patch("app.services.bulk_import.bulk_import", AsyncMock(return_value=outcome)) as bulk:
        r = client.post("/documents/bulk-import", json={"urls": ["https://example.com/a.pdf"], "uploaded_by": "ana"})
    assert r.status_code == 200
    assert r.json() == outcome
    assert bulk.await_args.args[:4] == (db_session, document_store, ["https://example.com/a.pdf"], "ana")


def test_bulk_import_without_urls_is_400(client: TestClient):
    r = client.post("/documents/bulk-import", json={"urls": [], "uploaded_by": "ana"})
    assert r.status_code == 400
    assert r.json()["detail"] == "No URLs provided"
