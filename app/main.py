import logging
from contextlib import asynccontextmanager
from typing import Any, List, Optional
from uuid import UUID

from fastapi import Body, Depends, FastAPI, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import DATABASE_URL, ENV, GCS_BUCKET, MAX_UPLOAD_BYTES
from app.database import Database
from app.errors import ConflictError, PipelineError
from app.services import approval, bulk_import, documents, extraction_store
from app.services.document_store import GcsDocumentStore, content_hash
from app.services.revenue_hierarchy import load_revenue_timeline
from app.worker import queue
from app.worker.config import WorkerConfig, load_worker_config

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

async def get_db(request: Request):
    """One session per request from the app's Database handle."""
    async with request.app.state.database.session() as session:
        yield session


def get_document_store(request: Request) -> GcsDocumentStore:
    return request.app.state.document_store


def _parse_uuid(value: str, what: str) -> UUID:
    try:
        return UUID(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid {what} ID")


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------

class PriorityBody(BaseModel):
    priority: Any = Field("low", description="1-3 or high/medium/low")


class JobStatusBody(BaseModel):
    status: str
    error: Optional[str] = None


class CleanupBody(BaseModel):
    older_than_days: Optional[int] = Field(None, ge=1, description="defaults to QUEUE_CLEANUP_DAYS")


class ActorBody(BaseModel):
    actor: str = Field(..., min_length=1)


class BulkImportBody(BaseModel):
    urls: List[Any]
    uploaded_by: str = Field(..., min_length=1)


class ExtractionUpdateBody(BaseModel):
    extracted_data: dict
    review_notes: Optional[str] = None


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

def create_app(
    database: Database | None = None,
    document_store: GcsDocumentStore | None = None,
    queue_config: WorkerConfig | None = None,
) -> FastAPI:
    """Build the API. Run with ``uvicorn app.main:create_app --factory``.

    Queue tunables come from the same environment the worker reads via
    ``load_worker_config()``.
    """
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owns_database = getattr(app.state, "database", None) is None
        if owns_database:
            app.state.database = Database(DATABASE_URL)
        if getattr(app.state, "document_store", None) is None:
            app.state.document_store = GcsDocumentStore(GCS_BUCKET)
        try:
            yield
        finally:
            if owns_database:
                await app.state.database.dispose()

    app = FastAPI(title="Therapy Pipeline", version="0.1.0", lifespan=lifespan)
    app.state.database = database
    app.state.document_store = document_store
    app.state.queue_config = queue_config or load_worker_config()

    # CORS - in dev allow any origin for the review dashboard
    cors_origins = ["*"] if ENV == "dev" else []
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=False,  # must be False when allow_origins=["*"]
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(PipelineError)
    async def pipeline_error_handler(request: Request, exc: PipelineError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})

    _register_routes(app, app.state.queue_config)
    return app


def _register_routes(app: FastAPI, cfg: WorkerConfig) -> None:

    @app.get("/health")
    def health_check():
        return {"status": "ok"}

    # --- Documents -------------------------------------------------------

    @app.post("/upload")
    async def upload_document(
        file: UploadFile = File(...),
        uploaded_by: str = Form(...),
        company_name: Optional[str] = Form(None),
        report_type: Optional[str] = Form(None),
        reporting_period: Optional[str] = Form(None),
        priority: Optional[str] = Form(None),
        db: AsyncSession = Depends(get_db),
        store: GcsDocumentStore = Depends(get_document_store),
    ):
        """Store a report PDF, register it, and optionally queue it for extraction."""
        if not file.filename:
            raise HTTPException(status_code=400, detail="No filename provided")
        if file.content_type != "application/pdf":
            raise HTTPException(status_code=400, detail="Only PDF files are allowed")
        contents = await file.read()
        if len(contents) > MAX_UPLOAD_BYTES:
            raise HTTPException(status_code=400, detail=f"File too large (max {MAX_UPLOAD_BYTES // (1024 * 1024)}MB)")

        # Dedup before touching the bucket
        existing = await documents.find_by_hash(db, content_hash(contents))
        if existing is not None:
            raise ConflictError(f"Document already exists (uploaded as {existing.file_name})")

        stored = await store.upload(contents, file.filename, file.content_type)
        document = await documents.register_document(
            db,
            file_name=file.filename,
            file_path=stored.path,
            file_hash=stored.content_hash,
            uploaded_by=uploaded_by,
            company_name=company_name,
            report_type=report_type,
            reporting_period=reporting_period,
        )
        await db.commit()

        out = documents.document_to_dict(document)
        out["size"] = stored.size
        if priority:
            job = await queue.enqueue(db, document.id, priority, max_attempts=cfg.default_max_attempts)
            out["job"] = queue.job_to_dict(job, stuck_timeout_minutes=cfg.stuck_timeout_minutes)
        return out

    @app.get("/documents")
    async def list_documents(
        search: Optional[str] = None,
        company_name: Optional[str] = None,
        report_type: Optional[str] = None,
        sort_by: str = "uploaded_at",
        sort_order: str = Query("desc", pattern="^(asc|desc)$"),
        page: int = Query(1, ge=1),
        page_size: int = Query(10, ge=1, le=100),
        db: AsyncSession = Depends(get_db),
    ):
        return await documents.list_documents(
            db,
            search=search,
            company_name=company_name,
            report_type=report_type,
            sort_by=sort_by,
            sort_order=sort_order,
            page=page,
            page_size=page_size,
        )

    @app.get("/documents/companies")
    async def company_options(db: AsyncSession = Depends(get_db)):
        return {"companies": await documents.list_company_options(db)}

    @app.post("/documents/bulk-import")
    async def bulk_import_documents(
        body: BulkImportBody = Body(...),
        db: AsyncSession = Depends(get_db),
        store: GcsDocumentStore = Depends(get_document_store),
    ):
        """Download and register PDFs from a list of URLs; per-URL results plus a summary."""
        return await bulk_import.bulk_import(db, store, body.urls, body.uploaded_by, max_bytes=MAX_UPLOAD_BYTES)

    @app.get("/documents/{document_id}")
    async def get_document(document_id: str, db: AsyncSession = Depends(get_db)):
        document = await documents.get_document(db, _parse_uuid(document_id, "document"))
        return documents.document_to_dict(document)

    @app.delete("/documents/{document_id}")
    async def delete_document(
        document_id: str,
        db: AsyncSession = Depends(get_db),
        store: GcsDocumentStore = Depends(get_document_store),
    ):
        """Delete the row first; the stored file is removed only once the row is gone."""
        document = await documents.delete_document(db, _parse_uuid(document_id, "document"))
        try:
            deleted_from_gcs = await store.delete(document.file_path)
        except Exception as e:
            # Row is already committed; an orphaned object is logged, not fatal
            logger.error("Deleted document %s but not its file %s: %s", document.id, document.file_path, e, exc_info=True)
            deleted_from_gcs = False
        return {"status": "ok", "document_id": str(document.id), "deleted_from_gcs": deleted_from_gcs}

    @app.post("/documents/{document_id}/queue")
    async def queue_extraction(
        document_id: str,
        body: Optional[PriorityBody] = None,
        db: AsyncSession = Depends(get_db),
    ):
        body = body or PriorityBody()
        job = await queue.enqueue(
            db, _parse_uuid(document_id, "document"), body.priority, max_attempts=cfg.default_max_attempts
        )
        return queue.job_to_dict(job, stuck_timeout_minutes=cfg.stuck_timeout_minutes)

    @app.patch("/documents/{document_id}/priority")
    async def update_priority(document_id: str, body: PriorityBody = Body(...), db: AsyncSession = Depends(get_db)):
        job = await queue.update_priority(db, _parse_uuid(document_id, "document"), body.priority)
        return queue.job_to_dict(job, stuck_timeout_minutes=cfg.stuck_timeout_minutes)

    # --- Queue -----------------------------------------------------------

    @app.get("/queue/jobs")
    async def list_jobs(
        status: str = "all",
        sort_by: str = "priority",
        sort_order: str = Query("asc", pattern="^(asc|desc)$"),
        page: int = Query(1, ge=1),
        page_size: int = Query(10, ge=1, le=100),
        db: AsyncSession = Depends(get_db),
    ):
        return await queue.list_jobs(
            db,
            status=status,
            sort_by=sort_by,
            sort_order=sort_order,
            page=page,
            page_size=page_size,
            stuck_timeout_minutes=cfg.stuck_timeout_minutes,
        )

    @app.get("/queue/stats")
    async def queue_stats(db: AsyncSession = Depends(get_db)):
        result = await queue.stats(db, stuck_timeout_minutes=cfg.stuck_timeout_minutes)
        return result.to_dict()

    @app.post("/queue/claim")
    async def claim_next(db: AsyncSession = Depends(get_db)):
        """Claim for an external worker; ``{"job": null}`` when nothing is pending."""
        job = await queue.claim_next(db)
        if job is None:
            return {"job": None}
        return {"job": queue.job_to_dict(job, stuck_timeout_minutes=cfg.stuck_timeout_minutes)}

    @app.post("/queue/cleanup")
    async def cleanup(body: Optional[CleanupBody] = None, db: AsyncSession = Depends(get_db)):
        body = body or CleanupBody()
        deleted = await queue.cleanup(db, body.older_than_days or cfg.cleanup_days)
        return {"deleted_count": deleted}

    @app.get("/queue/jobs/{job_id}")
    async def get_job(job_id: str, db: AsyncSession = Depends(get_db)):
        job = await queue.get_job(db, _parse_uuid(job_id, "job"))
        return queue.job_to_dict(job, stuck_timeout_minutes=cfg.stuck_timeout_minutes)

    @app.post("/queue/jobs/{job_id}/status")
    async def update_job_status(job_id: str, body: JobStatusBody = Body(...), db: AsyncSession = Depends(get_db)):
        job = await queue.update_status(db, _parse_uuid(job_id, "job"), body.status, body.error)
        return queue.job_to_dict(job, stuck_timeout_minutes=cfg.stuck_timeout_minutes)

    @app.post("/queue/jobs/{job_id}/retry")
    async def retry_job(job_id: str, db: AsyncSession = Depends(get_db)):
        job = await queue.retry(db, _parse_uuid(job_id, "job"))
        return queue.job_to_dict(job, stuck_timeout_minutes=cfg.stuck_timeout_minutes)

    @app.post("/queue/jobs/{job_id}/reset")
    async def reset_job(job_id: str, db: AsyncSession = Depends(get_db)):
        job = await queue.reset(db, _parse_uuid(job_id, "job"))
        return queue.job_to_dict(job, stuck_timeout_minutes=cfg.stuck_timeout_minutes)

    @app.post("/queue/jobs/{job_id}/cancel")
    async def cancel_job(job_id: str, db: AsyncSession = Depends(get_db)):
        job = await queue.cancel(db, _parse_uuid(job_id, "job"))
        return {"success": True, "job": queue.job_to_dict(job, stuck_timeout_minutes=cfg.stuck_timeout_minutes)}

    # --- Extractions -----------------------------------------------------

    @app.get("/extractions")
    async def list_extractions(
        status: str = "pending",
        sort_by: str = "created_at",
        sort_order: str = Query("desc", pattern="^(asc|desc)$"),
        page: int = Query(1, ge=1),
        page_size: int = Query(10, ge=1, le=100),
        db: AsyncSession = Depends(get_db),
    ):
        return await extraction_store.list_extractions(
            db, status=status, sort_by=sort_by, sort_order=sort_order, page=page, page_size=page_size
        )

    @app.get("/extractions/{extraction_id}")
    async def get_extraction(extraction_id: str, db: AsyncSession = Depends(get_db)):
        extraction = await extraction_store.get_extraction(db, _parse_uuid(extraction_id, "extraction"))
        return extraction_store.extraction_to_dict(extraction)

    @app.patch("/extractions/{extraction_id}")
    async def update_extraction(
        extraction_id: str,
        body: ExtractionUpdateBody = Body(...),
        db: AsyncSession = Depends(get_db),
    ):
        extraction = await extraction_store.update_extraction(
            db, _parse_uuid(extraction_id, "extraction"), body.extracted_data, body.review_notes
        )
        return extraction_store.extraction_to_dict(extraction)

    @app.post("/extractions/{extraction_id}/approve")
    async def approve_extraction(extraction_id: str, body: ActorBody = Body(...), db: AsyncSession = Depends(get_db)):
        summary = await approval.approve_extraction(db, _parse_uuid(extraction_id, "extraction"), body.actor)
        return {"success": True, "merged": summary.to_dict()}

    @app.post("/extractions/{extraction_id}/reject")
    async def reject_extraction(extraction_id: str, body: ActorBody = Body(...), db: AsyncSession = Depends(get_db)):
        extraction = await approval.reject_extraction(db, _parse_uuid(extraction_id, "extraction"), body.actor)
        return extraction_store.extraction_to_dict(extraction)

    @app.delete("/extractions/{extraction_id}")
    async def delete_extraction(extraction_id: str, db: AsyncSession = Depends(get_db)):
        await approval.delete_extraction(db, _parse_uuid(extraction_id, "extraction"))
        return {"success": True}

    # --- Revenue ---------------------------------------------------------

    @app.get("/revenue/timeline")
    async def revenue_timeline(db: AsyncSession = Depends(get_db)):
        processed = await load_revenue_timeline(db)
        return {"revenue": [p.to_dict() for p in processed]}

    @app.get("/therapies/{therapy_id}/revenue/timeline")
    async def therapy_revenue_timeline(therapy_id: str, db: AsyncSession = Depends(get_db)):
        processed = await load_revenue_timeline(db, _parse_uuid(therapy_id, "therapy"))
        return {"therapy_id": therapy_id, "revenue": [p.to_dict() for p in processed]}
