"""Document registration, listing and guarded deletion."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy import delete, exists, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import BadRequestError, ConflictError, NotFoundError, PreconditionFailedError
from app.models import Document, Extraction, Job, Therapy

logger = logging.getLogger(__name__)

DOCUMENT_SORT_COLUMNS = {
    "file_name": Document.file_name,
    "company_name": Document.company_name,
    "report_type": Document.report_type,
    "reporting_period": Document.reporting_period,
    "uploaded_at": Document.uploaded_at,
}


def _utc_now_naive() -> datetime:
    """Naive UTC datetime for DB (TIMESTAMP WITHOUT TIME ZONE)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


async def find_by_hash(db: AsyncSession, file_hash: str) -> Document | None:
    result = await db.execute(select(Document).where(Document.file_hash == file_hash).limit(1))
    return result.scalar_one_or_none()


async def register_document(
    db: AsyncSession,
    *,
    file_name: str,
    file_path: str,
    file_hash: str,
    uploaded_by: str,
    company_name: str | None = None,
    report_type: str | None = None,
    reporting_period: str | None = None,
) -> Document:
    """Insert a document row; ConflictError when the same content hash is already registered."""
    existing = await find_by_hash(db, file_hash)
    if existing is not None:
        raise ConflictError(f"Document already exists (uploaded as {existing.file_name})")

    document = Document(
        file_name=file_name,
        file_path=file_path,
        file_hash=file_hash,
        company_name=company_name,
        report_type=report_type,
        reporting_period=reporting_period,
        uploaded_by=uploaded_by,
        uploaded_at=_utc_now_naive(),
    )
    db.add(document)
    await db.flush()
    logger.info("Registered document %s (%s)", document.id, file_name)
    return document


async def get_document(db: AsyncSession, document_id: UUID) -> Document:
    result = await db.execute(select(Document).where(Document.id == document_id))
    document = result.scalar_one_or_none()
    if document is None:
        raise NotFoundError("Document not found")
    return document


async def list_documents(
    db: AsyncSession,
    *,
    search: str | None = None,
    company_name: str | None = None,
    report_type: str | None = None,
    sort_by: str = "uploaded_at",
    sort_order: str = "desc",
    page: int = 1,
    page_size: int = 10,
) -> dict:
    """Page through documents with a derived processing status.

    Status is ``completed`` once an extraction exists, otherwise the latest
    job's status, otherwise ``not_queued``.
    """
    if sort_by not in DOCUMENT_SORT_COLUMNS:
        raise BadRequestError(f"sort_by must be one of: {', '.join(DOCUMENT_SORT_COLUMNS)}")
    page = max(1, page)
    page_size = max(1, min(100, page_size))

    latest_job_status = (
        select(Job.status)
        .where(Job.document_id == Document.id)
        .order_by(Job.created_at.desc())
        .limit(1)
        .correlate(Document)
        .scalar_subquery()
    )
    has_extraction = exists().where(Extraction.document_id == Document.id)

    stmt = select(Document, latest_job_status.label("job_status"), has_extraction.label("has_extraction"))
    if search:
        pattern = f"%{search}%"
        stmt = stmt.where(or_(
            Document.file_name.ilike(pattern),
            Document.company_name.ilike(pattern),
            Document.reporting_period.ilike(pattern),
        ))
    if company_name:
        stmt = stmt.where(Document.company_name == company_name)
    if report_type:
        stmt = stmt.where(Document.report_type == report_type)

    column = DOCUMENT_SORT_COLUMNS[sort_by]
    stmt = (
        stmt.order_by(column.desc() if sort_order == "desc" else column.asc())
        .offset((page - 1) * page_size)
        .limit(page_size + 1)
    )
    result = await db.execute(stmt)
    rows = result.all()

    has_next_page = len(rows) > page_size
    rows = rows[:page_size]
    documents = []
    for document, job_status, extracted in rows:
        out = document_to_dict(document)
        out["status"] = "completed" if extracted else (job_status or "not_queued")
        documents.append(out)
    return {
        "documents": documents,
        "has_next_page": has_next_page,
        "has_previous_page": page > 1,
        "current_page": page,
    }


async def delete_document(db: AsyncSession, document_id: UUID) -> Document:
    """Delete a document that has neither an extraction nor any job history."""
    document = await get_document(db, document_id)

    extraction_count = (await db.execute(
        select(func.count()).select_from(Extraction).where(Extraction.document_id == document_id)
    )).scalar_one()
    job_count = (await db.execute(
        select(func.count()).select_from(Job).where(Job.document_id == document_id)
    )).scalar_one()
    if extraction_count or job_count:
        raise PreconditionFailedError("Cannot delete document with extractions or jobs")

    await db.execute(delete(Document).where(Document.id == document_id))
    await db.commit()
    logger.info("Deleted document %s", document_id)
    return document


async def list_company_options(db: AsyncSession) -> list[str]:
    """Company names for the document filter: document companies plus therapy manufacturers."""
    companies = await db.execute(
        select(Document.company_name).where(Document.company_name.is_not(None)).distinct()
    )
    manufacturers = await db.execute(select(Therapy.manufacturer).distinct())
    names = {name for name in companies.scalars().all() if name}
    names.update(name for name in manufacturers.scalars().all() if name)
    return sorted(names)


def document_to_dict(document: Document) -> dict:
    return {
        "id": str(document.id),
        "file_name": document.file_name,
        "file_path": document.file_path,
        "file_hash": document.file_hash,
        "company_name": document.company_name,
        "report_type": document.report_type,
        "reporting_period": document.reporting_period,
        "uploaded_by": document.uploaded_by,
        "uploaded_at": document.uploaded_at.isoformat() if document.uploaded_at else None,
    }
