"""
Extraction store: one current extraction payload per document, plus its review state.

A later extraction of the same document overwrites the payload in place and
puts the row back into review; it never creates a second row.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Union
from uuid import UUID

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import BadRequestError, NotFoundError
from app.models import Document, Extraction
from app.services.schemas import ExtractedPayload

logger = logging.getLogger(__name__)

REVIEW_STATUSES = ("pending", "approved", "rejected")


def _utc_now_naive() -> datetime:
    """Naive UTC datetime for DB (TIMESTAMP WITHOUT TIME ZONE)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ---------------------------------------------------------------------------
# Review state
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Pending:
    status = "pending"


@dataclass(frozen=True)
class Approved:
    by: str
    at: datetime
    status = "approved"


@dataclass(frozen=True)
class Rejected:
    by: str
    at: datetime | None
    status = "rejected"


ReviewState = Union[Pending, Approved, Rejected]


def review_state(extraction: Any) -> ReviewState:
    """Decode the stored review columns into exactly one of Pending / Approved / Rejected.

    Raises ValueError for a combination none of the review paths writes
    (e.g. not requiring review, approved_at set, approved_by missing).
    """
    status = getattr(extraction, "review_status", None)
    requires_review = bool(extraction.requires_review)
    by = extraction.approved_by
    approved_at = extraction.approved_at

    if requires_review:
        if status not in (None, "pending") or approved_at is not None:
            raise ValueError(f"Extraction {extraction.id} has inconsistent pending review state")
        return Pending()
    if not by:
        raise ValueError(f"Extraction {extraction.id} was decided without a reviewer")
    if approved_at is not None:
        if status not in (None, "approved"):
            raise ValueError(f"Extraction {extraction.id} is marked {status} but has approved_at")
        return Approved(by=by, at=approved_at)
    if status not in (None, "rejected"):
        raise ValueError(f"Extraction {extraction.id} is marked {status} but has no approved_at")
    return Rejected(by=by, at=getattr(extraction, "reviewed_at", None))


def is_pending(extraction: Any) -> bool:
    return bool(extraction.requires_review)


def validate_payload(data: Any) -> ExtractedPayload:
    """Parse a raw payload; raises BadRequestError with the pydantic message on failure."""
    if isinstance(data, ExtractedPayload):
        return data
    try:
        return ExtractedPayload.model_validate(data or {})
    except ValidationError as exc:
        raise BadRequestError(f"Invalid extraction payload: {exc}") from exc


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------

async def save_extraction_result(
    db: AsyncSession,
    document_id: UUID,
    payload: Any,
) -> Extraction:
    """Create or overwrite the extraction row for *document_id* and reset it to pending.

    Caller commits.
    """
    parsed = validate_payload(payload)
    now = _utc_now_naive()

    result = await db.execute(select(Extraction).where(Extraction.document_id == document_id))
    extraction = result.scalar_one_or_none()

    if extraction is None:
        extraction = Extraction(
            document_id=document_id,
            extracted_data=parsed.to_json(),
            review_status="pending",
            requires_review=True,
            created_at=now,
            updated_at=now,
        )
        db.add(extraction)
        logger.info("[extraction] Created extraction for document %s", document_id)
    else:
        extraction.extracted_data = parsed.to_json()
        extraction.review_status = "pending"
        extraction.requires_review = True
        extraction.approved_by = None
        extraction.approved_at = None
        extraction.reviewed_at = None
        extraction.updated_at = now
        logger.info("[extraction] Overwrote extraction %s for document %s; back in review", extraction.id, document_id)

    await db.flush()
    return extraction


async def update_extraction(
    db: AsyncSession,
    extraction_id: UUID,
    payload: Any,
    review_notes: str | None = None,
) -> Extraction:
    """Reviewer edit of a pending payload (correct a figure before approving)."""
    extraction = await get_extraction(db, extraction_id)
    if not is_pending(extraction):
        raise BadRequestError("Cannot edit an extraction that has already been reviewed")
    extraction.extracted_data = validate_payload(payload).to_json()
    if review_notes is not None:
        extraction.review_notes = review_notes
    extraction.updated_at = _utc_now_naive()
    await db.commit()
    return extraction


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

async def get_extraction(db: AsyncSession, extraction_id: UUID, *, for_update: bool = False) -> Extraction:
    stmt = select(Extraction).where(Extraction.id == extraction_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt)
    extraction = result.scalar_one_or_none()
    if extraction is None:
        raise NotFoundError("Extraction not found")
    return extraction


async def list_extractions(
    db: AsyncSession,
    *,
    status: str = "all",
    sort_by: str = "created_at",
    sort_order: str = "desc",
    page: int = 1,
    page_size: int = 10,
) -> dict:
    """Page through extractions joined to their documents, filtered by review status."""
    if status != "all" and status not in REVIEW_STATUSES:
        raise BadRequestError(f"status must be one of: all, {', '.join(REVIEW_STATUSES)}")
    sort_columns = {
        "created_at": Extraction.created_at,
        "updated_at": Extraction.updated_at,
        "approved_at": Extraction.approved_at,
    }
    if sort_by not in sort_columns:
        raise BadRequestError(f"sort_by must be one of: {', '.join(sort_columns)}")
    page = max(1, page)
    page_size = max(1, min(100, page_size))

    column = sort_columns[sort_by]
    stmt = select(Extraction, Document).join(Document, Extraction.document_id == Document.id)
    if status != "all":
        stmt = stmt.where(Extraction.review_status == status)
    stmt = (
        stmt.order_by(column.desc() if sort_order == "desc" else column.asc())
        .offset((page - 1) * page_size)
        .limit(page_size + 1)
    )
    result = await db.execute(stmt)
    rows = result.all()

    has_next_page = len(rows) > page_size
    rows = rows[:page_size]
    return {
        "extractions": [extraction_to_dict(extraction, document) for extraction, document in rows],
        "has_next_page": has_next_page,
        "has_previous_page": page > 1,
        "current_page": page,
    }


def extraction_to_dict(extraction: Extraction, document: Document | None = None) -> dict:
    state = review_state(extraction)
    out = {
        "id": str(extraction.id),
        "document_id": str(extraction.document_id),
        "extracted_data": extraction.extracted_data,
        "review_status": state.status,
        "requires_review": extraction.requires_review,
        "review_notes": extraction.review_notes,
        "approved_by": extraction.approved_by,
        "approved_at": extraction.approved_at.isoformat() if extraction.approved_at else None,
        "reviewed_at": extraction.reviewed_at.isoformat() if extraction.reviewed_at else None,
        "created_at": extraction.created_at.isoformat() if extraction.created_at else None,
        "updated_at": extraction.updated_at.isoformat() if extraction.updated_at else None,
    }
    if document is not None:
        out["document"] = {
            "id": str(document.id),
            "file_name": document.file_name,
            "company_name": document.company_name,
        }
    return out
