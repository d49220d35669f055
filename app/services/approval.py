"""
Approval merge engine.

Approving an extraction reconciles its facts into the canonical tables in one
transaction:

* therapy facts   -> exact (name, manufacturer) match: update in place, else insert
* revenue facts   -> therapy by explicit id or exact name; skipped when
                     unresolved; skipped when (therapy_id, period, region) exists
* approval facts  -> therapy resolved as above; disease by exact name,
                     auto-created as "Uncategorized" when missing; inserted
                     without a duplicate check; skipped when the therapy
                     is unresolved

If anything fails the whole merge is rolled back and the extraction stays
pending so the reviewer can try again.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import safe_rollback
from app.errors import BadRequestError, MergeError, PipelineError
from app.models import Disease, Extraction, Therapy, TherapyApproval, TherapyRevenue
from app.services.extraction_store import get_extraction, is_pending, validate_payload
from app.services.schemas import ExtractedPayload

logger = logging.getLogger(__name__)

DEFAULT_DISEASE_CATEGORY = "Uncategorized"


def _utc_now_naive() -> datetime:
    """Naive UTC datetime for DB (TIMESTAMP WITHOUT TIME ZONE)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _as_naive_utc(value: datetime) -> datetime:
    """Aware datetimes are converted to UTC before the offset is dropped; naive ones are taken as UTC."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.replace(tzinfo=None)


@dataclass
class MergeSummary:
    therapies_created: int = 0
    therapies_updated: int = 0
    revenue_inserted: int = 0
    revenue_skipped_duplicate: int = 0
    revenue_skipped_unresolved: int = 0
    diseases_created: int = 0
    approvals_inserted: int = 0
    approvals_skipped_unresolved: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


# ---------------------------------------------------------------------------
# Entity resolution
# ---------------------------------------------------------------------------

async def resolve_therapy_id(db: AsyncSession, therapy_id: UUID | None, therapy_name: str | None) -> UUID | None:
    """Explicit id wins; otherwise exact name match; None when nothing matches."""
    if therapy_id:
        return therapy_id
    if not therapy_name:
        return None
    result = await db.execute(select(Therapy.id).where(Therapy.name == therapy_name).limit(1))
    return result.scalar_one_or_none()


async def resolve_or_create_disease(
    db: AsyncSession,
    disease_id: UUID | None,
    disease_name: str | None,
    sources: list[str],
    now: datetime,
    summary: MergeSummary,
) -> UUID | None:
    if disease_id:
        return disease_id
    if not disease_name:
        return None
    result = await db.execute(select(Disease.id).where(Disease.name == disease_name).limit(1))
    existing_id = result.scalar_one_or_none()
    if existing_id is not None:
        return existing_id

    disease = Disease(
        id=uuid.uuid4(),
        name=disease_name,
        category=DEFAULT_DISEASE_CATEGORY,
        sources=list(sources),
        last_updated=now,
    )
    db.add(disease)
    await db.flush()
    summary.diseases_created += 1
    logger.info("[approval] Created disease %r (%s) as %s", disease_name, disease.id, DEFAULT_DISEASE_CATEGORY)
    return disease.id


# ---------------------------------------------------------------------------
# Merge
# ---------------------------------------------------------------------------

async def _merge_therapies(db: AsyncSession, payload: ExtractedPayload, now: datetime, summary: MergeSummary) -> None:
    for fact in payload.therapy:
        result = await db.execute(
            select(Therapy).where(
                Therapy.name == fact.name,
                Therapy.manufacturer == fact.manufacturer,
            ).limit(1)
        )
        existing = result.scalar_one_or_none()
        if existing is None:
            db.add(Therapy(
                id=uuid.uuid4(),
                name=fact.name,
                manufacturer=fact.manufacturer,
                mechanism=fact.mechanism,
                price_per_treatment_usd=fact.price_per_treatment_usd,
                sources=list(fact.sources),
                last_updated=now,
            ))
            summary.therapies_created += 1
        else:
            existing.mechanism = fact.mechanism
            existing.price_per_treatment_usd = fact.price_per_treatment_usd
            existing.sources = list(fact.sources)
            existing.last_updated = now
            summary.therapies_updated += 1
    if payload.therapy:
        await db.flush()


async def _merge_revenue(db: AsyncSession, payload: ExtractedPayload, now: datetime, summary: MergeSummary) -> None:
    for fact in payload.revenue:
        therapy_id = await resolve_therapy_id(db, fact.therapy_id, fact.therapy_name)
        if therapy_id is None:
            summary.revenue_skipped_unresolved += 1
            logger.info("[approval] Revenue for unknown therapy %r skipped", fact.therapy_name)
            continue

        result = await db.execute(
            select(TherapyRevenue.id).where(
                TherapyRevenue.therapy_id == therapy_id,
                TherapyRevenue.period == fact.period,
                TherapyRevenue.region == fact.region,
            ).limit(1)
        )
        if result.scalar_one_or_none() is not None:
            summary.revenue_skipped_duplicate += 1
            continue

        db.add(TherapyRevenue(
            id=uuid.uuid4(),
            therapy_id=therapy_id,
            period=fact.period,
            region=fact.region,
            revenue_millions_usd=fact.revenue_millions_usd,
            sources=list(fact.sources),
            last_updated=now,
        ))
        # Flush so a repeated (period, region) later in the same payload is seen as a duplicate
        await db.flush()
        summary.revenue_inserted += 1


async def _merge_approvals(db: AsyncSession, payload: ExtractedPayload, now: datetime, summary: MergeSummary) -> None:
    for fact in payload.approvals:
        therapy_id = await resolve_therapy_id(db, fact.therapy_id, fact.therapy_name)
        # Disease is resolved (and possibly created) even when the therapy is unknown
        disease_id = await resolve_or_create_disease(db, fact.disease_id, fact.disease_name, fact.sources, now, summary)
        if therapy_id is None or disease_id is None:
            summary.approvals_skipped_unresolved += 1
            logger.info("[approval] Approval for unknown therapy %r skipped", fact.therapy_name)
            continue

        db.add(TherapyApproval(
            id=uuid.uuid4(),
            therapy_id=therapy_id,
            disease_id=disease_id,
            therapy_name=fact.therapy_name,
            disease_indication=fact.disease_name,
            region=fact.region,
            approval_date=_as_naive_utc(fact.approval_date),
            approval_type=fact.approval_type,
            regulatory_body=fact.regulatory_body,
            sources=list(fact.sources),
            last_updated=now,
        ))
        summary.approvals_inserted += 1
    if payload.approvals:
        await db.flush()


async def merge_payload(db: AsyncSession, payload: ExtractedPayload, *, now: datetime | None = None) -> MergeSummary:
    """Apply every fact in *payload* to the canonical tables. Caller owns the transaction."""
    now = now or _utc_now_naive()
    summary = MergeSummary()
    await _merge_therapies(db, payload, now, summary)
    await _merge_revenue(db, payload, now, summary)
    await _merge_approvals(db, payload, now, summary)
    return summary


# ---------------------------------------------------------------------------
# Review actions
# ---------------------------------------------------------------------------

async def approve_extraction(db: AsyncSession, extraction_id: UUID, actor: str) -> MergeSummary:
    """Merge a pending extraction into the canonical tables and mark it approved.

    All-or-nothing: on any failure the session is rolled back, the extraction
    stays pending, and :class:`MergeError` is raised (taxonomy errors such as
    NotFound / BadRequest propagate unchanged).
    """
    if not actor:
        raise BadRequestError("An actor is required to approve an extraction")

    try:
        # Sole writer to canonical tables; serializable isolation on this path only
        await db.connection(execution_options={"isolation_level": "SERIALIZABLE"})
        extraction = await get_extraction(db, extraction_id, for_update=True)
        if not is_pending(extraction):
            raise BadRequestError("Cannot approve an already processed extraction")

        payload = validate_payload(extraction.extracted_data)
        now = _utc_now_naive()
        summary = await merge_payload(db, payload, now=now)

        extraction.review_status = "approved"
        extraction.requires_review = False
        extraction.approved_by = actor
        extraction.approved_at = now
        extraction.reviewed_at = now
        extraction.updated_at = now
        await db.commit()
    except PipelineError:
        await safe_rollback(db)
        raise
    except Exception as exc:
        await safe_rollback(db)
        logger.error("[approval] Merge of extraction %s rolled back: %s", extraction_id, exc, exc_info=True)
        raise MergeError(f"Approval failed and was rolled back; extraction is still pending: {exc}") from exc

    logger.info("[approval] Extraction %s approved by %s: %s", extraction_id, actor, summary.to_dict())
    return summary


async def reject_extraction(db: AsyncSession, extraction_id: UUID, actor: str) -> Extraction:
    """Record a rejection: reviewer kept in approved_by, approved_at stays null."""
    if not actor:
        raise BadRequestError("An actor is required to reject an extraction")
    extraction = await get_extraction(db, extraction_id, for_update=True)
    if not is_pending(extraction):
        raise BadRequestError("Cannot reject an already processed extraction")

    now = _utc_now_naive()
    extraction.review_status = "rejected"
    extraction.requires_review = False
    extraction.approved_by = actor
    extraction.approved_at = None
    extraction.reviewed_at = now
    extraction.updated_at = now
    await db.commit()
    logger.info("[approval] Extraction %s rejected by %s", extraction_id, actor)
    return extraction


async def delete_extraction(db: AsyncSession, extraction_id: UUID) -> None:
    """Delete a pending extraction; decided extractions are kept as history."""
    extraction = await get_extraction(db, extraction_id)
    if not is_pending(extraction):
        raise BadRequestError("Cannot delete an extraction that has already been reviewed")
    await db.execute(delete(Extraction).where(Extraction.id == extraction_id))
    await db.commit()
    logger.info("[approval] Deleted pending extraction %s", extraction_id)
