"""
Durable priority job queue for document extraction.

State machine::

    pending --claim_next--> processing --update_status--> completed | failed
    failed  --retry (attempts < max_attempts)--> pending
    processing | failed --reset (operator)--> pending     (error history kept)
    pending | processing --cancel (operator)--> failed

Coordination between workers happens only through row locks in PostgreSQL:
``claim_next`` is ``SELECT ... FOR UPDATE SKIP LOCKED`` so concurrent workers
partition the pending set instead of queueing behind each other.

There is no lease or heartbeat. A worker that dies mid-job leaves the job in
``processing``; ``stats``/``find_stuck_jobs`` report it and an operator Reset
puts it back (see scripts/reset_stuck_jobs.py).
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import UUID

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import BadRequestError, ConflictError, NotFoundError, PreconditionFailedError
from app.models import Document, Job

logger = logging.getLogger(__name__)

JOB_STATUSES = ("pending", "processing", "completed", "failed")
ACTIVE_STATUSES = ("pending", "processing")

PRIORITY_LABELS = {1: "high", 2: "medium", 3: "low"}
_PRIORITY_BY_LABEL = {label: value for value, label in PRIORITY_LABELS.items()}

DEFAULT_PRIORITY = 3
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_STUCK_TIMEOUT_MINUTES = 60
CANCEL_MESSAGE = "Job cancelled by admin"


def _utc_now_naive() -> datetime:
    """Naive UTC datetime for DB (TIMESTAMP WITHOUT TIME ZONE)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_priority(priority: Any) -> int:
    """Accept 1-3 or high/medium/low."""
    if isinstance(priority, str):
        label = priority.strip().lower()
        if label in _PRIORITY_BY_LABEL:
            return _PRIORITY_BY_LABEL[label]
        if label.isdigit():
            priority = int(label)
    if isinstance(priority, int) and not isinstance(priority, bool) and priority in PRIORITY_LABELS:
        return priority
    raise BadRequestError(f"Invalid priority {priority!r}; use 1-3 or high/medium/low")


def priority_label(priority: int) -> str:
    return PRIORITY_LABELS.get(priority, "low")


# ---------------------------------------------------------------------------
# Stuck detection (diagnostic only)
# ---------------------------------------------------------------------------

def stuck_cutoff(timeout_minutes: int, now: datetime | None = None) -> datetime:
    return (now or _utc_now_naive()) - timedelta(minutes=timeout_minutes)


def is_stuck(job: Any, timeout_minutes: int = DEFAULT_STUCK_TIMEOUT_MINUTES, now: datetime | None = None) -> bool:
    """True when the job is processing and started more than *timeout_minutes* ago."""
    if job.status != "processing" or job.started_at is None:
        return False
    return job.started_at < stuck_cutoff(timeout_minutes, now)


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

async def get_job(db: AsyncSession, job_id: UUID, *, for_update: bool = False) -> Job:
    stmt = select(Job).where(Job.id == job_id)
    if for_update:
        # Locked reads must see the committed row, not a stale identity-map copy
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    result = await db.execute(stmt)
    job = result.scalar_one_or_none()
    if job is None:
        raise NotFoundError("Job not found")
    return job


async def find_stuck_jobs(
    db: AsyncSession,
    timeout_minutes: int = DEFAULT_STUCK_TIMEOUT_MINUTES,
) -> list[Job]:
    result = await db.execute(
        select(Job)
        .where(Job.status == "processing", Job.started_at < stuck_cutoff(timeout_minutes))
        .order_by(Job.started_at)
    )
    return list(result.scalars().all())


@dataclass
class QueueStats:
    pending: int
    processing: int
    completed: int
    failed: int
    total: int
    stuck: int
    avg_processing_time_minutes: int | None

    def to_dict(self) -> dict:
        return asdict(self)


async def stats(db: AsyncSession, stuck_timeout_minutes: int = DEFAULT_STUCK_TIMEOUT_MINUTES) -> QueueStats:
    """Counts per status, mean completed duration (minutes, rounded) and stuck count."""
    result = await db.execute(select(Job.status, func.count()).group_by(Job.status))
    counts = {status: 0 for status in JOB_STATUSES}
    for status, count in result.all():
        if status in counts:
            counts[status] = int(count)

    avg_result = await db.execute(
        select(func.avg(func.extract("epoch", Job.completed_at - Job.started_at) / 60)).where(
            Job.status == "completed",
            Job.completed_at.is_not(None),
            Job.started_at.is_not(None),
        )
    )
    avg_minutes = avg_result.scalar_one_or_none()

    stuck_result = await db.execute(
        select(func.count()).select_from(Job).where(
            Job.status == "processing",
            Job.started_at < stuck_cutoff(stuck_timeout_minutes),
        )
    )
    stuck = int(stuck_result.scalar_one() or 0)

    return QueueStats(
        pending=counts["pending"],
        processing=counts["processing"],
        completed=counts["completed"],
        failed=counts["failed"],
        total=sum(counts.values()),
        stuck=stuck,
        avg_processing_time_minutes=round(float(avg_minutes)) if avg_minutes is not None else None,
    )


async def list_jobs(
    db: AsyncSession,
    *,
    status: str = "all",
    sort_by: str = "priority",
    sort_order: str = "asc",
    page: int = 1,
    page_size: int = 10,
    stuck_timeout_minutes: int = DEFAULT_STUCK_TIMEOUT_MINUTES,
) -> dict:
    """Operator view of the queue, joined to documents."""
    if status != "all" and status not in JOB_STATUSES:
        raise BadRequestError(f"status must be one of: all, {', '.join(JOB_STATUSES)}")
    if sort_by not in ("priority", "created_at", "started_at"):
        raise BadRequestError("sort_by must be one of: priority, created_at, started_at")
    page = max(1, page)
    page_size = max(1, min(100, page_size))
    desc = sort_order == "desc"

    stmt = select(Job, Document).join(Document, Job.document_id == Document.id)
    if status != "all":
        stmt = stmt.where(Job.status == status)
    if sort_by == "priority":
        # asc = highest priority (1) first, FIFO within a tier
        if desc:
            stmt = stmt.order_by(Job.priority.desc(), Job.created_at.desc())
        else:
            stmt = stmt.order_by(Job.priority.asc(), Job.created_at.asc())
    else:
        column = Job.created_at if sort_by == "created_at" else Job.started_at
        stmt = stmt.order_by(column.desc() if desc else column.asc())
    stmt = stmt.offset((page - 1) * page_size).limit(page_size + 1)

    result = await db.execute(stmt)
    rows = result.all()
    has_next_page = len(rows) > page_size
    rows = rows[:page_size]

    now = _utc_now_naive()
    jobs = []
    for job, document in rows:
        out = job_to_dict(job, stuck_timeout_minutes=stuck_timeout_minutes, now=now)
        out["document"] = {"id": str(document.id), "file_name": document.file_name, "company_name": document.company_name}
        jobs.append(out)
    return {
        "jobs": jobs,
        "has_next_page": has_next_page,
        "has_previous_page": page > 1,
        "current_page": page,
    }


def job_to_dict(
    job: Job,
    *,
    stuck_timeout_minutes: int = DEFAULT_STUCK_TIMEOUT_MINUTES,
    now: datetime | None = None,
) -> dict:
    return {
        "id": str(job.id),
        "document_id": str(job.document_id),
        "job_type": job.job_type,
        "priority": job.priority,
        "priority_label": priority_label(job.priority),
        "status": job.status,
        "attempts": job.attempts,
        "max_attempts": job.max_attempts,
        "error": job.error,
        "created_at": job.created_at.isoformat() if job.created_at else None,
        "started_at": job.started_at.isoformat() if job.started_at else None,
        "completed_at": job.completed_at.isoformat() if job.completed_at else None,
        "is_stuck": is_stuck(job, stuck_timeout_minutes, now),
    }


# ---------------------------------------------------------------------------
# Enqueue / claim
# ---------------------------------------------------------------------------

async def enqueue(
    db: AsyncSession,
    document_id: UUID,
    priority: Any = DEFAULT_PRIORITY,
    *,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> Job:
    """Insert a pending job; ConflictError if the document already has one pending or processing."""
    priority = parse_priority(priority)

    # Lock the document row so two enqueues for the same document serialize here
    doc_result = await db.execute(select(Document.id).where(Document.id == document_id).with_for_update())
    if doc_result.scalar_one_or_none() is None:
        raise NotFoundError("Document not found")

    active = await db.execute(
        select(Job.id).where(Job.document_id == document_id, Job.status.in_(ACTIVE_STATUSES)).limit(1)
    )
    if active.scalar_one_or_none() is not None:
        await db.rollback()
        raise ConflictError("Document already in queue")

    job = Job(
        document_id=document_id,
        job_type="extraction",
        priority=priority,
        status="pending",
        attempts=0,
        max_attempts=max_attempts,
        created_at=_utc_now_naive(),
    )
    db.add(job)
    await db.commit()
    logger.info("[queue] Enqueued job %s for document %s (priority %s)", job.id, document_id, priority_label(priority))
    return job


async def claim_next(db: AsyncSession) -> Job | None:
    """Atomically claim the best pending job (priority asc, then FIFO); None when the queue is empty."""
    result = await db.execute(
        select(Job)
        .where(Job.status == "pending")
        .order_by(Job.priority.asc(), Job.created_at.asc())
        .limit(1)
        .with_for_update(skip_locked=True)
    )
    job = result.scalar_one_or_none()
    if job is None:
        return None

    job.status = "processing"
    job.started_at = _utc_now_naive()
    await db.commit()
    logger.info("[JOB %s] Claimed (document %s, priority %s)", job.id, job.document_id, job.priority)
    return job


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------

async def update_status(db: AsyncSession, job_id: UUID, status: str, error: str | None = None) -> Job:
    """Terminate a processing job as completed or failed.

    PreconditionFailedError when the job is no longer processing (e.g. it was
    cancelled while the worker ran).
    """
    if status not in ("completed", "failed"):
        raise BadRequestError("status must be 'completed' or 'failed'")
    job = await get_job(db, job_id, for_update=True)
    if job.status != "processing":
        await db.rollback()
        raise PreconditionFailedError(f"Job is {job.status}, expected processing")

    now = _utc_now_naive()
    job.status = status
    job.completed_at = now
    if status == "failed":
        job.error = error
        job.attempts = (job.attempts or 0) + 1
    await db.commit()
    logger.info("[JOB %s] Status=%s (attempts %s/%s)", job.id, status, job.attempts, job.max_attempts)
    return job


async def retry(db: AsyncSession, job_id: UUID) -> Job:
    """failed -> pending while the retry budget lasts."""
    job = await get_job(db, job_id, for_update=True)
    if job.status != "failed":
        await db.rollback()
        raise PreconditionFailedError("Can only retry failed jobs")
    if job.attempts is not None and job.max_attempts is not None and job.attempts >= job.max_attempts:
        await db.rollback()
        raise PreconditionFailedError("Maximum retry attempts reached")

    job.status = "pending"
    job.error = None
    job.started_at = None
    job.completed_at = None
    await db.commit()
    logger.info("[JOB %s] Retried (attempts %s/%s)", job.id, job.attempts, job.max_attempts)
    return job


async def reset(db: AsyncSession, job_id: UUID, *, from_statuses: tuple[str, ...] = ("processing", "failed")) -> Job:
    """Operator override: processing|failed -> pending regardless of attempts; error history kept.

    Narrow *from_statuses* to ("processing",) to leave cancelled and failed jobs alone.
    """
    job = await get_job(db, job_id, for_update=True)
    if job.status not in from_statuses:
        await db.rollback()
        raise PreconditionFailedError(f"Can only reset {' or '.join(from_statuses)} jobs")

    now = datetime.now(timezone.utc)
    job.status = "pending"
    job.error = f"Job reset by admin at {now.isoformat()}. Previous error: {job.error or 'None'}"
    job.started_at = None
    job.completed_at = None
    await db.commit()
    logger.info("[JOB %s] Reset to pending by operator", job.id)
    return job


async def cancel(db: AsyncSession, job_id: UUID) -> Job:
    """pending|processing -> failed with a fixed message. Running workers are not interrupted."""
    job = await get_job(db, job_id, for_update=True)
    if job.status == "completed":
        await db.rollback()
        raise PreconditionFailedError("Cannot cancel completed jobs")
    if job.status not in ACTIVE_STATUSES:
        await db.rollback()
        raise PreconditionFailedError(f"Cannot cancel a {job.status} job")

    job.status = "failed"
    job.error = CANCEL_MESSAGE
    job.completed_at = _utc_now_naive()
    await db.commit()
    logger.info("[JOB %s] Cancelled by operator", job.id)
    return job


async def update_priority(db: AsyncSession, document_id: UUID, priority: Any) -> Job:
    """Change the priority of the document's pending job."""
    priority = parse_priority(priority)
    result = await db.execute(
        select(Job)
        .where(Job.document_id == document_id, Job.status == "pending")
        .limit(1)
        .with_for_update()
    )
    job = result.scalar_one_or_none()
    if job is None:
        raise NotFoundError("No pending job found for this document")
    job.priority = priority
    await db.commit()
    logger.info("[JOB %s] Priority set to %s", job.id, priority_label(priority))
    return job


async def cleanup(db: AsyncSession, older_than_days: int = 30) -> int:
    """Delete completed jobs finished more than *older_than_days* ago. Returns the count."""
    if older_than_days < 1:
        raise BadRequestError("older_than_days must be at least 1")
    cutoff = _utc_now_naive() - timedelta(days=older_than_days)
    result = await db.execute(
        delete(Job)
        .where(Job.status == "completed", Job.completed_at < cutoff)
        .returning(Job.id)
    )
    deleted = len(result.all())
    await db.commit()
    logger.info("[queue] Cleanup removed %d completed jobs older than %d days", deleted, older_than_days)
    return deleted
