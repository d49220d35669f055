"""
Extraction worker entry-point.

Thin shell: main() -> worker_loop() -> run_once() -> claim_next() -> process_job().
Queue transitions live in ``app.worker.queue``; result storage in
``app.services.extraction_store``. Configuration via ``app.worker.config``.

Run one or more of these processes next to the API::

    EXTRACTOR_FACTORY=mypkg.extract:build python -m app.worker.main
"""
import asyncio
import logging
import os
import sys
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import DATABASE_URL
from app.database import Database, safe_rollback
from app.errors import PreconditionFailedError
from app.models import Document, Job
from app.services.extraction_store import save_extraction_result, validate_payload
from app.services.extractor import DocumentExtractor, get_extractor
from app.worker.config import WorkerConfig, load_worker_config
from app.worker.queue import claim_next, get_job, retry, update_status

logger = logging.getLogger(__name__)


def _utc_now_naive() -> datetime:
    """Naive UTC datetime for DB (TIMESTAMP WITHOUT TIME ZONE)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


WORKER_ID = f"worker-{os.getpid()}-{_utc_now_naive().isoformat()}"


# ---------------------------------------------------------------------------
# process_job
# ---------------------------------------------------------------------------

async def _extract(extractor: DocumentExtractor, path: str, timeout: float | None) -> dict:
    if timeout:
        return await asyncio.wait_for(extractor.extract(path), timeout=timeout)
    return await extractor.extract(path)


async def process_job(
    job: Job,
    db: AsyncSession,
    extractor: DocumentExtractor,
    *,
    worker_cfg: WorkerConfig | None = None,
) -> str:
    """Run extraction for a claimed (processing) job and record the outcome.

    Returns the job's final status. A job cancelled while the extractor was
    running keeps its cancelled state and the result is discarded.
    """
    if worker_cfg is None:
        worker_cfg = load_worker_config()
    job_id = job.id
    document_id = job.document_id
    job_start_time = _utc_now_naive()
    try:
        logger.info("[JOB %s] Starting for document %s (attempt %s/%s)", job_id, document_id, (job.attempts or 0) + 1, job.max_attempts)

        doc_result = await db.execute(select(Document).where(Document.id == document_id))
        document = doc_result.scalar_one_or_none()
        if document is None:
            raise LookupError(f"Document {document_id} not found")

        raw_payload = await _extract(extractor, document.file_path, worker_cfg.extraction_timeout_seconds)
        payload = validate_payload(raw_payload)

        # Cooperative cancellation: only a job still processing may publish a result
        current = await get_job(db, job_id, for_update=True)
        if current.status != "processing":
            logger.warning("[JOB %s] Job is %s; discarding extraction result", job_id, current.status)
            await db.rollback()
            return current.status

        await save_extraction_result(db, document_id, payload)
        await update_status(db, job_id, "completed")
        job_duration = (_utc_now_naive() - job_start_time).total_seconds()
        logger.info("[JOB %s] Completed in %.2fs", job_id, job_duration)
        return "completed"

    except Exception as e:
        job_duration = (_utc_now_naive() - job_start_time).total_seconds()
        logger.error("[JOB %s] Error after %.2fs: %s", job_id, job_duration, e, exc_info=True)
        await safe_rollback(db)
        return await _record_failure(db, job_id, str(e)[:2000] or type(e).__name__, worker_cfg)


async def _record_failure(db: AsyncSession, job_id, error: str, worker_cfg: WorkerConfig) -> str:
    try:
        failed = await update_status(db, job_id, "failed", error=error)
    except PreconditionFailedError as exc:
        # Cancelled or reset by an operator while running
        logger.warning("[JOB %s] Not marking failed: %s", job_id, exc.message)
        return (await get_job(db, job_id)).status
    except Exception as persist_err:
        logger.error("[JOB %s] Failed to persist failure status: %s", job_id, persist_err, exc_info=True)
        await safe_rollback(db)
        return "processing"

    if worker_cfg.auto_retry and failed.attempts < failed.max_attempts:
        await retry(db, job_id)
        logger.info("[JOB %s] Re-queued (attempt %s/%s)", job_id, failed.attempts, failed.max_attempts)
        return "pending"
    logger.warning("[JOB %s] Failed permanently after %s attempts", job_id, failed.attempts)
    return "failed"


# ---------------------------------------------------------------------------
# worker_loop
# ---------------------------------------------------------------------------

async def run_once(database: Database, extractor: DocumentExtractor, cfg: WorkerConfig) -> bool:
    """Claim and process at most one job. Returns False when the queue was empty."""
    async with database.session() as db:
        job = await claim_next(db)
        if job is None:
            return False
        await process_job(job, db, extractor, worker_cfg=cfg)
        return True


async def worker_loop(
    database: Database,
    extractor: DocumentExtractor,
    cfg: WorkerConfig | None = None,
    stop: asyncio.Event | None = None,
):
    """Main worker loop: claim jobs until *stop* is set, sleeping when the queue is empty."""
    cfg = cfg or load_worker_config()
    stop = stop or asyncio.Event()
    logger.info("Worker %s starting...", WORKER_ID)

    poll_count = 0
    while not stop.is_set():
        try:
            if await run_once(database, extractor, cfg):
                poll_count = 0
                continue
            poll_count += 1
            if poll_count % 10 == 0:
                logger.debug("No pending jobs (poll #%s)", poll_count)
            await asyncio.sleep(cfg.poll_interval_seconds)
        except Exception as e:
            logger.error("Error in worker loop: %s", e, exc_info=True)
            await asyncio.sleep(cfg.error_sleep_seconds)


# ---------------------------------------------------------------------------
# main
# ---------------------------------------------------------------------------

async def _run(cfg: WorkerConfig) -> None:
    extractor = get_extractor(cfg.extractor_factory)
    database = Database(DATABASE_URL)
    try:
        await worker_loop(database, extractor, cfg)
    finally:
        await database.dispose()


def main():
    """Entry point for worker process."""
    cfg = load_worker_config()
    logging.basicConfig(level=getattr(logging, cfg.log_level.upper(), logging.INFO), format=cfg.log_format)
    try:
        asyncio.run(_run(cfg))
    except KeyboardInterrupt:
        logger.info("Worker shutting down...")
    except Exception as e:
        logger.error("Fatal error in worker: %s", e, exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
