#!/usr/bin/env python3
"""
Reset extraction jobs stuck in 'processing' (crashed worker) back to pending.

Usage:
  python scripts/reset_stuck_jobs.py            # list stuck jobs only
  python scripts/reset_stuck_jobs.py --apply    # reset them
  python scripts/reset_stuck_jobs.py --apply --timeout 90

A job is stuck when it has been processing longer than the timeout
(QUEUE_STUCK_JOB_TIMEOUT_MINUTES, default 60). Reset keeps the previous
error in the job's error history and does not touch the attempts count.
A job that finished or was cancelled after listing is skipped.
"""
import argparse
import asyncio
import sys
from pathlib import Path

# Add app to path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))


async def reset_jobs(db, job_ids) -> tuple[int, int]:
    """Reset each job; returns (reset, skipped)."""
    from app.errors import PreconditionFailedError
    from app.worker.queue import reset

    done = skipped = 0
    for job_id in job_ids:
        try:
            await reset(db, job_id, from_statuses=("processing",))
        except PreconditionFailedError as exc:
            print(f"  skipped {job_id}: {exc.message}")
            skipped += 1
            continue
        done += 1
    return done, skipped


async def main(apply: bool, timeout_minutes: int) -> int:
    from app.config import DATABASE_URL
    from app.database import Database
    from app.worker.queue import find_stuck_jobs

    database = Database(DATABASE_URL)
    try:
        async with database.session() as db:
            stuck = await find_stuck_jobs(db, timeout_minutes)
            if not stuck:
                print(f"No jobs processing for more than {timeout_minutes} minutes.")
                return 0
            for job in stuck:
                print(f"  {job.id}  document={job.document_id}  started_at={job.started_at.isoformat()}  attempts={job.attempts}/{job.max_attempts}")
            if not apply:
                print(f"{len(stuck)} stuck job(s). Re-run with --apply to reset them.")
                return 0

            done, skipped = await reset_jobs(db, [job.id for job in stuck])
            print(f"Reset {done} job(s) to pending, skipped {skipped}.")
            return 0
    finally:
        await database.dispose()


if __name__ == "__main__":
    from app.worker.config import load_worker_config

    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument("--apply", action="store_true", help="reset the stuck jobs (default: list only)")
    parser.add_argument("--timeout", type=int, default=load_worker_config().stuck_timeout_minutes, help="minutes before a processing job counts as stuck")
    args = parser.parse_args()
    sys.exit(asyncio.run(main(args.apply, args.timeout)))
