"""Background job worker and inactivity reaper.

Started inside the API process on startup, or standalone with ``python -m conversa.worker``.
"""

import asyncio

from conversa.config import settings
from conversa.database import SessionLocal
from conversa.logging_config import get_logger, setup_logging
from conversa.services import campaign_service, dialogue_service, ingestion_service, media_service  # noqa: F401
from conversa.services.alert_service import alert_error
from conversa.services.job_service import (
    STATUS_DONE,
    claim_due_jobs,
    registered_kinds,
    release_stale_processing,
    run_job,
)
from conversa.services.reaper_service import close_inactive_conversations

logger = get_logger("worker")


def run_due_jobs(limit: int | None = None) -> dict:
    """Claim and run one batch of due jobs. Returns counts by outcome."""
    results: dict[str, int] = {"claimed": 0}
    db = SessionLocal()
    try:
        jobs = claim_due_jobs(db, limit=limit or settings.worker_batch_limit)
        results["claimed"] = len(jobs)
        for job in jobs:
            outcome = run_job(db, job)
            results[outcome] = results.get(outcome, 0) + 1
    finally:
        db.close()
    return results


def run_reaper() -> dict:
    db = SessionLocal()
    try:
        return close_inactive_conversations(db)
    finally:
        db.close()


def release_stale_jobs() -> int:
    db = SessionLocal()
    try:
        return release_stale_processing(db, stale_seconds=settings.job_stale_processing_seconds)
    finally:
        db.close()


async def job_worker_loop() -> None:
    logger.info("Job worker started", extra={"context": {"kinds": registered_kinds()}})
    await asyncio.to_thread(release_stale_jobs)
    while True:
        try:
            results = await asyncio.to_thread(run_due_jobs)
            if results["claimed"]:
                logger.info("Job worker processed", extra={"context": results})
            if results["claimed"] and results.get(STATUS_DONE, 0) == results["claimed"]:
                continue
            await asyncio.sleep(max(settings.worker_interval_seconds, 0.1))
        except asyncio.CancelledError:
            break
        except Exception as exc:
            logger.error("Job worker loop failed", extra={"context": {"error": str(exc)}})
            alert_error("Job worker loop failed", {"error": str(exc)})
            await asyncio.sleep(max(settings.worker_interval_seconds, 0.1))


async def reaper_loop() -> None:
    while True:
        try:
            await asyncio.sleep(max(settings.reaper_interval_seconds, 1.0))
            await asyncio.to_thread(run_reaper)
        except asyncio.CancelledError:
            break
        except Exception as exc:
            logger.error("Reaper loop failed", extra={"context": {"error": str(exc)}})


async def main() -> None:
    await asyncio.gather(job_worker_loop(), reaper_loop())


if __name__ == "__main__":
    setup_logging()
    asyncio.run(main())
