from __future__ import annotations

from datetime import timedelta
from typing import Any, Callable, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from conversa.config import settings
from conversa.database import utcnow
from conversa.logging_config import get_logger
from conversa.models import Job

logger = get_logger("job_service")

STATUS_PENDING = "PENDING"
STATUS_PROCESSING = "PROCESSING"
STATUS_DONE = "DONE"
STATUS_FAILED = "FAILED"
STATUS_CANCELLED = "CANCELLED"

JobHandler = Callable[[Session, dict], None]
FailureHook = Callable[[Session, dict, str], None]

_handlers: dict[str, JobHandler] = {}
_failure_hooks: dict[str, FailureHook] = {}


def job_handler(kind: str, *, on_permanent_failure: Optional[FailureHook] = None):
    """Register the body of a job kind. The body commits its own work; raising schedules a retry."""

    def decorator(fn: JobHandler) -> JobHandler:
        _handlers[kind] = fn
        if on_permanent_failure is not None:
            _failure_hooks[kind] = on_permanent_failure
        return fn

    return decorator


def registered_kinds() -> list[str]:
    return sorted(_handlers)


def enqueue_job(
    db: Session,
    kind: str,
    payload: dict[str, Any],
    *,
    delay_seconds: float = 0,
    max_attempts: int | None = None,
) -> Job:
    """Add a job to the current transaction; it becomes visible to workers on commit."""
    job = Job(
        kind=kind,
        payload=payload,
        status=STATUS_PENDING,
        attempts=0,
        max_attempts=max_attempts or settings.job_max_attempts,
        run_at=utcnow() + timedelta(seconds=max(delay_seconds, 0)),
    )
    db.add(job)
    db.flush()
    return job


def claim_due_jobs(db: Session, *, limit: int = 10) -> list[Job]:
    """Claim due PENDING jobs for this worker (SKIP LOCKED, so concurrent workers never share a job)."""
    now = utcnow()
    jobs = (
        db.query(Job)
        .filter(Job.status == STATUS_PENDING, Job.run_at <= now)
        .order_by(Job.run_at, Job.created_at)
        .limit(limit)
        .with_for_update(skip_locked=True)
        .all()
    )
    for job in jobs:
        job.status = STATUS_PROCESSING
        job.attempts = (job.attempts or 0) + 1
        job.updated_at = now
    db.commit()
    return jobs


def retry_delay_seconds(attempts: int) -> float:
    return settings.job_retry_backoff_seconds * (2 ** max(attempts - 1, 0))


def run_job(db: Session, job: Job) -> str:
    """Run one claimed job and record the outcome. Returns the job's final status for this attempt."""
    context = {"job_id": str(job.id), "kind": job.kind, "attempt": job.attempts}
    handler = _handlers.get(job.kind)
    if handler is None:
        logger.error("No handler registered for job kind", extra={"context": context})
        _mark(db, job, STATUS_FAILED, f"unknown job kind {job.kind}")
        return STATUS_FAILED

    try:
        handler(db, dict(job.payload or {}))
    except Exception as exc:
        db.rollback()
        return _record_failure(db, job, exc, context)

    _mark(db, job, STATUS_DONE, None)
    logger.debug("Job done", extra={"context": context})
    return STATUS_DONE


def _record_failure(db: Session, job: Job, exc: Exception, context: dict) -> str:
    error = f"{type(exc).__name__}: {exc}"
    context = {**context, "error": error}

    if job.attempts < job.max_attempts:
        delay = retry_delay_seconds(job.attempts)
        job.status = STATUS_PENDING
        job.last_error = error
        job.run_at = utcnow() + timedelta(seconds=delay)
        db.commit()
        logger.warning(f"Job failed, retrying in {delay:.0f}s", extra={"context": context})
        return STATUS_PENDING

    _mark(db, job, STATUS_FAILED, error)
    logger.error("Job failed permanently", extra={"context": context}, exc_info=exc)

    hook = _failure_hooks.get(job.kind)
    if hook is not None:
        try:
            hook(db, dict(job.payload or {}), error)
            db.commit()
        except Exception as hook_exc:
            db.rollback()
            logger.critical(
                "Permanent failure hook raised",
                extra={"context": {**context, "hook_error": str(hook_exc)}},
                exc_info=hook_exc,
            )
    return STATUS_FAILED


def _mark(db: Session, job: Job, status: str, last_error: str | None) -> None:
    job.status = status
    job.last_error = last_error
    job.updated_at = utcnow()
    db.commit()


def release_stale_processing(db: Session, *, stale_seconds: int) -> int:
    """Put jobs left PROCESSING by a crashed worker back in the queue."""
    cutoff = utcnow() - timedelta(seconds=stale_seconds)
    result = db.execute(
        update(Job)
        .where(Job.status == STATUS_PROCESSING, Job.updated_at < cutoff)
        .values(status=STATUS_PENDING, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount:
        logger.warning(f"Released {result.rowcount} stale processing jobs")
    return result.rowcount


def cancel_jobs(db: Session, kind: str, predicate: Callable[[dict], bool]) -> int:
    """Cancel pending jobs of a kind whose payload matches. Does not commit."""
    cancelled = 0
    for job in db.query(Job).filter(Job.kind == kind, Job.status == STATUS_PENDING).all():
        if predicate(job.payload or {}):
            job.status = STATUS_CANCELLED
            cancelled += 1
    return cancelled
