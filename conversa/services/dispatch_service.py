from sqlalchemy.orm import Session

from conversa.config import settings
from conversa.logging_config import get_logger
from conversa.models import Job
from conversa.services.job_service import enqueue_job

logger = get_logger("dispatch_service")


def safe_rate(rate) -> int:
    """Messages per minute; missing, non-numeric or non-positive values fall back to the configured default."""
    default = settings.default_rate_limit_per_minute if settings.default_rate_limit_per_minute > 0 else 20
    try:
        value = int(rate)
    except (TypeError, ValueError):
        return default
    return value if value > 0 else default


def compute_delays(count: int, rate) -> list[float]:
    """Delay in seconds for each of count sends, so that at most rate sends start in any 60s window."""
    interval = 60.0 / safe_rate(rate)
    return [i * interval for i in range(count)]


def schedule_sends(
    db: Session,
    kind: str,
    payloads: list[dict],
    rate,
    *,
    max_attempts: int | None = None,
) -> list[Job]:
    """Enqueue one delayed job per payload, in order, spaced by 60/rate seconds."""
    delays = compute_delays(len(payloads), rate)
    jobs = [
        enqueue_job(db, kind, payload, delay_seconds=delay, max_attempts=max_attempts)
        for payload, delay in zip(payloads, delays)
    ]
    if jobs:
        logger.info(
            f"Scheduled {len(jobs)} {kind} jobs",
            extra={"context": {"rate_per_minute": safe_rate(rate), "last_delay_seconds": delays[-1]}},
        )
    return jobs
