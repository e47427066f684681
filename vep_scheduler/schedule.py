"""Decide which pending jobs are due on a scheduler tick."""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, List, Optional
from zoneinfo import ZoneInfo

from .config import TimingConfig
from .logger import get_logger
from .models import Job, JobStatus


def parse_execution_time(value: Optional[str], tz: ZoneInfo) -> Optional[datetime]:
    """Parse an ISO timestamp; naive values are local to ``tz``."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=tz)
    return parsed.astimezone(tz)


def _bucket(moment: datetime, bucket_minutes: int) -> int:
    return (moment.hour * 60 + moment.minute) // max(1, bucket_minutes)


def is_job_due(
    execution_time: datetime,
    now: datetime,
    *,
    bucket_minutes: int = 10,
    grace_minutes: float = 2.0,
    stale_after_minutes: float = 60.0,
) -> bool:
    """Return ``True`` if a job scheduled at ``execution_time`` should run at ``now``.

    Both datetimes must be expressed in the reference timezone. Jobs from
    another calendar day, in the future, or older than the stale cutoff are
    never due. Inside the current bucket a job runs immediately; otherwise it
    needs to be at least ``grace_minutes`` late.
    """
    if execution_time.date() != now.date():
        return False
    delta = (now - execution_time).total_seconds() / 60.0
    if delta < 0:
        return False
    if delta > stale_after_minutes:
        return False
    if _bucket(now, bucket_minutes) == _bucket(execution_time, bucket_minutes):
        return True
    return delta >= grace_minutes


def select_due_jobs(
    jobs: Iterable[Job],
    now: datetime,
    timing: TimingConfig | None = None,
    logger=None,
) -> List[Job]:
    """Filter ``jobs`` down to the ones due at ``now``, keeping their order."""
    timing = timing or TimingConfig()
    logger = logger or get_logger()
    tz = ZoneInfo(timing.timezone)
    now = now.replace(tzinfo=tz) if now.tzinfo is None else now.astimezone(tz)

    due: List[Job] = []
    for job in jobs:
        if job.status != JobStatus.PENDING:
            continue
        scheduled = parse_execution_time(job.execution_time, tz)
        if scheduled is None:
            logger.warning("Job %s has an invalid execution_time %r, skipping", job.id, job.execution_time)
            continue
        if is_job_due(
            scheduled,
            now,
            bucket_minutes=timing.bucket_minutes,
            grace_minutes=timing.grace_minutes,
            stale_after_minutes=timing.stale_after_minutes,
        ):
            due.append(job)
    return due
