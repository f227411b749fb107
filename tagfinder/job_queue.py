"""Postgres-native tagging job queue.

One row per image in ``tag_jobs``. Jobs move ``queued -> running -> done |
failed``; only an operator requeue moves them back to ``queued``.

Claiming is a single UPDATE whose target row is chosen by a
``SELECT ... FOR UPDATE SKIP LOCKED`` subquery, so concurrent workers each
grab a different row instead of blocking on, or double-claiming, the same
one. SQLite (used for local dev and tests) drops the locking clause, but it
serializes writers, so the single statement is still atomic there.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import NamedTuple, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from tagfinder.db import dialect_insert, utcnow
from tagfinder.models import Image, ImageStatus, JobStatus, TagJob

logger = logging.getLogger(__name__)


class ClaimedJob(NamedTuple):
    job_id: int
    image_id: int


async def enqueue_job(session: AsyncSession, image_id: int) -> bool:
    """Queue a tagging job for the image. Returns False if one already exists."""
    stmt = (
        dialect_insert(session, TagJob)
        .values(image_id=image_id, status=JobStatus.QUEUED, attempts=0)
        .on_conflict_do_nothing(index_elements=["image_id"])
        .returning(TagJob.id)
    )
    return (await session.execute(stmt)).scalar_one_or_none() is not None


async def claim_one_job(session: AsyncSession) -> Optional[ClaimedJob]:
    """Atomically move the oldest unlocked queued job to running.

    Increments ``attempts``. Returns None when nothing is queued. The caller
    should commit right away so the claim becomes visible to other workers.
    """
    # Aliased so the subquery is not correlated to the UPDATE target
    candidate = aliased(TagJob)
    next_job_id = (
        select(candidate.id)
        .where(candidate.status == JobStatus.QUEUED)
        .order_by(candidate.created_at.asc(), candidate.id.asc())
        .limit(1)
        .with_for_update(skip_locked=True)
        .scalar_subquery()
    )
    stmt = (
        update(TagJob)
        .where(TagJob.id == next_job_id, TagJob.status == JobStatus.QUEUED)
        .values(status=JobStatus.RUNNING, attempts=TagJob.attempts + 1, updated_at=utcnow())
        .returning(TagJob.id, TagJob.image_id)
        .execution_options(synchronize_session=False)
    )
    row = (await session.execute(stmt)).first()
    if row is None:
        return None
    return ClaimedJob(job_id=row.id, image_id=row.image_id)


async def mark_job_done(session: AsyncSession, job_id: int) -> None:
    await session.execute(
        update(TagJob)
        .where(TagJob.id == job_id)
        .values(status=JobStatus.DONE, last_error=None)
        .execution_options(synchronize_session=False)
    )


async def mark_job_failed(session: AsyncSession, job_id: int, error: str) -> None:
    await session.execute(
        update(TagJob)
        .where(TagJob.id == job_id)
        .values(status=JobStatus.FAILED, last_error=error)
        .execution_options(synchronize_session=False)
    )


def start_of_utc_day(now: Optional[datetime] = None) -> datetime:
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    now = now.astimezone(timezone.utc)
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


async def count_done_today(session: AsyncSession, now: Optional[datetime] = None) -> int:
    """Number of done jobs whose created_at falls in the current UTC day.

    Jobs are bucketed by creation time, not completion time: a job created
    before midnight and finished after it counts towards the previous day.
    """
    result = await session.execute(
        select(func.count(TagJob.id)).where(
            TagJob.status == JobStatus.DONE,
            TagJob.created_at >= start_of_utc_day(now),
        )
    )
    return int(result.scalar_one())


async def remaining_daily_budget(
    session: AsyncSession, daily_cap: int, now: Optional[datetime] = None
) -> int:
    """How many more jobs may complete today before the cap is hit."""
    return max(0, daily_cap - await count_done_today(session, now))


async def _requeue_where(session: AsyncSession, *criteria) -> int:
    result = await session.execute(select(TagJob.id, TagJob.image_id).where(*criteria))
    rows = result.all()
    if not rows:
        return 0

    job_ids = [row.id for row in rows]
    image_ids = [row.image_id for row in rows]
    await session.execute(
        update(TagJob)
        .where(TagJob.id.in_(job_ids))
        .values(status=JobStatus.QUEUED, last_error=None)
        .execution_options(synchronize_session=False)
    )
    await session.execute(
        update(Image)
        .where(Image.id.in_(image_ids))
        .values(status=ImageStatus.PENDING)
        .execution_options(synchronize_session=False)
    )
    return len(rows)


async def requeue_failed_jobs(session: AsyncSession) -> int:
    """Operator requeue: every failed job back to queued, its image to pending."""
    count = await _requeue_where(session, TagJob.status == JobStatus.FAILED)
    logger.info("Requeued %d failed jobs", count)
    return count


async def requeue_job(session: AsyncSession, job_id: int) -> bool:
    """Requeue a single job unless it is already queued."""
    return await _requeue_where(session, TagJob.id == job_id, TagJob.status != JobStatus.QUEUED) > 0


async def requeue_stale_jobs(
    session: AsyncSession, older_than: timedelta, now: Optional[datetime] = None
) -> int:
    """Requeue running jobs not touched within ``older_than``.

    A worker that crashes mid-job leaves the row in ``running`` forever;
    this resets such rows so another worker can pick them up.
    """
    now = now or utcnow()
    count = await _requeue_where(
        session,
        TagJob.status == JobStatus.RUNNING,
        TagJob.updated_at < now - older_than,
    )
    if count:
        logger.warning("Requeued %d stale running jobs (older than %s)", count, older_than)
    return count
