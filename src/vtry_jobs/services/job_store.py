"""Job store: creates, transitions and queries GenerationJob records.

Every state change is a single conditional ``UPDATE … WHERE status = …``;
the affected row count decides whether the transition happened. No row
is ever read, modified in Python and written back, so two workers (or a
worker and a cancel request) can never both win the same transition.

Worker-side transitions are additionally fenced on ``attempt``: a claim
increments it, so a worker whose claim was superseded (e.g. it stalled,
the sweep re-queued the job and another worker claimed it) can no longer
touch the record.

Methods never commit; the caller owns the transaction so admission can
consume quota, create the job and enqueue it atomically.
"""

import logging
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import case, func, select, update
from sqlalchemy.orm import Session

from vtry_jobs.models import utcnow
from vtry_jobs.models.job import (
    ACTIVE_STATUSES,
    GenerationJob,
    JobKind,
    JobStatus,
)

logger = logging.getLogger(__name__)

# Progress reported as soon as a worker has claimed a job
CLAIMED_PROGRESS = 10


def _at_least(value: int):
    """SQL expression raising ``progress`` to ``value`` but never lowering it."""
    return case((GenerationJob.progress < value, value), else_=GenerationJob.progress)


class JobStore:
    """Conditional-update state machine over GenerationJob rows."""

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def create_job(
        self,
        db: Session,
        owner_id: str,
        kind: JobKind,
        payload: dict[str, Any],
        *,
        input_ref: str | None = None,
    ) -> GenerationJob:
        """Add a new job in QUEUED state (flushed, not committed)."""
        now = utcnow()
        job = GenerationJob(
            job_id=uuid.uuid4().hex,
            owner_id=owner_id,
            kind=kind,
            status=JobStatus.QUEUED,
            progress=0,
            attempt=0,
            payload=payload,
            input_ref=input_ref,
            created_at=now,
            updated_at=now,
        )
        db.add(job)
        db.flush()
        logger.info(
            "Created %s job %s for owner %s",
            kind.value, job.job_id, owner_id,
            extra={"job_id": job.job_id, "owner_id": owner_id},
        )
        return job

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _transition(
        self,
        db: Session,
        job_id: str,
        *conditions,
        **values: Any,
    ) -> GenerationJob | None:
        """Apply ``values`` iff every condition holds; return the fresh row or None."""
        stmt = (
            update(GenerationJob)
            .where(GenerationJob.job_id == job_id, *conditions)
            .values(updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        result = db.execute(stmt)
        if result.rowcount != 1:
            return None
        return self.get_by_job_id(db, job_id)

    @staticmethod
    def _fence(attempt: int, heartbeat_before: datetime | None = None) -> list:
        conditions = [
            GenerationJob.status == JobStatus.PROCESSING,
            GenerationJob.attempt == attempt,
        ]
        if heartbeat_before is not None:
            conditions.append(GenerationJob.updated_at < heartbeat_before)
        return conditions

    def claim(self, db: Session, job_id: str) -> GenerationJob | None:
        """QUEUED → PROCESSING. Returns None if the job was not QUEUED."""
        return self._transition(
            db,
            job_id,
            GenerationJob.status == JobStatus.QUEUED,
            status=JobStatus.PROCESSING,
            attempt=GenerationJob.attempt + 1,
            started_at=utcnow(),
            progress=_at_least(CLAIMED_PROGRESS),
        )

    def report_progress(
        self, db: Session, job_id: str, attempt: int, progress: int
    ) -> GenerationJob | None:
        """Heartbeat plus monotonic progress bump for the claim holder."""
        progress = max(0, min(99, int(progress)))
        return self._transition(
            db, job_id, *self._fence(attempt), progress=_at_least(progress)
        )

    def complete(
        self, db: Session, job_id: str, attempt: int, result_ref: str
    ) -> GenerationJob | None:
        """PROCESSING → COMPLETED for the claim holder."""
        now = utcnow()
        return self._transition(
            db,
            job_id,
            *self._fence(attempt),
            status=JobStatus.COMPLETED,
            progress=100,
            result_ref=result_ref,
            finished_at=now,
        )

    def requeue(
        self,
        db: Session,
        job_id: str,
        attempt: int,
        error: str,
        *,
        heartbeat_before: datetime | None = None,
    ) -> GenerationJob | None:
        """PROCESSING → QUEUED after a retryable failure (progress is kept)."""
        return self._transition(
            db,
            job_id,
            *self._fence(attempt, heartbeat_before),
            status=JobStatus.QUEUED,
            last_error=error,
        )

    def fail(
        self,
        db: Session,
        job_id: str,
        attempt: int,
        code: str,
        message: str,
        *,
        heartbeat_before: datetime | None = None,
    ) -> GenerationJob | None:
        """PROCESSING → FAILED for the claim holder (or the stuck-job sweep)."""
        return self._transition(
            db,
            job_id,
            *self._fence(attempt, heartbeat_before),
            status=JobStatus.FAILED,
            error_code=code,
            error_message=message,
            finished_at=utcnow(),
        )

    def cancel(self, db: Session, job_id: str) -> GenerationJob | None:
        """QUEUED | PROCESSING → CANCELLED. Returns None if already terminal."""
        return self._transition(
            db,
            job_id,
            GenerationJob.status.in_(sorted(ACTIVE_STATUSES)),
            status=JobStatus.CANCELLED,
            finished_at=utcnow(),
        )

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def get_by_job_id(self, db: Session, job_id: str) -> GenerationJob | None:
        """Fetch the current row, bypassing any stale identity-map copy."""
        stmt = (
            select(GenerationJob)
            .where(GenerationJob.job_id == job_id)
            .execution_options(populate_existing=True)
        )
        return db.execute(stmt).scalar_one_or_none()

    def find_stuck(
        self, db: Session, heartbeat_before: datetime, *, limit: int = 50
    ) -> list[GenerationJob]:
        """PROCESSING jobs whose last write is older than ``heartbeat_before``."""
        stmt = (
            select(GenerationJob)
            .where(
                GenerationJob.status == JobStatus.PROCESSING,
                GenerationJob.updated_at < heartbeat_before,
            )
            .order_by(GenerationJob.updated_at)
            .limit(limit)
        )
        return list(db.execute(stmt).scalars())

    def list_for_owner(
        self,
        db: Session,
        owner_id: str,
        *,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[list[GenerationJob], int]:
        """Return a page of jobs for an owner plus the total count.

        Jobs are ordered newest-first.
        """
        total = db.execute(
            select(func.count()).select_from(GenerationJob).where(GenerationJob.owner_id == owner_id)
        ).scalar_one()
        offset = (page - 1) * page_size
        stmt = (
            select(GenerationJob)
            .where(GenerationJob.owner_id == owner_id)
            .order_by(GenerationJob.created_at.desc(), GenerationJob.id.desc())
            .offset(offset)
            .limit(page_size)
        )
        return list(db.execute(stmt).scalars()), total

    def count_by_status(self, db: Session, *, since: datetime) -> dict[str, int]:
        """Job counts per status for jobs created at or after ``since``."""
        stmt = (
            select(GenerationJob.status, func.count())
            .where(GenerationJob.created_at >= since)
            .group_by(GenerationJob.status)
        )
        return {status.value: count for status, count in db.execute(stmt)}
