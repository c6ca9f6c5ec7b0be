"""Durable job queue backed by the ``job_queue`` table.

Delivery is at-least-once: ``receive`` leases the oldest visible message
for a visibility timeout, ``ack`` deletes it. A worker that dies before
acknowledging simply lets the lease run out and the message is delivered
again. Duplicate deliveries are harmless because the worker's claim on the
job record (QUEUED → PROCESSING) is the real mutual-exclusion point.

Like the job store, methods never commit.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.orm import Session

from vtry_jobs.models import utcnow
from vtry_jobs.models.queue import QueueMessage

logger = logging.getLogger(__name__)

# A lost lease race is retried against the next candidate this many times
_RECEIVE_RETRIES = 5


@dataclass(frozen=True)
class QueueStats:
    visible: int
    delayed: int
    leased: int

    @property
    def total(self) -> int:
        return self.visible + self.delayed + self.leased


class JobQueue:
    """Lease-based queue of job references."""

    def enqueue(self, db: Session, job_id: str, *, delay_seconds: float = 0.0) -> QueueMessage:
        """Add a message that becomes visible after ``delay_seconds``."""
        now = utcnow()
        message = QueueMessage(
            job_id=job_id,
            available_at=now + timedelta(seconds=max(0.0, delay_seconds)),
            deliveries=0,
            created_at=now,
        )
        db.add(message)
        db.flush()
        logger.debug(
            "Enqueued job %s (delay %.1fs)", job_id, delay_seconds,
            extra={"job_id": job_id, "queue_message_id": message.id},
        )
        return message

    def receive(
        self, db: Session, consumer: str, *, visibility_seconds: float
    ) -> QueueMessage | None:
        """Lease the oldest visible message for ``consumer``, or return None."""
        for _ in range(_RECEIVE_RETRIES):
            now = utcnow()
            visible = or_(QueueMessage.leased_until.is_(None), QueueMessage.leased_until <= now)
            candidate = db.execute(
                select(QueueMessage.id)
                .where(QueueMessage.available_at <= now, visible)
                .order_by(QueueMessage.available_at, QueueMessage.id)
                .limit(1)
            ).scalar_one_or_none()
            if candidate is None:
                return None

            result = db.execute(
                update(QueueMessage)
                .where(QueueMessage.id == candidate, visible)
                .values(
                    leased_until=now + timedelta(seconds=visibility_seconds),
                    lease_owner=consumer,
                    deliveries=QueueMessage.deliveries + 1,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                return db.execute(
                    select(QueueMessage)
                    .where(QueueMessage.id == candidate)
                    .execution_options(populate_existing=True)
                ).scalar_one()
            # Another consumer leased it between our select and update
        return None

    def ack(self, db: Session, message_id: int) -> bool:
        """Delete a delivered message. Returns False if it was already gone."""
        result = db.execute(delete(QueueMessage).where(QueueMessage.id == message_id))
        return result.rowcount == 1

    def stats(self, db: Session) -> QueueStats:
        now = utcnow()
        leased = QueueMessage.leased_until > now
        not_leased = or_(QueueMessage.leased_until.is_(None), QueueMessage.leased_until <= now)

        def _count(*conditions) -> int:
            return db.execute(
                select(func.count()).select_from(QueueMessage).where(*conditions)
            ).scalar_one()

        return QueueStats(
            visible=_count(QueueMessage.available_at <= now, not_leased),
            delayed=_count(QueueMessage.available_at > now, not_leased),
            leased=_count(leased),
        )
