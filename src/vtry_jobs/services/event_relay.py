"""Cross-process event bridge for the split deployment.

When the worker pool runs in its own process (``vtry-jobs worker``) the
hub there has no live connections. ``EventOutbox`` is attached to that hub
as a listener and appends every event to the ``job_events`` table; the API
process (``vtry-jobs serve --no-workers``) runs an ``EventRelay`` thread
that tails the table and republishes new rows on its own hub, where the
WebSocket subscriptions live.

The relay starts from the newest row, so connections never see a replay of
events published before the process came up. Delivery stays best-effort,
like the in-process path; rows older than the retention window are pruned.
"""

import logging
import threading
import time
from datetime import timedelta

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session, sessionmaker

from vtry_jobs.models import utcnow
from vtry_jobs.models.event import JobEventRecord
from vtry_jobs.services.events import (
    GenerationComplete,
    GenerationEvent,
    GenerationFailed,
    GenerationUpdate,
    JobError,
)
from vtry_jobs.services.orchestrator import Orchestrator

logger = logging.getLogger(__name__)

# Seconds between prune passes of the relay loop
_PRUNE_EVERY_SECONDS = 60.0


def record_for_event(event: GenerationEvent) -> JobEventRecord:
    record = JobEventRecord(
        owner_id=event.owner_id,
        job_id=event.job_id,
        event_type=event.type,
        status=event.status,
        progress=event.progress,
        timestamp=event.timestamp,
    )
    if isinstance(event, GenerationComplete):
        record.result_ref = event.result_ref
    elif isinstance(event, GenerationFailed):
        record.error_code = event.error.code
        record.error_message = event.error.message
    return record


def event_for_record(record: JobEventRecord) -> GenerationEvent:
    if record.event_type == GenerationComplete.type:
        return GenerationComplete(
            owner_id=record.owner_id,
            job_id=record.job_id,
            result_ref=record.result_ref or "",
            progress=record.progress,
            timestamp=record.timestamp,
        )
    if record.event_type == GenerationFailed.type:
        return GenerationFailed(
            owner_id=record.owner_id,
            job_id=record.job_id,
            error=JobError(code=record.error_code or "UNKNOWN", message=record.error_message or ""),
            progress=record.progress,
            timestamp=record.timestamp,
        )
    return GenerationUpdate(
        owner_id=record.owner_id,
        job_id=record.job_id,
        status=record.status,
        progress=record.progress,
        timestamp=record.timestamp,
    )


class EventOutbox:
    """Hub listener that appends every published event to ``job_events``."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def __call__(self, event: GenerationEvent) -> None:
        with self._session_factory() as db:
            db.add(record_for_event(event))
            db.commit()


def attach_outbox(ctx: Orchestrator) -> EventOutbox:
    """Mirror everything published on ``ctx.hub`` into the outbox table."""
    outbox = EventOutbox(ctx.session_factory)
    ctx.hub.add_listener(outbox)
    logger.info("Event outbox attached; live updates are relayed through the database")
    return outbox


class EventRelay:
    """Tails ``job_events`` and republishes new rows on the local hub."""

    def __init__(self, ctx: Orchestrator, *, batch_size: int = 500) -> None:
        self._ctx = ctx
        self._batch_size = batch_size
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._cursor = self._latest_id()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _latest_id(self) -> int:
        with self._ctx.session_factory() as db:
            return db.execute(select(func.max(JobEventRecord.id))).scalar() or 0

    def poll_once(self) -> int:
        """Publish rows written since the last poll; returns how many."""
        with self._ctx.session_factory() as db:
            rows = list(
                db.execute(
                    select(JobEventRecord)
                    .where(JobEventRecord.id > self._cursor)
                    .order_by(JobEventRecord.id)
                    .limit(self._batch_size)
                ).scalars()
            )
        for row in rows:
            self._ctx.hub.publish(event_for_record(row))
            self._cursor = row.id
        return len(rows)

    def prune(self) -> int:
        """Delete rows older than the retention window."""
        cutoff = utcnow() - timedelta(seconds=self._ctx.settings.event_retention_seconds)
        with self._ctx.session_factory() as db:
            deleted = db.execute(delete(JobEventRecord).where(JobEventRecord.created_at < cutoff)).rowcount
            db.commit()
        if deleted:
            logger.info("Pruned %d relayed event(s)", deleted)
        return deleted

    def run_forever(self, stop: threading.Event) -> None:
        interval = self._ctx.settings.event_relay_interval_seconds
        last_prune = 0.0
        logger.info("Event relay started at event id %d", self._cursor)
        while not stop.is_set():
            try:
                # Drain a backlog without sleeping between batches
                if self.poll_once() == self._batch_size:
                    continue
                if time.monotonic() - last_prune >= _PRUNE_EVERY_SECONDS:
                    self.prune()
                    last_prune = time.monotonic()
            except Exception:
                logger.exception("Event relay poll failed")
            stop.wait(interval)
        logger.info("Event relay stopped")

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self.run_forever, args=(self._stop,), name="event-relay", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: float | None = 10.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
