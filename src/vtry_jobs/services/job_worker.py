"""Worker pool: executes queued generation jobs on OS threads.

Per delivered queue message a worker:
    1. Claims the job (QUEUED → PROCESSING, attempt + 1). A failed claim
       means a duplicate delivery or a cancelled job: ack and move on.
    2. Re-checks cancellation, then calls the provider on a bounded executor
       with a hard timeout.
    3. On success stores the result bytes, then completes the job.
    4. On a retryable failure with attempts left, re-queues the job and
       enqueues a delayed message (exponential backoff, capped).
    5. Otherwise fails the job with an error code.

Every job transition is fenced on (status = PROCESSING, attempt = claimed
attempt), so a cancelled or superseded job is never overwritten; the
worker just discards its result. The follow-up message and the ack of the
current one are written in the same transaction as the transition.

Database errors are infrastructure failures: they are logged, the message
stays un-acked (its lease runs out and it is redelivered) and the job is
never marked FAILED because of them. Any other unexpected error after a
claim (a full disk while storing the result, a bug) is treated as a
retryable failure of that attempt; the worker thread itself keeps running.

The ``Supervisor`` thread periodically sweeps PROCESSING jobs whose
heartbeat is older than ``max_processing_seconds`` and treats them as a
retryable ``STUCK_TIMEOUT`` failure.
"""

import contextvars
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from datetime import timedelta

from sqlalchemy.exc import SQLAlchemyError

from vtry_jobs.logging_config import bind_job_id
from vtry_jobs.models import utcnow
from vtry_jobs.models.job import GenerationJob, JobStatus
from vtry_jobs.services.events import event_for_job
from vtry_jobs.services.orchestrator import Orchestrator
from vtry_jobs.services.provider import (
    ProviderError,
    ProviderResult,
    RetryableProviderError,
)

logger = logging.getLogger(__name__)

RETRIES_EXHAUSTED = "PROVIDER_RETRIES_EXHAUSTED"
STUCK_TIMEOUT = "STUCK_TIMEOUT"
WORKER_ERROR = "WORKER_ERROR"

# Pause after an infrastructure error before the worker loop continues
_ERROR_BACKOFF_SECONDS = 5.0


class WorkerError(RetryableProviderError):
    """An unexpected error raised by the worker itself while handling a job."""

    code = WORKER_ERROR


class Worker:
    """One job at a time, pulled from the queue."""

    def __init__(self, ctx: Orchestrator, name: str, executor: ThreadPoolExecutor) -> None:
        self._ctx = ctx
        self.name = name
        self._executor = executor

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def run_forever(self, stop: threading.Event) -> None:
        logger.info("Worker %s started", self.name)
        while not stop.is_set():
            try:
                processed = self.run_once()
            except SQLAlchemyError:
                logger.exception("Worker %s hit a database error; backing off", self.name)
                stop.wait(_ERROR_BACKOFF_SECONDS)
                continue
            except Exception:
                logger.exception("Worker %s hit an unexpected error; backing off", self.name)
                stop.wait(_ERROR_BACKOFF_SECONDS)
                continue
            if not processed:
                stop.wait(self._ctx.settings.queue_poll_interval_seconds)
        logger.info("Worker %s stopped", self.name)

    def run_once(self) -> bool:
        """Receive and handle at most one message. Returns False when idle."""
        ctx = self._ctx
        with ctx.session_factory() as db:
            message = ctx.queue.receive(
                db, self.name, visibility_seconds=ctx.settings.queue_visibility_seconds
            )
            db.commit()
        if message is None:
            return False

        with bind_job_id(message.job_id):
            self.handle(message.id, message.job_id)
        return True

    # ------------------------------------------------------------------
    # Per-message processing
    # ------------------------------------------------------------------

    def _ack(self, message_id: int) -> None:
        with self._ctx.session_factory() as db:
            self._ctx.queue.ack(db, message_id)
            db.commit()

    def handle(self, message_id: int, job_id: str) -> None:
        ctx = self._ctx
        with ctx.session_factory() as db:
            job = ctx.store.claim(db, job_id)
            db.commit()
        if job is None:
            logger.info("Job %s not claimable (duplicate delivery or cancelled); dropping message", job_id)
            self._ack(message_id)
            return

        logger.info("Claimed job %s (attempt %d)", job_id, job.attempt, extra={"attempt": job.attempt, "worker": self.name})
        try:
            self._execute(message_id, job)
        except SQLAlchemyError:
            raise
        except Exception as exc:
            logger.exception("Unexpected error while processing job %s", job_id)
            self._on_failure(message_id, job, WorkerError(f"Unexpected worker error: {exc}"))

    def _execute(self, message_id: int, job: GenerationJob) -> None:
        job_id, attempt = job.job_id, job.attempt
        self._ctx.hub.publish(event_for_job(job))

        if not self._still_ours(job_id, attempt):
            logger.info("Job %s cancelled before execution", job_id)
            self._ack(message_id)
            return

        try:
            result = self._call_provider(job)
        except ProviderError as exc:
            self._on_failure(message_id, job, exc)
            return

        if not self._still_ours(job_id, attempt):
            logger.info("Job %s cancelled during execution; discarding result", job_id)
            self._ack(message_id)
            return
        self._on_success(message_id, job, result)

    def _still_ours(self, job_id: str, attempt: int) -> bool:
        with self._ctx.session_factory() as db:
            current = self._ctx.store.get_by_job_id(db, job_id)
        return (
            current is not None
            and current.status == JobStatus.PROCESSING
            and current.attempt == attempt
        )

    def _progress_reporter(self, job: GenerationJob):
        job_id, attempt = job.job_id, job.attempt

        def report(progress: int) -> None:
            try:
                with self._ctx.session_factory() as db:
                    updated = self._ctx.store.report_progress(db, job_id, attempt, progress)
                    db.commit()
            except SQLAlchemyError:
                logger.exception("Could not record progress for job %s", job_id)
                return
            if updated is not None:
                self._ctx.hub.publish(event_for_job(updated))

        return report

    def _call_provider(self, job: GenerationJob) -> ProviderResult:
        """Run the provider call with a hard timeout; every failure is a ProviderError."""
        timeout = self._ctx.settings.provider_timeout_seconds
        # The provider thread logs with this worker's bound job id
        context = contextvars.copy_context()
        future = self._executor.submit(
            context.run,
            self._ctx.provider.generate,
            job.kind,
            dict(job.payload or {}),
            job.input_ref,
            on_progress=self._progress_reporter(job),
        )
        try:
            return future.result(timeout=timeout)
        except FutureTimeout:
            future.cancel()
            raise RetryableProviderError(f"Provider call exceeded {timeout:.0f}s") from None
        except ProviderError:
            raise
        except Exception as exc:
            logger.exception("Provider raised an unexpected error for job %s", job.job_id)
            raise RetryableProviderError(f"Unexpected provider error: {exc}") from exc

    def _on_success(self, message_id: int, job: GenerationJob, result: ProviderResult) -> None:
        ctx = self._ctx
        ref = ctx.storage.store_file(job.job_id, f"result-{job.attempt}.{result.extension}", result.data)
        try:
            with ctx.session_factory() as db:
                completed = ctx.store.complete(db, job.job_id, job.attempt, ref)
                ctx.queue.ack(db, message_id)
                db.commit()
        except SQLAlchemyError:
            ctx.storage.delete_ref(ref)
            raise

        if completed is None:
            logger.info("Job %s left PROCESSING before completion; discarding result", job.job_id)
            ctx.storage.delete_ref(ref)
            return
        logger.info("Completed job %s", job.job_id, extra={"result_ref": ref, "attempt": job.attempt})
        ctx.hub.publish(event_for_job(completed))

    def _on_failure(self, message_id: int, job: GenerationJob, exc: ProviderError) -> None:
        ctx = self._ctx
        max_attempts = ctx.settings.max_attempts
        with ctx.session_factory() as db:
            if exc.retryable and job.attempt < max_attempts:
                delay = ctx.backoff_seconds(job.attempt)
                updated = ctx.store.requeue(db, job.job_id, job.attempt, f"{exc.code}: {exc}")
                if updated is not None:
                    ctx.queue.enqueue(db, job.job_id, delay_seconds=delay)
                    logger.warning(
                        "Attempt %d/%d of job %s failed (%s); retrying in %.0fs",
                        job.attempt, max_attempts, job.job_id, exc, delay,
                        extra={"error_code": exc.code, "attempt": job.attempt},
                    )
            else:
                code = RETRIES_EXHAUSTED if exc.retryable else exc.code
                updated = ctx.store.fail(db, job.job_id, job.attempt, code, str(exc))
                if updated is not None:
                    logger.error(
                        "Job %s failed after %d attempt(s): %s", job.job_id, job.attempt, exc,
                        extra={"error_code": code, "attempt": job.attempt},
                    )
            ctx.queue.ack(db, message_id)
            db.commit()

        if updated is None:
            logger.info("Job %s left PROCESSING before the failure was recorded", job.job_id)
            return
        ctx.hub.publish(event_for_job(updated))


class Supervisor:
    """Re-queues or fails PROCESSING jobs that stopped heart-beating."""

    def __init__(self, ctx: Orchestrator) -> None:
        self._ctx = ctx

    def sweep_once(self) -> int:
        """Handle every stuck job found; returns how many were transitioned."""
        ctx = self._ctx
        cutoff = utcnow() - timedelta(seconds=ctx.settings.max_processing_seconds)
        with ctx.session_factory() as db:
            stuck = ctx.store.find_stuck(db, cutoff)

        handled = 0
        for job in stuck:
            with bind_job_id(job.job_id), ctx.session_factory() as db:
                message = f"{STUCK_TIMEOUT}: no progress for {ctx.settings.max_processing_seconds:.0f}s"
                if job.attempt < ctx.settings.max_attempts:
                    updated = ctx.store.requeue(db, job.job_id, job.attempt, message, heartbeat_before=cutoff)
                    if updated is not None:
                        ctx.queue.enqueue(db, job.job_id, delay_seconds=ctx.backoff_seconds(job.attempt))
                else:
                    updated = ctx.store.fail(
                        db, job.job_id, job.attempt, STUCK_TIMEOUT, message, heartbeat_before=cutoff
                    )
                db.commit()
                if updated is None:
                    continue
                handled += 1
                logger.warning(
                    "Stuck job %s → %s", job.job_id, updated.status.value,
                    extra={"attempt": job.attempt},
                )
                ctx.hub.publish(event_for_job(updated))
        return handled

    def run_forever(self, stop: threading.Event) -> None:
        interval = self._ctx.settings.sweep_interval_seconds
        while not stop.wait(interval):
            try:
                self.sweep_once()
            except Exception:
                logger.exception("Stuck-job sweep failed")


class WorkerPool:
    """Fixed set of worker threads plus the supervisor thread."""

    def __init__(self, ctx: Orchestrator, *, size: int | None = None) -> None:
        self._ctx = ctx
        self.size = size or ctx.settings.worker_count
        self._stop = threading.Event()
        self._executor: ThreadPoolExecutor | None = None
        self.workers: list[Worker] = []
        self.supervisor = Supervisor(ctx)
        self._threads: list[threading.Thread] = []

    @property
    def running(self) -> bool:
        return bool(self._threads) and all(t.is_alive() for t in self._threads)

    def start(self) -> None:
        if self._threads:
            return
        self._stop.clear()
        # Timed-out provider calls keep running in the background; leave room for them
        self._executor = ThreadPoolExecutor(max_workers=self.size * 2, thread_name_prefix="provider")
        self.workers = [Worker(self._ctx, f"worker-{i}", self._executor) for i in range(self.size)]
        for worker in self.workers:
            self._threads.append(
                threading.Thread(target=worker.run_forever, args=(self._stop,), name=worker.name, daemon=True)
            )
        self._threads.append(
            threading.Thread(target=self.supervisor.run_forever, args=(self._stop,), name="supervisor", daemon=True)
        )
        for thread in self._threads:
            thread.start()
        logger.info("Worker pool started with %d worker(s)", self.size)

    def stop(self, timeout: float | None = 10.0) -> None:
        """Signal every thread to finish its current job and wait for them."""
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None
        logger.info("Worker pool stopped")
