"""Tests for the worker pool and stuck-job supervisor.

Test matrix:
  1. Success stores the result and completes the job
  2. Retryable failure re-queues with exponential backoff
  3. Retryable failures MAX_ATTEMPTS times → FAILED, attempt == MAX_ATTEMPTS
  4. Fatal failure fails immediately
  5. Cancelled while QUEUED → dropped, provider never called
  6. Cancelled while PROCESSING → result discarded, stays CANCELLED
  7. Duplicate delivery is acked and dropped
  8. Provider hard timeout counts as retryable
  9. Events published for each transition
  10. Supervisor re-queues / fails stuck jobs
  11. WorkerPool threads drain the queue end to end
  12. Unexpected worker errors re-queue the job and keep the thread alive
"""

import threading
import time
from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import update

from conftest import PNG_BYTES, ScriptedProvider, image_payload, make_settings
from vtry_jobs.logging_config import log_context
from vtry_jobs.models import utcnow
from vtry_jobs.models.job import GenerationJob, JobStatus
from vtry_jobs.models.queue import QueueMessage
from vtry_jobs.services.events import GenerationComplete, GenerationFailed, GenerationUpdate
from vtry_jobs.services.gateway import RequestGateway
from vtry_jobs.services.job_worker import (
    RETRIES_EXHAUSTED,
    STUCK_TIMEOUT,
    WORKER_ERROR,
    Supervisor,
    Worker,
    WorkerPool,
)
from vtry_jobs.services.orchestrator import build_orchestrator
from vtry_jobs.services.provider import FatalProviderError, ProviderResult, RetryableProviderError


def _submit(orchestrator, identity) -> str:
    return RequestGateway(orchestrator).submit(identity, "IMAGE", image_payload()).job_id


def _job(orchestrator, job_id: str) -> GenerationJob:
    with orchestrator.session_factory() as db:
        return orchestrator.store.get_by_job_id(db, job_id)


def _messages(orchestrator) -> list[QueueMessage]:
    with orchestrator.session_factory() as db:
        return list(db.query(QueueMessage).all())


def _make_visible(orchestrator) -> None:
    with orchestrator.session_factory() as db:
        db.execute(update(QueueMessage).values(available_at=utcnow() - timedelta(seconds=1)))
        db.commit()


@pytest.fixture
def events(orchestrator):
    received = []
    orchestrator.hub.add_listener(received.append)
    return received


@pytest.fixture
def worker(orchestrator, executor) -> Worker:
    return Worker(orchestrator, "worker-test", executor)


# ---------------------------------------------------------------------------
# Success
# ---------------------------------------------------------------------------


def test_success_stores_result_and_completes(orchestrator, worker, alice, events):
    job_id = _submit(orchestrator, alice)

    assert worker.run_once() is True

    job = _job(orchestrator, job_id)
    assert job.status == JobStatus.COMPLETED
    assert job.progress == 100
    assert job.attempt == 1
    assert job.finished_at is not None
    assert job.result_ref == f"/api/results/{job_id}/result-1.png"
    assert orchestrator.storage.url_to_path(job.result_ref).read_bytes() == PNG_BYTES
    assert _messages(orchestrator) == []

    assert isinstance(events[-1], GenerationComplete)
    assert events[-1].result_ref == job.result_ref
    statuses = [(type(e).__name__, e.status, e.progress) for e in events]
    assert statuses[0] == ("GenerationUpdate", JobStatus.QUEUED, 0)
    assert ("GenerationUpdate", JobStatus.PROCESSING, 10) in statuses
    assert ("GenerationUpdate", JobStatus.PROCESSING, 50) in statuses


def test_idle_worker_returns_false(worker):
    assert worker.run_once() is False


def test_provider_receives_payload_and_input_ref(orchestrator, worker, provider, alice):
    _submit(orchestrator, alice)
    worker.run_once()

    kind, payload, input_ref = provider.calls[0]
    assert kind.value == "IMAGE"
    assert payload["targetImage"] == input_ref
    assert payload["style"] == "realistic"


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


def test_retryable_failure_requeues_with_backoff(orchestrator, worker, provider, alice, events):
    provider.outcomes = [RetryableProviderError("503 from provider")]
    job_id = _submit(orchestrator, alice)

    before = utcnow()
    worker.run_once()

    job = _job(orchestrator, job_id)
    assert job.status == JobStatus.QUEUED
    assert job.attempt == 1
    assert job.finished_at is None
    assert "503 from provider" in job.last_error

    (message,) = _messages(orchestrator)
    delay = (message.available_at - before).total_seconds()
    assert 1.5 <= delay <= 3.0
    assert isinstance(events[-1], GenerationUpdate)
    assert events[-1].status == JobStatus.QUEUED

    # Not visible yet
    assert worker.run_once() is False


def test_backoff_doubles_and_caps(orchestrator):
    assert [orchestrator.backoff_seconds(a) for a in (1, 2, 3)] == [2.0, 4.0, 8.0]
    assert orchestrator.backoff_seconds(10) == 60.0


def test_retries_exhausted_fails_with_max_attempts(orchestrator, worker, provider, alice, events):
    provider.outcomes = [RetryableProviderError("timeout")] * 3
    job_id = _submit(orchestrator, alice)

    for _ in range(3):
        _make_visible(orchestrator)
        assert worker.run_once() is True

    job = _job(orchestrator, job_id)
    assert job.status == JobStatus.FAILED
    assert job.attempt == orchestrator.settings.max_attempts == 3
    assert job.error_code == RETRIES_EXHAUSTED
    assert job.finished_at is not None
    assert _messages(orchestrator) == []
    assert isinstance(events[-1], GenerationFailed)
    assert events[-1].error.code == RETRIES_EXHAUSTED


def test_retry_then_success(orchestrator, worker, provider, alice):
    provider.outcomes = [RetryableProviderError("flaky"), ProviderResult(PNG_BYTES, "image/png")]
    job_id = _submit(orchestrator, alice)

    worker.run_once()
    _make_visible(orchestrator)
    worker.run_once()

    job = _job(orchestrator, job_id)
    assert job.status == JobStatus.COMPLETED
    assert job.attempt == 2
    assert job.result_ref.endswith("result-2.png")


def test_fatal_failure_fails_immediately(orchestrator, worker, provider, alice, events):
    provider.outcomes = [FatalProviderError("400 content policy")]
    job_id = _submit(orchestrator, alice)

    worker.run_once()

    job = _job(orchestrator, job_id)
    assert job.status == JobStatus.FAILED
    assert job.attempt == 1
    assert job.error_code == "PROVIDER_REJECTED"
    assert job.error_message == "400 content policy"
    assert _messages(orchestrator) == []
    assert events[-1].error.message == "400 content policy"


def test_unexpected_provider_exception_is_retryable(orchestrator, worker, provider, alice):
    provider.outcomes = [ValueError("boom")]
    job_id = _submit(orchestrator, alice)

    worker.run_once()

    assert _job(orchestrator, job_id).status == JobStatus.QUEUED


def test_provider_hard_timeout(tmp_path, executor, alice):
    settings = make_settings(tmp_path, provider_timeout_seconds=0.2)
    provider = ScriptedProvider(lambda: time.sleep(1.0) or ProviderResult(PNG_BYTES, "image/png"))
    ctx = build_orchestrator(settings, provider=provider)
    try:
        job_id = _submit(ctx, alice)
        Worker(ctx, "w", executor).run_once()
        job = _job(ctx, job_id)
        assert job.status == JobStatus.QUEUED
        assert "exceeded" in job.last_error
    finally:
        ctx.close()


# ---------------------------------------------------------------------------
# Cancellation and duplicates
# ---------------------------------------------------------------------------


def test_cancelled_while_queued_is_never_processed(orchestrator, worker, provider, alice):
    gateway = RequestGateway(orchestrator)
    job_id = _submit(orchestrator, alice)
    gateway.cancel(job_id, alice.owner_id)

    assert worker.run_once() is True

    job = _job(orchestrator, job_id)
    assert job.status == JobStatus.CANCELLED
    assert job.started_at is None
    assert provider.calls == []
    assert _messages(orchestrator) == []


def test_cancelled_while_processing_discards_result(orchestrator, worker, provider, alice, events):
    gateway = RequestGateway(orchestrator)
    job_id = _submit(orchestrator, alice)

    def cancel_mid_flight():
        gateway.cancel(job_id, alice.owner_id)
        return ProviderResult(PNG_BYTES, "image/png")

    provider.outcomes = [cancel_mid_flight]
    worker.run_once()

    job = _job(orchestrator, job_id)
    assert job.status == JobStatus.CANCELLED
    assert job.result_ref is None
    assert not (orchestrator.storage.base_path / "jobs" / job_id / "result-1.png").exists()
    assert events[-1].status == JobStatus.CANCELLED
    assert _messages(orchestrator) == []


def test_duplicate_delivery_is_dropped(orchestrator, worker, provider, alice):
    job_id = _submit(orchestrator, alice)
    with orchestrator.session_factory() as db:
        orchestrator.queue.enqueue(db, job_id)
        db.commit()

    worker.run_once()
    worker.run_once()

    assert len(provider.calls) == 1
    assert _job(orchestrator, job_id).status == JobStatus.COMPLETED
    assert _messages(orchestrator) == []


# ---------------------------------------------------------------------------
# Supervisor
# ---------------------------------------------------------------------------


def _stall(orchestrator, job_id: str, attempt: int) -> None:
    """Put a job in PROCESSING with an old heartbeat, as a dead worker leaves it."""
    with orchestrator.session_factory() as db:
        db.execute(
            update(GenerationJob)
            .where(GenerationJob.job_id == job_id)
            .values(
                status=JobStatus.PROCESSING,
                attempt=attempt,
                updated_at=utcnow() - timedelta(hours=1),
            )
        )
        db.commit()


def test_supervisor_requeues_stuck_job(orchestrator, alice, events):
    job_id = _submit(orchestrator, alice)
    _stall(orchestrator, job_id, attempt=1)

    assert Supervisor(orchestrator).sweep_once() == 1

    job = _job(orchestrator, job_id)
    assert job.status == JobStatus.QUEUED
    assert STUCK_TIMEOUT in job.last_error
    assert len(_messages(orchestrator)) == 2
    assert events[-1].status == JobStatus.QUEUED


def test_supervisor_fails_stuck_job_out_of_attempts(orchestrator, alice, events):
    job_id = _submit(orchestrator, alice)
    _stall(orchestrator, job_id, attempt=3)

    Supervisor(orchestrator).sweep_once()

    job = _job(orchestrator, job_id)
    assert job.status == JobStatus.FAILED
    assert job.error_code == STUCK_TIMEOUT
    assert isinstance(events[-1], GenerationFailed)


def test_supervisor_ignores_live_jobs(orchestrator, worker, provider, alice):
    job_id = _submit(orchestrator, alice)
    with orchestrator.session_factory() as db:
        orchestrator.store.claim(db, job_id)
        db.commit()

    assert Supervisor(orchestrator).sweep_once() == 0
    assert _job(orchestrator, job_id).status == JobStatus.PROCESSING


# ---------------------------------------------------------------------------
# Pool
# ---------------------------------------------------------------------------


def test_worker_pool_drains_queue(tmp_path, alice):
    settings = make_settings(
        tmp_path,
        database_url=f"sqlite:///{tmp_path / 'pool.db'}",
        worker_count=3,
        queue_poll_interval_seconds=0.05,
    )
    ctx = build_orchestrator(settings, provider=ScriptedProvider())
    pool = WorkerPool(ctx)
    try:
        job_ids = [_submit(ctx, alice) for _ in range(6)]
        pool.start()
        assert pool.running

        deadline = time.monotonic() + 10
        while time.monotonic() < deadline:
            if all(_job(ctx, j).status == JobStatus.COMPLETED for j in job_ids):
                break
            time.sleep(0.05)

        assert all(_job(ctx, j).status == JobStatus.COMPLETED for j in job_ids)
        assert all(_job(ctx, j).attempt == 1 for j in job_ids)
    finally:
        pool.stop()
        ctx.close()
    assert not pool.running


# ---------------------------------------------------------------------------
# Unexpected errors and event ordering
# ---------------------------------------------------------------------------


def test_storage_error_requeues_and_worker_keeps_running(orchestrator, worker, alice):
    job_id = _submit(orchestrator, alice)
    raised = threading.Event()

    def disk_full(*args, **kwargs):
        raised.set()
        raise OSError("No space left on device")

    stop = threading.Event()
    with patch.object(orchestrator.storage, "store_file", side_effect=disk_full):
        thread = threading.Thread(target=worker.run_forever, args=(stop,), daemon=True)
        thread.start()
        assert raised.wait(5)
        time.sleep(0.3)
        alive = thread.is_alive()
        stop.set()
        thread.join(5)

    assert alive
    job = _job(orchestrator, job_id)
    assert job.status == JobStatus.QUEUED
    assert job.attempt == 1
    assert WORKER_ERROR in job.last_error
    assert "No space left on device" in job.last_error
    (message,) = _messages(orchestrator)
    assert message.lease_owner is None


def test_run_forever_survives_non_database_errors(worker):
    stop = threading.Event()
    outcomes = iter([RuntimeError("bug"), False])

    def run_once():
        outcome = next(outcomes, None)
        if isinstance(outcome, Exception):
            raise outcome
        stop.set()
        return False

    with patch.object(worker, "run_once", side_effect=run_once), \
            patch("vtry_jobs.services.job_worker._ERROR_BACKOFF_SECONDS", 0.01):
        worker.run_forever(stop)

    assert stop.is_set()


def test_cancel_racing_the_claim_event_ends_on_cancelled(orchestrator, worker, provider, alice, events):
    gateway = RequestGateway(orchestrator)
    job_id = _submit(orchestrator, alice)
    publish = orchestrator.hub.publish

    def cancel_before_processing_event(event):
        if event.status == JobStatus.PROCESSING:
            gateway.cancel(job_id, alice.owner_id)
        return publish(event)

    with patch.object(orchestrator.hub, "publish", side_effect=cancel_before_processing_event):
        worker.run_once()

    assert _job(orchestrator, job_id).status == JobStatus.CANCELLED
    assert provider.calls == []
    assert [e.status for e in events] == [JobStatus.QUEUED, JobStatus.CANCELLED]


def test_provider_thread_logs_with_the_job_id(orchestrator, worker, provider, alice):
    seen = []

    def record_context():
        seen.append(log_context().get("job_id"))
        return ProviderResult(PNG_BYTES, "image/png")

    provider.outcomes = [record_context]
    job_id = _submit(orchestrator, alice)
    worker.run_once()

    assert seen == [job_id]
