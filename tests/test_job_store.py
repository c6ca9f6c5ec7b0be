"""Tests for the job store state machine.

Tests cover:
  create → claim → complete / requeue / fail
  cancellation from QUEUED and PROCESSING
  attempt fencing of stale workers
  concurrent claims (file-backed SQLite, real threads)
"""

import threading
from datetime import timedelta

import pytest
from sqlalchemy import update

from vtry_jobs.database import init_db, make_engine, make_session_factory
from vtry_jobs.models import utcnow
from vtry_jobs.models.job import GenerationJob, JobKind, JobStatus
from vtry_jobs.services.job_store import CLAIMED_PROGRESS, JobStore

store = JobStore()


def _make_db():
    engine = make_engine("sqlite://")
    init_db(engine)
    return make_session_factory(engine)


def _create(SessionLocal, owner_id: str = "alice", kind: JobKind = JobKind.IMAGE) -> str:
    with SessionLocal() as db:
        job = store.create_job(db, owner_id, kind, {"targetImage": "https://x/y.png"})
        db.commit()
        return job.job_id


def _claim(SessionLocal, job_id: str) -> GenerationJob | None:
    with SessionLocal() as db:
        job = store.claim(db, job_id)
        db.commit()
        return job


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------


def test_create_job_starts_queued():
    SessionLocal = _make_db()
    job_id = _create(SessionLocal)

    with SessionLocal() as db:
        job = store.get_by_job_id(db, job_id)

    assert job.status == JobStatus.QUEUED
    assert job.progress == 0
    assert job.attempt == 0
    assert job.finished_at is None
    assert job.started_at is None


def test_create_job_is_rolled_back_with_the_transaction():
    SessionLocal = _make_db()
    with SessionLocal() as db:
        job = store.create_job(db, "alice", JobKind.VIDEO, {})
        job_id = job.job_id
        db.rollback()

    with SessionLocal() as db:
        assert store.get_by_job_id(db, job_id) is None


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


def test_claim_moves_to_processing_and_increments_attempt():
    SessionLocal = _make_db()
    job_id = _create(SessionLocal)

    job = _claim(SessionLocal, job_id)

    assert job.status == JobStatus.PROCESSING
    assert job.attempt == 1
    assert job.progress == CLAIMED_PROGRESS
    assert job.started_at is not None


def test_second_claim_is_a_noop():
    SessionLocal = _make_db()
    job_id = _create(SessionLocal)

    assert _claim(SessionLocal, job_id) is not None
    assert _claim(SessionLocal, job_id) is None

    with SessionLocal() as db:
        assert store.get_by_job_id(db, job_id).attempt == 1


def test_complete_sets_result_and_finished_at():
    SessionLocal = _make_db()
    job_id = _create(SessionLocal)
    claimed = _claim(SessionLocal, job_id)

    with SessionLocal() as db:
        job = store.complete(db, job_id, claimed.attempt, "/api/results/x/result-1.png")
        db.commit()

    assert job.status == JobStatus.COMPLETED
    assert job.progress == 100
    assert job.result_ref == "/api/results/x/result-1.png"
    assert job.finished_at is not None


def test_complete_requires_processing():
    SessionLocal = _make_db()
    job_id = _create(SessionLocal)

    with SessionLocal() as db:
        assert store.complete(db, job_id, 0, "ref") is None


def test_progress_is_monotonic_and_capped_below_100():
    SessionLocal = _make_db()
    job_id = _create(SessionLocal)
    claimed = _claim(SessionLocal, job_id)

    with SessionLocal() as db:
        assert store.report_progress(db, job_id, claimed.attempt, 60).progress == 60
        assert store.report_progress(db, job_id, claimed.attempt, 30).progress == 60
        assert store.report_progress(db, job_id, claimed.attempt, 250).progress == 99
        db.commit()


def test_requeue_keeps_progress_and_records_error():
    SessionLocal = _make_db()
    job_id = _create(SessionLocal)
    claimed = _claim(SessionLocal, job_id)

    with SessionLocal() as db:
        store.report_progress(db, job_id, claimed.attempt, 40)
        job = store.requeue(db, job_id, claimed.attempt, "PROVIDER_UNAVAILABLE: 503")
        db.commit()

    assert job.status == JobStatus.QUEUED
    assert job.progress == 40
    assert job.last_error == "PROVIDER_UNAVAILABLE: 503"
    assert job.finished_at is None

    reclaimed = _claim(SessionLocal, job_id)
    assert reclaimed.attempt == 2
    assert reclaimed.progress == 40


def test_fail_sets_error_fields():
    SessionLocal = _make_db()
    job_id = _create(SessionLocal)
    claimed = _claim(SessionLocal, job_id)

    with SessionLocal() as db:
        job = store.fail(db, job_id, claimed.attempt, "PROVIDER_REJECTED", "bad request")
        db.commit()

    assert job.status == JobStatus.FAILED
    assert job.error_code == "PROVIDER_REJECTED"
    assert job.error_message == "bad request"
    assert job.finished_at is not None


def test_stale_attempt_is_fenced_out():
    """A worker whose claim was superseded cannot complete the job."""
    SessionLocal = _make_db()
    job_id = _create(SessionLocal)
    first = _claim(SessionLocal, job_id)

    with SessionLocal() as db:
        store.requeue(db, job_id, first.attempt, "stuck")
        db.commit()
    second = _claim(SessionLocal, job_id)

    with SessionLocal() as db:
        assert store.complete(db, job_id, first.attempt, "stale-ref") is None
        assert store.complete(db, job_id, second.attempt, "fresh-ref").result_ref == "fresh-ref"
        db.commit()


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


def test_cancel_queued_job_is_never_claimed():
    SessionLocal = _make_db()
    job_id = _create(SessionLocal)

    with SessionLocal() as db:
        cancelled = store.cancel(db, job_id)
        db.commit()

    assert cancelled.status == JobStatus.CANCELLED
    assert cancelled.finished_at is not None
    assert _claim(SessionLocal, job_id) is None


def test_cancel_processing_job_then_completion_is_discarded():
    SessionLocal = _make_db()
    job_id = _create(SessionLocal)
    claimed = _claim(SessionLocal, job_id)

    with SessionLocal() as db:
        store.cancel(db, job_id)
        db.commit()

    with SessionLocal() as db:
        assert store.complete(db, job_id, claimed.attempt, "ref") is None
        assert store.fail(db, job_id, claimed.attempt, "X", "y") is None
        assert store.get_by_job_id(db, job_id).status == JobStatus.CANCELLED


@pytest.mark.parametrize("terminal", ["complete", "fail"])
def test_cancel_terminal_job_returns_none(terminal):
    SessionLocal = _make_db()
    job_id = _create(SessionLocal)
    claimed = _claim(SessionLocal, job_id)

    with SessionLocal() as db:
        if terminal == "complete":
            store.complete(db, job_id, claimed.attempt, "ref")
        else:
            store.fail(db, job_id, claimed.attempt, "PROVIDER_REJECTED", "no")
        db.commit()
        finished_at = store.get_by_job_id(db, job_id).finished_at

    with SessionLocal() as db:
        assert store.cancel(db, job_id) is None
        assert store.get_by_job_id(db, job_id).finished_at == finished_at


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


def test_find_stuck_uses_heartbeat():
    SessionLocal = _make_db()
    fresh = _create(SessionLocal)
    stale = _create(SessionLocal)
    _claim(SessionLocal, fresh)
    _claim(SessionLocal, stale)

    with SessionLocal() as db:
        db.execute(
            update(GenerationJob)
            .where(GenerationJob.job_id == stale)
            .values(updated_at=utcnow() - timedelta(minutes=20))
        )
        db.commit()
        stuck = store.find_stuck(db, utcnow() - timedelta(minutes=10))

    assert [job.job_id for job in stuck] == [stale]


def test_list_for_owner_paginates_newest_first():
    SessionLocal = _make_db()
    ids = [_create(SessionLocal, "alice") for _ in range(5)]
    _create(SessionLocal, "bob")

    with SessionLocal() as db:
        page1, total = store.list_for_owner(db, "alice", page=1, page_size=2)
        page3, _ = store.list_for_owner(db, "alice", page=3, page_size=2)

    assert total == 5
    assert [j.job_id for j in page1] == [ids[4], ids[3]]
    assert [j.job_id for j in page3] == [ids[0]]


def test_count_by_status():
    SessionLocal = _make_db()
    _create(SessionLocal)
    job_id = _create(SessionLocal)
    _claim(SessionLocal, job_id)

    with SessionLocal() as db:
        counts = store.count_by_status(db, since=utcnow() - timedelta(hours=1))

    assert counts == {"QUEUED": 1, "PROCESSING": 1}


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------


def test_racing_claims_have_exactly_one_winner(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'race.db'}")
    init_db(engine)
    SessionLocal = make_session_factory(engine)
    job_id = _create(SessionLocal)

    contenders = 8
    barrier = threading.Barrier(contenders)
    results: list[GenerationJob | None] = []
    lock = threading.Lock()

    def contend():
        barrier.wait()
        job = _claim(SessionLocal, job_id)
        with lock:
            results.append(job)

    threads = [threading.Thread(target=contend) for _ in range(contenders)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    winners = [job for job in results if job is not None]
    assert len(results) == contenders
    assert len(winners) == 1
    assert winners[0].attempt == 1
    engine.dispose()
