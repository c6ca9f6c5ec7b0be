"""GenerationJob model: one requested try-on generation and its lifecycle.

Status lifecycle:
    QUEUED → PROCESSING → COMPLETED
               ↓   ↘ FAILED
             QUEUED (retry, re-enqueued with backoff)
    QUEUED | PROCESSING → CANCELLED

COMPLETED, FAILED and CANCELLED are terminal.
"""

import enum
from datetime import datetime

from sqlalchemy import JSON, DateTime, Enum, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from vtry_jobs.models import Base, utcnow


class JobKind(str, enum.Enum):
    IMAGE = "IMAGE"
    VIDEO = "VIDEO"


class JobStatus(str, enum.Enum):
    QUEUED = "QUEUED"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})
ACTIVE_STATUSES = frozenset({JobStatus.QUEUED, JobStatus.PROCESSING})


class GenerationJob(Base):
    __tablename__ = "generation_jobs"

    id: Mapped[int] = mapped_column(primary_key=True)

    # --- Identity ---
    job_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    owner_id: Mapped[str] = mapped_column(String(255), index=True)
    kind: Mapped[JobKind] = mapped_column(Enum(JobKind, native_enum=False, length=16))

    # --- Status tracking ---
    status: Mapped[JobStatus] = mapped_column(
        Enum(JobStatus, native_enum=False, length=16), default=JobStatus.QUEUED, index=True
    )
    progress: Mapped[int] = mapped_column(Integer, default=0)
    # Incremented by every successful claim; fences stale workers out
    attempt: Mapped[int] = mapped_column(Integer, default=0)

    # --- Input / output ---
    payload: Mapped[dict] = mapped_column(JSON, default=dict)
    input_ref: Mapped[str | None] = mapped_column(String(2048), default=None)
    result_ref: Mapped[str | None] = mapped_column(String(2048), default=None)
    error_code: Mapped[str | None] = mapped_column(String(64), default=None)
    error_message: Mapped[str | None] = mapped_column(Text, default=None)
    # Last retryable error, kept for diagnostics while the job is retried
    last_error: Mapped[str | None] = mapped_column(Text, default=None)

    # --- Timestamps (naive UTC) ---
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    started_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    # Bumped on every write; the stuck-job sweep reads it as a heartbeat
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
