"""Fan-out events: one closed set of variants per live-channel message type.

    generation_update    QUEUED / PROCESSING / CANCELLED transitions
    generation_complete  COMPLETED (carries resultRef)
    generation_failed    FAILED (carries error code + message)
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, ClassVar, Union

from vtry_jobs.models.job import GenerationJob, JobStatus


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class JobError:
    code: str
    message: str


@dataclass(frozen=True)
class GenerationUpdate:
    type: ClassVar[str] = "generation_update"

    owner_id: str
    job_id: str
    status: JobStatus
    progress: int
    timestamp: str = field(default_factory=_now_iso)


@dataclass(frozen=True)
class GenerationComplete:
    type: ClassVar[str] = "generation_complete"

    owner_id: str
    job_id: str
    result_ref: str
    status: JobStatus = JobStatus.COMPLETED
    progress: int = 100
    timestamp: str = field(default_factory=_now_iso)


@dataclass(frozen=True)
class GenerationFailed:
    type: ClassVar[str] = "generation_failed"

    owner_id: str
    job_id: str
    error: JobError
    progress: int = 0
    status: JobStatus = JobStatus.FAILED
    timestamp: str = field(default_factory=_now_iso)


GenerationEvent = Union[GenerationUpdate, GenerationComplete, GenerationFailed]


def event_for_job(job: GenerationJob) -> GenerationEvent:
    """Build the event describing ``job``'s current persisted state."""
    if job.status == JobStatus.COMPLETED:
        return GenerationComplete(
            owner_id=job.owner_id, job_id=job.job_id, result_ref=job.result_ref or ""
        )
    if job.status == JobStatus.FAILED:
        return GenerationFailed(
            owner_id=job.owner_id,
            job_id=job.job_id,
            progress=job.progress,
            error=JobError(code=job.error_code or "UNKNOWN", message=job.error_message or ""),
        )
    return GenerationUpdate(
        owner_id=job.owner_id, job_id=job.job_id, status=job.status, progress=job.progress
    )


def to_envelope(event: GenerationEvent) -> dict[str, Any]:
    """Wire form sent over the live channel."""
    envelope: dict[str, Any] = {
        "type": event.type,
        "jobId": event.job_id,
        "status": event.status.value,
        "progress": event.progress,
        "timestamp": event.timestamp,
    }
    if isinstance(event, GenerationComplete):
        envelope["resultRef"] = event.result_ref
    elif isinstance(event, GenerationFailed):
        envelope["error"] = {"code": event.error.code, "message": event.error.message}
    return envelope
