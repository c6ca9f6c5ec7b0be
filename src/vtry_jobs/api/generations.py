"""Generation API: admission, status polling, cancellation and reporting.

Implements:
  POST   /api/ai/generate           - submit a job (202)
  GET    /api/ai/status/{job_id}    - poll a single job
  DELETE /api/ai/cancel/{job_id}    - cancel a QUEUED/PROCESSING job
  GET    /api/ai/jobs               - caller's job history, newest first
  GET    /api/ai/usage              - today's quota usage per kind
  GET    /api/ai/queue-status       - queue depth and wait estimates
"""

import logging
import math
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field

from vtry_jobs.auth.identity import Identity
from vtry_jobs.deps import get_gateway, get_identity, rate_limit_generate
from vtry_jobs.errors import (
    GenerationError,
    InvalidPayload,
    JobAlreadyTerminal,
    JobForbidden,
    JobNotFound,
    QuotaExceeded,
)
from vtry_jobs.models.job import GenerationJob
from vtry_jobs.services.gateway import RequestGateway

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/ai", tags=["generation"])


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------


class GenerateRequest(BaseModel):
    kind: str = Field(..., description="IMAGE or VIDEO (case-insensitive)")
    payload: dict[str, Any]


class GenerateAccepted(BaseModel):
    jobId: str
    status: str


class JobErrorBody(BaseModel):
    code: str
    message: str


class JobView(BaseModel):
    """Public representation of a GenerationJob."""

    jobId: str
    kind: str
    status: str
    progress: int
    attempt: int
    resultRef: str | None = None
    error: JobErrorBody | None = None
    createdAt: datetime
    startedAt: datetime | None = None
    finishedAt: datetime | None = None

    @classmethod
    def from_job(cls, job: GenerationJob) -> "JobView":
        error = None
        if job.error_code:
            error = JobErrorBody(code=job.error_code, message=job.error_message or "")
        return cls(
            jobId=job.job_id,
            kind=job.kind.value,
            status=job.status.value,
            progress=job.progress,
            attempt=job.attempt,
            resultRef=job.result_ref,
            error=error,
            createdAt=job.created_at,
            startedAt=job.started_at,
            finishedAt=job.finished_at,
        )


class JobListResponse(BaseModel):
    jobs: list[JobView]
    total: int
    page: int
    page_size: int
    total_pages: int


class CancelResponse(BaseModel):
    ok: bool = True


class UsageEntry(BaseModel):
    limit: int
    used: int
    remaining: int
    resetAt: datetime


class UsageResponse(BaseModel):
    tier: str
    usage: dict[str, UsageEntry]


class QueueStatusResponse(BaseModel):
    counts: dict[str, int]
    queue: dict[str, int]
    estimatedWaitSeconds: dict[str, int]


# ---------------------------------------------------------------------------
# Error translation
# ---------------------------------------------------------------------------

_STATUS_FOR = {
    InvalidPayload: status.HTTP_400_BAD_REQUEST,
    QuotaExceeded: status.HTTP_429_TOO_MANY_REQUESTS,
    JobNotFound: status.HTTP_404_NOT_FOUND,
    JobForbidden: status.HTTP_403_FORBIDDEN,
    JobAlreadyTerminal: status.HTTP_409_CONFLICT,
}


def _http_error(exc: GenerationError) -> HTTPException:
    detail: dict[str, Any] = {"code": exc.code, "message": exc.message}
    if isinstance(exc, InvalidPayload) and exc.details:
        detail["details"] = exc.details
    if isinstance(exc, QuotaExceeded):
        detail["remaining"] = exc.remaining
        detail["resetAt"] = exc.reset_at.isoformat() + "Z"
    return HTTPException(status_code=_STATUS_FOR.get(type(exc), status.HTTP_400_BAD_REQUEST), detail=detail)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.post(
    "/generate",
    response_model=GenerateAccepted,
    status_code=status.HTTP_202_ACCEPTED,
    dependencies=[Depends(rate_limit_generate)],
)
async def generate(
    body: GenerateRequest,
    identity: Identity = Depends(get_identity),
    gateway: RequestGateway = Depends(get_gateway),
) -> GenerateAccepted:
    """Admit a generation request and return without waiting for it."""
    try:
        job = await run_in_threadpool(gateway.submit, identity, body.kind, body.payload)
    except GenerationError as exc:
        raise _http_error(exc) from exc
    return GenerateAccepted(jobId=job.job_id, status=job.status.value)


@router.get("/status/{job_id}", response_model=JobView)
def get_status(
    job_id: str,
    identity: Identity = Depends(get_identity),
    gateway: RequestGateway = Depends(get_gateway),
) -> JobView:
    try:
        job = gateway.get_status(job_id, identity.owner_id)
    except GenerationError as exc:
        raise _http_error(exc) from exc
    return JobView.from_job(job)


@router.delete("/cancel/{job_id}", response_model=CancelResponse)
def cancel(
    job_id: str,
    identity: Identity = Depends(get_identity),
    gateway: RequestGateway = Depends(get_gateway),
) -> CancelResponse:
    try:
        gateway.cancel(job_id, identity.owner_id)
    except GenerationError as exc:
        raise _http_error(exc) from exc
    return CancelResponse()


@router.get("/jobs", response_model=JobListResponse)
def list_jobs(
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
    identity: Identity = Depends(get_identity),
    gateway: RequestGateway = Depends(get_gateway),
) -> JobListResponse:
    jobs, total = gateway.list_jobs(identity.owner_id, page=page, page_size=page_size)
    return JobListResponse(
        jobs=[JobView.from_job(job) for job in jobs],
        total=total,
        page=page,
        page_size=page_size,
        total_pages=max(1, math.ceil(total / page_size)),
    )


@router.get("/usage", response_model=UsageResponse)
def usage(
    identity: Identity = Depends(get_identity),
    gateway: RequestGateway = Depends(get_gateway),
) -> UsageResponse:
    snapshots = gateway.usage(identity)
    return UsageResponse(
        tier=identity.tier,
        usage={
            kind.value: UsageEntry(limit=s.limit, used=s.used, remaining=s.remaining, resetAt=s.reset_at)
            for kind, s in snapshots.items()
        },
    )


@router.get("/queue-status", response_model=QueueStatusResponse)
def queue_status(
    identity: Identity = Depends(get_identity),
    gateway: RequestGateway = Depends(get_gateway),
) -> QueueStatusResponse:
    report = gateway.queue_status()
    return QueueStatusResponse(
        counts=report.counts,
        queue={
            "visible": report.depth.visible,
            "delayed": report.depth.delayed,
            "leased": report.depth.leased,
            "total": report.depth.total,
        },
        estimatedWaitSeconds=report.estimated_wait_seconds,
    )
