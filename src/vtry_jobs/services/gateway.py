"""Request gateway: admission, cancellation and status reads.

Admission is one database transaction: consume quota, create the job,
enqueue it. If any step fails the transaction rolls back, so a rejected
or failed submission leaves neither a job record, a queue entry nor a
spent quota unit behind.
"""

import base64
import binascii
import json
import logging
import re
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from vtry_jobs.auth.identity import Identity
from vtry_jobs.errors import (
    InvalidPayload,
    JobAlreadyTerminal,
    JobForbidden,
    JobNotFound,
    QuotaExceeded,
)
from vtry_jobs.models import utcnow
from vtry_jobs.models.job import GenerationJob, JobKind, JobStatus
from vtry_jobs.services.events import event_for_job
from vtry_jobs.services.job_queue import QueueStats
from vtry_jobs.services.orchestrator import Orchestrator
from vtry_jobs.services.quota import QuotaSnapshot

logger = logging.getLogger(__name__)

_DATA_URI = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+);base64,(?P<data>.+)$", re.DOTALL)
_IMAGE_EXTENSIONS = {"image/png": "png", "image/jpeg": "jpg", "image/jpg": "jpg", "image/webp": "webp", "image/gif": "gif"}

# Estimated per-job processing time used for the queue wait estimate
_SECONDS_PER_JOB = {JobKind.IMAGE: 2, JobKind.VIDEO: 10}
_MIN_WAIT_SECONDS = {JobKind.IMAGE: 5, JobKind.VIDEO: 30}


# ---------------------------------------------------------------------------
# Payload schema
# ---------------------------------------------------------------------------


class WebsiteInfo(BaseModel):
    domain: str = Field(..., min_length=1)
    title: str
    description: str | None = None
    favicon: str | None = None


class GenerationParameters(BaseModel):
    width: int | None = Field(default=None, ge=256, le=2048)
    height: int | None = Field(default=None, ge=256, le=2048)
    duration: int | None = Field(default=None, ge=1, le=10)
    motion_type: Literal["subtle", "dynamic", "showcase"] | None = Field(default=None, alias="motionType")

    model_config = ConfigDict(populate_by_name=True)


class GenerationPayload(BaseModel):
    """Structural validation of a try-on request."""

    target_image: str = Field(..., min_length=1, alias="targetImage")
    style: Literal["realistic", "artistic", "fashion", "lifestyle"] = "realistic"
    prompt: str | None = Field(default=None, max_length=1000)
    product_url: str | None = Field(default=None, alias="productUrl")
    website_info: WebsiteInfo | None = Field(default=None, alias="websiteInfo")
    parameters: GenerationParameters | None = None

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("target_image")
    @classmethod
    def _target_image_reference(cls, value: str) -> str:
        if value.startswith(("http://", "https://")) or _DATA_URI.match(value):
            return value
        raise ValueError("targetImage must be an http(s) URL or a base64 data URI")

    @field_validator("product_url")
    @classmethod
    def _product_url(cls, value: str | None) -> str | None:
        if value is not None and not value.startswith(("http://", "https://")):
            raise ValueError("productUrl must be an http(s) URL")
        return value


def parse_kind(raw: str | JobKind) -> JobKind:
    if isinstance(raw, JobKind):
        return raw
    try:
        return JobKind(str(raw).upper())
    except ValueError:
        raise InvalidPayload(f"Unknown generation kind: {raw!r}") from None


@dataclass(frozen=True)
class QueueStatus:
    counts: dict[str, int]
    depth: QueueStats
    estimated_wait_seconds: dict[str, int]


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------


class RequestGateway:
    def __init__(self, orchestrator: Orchestrator) -> None:
        self._ctx = orchestrator

    # -- admission -----------------------------------------------------

    def _validate(self, payload: dict[str, Any]) -> GenerationPayload:
        try:
            size = len(json.dumps(payload).encode())
        except (TypeError, ValueError):
            raise InvalidPayload("Payload is not JSON-serialisable") from None
        if size > self._ctx.settings.max_payload_bytes:
            raise InvalidPayload(
                f"Payload exceeds {self._ctx.settings.max_payload_bytes} bytes",
                details=[{"loc": ["payload"], "msg": "payload too large", "size": size}],
            )
        try:
            return GenerationPayload.model_validate(payload)
        except ValidationError as exc:
            details = [
                {"loc": list(err["loc"]), "msg": err["msg"], "type": err["type"]}
                for err in exc.errors()
            ]
            raise InvalidPayload("Invalid input data", details=details) from None

    def _store_input(self, job_id: str, target_image: str) -> str | None:
        """Persist a data-URI input to the object store and return its ref."""
        match = _DATA_URI.match(target_image)
        if match is None:
            return None
        try:
            data = base64.b64decode(match.group("data"), validate=True)
        except (binascii.Error, ValueError):
            raise InvalidPayload("targetImage is not valid base64") from None
        extension = _IMAGE_EXTENSIONS.get(match.group("mime").lower(), "bin")
        return self._ctx.storage.store_file(job_id, f"input.{extension}", data)

    def submit(self, identity: Identity, kind: str | JobKind, payload: dict[str, Any]) -> GenerationJob:
        """Admit a generation request; returns the new QUEUED job.

        Raises InvalidPayload or QuotaExceeded; neither leaves a job behind.
        """
        kind = parse_kind(kind)
        request = self._validate(payload)
        ctx = self._ctx

        stored_ref: str | None = None
        with ctx.session_factory() as db:
            try:
                if not ctx.quota.try_consume(db, identity.owner_id, identity.tier, kind):
                    db.rollback()
                    snap = ctx.quota.snapshot(db, identity.owner_id, identity.tier, kind)
                    raise QuotaExceeded(kind.value, snap.remaining, snap.reset_at)

                normalized = request.model_dump(by_alias=True, exclude_none=True)
                job = ctx.store.create_job(db, identity.owner_id, kind, normalized)

                stored_ref = self._store_input(job.job_id, request.target_image)
                if stored_ref is not None:
                    # Keep the (possibly multi-megabyte) data URI out of the job row
                    job.payload = {**normalized, "targetImage": stored_ref}
                    job.input_ref = stored_ref
                else:
                    job.input_ref = request.target_image

                ctx.queue.enqueue(db, job.job_id)
                db.commit()
            except Exception:
                db.rollback()
                if stored_ref is not None:
                    ctx.storage.delete_ref(stored_ref)
                raise

        logger.info(
            "Admitted %s job %s", kind.value, job.job_id,
            extra={"job_id": job.job_id, "owner_id": identity.owner_id, "tier": identity.tier},
        )
        ctx.hub.publish(event_for_job(job))
        return job

    # -- job access ----------------------------------------------------

    def _owned_job(self, db, job_id: str, owner_id: str) -> GenerationJob:
        job = self._ctx.store.get_by_job_id(db, job_id)
        if job is None:
            raise JobNotFound(job_id)
        if job.owner_id != owner_id:
            raise JobForbidden(job_id)
        return job

    def get_status(self, job_id: str, owner_id: str) -> GenerationJob:
        """Current persisted state of a job; NotFound for unknown or foreign ids."""
        with self._ctx.session_factory() as db:
            try:
                return self._owned_job(db, job_id, owner_id)
            except JobForbidden:
                raise JobNotFound(job_id) from None

    def cancel(self, job_id: str, owner_id: str) -> GenerationJob:
        """Cancel a QUEUED or PROCESSING job owned by ``owner_id``."""
        ctx = self._ctx
        with ctx.session_factory() as db:
            job = self._owned_job(db, job_id, owner_id)
            if job.is_terminal:
                raise JobAlreadyTerminal(job_id, job.status.value)

            cancelled = ctx.store.cancel(db, job_id)
            if cancelled is None:
                # Reached a terminal state between the read and the update
                db.rollback()
                current = ctx.store.get_by_job_id(db, job_id)
                raise JobAlreadyTerminal(job_id, current.status.value if current else JobStatus.CANCELLED.value)
            db.commit()

        logger.info("Cancelled job %s", job_id, extra={"job_id": job_id, "owner_id": owner_id})
        ctx.hub.publish(event_for_job(cancelled))
        return cancelled

    # -- reporting -----------------------------------------------------

    def list_jobs(self, owner_id: str, *, page: int = 1, page_size: int = 20) -> tuple[list[GenerationJob], int]:
        with self._ctx.session_factory() as db:
            return self._ctx.store.list_for_owner(db, owner_id, page=page, page_size=page_size)

    def usage(self, identity: Identity) -> dict[JobKind, QuotaSnapshot]:
        with self._ctx.session_factory() as db:
            return {
                kind: self._ctx.quota.snapshot(db, identity.owner_id, identity.tier, kind)
                for kind in JobKind
            }

    def queue_status(self) -> QueueStatus:
        with self._ctx.session_factory() as db:
            counts = self._ctx.store.count_by_status(db, since=utcnow() - timedelta(hours=24))
            depth = self._ctx.queue.stats(db)
        queued = counts.get(JobStatus.QUEUED.value, 0)
        estimates = {
            kind.value: max(_MIN_WAIT_SECONDS[kind], queued * _SECONDS_PER_JOB[kind])
            for kind in JobKind
        }
        return QueueStatus(
            counts={status.value: counts.get(status.value, 0) for status in JobStatus},
            depth=depth,
            estimated_wait_seconds=estimates,
        )
