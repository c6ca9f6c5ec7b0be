"""Domain errors raised by the request gateway.

Routers translate these into HTTP responses; nothing below the API layer
knows about status codes.
"""

from datetime import datetime


class GenerationError(Exception):
    """Base class for admission and job-access errors."""

    code = "GENERATION_ERROR"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code


class InvalidPayload(GenerationError):
    code = "InvalidPayload"

    def __init__(self, message: str = "Invalid input data", details: list | None = None) -> None:
        super().__init__(message)
        self.details = details or []


class QuotaExceeded(GenerationError):
    code = "QuotaExceeded"

    def __init__(self, kind: str, remaining: int, reset_at: datetime) -> None:
        super().__init__(f"Daily {kind.lower()} generation limit exceeded")
        self.kind = kind
        self.remaining = remaining
        self.reset_at = reset_at


class JobNotFound(GenerationError):
    code = "JobNotFound"

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Generation job {job_id} not found")
        self.job_id = job_id


class JobForbidden(GenerationError):
    code = "Forbidden"

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Generation job {job_id} belongs to another user")
        self.job_id = job_id


class JobAlreadyTerminal(GenerationError):
    code = "AlreadyTerminal"

    def __init__(self, job_id: str, status: str) -> None:
        super().__init__(f"Generation job {job_id} is already {status.lower()}")
        self.job_id = job_id
        self.status = status
