"""JSON logging with per-request and per-job context.

``configure_logging()`` installs one stdout handler that writes each record
as a JSON object. Fields bound with ``bind_log_context`` (the HTTP request
id, the job a worker is processing) ride along on every record emitted
inside the block, including records from threads started with a copy of
the current context.
"""

import json
import logging
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Callable, Iterator

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

_log_context: ContextVar[dict[str, str]] = ContextVar("log_context", default={})

# Attributes every LogRecord carries; anything else on a record came from ``extra=``
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}


def log_context() -> dict[str, str]:
    """Fields currently bound for this thread / task."""
    return dict(_log_context.get())


@contextmanager
def bind_log_context(**fields: str) -> Iterator[None]:
    token = _log_context.set({**_log_context.get(), **fields})
    try:
        yield
    finally:
        _log_context.reset(token)


def bind_job_id(job_id: str):
    """Tag every record logged inside the block with ``job_id``."""
    return bind_log_context(job_id=job_id)


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "message": record.getMessage(),
            **_log_context.get(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        payload.update(
            (key, value)
            for key, value in vars(record).items()
            if key not in _RECORD_ATTRS and not key.startswith("_")
        )
        return json.dumps(payload, default=str)


def configure_logging(level: str = "INFO") -> None:
    """Route all logging through a single JSON handler on stdout."""
    handler = logging.StreamHandler()
    handler.setFormatter(_JsonFormatter())
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), handlers=[handler], force=True)

    # Per-request access lines come from RequestIdMiddleware
    for name in ("httpx", "httpcore", "uvicorn.access"):
        logging.getLogger(name).setLevel(logging.WARNING)
    logging.getLogger(__name__).info("JSON logging configured", extra={"log_level": level.upper()})


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Echo or mint ``X-Request-ID`` and write one access line per request."""

    header_name = "X-Request-ID"

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(self.header_name) or uuid.uuid4().hex
        started = time.monotonic()
        with bind_log_context(request_id=request_id):
            response = await call_next(request)
            response.headers[self.header_name] = request_id
            logging.getLogger("vtry_jobs.access").info(
                "%s %s %s", request.method, request.url.path, response.status_code,
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "duration_ms": round((time.monotonic() - started) * 1000, 1),
                },
            )
        return response
