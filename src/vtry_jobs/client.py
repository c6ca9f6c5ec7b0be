"""Client SDK for the generation API, with the status poll loop.

Typical use::

    client = GenerationClient("https://api.example.com", token)
    job_id = client.submit("IMAGE", {"targetImage": "https://..."})
    final = client.poll_until_done(job_id)

``poll_until_done`` waits ``initial_delay`` seconds, then polls every
``interval`` seconds for at most ``max_attempts`` polls. Transport errors
are retried after ``error_delay`` seconds, up to ``max_transport_errors``
in a row. Pass a ``threading.Event`` to stop polling from another thread.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Any

import httpx

logger = logging.getLogger(__name__)


class ClientError(Exception):
    """The API answered with an error status."""

    def __init__(self, status_code: int, code: str, message: str, body: Any = None) -> None:
        super().__init__(f"{status_code} {code}: {message}")
        self.status_code = status_code
        self.code = code
        self.message = message
        self.body = body


class PollError(Exception):
    def __init__(self, job_id: str, message: str, last_status: dict | None = None) -> None:
        super().__init__(message)
        self.job_id = job_id
        self.last_status = last_status


class PollTimeout(PollError):
    """The job did not reach a terminal state within the poll budget."""


class PollCancelled(PollError):
    """Polling was stopped, or the job itself was cancelled."""


class PollFailed(PollError):
    """The job failed, or polling gave up after repeated transport errors."""


@dataclass
class PollSettings:
    initial_delay: float = 1.0
    interval: float = 2.0
    max_attempts: int = 60
    error_delay: float = 5.0
    max_transport_errors: int = 5


class GenerationClient:
    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        poll: PollSettings | None = None,
        client: httpx.Client | None = None,
        timeout: float = 30.0,
    ) -> None:
        self._client = client or httpx.Client(base_url=base_url, timeout=timeout)
        self._client.headers["Authorization"] = f"Bearer {token}"
        self.poll = poll or PollSettings()

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "GenerationClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        response = self._client.request(method, path, **kwargs)
        if response.is_error:
            try:
                body = response.json()
            except ValueError:
                body = None
            detail = body.get("detail") if isinstance(body, dict) else None
            if isinstance(detail, dict):
                raise ClientError(response.status_code, detail.get("code", ""), detail.get("message", ""), body)
            raise ClientError(response.status_code, "HTTPError", str(detail or response.text), body)
        return response.json()

    # ------------------------------------------------------------------
    # Endpoints
    # ------------------------------------------------------------------

    def submit(self, kind: str, payload: dict[str, Any]) -> str:
        """Submit a generation request; returns the job id."""
        body = self._request("POST", "/api/ai/generate", json={"kind": kind, "payload": payload})
        return body["jobId"]

    def get_status(self, job_id: str) -> dict[str, Any]:
        return self._request("GET", f"/api/ai/status/{job_id}")

    def cancel(self, job_id: str) -> bool:
        return bool(self._request("DELETE", f"/api/ai/cancel/{job_id}").get("ok"))

    def usage(self) -> dict[str, Any]:
        return self._request("GET", "/api/ai/usage")

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    def poll_until_done(self, job_id: str, cancel_event: threading.Event | None = None) -> dict[str, Any]:
        """Poll until the job completes; returns its final status body.

        Raises PollFailed, PollCancelled or PollTimeout otherwise.
        """
        cancel_event = cancel_event or threading.Event()
        settings = self.poll
        last: dict[str, Any] | None = None
        transport_errors = 0

        if cancel_event.wait(settings.initial_delay):
            raise PollCancelled(job_id, "Polling cancelled")

        attempt = 0
        while attempt < settings.max_attempts:
            try:
                last = self.get_status(job_id)
            except httpx.TransportError as exc:
                transport_errors += 1
                logger.warning(
                    "Polling job %s failed (%d/%d): %s",
                    job_id, transport_errors, settings.max_transport_errors, exc,
                )
                if transport_errors >= settings.max_transport_errors:
                    raise PollFailed(job_id, f"Giving up after {transport_errors} transport errors", last) from exc
                if cancel_event.wait(settings.error_delay):
                    raise PollCancelled(job_id, "Polling cancelled", last) from None
                continue

            transport_errors = 0
            attempt += 1
            state = last.get("status")
            if state == "COMPLETED":
                return last
            if state == "FAILED":
                error = last.get("error") or {}
                raise PollFailed(job_id, error.get("message") or "Generation failed", last)
            if state == "CANCELLED":
                raise PollCancelled(job_id, "Generation was cancelled", last)

            if attempt < settings.max_attempts and cancel_event.wait(settings.interval):
                raise PollCancelled(job_id, "Polling cancelled", last)

        raise PollTimeout(job_id, f"Job did not finish after {settings.max_attempts} polls", last)
