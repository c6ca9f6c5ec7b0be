"""External AI provider clients.

``KieProvider`` talks to the KIE-style HTTP API: image requests complete
synchronously with a result URL, video requests return a provider job id
that is polled until it reaches a terminal state. Either way the result
URL is downloaded and raw bytes are returned to the worker.

Failures are typed so the worker can decide between retry and give-up:

* ``RetryableProviderError`` - timeouts, transport errors, HTTP 408/429/5xx
* ``FatalProviderError``     - any other 4xx, provider-side job failure,
                               or a response without a usable result
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Protocol

import httpx

from vtry_jobs.config import Settings
from vtry_jobs.models.job import JobKind

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], None]

_RETRYABLE_STATUS = {408, 425, 429}

_STYLE_DESCRIPTIONS = {
    "realistic": "photorealistic, high-quality, detailed",
    "artistic": "artistic style, creative interpretation",
    "fashion": "fashion photography style, professional lighting",
    "lifestyle": "lifestyle photography, natural setting",
}

_MOTION_DEFAULT = "subtle"

# Provider job states, normalised to queued / processing / completed / failed
_STATUS_MAP = {
    "pending": "queued",
    "queued": "queued",
    "processing": "processing",
    "running": "processing",
    "completed": "completed",
    "succeeded": "completed",
}

_CONTENT_EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/webp": "webp",
    "video/mp4": "mp4",
    "video/webm": "webm",
}


class ProviderError(Exception):
    """Base class for provider failures."""

    code = "PROVIDER_ERROR"
    retryable = False


class RetryableProviderError(ProviderError):
    code = "PROVIDER_UNAVAILABLE"
    retryable = True


class FatalProviderError(ProviderError):
    code = "PROVIDER_REJECTED"


class InvalidResultError(FatalProviderError):
    code = "INVALID_RESULT"


@dataclass(frozen=True)
class ProviderResult:
    data: bytes
    content_type: str

    @property
    def extension(self) -> str:
        return _CONTENT_EXTENSIONS.get(self.content_type.split(";")[0].strip(), "bin")


class GenerationProvider(Protocol):
    """What a worker needs from an AI provider."""

    def generate(
        self,
        kind: JobKind,
        payload: dict[str, Any],
        input_ref: str | None,
        *,
        on_progress: ProgressCallback | None = None,
    ) -> ProviderResult:
        ...


def build_try_on_prompt(kind: JobKind, payload: dict[str, Any]) -> str:
    """Compose the provider prompt for a virtual try-on request."""
    style = _STYLE_DESCRIPTIONS.get(payload.get("style", "realistic"), _STYLE_DESCRIPTIONS["realistic"])
    target = "a high-quality image suitable for video" if kind == JobKind.VIDEO else "a high-quality photograph"
    prompt = (
        f"Create {target} showing a person wearing the clothing item from the product image. "
        f"Style: {style}. "
        "The person should be wearing the exact clothing item shown in the product image, "
        "with proper fit and realistic appearance. "
        "High quality, professional photography style, good lighting, realistic textures."
    )
    extra = (payload.get("prompt") or "").strip()
    return f"{prompt} {extra}" if extra else prompt


class KieProvider:
    """HTTP client for the KIE generation API."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        timeout: float = 120.0,
        poll_interval: float = 5.0,
        client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout
        self._poll_interval = poll_interval
        self._client = client or httpx.Client(timeout=httpx.Timeout(timeout, connect=10.0))
        self._sleep = sleep
        self._clock = clock

    def close(self) -> None:
        self._client.close()

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        headers = kwargs.pop("headers", {})
        if url.startswith(self._base_url):
            headers["Authorization"] = f"Bearer {self._api_key}"
        try:
            response = self._client.request(method, url, headers=headers, **kwargs)
        except httpx.TimeoutException as exc:
            raise RetryableProviderError(f"Provider request timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise RetryableProviderError(f"Provider unreachable: {exc}") from exc

        if response.status_code in _RETRYABLE_STATUS or response.status_code >= 500:
            raise RetryableProviderError(
                f"Provider returned {response.status_code}: {response.text[:200]}"
            )
        if response.status_code >= 400:
            raise FatalProviderError(
                f"Provider rejected request ({response.status_code}): {response.text[:200]}"
            )
        return response

    def _json(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        response = self._send(method, f"{self._base_url}{path}", **kwargs)
        try:
            body = response.json()
        except ValueError as exc:
            raise InvalidResultError("Provider returned a non-JSON response") from exc
        if not isinstance(body, dict):
            raise InvalidResultError("Provider returned an unexpected response shape")
        return body

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def _image_request(self, payload: dict[str, Any], input_ref: str | None) -> dict[str, Any]:
        params = payload.get("parameters") or {}
        width, height = params.get("width"), params.get("height")
        body: dict[str, Any] = {
            "prompt": build_try_on_prompt(JobKind.IMAGE, payload),
            "aspectRatio": f"{width}:{height}" if width and height else "1:1",
        }
        if input_ref:
            body["filesUrl"] = [input_ref]
        return self._json("POST", "/gpt4o-image/generate", json=body)

    def _video_request(self, payload: dict[str, Any], input_ref: str | None) -> dict[str, Any]:
        params = payload.get("parameters") or {}
        body = {
            "model": "veo3",
            "inputs": {
                "target_image": input_ref,
                "prompt": build_try_on_prompt(JobKind.VIDEO, payload),
                "style": payload.get("style", "realistic"),
            },
            "parameters": {
                "width": params.get("width", 512),
                "height": params.get("height", 768),
                "duration": params.get("duration", 3),
                "motion_type": params.get("motionType", _MOTION_DEFAULT),
                "fps": 24,
                "quality": "high",
                "safety_check": True,
            },
        }
        return self._json("POST", "/generate/video", json=body)

    @staticmethod
    def _result_url(body: dict[str, Any]) -> str | None:
        output = body.get("output") or {}
        data = body.get("data") or {}
        return (
            body.get("url")
            or body.get("image_url")
            or (data.get("url") if isinstance(data, dict) else None)
            or output.get("image_url")
            or output.get("video_url")
        )

    def _wait_for_job(
        self, provider_job_id: str, deadline: float, on_progress: ProgressCallback | None
    ) -> str:
        """Poll the provider job until it completes; return its result URL."""
        started = self._clock()
        while True:
            if self._clock() >= deadline:
                raise RetryableProviderError(f"Provider job {provider_job_id} did not finish in time")
            self._sleep(self._poll_interval)

            body = self._json("GET", f"/jobs/{provider_job_id}")
            state = _STATUS_MAP.get(str(body.get("status", "")).lower(), "failed")
            if state == "completed":
                url = self._result_url(body)
                if not url:
                    raise InvalidResultError(f"Provider job {provider_job_id} finished without a result")
                return url
            if state == "failed":
                raise FatalProviderError(body.get("error") or f"Provider job {provider_job_id} failed")

            if on_progress is not None:
                # 20..90 over the time budget, mirroring the elapsed share
                budget = max(deadline - started, 1e-6)
                share = (self._clock() - started) / budget
                on_progress(20 + int(min(share, 1.0) * 70))

    def generate(
        self,
        kind: JobKind,
        payload: dict[str, Any],
        input_ref: str | None,
        *,
        on_progress: ProgressCallback | None = None,
    ) -> ProviderResult:
        deadline = self._clock() + self._timeout
        body = self._image_request(payload, input_ref) if kind == JobKind.IMAGE else self._video_request(payload, input_ref)

        url = self._result_url(body)
        if url is None:
            provider_job_id = body.get("job_id") or body.get("jobId")
            state = _STATUS_MAP.get(str(body.get("status", "")).lower())
            if not provider_job_id or state not in ("queued", "processing"):
                raise InvalidResultError("Provider response carried neither a result nor a job id")
            logger.info("Provider accepted %s job %s", kind.value.lower(), provider_job_id)
            url = self._wait_for_job(provider_job_id, deadline, on_progress)

        if on_progress is not None:
            on_progress(95)
        response = self._send("GET", url)
        if not response.content:
            raise InvalidResultError("Provider result download was empty")
        content_type = response.headers.get("content-type", "application/octet-stream")
        return ProviderResult(data=response.content, content_type=content_type)


class MockProvider:
    """Deterministic stand-in used in development (``provider_mode = "mock"``)."""

    def __init__(self, delay_seconds: float = 3.0, sleep: Callable[[float], None] = time.sleep) -> None:
        self._delay = delay_seconds
        self._sleep = sleep

    def generate(
        self,
        kind: JobKind,
        payload: dict[str, Any],
        input_ref: str | None,
        *,
        on_progress: ProgressCallback | None = None,
    ) -> ProviderResult:
        if on_progress is not None:
            on_progress(50)
        self._sleep(self._delay)
        if kind == JobKind.VIDEO:
            return ProviderResult(data=b"\x00\x00\x00\x18ftypmp42" + b"\x00" * 64, content_type="video/mp4")
        return ProviderResult(data=b"\x89PNG\r\n\x1a\n" + b"\x00" * 64, content_type="image/png")


def build_provider(settings: Settings) -> GenerationProvider:
    """Provider selected by ``settings.provider_mode``."""
    mode = settings.provider_mode.lower()
    if mode == "kie":
        if not settings.provider_api_key:
            raise ValueError("VTRY_PROVIDER_API_KEY is required when provider_mode is 'kie'")
        return KieProvider(
            settings.provider_base_url,
            settings.provider_api_key,
            timeout=settings.provider_timeout_seconds,
            poll_interval=settings.provider_poll_interval_seconds,
        )
    if mode == "mock":
        return MockProvider()
    raise ValueError(f"Unknown provider mode: {settings.provider_mode!r}")
