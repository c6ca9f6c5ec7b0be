"""Shared fixtures: isolated settings, a scripted provider and a wired Orchestrator."""

from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

from vtry_jobs.auth.identity import Identity
from vtry_jobs.config import Settings
from vtry_jobs.deps import reset_rate_limits
from vtry_jobs.models.job import JobKind
from vtry_jobs.services.orchestrator import build_orchestrator
from vtry_jobs.services.provider import ProviderResult

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64
IMAGE_URL = "https://shop.example.com/products/shirt.jpg"


def make_settings(tmp_path: Path, **overrides) -> Settings:
    values = dict(
        database_url="sqlite://",
        storage_path=str(tmp_path / "storage"),
        token_secret="test-secret",
        provider_mode="mock",
        log_level="DEBUG",
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


def image_payload(**overrides) -> dict:
    payload = {"targetImage": IMAGE_URL, "style": "realistic"}
    payload.update(overrides)
    return payload


class ScriptedProvider:
    """Plays back queued outcomes: a ProviderResult, an exception, or a callable."""

    def __init__(self, *outcomes) -> None:
        self.outcomes = list(outcomes)
        self.calls: list[tuple[JobKind, dict, str | None]] = []

    def generate(self, kind, payload, input_ref, *, on_progress=None) -> ProviderResult:
        self.calls.append((kind, payload, input_ref))
        if on_progress is not None:
            on_progress(50)
        outcome = self.outcomes.pop(0) if self.outcomes else ProviderResult(PNG_BYTES, "image/png")
        if isinstance(outcome, BaseException):
            raise outcome
        if callable(outcome):
            return outcome()
        return outcome


@pytest.fixture(autouse=True)
def _clear_rate_limits():
    reset_rate_limits()
    yield
    reset_rate_limits()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture
def provider() -> ScriptedProvider:
    return ScriptedProvider()


@pytest.fixture
def orchestrator(settings: Settings, provider: ScriptedProvider):
    ctx = build_orchestrator(settings, provider=provider)
    yield ctx
    ctx.close()


@pytest.fixture
def executor():
    pool = ThreadPoolExecutor(max_workers=2)
    yield pool
    pool.shutdown(wait=False, cancel_futures=True)


@pytest.fixture
def alice() -> Identity:
    return Identity(owner_id="alice", tier="FREE")


@pytest.fixture
def bob() -> Identity:
    return Identity(owner_id="bob", tier="PRO")
