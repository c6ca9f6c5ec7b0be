"""The explicitly wired set of collaborators shared by the gateway and workers.

Built once by the application lifespan (or the ``worker`` CLI command) and
handed down; nothing in the service layer reaches for module globals.
"""

import logging
from dataclasses import dataclass

from sqlalchemy import Engine
from sqlalchemy.orm import Session, sessionmaker

from vtry_jobs.auth.identity import IdentityVerifier
from vtry_jobs.config import Settings
from vtry_jobs.database import init_db, make_engine, make_session_factory
from vtry_jobs.services.job_queue import JobQueue
from vtry_jobs.services.job_store import JobStore
from vtry_jobs.services.notifications import NotificationHub
from vtry_jobs.services.provider import GenerationProvider, build_provider
from vtry_jobs.services.quota import QuotaPolicy, QuotaTracker
from vtry_jobs.services.storage import StorageService

logger = logging.getLogger(__name__)


@dataclass
class Orchestrator:
    settings: Settings
    engine: Engine
    session_factory: sessionmaker[Session]
    store: JobStore
    queue: JobQueue
    quota: QuotaTracker
    hub: NotificationHub
    provider: GenerationProvider
    storage: StorageService
    identity: IdentityVerifier

    def backoff_seconds(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based), capped."""
        delay = self.settings.backoff_base_seconds * 2 ** max(attempt - 1, 0)
        return min(delay, self.settings.backoff_max_seconds)

    def close(self) -> None:
        close = getattr(self.provider, "close", None)
        if close is not None:
            close()
        self.engine.dispose()


def build_orchestrator(
    settings: Settings,
    *,
    provider: GenerationProvider | None = None,
    hub: NotificationHub | None = None,
) -> Orchestrator:
    """Create the engine, tables and services described by ``settings``."""
    engine = make_engine(settings.database_url)
    init_db(engine)
    orchestrator = Orchestrator(
        settings=settings,
        engine=engine,
        session_factory=make_session_factory(engine),
        store=JobStore(),
        queue=JobQueue(),
        quota=QuotaTracker(QuotaPolicy.from_settings(settings)),
        hub=hub or NotificationHub(buffer_size=settings.ws_buffer_size),
        provider=provider or build_provider(settings),
        storage=StorageService(settings.storage_path, settings.public_base_url),
        identity=IdentityVerifier(settings.token_secret),
    )
    logger.info(
        "Orchestrator ready",
        extra={"provider_mode": settings.provider_mode, "database": engine.url.render_as_string(hide_password=True)},
    )
    return orchestrator
