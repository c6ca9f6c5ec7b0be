import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from vtry_jobs.api.generations import router as generations_router
from vtry_jobs.api.live import router as live_router
from vtry_jobs.api.results import router as results_router
from vtry_jobs.config import Settings
from vtry_jobs.config import settings as default_settings
from vtry_jobs.logging_config import RequestIdMiddleware, configure_logging
from vtry_jobs.services.event_relay import EventRelay
from vtry_jobs.services.gateway import RequestGateway
from vtry_jobs.services.job_worker import WorkerPool
from vtry_jobs.services.orchestrator import build_orchestrator
from vtry_jobs.services.provider import GenerationProvider

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    *,
    provider: GenerationProvider | None = None,
    start_workers: bool = True,
    relay_events: bool = False,
    configure_logs: bool = True,
) -> FastAPI:
    """Build the API application.

    The lifespan wires the Orchestrator and, unless ``start_workers`` is
    False (separate ``vtry-jobs worker`` processes), runs the Worker Pool
    in-process. With ``relay_events`` the API tails the events those worker
    processes write and pushes them to its live connections.
    """
    settings = settings or default_settings
    if configure_logs:
        configure_logging(level=settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Application starting up")
        orchestrator = build_orchestrator(settings, provider=provider)
        app.state.orchestrator = orchestrator
        app.state.gateway = RequestGateway(orchestrator)
        pool = WorkerPool(orchestrator) if start_workers else None
        if pool is not None:
            pool.start()
        app.state.worker_pool = pool
        relay = EventRelay(orchestrator) if relay_events else None
        if relay is not None:
            relay.start()
        app.state.event_relay = relay
        try:
            yield
        finally:
            logger.info("Application shutting down")
            if relay is not None:
                relay.stop()
            if pool is not None:
                pool.stop()
            orchestrator.close()

    app = FastAPI(title="V-Try Generation Jobs API", lifespan=lifespan)

    # Request ID middleware must be added BEFORE CORS so every response carries
    # the X-Request-ID header (including preflight OPTIONS responses).
    app.add_middleware(RequestIdMiddleware)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_url],
        allow_origin_regex=r"^chrome-extension://.*$",
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*", "X-Request-ID"],
        expose_headers=[
            "X-Request-ID",
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
            "Retry-After",
        ],
    )

    @app.exception_handler(RequestValidationError)
    async def invalid_request(request: Request, exc: RequestValidationError) -> JSONResponse:
        details = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg", ""), "type": err.get("type", "")}
            for err in exc.errors()
        ]
        return JSONResponse(
            status_code=400,
            content={"detail": {"code": "InvalidPayload", "message": "Invalid input data", "details": details}},
        )

    app.include_router(generations_router)
    app.include_router(results_router)
    app.include_router(live_router)

    @app.get("/api/health")
    async def health():
        pool = app.state.worker_pool
        relay = app.state.event_relay
        return {
            "status": "ok",
            "workers": pool.running if pool is not None else False,
            "eventRelay": relay.running if relay is not None else False,
        }

    return app


app = create_app()
