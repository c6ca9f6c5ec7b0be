# CLI entry point for the V-Try generation service
# Runs the API, a standalone worker pool, or issues development tokens

import argparse
import logging
import signal
import sys
import threading

from vtry_jobs.auth.identity import KNOWN_TIERS, IdentityVerifier
from vtry_jobs.config import Settings
from vtry_jobs.logging_config import configure_logging

logger = logging.getLogger(__name__)


def cmd_serve(args: argparse.Namespace, settings: Settings) -> int:
    import uvicorn

    from vtry_jobs.main import create_app

    # Without in-process workers, live updates come from the worker processes
    app = create_app(settings, start_workers=not args.no_workers, relay_events=args.no_workers)
    uvicorn.run(app, host=args.host, port=args.port, log_config=None)
    return 0


def cmd_worker(args: argparse.Namespace, settings: Settings) -> int:
    from vtry_jobs.services.event_relay import attach_outbox
    from vtry_jobs.services.job_worker import WorkerPool
    from vtry_jobs.services.orchestrator import build_orchestrator

    configure_logging(level=settings.log_level)
    orchestrator = build_orchestrator(settings)
    attach_outbox(orchestrator)
    pool = WorkerPool(orchestrator, size=args.workers)

    stop = threading.Event()

    def _shutdown(signum, _frame) -> None:
        logger.info("Received signal %d, stopping workers", signum)
        stop.set()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    pool.start()
    try:
        stop.wait()
    finally:
        pool.stop(timeout=settings.provider_timeout_seconds)
        orchestrator.close()
    return 0


def cmd_issue_token(args: argparse.Namespace, settings: Settings) -> int:
    verifier = IdentityVerifier(settings.token_secret)
    print(verifier.issue(args.owner_id, args.tier))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vtry-jobs",
        description="V-Try generation jobs - API server, worker pool and tooling",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP/WebSocket API")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8000)
    serve.add_argument(
        "--no-workers",
        action="store_true",
        help="Do not run the worker pool in the API process; relay live updates from `vtry-jobs worker` processes instead",
    )
    serve.set_defaults(func=cmd_serve)

    worker = sub.add_parser("worker", help="Run the worker pool and stuck-job supervisor")
    worker.add_argument(
        "--workers",
        type=int,
        default=None,
        help="Number of worker threads (default: VTRY_WORKER_COUNT)",
    )
    worker.set_defaults(func=cmd_worker)

    token = sub.add_parser("issue-token", help="Print a signed identity token for development")
    token.add_argument("owner_id", help="Owner (user) id to embed in the token")
    token.add_argument("--tier", choices=KNOWN_TIERS, default="FREE")
    token.set_defaults(func=cmd_issue_token)

    return parser


def main(argv: list[str] | None = None) -> int:
    """CLI entry point."""
    args = build_parser().parse_args(argv)
    return args.func(args, Settings())


if __name__ == "__main__":
    sys.exit(main())
