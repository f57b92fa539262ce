"""FastAPI application factory and operator CLI."""

import argparse
import json
import logging
import os
import sys
from contextlib import asynccontextmanager
from typing import Any, TextIO

import structlog
import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from quiz_progress.api.routes import router
from quiz_progress.config import Settings, get_settings, load_category_catalog
from quiz_progress.errors import StorageQuotaExceeded
from quiz_progress.maintenance.migration import MigrationEngine
from quiz_progress.maintenance.repair import repair
from quiz_progress.maintenance.report import generate_report
from quiz_progress.models.progress import UserProgress
from quiz_progress.progress.repository import ProgressRepository
from quiz_progress.storage.gateway import EXAM_HISTORY_KEY, PROGRESS_KEY, StorageGateway, user_key
from quiz_progress.store import ProgressStore

logger = structlog.get_logger()


def configure_logging(file: TextIO | None = None) -> None:
    """Configure structlog based on the ENV environment variable."""
    is_production = os.getenv("ENV", "development").lower() == "production"

    if is_production:
        # Production: JSON format for machine parsing
        structlog.configure(
            processors=[
                structlog.contextvars.merge_contextvars,
                structlog.processors.add_log_level,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.processors.JSONRenderer(),
            ],
            wrapper_class=structlog.make_filtering_bound_logger(logging.INFO),
            context_class=dict,
            logger_factory=structlog.PrintLoggerFactory(file=file),
            cache_logger_on_first_use=True,
        )
    else:
        # Development: console format for human readability
        structlog.configure(
            processors=[
                structlog.contextvars.merge_contextvars,
                structlog.processors.add_log_level,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.dev.ConsoleRenderer(),
            ],
            wrapper_class=structlog.make_filtering_bound_logger(logging.DEBUG),
            context_class=dict,
            logger_factory=structlog.PrintLoggerFactory(file=file),
            cache_logger_on_first_use=True,
        )


def create_app(settings: Settings | None = None, store: ProgressStore | None = None) -> FastAPI:
    """Build the API application around one ProgressStore."""
    settings = settings or get_settings()
    store = store or ProgressStore(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await store.close()

    app = FastAPI(title="Quiz Progress Store", version="0.1.0", lifespan=lifespan)
    app.state.store = store
    app.state.sessions = {}

    _allowed_origins_env = os.getenv(
        "ALLOWED_ORIGINS", "http://localhost:8000,http://127.0.0.1:8000"
    )
    allowed_origins = [o.strip() for o in _allowed_origins_env.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(router)

    @app.exception_handler(StorageQuotaExceeded)
    async def quota_exceeded_handler(request: Request, exc: StorageQuotaExceeded) -> JSONResponse:
        return JSONResponse(
            {"error": exc.code, "detail": str(exc), "key": exc.key},
            status_code=507,
        )

    return app


# ----------------------------------------------------------------------
# Operator CLI


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="quiz-progress",
        description="Quiz progress store: API server and maintenance commands.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP API.")
    serve.add_argument("--host", default=None, help="Bind address (default: settings).")
    serve.add_argument("--port", type=int, default=None, help="Port (default: settings).")

    report = sub.add_parser("report", help="Print a progress report for an identity.")
    report.add_argument("--identity", required=True)

    repair_cmd = sub.add_parser("repair", help="Detect and fix integrity violations.")
    repair_cmd.add_argument("--identity", required=True)
    repair_cmd.add_argument(
        "--dry-run",
        action="store_true",
        help="List violations without writing anything.",
    )

    migrate = sub.add_parser("migrate", help="Migrate stored documents to the current schema.")
    migrate.add_argument(
        "--identity",
        default=None,
        help="Identity to migrate (default: every identity in the store).",
    )

    sub.add_parser("cleanup", help="Run every storage cleanup step now.")
    sub.add_parser("storage-info", help="Show storage usage against the budget.")

    reset = sub.add_parser("reset", help="Reset an identity's progress (preferences are kept).")
    reset.add_argument("--identity", required=True)
    reset.add_argument("--yes", action="store_true", help="Confirm the reset.")

    backups = sub.add_parser("backups", help="List an identity's backups, newest first.")
    backups.add_argument("--identity", required=True)

    restore = sub.add_parser("restore", help="Restore an identity's progress from a backup.")
    restore.add_argument("--identity", required=True)
    restore.add_argument(
        "--index",
        type=int,
        default=0,
        help="Backup to restore, as listed by `backups` (default: newest).",
    )
    return parser.parse_args(argv)


def _emit(data: Any, out: TextIO) -> None:
    out.write(json.dumps(data, indent=2, ensure_ascii=False, default=str) + "\n")


def _stored_identities(gateway: StorageGateway) -> list[str]:
    prefix = PROGRESS_KEY + "_"
    return sorted(k[len(prefix):] for k in gateway.keys(PROGRESS_KEY) if k.startswith(prefix))


def _read_progress(
    gateway: StorageGateway, engine: MigrationEngine, identity: str
) -> UserProgress | None:
    """Migrated view of a stored document, without writing anything back."""
    raw = gateway.get(user_key(PROGRESS_KEY, identity))
    if not isinstance(raw, dict):
        return None
    history = gateway.get(user_key(EXAM_HISTORY_KEY, identity), [])
    document = engine.migrate(raw, history if isinstance(history, list) else []).document
    try:
        return UserProgress.model_validate(document)
    except ValidationError:
        return None


def run_command(
    args: argparse.Namespace, settings: Settings, out: TextIO | None = None
) -> int:
    """Execute one maintenance command. Returns the process exit code."""
    out = out or sys.stdout
    logger.debug("cli_command", command=args.command)
    gateway = StorageGateway.from_settings(settings)
    catalog = load_category_catalog(settings.catalog_path)
    repository = ProgressRepository.from_settings(settings, gateway, catalog)

    if args.command == "storage-info":
        _emit(gateway.get_storage_info().model_dump(), out)
        return 0

    if args.command == "cleanup":
        _emit(gateway.cleanup().model_dump(), out)
        return 0

    if args.command == "report":
        progress = _read_progress(gateway, repository.migrations, args.identity)
        if progress is None:
            out.write(f"No progress data found for {args.identity}\n")
            return 1
        out.write(generate_report(
            progress,
            catalog=catalog,
            tracker=repository.tracker(args.identity).load(),
            trust=repository.tracker_trust,
            overcome_policy=repository.overcome_policy,
            identity=args.identity,
        ))
        return 0

    if args.command == "repair":
        if args.dry_run:
            progress = _read_progress(gateway, repository.migrations, args.identity)
            if progress is None:
                out.write(f"No progress data found for {args.identity}\n")
                return 1
            report = repair(
                progress,
                catalog=catalog,
                tracker=repository.tracker(args.identity).load(),
                trust=repository.tracker_trust,
                overcome_policy=repository.overcome_policy,
            )
            _emit({"dry_run": True, "violations": [v.model_dump(mode="json") for v in report.violations]}, out)
            return 0
        repository.auto_repair = True
        repository.load(args.identity)
        violations = repository.last_repair.violations if repository.last_repair else []
        _emit({"dry_run": False, "violations": [v.model_dump(mode="json") for v in violations]}, out)
        return 0

    if args.command == "migrate":
        identities = [args.identity] if args.identity else _stored_identities(gateway)
        results = {}
        failed = False
        for identity in identities:
            repository.load(identity)
            result = repository.last_migration
            if result is None:
                results[identity] = {"success": True, "message": "Seeded new document", "changes": []}
                continue
            failed = failed or not result.success
            results[identity] = result.model_dump(include={"success", "message", "changes"})
        _emit(results, out)
        return 1 if failed else 0

    if args.command == "reset":
        if not args.yes:
            out.write("Refusing to reset without --yes\n")
            return 2
        repository.load(args.identity)
        result = repository.reset_all()
        _emit(result.model_dump(), out)
        return 0 if result.success else 1

    if args.command == "backups":
        backups = repository.list_backups(args.identity)
        _emit([
            {"index": i, "created_at": b.created_at.isoformat(), "reason": b.reason}
            for i, b in enumerate(backups)
        ], out)
        return 0

    if args.command == "restore":
        result = repository.restore_backup(args.index, identity=args.identity)
        _emit(result.model_dump(), out)
        return 0 if result.success else 1

    raise ValueError(f"Unknown command: {args.command}")


def main(argv: list[str] | None = None) -> int:
    """Entry point for the ``quiz-progress`` command."""
    args = parse_args(argv)
    settings = get_settings()

    if args.command == "serve":
        configure_logging()
        uvicorn.run(
            create_app(settings),
            host=args.host or settings.host,
            port=args.port or settings.port,
            reload=False,
            log_level="info",
        )
        return 0

    configure_logging(file=sys.stderr)
    return run_command(args, settings)


if __name__ == "__main__":
    sys.exit(main())
