"""
Command line entry point: ``python -m tripledger serve`` / ``init-db``.
"""

from __future__ import annotations

import argparse
import logging
import sys

from tripledger.config import get_settings

logger = logging.getLogger(__name__)


def _serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run(
        "tripledger.app:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=get_settings().log_level.lower(),
    )
    return 0


def _init_db(args: argparse.Namespace) -> int:
    from tripledger.db import DbClient

    settings = get_settings()
    if not settings.database_url:
        logger.error("DATABASE_URL is not set")
        return 1
    client = DbClient(settings.database_url)
    client.ping()
    logger.info("Database schema is up to date")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="tripledger", description="Trip ledger backend")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default="127.0.0.1", help="Interface to bind")
    serve.add_argument("--port", type=int, default=5000, help="Port to listen on")
    serve.add_argument("--reload", action="store_true", help="Reload on code changes")
    serve.set_defaults(func=_serve)

    init_db = subparsers.add_parser("init-db", help="Create database tables")
    init_db.set_defaults(func=_init_db)

    args = parser.parse_args(argv)
    logging.basicConfig(level=get_settings().log_level.upper())
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
