"""Command-line entrypoint for running the CORS image proxy."""

from __future__ import annotations

import argparse
from typing import Optional, Sequence

import structlog
import uvicorn

from ..common.observability import configure_logging
from ..common.settings import ConfigError, load_settings
from .app import SERVICE_NAME, create_app

LOGGER = structlog.get_logger("corsproxy.main")


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Serve the CORS image proxy")
    parser.add_argument("--host", help="Bind address (defaults to CORSPROXY_HOST)")
    parser.add_argument("--port", type=int, help="Listen port (defaults to CORSPROXY_PORT)")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    try:
        settings = load_settings()
    except ConfigError as exc:
        configure_logging(SERVICE_NAME)
        LOGGER.error("config_invalid", error=str(exc))
        return 1

    app = create_app(settings)
    # uvicorn handles SIGTERM/SIGINT and runs the lifespan shutdown before exiting.
    uvicorn.run(
        app,
        host=args.host or settings.host,
        port=args.port or settings.port,
        log_config=None,
        access_log=False,
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
