"""
DualStore Server - Main entry point.

This module starts the HTTP API with all components:
- Record store drivers (legacy and target)
- Outbox and conflict ledger (control database)
- Read cache (Redis when REDIS_URL is set)

The outbox worker has no loop of its own: a scheduler calls
POST /api/internal/outbox/flush.

Usage:
    python -m migration.dualstore_server.main

Configuration is entirely via environment variables.
See config.py and api/settings.py for all available settings.

Invariants:
    - Mode configuration is resolved once, before the app is built
    - Shutdown cancels shadow comparisons before closing the stores
"""

from __future__ import annotations

import logging
import sys

import json_log_formatter
import uvicorn

from .api import HttpSettings, create_app
from .config import ServerConfig
from .service import DualStoreService

logger = logging.getLogger(__name__)


def setup_logging(config: ServerConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Server configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.VerboseJSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("redis").setLevel(logging.WARNING)


def main() -> None:
    """Main entry point."""
    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)
    settings = HttpSettings()
    if not settings.has_cron_secret:
        logger.warning("OUTBOX_CRON_SECRET is not set; internal outbox endpoints will reject every call")
    if not settings.has_operator_token:
        logger.warning("DUALSTORE_OPERATOR_TOKEN is not set; conflict endpoints will reject every call")

    app = create_app(DualStoreService(config), settings)
    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)


if __name__ == "__main__":
    main()
