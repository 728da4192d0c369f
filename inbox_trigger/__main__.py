"""Entry point for the inbox trigger service.

Usage::

    python -m inbox_trigger

Exit codes: 0 on graceful shutdown, 1 when reconnects are exhausted
(the host's process manager should restart the service), 2 on a
configuration error.
"""

from __future__ import annotations

import asyncio
import sys

import structlog
from pydantic import ValidationError

from .config import ServiceConfig
from .errors import ConfigurationError
from .logging import setup_logging
from .service import EXIT_CONFIGURATION_ERROR, InboxTriggerService

logger = structlog.get_logger()


def main() -> None:
    setup_logging()

    try:
        config = ServiceConfig()
    except ValidationError as exc:
        logger.error("configuration_invalid", errors=exc.errors(include_url=False))
        sys.exit(EXIT_CONFIGURATION_ERROR)

    service = InboxTriggerService(config)
    try:
        exit_code = asyncio.run(service.run())
    except ConfigurationError as exc:
        logger.error("configuration_invalid", error=str(exc))
        sys.exit(EXIT_CONFIGURATION_ERROR)

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
