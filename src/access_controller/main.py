"""Main entry point for a reconciliation run.

SECRETLESS ARCHITECTURE:
- ALL authentication uses Managed Identity (system- or user-assigned)
- Service connections use workload identity federation, never secrets
- Credential environment variables abort the run before any API call

Exit codes:
    0: Success (warnings for missing targets included)
    1: Configuration, spec or API failure
    2: Security violation
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from datetime import UTC, datetime

from .config import Config, ConfigurationError
from .reconciler import Reconciler
from .security import SecretlessViolationError
from .spec_loader import SpecLoadError

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_SECURITY_VIOLATION = 2

# Attributes every LogRecord has; anything else came in through extra=
_RESERVED_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.NOTSET, "", 0, "", None, None))
) | {"message", "asctime", "taskName"}


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created, UTC)
        log_data = {
            "timestamp": timestamp.isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        log_data.update(
            (key, value)
            for key, value in record.__dict__.items()
            if key not in _RESERVED_RECORD_ATTRS
        )

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int = logging.INFO) -> None:
    """Configure structured logging with JSON output."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level)

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("msrest").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


async def reconcile(config: Config) -> int:
    """Run one reconciliation and map the outcome to an exit code."""
    logger = logging.getLogger(__name__)

    try:
        reconciler = Reconciler.from_config(config)
        result = await reconciler.run()
    except SecretlessViolationError as e:
        # SECURITY: Credential detected in environment - fatal security error
        logger.critical(
            "Security violation: credentials detected in environment",
            extra={"error": str(e)},
        )
        return EXIT_SECURITY_VIOLATION
    except SpecLoadError as e:
        logger.error(
            "Service connection definitions are invalid",
            extra={"error": str(e), "config_dir": str(config.config_dir)},
        )
        return EXIT_FAILURE
    except Exception as e:
        logger.exception("Reconciliation failed", extra={"error": str(e)})
        return EXIT_FAILURE

    for warning in result.warnings:
        logger.warning("Skipped grant", extra={"reason": warning})

    return EXIT_SUCCESS


async def main() -> int:
    """Run a reconciliation configured from the environment.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return EXIT_FAILURE

    logger.info(
        "Starting Azure access reconciliation",
        extra={
            "organization": config.organization,
            "project": config.project,
            "dry_run": config.dry_run,
        },
    )
    return await reconcile(config)


def run() -> None:
    """Entry point for container execution."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
