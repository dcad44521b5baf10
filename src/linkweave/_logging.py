"""Logging configuration for linkweave.

Usage in other modules:
    import logging
    log = logging.getLogger(__name__)

The log level can be configured via the LINKWEAVE_LOG_LEVEL environment variable:
    - DEBUG: Per-batch detail, retry attempts, skipped pairs
    - INFO: Run progress (default)
    - WARNING: Failed batches and malformed model responses
    - ERROR: Errors that aborted a run
"""

import logging
import os
import sys

PACKAGE_LOGGER = "linkweave"


def configure_logging(level_name: str | None = None) -> None:
    """Configure logging for the linkweave package.

    Call this once at application startup (the CLI does). Subsequent calls
    are no-ops.

    Args:
        level_name: Explicit level name. Falls back to LINKWEAVE_LOG_LEVEL,
            then INFO.
    """
    root_logger = logging.getLogger(PACKAGE_LOGGER)

    if root_logger.handlers:
        return

    level_name = (level_name or os.environ.get("LINKWEAVE_LOG_LEVEL", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(
        logging.Formatter(
            fmt="[%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )

    root_logger.setLevel(level)
    root_logger.addHandler(handler)

    # Prevent propagation to root logger (avoids duplicate messages)
    root_logger.propagate = False
