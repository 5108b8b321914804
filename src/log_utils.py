"""
Logging utilities for the sqlrs client.
"""

import logging
import sys
from typing import IO, Optional

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"


def setup_logging(
    verbose: bool = False,
    log_file: Optional[str] = None,
    stream: Optional[IO] = None,
) -> logging.Logger:
    """
    Set up logging configuration.

    Diagnostics go to stderr so stdout stays reserved for command output.

    Args:
        verbose: Enable verbose (DEBUG) logging
        log_file: Optional path to an additional log file
        stream: Diagnostic stream (defaults to sys.stderr)

    Returns:
        Logger instance
    """
    level = logging.DEBUG if verbose else logging.WARNING

    handlers = [logging.StreamHandler(stream or sys.stderr)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )

    return logging.getLogger(__name__)
