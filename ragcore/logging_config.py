"""
Logging configuration.

Library modules only create loggers (logging.getLogger(__name__)); the
command line calls configure_logging() once at startup.
"""

import logging
import sys


def configure_logging(level: int = logging.INFO) -> None:
    """Install a single stdout handler with timestamped records."""
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))

    root_logger.setLevel(level)
    root_logger.addHandler(handler)

    # Reduce noise from HTTP client libraries
    for name in ("urllib3", "httpx", "openai"):
        logging.getLogger(name).setLevel(logging.WARNING)
