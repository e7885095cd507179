"""
Centralized logging configuration for the storefront service.

Every module logs through ``get_logger(__name__)`` so that records share one
format and one set of handlers, configured once at startup by ``setup_logging``.
"""

import logging
import sys

LOG_FORMAT = "%(asctime)s - %(levelname)s - [PID:%(process)d] - %(name)s - %(message)s"


def setup_logging(level: str = "INFO"):
    """
    Configures the root logger for the application.

    Output goes to stdout (container friendly). Chatty third-party loggers
    are turned down to WARNING.

    Args:
        level (str): Log level name, e.g. "INFO" or "DEBUG".
    """
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("stripe").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


def get_logger(name):
    """
    Returns a logger for a module or component name.

    Args:
        name (str): The logger name, typically the module's __name__.
    """
    return logging.getLogger(name)
