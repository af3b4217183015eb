"""
Logging configuration for the trust engine.

Every module logs under the ``trust_engine`` namespace
(``trust_engine.decision``, ``trust_engine.ledger``, ...). Handlers are
installed once on the namespace root; child loggers propagate to it.
"""

import logging
import sys
from typing import Optional

from ..config import settings

ROOT_LOGGER = "trust_engine"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def get_logger(name: Optional[str] = None, level: Optional[str] = None) -> logging.Logger:
    """
    Get a logger under the trust_engine namespace.

    The namespace root gets a stdout handler on first use, at
    ``level`` or the configured APP_LOG_LEVEL.

    Args:
        name: Child name ("decision") or full dotted name; root when omitted
        level: Optional level override for the namespace root

    Returns:
        Configured logger instance
    """
    root = logging.getLogger(ROOT_LOGGER)
    if not root.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        root.addHandler(handler)
        root.setLevel(level or settings.app_log_level)
    elif level:
        root.setLevel(level)

    if not name or name == ROOT_LOGGER:
        return root
    if not name.startswith(f"{ROOT_LOGGER}."):
        name = f"{ROOT_LOGGER}.{name}"
    return logging.getLogger(name)
