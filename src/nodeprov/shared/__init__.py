"""Shared modules for nodeprov.

This module provides functionality used by both the provisioning run and
the health service:
- Logging configuration
- Filesystem locations
"""

from .logging import configure_logging, get_logger
from .paths import (
    HEALTH_LOG_FILE,
    HEALTH_PID_FILE,
    LOG_DIR,
    NODEPROV_STATE_DIR,
    PROVISION_LOG_FILE,
    ensure_dirs,
    get_ready_marker,
)

__all__ = [
    # Paths
    "NODEPROV_STATE_DIR",
    "LOG_DIR",
    "PROVISION_LOG_FILE",
    "HEALTH_PID_FILE",
    "HEALTH_LOG_FILE",
    "ensure_dirs",
    "get_ready_marker",
    # Logging
    "configure_logging",
    "get_logger",
]
