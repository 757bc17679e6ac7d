"""Shared modules for driftless: paths and logging."""

from .logging import configure_logging, get_logger
from .paths import CONFIG_FILE, DRIFTLESS_DIR, ensure_dirs

__all__ = [
    # Paths
    "DRIFTLESS_DIR",
    "CONFIG_FILE",
    "ensure_dirs",
    # Logging
    "configure_logging",
    "get_logger",
]
