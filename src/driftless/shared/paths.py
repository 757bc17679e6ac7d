"""Path management for driftless.

Manages the ~/.driftless/ directory that holds the persistent CLI config.
"""

from pathlib import Path

# Base directory for all driftless data
DRIFTLESS_DIR = Path.home() / ".driftless"

# Persistent CLI configuration
CONFIG_FILE = DRIFTLESS_DIR / "config.yaml"


def ensure_dirs() -> None:
    """Create ~/.driftless/ (mode 0o700) if missing."""
    DRIFTLESS_DIR.mkdir(mode=0o700, exist_ok=True)
