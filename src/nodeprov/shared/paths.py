"""Path management for nodeprov.

Provisioning runs as root on the node being bootstrapped, so state and
logs live in the usual system locations.
"""

from pathlib import Path

# Base directory for nodeprov state
NODEPROV_STATE_DIR = Path("/var/lib/nodeprov")

# Log directory
LOG_DIR = Path("/var/log/nodeprov")

# Provisioning run log
PROVISION_LOG_FILE = LOG_DIR / "provision.log"

# Health daemon (when not supervised by systemd)
HEALTH_PID_FILE = NODEPROV_STATE_DIR / "health.pid"
HEALTH_LOG_FILE = LOG_DIR / "health.log"


def ensure_dirs() -> None:
    """Create directory structure if missing.

    Creates:
    - /var/lib/nodeprov/ (mode 0o700)
    - /var/log/nodeprov/ (mode 0o755)
    """
    NODEPROV_STATE_DIR.mkdir(mode=0o700, parents=True, exist_ok=True)
    LOG_DIR.mkdir(mode=0o755, parents=True, exist_ok=True)


def get_ready_marker(role: str) -> Path:
    """Get path to the marker written after a successful run.

    Args:
        role: Node role ("server" or "agent")

    Returns:
        Path to the marker file
    """
    return NODEPROV_STATE_DIR / f"{role}-ready"
