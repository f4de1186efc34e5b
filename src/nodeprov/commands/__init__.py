"""CLI commands for nodeprov."""

from .health import health
from .provision import provision

__all__ = ["health", "provision"]
