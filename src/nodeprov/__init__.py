"""nodeprov - Bootstrap K3s nodes and report workload health."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("nodeprov")
except PackageNotFoundError:
    __version__ = "0.0.0.dev0"  # Fallback for editable installs without metadata

from .main import main

__all__ = ["main", "__version__"]
