"""Allow running as ``python -m nodeprov``."""

from .main import main

if __name__ == "__main__":
    main()
