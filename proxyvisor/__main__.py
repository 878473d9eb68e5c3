"""
Entry point for running proxyvisor via `python -m proxyvisor`.
"""

import sys

from .cli import main

if __name__ == "__main__":
    sys.exit(main())
