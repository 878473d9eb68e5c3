"""Run the proxy supervisor."""

import sys

from proxyvisor.cli import main

if __name__ == "__main__":
    sys.exit(main())
