"""Allow running hvtest as ``python -m hvtest``."""

import sys

from hvtest.cli import main

if __name__ == "__main__":
    sys.exit(main())
