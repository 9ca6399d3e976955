"""Module entrypoint for ``python -m kvmdriver``."""

import sys

from kvmdriver.cli import main

if __name__ == "__main__":
    sys.exit(main())
