"""Allow ``python -m simcal``."""

import sys

from simcal.cli import main

if __name__ == "__main__":
    sys.exit(main())
