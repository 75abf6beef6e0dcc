"""Allow ``python -m motion_watch``."""

import sys

from .app import main

if __name__ == "__main__":  # pragma: no cover - module behaviour
    sys.exit(main())
