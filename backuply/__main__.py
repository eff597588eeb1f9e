#!/usr/bin/env python3
"""
Run backuply as ``python -m backuply``.

Expected failures are reported and turned into exit codes by ``cli.main``;
anything else propagates with its traceback.
"""

import sys
from .cli import main


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\nOperation cancelled by user", file=sys.stderr)
        sys.exit(130)
