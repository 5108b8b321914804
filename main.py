#!/usr/bin/env python3
"""
sqlrs client: prepare databases, run psql/pgbench against them, clean up.

This script supports running directly from a source checkout. It adds the
local `src/` directory to sys.path so the modules import without installing
the project. For regular use, install the project and use the `sqlrs`
console script.
"""

import os
import sys

# Add src/ to path to import modules directly
REPO_ROOT = os.path.dirname(os.path.abspath(__file__))
SRC_PATH = os.path.join(REPO_ROOT, "src")
if SRC_PATH not in sys.path:
    sys.path.insert(0, SRC_PATH)

from cli import main


if __name__ == "__main__":
    sys.exit(main())
