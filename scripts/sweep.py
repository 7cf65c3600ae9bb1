#!/usr/bin/env python3
"""
Command-line reconciliation sweep for a single reference or a sweep plan.
Runs in audit mode unless --execute is given.
"""

import sys
from pathlib import Path

# Add project root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from docsweep.cli import main


if __name__ == "__main__":
    sys.exit(main())
