#!/usr/bin/env python3
"""Run the daily challenge command line without installing the package.

Usage:
    python run.py COMMAND [options]

Examples:
    python run.py init-db                  # Create the challenge tables
    python run.py ensure-today             # Make sure today's challenge exists
    python run.py scheduler                # Run the daily cycle until stopped
"""

import sys

from daily_challenge.cli import main

if __name__ == "__main__":
    sys.exit(main())
