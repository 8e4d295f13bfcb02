#!/usr/bin/env python3
"""
Monthly Interest Entry Point

Posts savings interest for one calendar month, e.g.:

    python run_interest.py 2024 1 --rate 5
"""

import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from sacco_ledger.interest_job import main


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\nInterest job interrupted")
        sys.exit(130)
