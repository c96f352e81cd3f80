#!/usr/bin/env python3
"""Entry point for running the bunq to Firefly III sync."""
import sys
from pathlib import Path

# Add src directory to Python path
src_dir = Path(__file__).parent / "src"
sys.path.insert(0, str(src_dir))

from bunq_sync.main import main  # noqa: E402

if __name__ == "__main__":
    sys.exit(main())
