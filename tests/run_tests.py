"""Run the flowscope unit tests."""
from __future__ import annotations

import os
import sys
import unittest
from pathlib import Path


def main() -> int:
    # keep runs deterministic on machines with graphviz installed
    os.environ.setdefault("FLOWSCOPE_DISABLE_GRAPHVIZ", "1")
    suite = unittest.defaultTestLoader.discover(start_dir=str(Path(__file__).resolve().parent), pattern="test_*.py")
    result = unittest.TextTestRunner(verbosity=2).run(suite)
    return 0 if result.wasSuccessful() else 1


if __name__ == "__main__":
    raise SystemExit(main())
