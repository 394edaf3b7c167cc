#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Convenience runner for the unittest suite.

Running files under `tests/` directly makes imports brittle (because
`sys.path[0]` becomes `tests/`). This wrapper keeps a stable entry-point
from repo root.

Usage:
    python run_tests.py                 # whole suite
    python run_tests.py test_lz77       # one module
"""

from __future__ import annotations

import os
import sys
import unittest

ROOT = os.path.dirname(os.path.abspath(__file__))
TESTS = os.path.join(ROOT, "tests")


def main(argv: list | None = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    sys.path.insert(0, ROOT)
    sys.path.insert(0, TESTS)
    loader = unittest.defaultTestLoader
    if argv:
        suite = unittest.TestSuite(loader.loadTestsFromName(name) for name in argv)
    else:
        suite = loader.discover(TESTS, pattern="test_*.py", top_level_dir=TESTS)
    result = unittest.TextTestRunner(verbosity=2).run(suite)
    return 0 if result.wasSuccessful() else 1


if __name__ == "__main__":
    raise SystemExit(main())
