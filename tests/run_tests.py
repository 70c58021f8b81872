#!/usr/bin/env python3
"""
Test runner for MarketDesk
Discovers tests/test_*.py and runs them from the repository root.
"""
import os
import sys
import unittest
import logging

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

# Configure logging for tests
logging.basicConfig(
    level=logging.WARNING,  # Only show warnings and errors during tests
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)


def run_tests(pattern: str = 'test_*.py'):
    """Discover and run all tests"""
    if ROOT not in sys.path:
        sys.path.insert(0, ROOT)

    loader = unittest.TestLoader()
    suite = loader.discover(os.path.join(ROOT, 'tests'), pattern=pattern)

    runner = unittest.TextTestRunner(verbosity=2)
    result = runner.run(suite)

    return 0 if result.wasSuccessful() else 1


if __name__ == '__main__':
    sys.exit(run_tests(*sys.argv[1:2]))
