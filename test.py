#!/usr/bin/env python
"""Test runner script for the project tracker tests."""

import sys
import subprocess


def main():
    """Run pytest with coverage."""
    cmd = [
        sys.executable,
        "-m",
        "pytest",
        "--cov=ordered_hash_map",
        "--cov=task_model",
        "--cov=tracker_database",
        "--cov=tracker_crypto",
        "--cov=tracker_sync",
        "--cov-report=term-missing",
        "--cov-report=html",
        "-v",
    ]

    print("Running tests with coverage...\n")
    result = subprocess.run(cmd)

    if result.returncode == 0:
        print("\n✓ All tests passed!")
        print("Coverage report: htmlcov/index.html")
    else:
        print("\n✗ Tests failed!")

    return result.returncode


if __name__ == "__main__":
    sys.exit(main())
