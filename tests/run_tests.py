#!/usr/bin/env python3
"""
Test runner for LDAP Bulk Import.

Runs every test module in this directory in its own interpreter so that
logging configuration done by one module cannot leak into another.
"""

import os
import sys
import subprocess


def run_test_module(test_file):
    """Run a single test module and return True when it passed."""
    print(f"\n{'='*60}")
    print(f"Running {os.path.basename(test_file)}")
    print('='*60)

    result = subprocess.run([sys.executable, test_file], cwd=os.path.dirname(test_file))
    if result.returncode != 0:
        print(f"{os.path.basename(test_file)} failed with exit code {result.returncode}")
        return False
    return True


def main(selected=None):
    """Run all test modules, or only those whose names contain one of ``selected``."""
    tests_dir = os.path.dirname(os.path.abspath(__file__))

    test_files = sorted(
        os.path.join(tests_dir, name) for name in os.listdir(tests_dir)
        if name.startswith('test_') and name.endswith('.py')
        and (not selected or any(pattern in name for pattern in selected))
    )

    if not test_files:
        print("No test modules found!")
        return 1

    print(f"Found {len(test_files)} test modules:")
    for test_file in test_files:
        print(f"  - {os.path.basename(test_file)}")

    failed = [f for f in test_files if not run_test_module(f)]

    print(f"\n{'='*60}")
    print("TEST SUMMARY")
    print('='*60)
    print(f"Modules: {len(test_files)}")
    print(f"Passed: {len(test_files) - len(failed)}")
    print(f"Failed: {len(failed)}")

    if failed:
        for test_file in failed:
            print(f"  ✗ {os.path.basename(test_file)}")
        return 1
    print("\n✓ All tests passed!")
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
