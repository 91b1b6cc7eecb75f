#!/usr/bin/env python3
"""
Test execution script for different test categories.
Supports running unit tests, the end-to-end pipeline test, and the full suite.
"""

import sys
import subprocess
import argparse


def run_command(cmd, description):
    """Run a command and handle errors"""
    print(f"\n🔄 {description}")
    print(f"Command: {' '.join(cmd)}")

    try:
        result = subprocess.run(cmd, capture_output=True, text=True, check=True)
        print(f"✅ {description} - PASSED")
        if result.stdout:
            print("Output:", result.stdout)
        return True
    except subprocess.CalledProcessError as e:
        print(f"❌ {description} - FAILED")
        print("Error:", e.stdout, e.stderr)
        return False


def main():
    parser = argparse.ArgumentParser(description="Run different test categories")
    parser.add_argument(
        "--category",
        choices=["unit", "services", "e2e", "all"],
        default="all",
        help="Test category to run"
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Verbose output"
    )

    args = parser.parse_args()

    base_cmd = [sys.executable, "-m", "pytest"]

    if args.verbose:
        base_cmd.append("-v")

    success = True

    if args.category == "unit":
        print("🧪 Running Unit Tests")
        success &= run_command(base_cmd + ["tests/unit"], "Unit tests with fake chain sources")

    elif args.category == "services":
        print("⚙️ Running Service Tests")
        success &= run_command(base_cmd + ["tests/unit/services"], "Ingestion service tests")

    elif args.category == "e2e":
        print("🔗 Running End-to-End Test")
        success &= run_command(
            base_cmd + ["tests/test_end_to_end.py"],
            "Backfill to Parquet end-to-end test"
        )

    elif args.category == "all":
        print("🚀 Running All Tests")
        success &= run_command(base_cmd + ["tests/"], "Complete test suite")

    if success:
        print("\n🎉 All tests passed!")
        sys.exit(0)
    else:
        print("\n💥 Some tests failed!")
        sys.exit(1)


if __name__ == "__main__":
    main()
