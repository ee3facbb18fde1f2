#!/usr/bin/env python3
"""
Test runner script for fame_toolkit

Runs the test modules by analysis stage and prints a pass/fail summary.
"""

import subprocess
import sys
import os


def run_command(cmd, description):
    """Run a command and return success status"""
    print(f"\n{'='*60}")
    print(f"🧪 {description}")
    print('='*60)

    result = subprocess.run(cmd, check=False, cwd=os.path.dirname(os.path.abspath(__file__)))
    if result.returncode == 0:
        print(f"✅ {description} - PASSED")
        return True
    print(f"❌ {description} - FAILED (exit code: {result.returncode})")
    return False


def main():
    """Run the test suite stage by stage"""

    print("FAMe Toolkit Test Suite")
    print("="*60)

    pytest_cmd = [sys.executable, "-m", "pytest"]
    test_commands = [
        (pytest_cmd + ["tests/test_validation.py", "tests/test_data_import.py", "-v", "--tb=short"],
         "Loading and Alignment Tests"),
        (pytest_cmd + ["tests/test_preprocessing.py", "tests/test_normalization.py", "-v", "--tb=short"],
         "Preprocessing and Transform Tests"),
        (pytest_cmd + ["tests/test_statistical_analysis.py", "-v", "--tb=short"],
         "Count Model Tests"),
        (pytest_cmd + ["tests/test_annotation.py", "tests/test_enrichment.py",
                       "tests/test_pattern_clustering.py", "-v", "--tb=short"],
         "Annotation, Enrichment and Clustering Tests"),
        (pytest_cmd + ["tests/", "--tb=short", "-q"], "Complete Test Suite (Quick)"),
    ]

    results = []
    for cmd, description in test_commands:
        success = run_command(cmd, description)
        results.append((description, success))

    print(f"\n{'='*60}")
    print("📊 TEST SUMMARY")
    print('='*60)

    passed_count = 0
    for description, success in results:
        status = "✅ PASSED" if success else "❌ FAILED"
        print(f"{status:12} - {description}")
        if success:
            passed_count += 1

    print(f"\n Overall: {passed_count}/{len(results)} test suites passed")
    if passed_count == len(results):
        print("All test suites completed successfully!")
        return 0
    print(f" {len(results) - passed_count} test suite(s) had failures")
    return 1


if __name__ == "__main__":
    sys.exit(main())
