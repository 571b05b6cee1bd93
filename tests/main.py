#!/usr/bin/env python3
"""
Test Runner for the torch_sqm Test Suite

Runs the functional (device) and/or analysis (numerical, figure-producing)
tests through pytest in a subprocess, streaming the output to the console and
to a timestamped log file.

Usage:
    # Run all tests
    python main.py

    # Run only functional tests on the CPU
    python main.py --type functional --device cpu

    # Run only analysis tests (figures land in test_figures/)
    python main.py --type analysis

    # Run specific test file
    python main.py --file tests/analysis/test_ecma418_2.py

    # Run with custom pytest args
    python main.py --type functional --pytest-args "-x -k roughness"

Logs are written to logs/test_run_YYYYMMDD_HHMMSS.log; the exit code is the
pytest exit code.
"""

import argparse
import subprocess
import sys
from datetime import datetime
from pathlib import Path
from typing import List, Optional


# ================================================================================================
# Configuration
# ================================================================================================

TESTS_DIR = Path(__file__).parent
SUITES = {
    'functional': TESTS_DIR / 'functional',
    'analysis': TESTS_DIR / 'analysis',
}
LOGS_DIR = TESTS_DIR.parent / 'logs'


# ================================================================================================
# Test Discovery
# ================================================================================================

def find_test_files(test_type: str = 'all') -> List[Path]:
    """
    Collect test modules of the requested suite(s).

    Parameters
    ----------
    test_type : {'functional', 'analysis', 'all'}
        Suite to collect.

    Returns
    -------
    list of Path
        Sorted test file paths.
    """
    names = list(SUITES) if test_type == 'all' else [test_type]
    return [path for name in names for path in sorted(SUITES[name].glob('test_*.py'))]


def build_command(test_paths: List[Path], device: Optional[str] = None,
                  pytest_args: Optional[List[str]] = None) -> List[str]:
    """pytest command line; ``device`` selects device-parametrised cases by keyword."""
    cmd = [sys.executable, '-m', 'pytest', '-v', '--tb=short', '--color=yes']
    if device:
        cmd.extend(['-k', device])
    if pytest_args:
        cmd.extend(pytest_args)
    cmd.extend(str(p) for p in test_paths)
    return cmd


# ================================================================================================
# Pytest Execution
# ================================================================================================

def run_pytest(cmd: List[str], log_file: Optional[Path] = None) -> int:
    """
    Run pytest, teeing its output to ``log_file`` when given.

    Returns
    -------
    int
        pytest exit code (130 when interrupted).
    """
    print(f"\n{'='*80}")
    print("RUNNING PYTEST")
    print(f"{'='*80}")
    print(f"Command: {' '.join(cmd)}")
    if log_file:
        print(f"Log file: {log_file.relative_to(TESTS_DIR.parent)}")
    print(f"{'='*80}\n")

    try:
        if log_file is None:
            return subprocess.run(cmd).returncode

        with open(log_file, 'w') as f:
            f.write(f"Test Run: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}\n")
            f.write(f"Command: {' '.join(cmd)}\n")
            f.write(f"{'='*80}\n\n")

            process = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.STDOUT,
                                       text=True, bufsize=1)
            for line in process.stdout:
                print(line, end='')
                f.write(line)
                f.flush()
            return process.wait()

    except KeyboardInterrupt:
        print("\n\n✗ Tests interrupted by user (Ctrl+C)")
        return 130


# ================================================================================================
# Main Execution
# ================================================================================================

def main() -> int:
    """Main entry point for test runner."""
    parser = argparse.ArgumentParser(description="Run the torch_sqm test suite with pytest")
    parser.add_argument('--type', choices=['functional', 'analysis', 'all'], default='all',
                        help="Suite to run (default: all)")
    parser.add_argument('--file', type=str, help="Single test file to run (overrides --type)")
    parser.add_argument('--device', choices=['cpu', 'cuda'],
                        help="Only run device-parametrised cases for this device")
    parser.add_argument('--pytest-args', type=str, help="Extra pytest arguments (quoted)")
    parser.add_argument('--no-log', action='store_true', help="Disable log file creation")
    args = parser.parse_args()

    print("\n" + "="*80)
    print("TORCH_SQM TEST SUITE RUNNER")
    print("="*80)

    if args.file:
        test_paths = [Path(args.file)]
        if not test_paths[0].exists():
            print(f"✗ Test file not found: {test_paths[0]}")
            return 1
    else:
        test_paths = find_test_files(args.type)
    print(f"Found: {len(test_paths)} test files")

    if not test_paths:
        print("✗ No test files found!")
        return 1

    log_file = None
    if not args.no_log:
        LOGS_DIR.mkdir(exist_ok=True)
        log_file = LOGS_DIR / f"test_run_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"

    cmd = build_command(test_paths, args.device, args.pytest_args.split() if args.pytest_args else None)

    start_time = datetime.now()
    returncode = run_pytest(cmd, log_file)
    duration = (datetime.now() - start_time).total_seconds()

    print(f"\n{'='*80}")
    print("TEST RUN SUMMARY")
    print(f"{'='*80}")
    print(f"Duration: {duration:.1f} seconds")
    if returncode == 0:
        print("Status: ✓ ALL TESTS PASSED")
    else:
        print(f"Status: ✗ TESTS FAILED (exit code: {returncode})")
    print(f"{'='*80}\n")

    return returncode


if __name__ == '__main__':
    sys.exit(main())
