#!/usr/bin/env python3
"""Test runner script for crm-dedup-engine."""

import subprocess
import sys
from pathlib import Path


def main():
    """Run tests with pytest."""
    project_root = Path(__file__).parent

    cmd = [
        sys.executable,
        "-m",
        "pytest",
        str(project_root / "tests"),
        "-v",
        "--tb=short",
        "--color=yes",
    ]

    # Narrow to a test directory if requested
    if len(sys.argv) > 1 and sys.argv[1] in ("unit", "integration"):
        cmd[3] = str(project_root / "tests" / sys.argv[1])

    print(f"🧪 Running tests: {' '.join(cmd)}")

    try:
        result = subprocess.run(cmd, cwd=project_root)
        sys.exit(result.returncode)
    except KeyboardInterrupt:
        print("\n⏹️  Tests interrupted by user")
        sys.exit(1)


if __name__ == "__main__":
    main()
