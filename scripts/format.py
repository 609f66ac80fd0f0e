"""Format and lint the gateway sources and tests with ruff."""

import subprocess
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent


def _targets() -> list[str]:
    tests = sorted(str(p.relative_to(ROOT)) for p in ROOT.glob("test_*.py"))
    return ["src/", "scripts/", *tests]


def _ruff(*args: str) -> None:
    subprocess.run(["uv", "run", "ruff", *args], check=True, cwd=ROOT)


def main():
    """Run ruff format, then whitespace and import fixes, then the lint pass."""
    targets = _targets()
    try:
        _ruff("format", *targets)
        _ruff("check", "--preview", "--fix", "--unsafe-fixes", "--select", "W291,W293,E3,I", *targets)
        _ruff("check", "--fix", "--ignore", "E501", *targets)
    except subprocess.CalledProcessError as e:
        print(f"ruff failed: {' '.join(e.cmd)}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
