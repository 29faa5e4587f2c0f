#!/usr/bin/env python3
"""Run the cost control API with auto-reload for local development.

Usage:
    python scripts/start_dev.py [--consistency serialized] [--inline-recalculation]
"""

from __future__ import annotations

import argparse
import os
import shutil
import subprocess
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
VENV_DIR = ROOT / ".venv"
VENV_BIN = VENV_DIR / ("Scripts" if sys.platform == "win32" else "bin")

DEFAULT_PORT = os.environ.get("COSTCONTROL_PORT", "8000")


def _find_executable(name: str) -> Path | None:
    """Look inside the venv first, fall back to PATH."""
    for candidate in (VENV_BIN / name, VENV_BIN / f"{name}.exe"):
        if candidate.exists():
            return candidate
    resolved = shutil.which(name)
    return Path(resolved) if resolved else None


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Start the API dev server.")
    parser.add_argument("--port", default=DEFAULT_PORT)
    parser.add_argument(
        "--consistency",
        choices=("advisory", "optimistic", "serialized"),
        help="Override COMMITMENT_CONSISTENCY_MODE for this run.",
    )
    parser.add_argument(
        "--inline-recalculation",
        action="store_true",
        help="Run cascading recalculations on the request thread instead of the worker queue.",
    )
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    uvicorn_exe = _find_executable("uvicorn")
    if uvicorn_exe is None:
        raise SystemExit("Missing required executable: uvicorn. Install dependencies and try again.")

    env = os.environ.copy()
    env.setdefault("PYTHONPATH", str(ROOT))
    env.setdefault("WATCHFILES_IGNORE_DIRECTORIES", ".venv")
    if args.consistency:
        env["COMMITMENT_CONSISTENCY_MODE"] = args.consistency
    if args.inline_recalculation:
        env["RECALCULATION_MODE"] = "inline"

    cmd = [str(uvicorn_exe), "costcontrol.main:app", "--reload", "--port", str(args.port), "--log-level", "info"]
    print(f"[launcher] starting api: {' '.join(cmd)}")
    try:
        return subprocess.call(cmd, cwd=str(ROOT), env=env)
    except KeyboardInterrupt:
        print("\n[launcher] interrupted by user.")
        return 130


if __name__ == "__main__":
    sys.exit(main())
