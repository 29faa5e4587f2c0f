from __future__ import annotations

import os
import subprocess
from datetime import datetime, timezone
from functools import lru_cache
from importlib.metadata import PackageNotFoundError, version

from ..config import settings


def _package_version() -> str:
    try:
        return version("costcontrol")
    except PackageNotFoundError:
        return "0.0.0+local"


def _resolve_git_sha() -> str:
    sha = os.getenv("COSTCONTROL_GIT_SHA")
    if sha:
        return sha
    try:
        return (
            subprocess.check_output(["git", "rev-parse", "--short", "HEAD"], stderr=subprocess.DEVNULL)
            .decode("utf-8")
            .strip()
        )
    except (OSError, subprocess.CalledProcessError):
        return "unknown"


@lru_cache
def get_version_info() -> dict[str, str]:
    """Build metadata for ``/system/version``, resolved once per process."""
    return {
        "version": _package_version(),
        "gitSha": _resolve_git_sha(),
        "buildTime": os.getenv("COSTCONTROL_BUILD_TIME", datetime.now(timezone.utc).isoformat()),
        "env": os.getenv("COSTCONTROL_ENV", "development"),
        "consistencyMode": settings.commitment_consistency_mode,
    }
