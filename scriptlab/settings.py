"""Environment-driven defaults for scriptlab runs."""

from __future__ import annotations

import os
from typing import List, Optional

from dotenv import load_dotenv

load_dotenv()


def _int_env(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


def _float_env(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        return default


WORKSPACE = os.getenv("SCRIPTLAB_WORKSPACE", "")

# Timeouts
NAVIGATION_TIMEOUT_MS = _int_env("SCRIPTLAB_NAV_TIMEOUT_MS", 40000)
ACTION_TIMEOUT_MS = _int_env("SCRIPTLAB_ACTION_TIMEOUT_MS", 10000)
WAIT_FOR_SELECTOR_TIMEOUT_MS = _int_env("SCRIPTLAB_WAIT_FOR_SELECTOR_TIMEOUT_MS", 8000)
ASSERT_EXISTS_TIMEOUT_MS = _int_env("SCRIPTLAB_ASSERT_EXISTS_TIMEOUT_MS", 5000)
ASSERT_NOT_EXISTS_TIMEOUT_MS = _int_env("SCRIPTLAB_ASSERT_NOT_EXISTS_TIMEOUT_MS", 3000)
SETTLE_MS = _int_env("SCRIPTLAB_SETTLE_MS", 1200)
FETCH_TIMEOUT_S = _float_env("SCRIPTLAB_FETCH_TIMEOUT_S", 30.0)
GIT_TIMEOUT_S = _float_env("SCRIPTLAB_GIT_TIMEOUT_S", 120.0)
VIDEO_TIMEOUT_S = _float_env("SCRIPTLAB_VIDEO_TIMEOUT_S", 120.0)
INSTALL_TIMEOUT_S = _float_env("SCRIPTLAB_INSTALL_TIMEOUT_S", 600.0)

# Session
VIDEO_WIDTH = _int_env("SCRIPTLAB_VIDEO_WIDTH", 1280)
VIDEO_HEIGHT = _int_env("SCRIPTLAB_VIDEO_HEIGHT", 720)
SMOKE_SELECTOR = os.getenv("SCRIPTLAB_SMOKE_SELECTOR", "text=Toggle Dark Mode")


def discover_extension_dir() -> Optional[str]:
    """Return the userscript-manager extension directory from the environment, if set."""
    value = os.getenv("USERSCRIPT_ENGINE_EXT_DIR", "").strip()
    return value or None


def baseline_dir_from_env() -> Optional[str]:
    value = os.getenv("BASELINE_DIR", "").strip()
    return value or None


def blocked_hosts_from_env() -> List[str]:
    raw = os.getenv("BLOCKED_HOSTS", "")
    return [h.strip() for h in raw.split(",") if h.strip()]


def default_workspace() -> str:
    return WORKSPACE or os.getcwd()
