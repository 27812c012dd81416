"""Exception taxonomy for scriptlab runs."""

from __future__ import annotations

from typing import Optional

from .models import RunStage


class ScriptLabError(Exception):
    """Base class for all scriptlab errors."""


class ConfigurationError(ScriptLabError, ValueError):
    """Missing or ambiguous run configuration. Raised before any resource is allocated."""


class ScriptAcquisitionError(ScriptLabError):
    """The script could not be read, fetched or cloned."""


class SessionError(ScriptLabError):
    """Browser driver install, launch or navigation failed."""


class RunError(ScriptLabError):
    """A fatal pipeline failure. No manifest was written."""

    def __init__(self, stage: RunStage, message: str, run_id: Optional[str] = None):
        self.stage = stage
        self.run_id = run_id
        super().__init__(f"{stage.value}: {message}")
