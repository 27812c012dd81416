"""Run directory layout and manifest persistence."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import List, Optional, Union

from .models import Manifest

RUNS_DIRNAME = "runs"
ARTIFACTS_DIRNAME = "artifacts"
LOGS_DIRNAME = "logs"
MANIFEST_FILENAME = "run.json"
LOG_FILENAME = "runner.ndjson"


class RunDirectory:
    """`<workspace>/runs/<run_id>/{run.json, logs/, artifacts/}`."""

    def __init__(self, workspace: Union[str, Path], run_id: str):
        self.workspace = Path(workspace)
        self.run_id = str(run_id)
        self.root = self.workspace / RUNS_DIRNAME / self.run_id
        self.artifacts_dir = self.root / ARTIFACTS_DIRNAME
        self.logs_dir = self.root / LOGS_DIRNAME
        self.manifest_path = self.root / MANIFEST_FILENAME
        self.log_path = self.logs_dir / LOG_FILENAME

    def create(self) -> "RunDirectory":
        """Create the tree. Fails if the run directory already exists."""
        self.root.parent.mkdir(parents=True, exist_ok=True)
        self.root.mkdir(exist_ok=False)
        self.artifacts_dir.mkdir()
        self.logs_dir.mkdir()
        return self

    def artifact_name(self, path: Optional[Union[str, Path]]) -> str:
        """Return `path` relative to the artifacts dir, or "" when it does not exist.

        Raises ValueError for paths outside the artifacts dir.
        """
        if not path:
            return ""
        candidate = Path(path)
        if not candidate.is_absolute():
            candidate = self.artifacts_dir / candidate
        resolved = candidate.resolve()
        root = self.artifacts_dir.resolve()
        if root not in resolved.parents:
            raise ValueError(f"artifact {path} is outside {self.artifacts_dir}")
        if not resolved.is_file():
            return ""
        return resolved.relative_to(root).as_posix()


class ManifestWriter:
    def write(self, run_dir: RunDirectory, manifest: Manifest) -> Path:
        """Write run.json via a temporary file and an atomic rename."""
        payload = json.dumps(manifest.to_dict(), indent=2, ensure_ascii=False)
        tmp_path = run_dir.manifest_path.with_suffix(".json.tmp")
        try:
            tmp_path.write_text(payload + "\n", encoding="utf-8")
            os.replace(tmp_path, run_dir.manifest_path)
        except OSError:
            tmp_path.unlink(missing_ok=True)
            raise
        return run_dir.manifest_path


def load_manifest(path: Union[str, Path]) -> Manifest:
    return Manifest.from_dict(json.loads(Path(path).read_text(encoding="utf-8")))


def find_runs(workspace: Union[str, Path]) -> List[str]:
    """Return run ids under `<workspace>/runs`, sorted by name."""
    runs_dir = Path(workspace) / RUNS_DIRNAME
    if not runs_dir.is_dir():
        return []
    return sorted(p.name for p in runs_dir.iterdir() if p.is_dir())
