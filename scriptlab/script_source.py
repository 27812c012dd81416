"""Turn a script reference into a readable local file plus parsed metadata."""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Optional

import httpx

from . import settings
from .errors import ConfigurationError, ScriptAcquisitionError
from .models import ResolvedScript, ScriptSource
from .userscript_meta import parse_userscript_text

TEMP_PREFIX = "userscript-"
TEMP_SUFFIX = ".user.js"


def validate_source(source: Optional[ScriptSource]) -> str:
    """Return the single source kind, or raise ConfigurationError."""
    if source is None:
        raise ConfigurationError("a script source is required")
    kinds = source.kinds()
    if not kinds:
        raise ConfigurationError(
            "provide one of script path, script content, script URL, or script git repo"
        )
    if len(kinds) > 1:
        raise ConfigurationError(f"ambiguous script source: {', '.join(kinds)} given")
    if kinds[0] == "git" and not (source.git_repo and source.git_path):
        raise ConfigurationError("git script source needs both repo and path")
    return kinds[0]


class ScriptSourceResolver:
    """Resolve local, inline, remote and git script sources."""

    def __init__(
        self,
        *,
        fetch_timeout_s: float = settings.FETCH_TIMEOUT_S,
        git_timeout_s: float = settings.GIT_TIMEOUT_S,
        tmp_dir: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.fetch_timeout_s = float(fetch_timeout_s)
        self.git_timeout_s = float(git_timeout_s)
        self.tmp_dir = tmp_dir
        self.transport = transport
        self.logger = logger or logging.getLogger(__name__)

    async def resolve(self, source: ScriptSource) -> ResolvedScript:
        """Resolve `source` to a local file.

        Temporary files and clones created here are removed again when
        resolution fails.
        """
        kind = validate_source(source)
        if kind == "path":
            path = Path(str(source.path)).expanduser()
            return self._load(path, kind=kind)
        if kind == "content":
            tmp = self._write_temp(str(source.content).encode("utf-8"), label="inline")
            return self._load_or_remove(tmp, kind=kind, temp_path=tmp)
        if kind == "url":
            data = await self._fetch(str(source.url))
            tmp = self._write_temp(data, label="url")
            return self._load_or_remove(tmp, kind=kind, temp_path=tmp)
        clone_dir = await self._clone(str(source.git_repo))
        try:
            path = self._path_in_clone(clone_dir, str(source.git_path))
        except ScriptAcquisitionError:
            _remove(clone_dir)
            raise
        return self._load_or_remove(path, kind=kind, temp_path=clone_dir)

    def _load_or_remove(self, path: Path, *, kind: str, temp_path: Path) -> ResolvedScript:
        try:
            return self._load(path, kind=kind, temp_path=temp_path)
        except ScriptAcquisitionError:
            _remove(temp_path)
            raise

    def _load(self, path: Path, *, kind: str, temp_path: Optional[Path] = None) -> ResolvedScript:
        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise ScriptAcquisitionError(f"cannot read script {path}: {e}") from e
        return ResolvedScript(
            path=path,
            content=content,
            meta=parse_userscript_text(content),
            kind=kind,
            temp_path=temp_path,
        )

    def _write_temp(self, data: bytes, *, label: str) -> Path:
        fd, temp_path = tempfile.mkstemp(prefix=f"{TEMP_PREFIX}{label}-", suffix=TEMP_SUFFIX, dir=self.tmp_dir)
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
        except OSError as e:
            _remove(Path(temp_path))
            raise ScriptAcquisitionError(f"cannot write temporary script: {e}") from e
        return Path(temp_path)

    async def _fetch(self, url: str) -> bytes:
        # httpx timeouts apply per phase; the deadline covers the whole body.
        try:
            async with httpx.AsyncClient(
                timeout=self.fetch_timeout_s,
                follow_redirects=True,
                transport=self.transport,
            ) as client:
                response = await asyncio.wait_for(client.get(url), timeout=self.fetch_timeout_s)
        except asyncio.TimeoutError as e:
            raise ScriptAcquisitionError(f"fetch {url}: timed out after {self.fetch_timeout_s}s") from e
        except httpx.HTTPError as e:
            raise ScriptAcquisitionError(f"fetch {url}: {type(e).__name__}: {e}") from e
        if response.status_code >= 400:
            raise ScriptAcquisitionError(f"fetch {url}: bad status {response.status_code}")
        return response.content

    async def _clone(self, repo: str) -> Path:
        clone_dir = Path(tempfile.mkdtemp(prefix=f"{TEMP_PREFIX}git-", dir=self.tmp_dir))
        try:
            await self._run_git_clone(repo, clone_dir)
        except BaseException:
            _remove(clone_dir)
            raise
        return clone_dir

    async def _run_git_clone(self, repo: str, clone_dir: Path) -> None:
        try:
            proc = await asyncio.create_subprocess_exec(
                "git",
                "clone",
                "--depth",
                "1",
                "--single-branch",
                repo,
                str(clone_dir),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            raise ScriptAcquisitionError(f"git clone {repo}: {e}") from e
        try:
            out, _ = await asyncio.wait_for(proc.communicate(), timeout=self.git_timeout_s)
        except asyncio.TimeoutError as e:
            proc.kill()
            await proc.wait()
            raise ScriptAcquisitionError(f"git clone {repo}: timed out after {self.git_timeout_s}s") from e
        if proc.returncode != 0:
            output = (out or b"").decode("utf-8", errors="replace").strip()
            raise ScriptAcquisitionError(f"git clone {repo}: exit {proc.returncode}: {output}")

    @staticmethod
    def _path_in_clone(clone_dir: Path, rel_path: str) -> Path:
        root = clone_dir.resolve()
        target = (root / rel_path).resolve()
        if target != root and root not in target.parents:
            raise ScriptAcquisitionError(f"git path escapes repository: {rel_path}")
        return target


def _remove(path: Path) -> None:
    if path.is_dir():
        shutil.rmtree(path, ignore_errors=True)
    else:
        path.unlink(missing_ok=True)
