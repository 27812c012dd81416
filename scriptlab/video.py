"""Convert the recorded session video into an animated webp preview."""

from __future__ import annotations

import asyncio
import logging
import shutil
import tempfile
from pathlib import Path
from typing import List, Optional

from . import settings

FILTER = "fps=15,scale=1280:-1:flags=lanczos"


class TranscodeError(Exception):
    pass


class VideoTranscoder:
    """ffmpeg first; ffmpeg frames + img2webp as the fallback."""

    def __init__(self, *, timeout_s: float = settings.VIDEO_TIMEOUT_S, logger: Optional[logging.Logger] = None):
        self.timeout_s = float(timeout_s)
        self.logger = logger or logging.getLogger(__name__)

    async def to_webp(self, source: Path, output: Path) -> Path:
        if not str(source or "") or not Path(source).exists():
            raise TranscodeError(f"input video not found: {source}")
        try:
            await self._run(
                [
                    "ffmpeg", "-y", "-i", str(source),
                    "-vcodec", "libwebp", "-filter:v", FILTER,
                    "-loop", "0", "-an", "-fps_mode", "cfr", str(output),
                ]
            )
            return Path(output)
        except TranscodeError as e:
            self.logger.warning("ffmpeg webp encode failed, trying img2webp: %s", e)

        frames_dir = Path(tempfile.mkdtemp(prefix="webp-frames-"))
        try:
            await self._run(["ffmpeg", "-y", "-i", str(source), "-vf", FILTER, str(frames_dir / "frame-%03d.png")])
            frames = sorted(str(p) for p in frames_dir.glob("frame-*.png"))
            if not frames:
                raise TranscodeError("no frames generated for webp conversion")
            await self._run(["img2webp", "-loop", "0", *frames, "-o", str(output)])
        finally:
            shutil.rmtree(frames_dir, ignore_errors=True)
        return Path(output)

    async def _run(self, command: List[str]) -> None:
        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise TranscodeError(f"{command[0]}: {e}") from e
        try:
            _, err = await asyncio.wait_for(proc.communicate(), timeout=self.timeout_s)
        except asyncio.TimeoutError as e:
            proc.kill()
            await proc.wait()
            raise TranscodeError(f"{command[0]} timed out after {self.timeout_s}s") from e
        if proc.returncode != 0:
            tail = (err or b"").decode("utf-8", errors="replace").strip().splitlines()[-3:]
            raise TranscodeError(f"{command[0]} exited {proc.returncode}: {' | '.join(tail)}")
