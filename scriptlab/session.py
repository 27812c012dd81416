"""Playwright session lifecycle for one run."""

from __future__ import annotations

import asyncio
import logging
import shutil
import sys
import tempfile
import time
from pathlib import Path
from typing import Any, Optional, Sequence

from playwright.async_api import async_playwright

from . import settings
from .errors import SessionError
from .models import RunOptions, RunState
from .run_logger import RunLogger

VIDEO_DIRNAME = "video"
HAR_FILENAME = "network.har"


class BrowserSessionManager:
    """Manage Playwright driver/context/page lifecycle."""

    def __init__(
        self,
        *,
        timeout_ms: int = settings.ACTION_TIMEOUT_MS,
        navigation_timeout_ms: int = settings.NAVIGATION_TIMEOUT_MS,
        install_timeout_s: float = settings.INSTALL_TIMEOUT_S,
        logger: Optional[logging.Logger] = None,
    ):
        self.timeout_ms = int(timeout_ms)
        self.navigation_timeout_ms = int(navigation_timeout_ms)
        self.install_timeout_s = float(install_timeout_s)
        self.logger = logger or logging.getLogger(__name__)

    async def install(self, browsers: Sequence[str] = ("chromium",)) -> None:
        """Install browser binaries via the bundled Playwright driver."""
        proc = await asyncio.create_subprocess_exec(
            sys.executable,
            "-m",
            "playwright",
            "install",
            *browsers,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        try:
            out, _ = await asyncio.wait_for(proc.communicate(), timeout=self.install_timeout_s)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise
        if proc.returncode != 0:
            output = (out or b"").decode("utf-8", errors="replace").strip()
            raise SessionError(f"playwright install exited {proc.returncode}: {output}")

    def profile_dir_for(self, run_state: RunState, options: RunOptions) -> Path:
        if options.profile_dir:
            return Path(options.profile_dir).expanduser()
        return Path(tempfile.gettempdir()) / f"scriptlab-profile-{run_state.run_id}"

    async def start(self, run_state: RunState, options: RunOptions, run_logger: RunLogger) -> RunState:
        """Launch a persistent context recording video (and HAR when asked)."""
        if run_state.artifacts_dir is None:
            raise SessionError("run directory is not prepared")
        artifacts_dir = Path(run_state.artifacts_dir)
        profile_dir = self.profile_dir_for(run_state, options)
        shutil.rmtree(profile_dir, ignore_errors=True)
        run_state.profile_dir = profile_dir

        launch_args = ["--disable-dev-shm-usage"]
        launch_kwargs: dict[str, Any] = {
            "headless": bool(options.headless),
            "record_video_dir": str(artifacts_dir / VIDEO_DIRNAME),
            "record_video_size": {"width": settings.VIDEO_WIDTH, "height": settings.VIDEO_HEIGHT},
        }
        if options.extension_dir:
            ext_path = Path(options.extension_dir).expanduser()
            if not ext_path.exists():
                raise SessionError(f"Extension path not found: {ext_path}")
            launch_args.extend(
                [
                    f"--disable-extensions-except={ext_path}",
                    f"--load-extension={ext_path}",
                ]
            )
            # Extensions need the full chromium build, headless included.
            launch_kwargs["channel"] = "chromium"
            run_logger.info("runner", "attempting MV3 extension load", {"extension_dir": str(ext_path)})
        if options.capture_har:
            launch_kwargs["record_har_path"] = str(artifacts_dir / HAR_FILENAME)
        launch_kwargs["args"] = launch_args

        pw = await async_playwright().start()
        try:
            context = await pw.chromium.launch_persistent_context(str(profile_dir), **launch_kwargs)
        except Exception:
            await pw.stop()
            raise

        context.set_default_timeout(float(self.timeout_ms))
        context.set_default_navigation_timeout(float(self.navigation_timeout_ms))

        run_state.playwright = pw
        run_state.browser_context = context
        run_state.active = True
        run_state.started_at = time.time()
        run_state.metadata.update(
            {
                "timeout_ms": self.timeout_ms,
                "navigation_timeout_ms": self.navigation_timeout_ms,
                "headless": bool(options.headless),
                "persistent_context": True,
            }
        )
        return run_state

    def get_active_page(self, run_state: RunState):
        if run_state is None:
            return None

        page = getattr(run_state, "page", None)
        if page is not None and not page.is_closed():
            return page

        context = getattr(run_state, "browser_context", None)
        if context is None:
            return None
        for candidate in context.pages:
            if not candidate.is_closed():
                run_state.page = candidate
                return candidate
        return None

    async def new_page(self, run_state: RunState):
        context = getattr(run_state, "browser_context", None)
        if context is None:
            raise SessionError("Browser context is not initialized")

        page = await context.new_page()
        page.set_default_timeout(float(self.timeout_ms))
        page.set_default_navigation_timeout(float(self.navigation_timeout_ms))
        run_state.page = page
        return page

    async def close_context(self, run_state: Optional[RunState]) -> None:
        """Close the context, flushing HAR and video files to disk."""
        if run_state is None:
            return
        context = getattr(run_state, "browser_context", None)
        if context is None:
            return
        try:
            await context.close()
        except Exception as e:
            self.logger.warning("Failed to close browser context: %s", e)
        run_state.browser_context = None
        run_state.page = None

    async def shutdown(self, run_state: Optional[RunState]) -> None:
        if run_state is None:
            return

        await self.close_context(run_state)

        pw = getattr(run_state, "playwright", None)
        if pw is not None:
            try:
                await pw.stop()
            except Exception as e:
                self.logger.warning("Failed to stop playwright: %s", e)
            run_state.playwright = None

        run_state.active = False
        run_state.ended_at = time.time()
