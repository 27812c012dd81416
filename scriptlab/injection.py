"""Injection strategy selection and application."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Optional

from .models import InjectionStrategy, ResolvedScript, RunState
from .run_logger import RunLogger

# Stable store ids of userscript-manager extensions keyed by engine name.
KNOWN_ENGINE_EXTENSION_IDS: Dict[str, str] = {
    "tampermonkey": "dhdgffkkebhmkfjojejmpbldmpobfkfo",
}
IMPORT_PAGE = "userscript.html"
IMPORT_SETTLE_MS = 1200


def named_engine(engine: str) -> Optional[str]:
    """Return the userscript-manager key named in a free-text engine label."""
    label = str(engine or "").lower()
    for key in KNOWN_ENGINE_EXTENSION_IDS:
        if key in label:
            return key
    return None


def select_injection_strategy(engine: str, extension_dir: Optional[str]) -> InjectionStrategy:
    """Pick the strategy from configuration alone."""
    if named_engine(engine) and extension_dir:
        return InjectionStrategy.EXTENSION_INSTALL
    return InjectionStrategy.PRE_NAVIGATION_INJECTION


def detect_extension_id(context: Any) -> str:
    """Recover an extension id from background service-worker URLs."""
    for worker in list(getattr(context, "service_workers", []) or []):
        url = str(getattr(worker, "url", "") or "")
        if url.startswith("chrome-extension://"):
            ext_id = url[len("chrome-extension://"):].split("/", 1)[0]
            if ext_id:
                return ext_id
    return ""


class ExtensionInstallError(Exception):
    """The userscript manager refused or failed the import."""


class ExtensionInstaller:
    """Install a script through a userscript manager's own import page."""

    def __init__(self, run_logger: RunLogger, *, timeout_ms: int = 10000):
        self.run_logger = run_logger
        self.timeout_ms = int(timeout_ms)

    async def install(self, context: Any, script_path: Path, *, engine_key: str, extension_id: str = "") -> None:
        ext_id = extension_id or KNOWN_ENGINE_EXTENSION_IDS.get(engine_key, "")
        if not ext_id:
            raise ExtensionInstallError(f"no extension id known for engine {engine_key!r}")
        page = await context.new_page()
        try:
            import_url = f"chrome-extension://{ext_id}/{IMPORT_PAGE}"
            await page.goto(import_url, wait_until="networkidle", timeout=self.timeout_ms)
            file_input = await page.query_selector("input[type=file]")
            if file_input is None:
                raise ExtensionInstallError(f"file input not found on {import_url}")
            await file_input.set_input_files(str(script_path))
            await page.wait_for_timeout(IMPORT_SETTLE_MS)
            self.run_logger.info("injection", "script dropped into manager import", {"extension_id": ext_id})
        finally:
            try:
                await page.close()
            except Exception:
                pass


class ScriptInjector:
    """Apply the selected strategy, falling back to pre-navigation injection."""

    def __init__(
        self,
        run_logger: RunLogger,
        installer: Optional[ExtensionInstaller] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.run_logger = run_logger
        self.installer = installer or ExtensionInstaller(run_logger)
        self.logger = logger or logging.getLogger(__name__)

    async def apply(
        self,
        run_state: RunState,
        page: Any,
        script: ResolvedScript,
        *,
        engine: str,
        extension_dir: Optional[str],
    ) -> InjectionStrategy:
        requested = select_injection_strategy(engine, extension_dir)
        self.run_logger.info("injection", "strategy selected", {"strategy": requested.value, "engine": engine})

        if requested is InjectionStrategy.EXTENSION_INSTALL:
            engine_key = named_engine(engine) or ""
            try:
                await self.installer.install(
                    run_state.browser_context,
                    script.path,
                    engine_key=engine_key,
                    extension_id=str(run_state.metadata.get("extension_id") or ""),
                )
                return InjectionStrategy.EXTENSION_INSTALL
            except Exception as e:
                self._fallback(requested, f"{type(e).__name__}: {e}")
        elif named_engine(engine) and not extension_dir:
            self._fallback(InjectionStrategy.EXTENSION_INSTALL, "no extension directory configured")

        try:
            await page.add_init_script(script=script.content)
        except Exception as e:
            self.run_logger.warn("injection", "init script injection failed; continuing", {"error": str(e)})
        return InjectionStrategy.PRE_NAVIGATION_INJECTION

    def _fallback(self, requested: InjectionStrategy, reason: str) -> None:
        self.run_logger.warn(
            "injection",
            "falling back to pre-navigation injection",
            {
                "requested": requested.value,
                "applied": InjectionStrategy.PRE_NAVIGATION_INJECTION.value,
                "reason": reason,
            },
        )
