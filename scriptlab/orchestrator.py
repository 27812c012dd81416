"""Run orchestrator: one script, one URL, one browser session, one manifest."""

from __future__ import annotations

import asyncio
import logging
import shutil
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, TypedDict
from urllib.parse import urlparse

from langgraph.graph import END, StateGraph

from . import settings
from .artifacts import ManifestWriter, RunDirectory
from .errors import ConfigurationError, RunError
from .flow_executor import FlowExecutor
from .injection import ScriptInjector, detect_extension_id
from .models import (
    Manifest,
    ResolvedScript,
    RunOptions,
    RunResult,
    RunStage,
    RunState,
    StepResult,
    VisualDiffResult,
)
from .network_observer import NetworkObserver
from .run_logger import RunLogger
from .run_slot import RunSlot
from .script_source import ScriptSourceResolver, validate_source
from .session import BrowserSessionManager
from .video import VideoTranscoder
from .visual_diff import VisualDiffer

SCREENSHOT_FILENAME = "screenshot.png"
VIDEO_FILENAME = "video.webm"
WEBP_FILENAME = "run.webp"
TRACE_FILENAME = "trace.zip"


class RunWorkflowState(TypedDict, total=False):
    options: RunOptions
    stage: RunStage
    run_state: RunState
    run_dir: RunDirectory
    run_logger: RunLogger
    observer: NetworkObserver
    script: ResolvedScript
    started_at: str
    page: Any
    injection_strategy: str
    step_results: List[StepResult]
    artifacts: Dict[str, str]
    visual: VisualDiffResult
    network_issues: List[str]
    manifest: Manifest


def new_run_id() -> str:
    return uuid.uuid4().hex


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class ScriptRunner:
    """Sequence the run stages. Early stages are fatal; later ones degrade to warnings."""

    def __init__(
        self,
        *,
        session_manager: Optional[BrowserSessionManager] = None,
        resolver: Optional[ScriptSourceResolver] = None,
        transcoder: Optional[VideoTranscoder] = None,
        run_slot: Optional[RunSlot] = None,
        manifest_writer: Optional[ManifestWriter] = None,
        settle_ms: int = settings.SETTLE_MS,
        smoke_selector: str = settings.SMOKE_SELECTOR,
        logger: Optional[logging.Logger] = None,
    ):
        self.session_manager = session_manager or BrowserSessionManager()
        self.resolver = resolver or ScriptSourceResolver()
        self.transcoder = transcoder or VideoTranscoder()
        self.run_slot = run_slot or RunSlot(1)
        self.manifest_writer = manifest_writer or ManifestWriter()
        self.settle_ms = int(settle_ms)
        self.smoke_selector = smoke_selector
        self.logger = logger or logging.getLogger(__name__)

    def run_sync(self, options: RunOptions) -> RunResult:
        return asyncio.run(self.run(options))

    async def run(self, options: RunOptions) -> RunResult:
        """Execute one run. Returns the result or raises RunError; never both."""
        async with self.run_slot:
            return await self._run(options)

    async def _run(self, options: RunOptions) -> RunResult:
        run_id = new_run_id()
        run_dir = RunDirectory(options.workspace or settings.default_workspace(), run_id)
        run_logger = RunLogger(run_dir.log_path, logger=self.logger)
        run_state = RunState(run_id=run_id)
        state: RunWorkflowState = {
            "options": options,
            "stage": RunStage.VALIDATING,
            "run_state": run_state,
            "run_dir": run_dir,
            "run_logger": run_logger,
            "observer": NetworkObserver(run_logger),
            "step_results": [],
            "artifacts": {},
            "network_issues": [],
        }

        try:
            app = self._build_graph().compile()
            final_state = await app.ainvoke(state)
            manifest = final_state["manifest"]
            return RunResult(
                run_id=run_id,
                run_dir=run_dir.root,
                manifest=manifest,
                manifest_path=run_dir.manifest_path,
                log_path=run_dir.log_path,
                artifacts={k: run_dir.artifacts_dir / v for k, v in final_state.get("artifacts", {}).items()},
            )
        except RunError as e:
            e.run_id = run_id
            if run_dir.logs_dir.is_dir():
                run_logger.warn("runner", "run failed", {"stage": e.stage.value, "error": str(e)})
            self.logger.warning("Run %s failed: %s", run_id, e)
            raise
        finally:
            state["observer"].detach()
            await self.session_manager.shutdown(run_state)
            run_logger.close()
            self._cleanup_temp(run_state.metadata.get("script_temp_path"))

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(RunWorkflowState)
        nodes = [
            ("validate", self._validate_node),
            ("resolve_script", self._resolve_script_node),
            ("install_engine_driver", self._install_engine_driver_node),
            ("launch_session", self._launch_session_node),
            ("select_injection", self._select_injection_node),
            ("navigate", self._navigate_node),
            ("execute_flow", self._execute_flow_node),
            ("capture_artifacts", self._capture_artifacts_node),
            ("compare_visuals", self._compare_visuals_node),
            ("finalize", self._finalize_node),
        ]
        for name, node in nodes:
            graph.add_node(name, node)
        graph.set_entry_point(nodes[0][0])
        for (current, _), (following, _) in zip(nodes, nodes[1:]):
            graph.add_edge(current, following)
        graph.add_edge(nodes[-1][0], END)
        return graph

    def _cleanup_temp(self, temp_path: Optional[Path]) -> None:
        if temp_path is None:
            return
        try:
            if temp_path.is_dir():
                shutil.rmtree(temp_path, ignore_errors=True)
            else:
                temp_path.unlink(missing_ok=True)
        except OSError as e:
            self.logger.warning("Failed to remove temporary script %s: %s", temp_path, e)

    # -- fatal stages -------------------------------------------------------

    async def _validate_node(self, state: Dict[str, Any]) -> Dict[str, Any]:
        options: RunOptions = state["options"]
        try:
            target = str(options.target_url or "").strip()
            if not target:
                raise ConfigurationError("target URL is required")
            if not urlparse(target).scheme:
                raise ConfigurationError(f"target URL has no scheme: {target}")
            validate_source(options.script)
        except ConfigurationError as e:
            raise RunError(RunStage.VALIDATING, str(e)) from e
        updated = dict(state)
        updated["stage"] = RunStage.RESOLVING_SCRIPT
        return updated

    async def _resolve_script_node(self, state: Dict[str, Any]) -> Dict[str, Any]:
        options: RunOptions = state["options"]
        run_dir: RunDirectory = state["run_dir"]
        run_state: RunState = state["run_state"]
        try:
            script = await self.resolver.resolve(options.script)
        except Exception as e:
            raise RunError(RunStage.RESOLVING_SCRIPT, f"{type(e).__name__}: {e}") from e
        # Removed in the runner's finally block, whichever stage ends the run.
        run_state.metadata["script_temp_path"] = script.temp_path

        try:
            run_dir.create()
        except OSError as e:
            raise RunError(RunStage.RESOLVING_SCRIPT, f"cannot create run directory: {e}") from e
        run_state.run_dir = run_dir.root
        run_state.artifacts_dir = run_dir.artifacts_dir
        run_state.logs_dir = run_dir.logs_dir

        run_logger: RunLogger = state["run_logger"]
        run_logger.start()
        run_logger.info(
            "runner",
            "run started",
            {"run_id": run_state.run_id, "target_url": options.target_url, "script_source": script.kind},
        )
        if not script.meta.name:
            run_logger.warn("script", "missing @name in userscript metadata", {"path": str(script.path)})
        else:
            run_logger.info("script", "userscript parsed", {"name": script.meta.name, "version": script.meta.version})

        updated = dict(state)
        updated["script"] = script
        updated["started_at"] = _now_iso()
        updated["stage"] = RunStage.INSTALLING_ENGINE_DRIVER
        return updated

    async def _install_engine_driver_node(self, state: Dict[str, Any]) -> Dict[str, Any]:
        options: RunOptions = state["options"]
        run_logger: RunLogger = state["run_logger"]
        if options.install_browsers:
            run_logger.info("runner", "installing playwright browsers", None)
            try:
                await self.session_manager.install()
            except Exception as e:
                # A missing browser surfaces again, fatally, at launch.
                run_logger.warn("runner", "browser install failed; continuing", {"error": f"{type(e).__name__}: {e}"})
        updated = dict(state)
        updated["stage"] = RunStage.LAUNCHING_SESSION
        return updated

    async def _launch_session_node(self, state: Dict[str, Any]) -> Dict[str, Any]:
        options: RunOptions = state["options"]
        run_state: RunState = state["run_state"]
        run_logger: RunLogger = state["run_logger"]
        try:
            await self.session_manager.start(run_state, options, run_logger)
        except Exception as e:
            run_logger.warn("browser", "launch failed", {"error": f"{type(e).__name__}: {e}"})
            raise RunError(RunStage.LAUNCHING_SESSION, f"launch context: {type(e).__name__}: {e}") from e
        context = run_state.browser_context
        run_logger.info("browser", "session launched", {"profile_dir": str(run_state.profile_dir)})

        if options.extension_dir:
            ext_id = detect_extension_id(context)
            if ext_id:
                run_state.metadata["extension_id"] = ext_id
                run_logger.info("extension", "detected extension id", {"id": ext_id})
            else:
                run_logger.warn("extension", "could not detect extension id from service workers", None)

        if options.replay_har:
            try:
                await context.route_from_har(options.replay_har)
                run_logger.info("har", "replaying from HAR", {"path": options.replay_har})
            except Exception as e:
                run_logger.warn("har", "route from HAR failed", {"error": str(e)})

        if options.capture_trace:
            try:
                await context.tracing.start(screenshots=True, snapshots=True, sources=True)
                run_state.metadata["tracing"] = True
            except Exception as e:
                run_logger.warn("trace", "start failed", {"error": str(e)})

        observer: NetworkObserver = state["observer"]
        observer.attach(context)

        try:
            page = self.session_manager.get_active_page(run_state) or await self.session_manager.new_page(run_state)
        except Exception as e:
            raise RunError(RunStage.LAUNCHING_SESSION, f"open page: {type(e).__name__}: {e}") from e

        updated = dict(state)
        updated["page"] = page
        updated["stage"] = RunStage.SELECTING_INJECTION_STRATEGY
        return updated

    async def _select_injection_node(self, state: Dict[str, Any]) -> Dict[str, Any]:
        options: RunOptions = state["options"]
        injector = ScriptInjector(state["run_logger"], logger=self.logger)
        strategy = await injector.apply(
            state["run_state"],
            state["page"],
            state["script"],
            engine=options.engine,
            extension_dir=options.extension_dir,
        )
        updated = dict(state)
        updated["injection_strategy"] = strategy.value
        updated["stage"] = RunStage.NAVIGATING
        return updated

    async def _navigate_node(self, state: Dict[str, Any]) -> Dict[str, Any]:
        options: RunOptions = state["options"]
        run_logger: RunLogger = state["run_logger"]
        page = state["page"]
        run_logger.info("browser", "navigating", {"url": options.target_url})
        try:
            response = await page.goto(
                options.target_url,
                wait_until="networkidle",
                timeout=float(self.session_manager.navigation_timeout_ms),
            )
        except Exception as e:
            run_logger.warn("browser", "navigation failed", {"error": f"{type(e).__name__}: {e}"})
            raise RunError(RunStage.NAVIGATING, f"navigate: {type(e).__name__}: {e}") from e
        status = getattr(response, "status", None) if response is not None else None
        run_logger.info("browser", "navigation settled", {"url": page.url, "status": status})
        updated = dict(state)
        updated["stage"] = RunStage.EXECUTING_FLOW
        return updated

    # -- recoverable stages -------------------------------------------------

    async def _execute_flow_node(self, state: Dict[str, Any]) -> Dict[str, Any]:
        options: RunOptions = state["options"]
        run_logger: RunLogger = state["run_logger"]
        page = state["page"]
        executor = FlowExecutor(run_logger)
        if options.steps:
            results = await executor.execute(page, options.steps)
        else:
            run_logger.info("flow", "no steps supplied; running smoke flow", {"selector": self.smoke_selector})
            results = await executor.run_smoke(page, self.smoke_selector)
        failed = [r.index for r in results if not r.passed]
        run_logger.info("flow", "flow finished", {"steps": len(results), "failed": failed})

        try:
            await page.wait_for_timeout(float(self.settle_ms))
        except Exception as e:
            run_logger.warn("flow", "settle wait failed", {"error": str(e)})

        updated = dict(state)
        updated["step_results"] = results
        updated["stage"] = RunStage.CAPTURING_ARTIFACTS
        return updated

    async def _capture_artifacts_node(self, state: Dict[str, Any]) -> Dict[str, Any]:
        run_state: RunState = state["run_state"]
        run_logger: RunLogger = state["run_logger"]
        run_dir: RunDirectory = state["run_dir"]
        page = state["page"]
        artifacts: Dict[str, str] = dict(state.get("artifacts") or {})
        artifacts_dir = run_dir.artifacts_dir

        screenshot_path = artifacts_dir / SCREENSHOT_FILENAME
        try:
            await page.screenshot(path=str(screenshot_path), full_page=True)
            artifacts["screenshot"] = SCREENSHOT_FILENAME
        except Exception as e:
            run_logger.warn("artifact", "screenshot failed", {"error": str(e)})

        context = run_state.browser_context
        if run_state.metadata.get("tracing"):
            trace_path = artifacts_dir / TRACE_FILENAME
            try:
                await context.tracing.stop(path=str(trace_path))
                artifacts["trace"] = TRACE_FILENAME
                run_logger.info("trace", "trace captured", {"path": str(trace_path)})
            except Exception as e:
                run_logger.warn("trace", "stop failed", {"error": str(e)})

        video = getattr(page, "video", None)
        try:
            await page.close()
        except Exception as e:
            run_logger.warn("runner", "close page", {"error": str(e)})
        if video is not None:
            video_path = artifacts_dir / VIDEO_FILENAME
            try:
                await video.save_as(str(video_path))
                await video.delete()
                artifacts["video_webm"] = VIDEO_FILENAME
            except Exception as e:
                run_logger.warn("artifact", "video save failed", {"error": str(e)})

        # Closing the context flushes the HAR file.
        await self.session_manager.close_context(run_state)
        har_name = run_dir.artifact_name("network.har")
        if har_name:
            artifacts["har"] = har_name

        if "video_webm" in artifacts:
            webp_path = artifacts_dir / WEBP_FILENAME
            try:
                await self.transcoder.to_webp(artifacts_dir / VIDEO_FILENAME, webp_path)
                artifacts["video_webp"] = WEBP_FILENAME
                run_logger.info("artifact", "webp created", {"path": str(webp_path)})
            except Exception as e:
                run_logger.warn("artifact", "webp conversion failed", {"error": str(e)})

        updated = dict(state)
        updated["artifacts"] = artifacts
        updated["stage"] = RunStage.COMPARING_VISUALS
        return updated

    async def _compare_visuals_node(self, state: Dict[str, Any]) -> Dict[str, Any]:
        options: RunOptions = state["options"]
        run_dir: RunDirectory = state["run_dir"]
        artifacts: Dict[str, str] = dict(state.get("artifacts") or {})
        visual = VisualDiffResult()
        if "screenshot" in artifacts:
            differ = VisualDiffer(state["run_logger"])
            try:
                visual = differ.compare(
                    run_dir.artifacts_dir / artifacts["screenshot"],
                    baseline_dir=options.baseline_dir,
                    artifacts_dir=run_dir.artifacts_dir,
                    threshold=options.visual_diff_threshold,
                )
            except Exception as e:
                state["run_logger"].warn("visual", "comparison failed", {"error": f"{type(e).__name__}: {e}"})
        if visual.diff_image:
            artifacts["visual_diff"] = visual.diff_image
        updated = dict(state)
        updated["visual"] = visual
        updated["artifacts"] = artifacts
        updated["stage"] = RunStage.FINALIZING
        return updated

    async def _finalize_node(self, state: Dict[str, Any]) -> Dict[str, Any]:
        options: RunOptions = state["options"]
        run_state: RunState = state["run_state"]
        run_dir: RunDirectory = state["run_dir"]
        run_logger: RunLogger = state["run_logger"]
        observer: NetworkObserver = state["observer"]
        script: ResolvedScript = state["script"]
        visual: VisualDiffResult = state.get("visual") or VisualDiffResult()
        artifacts: Dict[str, str] = state.get("artifacts") or {}

        observer.detach()
        issues = observer.summarize(options.blocked_hosts)

        try:
            manifest = Manifest(
                run_id=run_state.run_id,
                started_at=state.get("started_at") or _now_iso(),
                finished_at=_now_iso(),
                target_url=options.target_url,
                screenshot=run_dir.artifact_name(artifacts.get("screenshot")),
                video_webm=run_dir.artifact_name(artifacts.get("video_webm")),
                video_webp=run_dir.artifact_name(artifacts.get("video_webp")),
                trace_zip=run_dir.artifact_name(artifacts.get("trace")),
                har=run_dir.artifact_name(artifacts.get("har")),
                replay_har=options.replay_har or "",
                script_meta=script.meta,
                profile_folder=str(run_state.profile_dir or ""),
                engine=options.engine,
                extension_dir=options.extension_dir or "",
                injection_strategy=state.get("injection_strategy") or "",
                log_path=run_dir.log_path.relative_to(run_dir.root).as_posix(),
                visual_hash=visual.hash,
                visual_diff=visual.changed,
                visual_diff_img=run_dir.artifact_name(visual.diff_image),
                visual_diff_pixels=visual.changed_pixels,
                visual_diff_ratio=visual.changed_ratio,
                visual_diff_status=visual.status if visual.hash or visual.note else "",
                visual_diff_note=visual.note,
                network_issues=tuple(issues),
                step_results=tuple(state.get("step_results") or ()),
            )
            self.manifest_writer.write(run_dir, manifest)
        except (OSError, ValueError) as e:
            raise RunError(RunStage.FINALIZING, f"write manifest: {e}") from e

        run_logger.info("runner", "run finished", {"run_id": run_state.run_id})
        updated = dict(state)
        updated["network_issues"] = issues
        updated["manifest"] = manifest
        updated["stage"] = RunStage.DONE
        return updated
