"""Shared models for the scriptlab run pipeline."""

from __future__ import annotations

import enum
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from . import settings


class RunStage(str, enum.Enum):
    """Pipeline stages, in execution order."""

    VALIDATING = "validating"
    RESOLVING_SCRIPT = "resolving_script"
    INSTALLING_ENGINE_DRIVER = "installing_engine_driver"
    LAUNCHING_SESSION = "launching_session"
    SELECTING_INJECTION_STRATEGY = "selecting_injection_strategy"
    NAVIGATING = "navigating"
    EXECUTING_FLOW = "executing_flow"
    CAPTURING_ARTIFACTS = "capturing_artifacts"
    COMPARING_VISUALS = "comparing_visuals"
    FINALIZING = "finalizing"
    DONE = "done"
    FAILED = "failed"


class InjectionStrategy(str, enum.Enum):
    """How the script under test is made to run on the target page."""

    EXTENSION_INSTALL = "extension_install"
    PRE_NAVIGATION_INJECTION = "pre_navigation_injection"


@dataclass(frozen=True)
class Step:
    """One flow instruction."""

    action: str
    target: str = ""
    value: str = ""
    attr: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Step":
        return cls(
            action=str(data.get("action") or "").strip(),
            target=str(data.get("target") or ""),
            value=str(data.get("value") or ""),
            attr=str(data.get("attr") or ""),
        )


@dataclass(frozen=True)
class StepResult:
    """Outcome of one executed step. `index` is 1-based."""

    index: int
    action: str
    target: str
    passed: bool
    detail: str = ""


@dataclass(frozen=True)
class ScriptSource:
    """Script reference. Exactly one of the four forms must be set."""

    path: Optional[str] = None
    content: Optional[str] = None
    url: Optional[str] = None
    git_repo: Optional[str] = None
    git_path: Optional[str] = None

    def kinds(self) -> List[str]:
        found: List[str] = []
        if self.path:
            found.append("path")
        if self.content:
            found.append("content")
        if self.url:
            found.append("url")
        if self.git_repo or self.git_path:
            found.append("git")
        return found


@dataclass(frozen=True)
class ScriptMeta:
    """Parsed `// ==UserScript==` header."""

    name: str = ""
    namespace: str = ""
    version: str = ""
    description: str = ""
    match: Tuple[str, ...] = ()
    include: Tuple[str, ...] = ()
    exclude: Tuple[str, ...] = ()
    run_at: str = ""
    grants: Tuple[str, ...] = ()
    raw: str = ""

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key in ("match", "include", "exclude", "grants"):
            data[key] = list(data[key])
        return data

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "ScriptMeta":
        d = dict(data or {})
        return cls(
            name=str(d.get("name") or ""),
            namespace=str(d.get("namespace") or ""),
            version=str(d.get("version") or ""),
            description=str(d.get("description") or ""),
            match=tuple(d.get("match") or ()),
            include=tuple(d.get("include") or ()),
            exclude=tuple(d.get("exclude") or ()),
            run_at=str(d.get("run_at") or ""),
            grants=tuple(d.get("grants") or ()),
            raw=str(d.get("raw") or ""),
        )


@dataclass(frozen=True)
class RunOptions:
    """Immutable run-level configuration."""

    target_url: str
    script: ScriptSource
    engine: str = "Tampermonkey (init-script)"
    extension_dir: Optional[str] = None
    headless: bool = True
    profile_dir: Optional[str] = None
    capture_trace: bool = False
    capture_har: bool = False
    replay_har: Optional[str] = None
    baseline_dir: Optional[str] = None
    visual_diff_threshold: float = 0.0
    blocked_hosts: Tuple[str, ...] = ()
    steps: Tuple[Step, ...] = ()
    workspace: Optional[str] = None
    install_browsers: bool = True

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RunOptions":
        """Build options from a JSON-like mapping (e.g. a request body).

        Extension dir, baseline dir and blocked hosts fall back to the
        environment when the mapping leaves them out.
        """
        d = dict(data or {})
        script = ScriptSource(
            path=d.get("script_path") or None,
            content=d.get("script_content") or None,
            url=d.get("script_url") or None,
            git_repo=d.get("script_git_repo") or None,
            git_path=d.get("script_git_path") or None,
        )
        steps = tuple(Step.from_dict(s) for s in (d.get("steps") or []) if isinstance(s, Mapping))
        raw_hosts = d.get("blocked_hosts")
        if raw_hosts is None:
            raw_hosts = settings.blocked_hosts_from_env()
        hosts = tuple(str(h).strip() for h in raw_hosts if str(h).strip())
        return cls(
            target_url=str(d.get("target_url") or d.get("url") or "").strip(),
            script=script,
            engine=str(d.get("engine") or cls.engine),
            extension_dir=d.get("extension_dir") or settings.discover_extension_dir(),
            headless=bool(d.get("headless", True)),
            profile_dir=d.get("profile_dir") or None,
            capture_trace=bool(d.get("capture_trace", False)),
            capture_har=bool(d.get("capture_har", False)),
            replay_har=d.get("replay_har") or None,
            baseline_dir=d.get("baseline_dir") or settings.baseline_dir_from_env(),
            visual_diff_threshold=float(d.get("visual_diff_threshold") or 0.0),
            blocked_hosts=hosts,
            steps=steps,
            workspace=d.get("workspace") or None,
            install_browsers=bool(d.get("install_browsers", True)),
        )


@dataclass
class RunState:
    """Mutable runtime state for an active run."""

    run_id: str
    run_dir: Optional[Path] = None
    artifacts_dir: Optional[Path] = None
    logs_dir: Optional[Path] = None
    profile_dir: Optional[Path] = None
    active: bool = False
    started_at: Optional[float] = None
    ended_at: Optional[float] = None
    playwright: Any = None
    browser_context: Any = None
    page: Any = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ResolvedScript:
    """A script source turned into a readable local file."""

    path: Path
    content: str
    meta: ScriptMeta
    kind: str
    temp_path: Optional[Path] = None


@dataclass(frozen=True)
class VisualDiffResult:
    """Outcome of comparing a screenshot against a baseline."""

    hash: str = ""
    changed: bool = False
    diff_image: str = ""
    changed_pixels: int = 0
    changed_ratio: float = 0.0
    status: str = "skipped"
    note: str = ""


@dataclass(frozen=True)
class Manifest:
    """The run's permanent record, persisted to run.json."""

    run_id: str
    started_at: str
    finished_at: str
    target_url: str
    screenshot: str = ""
    video_webm: str = ""
    video_webp: str = ""
    trace_zip: str = ""
    har: str = ""
    replay_har: str = ""
    script_meta: ScriptMeta = field(default_factory=ScriptMeta)
    profile_folder: str = ""
    engine: str = ""
    extension_dir: str = ""
    injection_strategy: str = ""
    log_path: str = ""
    visual_hash: str = ""
    visual_diff: bool = False
    visual_diff_img: str = ""
    visual_diff_pixels: int = 0
    visual_diff_ratio: float = 0.0
    visual_diff_status: str = ""
    visual_diff_note: str = ""
    network_issues: Tuple[str, ...] = ()
    step_results: Tuple[StepResult, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        for key, value in asdict(self).items():
            if key in ("run_id", "started_at", "finished_at", "target_url"):
                data[key] = value
            elif value in ("", None, (), [], 0, 0.0, False):
                # Optional fields are omitted when empty.
                continue
            else:
                data[key] = value
        data["script_meta"] = self.script_meta.to_dict()
        if self.network_issues:
            data["network_issues"] = list(self.network_issues)
        if self.step_results:
            data["step_results"] = [asdict(r) for r in self.step_results]
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Manifest":
        d = dict(data or {})
        return cls(
            run_id=str(d.get("run_id") or ""),
            started_at=str(d.get("started_at") or ""),
            finished_at=str(d.get("finished_at") or ""),
            target_url=str(d.get("target_url") or ""),
            screenshot=str(d.get("screenshot") or ""),
            video_webm=str(d.get("video_webm") or ""),
            video_webp=str(d.get("video_webp") or ""),
            trace_zip=str(d.get("trace_zip") or ""),
            har=str(d.get("har") or ""),
            replay_har=str(d.get("replay_har") or ""),
            script_meta=ScriptMeta.from_dict(d.get("script_meta")),
            profile_folder=str(d.get("profile_folder") or ""),
            engine=str(d.get("engine") or ""),
            extension_dir=str(d.get("extension_dir") or ""),
            injection_strategy=str(d.get("injection_strategy") or ""),
            log_path=str(d.get("log_path") or ""),
            visual_hash=str(d.get("visual_hash") or ""),
            visual_diff=bool(d.get("visual_diff", False)),
            visual_diff_img=str(d.get("visual_diff_img") or ""),
            visual_diff_pixels=int(d.get("visual_diff_pixels") or 0),
            visual_diff_ratio=float(d.get("visual_diff_ratio") or 0.0),
            visual_diff_status=str(d.get("visual_diff_status") or ""),
            visual_diff_note=str(d.get("visual_diff_note") or ""),
            network_issues=tuple(d.get("network_issues") or ()),
            step_results=tuple(StepResult(**r) for r in (d.get("step_results") or [])),
        )


@dataclass
class RunResult:
    """What a successful run hands back to the caller."""

    run_id: str
    run_dir: Path
    manifest: Manifest
    manifest_path: Path
    log_path: Path
    artifacts: Dict[str, Path] = field(default_factory=dict)
