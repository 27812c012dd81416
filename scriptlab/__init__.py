"""Single-run userscript test orchestrator built on Playwright."""

from .artifacts import ManifestWriter, RunDirectory, find_runs, load_manifest
from .errors import ConfigurationError, RunError, ScriptAcquisitionError, SessionError
from .flow_executor import FlowExecutor
from .injection import InjectionStrategy, ScriptInjector, select_injection_strategy
from .models import Manifest, RunOptions, RunResult, RunStage, ScriptSource, Step, StepResult
from .network_observer import NetworkObserver, classify_responses
from .orchestrator import ScriptRunner
from .run_logger import RunLogger
from .run_slot import RunSlot
from .script_source import ScriptSourceResolver
from .session import BrowserSessionManager
from .visual_diff import VisualDiffer, diff_images

__all__ = [
    "BrowserSessionManager",
    "ConfigurationError",
    "FlowExecutor",
    "InjectionStrategy",
    "Manifest",
    "ManifestWriter",
    "NetworkObserver",
    "RunDirectory",
    "RunError",
    "RunLogger",
    "RunOptions",
    "RunResult",
    "RunSlot",
    "RunStage",
    "ScriptAcquisitionError",
    "ScriptInjector",
    "ScriptRunner",
    "ScriptSource",
    "ScriptSourceResolver",
    "SessionError",
    "Step",
    "StepResult",
    "VisualDiffer",
    "classify_responses",
    "diff_images",
    "find_runs",
    "load_manifest",
    "select_injection_strategy",
]
