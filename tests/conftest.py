"""
Shared fixtures for scriptlab tests.

Provides in-memory stand-ins for the Playwright page/context so the pipeline
can be exercised without launching a browser.
"""

from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest
from PIL import Image

from scriptlab.models import RunOptions, RunState
from scriptlab.run_logger import RunLogger
from scriptlab.session import BrowserSessionManager


class FakeTimeoutError(Exception):
    pass


class FakeLocator:
    def __init__(self, page: "FakePage", selector: str):
        self.page = page
        self.selector = selector

    @property
    def first(self) -> "FakeLocator":
        return self

    def _element(self) -> Dict[str, Any]:
        element = self.page.elements.get(self.selector)
        if element is None:
            raise FakeTimeoutError(f"Timeout waiting for locator({self.selector!r})")
        return element

    async def click(self, timeout: Optional[float] = None) -> None:
        self._element()
        self.page.clicks.append(self.selector)
        handler = self.page.on_click.get(self.selector)
        if handler is not None:
            handler(self.page)

    async def fill(self, value: str, timeout: Optional[float] = None) -> None:
        self._element()["value"] = value

    async def wait_for(self, state: str = "visible", timeout: Optional[float] = None) -> None:
        present = self.selector in self.page.elements
        if state == "detached":
            if present:
                raise FakeTimeoutError(f"{self.selector} still attached")
            return
        if not present:
            raise FakeTimeoutError(f"{self.selector} not found")

    async def text_content(self, timeout: Optional[float] = None) -> Optional[str]:
        return self._element().get("text")

    async def get_attribute(self, name: str, timeout: Optional[float] = None) -> Optional[str]:
        return self._element().get("attrs", {}).get(name)


class FakePage:
    def __init__(self, context: "FakeContext"):
        self.context = context
        self.elements: Dict[str, Dict[str, Any]] = {}
        self.on_click: Dict[str, Callable[["FakePage"], None]] = {}
        self.clicks: List[str] = []
        self.init_scripts: List[str] = []
        self.waits: List[float] = []
        self.url = "about:blank"
        self.goto_error: Optional[Exception] = None
        self.screenshot_size: Tuple[int, int] = (64, 48)
        self.screenshot_color: Tuple[int, int, int] = (255, 255, 255)
        self.video = None
        self._closed = False

    def set_default_timeout(self, timeout: float) -> None:
        pass

    def set_default_navigation_timeout(self, timeout: float) -> None:
        pass

    async def query_selector(self, selector: str) -> Optional["FakeFileInput"]:
        if selector == "input[type=file]" and self.url.startswith("chrome-extension://") and self.context.accept_imports:
            return FakeFileInput(self.context)
        return None

    def locator(self, selector: str) -> FakeLocator:
        return FakeLocator(self, selector)

    async def add_init_script(self, script: Optional[str] = None, path: Optional[str] = None) -> None:
        self.init_scripts.append(script or "")

    async def goto(self, url: str, wait_until: str = "load", timeout: Optional[float] = None):
        if self.goto_error is not None:
            raise self.goto_error
        self.url = url
        for response_url, status in self.context.responses_on_goto:
            self.context.emit_response(response_url, status)
        return FakeResponse(url, 200)

    async def wait_for_timeout(self, timeout: float) -> None:
        self.waits.append(timeout)

    async def screenshot(self, path: Optional[str] = None, full_page: bool = False) -> bytes:
        Image.new("RGB", self.screenshot_size, self.screenshot_color).save(path, format="PNG")
        return Path(path).read_bytes()

    def is_closed(self) -> bool:
        return self._closed

    async def close(self) -> None:
        self._closed = True


class FakeFileInput:
    def __init__(self, context: "FakeContext"):
        self.context = context

    async def set_input_files(self, files: str) -> None:
        self.context.imported.append(files)


class FakeResponse:
    def __init__(self, url: str, status: int):
        self.url = url
        self.status = status


class FakeTracing:
    def __init__(self):
        self.started = False

    async def start(self, **kwargs: Any) -> None:
        self.started = True

    async def stop(self, path: Optional[str] = None) -> None:
        if path:
            Path(path).write_bytes(b"PK\x05\x06" + b"\x00" * 18)


class FakeContext:
    def __init__(self):
        self.listeners: Dict[str, List[Callable[..., Any]]] = {}
        self.responses_on_goto: List[Tuple[str, int]] = []
        self.service_workers: List[Any] = []
        self.tracing = FakeTracing()
        self.closed = False
        self.har_path: Optional[Path] = None
        self.routed_hars: List[str] = []
        self.route_error: Optional[Exception] = None
        self.accept_imports = False
        self.imported: List[str] = []
        self.pages: List[FakePage] = [FakePage(self)]

    @property
    def page(self) -> FakePage:
        return self.pages[0]

    def on(self, event: str, handler: Callable[..., Any]) -> None:
        self.listeners.setdefault(event, []).append(handler)

    def remove_listener(self, event: str, handler: Callable[..., Any]) -> None:
        self.listeners.get(event, []).remove(handler)

    def emit_response(self, url: str, status: int) -> None:
        for handler in list(self.listeners.get("response", [])):
            handler(FakeResponse(url, status))

    async def new_page(self) -> FakePage:
        page = FakePage(self)
        self.pages.append(page)
        return page

    async def route_from_har(self, har: str) -> None:
        if self.route_error is not None:
            raise self.route_error
        self.routed_hars.append(har)

    async def close(self) -> None:
        # Playwright writes the recorded HAR when the context closes.
        if self.har_path is not None and not self.closed:
            self.har_path.write_text('{"log": {"entries": []}}')
        self.closed = True


class FakeSessionManager(BrowserSessionManager):
    """Session manager that hands out a FakeContext instead of launching Chromium."""

    def __init__(self, context: Optional[FakeContext] = None):
        super().__init__(timeout_ms=1000, navigation_timeout_ms=1000)
        self.context = context or FakeContext()
        self.installs = 0
        self.launch_error: Optional[Exception] = None
        self.shutdowns = 0

    async def install(self, browsers=("chromium",)) -> None:
        self.installs += 1

    async def start(self, run_state: RunState, options: RunOptions, run_logger: RunLogger) -> RunState:
        if self.launch_error is not None:
            raise self.launch_error
        run_state.profile_dir = self.profile_dir_for(run_state, options)
        if options.capture_har:
            self.context.har_path = Path(run_state.artifacts_dir) / "network.har"
        run_state.browser_context = self.context
        run_state.active = True
        return run_state

    async def shutdown(self, run_state: Optional[RunState]) -> None:
        self.shutdowns += 1
        await super().shutdown(run_state)


@pytest.fixture
def fake_context():
    return FakeContext()


@pytest.fixture
def fake_page(fake_context):
    return fake_context.page


@pytest.fixture
def session_manager(fake_context):
    return FakeSessionManager(fake_context)


@pytest.fixture
def run_logger(tmp_path):
    logger = RunLogger(tmp_path / "logs" / "runner.ndjson")
    logger.start()
    yield logger
    logger.close()


def write_png(path: Path, size: Tuple[int, int], color=(255, 255, 255), pixels=None) -> Path:
    """Write an RGB PNG, optionally overriding individual pixels."""
    image = Image.new("RGB", size, color)
    for (x, y), value in (pixels or {}).items():
        image.putpixel((x, y), value)
    path.parent.mkdir(parents=True, exist_ok=True)
    image.save(path, format="PNG")
    return path


@pytest.fixture
def png_writer():
    return write_png
