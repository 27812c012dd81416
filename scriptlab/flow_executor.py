"""Flow step interpreter: actions and assertions against the live page."""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional, Sequence

from . import settings
from .models import Step, StepResult
from .run_logger import RunLogger

DEFAULT_WAIT_MS = 500.0


class StepFailure(Exception):
    """An assertion did not hold, or an action could not be performed."""

    def __init__(self, detail: str, meta: Optional[Dict[str, Any]] = None):
        super().__init__(detail)
        self.detail = detail
        self.meta = dict(meta or {})


def flow_action(*names: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Decorator to register a method as the handler of one or more step actions."""

    def _decorate(func: Callable[..., Any]) -> Callable[..., Any]:
        setattr(func, "_flow_actions", tuple(n.lower() for n in names))
        return func

    return _decorate


class FlowExecutor:
    """Execute steps in order. No step failure stops the flow."""

    def __init__(
        self,
        run_logger: RunLogger,
        *,
        action_timeout_ms: int = settings.ACTION_TIMEOUT_MS,
        wait_for_selector_timeout_ms: int = settings.WAIT_FOR_SELECTOR_TIMEOUT_MS,
        assert_exists_timeout_ms: int = settings.ASSERT_EXISTS_TIMEOUT_MS,
        assert_not_exists_timeout_ms: int = settings.ASSERT_NOT_EXISTS_TIMEOUT_MS,
    ):
        self.run_logger = run_logger
        self.action_timeout_ms = int(action_timeout_ms)
        self.wait_for_selector_timeout_ms = int(wait_for_selector_timeout_ms)
        self.assert_exists_timeout_ms = int(assert_exists_timeout_ms)
        self.assert_not_exists_timeout_ms = int(assert_not_exists_timeout_ms)
        self._handlers: Dict[str, Callable[..., Any]] = {}
        for method_name in dir(self):
            method = getattr(self, method_name, None)
            for action in getattr(method, "_flow_actions", ()):
                self._handlers[action] = method

    async def execute(self, page: Any, steps: Sequence[Step]) -> List[StepResult]:
        results: List[StepResult] = []
        for index, step in enumerate(steps, start=1):
            results.append(await self.execute_step(page, index, step))
        return results

    async def execute_step(self, page: Any, index: int, step: Step) -> StepResult:
        scope = f"step-{index}"
        action = str(step.action or "").strip().lower()
        meta: Dict[str, Any] = {"action": step.action, "target": step.target}
        if step.value:
            meta["value"] = step.value
        if step.attr:
            meta["attr"] = step.attr

        handler = self._handlers.get(action)
        if handler is None:
            detail = f"unknown action {step.action!r}"
            self.run_logger.warn(scope, "unknown action", meta)
            return StepResult(index=index, action=step.action, target=step.target, passed=False, detail=detail)

        try:
            detail = await handler(page, step)
        except StepFailure as e:
            self.run_logger.warn(scope, f"{action} failed", {**meta, **e.meta, "error": e.detail})
            return StepResult(index=index, action=step.action, target=step.target, passed=False, detail=e.detail)
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            self.run_logger.warn(scope, f"{action} failed", {**meta, "error": error})
            return StepResult(index=index, action=step.action, target=step.target, passed=False, detail=error)

        self.run_logger.info(scope, f"{action} ok", {**meta, "detail": detail} if detail else meta)
        return StepResult(index=index, action=step.action, target=step.target, passed=True, detail=detail or "")

    async def run_smoke(self, page: Any, selector: str = settings.SMOKE_SELECTOR) -> List[StepResult]:
        """Default flow when none is supplied: wait for a sentinel element, then click it."""
        return await self.execute(
            page,
            [
                Step(action="waitForSelector", target=selector),
                Step(action="click", target=selector),
            ],
        )

    @staticmethod
    def _require_target(step: Step) -> str:
        target = str(step.target or "").strip()
        if not target:
            raise StepFailure("selector is required")
        return target

    @flow_action("click")
    async def _click(self, page: Any, step: Step) -> str:
        target = self._require_target(step)
        await page.locator(target).first.click(timeout=self.action_timeout_ms)
        return ""

    @flow_action("fill")
    async def _fill(self, page: Any, step: Step) -> str:
        target = self._require_target(step)
        await page.locator(target).first.fill(str(step.value or ""), timeout=self.action_timeout_ms)
        return f"{len(step.value or '')} chars"

    @flow_action("waitforselector")
    async def _wait_for_selector(self, page: Any, step: Step) -> str:
        target = self._require_target(step)
        await page.locator(target).first.wait_for(state="visible", timeout=self.wait_for_selector_timeout_ms)
        return ""

    @flow_action("wait")
    async def _wait(self, page: Any, step: Step) -> str:
        try:
            duration = float(step.value)
        except (TypeError, ValueError):
            duration = DEFAULT_WAIT_MS
        if duration <= 0:
            duration = DEFAULT_WAIT_MS
        await page.wait_for_timeout(duration)
        return f"waited {duration:g}ms"

    async def _text(self, page: Any, step: Step) -> str:
        target = self._require_target(step)
        text = await page.locator(target).first.text_content(timeout=self.action_timeout_ms)
        return str(text or "").strip()

    @flow_action("assert-text", "assert-equals")
    async def _assert_text(self, page: Any, step: Step) -> str:
        got = await self._text(page, step)
        if got != step.value:
            raise StepFailure(
                f"expected text {step.value!r}, got {got!r}",
                {"expected": step.value, "got": got},
            )
        return got

    @flow_action("assert-contains")
    async def _assert_contains(self, page: Any, step: Step) -> str:
        got = await self._text(page, step)
        if step.value not in got:
            raise StepFailure(
                f"expected substring {step.value!r} in {got!r}",
                {"expected_substring": step.value, "got": got},
            )
        return got

    @flow_action("assert-exists")
    async def _assert_exists(self, page: Any, step: Step) -> str:
        target = self._require_target(step)
        await page.locator(target).first.wait_for(state="attached", timeout=self.assert_exists_timeout_ms)
        return ""

    @flow_action("assert-not-exists")
    async def _assert_not_exists(self, page: Any, step: Step) -> str:
        target = self._require_target(step)
        await page.locator(target).first.wait_for(state="detached", timeout=self.assert_not_exists_timeout_ms)
        return ""

    @flow_action("assert-attr")
    async def _assert_attr(self, page: Any, step: Step) -> str:
        target = self._require_target(step)
        attr = str(step.attr or "").strip()
        if not attr:
            raise StepFailure("attr is required for assert-attr")
        got = await page.locator(target).first.get_attribute(attr, timeout=self.action_timeout_ms)
        if got is None:
            raise StepFailure(f"attribute {attr!r} missing", {"expected": step.value})
        if got != step.value:
            raise StepFailure(
                f"expected {attr}={step.value!r}, got {got!r}",
                {"expected": step.value, "got": got},
            )
        return got
