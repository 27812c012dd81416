"""Passive response capture and network-issue classification."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional

from .run_logger import RunLogger


@dataclass(frozen=True)
class ObservedResponse:
    url: str
    status: int
    ts: float = 0.0


def classify_responses(responses: Iterable[ObservedResponse], blocked_hosts: Iterable[str]) -> List[str]:
    """Return one issue string per failing status and per blocked-host match.

    Host matching is plain substring containment on the full URL.
    """
    hosts = [h for h in (str(x).strip() for x in blocked_hosts) if h]
    issues: List[str] = []
    for response in responses:
        if response.status >= 400:
            issues.append(f"status {response.status} for {response.url}")
        for host in hosts:
            if host in response.url:
                issues.append(f"blocked host seen: {response.url}")
    return issues


class NetworkObserver:
    """Collect every response raised by a browser context. Never blocks or alters traffic."""

    def __init__(self, run_logger: RunLogger):
        self.run_logger = run_logger
        self.responses: List[ObservedResponse] = []
        self._context: Any = None
        self._handler: Optional[Any] = None

    def attach(self, context: Any) -> None:
        if self._context is not None:
            return

        def _on_response(response: Any) -> None:
            self.record(response)

        context.on("response", _on_response)
        self._context = context
        self._handler = _on_response

    def detach(self) -> None:
        if self._context is None:
            return
        try:
            self._context.remove_listener("response", self._handler)
        except Exception as e:
            self.run_logger.warn("network", "detach listener failed", {"error": str(e)})
        self._context = None
        self._handler = None

    def record(self, response: Any) -> None:
        try:
            status = int(getattr(response, "status", 0) or 0)
        except (TypeError, ValueError):
            status = 0
        self.responses.append(
            ObservedResponse(url=str(getattr(response, "url", "") or ""), status=status, ts=time.time())
        )

    def summarize(self, blocked_hosts: Iterable[str]) -> List[str]:
        issues = classify_responses(self.responses, blocked_hosts)
        meta = {"responses": len(self.responses), "issues": len(issues)}
        if issues:
            self.run_logger.warn("network", "issues detected", meta)
        else:
            self.run_logger.info("network", "no issues detected", meta)
        return issues
