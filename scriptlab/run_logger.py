"""NDJSON run log: one append-only event stream per run."""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, Any, Dict, List, Optional

LEVEL_INFO = "info"
LEVEL_WARN = "warn"


@dataclass(frozen=True)
class RunLogEvent:
    ts: str
    level: str
    scope: str
    msg: str
    meta: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "ts": self.ts,
            "level": self.level,
            "scope": self.scope,
            "msg": self.msg,
        }
        if self.meta:
            payload["meta"] = self.meta
        return payload


class RunLogger:
    """Persist run events as newline-delimited JSON.

    One instance belongs to exactly one run and is handed to every component
    that needs to record evidence. Events are kept in memory as well so the
    orchestrator can inspect them without re-reading the file.
    """

    def __init__(self, log_path: Path, logger: Optional[logging.Logger] = None):
        self.log_path = Path(log_path)
        self.logger = logger or logging.getLogger(__name__)
        self.events: List[RunLogEvent] = []
        self._fh: Optional[IO[str]] = None
        self._lock = threading.RLock()

    def start(self) -> None:
        with self._lock:
            if self._fh is not None:
                return
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self.log_path, "a", encoding="utf-8")

    def close(self) -> None:
        with self._lock:
            if self._fh is None:
                return
            try:
                self._fh.close()
            except OSError as e:
                self.logger.warning("Failed to close run log %s: %s", self.log_path, e)
            self._fh = None

    def __enter__(self) -> "RunLogger":
        self.start()
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def info(self, scope: str, msg: str, meta: Optional[Dict[str, Any]] = None) -> None:
        self._write(LEVEL_INFO, scope, msg, meta)

    def warn(self, scope: str, msg: str, meta: Optional[Dict[str, Any]] = None) -> None:
        self._write(LEVEL_WARN, scope, msg, meta)

    def warnings(self) -> List[RunLogEvent]:
        return [e for e in self.events if e.level == LEVEL_WARN]

    def _write(self, level: str, scope: str, msg: str, meta: Optional[Dict[str, Any]]) -> None:
        event = RunLogEvent(
            ts=datetime.now(timezone.utc).isoformat(),
            level=level,
            scope=str(scope or ""),
            msg=str(msg or ""),
            meta=dict(meta or {}),
        )
        try:
            line = json.dumps(event.to_dict(), ensure_ascii=False, default=str)
        except (TypeError, ValueError):
            line = json.dumps(
                {**event.to_dict(), "meta": {"_error": "meta_not_serializable"}},
                ensure_ascii=False,
            )
        with self._lock:
            self.events.append(event)
            try:
                if self._fh is None:
                    self.start()
                self._fh.write(line + "\n")
                self._fh.flush()
            except OSError as e:
                # Run log is evidence, not control flow: keep the run going.
                self.logger.warning("Failed to write run log event: %s", e)
        self.logger.debug("[%s] %s: %s %s", level, event.scope, event.msg, event.meta or "")
