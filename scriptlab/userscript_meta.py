"""Userscript `// ==UserScript==` header scanner."""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List

from .models import ScriptMeta

HEADER_START = "// ==UserScript=="
HEADER_END = "// ==/UserScript=="

_LIST_KEYS = {"match": "match", "include": "include", "exclude": "exclude", "grant": "grants"}
_SCALAR_KEYS = {
    "name": "name",
    "namespace": "namespace",
    "version": "version",
    "description": "description",
    "run-at": "run_at",
}


def parse_userscript_text(text: str) -> ScriptMeta:
    """Parse metadata from userscript source.

    Scanning stops at the closing header line. Only the first value of a scalar
    key is meaningful; repeated scalar keys overwrite earlier ones. `raw` holds
    everything read up to and including the closing line.
    """
    scalars: Dict[str, str] = {}
    lists: Dict[str, List[str]] = {v: [] for v in _LIST_KEYS.values()}
    raw: List[str] = []
    inside = False

    for line in text.splitlines():
        raw.append(line)
        if line.startswith(HEADER_START):
            inside = True
            continue
        if line.startswith(HEADER_END):
            break
        if not inside:
            continue
        body = line.lstrip()
        if not body.startswith("//"):
            continue
        parts = body[2:].split(None, 1)
        if len(parts) < 2 or not parts[0].startswith("@"):
            continue
        key = parts[0][1:]
        value = parts[1].strip()
        if key in _SCALAR_KEYS:
            scalars[_SCALAR_KEYS[key]] = value
        elif key in _LIST_KEYS:
            lists[_LIST_KEYS[key]].append(value)

    return ScriptMeta(
        name=scalars.get("name", ""),
        namespace=scalars.get("namespace", ""),
        version=scalars.get("version", ""),
        description=scalars.get("description", ""),
        match=tuple(lists["match"]),
        include=tuple(lists["include"]),
        exclude=tuple(lists["exclude"]),
        run_at=scalars.get("run_at", ""),
        grants=tuple(lists["grants"]),
        raw="\n".join(raw) + ("\n" if raw else ""),
    )


def parse_userscript(path: Path) -> ScriptMeta:
    return parse_userscript_text(Path(path).read_text(encoding="utf-8"))
