"""
Game-tree upload — persists a client-built game tree as one JSON object.

Layout:
  gametrees/YYYY/MM/DD/<uid|anon>/folder=<folder>/
      HHMMSS_line=<a-b-c>_pos=<pos>_icm=<0|1>.json

Every caller-supplied segment is sanitized before it becomes part of a path.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from .object_store import ObjectStore

_UNSAFE_CHARS = frozenset('<>:"/\\|?*#%') | frozenset(chr(c) for c in range(32))


def sanitize_segment(value: Optional[str]) -> str:
    """Replace path/URL-unsafe characters with "_". Empty -> "na"."""
    if not value:
        return "na"
    cleaned = "".join("_" if ch in _UNSAFE_CHARS else ch for ch in value)
    # "." and ".." would still walk the tree
    return "_" * len(cleaned) if cleaned in (".", "..") else cleaned


@dataclass(frozen=True)
class GameTreeUpload:
    text: str
    folder: str = ""
    line: List[str] = field(default_factory=list)
    acting_pos: str = ""
    is_icm: bool = False
    uid: Optional[str] = None
    alive_positions: List[str] = field(default_factory=list)


def build_gametree_path(req: GameTreeUpload, now: datetime) -> str:
    uid = req.uid if req.uid and req.uid.strip() else "anon"
    safe_line = "-".join(sanitize_segment(step) for step in req.line)
    dir_path = (
        f"gametrees/{now:%Y/%m/%d}/{sanitize_segment(uid)}"
        f"/folder={sanitize_segment(req.folder)}"
    )
    file_name = (
        f"{now:%H%M%S}_line={safe_line}_pos={sanitize_segment(req.acting_pos)}"
        f"_icm={1 if req.is_icm else 0}.json"
    )
    return f"{dir_path}/{file_name}"


async def upload_game_tree(
    store: ObjectStore,
    req: GameTreeUpload,
    now: Optional[datetime] = None,
) -> str:
    """Write the tree and return its store path. Empty text is rejected."""
    if not req.text or not req.text.strip():
        raise ValueError("Missing game tree text.")

    now = now or datetime.now(timezone.utc)
    path = build_gametree_path(req, now)
    payload = {
        "folder": req.folder,
        "line": list(req.line),
        "actingPos": req.acting_pos,
        "isICM": req.is_icm,
        "text": req.text,
        "alivePositions": list(req.alive_positions),
        "uploadedAtUtc": now.isoformat(),
    }
    await store.put(path, json.dumps(payload, ensure_ascii=False).encode("utf-8"))
    return path
