from __future__ import annotations

import hashlib
import json
import os
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

CACHE_ROOT = Path(
    os.environ.get(
        "DISCORD_TRANSCRIPTS_CACHE",
        os.path.expanduser("~/.local/share/discord-transcripts/cache/v1"),
    )
)
API_CACHE_ROOT = CACHE_ROOT / "api"
DEFAULT_TTL = timedelta(days=3)
CACHE_VERSION = 1


@dataclass
class CacheMetadata:
    identity: str
    cached_at: str
    size_bytes: int
    cache_version: int = CACHE_VERSION


def _cache_key(identity: str) -> str:
    return hashlib.sha256(identity.encode("utf-8")).hexdigest()


def _cache_paths(root: Path, identity: str) -> tuple[Path, Path]:
    key = _cache_key(identity)
    return root / f"{key}.json", root / f"{key}.meta.json"


def _load_meta(path: Path) -> CacheMetadata | None:
    if not path.exists():
        return None
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return None
    try:
        return CacheMetadata(**payload)
    except TypeError:
        return None


def _is_expired(meta: CacheMetadata, ttl: timedelta) -> bool:
    if ttl == timedelta(0):
        return True
    if meta.cache_version != CACHE_VERSION:
        return True
    try:
        cached_at = datetime.fromisoformat(meta.cached_at.replace("Z", "+00:00"))
    except ValueError:
        return True
    now = datetime.now(timezone.utc)
    return (now - cached_at) > ttl


def get_cached_api_json(
    identity: str,
    ttl: timedelta | None = None,
    *,
    root: Path | None = None,
) -> Any | None:
    effective_ttl = DEFAULT_TTL if ttl is None else ttl
    content_path, meta_path = _cache_paths(root or API_CACHE_ROOT, identity)
    if not content_path.exists():
        return None
    meta = _load_meta(meta_path)
    if meta is None or _is_expired(meta, effective_ttl):
        return None
    try:
        return json.loads(content_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return None


def store_api_json(identity: str, payload: Any, *, root: Path | None = None) -> None:
    target = root or API_CACHE_ROOT
    target.mkdir(parents=True, exist_ok=True)
    content_path, meta_path = _cache_paths(target, identity)
    text = json.dumps(payload, ensure_ascii=False)
    content_path.write_text(text, encoding="utf-8")
    meta = CacheMetadata(
        identity=identity,
        cached_at=datetime.now(timezone.utc).isoformat(),
        size_bytes=len(text.encode("utf-8")),
    )
    meta_path.write_text(json.dumps(asdict(meta), indent=2), encoding="utf-8")
