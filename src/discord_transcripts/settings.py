from __future__ import annotations

import os
import re
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from .directory import _load_dotenv
from .runtime import get_resolve_jobs

DEFAULT_COMPONENTS_VERSION = "3.6.1"
_MIN_PREVIEW_CHARS = 16
_MAX_PREVIEW_CHARS = 4000
_MAX_LARGE_EMOJI = 200
_TTL_UNITS = {"s": "seconds", "m": "minutes", "h": "hours", "d": "days", "w": "weeks"}


@dataclass(frozen=True)
class TranscriptSettings:
    components_version: str = DEFAULT_COMPONENTS_VERSION
    resolve_jobs: int = 8
    reply_max_chars: int = 180
    thread_preview_max_chars: int = 128
    large_emoji_limit: int = 25
    use_cache: bool = True
    cache_ttl: timedelta | None = None


def _parse_bool(value: str, *, default: bool) -> bool:
    cleaned = value.strip().lower()
    if not cleaned:
        return default
    return cleaned not in {"0", "false", "no", "off"}


def _parse_optional_int(value: str) -> int | None:
    cleaned = value.strip()
    if not cleaned:
        return None
    try:
        parsed = int(cleaned)
    except ValueError:
        return None
    if parsed < 0:
        return None
    return parsed


def parse_ttl(value: Any) -> timedelta | None:
    """``"0"``, ``"90s"``, ``"12h"``, ``"3d"``... into a timedelta; ``None`` if unparseable."""
    if isinstance(value, timedelta):
        return value
    raw = str(value or "").strip().lower()
    if not raw:
        return None
    if raw == "0":
        return timedelta(0)
    match = re.fullmatch(r"(\d+)([smhdw])", raw)
    if not match:
        return None
    return timedelta(**{_TTL_UNITS[match.group(2)]: int(match.group(1))})


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


def _settings_from_env() -> TranscriptSettings:
    _load_dotenv()

    version = (os.environ.get("DISCORD_TRANSCRIPTS_COMPONENTS_VERSION") or "").strip()
    reply_max = _parse_optional_int(os.environ.get("DISCORD_TRANSCRIPTS_REPLY_MAX_CHARS", ""))
    thread_max = _parse_optional_int(
        os.environ.get("DISCORD_TRANSCRIPTS_THREAD_PREVIEW_MAX_CHARS", "")
    )
    large_emoji = _parse_optional_int(
        os.environ.get("DISCORD_TRANSCRIPTS_LARGE_EMOJI_LIMIT", "")
    )
    return TranscriptSettings(
        components_version=version or DEFAULT_COMPONENTS_VERSION,
        resolve_jobs=get_resolve_jobs(),
        reply_max_chars=reply_max if reply_max is not None else 180,
        thread_preview_max_chars=thread_max if thread_max is not None else 128,
        large_emoji_limit=large_emoji if large_emoji is not None else 25,
        use_cache=_parse_bool(os.environ.get("DISCORD_TRANSCRIPTS_USE_CACHE", "1"), default=True),
        cache_ttl=parse_ttl(os.environ.get("DISCORD_TRANSCRIPTS_CACHE_TTL", "")),
    )


def _clamp_settings(settings: TranscriptSettings) -> TranscriptSettings:
    return TranscriptSettings(
        components_version=str(settings.components_version).strip()
        or DEFAULT_COMPONENTS_VERSION,
        resolve_jobs=_clamp(int(settings.resolve_jobs), 1, 64),
        reply_max_chars=_clamp(
            int(settings.reply_max_chars), _MIN_PREVIEW_CHARS, _MAX_PREVIEW_CHARS
        ),
        thread_preview_max_chars=_clamp(
            int(settings.thread_preview_max_chars), _MIN_PREVIEW_CHARS, _MAX_PREVIEW_CHARS
        ),
        large_emoji_limit=_clamp(int(settings.large_emoji_limit), 0, _MAX_LARGE_EMOJI),
        use_cache=bool(settings.use_cache),
        cache_ttl=settings.cache_ttl,
    )


def build_settings(overrides: dict[str, Any] | None = None) -> TranscriptSettings:
    env = _settings_from_env()
    if not overrides:
        return _clamp_settings(env)

    cache_ttl = overrides.get("cache_ttl", env.cache_ttl)
    settings = TranscriptSettings(
        components_version=str(
            overrides.get("components_version") or env.components_version
        ),
        resolve_jobs=overrides.get("resolve_jobs") or env.resolve_jobs,
        reply_max_chars=overrides.get("reply_max_chars", env.reply_max_chars),
        thread_preview_max_chars=overrides.get(
            "thread_preview_max_chars", env.thread_preview_max_chars
        ),
        large_emoji_limit=overrides.get("large_emoji_limit", env.large_emoji_limit),
        use_cache=bool(overrides.get("use_cache", env.use_cache)),
        cache_ttl=parse_ttl(cache_ttl) if cache_ttl is not None else None,
    )
    return _clamp_settings(settings)
