from __future__ import annotations

from contextvars import ContextVar, Token
import os

_VERBOSE_LOGGING: ContextVar[bool | None] = ContextVar(
    "discord_transcripts_verbose_logging", default=None
)
_REFRESH_CACHE: ContextVar[bool] = ContextVar(
    "discord_transcripts_refresh_cache", default=False
)

_DEFAULT_RESOLVE_JOBS = 8
_MAX_RESOLVE_JOBS = 64


def _read_positive_int_env(name: str, default: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    if value <= 0:
        return default
    return min(value, _MAX_RESOLVE_JOBS)


def _env_verbose() -> bool:
    raw = (os.environ.get("DISCORD_TRANSCRIPTS_VERBOSE") or "").strip().lower()
    return raw not in {"", "0", "false", "no", "off"}


def get_verbose_logging() -> bool:
    value = _VERBOSE_LOGGING.get()
    if value is None:
        return _env_verbose()
    return value


def set_verbose_logging(enabled: bool) -> Token[bool | None]:
    return _VERBOSE_LOGGING.set(bool(enabled))


def reset_verbose_logging(token: Token[bool | None]) -> None:
    _VERBOSE_LOGGING.reset(token)


def get_refresh_cache() -> bool:
    return _REFRESH_CACHE.get()


def set_refresh_cache(enabled: bool) -> Token[bool]:
    return _REFRESH_CACHE.set(bool(enabled))


def reset_refresh_cache(token: Token[bool]) -> None:
    _REFRESH_CACHE.reset(token)


def get_resolve_jobs() -> int:
    return _read_positive_int_env(
        "DISCORD_TRANSCRIPTS_RESOLVE_JOBS", _DEFAULT_RESOLVE_JOBS
    )
