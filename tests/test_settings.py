from __future__ import annotations

from datetime import timedelta

import pytest

from discord_transcripts.settings import DEFAULT_COMPONENTS_VERSION, build_settings, parse_ttl

_ENV_NAMES = (
    "DISCORD_TRANSCRIPTS_COMPONENTS_VERSION",
    "DISCORD_TRANSCRIPTS_REPLY_MAX_CHARS",
    "DISCORD_TRANSCRIPTS_THREAD_PREVIEW_MAX_CHARS",
    "DISCORD_TRANSCRIPTS_LARGE_EMOJI_LIMIT",
    "DISCORD_TRANSCRIPTS_USE_CACHE",
    "DISCORD_TRANSCRIPTS_CACHE_TTL",
    "DISCORD_TRANSCRIPTS_RESOLVE_JOBS",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in _ENV_NAMES:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr("discord_transcripts.settings._load_dotenv", lambda: None)


def test_defaults() -> None:
    settings = build_settings()

    assert settings.components_version == DEFAULT_COMPONENTS_VERSION
    assert settings.reply_max_chars == 180
    assert settings.thread_preview_max_chars == 128
    assert settings.large_emoji_limit == 25
    assert settings.resolve_jobs == 8
    assert settings.use_cache
    assert settings.cache_ttl is None


def test_env_values_are_parsed_and_clamped(monkeypatch) -> None:
    monkeypatch.setenv("DISCORD_TRANSCRIPTS_REPLY_MAX_CHARS", "5")
    monkeypatch.setenv("DISCORD_TRANSCRIPTS_THREAD_PREVIEW_MAX_CHARS", "99999")
    monkeypatch.setenv("DISCORD_TRANSCRIPTS_LARGE_EMOJI_LIMIT", "nope")
    monkeypatch.setenv("DISCORD_TRANSCRIPTS_USE_CACHE", "off")
    monkeypatch.setenv("DISCORD_TRANSCRIPTS_CACHE_TTL", "12h")
    monkeypatch.setenv("DISCORD_TRANSCRIPTS_COMPONENTS_VERSION", "4.0.0")

    settings = build_settings()

    assert settings.reply_max_chars == 16
    assert settings.thread_preview_max_chars == 4000
    assert settings.large_emoji_limit == 25
    assert not settings.use_cache
    assert settings.cache_ttl == timedelta(hours=12)
    assert settings.components_version == "4.0.0"


def test_overrides_win_over_env(monkeypatch) -> None:
    monkeypatch.setenv("DISCORD_TRANSCRIPTS_REPLY_MAX_CHARS", "50")

    settings = build_settings(
        {"reply_max_chars": 90, "resolve_jobs": 500, "large_emoji_limit": 0, "cache_ttl": "0"}
    )

    assert settings.reply_max_chars == 90
    assert settings.resolve_jobs == 64
    assert settings.large_emoji_limit == 0
    assert settings.cache_ttl == timedelta(0)


def test_parse_ttl() -> None:
    assert parse_ttl("0") == timedelta(0)
    assert parse_ttl("90s") == timedelta(seconds=90)
    assert parse_ttl("3d") == timedelta(days=3)
    assert parse_ttl("2w") == timedelta(weeks=2)
    assert parse_ttl(timedelta(minutes=5)) == timedelta(minutes=5)
    assert parse_ttl("") is None
    assert parse_ttl("soon") is None
