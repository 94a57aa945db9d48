from __future__ import annotations

import asyncio
from datetime import timedelta

import httpx
import pytest

from discord_transcripts import cache as cache_module
from discord_transcripts.cache import get_cached_api_json, store_api_json
from discord_transcripts.directory import (
    DirectoryError,
    RestDirectory,
    StaticDirectory,
    _auth_headers,
    resolve,
)
from discord_transcripts.entities import RoleEntry, build_entity_table

API = "https://discord.test/api/v10"


def _rest(handler, **kwargs) -> tuple[RestDirectory, httpx.AsyncClient]:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    kwargs.setdefault("use_cache", False)
    kwargs.setdefault("refresh_cache", False)
    return RestDirectory(api_base=API, client=client, **kwargs), client


def test_static_directory_lookups() -> None:
    directory = StaticDirectory(
        users=[{"id": "1", "username": "alice"}],
        members={"2": {"nick": "Bee", "user": {"id": "2", "username": "bob"}}},
        roles=[{"id": 10, "name": "Mods"}],
        channels=[{"id": "20", "name": "general"}],
    )

    async def _run():
        return (
            await directory.resolve_user("1"),
            await directory.resolve_user("2"),
            await directory.resolve_member("g", "2"),
            await directory.resolve_role("g", "10"),
            await directory.resolve_channel("20"),
        )

    user, member_user, member, role, channel = asyncio.run(_run())
    assert user["username"] == "alice"
    assert member_user["username"] == "bob"
    assert member["nick"] == "Bee"
    assert role["name"] == "Mods"
    assert channel["name"] == "general"

    with pytest.raises(DirectoryError) as excinfo:
        asyncio.run(directory.resolve_channel("404"))
    assert excinfo.value.reason == "not_found"


def test_resolve_captures_failures() -> None:
    directory = StaticDirectory()

    async def _slow():
        await asyncio.sleep(1)
        return {}

    async def _boom():
        raise RuntimeError("nope")

    missing = asyncio.run(resolve(lambda: directory.resolve_user("1")))
    slow = asyncio.run(resolve(_slow, timeout=0.01))
    boom = asyncio.run(resolve(_boom))
    ok = asyncio.run(resolve(lambda: StaticDirectory(users=[{"id": "1"}]).resolve_user("1")))

    assert not missing.ok and missing.reason == "not_found"
    assert slow.reason == "timeout"
    assert boom.reason == "RuntimeError: nope"
    assert ok.ok and ok.value == {"id": "1"}


def test_rest_directory_maps_status_codes() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/users/404"):
            return httpx.Response(404, json={"message": "Unknown User"})
        if request.url.path.endswith("/channels/403"):
            return httpx.Response(403, json={"message": "Missing Access"})
        return httpx.Response(401, json={"message": "401: Unauthorized"})

    async def _run():
        directory, client = _rest(handler)
        async with client:
            reasons = []
            for lookup in (
                lambda: directory.resolve_user("404"),
                lambda: directory.resolve_channel("403"),
                lambda: directory.resolve_channel("1"),
            ):
                reasons.append((await resolve(lookup)).reason)
            return reasons

    assert asyncio.run(_run()) == ["not_found", "forbidden", "unauthorized"]


def test_rest_directory_retries_rate_limits() -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        if len(calls) == 1:
            return httpx.Response(429, headers={"Retry-After": "0"}, json={})
        return httpx.Response(200, json={"id": "1", "username": "alice"})

    async def _run():
        directory, client = _rest(handler, max_attempts=3)
        async with client:
            return await directory.resolve_user("1")

    assert asyncio.run(_run())["username"] == "alice"
    assert len(calls) == 2


def test_rest_directory_fetches_guild_roles_once() -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        return httpx.Response(
            200, json=[{"id": "10", "name": "Mods"}, {"id": "11", "name": "Admins"}]
        )

    async def _run():
        directory, client = _rest(handler)
        async with client:
            first, second = await asyncio.gather(
                directory.resolve_role("g", "10"), directory.resolve_role("g", "11")
            )
            missing = await resolve(lambda: directory.resolve_role("g", "12"))
            return first, second, missing

    first, second, missing = asyncio.run(_run())
    assert first["name"] == "Mods"
    assert second["name"] == "Admins"
    assert missing.reason == "not_found"
    assert calls == ["/api/v10/guilds/g/roles"]


def test_rest_directory_members_and_remembered_payloads() -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        return httpx.Response(404, json={"message": "Unknown Member"})

    async def _run():
        directory, client = _rest(handler)
        directory.remember_messages(
            [
                {
                    "guild_id": "g",
                    "author": {"id": "1", "username": "alice"},
                    "member": {"nick": "Al"},
                    "mentions": [{"id": "2", "username": "bob", "member": {"nick": "B"}}],
                }
            ]
        )
        async with client:
            return (
                await directory.resolve_user("1"),
                await directory.resolve_member("g", "2"),
                await directory.resolve_member("g", "3"),
                await directory.resolve_member("g", "3"),
            )

    user, member, absent, absent_again = asyncio.run(_run())
    assert user["username"] == "alice"
    assert member == {"nick": "B"}
    assert absent is None and absent_again is None
    assert calls == ["/api/v10/guilds/g/members/3"]


def test_rest_directory_falls_back_to_stale_cache(monkeypatch, tmp_path) -> None:
    monkeypatch.setattr(cache_module, "API_CACHE_ROOT", tmp_path)
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        if len(calls) == 1:
            return httpx.Response(200, json={"id": "20", "name": "general"})
        return httpx.Response(503, json={})

    async def _run():
        directory, client = _rest(handler, use_cache=True, max_attempts=1)
        async with client:
            fresh = await directory.resolve_channel("20")
            directory.cache_ttl = timedelta(0)
            stale = await directory.resolve_channel("20")
            return fresh, stale

    fresh, stale = asyncio.run(_run())
    assert fresh == stale == {"id": "20", "name": "general"}
    assert len(calls) == 2


def test_rest_directory_raises_after_retries_without_cache() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, json={})

    async def _run():
        directory, client = _rest(handler, max_attempts=1)
        async with client:
            return await resolve(lambda: directory.resolve_channel("20"))

    assert asyncio.run(_run()).reason.startswith("HTTPStatusError")


def test_rest_directory_requires_token(monkeypatch) -> None:
    monkeypatch.delenv("DISCORD_BOT_TOKEN", raising=False)
    monkeypatch.setattr("discord_transcripts.directory._load_dotenv", lambda: None)

    with pytest.raises(ValueError):
        RestDirectory(api_base=API)


def test_api_cache_round_trip_and_expiry(tmp_path) -> None:
    store_api_json("identity", {"a": 1}, root=tmp_path)

    assert get_cached_api_json("identity", root=tmp_path) == {"a": 1}
    assert get_cached_api_json("identity", ttl=timedelta(0), root=tmp_path) is None
    assert get_cached_api_json("other", root=tmp_path) is None


def test_role_lookup_timeout_does_not_abort_the_table() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(0.3)
        return httpx.Response(200, json=[{"id": "1", "name": "Slow"}])

    messages = [
        {"id": "1", "guild_id": "9", "author": {"id": "100"}, "content": "<@&1> <@&2>"}
    ]

    async def _run():
        directory, client = _rest(handler)
        async with client:
            table = await build_entity_table(
                messages, directory, max_workers=1, timeout=0.05
            )
            await directory.aclose()
            return table

    table = asyncio.run(_run())
    assert table.role("1") == RoleEntry("Role 1", None)
    assert table.role("2") == RoleEntry("Role 2", None)


def test_failed_guild_role_fetch_is_retried() -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        if len(calls) == 1:
            return httpx.Response(503, json={})
        return httpx.Response(200, json=[{"id": "10", "name": "Mods"}])

    async def _run():
        directory, client = _rest(handler, max_attempts=1)
        async with client:
            first = await resolve(lambda: directory.resolve_role("g", "10"))
            second = await resolve(lambda: directory.resolve_role("g", "10"))
            return first, second

    first, second = asyncio.run(_run())
    assert not first.ok
    assert second.value["name"] == "Mods"
    assert len(calls) == 2


def test_user_agent_is_configurable(monkeypatch) -> None:
    monkeypatch.setattr("discord_transcripts.directory._load_dotenv", lambda: None)
    monkeypatch.delenv("DISCORD_USER_AGENT", raising=False)
    assert _auth_headers("token")["User-Agent"] == "discord-transcripts"

    monkeypatch.setenv("DISCORD_USER_AGENT", "my-archiver/1.0")
    assert _auth_headers("token")["User-Agent"] == "my-archiver/1.0"
