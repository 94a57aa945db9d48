from __future__ import annotations

import asyncio
import json
import os
import random
import sys
from dataclasses import dataclass
from datetime import timedelta
from functools import lru_cache
from typing import Any, Awaitable, Callable, Generic, Protocol, TypeVar

import httpx

from .runtime import get_refresh_cache

T = TypeVar("T")

_TRANSIENT_STATUSES = frozenset({429, 500, 502, 503, 504})


def _log(message: str) -> None:
    from .runtime import get_verbose_logging

    if get_verbose_logging():
        print(message, file=sys.stderr, flush=True)


@lru_cache(maxsize=1)
def _load_dotenv() -> None:
    try:
        from dotenv import find_dotenv, load_dotenv

        env_path = find_dotenv(usecwd=True)
        if env_path:
            load_dotenv(env_path, override=False)
    except Exception:
        return


class DirectoryError(LookupError):
    def __init__(self, reason: str, *, path: str | None = None):
        self.reason = reason
        self.path = path
        message_by_reason = {
            "not_found": "Discord resource not found",
            "unauthorized": "Discord API authorization failed",
            "forbidden": "Discord API forbidden (insufficient permissions)",
            "timeout": "Discord lookup timed out",
        }
        message = message_by_reason.get(reason, "Discord lookup failed")
        if path:
            message = f"{message}: {path}"
        super().__init__(message)


@dataclass(frozen=True)
class Resolution(Generic[T]):
    """Outcome of one directory lookup: a value, or the reason it failed."""

    value: T | None = None
    reason: str | None = None

    @property
    def ok(self) -> bool:
        return self.reason is None


async def resolve(
    lookup: Callable[[], Awaitable[T]],
    *,
    timeout: float | None = None,
) -> Resolution[T]:
    try:
        if timeout is not None:
            value = await asyncio.wait_for(lookup(), timeout=timeout)
        else:
            value = await lookup()
    except DirectoryError as exc:
        return Resolution(reason=exc.reason)
    except asyncio.TimeoutError:
        return Resolution(reason="timeout")
    except Exception as exc:
        return Resolution(reason=f"{type(exc).__name__}: {exc}")
    return Resolution(value=value)


class Directory(Protocol):
    async def resolve_user(self, user_id: str) -> dict[str, Any]: ...

    async def resolve_member(
        self, guild_id: str, user_id: str
    ) -> dict[str, Any] | None: ...

    async def resolve_role(self, guild_id: str, role_id: str) -> dict[str, Any]: ...

    async def resolve_channel(self, channel_id: str) -> dict[str, Any]: ...


def _keyed(items: Any) -> dict[str, dict[str, Any]]:
    if isinstance(items, dict):
        return {str(k): v for k, v in items.items() if isinstance(v, dict)}
    out: dict[str, dict[str, Any]] = {}
    for item in items or []:
        if not isinstance(item, dict):
            continue
        key = item.get("id")
        if key is None and isinstance(item.get("user"), dict):
            key = item["user"].get("id")
        if key is not None:
            out[str(key)] = item
    return out


class StaticDirectory:
    """Directory backed by in-memory payloads, e.g. loaded from an export file."""

    def __init__(
        self,
        *,
        users: Any = None,
        members: Any = None,
        roles: Any = None,
        channels: Any = None,
    ) -> None:
        self.users = _keyed(users)
        self.members = _keyed(members)
        self.roles = _keyed(roles)
        self.channels = _keyed(channels)

    @classmethod
    def from_mapping(cls, payload: dict[str, Any]) -> StaticDirectory:
        return cls(
            users=payload.get("users"),
            members=payload.get("members"),
            roles=payload.get("roles"),
            channels=payload.get("channels"),
        )

    async def resolve_user(self, user_id: str) -> dict[str, Any]:
        user = self.users.get(user_id)
        if user is None:
            member_user = (self.members.get(user_id) or {}).get("user")
            if isinstance(member_user, dict):
                return member_user
            raise DirectoryError("not_found", path=f"/users/{user_id}")
        return user

    async def resolve_member(self, guild_id: str, user_id: str) -> dict[str, Any] | None:
        return self.members.get(user_id)

    async def resolve_role(self, guild_id: str, role_id: str) -> dict[str, Any]:
        role = self.roles.get(role_id)
        if role is None:
            raise DirectoryError("not_found", path=f"/guilds/{guild_id}/roles/{role_id}")
        return role

    async def resolve_channel(self, channel_id: str) -> dict[str, Any]:
        channel = self.channels.get(channel_id)
        if channel is None:
            raise DirectoryError("not_found", path=f"/channels/{channel_id}")
        return channel


def _api_base() -> str:
    _load_dotenv()
    return (
        (os.environ.get("DISCORD_API_BASE") or "https://discord.com/api/v10")
        .strip()
        .rstrip("/")
    )


def _api_timeout_seconds() -> float:
    raw = (os.environ.get("DISCORD_API_TIMEOUT") or "").strip()
    if not raw:
        return 30.0
    try:
        return max(1.0, float(raw))
    except ValueError:
        return 30.0


def _api_max_attempts() -> int:
    raw = (os.environ.get("DISCORD_API_MAX_ATTEMPTS") or "").strip()
    if not raw:
        return 6
    try:
        return max(1, int(raw))
    except ValueError:
        return 6


def _retry_delay_seconds(attempt: int) -> float:
    base = min(20.0, 1.0 * (2 ** max(0, attempt - 1)))
    return base + random.uniform(0.0, 0.35)


def _retry_after_seconds(response: httpx.Response, attempt: int) -> float:
    retry_after_raw = response.headers.get("Retry-After")
    if retry_after_raw:
        try:
            return max(0.0, float(retry_after_raw))
        except ValueError:
            pass
    return _retry_delay_seconds(attempt)


def _auth_headers(token: str | None) -> dict[str, str]:
    _load_dotenv()
    token = (token or os.environ.get("DISCORD_BOT_TOKEN") or "").strip()
    if not token:
        raise ValueError("DISCORD_BOT_TOKEN is required for REST lookups")
    return {
        "Authorization": f"Bot {token}",
        "Accept": "application/json",
        "User-Agent": os.environ.get("DISCORD_USER_AGENT") or "discord-transcripts",
    }


def _api_cache_identity(base: str, path: str) -> str:
    return "discord-api:" + json.dumps(
        {"base": base, "path": path}, sort_keys=True, separators=(",", ":")
    )


class RestDirectory:
    """Directory over the Discord REST API.

    Guild role lists are fetched once per guild; members and users seen in
    message payloads can be remembered up front so they resolve without a
    request.
    """

    def __init__(
        self,
        *,
        token: str | None = None,
        api_base: str | None = None,
        timeout: float | None = None,
        max_attempts: int | None = None,
        use_cache: bool = True,
        cache_ttl: timedelta | None = None,
        refresh_cache: bool | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_base = (api_base or _api_base()).rstrip("/")
        self.max_attempts = max_attempts or _api_max_attempts()
        self.use_cache = use_cache
        self.cache_ttl = cache_ttl
        self.refresh_cache = get_refresh_cache() if refresh_cache is None else refresh_cache
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            headers=_auth_headers(token), timeout=timeout or _api_timeout_seconds()
        )
        self._users: dict[str, dict[str, Any]] = {}
        self._members: dict[tuple[str, str], dict[str, Any] | None] = {}
        self._roles: dict[str, asyncio.Future[list[dict[str, Any]]]] = {}

    async def __aenter__(self) -> RestDirectory:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        for future in self._roles.values():
            future.cancel()
        if self._owns_client:
            await self._client.aclose()

    def remember_messages(
        self, messages: list[dict[str, Any]], *, guild_id: str | None = None
    ) -> None:
        for message in messages:
            if not isinstance(message, dict):
                continue
            gid = str(message.get("guild_id") or guild_id or "")
            author = message.get("author")
            if isinstance(author, dict) and author.get("id") is not None:
                self._users.setdefault(str(author["id"]), author)
                if gid and isinstance(message.get("member"), dict):
                    self._members.setdefault((gid, str(author["id"])), message["member"])
            for mentioned in message.get("mentions") or []:
                if not isinstance(mentioned, dict) or mentioned.get("id") is None:
                    continue
                user_id = str(mentioned["id"])
                self._users.setdefault(user_id, mentioned)
                if gid and isinstance(mentioned.get("member"), dict):
                    self._members.setdefault((gid, user_id), mentioned["member"])

    async def _get(self, path: str) -> Any:
        from .cache import get_cached_api_json, store_api_json

        identity = _api_cache_identity(self.api_base, path)
        if self.use_cache and not self.refresh_cache:
            cached = get_cached_api_json(identity, ttl=self.cache_ttl)
            if cached is not None:
                return cached

        url = f"{self.api_base}{path}"
        last_exc: Exception | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                response = await self._client.get(url)
            except httpx.TransportError as exc:
                last_exc = exc
                if attempt >= self.max_attempts:
                    break
                wait = _retry_delay_seconds(attempt)
                _log(
                    f"  Discord request failed ({type(exc).__name__}); retrying in {wait:.1f}s "
                    f"(attempt {attempt}/{self.max_attempts})"
                )
                await asyncio.sleep(wait)
                continue

            if response.status_code == 404:
                raise DirectoryError("not_found", path=path)
            if response.status_code == 403:
                raise DirectoryError("forbidden", path=path)
            if response.status_code == 401:
                raise DirectoryError("unauthorized", path=path)

            if response.status_code in _TRANSIENT_STATUSES:
                last_exc = httpx.HTTPStatusError(
                    f"Discord API returned {response.status_code} for {path}",
                    request=response.request,
                    response=response,
                )
                if attempt >= self.max_attempts:
                    break
                wait = _retry_after_seconds(response, attempt)
                _log(
                    f"  Discord API returned {response.status_code}; retrying in {wait:.1f}s "
                    f"(attempt {attempt}/{self.max_attempts})"
                )
                await asyncio.sleep(wait)
                continue

            response.raise_for_status()
            payload = response.json()
            if self.use_cache:
                store_api_json(identity, payload)
            return payload

        if self.use_cache and not self.refresh_cache:
            stale_payload = get_cached_api_json(identity, ttl=timedelta.max)
            if stale_payload is not None:
                _log(f"  Discord API request failed; using stale cache: {path}")
                return stale_payload

        if last_exc is not None:
            raise last_exc
        raise DirectoryError("failed", path=path)

    async def resolve_user(self, user_id: str) -> dict[str, Any]:
        cached = self._users.get(user_id)
        if cached is not None:
            return cached
        payload = await self._get(f"/users/{user_id}")
        if not isinstance(payload, dict):
            raise DirectoryError("failed", path=f"/users/{user_id}")
        self._users[user_id] = payload
        return payload

    async def resolve_member(self, guild_id: str, user_id: str) -> dict[str, Any] | None:
        key = (guild_id, user_id)
        if key in self._members:
            return self._members[key]
        try:
            payload = await self._get(f"/guilds/{guild_id}/members/{user_id}")
        except DirectoryError as exc:
            if exc.reason != "not_found":
                raise
            payload = None
        member = payload if isinstance(payload, dict) else None
        self._members[key] = member
        return member

    async def guild_roles(self, guild_id: str) -> list[dict[str, Any]]:
        future = self._roles.get(guild_id)
        if future is None or future.cancelled():
            future = asyncio.ensure_future(self._get(f"/guilds/{guild_id}/roles"))
            self._roles[guild_id] = future
        try:
            # one caller timing out must not cancel the fetch the others wait on
            payload = await asyncio.shield(future)
        except Exception:
            if self._roles.get(guild_id) is future:
                del self._roles[guild_id]
            raise
        if not isinstance(payload, list):
            return []
        return [role for role in payload if isinstance(role, dict)]

    async def resolve_role(self, guild_id: str, role_id: str) -> dict[str, Any]:
        for role in await self.guild_roles(guild_id):
            if str(role.get("id")) == role_id:
                return role
        raise DirectoryError("not_found", path=f"/guilds/{guild_id}/roles/{role_id}")

    async def resolve_channel(self, channel_id: str) -> dict[str, Any]:
        payload = await self._get(f"/channels/{channel_id}")
        if not isinstance(payload, dict):
            raise DirectoryError("failed", path=f"/channels/{channel_id}")
        return payload
