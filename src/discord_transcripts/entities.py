from __future__ import annotations

import asyncio
import re
import sys
from dataclasses import dataclass, field
from typing import Any, Iterable

from .components import has_structured_components, iter_component_texts
from .concurrency import run_indexed_tasks
from .directory import Directory, Resolution, resolve

DISCORD_CDN = "https://cdn.discordapp.com"
AVATAR_SIZE = 64
VERIFIED_BOT_FLAG = 1 << 16

USER_MENTION_RE = re.compile(r"<@!?(\d+)>")
ROLE_MENTION_RE = re.compile(r"<@&(\d+)>")
CHANNEL_MENTION_RE = re.compile(r"<#(\d+)>")

CHANNEL_KINDS = {
    0: "text",
    1: "dm",
    2: "voice",
    3: "group_dm",
    4: "category",
    5: "announcement",
    10: "announcement_thread",
    11: "public_thread",
    12: "private_thread",
    13: "stage",
    14: "directory",
    15: "forum",
    16: "media",
}
THREAD_KINDS = frozenset({"announcement_thread", "public_thread", "private_thread"})


def _log(message: str) -> None:
    from .runtime import get_verbose_logging

    if get_verbose_logging():
        print(message, file=sys.stderr, flush=True)


@dataclass(frozen=True)
class Profile:
    author: str
    avatar: str | None = None
    role_color: str | None = None
    role_icon: str | None = None
    role_name: str | None = None
    bot: bool = False
    verified: bool = False

    def to_dict(self) -> dict[str, Any]:
        payload = {
            "author": self.author,
            "avatar": self.avatar,
            "roleColor": self.role_color,
            "roleIcon": self.role_icon,
            "roleName": self.role_name,
            "bot": self.bot,
            "verified": self.verified,
        }
        return {k: v for k, v in payload.items() if v is not None}


@dataclass(frozen=True)
class RoleEntry:
    name: str
    color: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "color": self.color}


@dataclass(frozen=True)
class ChannelEntry:
    name: str
    kind: str = "text"

    @property
    def is_thread(self) -> bool:
        return self.kind in THREAD_KINDS

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "kind": self.kind}


@dataclass
class EntityTable:
    profiles: dict[str, Profile] = field(default_factory=dict)
    roles: dict[str, RoleEntry] = field(default_factory=dict)
    channels: dict[str, ChannelEntry] = field(default_factory=dict)

    def profile(self, user_id: str) -> Profile | None:
        return self.profiles.get(user_id)

    def role(self, role_id: str) -> RoleEntry | None:
        return self.roles.get(role_id)

    def channel(self, channel_id: str) -> ChannelEntry | None:
        return self.channels.get(channel_id)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            user_id: profile.to_dict() for user_id, profile in self.profiles.items()
        }
        payload["_roles"] = {
            role_id: entry.to_dict() for role_id, entry in self.roles.items()
        }
        payload["_channels"] = {
            channel_id: entry.to_dict() for channel_id, entry in self.channels.items()
        }
        return payload


@dataclass
class MentionRefs:
    users: dict[str, None] = field(default_factory=dict)
    roles: dict[str, None] = field(default_factory=dict)
    channels: dict[str, None] = field(default_factory=dict)

    def add_text(self, text: Any) -> None:
        if not isinstance(text, str) or not text:
            return
        for match in USER_MENTION_RE.finditer(text):
            self.users.setdefault(match.group(1), None)
        for match in ROLE_MENTION_RE.finditer(text):
            self.roles.setdefault(match.group(1), None)
        for match in CHANNEL_MENTION_RE.finditer(text):
            self.channels.setdefault(match.group(1), None)


def format_color(value: Any) -> str | None:
    """Normalize a color to ``#rrggbb``; black means "unset" and maps to ``None``."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        if value <= 0:
            return None
        return f"#{value:06x}"
    if isinstance(value, str):
        cleaned = value.strip().lower()
        if not cleaned or cleaned in {"#000000", "#000", "0"}:
            return None
        return cleaned
    return None


def channel_kind(value: Any) -> str:
    if isinstance(value, str) and value:
        return value
    if isinstance(value, int) and not isinstance(value, bool):
        return CHANNEL_KINDS.get(value, "text")
    return "text"


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _image_extension(image_hash: str) -> str:
    return "gif" if image_hash.startswith("a_") else "png"


def default_avatar_url(user: dict[str, Any]) -> str:
    user_id = str(user.get("id") or "0")
    discriminator = str(user.get("discriminator") or "0")
    if discriminator in {"0", "0000"}:
        try:
            index = (int(user_id) >> 22) % 6
        except ValueError:
            index = 0
    else:
        try:
            index = int(discriminator) % 5
        except ValueError:
            index = 0
    return f"{DISCORD_CDN}/embed/avatars/{index}.png"


def avatar_url(
    user: dict[str, Any],
    member: dict[str, Any] | None = None,
    *,
    guild_id: str | None = None,
) -> str:
    user_id = str(user.get("id") or "")
    member_avatar = _as_dict(member).get("avatar")
    if isinstance(member_avatar, str) and member_avatar and guild_id and user_id:
        return (
            f"{DISCORD_CDN}/guilds/{guild_id}/users/{user_id}/avatars/"
            f"{member_avatar}.{_image_extension(member_avatar)}?size={AVATAR_SIZE}"
        )
    user_avatar = user.get("avatar")
    if isinstance(user_avatar, str) and user_avatar and user_id:
        return (
            f"{DISCORD_CDN}/avatars/{user_id}/{user_avatar}."
            f"{_image_extension(user_avatar)}?size={AVATAR_SIZE}"
        )
    return default_avatar_url(user)


def index_roles(
    guild_roles: Iterable[dict[str, Any]] | dict[str, Any] | None,
) -> dict[str, dict[str, Any]]:
    if not guild_roles:
        return {}
    if isinstance(guild_roles, dict):
        return {str(k): v for k, v in guild_roles.items() if isinstance(v, dict)}
    out: dict[str, dict[str, Any]] = {}
    for role in guild_roles:
        if isinstance(role, dict) and role.get("id") is not None:
            out[str(role["id"])] = role
    return out


def _member_roles(
    member: dict[str, Any], roles_by_id: dict[str, dict[str, Any]]
) -> list[tuple[str, dict[str, Any]]]:
    role_ids = member.get("roles") if isinstance(member.get("roles"), list) else []
    resolved = [
        (str(role_id), roles_by_id[str(role_id)])
        for role_id in role_ids
        if str(role_id) in roles_by_id
    ]
    return sorted(
        resolved, key=lambda item: int(item[1].get("position") or 0), reverse=True
    )


def _display_name(member: dict[str, Any], user: dict[str, Any]) -> str:
    for value in (
        member.get("nick"),
        user.get("global_name"),
        user.get("display_name"),
        user.get("username"),
    ):
        if isinstance(value, str) and value.strip():
            return value.strip()
    return f"User {user.get('id')}"


def build_profile(
    member: dict[str, Any] | None,
    user: dict[str, Any],
    *,
    guild_id: str | None = None,
    roles_by_id: dict[str, dict[str, Any]] | None = None,
) -> Profile:
    member = _as_dict(member)
    user = _as_dict(user) or _as_dict(member.get("user"))
    role_color = role_icon = role_name = None
    if member and roles_by_id:
        ranked = _member_roles(member, roles_by_id)
        role_color = next(
            (c for c in (format_color(r.get("color")) for _, r in ranked) if c), None
        )
        role_icon = next(
            (
                f"{DISCORD_CDN}/role-icons/{role_id}/{role['icon']}.png?size={AVATAR_SIZE}"
                for role_id, role in ranked
                if role.get("icon")
            ),
            None,
        )
        role_name = next(
            (str(role.get("name")) for _, role in ranked if role.get("hoist")), None
        )
    flags = user.get("public_flags") or user.get("flags") or 0
    return Profile(
        author=_display_name(member, user),
        avatar=avatar_url(user, member, guild_id=guild_id),
        role_color=role_color,
        role_icon=role_icon,
        role_name=role_name,
        bot=bool(user.get("bot")),
        verified=bool(int(flags) & VERIFIED_BOT_FLAG) if isinstance(flags, int) else False,
    )


def fallback_profile(user_id: str) -> Profile:
    return Profile(author=f"User {user_id}", bot=False, verified=False)


def fallback_role(role_id: str) -> RoleEntry:
    return RoleEntry(name=f"Role {role_id}", color=None)


def fallback_channel(channel_id: str) -> ChannelEntry:
    return ChannelEntry(name=f"Channel {channel_id}", kind="text")


def role_entry(role: dict[str, Any], role_id: str) -> RoleEntry:
    name = role.get("name")
    return RoleEntry(
        name=str(name) if isinstance(name, str) and name else f"Role {role_id}",
        color=format_color(role.get("color")),
    )


def channel_entry(channel: dict[str, Any], channel_id: str) -> ChannelEntry:
    name = channel.get("name")
    return ChannelEntry(
        name=str(name) if isinstance(name, str) and name else f"Channel {channel_id}",
        kind=channel_kind(channel.get("type")),
    )


def interaction_user(message: dict[str, Any]) -> dict[str, Any] | None:
    for key in ("interaction_metadata", "interaction"):
        user = _as_dict(_as_dict(message.get(key)).get("user"))
        if user.get("id") is not None:
            return user
    return None


def thread_last_message(message: dict[str, Any]) -> dict[str, Any] | None:
    thread = _as_dict(message.get("thread"))
    last = thread.get("last_message")
    return last if isinstance(last, dict) else None


def collect_mentions(messages: list[dict[str, Any]]) -> MentionRefs:
    refs = MentionRefs()
    for message in messages:
        refs.add_text(message.get("content"))
        if has_structured_components(message):
            for text in iter_component_texts(message.get("components") or []):
                refs.add_text(text)
        last = thread_last_message(message)
        if last is not None:
            refs.add_text(last.get("content"))
    return refs


def _guild_id_from(messages: list[dict[str, Any]]) -> str | None:
    for message in messages:
        value = message.get("guild_id")
        if value is not None:
            return str(value)
    return None


def _register_message_profiles(
    message: dict[str, Any],
    table: EntityTable,
    *,
    guild_id: str | None,
    roles_by_id: dict[str, dict[str, Any]],
) -> None:
    author = _as_dict(message.get("author"))
    author_id = author.get("id")
    if author_id is not None and str(author_id) not in table.profiles:
        table.profiles[str(author_id)] = build_profile(
            _as_dict(message.get("member")),
            author,
            guild_id=guild_id,
            roles_by_id=roles_by_id,
        )

    invoker = interaction_user(message)
    if invoker is not None and str(invoker["id"]) not in table.profiles:
        table.profiles[str(invoker["id"])] = build_profile(
            None, invoker, guild_id=guild_id, roles_by_id=roles_by_id
        )

    last = thread_last_message(message)
    if last is not None:
        last_author = _as_dict(last.get("author"))
        last_author_id = last_author.get("id")
        if last_author_id is not None and str(last_author_id) not in table.profiles:
            table.profiles[str(last_author_id)] = build_profile(
                _as_dict(last.get("member")),
                last_author,
                guild_id=guild_id,
                roles_by_id=roles_by_id,
            )


async def resolve_user_profile(
    directory: Directory,
    user_id: str,
    *,
    guild_id: str | None,
    roles_by_id: dict[str, dict[str, Any]],
    timeout: float | None = None,
) -> Profile:
    user = await resolve(lambda: directory.resolve_user(user_id), timeout=timeout)
    if not user.ok:
        _log(f"  Could not resolve user {user_id} ({user.reason}); using fallback")
        return fallback_profile(user_id)

    member: Resolution[dict[str, Any] | None] = Resolution(value=None)
    if guild_id:
        member = await resolve(
            lambda: directory.resolve_member(guild_id, user_id), timeout=timeout
        )
        if not member.ok:
            _log(f"  No member record for user {user_id} ({member.reason})")
    return build_profile(
        member.value if member.ok else None,
        user.value,
        guild_id=guild_id,
        roles_by_id=roles_by_id,
    )


async def resolve_role_entry(
    directory: Directory,
    role_id: str,
    *,
    guild_id: str | None,
    timeout: float | None = None,
) -> RoleEntry:
    if not guild_id:
        return fallback_role(role_id)
    role = await resolve(lambda: directory.resolve_role(guild_id, role_id), timeout=timeout)
    if not role.ok or not isinstance(role.value, dict):
        _log(f"  Could not resolve role {role_id} ({role.reason}); using fallback")
        return fallback_role(role_id)
    return role_entry(role.value, role_id)


async def resolve_channel_entry(
    directory: Directory,
    channel_id: str,
    *,
    timeout: float | None = None,
) -> ChannelEntry:
    channel = await resolve(lambda: directory.resolve_channel(channel_id), timeout=timeout)
    if not channel.ok or not isinstance(channel.value, dict):
        _log(f"  Could not resolve channel {channel_id} ({channel.reason}); using fallback")
        return fallback_channel(channel_id)
    return channel_entry(channel.value, channel_id)


async def build_entity_table(
    messages: list[dict[str, Any]],
    directory: Directory,
    *,
    guild_id: str | None = None,
    guild_roles: Iterable[dict[str, Any]] | dict[str, Any] | None = None,
    max_workers: int | None = None,
    timeout: float | None = None,
) -> EntityTable:
    """Build the per-transcript entity table.

    Authors, interaction users and thread reply authors are registered from the
    payloads themselves. Every user, role and channel id mentioned in content or
    structured components is then resolved through ``directory`` exactly once;
    failures produce fallback entries instead of errors.
    """
    if messages is None:
        raise TypeError("messages must be a list of message payloads, not None")
    if not isinstance(messages, list):
        raise TypeError(f"messages must be a list, got {type(messages).__name__}")

    from .runtime import get_resolve_jobs

    messages = [m for m in messages if isinstance(m, dict)]
    guild_id = str(guild_id) if guild_id else _guild_id_from(messages)
    roles_by_id = index_roles(guild_roles)
    workers = max_workers if max_workers is not None else get_resolve_jobs()

    table = EntityTable()
    for message in messages:
        _register_message_profiles(
            message, table, guild_id=guild_id, roles_by_id=roles_by_id
        )

    refs = collect_mentions(messages)
    user_ids = [uid for uid in refs.users if uid not in table.profiles]
    role_ids = list(refs.roles)
    channel_ids = list(refs.channels)
    _log(
        f"  Resolving {len(user_ids)} user(s), {len(role_ids)} role(s), "
        f"{len(channel_ids)} channel(s)"
    )

    async def _users() -> None:
        results = await run_indexed_tasks(
            [
                (
                    index,
                    lambda uid=uid: resolve_user_profile(
                        directory,
                        uid,
                        guild_id=guild_id,
                        roles_by_id=roles_by_id,
                        timeout=timeout,
                    ),
                )
                for index, uid in enumerate(user_ids)
            ],
            max_workers=workers,
        )
        for index, profile in results:
            table.profiles.setdefault(user_ids[index], profile)

    async def _roles() -> None:
        results = await run_indexed_tasks(
            [
                (
                    index,
                    lambda rid=rid: resolve_role_entry(
                        directory, rid, guild_id=guild_id, timeout=timeout
                    ),
                )
                for index, rid in enumerate(role_ids)
            ],
            max_workers=workers,
        )
        for index, entry in results:
            table.roles[role_ids[index]] = entry

    async def _channels() -> None:
        results = await run_indexed_tasks(
            [
                (
                    index,
                    lambda cid=cid: resolve_channel_entry(
                        directory, cid, timeout=timeout
                    ),
                )
                for index, cid in enumerate(channel_ids)
            ],
            max_workers=workers,
        )
        for index, entry in results:
            table.channels[channel_ids[index]] = entry

    await asyncio.gather(_users(), _roles(), _channels())
    return table
