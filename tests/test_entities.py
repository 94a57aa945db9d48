from __future__ import annotations

import asyncio
from collections import Counter

import pytest

from discord_transcripts.directory import DirectoryError
from discord_transcripts.entities import (
    ChannelEntry,
    RoleEntry,
    build_entity_table,
    build_profile,
    collect_mentions,
    fallback_profile,
    format_color,
)


class _CountingDirectory:
    def __init__(
        self,
        *,
        users: dict | None = None,
        members: dict | None = None,
        roles: dict | None = None,
        channels: dict | None = None,
        fail: bool = False,
    ) -> None:
        self.users = users or {}
        self.members = members or {}
        self.roles = roles or {}
        self.channels = channels or {}
        self.fail = fail
        self.calls: Counter = Counter()

    async def resolve_user(self, user_id):
        self.calls[("user", user_id)] += 1
        if self.fail:
            raise DirectoryError("not_found")
        return self.users.get(user_id) or {"id": user_id, "username": f"user{user_id}"}

    async def resolve_member(self, guild_id, user_id):
        self.calls[("member", user_id)] += 1
        if self.fail:
            raise RuntimeError("member lookup exploded")
        return self.members.get(user_id)

    async def resolve_role(self, guild_id, role_id):
        self.calls[("role", role_id)] += 1
        if self.fail or role_id not in self.roles:
            raise DirectoryError("not_found")
        return self.roles[role_id]

    async def resolve_channel(self, channel_id):
        self.calls[("channel", channel_id)] += 1
        if self.fail or channel_id not in self.channels:
            raise DirectoryError("forbidden")
        return self.channels[channel_id]


def _message(message_id: str, content: str, **extra) -> dict:
    payload = {
        "id": message_id,
        "guild_id": "900",
        "author": {"id": "100", "username": "author"},
        "content": content,
    }
    payload.update(extra)
    return payload


def test_each_referenced_id_is_resolved_once() -> None:
    messages = [
        _message("1", "hi <@1> and <@&10>"),
        _message("2", "again <@!1> in <#20>"),
        _message("3", "<@1> <@&10> <#20> <@2>"),
    ]
    directory = _CountingDirectory(
        roles={"10": {"id": "10", "name": "Mods", "color": 0xFF0000}},
        channels={"20": {"id": "20", "name": "general", "type": 0}},
    )

    table = asyncio.run(build_entity_table(messages, directory))

    assert directory.calls[("user", "1")] == 1
    assert directory.calls[("user", "2")] == 1
    assert directory.calls[("role", "10")] == 1
    assert directory.calls[("channel", "20")] == 1
    assert ("user", "100") not in directory.calls
    assert table.role("10") == RoleEntry("Mods", "#ff0000")
    assert table.channel("20") == ChannelEntry("general", "text")
    assert table.profile("1").author == "user1"


def test_every_reference_gets_a_fallback_when_lookups_fail() -> None:
    messages = [_message("1", "<@1> <@&10> <#20>")]
    directory = _CountingDirectory(fail=True)

    table = asyncio.run(build_entity_table(messages, directory))

    assert table.profile("1") == fallback_profile("1")
    assert table.profile("1").author == "User 1"
    assert table.profile("1").bot is False
    assert table.profile("1").verified is False
    assert table.role("10") == RoleEntry("Role 10", None)
    assert table.channel("20") == ChannelEntry("Channel 20", "text")
    assert table.profile("100").author == "author"


def test_member_failure_keeps_the_user_profile() -> None:
    directory = _CountingDirectory(
        users={"1": {"id": "1", "username": "plain", "global_name": "Global"}}
    )

    async def _member_fails(guild_id, user_id):
        raise DirectoryError("forbidden")

    directory.resolve_member = _member_fails
    table = asyncio.run(build_entity_table([_message("1", "<@1>")], directory))

    assert table.profile("1").author == "Global"


def test_display_name_priority() -> None:
    user = {"id": "1", "username": "name", "global_name": "Global"}

    assert build_profile({"nick": "Nick"}, user).author == "Nick"
    assert build_profile({}, user).author == "Global"
    assert build_profile(None, {"id": "1", "username": "name"}).author == "name"
    assert build_profile(None, {"id": "1"}).author == "User 1"


def test_profile_role_details_follow_position() -> None:
    roles = {
        "1": {"id": "1", "name": "Low", "color": 0x00FF00, "position": 1, "hoist": True},
        "2": {"id": "2", "name": "High", "color": 0, "position": 5, "icon": "abc"},
        "3": {"id": "3", "name": "Mid", "color": 0x0000FF, "position": 3},
    }
    member = {"roles": ["1", "2", "3"], "nick": "Nick"}
    user = {"id": "42", "username": "u", "avatar": "a_hash", "public_flags": 1 << 16}

    profile = build_profile(member, user, guild_id="900", roles_by_id=roles)

    assert profile.role_color == "#0000ff"
    assert profile.role_icon == "https://cdn.discordapp.com/role-icons/2/abc.png?size=64"
    assert profile.role_name == "Low"
    assert profile.avatar == "https://cdn.discordapp.com/avatars/42/a_hash.gif?size=64"
    assert profile.verified is True


def test_black_role_color_is_treated_as_unset() -> None:
    assert format_color(0) is None
    assert format_color("#000000") is None
    assert format_color(0x123456) == "#123456"

    directory = _CountingDirectory(roles={"10": {"id": "10", "name": "Dark", "color": 0}})
    table = asyncio.run(build_entity_table([_message("1", "<@&10>")], directory))

    assert table.role("10") == RoleEntry("Dark", None)


def test_roles_fall_back_without_a_guild() -> None:
    message = {"id": "1", "author": {"id": "100"}, "content": "<@&10>"}
    directory = _CountingDirectory(roles={"10": {"id": "10", "name": "Mods"}})

    table = asyncio.run(build_entity_table([message], directory))

    assert table.role("10") == RoleEntry("Role 10", None)
    assert ("role", "10") not in directory.calls


def test_mentions_inside_components_are_resolved() -> None:
    current = _message(
        "1",
        "",
        flags=1 << 15,
        components=[
            {
                "data": {"type": 17},
                "components": [
                    {"data": {"type": 10, "content": "ping <@5>"}},
                    {
                        "data": {"type": 9},
                        "components": [{"data": {"type": 10, "content": "see <#20>"}}],
                    },
                ],
            }
        ],
    )
    legacy = _message(
        "2",
        "",
        components=[{"type": 12, "children": [{"type": 14, "content": "<@&7>"}]}],
    )
    directory = _CountingDirectory(
        roles={"7": {"id": "7", "name": "Seven"}},
        channels={"20": {"id": "20", "name": "general"}},
    )

    table = asyncio.run(build_entity_table([current, legacy], directory))

    assert table.profile("5").author == "user5"
    assert table.role("7").name == "Seven"
    assert table.channel("20").name == "general"


def test_action_rows_alone_are_not_scanned() -> None:
    message = _message(
        "1",
        "",
        components=[{"data": {"type": 1}, "components": [{"data": {"type": 10, "content": "<@5>"}}]}],
    )

    assert list(collect_mentions([message]).users) == []


def test_interaction_and_thread_authors_are_registered() -> None:
    message = _message(
        "1",
        "",
        interaction_metadata={"user": {"id": "300", "username": "invoker"}},
        thread={
            "name": "thread",
            "last_message": {
                "author": {"id": "400", "username": "replier"},
                "content": "hello <@500>",
            },
        },
    )
    directory = _CountingDirectory()

    table = asyncio.run(build_entity_table([message], directory))

    assert table.profile("300").author == "invoker"
    assert table.profile("400").author == "replier"
    assert table.profile("500").author == "user500"
    assert ("user", "300") not in directory.calls


def test_thread_channel_kinds() -> None:
    directory = _CountingDirectory(
        channels={"20": {"id": "20", "name": "help", "type": 11}},
    )
    table = asyncio.run(build_entity_table([_message("1", "<#20>")], directory))

    assert table.channel("20") == ChannelEntry("help", "public_thread")
    assert table.channel("20").is_thread


def test_table_is_deterministic() -> None:
    messages = [_message("1", "<@1> <@&10> <#20> <@2>")]
    directory = _CountingDirectory(
        roles={"10": {"id": "10", "name": "Mods", "color": 0x112233}},
        channels={"20": {"id": "20", "name": "general"}},
    )

    first = asyncio.run(build_entity_table(messages, directory, max_workers=4))
    second = asyncio.run(build_entity_table(messages, directory, max_workers=1))

    assert first.to_dict() == second.to_dict()
    assert first.to_dict()["_roles"] == {"10": {"name": "Mods", "color": "#112233"}}


def test_none_message_list_is_rejected() -> None:
    with pytest.raises(TypeError):
        asyncio.run(build_entity_table(None, _CountingDirectory()))
    with pytest.raises(TypeError):
        asyncio.run(build_entity_table({"id": "1"}, _CountingDirectory()))


def test_thread_preview_does_not_replace_a_registered_profile() -> None:
    messages = [
        _message(
            "1",
            "hello",
            author={"id": "7", "username": "alice"},
            member={"nick": "Nick"},
        ),
        _message(
            "2",
            "",
            thread={
                "name": "t",
                "last_message": {"author": {"id": "7", "username": "alice"}, "content": "x"},
            },
        ),
    ]

    table = asyncio.run(build_entity_table(messages, _CountingDirectory()))

    assert table.profile("7").author == "Nick"
