from typing import Any


def render(
    messages: list[dict[str, Any]],
    *,
    guild_id: str | None = None,
    users: Any = None,
    members: Any = None,
    roles: Any = None,
    channels: Any = None,
    settings: dict[str, Any] | None = None,
) -> dict[str, Any]:
    from .directory import StaticDirectory
    from .settings import build_settings
    from .transcript import build_transcript_sync

    directory = StaticDirectory(
        users=users, members=members, roles=roles, channels=channels
    )
    transcript = build_transcript_sync(
        messages,
        directory,
        guild_id=guild_id,
        guild_roles=roles,
        settings=build_settings(settings),
    )
    return transcript.to_dict()


def render_markup(
    text: str,
    *,
    reply: bool = False,
) -> list[dict[str, Any]]:
    from .markup.transcode import RenderContext, RenderType, render_content
    from .nodes import nodes_to_dicts

    context = RenderContext(mode=RenderType.REPLY if reply else RenderType.NORMAL)
    return nodes_to_dicts(render_content(text, context))


def normalize_components(components: list[Any]) -> list[dict[str, Any]]:
    from .components import component_to_dict, parse_components

    return [component_to_dict(node) for node in parse_components(components)]


__all__ = [
    "render",
    "render_markup",
    "normalize_components",
]
