from .emoji import count_emoji_only, custom_emoji_url, emoji_url, unicode_emoji_url
from .inline import DiscordInlineExtension, build_markdown, render_markup
from .transcode import (
    RenderContext,
    RenderType,
    apply_substitutions,
    parse_tagged,
    render_ast,
    render_content,
    truncate_for_reply,
)

__all__ = [
    "DiscordInlineExtension",
    "RenderContext",
    "RenderType",
    "apply_substitutions",
    "build_markdown",
    "count_emoji_only",
    "custom_emoji_url",
    "emoji_url",
    "parse_tagged",
    "render_ast",
    "render_content",
    "render_markup",
    "truncate_for_reply",
    "unicode_emoji_url",
]
