"""Python-Markdown extension for Discord inline syntax.

Mentions, timestamps and emoji are matched ahead of the generic link, autolink
and raw-HTML rules so that ``<@123>`` never turns into a link or stray markup.
Styling tags are renamed to the ``discord-*`` vocabulary that
:mod:`discord_transcripts.markup.transcode` reads back into content nodes.
"""

from __future__ import annotations

import html
import re
import xml.etree.ElementTree as etree
from typing import Any

import markdown
from markdown.blockprocessors import HashHeaderProcessor
from markdown.extensions import Extension
from markdown.inlinepatterns import InlineProcessor, SimpleTagInlineProcessor
from markdown.preprocessors import Preprocessor
from markdown.treeprocessors import Treeprocessor
from markdown.util import AtomicString, Registry

from ..entities import EntityTable
from ..nodes import MentionNode
from .emoji import (
    CUSTOM_EMOJI_RE,
    TEXT_PRESENTATION_RE,
    UNICODE_EMOJI_RE,
    custom_emoji_url,
    unicode_emoji_url,
)

MENTION_RE = r"<(?P<sigil>@!?|@&|#)(?P<id>\d+)>"
BROADCAST_RE = r"(?<![\w`])@(?P<target>everyone|here)\b"
TIMESTAMP_RE = r"<t:(?P<seconds>-?\d{1,13})(?::(?P<format>[tTdDfFR]))?>"
STRIKETHROUGH_RE = r"(~~)(.+?)~~"
UNDERLINE_RE = r"(__)(.+?)__(?!_)"
UNDERSCORE_EM_RE = r"(?<!\w)(_)(?!_)(.+?)(?<!_)_(?!\w)"
FENCE_RE = re.compile(
    r"```(?:(?P<lang>[\w+#.-]+)[ \t]*\n)?\n?(?P<code>.*?)```", re.DOTALL
)

TAG_RENAMES = {
    "strong": "discord-bold",
    "em": "discord-italic",
    "u": "discord-underline",
    "del": "discord-strikethrough",
    "s": "discord-strikethrough",
    "code": "discord-inline-code",
}

DROPPED_PREPROCESSORS = ["html_block"]
DROPPED_BLOCK_RULES = [
    "indent",
    "code",
    "hashheader",
    "setextheader",
    "hr",
    "olist",
    "ulist",
    "quote",
    "reference",
]
DROPPED_INLINE_RULES = [
    "reference",
    "image_link",
    "image_reference",
    "short_reference",
    "short_image_ref",
    "automail",
    "linebreak",
    "html",
    "entity",
    "not_strong",
    "em_strong2",
]


def _is_black(color: str | None) -> bool:
    return bool(color) and color.strip().lower() in {"#000000", "#000"}


def mention_node(kind: str, raw_id: str, entities: EntityTable | None) -> MentionNode:
    """Label a mention of ``kind`` (user, role, channel) from the entity table."""
    if kind == "channel":
        channel = entities.channel(raw_id) if entities is not None else None
        if channel is None:
            return MentionNode(kind="channel", label=raw_id)
        return MentionNode(
            kind="thread" if channel.is_thread else "channel", label=channel.name
        )
    if kind == "role":
        role = entities.role(raw_id) if entities is not None else None
        if role is None:
            return MentionNode(kind="role", label=raw_id)
        color = None if _is_black(role.color) else role.color
        return MentionNode(kind="role", label=role.name, color=color)
    profile = entities.profile(raw_id) if entities is not None else None
    return MentionNode(
        kind="user", label=profile.author if profile is not None else f"User {raw_id}"
    )


def broadcast_node(target: str) -> MentionNode:
    return MentionNode(kind="broadcast", label=f"@{target}", highlight=True)


def mention_element(node: MentionNode) -> etree.Element:
    el = etree.Element("discord-mention")
    el.set("type", node.kind)
    el.set("id", node.label)
    if node.color:
        el.set("color", node.color)
    if node.highlight:
        el.set("highlight", "true")
    el.text = AtomicString(node.label)
    return el


def drop_rules(registry: Registry, names: list[str]) -> Registry:
    for name in names:
        registry.deregister(name, strict=False)
    return registry


class DiscordHeaderProcessor(HashHeaderProcessor):
    # Discord only renders three heading levels and needs a space after the hashes.
    RE = re.compile(r"(?:^|\n)(?P<level>#{1,3})[ \t]+(?P<header>(?:\\.|[^\\])*?)#*(?:\n|$)")


class FencedCodePreprocessor(Preprocessor):
    def run(self, lines: list[str]) -> list[str]:
        text = "\n".join(lines)

        def _store(match: re.Match[str]) -> str:
            language = (match.group("lang") or "").strip()
            code = match.group("code")
            if code.endswith("\n"):
                code = code[:-1]
            block = (
                f'<discord-code-block language="{html.escape(language)}">'
                f"{html.escape(code, quote=False)}</discord-code-block>"
            )
            return self.md.htmlStash.store(block)

        return FENCE_RE.sub(_store, text).split("\n")


class MentionInlineProcessor(InlineProcessor):
    def __init__(self, pattern: str, md: markdown.Markdown, entities: EntityTable | None):
        super().__init__(pattern, md)
        self.entities = entities

    def handleMatch(self, m: re.Match[str], data: str) -> tuple[Any, int, int]:
        sigil = m.group("sigil")
        kind = "channel" if sigil == "#" else "role" if "&" in sigil else "user"
        node = mention_node(kind, m.group("id"), self.entities)
        return mention_element(node), m.start(0), m.end(0)


class BroadcastInlineProcessor(InlineProcessor):
    def handleMatch(self, m: re.Match[str], data: str) -> tuple[Any, int, int]:
        return mention_element(broadcast_node(m.group("target"))), m.start(0), m.end(0)


class TimestampInlineProcessor(InlineProcessor):
    def handleMatch(self, m: re.Match[str], data: str) -> tuple[Any, int, int]:
        el = etree.Element("discord-time")
        el.set("timestamp", m.group("seconds"))
        if m.group("format"):
            el.set("format", m.group("format"))
        el.text = AtomicString(m.group(0))
        return el, m.start(0), m.end(0)


class _EmojiInlineProcessor(InlineProcessor):
    def __init__(self, pattern: Any, md: markdown.Markdown, *, large: bool, embed: bool):
        super().__init__(pattern if isinstance(pattern, str) else "", md)
        if not isinstance(pattern, str):
            self.compiled_re = pattern
        self.large = large
        self.embed = embed

    def _element(self, name: str, url: str) -> etree.Element:
        el = etree.Element("discord-custom-emoji")
        el.set("name", name)
        el.set("url", url)
        if self.large:
            el.set("large", "true")
        if self.embed:
            el.set("embed", "true")
        el.text = AtomicString(name)
        return el


class CustomEmojiInlineProcessor(_EmojiInlineProcessor):
    def handleMatch(self, m: re.Match[str], data: str) -> tuple[Any, int, int]:
        url = custom_emoji_url(m.group("id"), animated=bool(m.group("animated")))
        return self._element(m.group("name"), url), m.start(0), m.end(0)


class UnicodeEmojiInlineProcessor(_EmojiInlineProcessor):
    def handleMatch(self, m: Any, data: str) -> tuple[Any, Any, Any]:
        syntax = m.group("syntax")
        if TEXT_PRESENTATION_RE.fullmatch(syntax):
            return None, None, None
        return self._element(syntax, unicode_emoji_url(syntax)), m.start(0), m.end(0)


class DiscordTagTreeprocessor(Treeprocessor):
    def run(self, root: etree.Element) -> None:
        for el in root.iter():
            renamed = TAG_RENAMES.get(el.tag)
            if renamed:
                el.tag = renamed
            elif el.tag == "a":
                el.set("target", "_blank")
                el.set("rel", "noreferrer")


class DiscordInlineExtension(Extension):
    """Register Discord inline rules on a Python-Markdown engine.

    The engine is first cut down to headings, paragraphs, emphasis, links,
    autolinks and escapes; platform rules are then registered above ``link``.
    """

    def __init__(
        self,
        entities: EntityTable | None = None,
        *,
        large_emoji: bool = False,
        embed_emoji: bool = False,
    ) -> None:
        self.entities = entities
        self.large_emoji = large_emoji
        self.embed_emoji = embed_emoji
        super().__init__()

    def extendMarkdown(self, md: markdown.Markdown) -> None:
        drop_rules(md.preprocessors, DROPPED_PREPROCESSORS)
        md.preprocessors.register(FencedCodePreprocessor(md), "discord_fenced_code", 25)

        blocks = drop_rules(md.parser.blockprocessors, DROPPED_BLOCK_RULES)
        blocks.register(DiscordHeaderProcessor(md.parser), "hashheader", 70)

        inline = drop_rules(md.inlinePatterns, DROPPED_INLINE_RULES)
        inline.register(
            MentionInlineProcessor(MENTION_RE, md, self.entities), "discord_mention", 175
        )
        inline.register(
            TimestampInlineProcessor(TIMESTAMP_RE, md), "discord_timestamp", 174
        )
        inline.register(
            CustomEmojiInlineProcessor(
                CUSTOM_EMOJI_RE.pattern, md, large=self.large_emoji, embed=self.embed_emoji
            ),
            "discord_custom_emoji",
            173,
        )
        inline.register(
            BroadcastInlineProcessor(BROADCAST_RE, md), "discord_broadcast", 172
        )
        inline.register(
            SimpleTagInlineProcessor(UNDERLINE_RE, "u"), "discord_underline", 65
        )
        inline.register(
            SimpleTagInlineProcessor(STRIKETHROUGH_RE, "del"), "discord_strikethrough", 64
        )
        inline.register(
            SimpleTagInlineProcessor(UNDERSCORE_EM_RE, "em"), "discord_em", 55
        )
        inline.register(
            UnicodeEmojiInlineProcessor(
                UNICODE_EMOJI_RE, md, large=self.large_emoji, embed=self.embed_emoji
            ),
            "discord_unicode_emoji",
            5,
        )
        md.treeprocessors.register(DiscordTagTreeprocessor(md), "discord_tags", 15)


def build_markdown(
    entities: EntityTable | None,
    *,
    large_emoji: bool = False,
    embed_emoji: bool = False,
) -> markdown.Markdown:
    return markdown.Markdown(
        extensions=[
            DiscordInlineExtension(
                entities, large_emoji=large_emoji, embed_emoji=embed_emoji
            )
        ],
        output_format="html",
    )


def render_markup(
    text: str,
    entities: EntityTable | None,
    *,
    large_emoji: bool = False,
    embed_emoji: bool = False,
) -> str:
    """Render ``text`` to the intermediate ``discord-*`` tagged form."""
    engine = build_markdown(entities, large_emoji=large_emoji, embed_emoji=embed_emoji)
    return engine.convert(text)
