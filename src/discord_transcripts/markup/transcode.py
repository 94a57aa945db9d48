"""Turn message markup into content nodes.

Raw text goes through the Discord-flavoured Markdown engine, a fixed series of
textual substitutions, and finally an HTML parse that maps each ``discord-*``
tag back onto a :mod:`discord_transcripts.nodes` variant. Content that arrives
already tokenized (``{"type": ..., "content": ...}`` dicts) is walked directly
by :func:`render_ast`.
"""

from __future__ import annotations

import logging
import re
import sys
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any

from bs4 import BeautifulSoup, Comment, NavigableString, Tag

from ..entities import EntityTable
from ..nodes import (
    CodeBlockNode,
    ContentNode,
    EmojiNode,
    InlineCodeNode,
    LineBreakNode,
    LinkNode,
    MentionNode,
    StyledNode,
    TextNode,
    TimestampNode,
)
from .emoji import count_emoji_only, emoji_url
from .inline import broadcast_node, mention_node, render_markup

REPLY_MAX_CHARS = 180
LARGE_EMOJI_LIMIT = 25

SPOILER_RE = re.compile(r"\|\|([^|]+)\|\|")
SUBTEXT_RE = re.compile(r"^(<p>)?-#\s+(.+?)(</p>)?$", re.MULTILINE)
LEFTOVER_FENCE_RE = re.compile(r"```\n?(.+?)\n?```", re.DOTALL)
LEFTOVER_BACKTICK_RE = re.compile(r"`([^`\n]+)`")
PROTECTED_RE = re.compile(
    r"(<discord-(?:code-block|inline-code)\b[^>]*>.*?</discord-(?:code-block|inline-code)>)",
    re.DOTALL,
)
ATTRIBUTE_TAG_RE = re.compile(r"<[A-Za-z][\w-]*\s[^>]*>")
MASK_RE = re.compile(r"\x1e(\d+)\x1f")

STYLE_TAGS = {
    "discord-bold": "bold",
    "discord-italic": "italic",
    "discord-underline": "underline",
    "discord-strikethrough": "strikethrough",
    "discord-spoiler": "spoiler",
}
AST_STYLES = {
    "em": "italic",
    "strong": "bold",
    "underline": "underline",
    "strikethrough": "strikethrough",
    "spoiler": "spoiler",
}
HEADING_TAGS = {"h1": 1, "h2": 2, "h3": 3}


def _log(message: str) -> None:
    from ..runtime import get_verbose_logging

    if get_verbose_logging():
        print(message, file=sys.stderr, flush=True)


class RenderType(Enum):
    EMBED = "embed"
    REPLY = "reply"
    NORMAL = "normal"
    WEBHOOK = "webhook"


@dataclass(frozen=True)
class RenderContext:
    entities: EntityTable | None = None
    mode: RenderType = RenderType.NORMAL
    large_emoji: bool = False
    reply_max_chars: int = REPLY_MAX_CHARS
    large_emoji_limit: int = LARGE_EMOJI_LIMIT

    @property
    def is_reply(self) -> bool:
        return self.mode is RenderType.REPLY

    @property
    def is_embed(self) -> bool:
        return self.mode is RenderType.EMBED


def truncate_for_reply(text: str, limit: int = REPLY_MAX_CHARS) -> str:
    if len(text) > limit:
        return text[:limit] + "..."
    return text


def _substitute(segment: str) -> str:
    # tags carrying attributes are masked; only text and bare tags are rewritten
    tags: list[str] = []

    def _mask(match: re.Match[str]) -> str:
        tags.append(match.group(0))
        return f"\x1e{len(tags) - 1}\x1f"

    segment = ATTRIBUTE_TAG_RE.sub(_mask, segment)
    segment = SPOILER_RE.sub(r"<discord-spoiler>\1</discord-spoiler>", segment)
    segment = SUBTEXT_RE.sub(
        lambda m: f'{m.group(1) or ""}<span class="subtext">{m.group(2)}</span>{m.group(3) or ""}',
        segment,
    )
    segment = LEFTOVER_FENCE_RE.sub(
        r'<discord-code-block language="">\1</discord-code-block>', segment
    )
    segment = LEFTOVER_BACKTICK_RE.sub(
        r"<discord-inline-code>\1</discord-inline-code>", segment
    )
    return MASK_RE.sub(lambda m: tags[int(m.group(1))], segment)


def apply_substitutions(markup: str) -> str:
    """Spoilers, subtext, then leftover fences and backticks, never inside code."""
    parts = PROTECTED_RE.split(markup)
    # split() with one group puts the protected code segments at odd indexes
    return "".join(
        part if index % 2 else _substitute(part) for index, part in enumerate(parts)
    )


def _merge_text(nodes: list[ContentNode]) -> list[ContentNode]:
    merged: list[ContentNode] = []
    for node in nodes:
        if isinstance(node, TextNode) and merged and isinstance(merged[-1], TextNode):
            merged[-1] = TextNode(merged[-1].text + node.text)
        elif isinstance(node, TextNode) and not node.text:
            continue
        else:
            merged.append(node)
    return merged


def _text_nodes(text: str, context: RenderContext) -> list[ContentNode]:
    out: list[ContentNode] = []
    for index, piece in enumerate(text.split("\n")):
        if index:
            out.append(TextNode(" ") if context.is_reply else LineBreakNode())
        if piece:
            out.append(TextNode(piece))
    return out


def _flag(element: Tag, name: str) -> bool:
    return str(element.get(name) or "").lower() == "true"


def _convert_children(element: Tag, context: RenderContext) -> list[ContentNode]:
    out: list[ContentNode] = []
    for child in element.children:
        out.extend(_convert(child, context))
    return _merge_text(out)


def _convert(element: Any, context: RenderContext) -> list[ContentNode]:
    if isinstance(element, Comment):
        return []
    if isinstance(element, NavigableString):
        return _text_nodes(str(element), context)
    if not isinstance(element, Tag):
        return []

    name = element.name
    if name in STYLE_TAGS:
        return [StyledNode(STYLE_TAGS[name], tuple(_convert_children(element, context)))]
    if name == "span" and "subtext" in (element.get("class") or []):
        return [StyledNode("subtext", tuple(_convert_children(element, context)))]
    if name in HEADING_TAGS:
        return [
            StyledNode(
                "heading", tuple(_convert_children(element, context)), level=HEADING_TAGS[name]
            )
        ]
    if name == "discord-inline-code":
        return [InlineCodeNode(element.get_text())]
    if name == "discord-code-block":
        if context.is_reply:
            return [InlineCodeNode(element.get_text())]
        return [CodeBlockNode(element.get_text(), str(element.get("language") or ""))]
    if name == "discord-mention":
        return [
            MentionNode(
                kind=str(element.get("type") or "user"),
                label=element.get_text() or str(element.get("id") or ""),
                color=element.get("color") or None,
                highlight=_flag(element, "highlight"),
            )
        ]
    if name == "discord-time":
        try:
            seconds = int(str(element.get("timestamp")))
        except ValueError:
            return _text_nodes(element.get_text(), context)
        return [TimestampNode(seconds, element.get("format") or None)]
    if name == "discord-custom-emoji":
        return [
            EmojiNode(
                name=str(element.get("name") or element.get_text()),
                url=element.get("url") or None,
                large=_flag(element, "large"),
                embed=_flag(element, "embed"),
            )
        ]
    if name == "a":
        children = tuple(_convert_children(element, context))
        return [LinkNode(str(element.get("href") or ""), children)]
    if name == "br":
        return [TextNode(" ") if context.is_reply else LineBreakNode()]
    if name != "p":
        _log(f"  Unwrapping unknown tag <{name}>")
    return _convert_children(element, context)


def parse_tagged(markup: str, context: RenderContext) -> list[ContentNode]:
    """Map the intermediate tagged form onto content nodes.

    Top-level blocks (paragraphs, headings, code blocks) are separated by a
    blank line, or a single space when rendering a reply.
    """
    soup = BeautifulSoup(markup, "html.parser")
    blocks: list[list[ContentNode]] = []
    for child in soup.children:
        if isinstance(child, NavigableString) and not str(child).strip():
            continue
        nodes = _convert(child, context)
        if nodes:
            blocks.append(nodes)

    out: list[ContentNode] = []
    for index, block in enumerate(blocks):
        if index:
            if context.is_reply:
                out.append(TextNode(" "))
            else:
                out.extend([LineBreakNode(), LineBreakNode()])
        out.extend(block)
    return _merge_text(out)


def render_text(text: str, context: RenderContext) -> list[ContentNode]:
    markup = render_markup(
        text,
        context.entities,
        large_emoji=context.large_emoji,
        embed_emoji=context.is_embed,
    )
    return parse_tagged(apply_substitutions(markup), context)


def render_content(text: Any, context: RenderContext) -> list[ContentNode]:
    """Render one message's raw markup.

    Reply previews are cut to ``reply_max_chars`` first. A message made only of
    emoji (at most ``large_emoji_limit`` of them) renders them large.
    """
    if text is None:
        return []
    if not isinstance(text, str):
        text = str(text)
    if context.is_reply:
        text = truncate_for_reply(text, context.reply_max_chars)

    emoji_count = count_emoji_only(text)
    if emoji_count and emoji_count <= context.large_emoji_limit:
        context = replace(context, large_emoji=True)

    try:
        return render_text(text, context)
    except Exception as exc:
        logging.getLogger(__name__).warning(
            "Could not render message markup (%s); keeping plain text.", type(exc).__name__
        )
        return _text_nodes(text, context)


def _is_emoji_or_blank(node: Any) -> bool:
    if not isinstance(node, dict):
        return False
    kind = node.get("type")
    if kind in ("emoji", "twemoji"):
        return True
    content = node.get("content")
    return kind == "text" and isinstance(content, str) and not content.strip()


def _large_emoji(nodes: list[Any], limit: int) -> bool:
    if not nodes or not all(_is_emoji_or_blank(node) for node in nodes):
        return False
    emoji = sum(1 for node in nodes if node.get("type") in ("emoji", "twemoji"))
    return emoji <= limit


def _fallback(node: dict[str, Any], context: RenderContext) -> list[ContentNode]:
    content = node.get("content")
    if isinstance(content, str):
        return _text_nodes(content, context)
    return _render_many(content, context)


def _render_many(nodes: Any, context: RenderContext) -> list[ContentNode]:
    if nodes is None:
        return []
    if not isinstance(nodes, (list, tuple)):
        nodes = [nodes]
    out: list[ContentNode] = []
    for node in nodes:
        out.extend(_render_node(node, context))
    return _merge_text(out)


def _render_node(node: Any, context: RenderContext) -> list[ContentNode]:
    if isinstance(node, str):
        return _text_nodes(node, context)
    if not isinstance(node, dict):
        _log(f"  Skipping non-node value: {type(node).__name__}")
        return []

    kind = node.get("type")
    content = node.get("content")

    if kind == "text":
        return render_text(content, context) if isinstance(content, str) else []
    if kind == "blockQuote":
        children = _render_many(content, context)
        if context.is_reply:
            return children
        return [StyledNode("blockquote", tuple(children))]
    if kind in ("br", "newline"):
        return [TextNode(" ") if context.is_reply else LineBreakNode()]
    if kind in ("channel", "role", "user"):
        return [mention_node(kind, str(node.get("id")), context.entities)]
    if kind in ("here", "everyone"):
        return [broadcast_node(kind)]
    if kind == "codeBlock":
        code = content if isinstance(content, str) else ""
        if context.is_reply:
            return [InlineCodeNode(code)]
        return [CodeBlockNode(code, str(node.get("lang") or ""))]
    if kind == "inlineCode":
        return [InlineCodeNode(content if isinstance(content, str) else "")]
    if kind in AST_STYLES:
        return [StyledNode(AST_STYLES[kind], tuple(_render_many(content, context)))]
    if kind == "emoticon":
        return _fallback(node, context)
    if kind in ("emoji", "twemoji"):
        return [
            EmojiNode(
                name=str(node.get("name") or ""),
                url=emoji_url(node),
                large=context.large_emoji,
                embed=context.is_embed,
            )
        ]
    if kind == "timestamp":
        try:
            seconds = int(node.get("timestamp"))
        except (TypeError, ValueError):
            return _fallback(node, context)
        return [TimestampNode(seconds, node.get("format") or None)]

    logging.getLogger(__name__).warning("Unknown content node type: %s", kind)
    return _fallback(node, context)


def render_ast(nodes: Any, context: RenderContext) -> list[ContentNode]:
    """Render pre-tokenized content nodes (``{"type": ...}`` dicts)."""
    if nodes is None:
        return []
    if not isinstance(nodes, (list, tuple)):
        nodes = [nodes]
    nodes = list(nodes)
    if _large_emoji(nodes, context.large_emoji_limit):
        context = replace(context, large_emoji=True)

    out: list[ContentNode] = []
    for node in nodes:
        try:
            out.extend(_render_node(node, context))
        except Exception as exc:
            kind = node.get("type") if isinstance(node, dict) else type(node).__name__
            logging.getLogger(__name__).warning(
                "Could not render content node %s (%s).", kind, type(exc).__name__
            )
            if isinstance(node, dict) and isinstance(node.get("content"), str):
                out.extend(_text_nodes(node["content"], context))
    return _merge_text(out)
