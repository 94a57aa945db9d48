"""Content nodes produced from message markup.

Every node is a frozen dataclass carrying a ``type`` tag. ``ContentNode`` is the
closed union of them; ``text_content`` and ``nodes_to_dicts`` are the single
dispatch points over the tree.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Union

StyleKind = Literal[
    "bold",
    "italic",
    "underline",
    "strikethrough",
    "blockquote",
    "spoiler",
    "subtext",
    "heading",
]
MentionKind = Literal["user", "role", "channel", "thread", "broadcast"]

STYLE_KINDS: frozenset[str] = frozenset(
    {
        "bold",
        "italic",
        "underline",
        "strikethrough",
        "blockquote",
        "spoiler",
        "subtext",
        "heading",
    }
)


@dataclass(frozen=True)
class TextNode:
    text: str
    type: Literal["text"] = field(default="text", init=False)


@dataclass(frozen=True)
class StyledNode:
    kind: StyleKind
    children: tuple[ContentNode, ...] = ()
    level: int | None = None
    type: Literal["styled"] = field(default="styled", init=False)


@dataclass(frozen=True)
class LinkNode:
    href: str
    children: tuple[ContentNode, ...] = ()
    type: Literal["link"] = field(default="link", init=False)


@dataclass(frozen=True)
class InlineCodeNode:
    code: str
    type: Literal["inline_code"] = field(default="inline_code", init=False)


@dataclass(frozen=True)
class CodeBlockNode:
    code: str
    language: str = ""
    type: Literal["code_block"] = field(default="code_block", init=False)


@dataclass(frozen=True)
class LineBreakNode:
    type: Literal["line_break"] = field(default="line_break", init=False)


@dataclass(frozen=True)
class MentionNode:
    kind: MentionKind
    label: str
    color: str | None = None
    highlight: bool = False
    type: Literal["mention"] = field(default="mention", init=False)


@dataclass(frozen=True)
class EmojiNode:
    name: str
    url: str | None
    large: bool = False
    embed: bool = False
    type: Literal["emoji"] = field(default="emoji", init=False)


@dataclass(frozen=True)
class TimestampNode:
    seconds: int
    format: str | None = None
    type: Literal["timestamp"] = field(default="timestamp", init=False)

    @property
    def milliseconds(self) -> int:
        return self.seconds * 1000


ContentNode = Union[
    TextNode,
    StyledNode,
    LinkNode,
    InlineCodeNode,
    CodeBlockNode,
    LineBreakNode,
    MentionNode,
    EmojiNode,
    TimestampNode,
]


def text_content(nodes: ContentNode | list[ContentNode] | tuple[ContentNode, ...]) -> str:
    """Flatten nodes to the plain text a reader would see."""
    if isinstance(nodes, (list, tuple)):
        return "".join(text_content(node) for node in nodes)
    node = nodes
    if isinstance(node, TextNode):
        return node.text
    if isinstance(node, (StyledNode, LinkNode)):
        return text_content(node.children)
    if isinstance(node, InlineCodeNode):
        return node.code
    if isinstance(node, CodeBlockNode):
        return node.code
    if isinstance(node, LineBreakNode):
        return "\n"
    if isinstance(node, MentionNode):
        return node.label
    if isinstance(node, EmojiNode):
        return f":{node.name}:"
    if isinstance(node, TimestampNode):
        return f"<t:{node.seconds}{':' + node.format if node.format else ''}>"
    raise TypeError(f"Unsupported content node: {type(node).__name__}")


def node_to_dict(node: ContentNode) -> dict[str, Any]:
    if isinstance(node, TextNode):
        return {"type": "text", "text": node.text}
    if isinstance(node, StyledNode):
        out: dict[str, Any] = {
            "type": node.kind,
            "children": nodes_to_dicts(node.children),
        }
        if node.level is not None:
            out["level"] = node.level
        return out
    if isinstance(node, LinkNode):
        return {
            "type": "link",
            "href": node.href,
            "children": nodes_to_dicts(node.children),
        }
    if isinstance(node, InlineCodeNode):
        return {"type": "inline_code", "code": node.code}
    if isinstance(node, CodeBlockNode):
        return {"type": "code_block", "language": node.language, "code": node.code}
    if isinstance(node, LineBreakNode):
        return {"type": "line_break"}
    if isinstance(node, MentionNode):
        out = {"type": "mention", "kind": node.kind, "label": node.label}
        if node.color:
            out["color"] = node.color
        if node.highlight:
            out["highlight"] = True
        return out
    if isinstance(node, EmojiNode):
        out = {"type": "emoji", "name": node.name, "url": node.url}
        if node.large:
            out["large"] = True
        if node.embed:
            out["embed"] = True
        return out
    if isinstance(node, TimestampNode):
        out = {"type": "timestamp", "timestamp": node.milliseconds}
        if node.format:
            out["format"] = node.format
        return out
    raise TypeError(f"Unsupported content node: {type(node).__name__}")


def nodes_to_dicts(nodes: list[ContentNode] | tuple[ContentNode, ...]) -> list[dict[str, Any]]:
    return [node_to_dict(node) for node in nodes]
