"""Normalize structured (layout) components into one node tree.

Two payload generations exist. Current-generation entries wrap their fields
in a nested ``data`` descriptor (``{"data": {"type": 17, ...}, "components":
[...]}``); legacy entries carry the discriminant directly (``{"type": 12,
"children": [...]}``). Both normalize to the dataclasses below.
"""

from __future__ import annotations

import sys
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterator, Literal, Union

IS_COMPONENTS_V2_FLAG = 1 << 15

LEGACY_SECTION = 11
LEGACY_CONTAINER = 12
LEGACY_SEPARATOR = 13
LEGACY_TEXT_DISPLAY = 14
LEGACY_THUMBNAIL = 15
LEGACY_MEDIA_GALLERY = 16
LEGACY_TYPES = frozenset(range(LEGACY_SECTION, LEGACY_MEDIA_GALLERY + 1))

CURRENT_ACTION_ROW = 1
CURRENT_SECTION = 9
CURRENT_TEXT_DISPLAY = 10
CURRENT_THUMBNAIL = 11
CURRENT_MEDIA_GALLERY = 12
CURRENT_SEPARATOR = 14
CURRENT_CONTAINER = 17
CURRENT_TYPES = frozenset(
    {
        CURRENT_ACTION_ROW,
        CURRENT_SECTION,
        CURRENT_TEXT_DISPLAY,
        CURRENT_THUMBNAIL,
        CURRENT_MEDIA_GALLERY,
        CURRENT_SEPARATOR,
        CURRENT_CONTAINER,
    }
)

_SEPARATOR_SPACING = {1: "small", 2: "large"}

TextRenderer = Callable[[str], list[dict[str, Any]]]


def _log(message: str) -> None:
    from .runtime import get_verbose_logging

    if get_verbose_logging():
        print(message, file=sys.stderr, flush=True)


class ComponentSchema(Enum):
    CURRENT = "current"
    LEGACY = "legacy"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class TextDisplay:
    content: str
    style: str = "paragraph"
    type: Literal["text_display"] = field(default="text_display", init=False)


@dataclass(frozen=True)
class Section:
    text: TextDisplay | None = None
    accessory: ComponentNode | None = None
    type: Literal["section"] = field(default="section", init=False)


@dataclass(frozen=True)
class Container:
    children: tuple[ComponentNode, ...] = ()
    accent_color: str | None = None
    type: Literal["container"] = field(default="container", init=False)


@dataclass(frozen=True)
class Separator:
    spacing: str = "medium"
    type: Literal["separator"] = field(default="separator", init=False)


@dataclass(frozen=True)
class Thumbnail:
    url: str
    alt_text: str | None = None
    type: Literal["thumbnail"] = field(default="thumbnail", init=False)


@dataclass(frozen=True)
class MediaItem:
    url: str
    alt_text: str | None = None
    kind: str = "image"


@dataclass(frozen=True)
class MediaGallery:
    items: tuple[MediaItem, ...] = ()
    type: Literal["media_gallery"] = field(default="media_gallery", init=False)


ComponentNode = Union[Section, Container, Separator, TextDisplay, Thumbnail, MediaGallery]


def classify_component(raw: Any) -> ComponentSchema:
    if not isinstance(raw, dict):
        return ComponentSchema.UNKNOWN
    data = raw.get("data")
    if isinstance(data, dict):
        return ComponentSchema.CURRENT
    kind = raw.get("type")
    if isinstance(kind, int) and not isinstance(kind, bool) and kind in LEGACY_TYPES:
        return ComponentSchema.LEGACY
    return ComponentSchema.UNKNOWN


def format_accent_color(value: Any) -> str | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        if not 0 <= value <= 0xFFFFFF:
            return None
        return f"#{value:06x}"
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _media_kind(content_type: Any, url: str) -> str:
    if isinstance(content_type, str) and content_type.startswith("video/"):
        return "video"
    lowered = url.lower().split("?", 1)[0]
    if lowered.endswith((".mp4", ".webm", ".mov", ".mkv")):
        return "video"
    return "image"


def _text_style(value: Any) -> str:
    if isinstance(value, str) and value:
        return value
    return "paragraph"


def _children(raw: Any) -> list[Any]:
    return raw if isinstance(raw, list) else []


def _parse_many(raw_components: list[Any]) -> tuple[ComponentNode, ...]:
    return tuple(
        node for node in (parse_component(raw) for raw in raw_components) if node is not None
    )


def _parse_legacy(raw: dict[str, Any]) -> ComponentNode | None:
    kind = raw.get("type")
    if kind == LEGACY_SECTION:
        text = raw.get("text") if isinstance(raw.get("text"), dict) else None
        accessory = (
            parse_component(raw["accessory"]) if isinstance(raw.get("accessory"), dict) else None
        )
        return Section(
            text=TextDisplay(
                content=str(text.get("content") or ""), style=_text_style(text.get("style"))
            )
            if text is not None
            else None,
            accessory=accessory,
        )
    if kind == LEGACY_CONTAINER:
        return Container(
            children=_parse_many(_children(raw.get("children"))),
            accent_color=format_accent_color(raw.get("accent_color")),
        )
    if kind == LEGACY_SEPARATOR:
        spacing = raw.get("spacing")
        return Separator(spacing=spacing if isinstance(spacing, str) and spacing else "medium")
    if kind == LEGACY_TEXT_DISPLAY:
        return TextDisplay(
            content=str(raw.get("content") or ""), style=_text_style(raw.get("style"))
        )
    if kind == LEGACY_THUMBNAIL:
        return Thumbnail(url=str(raw.get("url") or ""), alt_text=raw.get("alt_text"))
    if kind == LEGACY_MEDIA_GALLERY:
        items = []
        for item in _children(raw.get("items")):
            if not isinstance(item, dict) or not item.get("url"):
                continue
            url = str(item["url"])
            items.append(
                MediaItem(
                    url=url,
                    alt_text=item.get("alt_text") or item.get("altText"),
                    kind=str(item.get("type") or _media_kind(None, url)),
                )
            )
        return MediaGallery(items=tuple(items))
    _log(f"  Unknown legacy component type: {kind}")
    return None


def _media_url(value: Any) -> str:
    if isinstance(value, dict):
        return str(value.get("url") or "")
    if isinstance(value, str):
        return value
    return ""


def _parse_current(raw: dict[str, Any]) -> ComponentNode | None:
    data = raw["data"]
    kind = data.get("type")
    nested = _children(raw.get("components")) or _children(data.get("components"))
    if kind == CURRENT_CONTAINER:
        return Container(
            children=_parse_many(nested),
            accent_color=format_accent_color(data.get("accent_color")),
        )
    if kind == CURRENT_ACTION_ROW:
        return Container(children=_parse_many(nested), accent_color=None)
    if kind == CURRENT_TEXT_DISPLAY:
        return TextDisplay(content=str(data.get("content") or ""), style="paragraph")
    if kind == CURRENT_SEPARATOR:
        return Separator(spacing=_SEPARATOR_SPACING.get(data.get("spacing"), "small"))
    if kind == CURRENT_SECTION:
        texts = [node for node in _parse_many(nested) if isinstance(node, TextDisplay)]
        accessory_raw = raw.get("accessory") or data.get("accessory")
        accessory = parse_component(accessory_raw) if isinstance(accessory_raw, dict) else None
        text = None
        if texts:
            text = TextDisplay(
                content="\n".join(t.content for t in texts), style=texts[0].style
            )
        return Section(text=text, accessory=accessory)
    if kind == CURRENT_THUMBNAIL:
        return Thumbnail(url=_media_url(data.get("media")), alt_text=data.get("description"))
    if kind == CURRENT_MEDIA_GALLERY:
        items = []
        for item in _children(data.get("items")):
            if not isinstance(item, dict):
                continue
            media = item.get("media") if isinstance(item.get("media"), dict) else {}
            url = _media_url(media)
            if not url:
                continue
            items.append(
                MediaItem(
                    url=url,
                    alt_text=item.get("description"),
                    kind=_media_kind(media.get("content_type"), url),
                )
            )
        return MediaGallery(items=tuple(items))
    _log(f"  Unknown component type: {kind}")
    return None


def parse_component(raw: Any) -> ComponentNode | None:
    schema = classify_component(raw)
    if schema is ComponentSchema.CURRENT:
        return _parse_current(raw)
    if schema is ComponentSchema.LEGACY:
        return _parse_legacy(raw)
    kind = raw.get("type") if isinstance(raw, dict) else type(raw).__name__
    _log(f"  Skipping unrecognized component: {kind}")
    return None


def parse_components(raw_components: Any) -> list[ComponentNode]:
    if raw_components is None:
        return []
    if not isinstance(raw_components, list):
        raise TypeError(
            f"component payload must be a list, got {type(raw_components).__name__}"
        )
    return list(_parse_many(raw_components))


def _is_recognized(raw: Any) -> bool:
    schema = classify_component(raw)
    if schema is ComponentSchema.LEGACY:
        return True
    if schema is ComponentSchema.CURRENT:
        return raw["data"].get("type") in CURRENT_TYPES - {CURRENT_ACTION_ROW}
    return False


def has_structured_components(message: dict[str, Any]) -> bool:
    flags = message.get("flags")
    if isinstance(flags, int) and flags & IS_COMPONENTS_V2_FLAG:
        return True
    components = message.get("components")
    if not isinstance(components, list):
        return False
    return any(_is_recognized(component) for component in components)


def iter_component_texts(raw_components: Any) -> Iterator[str]:
    """Yield every text payload in a component tree, in either generation."""
    for raw in _children(raw_components):
        if not isinstance(raw, dict):
            continue
        data = raw.get("data") if isinstance(raw.get("data"), dict) else {}
        for source in (data, raw):
            content = source.get("content")
            if isinstance(content, str) and content:
                yield content
            text = source.get("text")
            if isinstance(text, dict) and isinstance(text.get("content"), str):
                yield text["content"]
        for key in ("components", "children"):
            yield from iter_component_texts(raw.get(key))
            yield from iter_component_texts(data.get(key))
        for source in (raw, data):
            accessory = source.get("accessory")
            if isinstance(accessory, dict):
                yield from iter_component_texts([accessory])


def _text_payload(text: TextDisplay, render: TextRenderer | None) -> dict[str, Any]:
    out: dict[str, Any] = {"content": text.content, "style": text.style}
    if render is not None:
        out["nodes"] = render(text.content)
    return out


def component_to_dict(
    node: ComponentNode, *, render: TextRenderer | None = None
) -> dict[str, Any]:
    """Serialize a component tree.

    When ``render`` is given, every text payload also carries its rendered
    content nodes under ``"nodes"``.
    """
    if isinstance(node, TextDisplay):
        return {"type": node.type, **_text_payload(node, render)}
    if isinstance(node, Section):
        out: dict[str, Any] = {"type": node.type}
        if node.text is not None:
            out["text"] = _text_payload(node.text, render)
        if node.accessory is not None:
            out["accessory"] = component_to_dict(node.accessory, render=render)
        return out
    if isinstance(node, Container):
        out = {
            "type": node.type,
            "children": [component_to_dict(child, render=render) for child in node.children],
        }
        if node.accent_color:
            out["accent_color"] = node.accent_color
        return out
    if isinstance(node, Separator):
        return {"type": node.type, "spacing": node.spacing}
    if isinstance(node, Thumbnail):
        out = {"type": node.type, "url": node.url}
        if node.alt_text:
            out["alt_text"] = node.alt_text
        return out
    if isinstance(node, MediaGallery):
        return {
            "type": node.type,
            "items": [
                {
                    key: value
                    for key, value in (
                        ("url", item.url),
                        ("alt_text", item.alt_text),
                        ("kind", item.kind),
                    )
                    if value
                }
                for item in node.items
            ],
        }
    raise TypeError(f"Unsupported component node: {type(node).__name__}")
