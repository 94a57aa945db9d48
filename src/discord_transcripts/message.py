from __future__ import annotations

import logging
import sys
from dataclasses import dataclass, field
from typing import Any

from .components import (
    ComponentNode,
    TextRenderer,
    component_to_dict,
    has_structured_components,
    parse_components,
)
from .entities import (
    EntityTable,
    Profile,
    build_profile,
    interaction_user,
    thread_last_message,
)
from .markup.emoji import emoji_url
from .markup.transcode import RenderContext, RenderType, render_content
from .nodes import ContentNode, nodes_to_dicts

# Default, reply, slash command and context menu command; everything else is a system message.
NON_SYSTEM_TYPES = frozenset({0, 19, 20, 23})

MISSING_REPLY = "Message could not be loaded."
COMMAND_REPLY = "Click to see command."
ATTACHMENT_REPLY = "Click to see attachment."
THREAD_NOT_SAVED = "Thread messages not saved."

ATTACHMENT_KINDS = frozenset({"audio", "video", "image"})
_SIZE_UNITS = ("Bytes", "KB", "MB", "GB", "TB")


def _log(message: str) -> None:
    from .runtime import get_verbose_logging

    if get_verbose_logging():
        print(message, file=sys.stderr, flush=True)


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _str_or_none(value: Any) -> str | None:
    return str(value) if value is not None else None


@dataclass(frozen=True)
class MessageContext:
    """Everything a single message render may consult, fixed for a transcript."""

    entities: EntityTable
    messages_by_id: dict[str, dict[str, Any]] = field(default_factory=dict)
    guild_id: str | None = None
    reply_max_chars: int = 180
    thread_preview_max_chars: int = 128
    large_emoji_limit: int = 25

    @classmethod
    def for_messages(
        cls,
        messages: list[dict[str, Any]],
        entities: EntityTable,
        *,
        guild_id: str | None = None,
        **limits: int,
    ) -> MessageContext:
        by_id = {
            str(message["id"]): message
            for message in messages
            if isinstance(message, dict) and message.get("id") is not None
        }
        return cls(entities=entities, messages_by_id=by_id, guild_id=guild_id, **limits)

    def render_context(self, mode: RenderType) -> RenderContext:
        return RenderContext(
            entities=self.entities,
            mode=mode,
            reply_max_chars=self.reply_max_chars,
            large_emoji_limit=self.large_emoji_limit,
        )


@dataclass(frozen=True)
class ReplyPreview:
    message_id: str | None = None
    profile: str | None = None
    author: str | None = None
    avatar: str | None = None
    role_color: str | None = None
    bot: bool = False
    verified: bool = False
    edited: bool = False
    attachment: bool = False
    command: bool = False
    crosspost: bool = False
    content: tuple[ContentNode, ...] = ()
    placeholder: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = {
            "message_id": self.message_id,
            "profile": self.profile,
            "author": self.author,
            "avatar": self.avatar,
            "role_color": self.role_color,
            "bot": self.bot,
            "verified": self.verified,
            "edited": self.edited,
            "attachment": self.attachment,
            "command": self.command,
            "crosspost": self.crosspost,
            "content": nodes_to_dicts(self.content),
            "placeholder": self.placeholder,
        }
        return {k: v for k, v in payload.items() if v is not None}


@dataclass(frozen=True)
class CommandInvocation:
    name: str
    profile: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"command": f"/{self.name}", "profile": self.profile}


@dataclass(frozen=True)
class Attachment:
    url: str
    name: str | None = None
    kind: str = "file"
    size: str | None = None
    width: int | None = None
    height: int | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = {
            "type": self.kind,
            "url": self.url,
            "name": self.name,
            "size": self.size,
            "width": self.width,
            "height": self.height,
        }
        return {k: v for k, v in payload.items() if v is not None}


@dataclass(frozen=True)
class Reaction:
    name: str
    url: str | None
    count: int

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "emoji": self.url, "count": self.count}


@dataclass(frozen=True)
class ThreadSummary:
    name: str
    cta: str
    profile: str | None = None
    content: tuple[ContentNode, ...] = ()
    placeholder: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = {
            "name": self.name,
            "cta": self.cta,
            "profile": self.profile,
            "content": nodes_to_dicts(self.content),
            "placeholder": self.placeholder,
        }
        return {k: v for k, v in payload.items() if v is not None}


@dataclass(frozen=True)
class RenderedMessage:
    id: str
    profile: str | None
    timestamp: str | None = None
    edited: bool = False
    crosspost: bool = False
    highlight: bool = False
    system: bool = False
    reply: ReplyPreview | None = None
    command: CommandInvocation | None = None
    content: tuple[ContentNode, ...] = ()
    components: tuple[ComponentNode, ...] = ()
    attachments: tuple[Attachment, ...] = ()
    reactions: tuple[Reaction, ...] = ()
    thread: ThreadSummary | None = None

    def to_dict(self, context: MessageContext | None = None) -> dict[str, Any]:
        render: TextRenderer | None = None
        if context is not None:
            normal = context.render_context(RenderType.NORMAL)

            def _render(text: str) -> list[dict[str, Any]]:
                return nodes_to_dicts(render_content(text, normal))

            render = _render

        payload: dict[str, Any] = {
            "id": self.id,
            "profile": self.profile,
            "timestamp": self.timestamp,
            "edited": self.edited,
            "crosspost": self.crosspost,
            "highlight": self.highlight,
            "system": self.system,
        }
        if self.reply is not None:
            payload["reply"] = self.reply.to_dict()
        if self.command is not None:
            payload["command"] = self.command.to_dict()
        if self.components:
            payload["components"] = [
                component_to_dict(node, render=render) for node in self.components
            ]
        else:
            payload["content"] = nodes_to_dicts(self.content)
        if self.attachments:
            payload["attachments"] = [item.to_dict() for item in self.attachments]
        if self.reactions:
            payload["reactions"] = [reaction.to_dict() for reaction in self.reactions]
        if self.thread is not None:
            payload["thread"] = self.thread.to_dict()
        return payload


def _reference_guild(message: dict[str, Any]) -> str | None:
    return _str_or_none(_as_dict(message.get("message_reference")).get("guild_id"))


def is_crosspost(message: dict[str, Any], guild_id: str | None) -> bool:
    """True when the message references a message that lives in another guild."""
    reference = message.get("message_reference")
    if not isinstance(reference, dict):
        return False
    ref_guild = _reference_guild(message)
    return ref_guild is not None and ref_guild != guild_id


def is_command(message: dict[str, Any]) -> bool:
    return isinstance(message.get("interaction"), dict) or isinstance(
        message.get("interaction_metadata"), dict
    )


def _author_profile(
    message: dict[str, Any], context: MessageContext
) -> tuple[str | None, Profile]:
    author = _as_dict(message.get("author"))
    author_id = _str_or_none(author.get("id"))
    profile = context.entities.profile(author_id) if author_id else None
    if profile is None:
        profile = build_profile(
            _as_dict(message.get("member")), author, guild_id=context.guild_id
        )
    return author_id, profile


def _referenced_message(
    message: dict[str, Any], context: MessageContext
) -> dict[str, Any] | None:
    reference = _as_dict(message.get("message_reference"))
    target_id = _str_or_none(reference.get("message_id"))
    if target_id and target_id in context.messages_by_id:
        return context.messages_by_id[target_id]
    embedded = message.get("referenced_message")
    if isinstance(embedded, dict) and _str_or_none(embedded.get("id")) == target_id:
        return embedded
    return None


def render_reply(message: dict[str, Any], context: MessageContext) -> ReplyPreview | None:
    reference = message.get("message_reference")
    if not isinstance(reference, dict):
        return None
    if is_crosspost(message, context.guild_id):
        return None

    target = _referenced_message(message, context)
    if target is None:
        return ReplyPreview(
            message_id=_str_or_none(reference.get("message_id")), placeholder=MISSING_REPLY
        )

    command = is_command(target)
    crosspost = is_crosspost(target, context.guild_id)
    author_id, profile = _author_profile(target, context)
    attachment = bool(target.get("attachments"))
    content: tuple[ContentNode, ...] = ()
    placeholder = None
    raw = target.get("content")
    if isinstance(raw, str) and raw:
        content = tuple(render_content(raw, context.render_context(RenderType.REPLY)))
    else:
        placeholder = COMMAND_REPLY if command else ATTACHMENT_REPLY

    return ReplyPreview(
        message_id=_str_or_none(target.get("id")),
        profile=author_id,
        author=profile.author,
        avatar=profile.avatar,
        role_color=profile.role_color,
        bot=not crosspost and profile.bot,
        verified=profile.verified,
        edited=not command and target.get("edited_timestamp") is not None,
        attachment=attachment,
        command=command,
        crosspost=crosspost,
        content=content,
        placeholder=placeholder,
    )


def render_command(message: dict[str, Any]) -> CommandInvocation | None:
    for key in ("interaction", "interaction_metadata"):
        name = _as_dict(message.get(key)).get("name")
        if isinstance(name, str) and name:
            invoker = interaction_user(message)
            return CommandInvocation(
                name=name, profile=_str_or_none(invoker.get("id")) if invoker else None
            )
    return None


def attachment_kind(content_type: Any) -> str:
    prefix = content_type.split("/", 1)[0] if isinstance(content_type, str) else ""
    return prefix if prefix in ATTACHMENT_KINDS else "file"


def format_bytes(size: Any, decimals: int = 2) -> str:
    if not isinstance(size, (int, float)) or isinstance(size, bool) or size <= 0:
        return "0 Bytes"
    value = float(size)
    unit = 0
    while value >= 1024 and unit < len(_SIZE_UNITS) - 1:
        value /= 1024
        unit += 1
    return f"{round(value, decimals):g} {_SIZE_UNITS[unit]}"


def _optional_int(value: Any) -> int | None:
    return value if isinstance(value, int) and not isinstance(value, bool) else None


def render_attachments(message: dict[str, Any]) -> tuple[Attachment, ...]:
    attachments = []
    for raw in message.get("attachments") or []:
        if not isinstance(raw, dict):
            continue
        url = raw.get("url") or raw.get("proxy_url")
        if not isinstance(url, str) or not url:
            continue
        name = raw.get("filename") or raw.get("name")
        attachments.append(
            Attachment(
                url=url,
                name=name if isinstance(name, str) and name else None,
                kind=attachment_kind(raw.get("content_type")),
                size=format_bytes(raw.get("size")),
                width=_optional_int(raw.get("width")),
                height=_optional_int(raw.get("height")),
            )
        )
    return tuple(attachments)


def render_reactions(message: dict[str, Any]) -> tuple[Reaction, ...]:
    reactions = []
    for raw in message.get("reactions") or []:
        if not isinstance(raw, dict):
            continue
        emoji = _as_dict(raw.get("emoji"))
        name = emoji.get("name")
        if not isinstance(name, str) or not name:
            continue
        count = raw.get("count")
        reactions.append(
            Reaction(
                name=name,
                url=emoji_url(emoji),
                count=count if isinstance(count, int) else 0,
            )
        )
    return tuple(reactions)


def thread_cta(message_count: Any) -> str:
    if isinstance(message_count, int) and message_count > 0:
        return f"{message_count} Message{'s' if message_count > 1 else ''}"
    return "View Thread"


def render_thread(message: dict[str, Any], context: MessageContext) -> ThreadSummary | None:
    thread = message.get("thread")
    if not isinstance(thread, dict):
        return None
    name = str(thread.get("name") or "")
    cta = thread_cta(thread.get("message_count"))
    last = thread_last_message(message)
    if last is None:
        return ThreadSummary(name=name, cta=cta, placeholder=THREAD_NOT_SAVED)

    text = last.get("content") if isinstance(last.get("content"), str) else ""
    limit = context.thread_preview_max_chars
    if len(text) > limit:
        text = text[: limit - 3] + "..."
    return ThreadSummary(
        name=name,
        cta=cta,
        profile=_str_or_none(_as_dict(last.get("author")).get("id")),
        content=tuple(render_content(text, context.render_context(RenderType.REPLY))),
    )


def _content_mode(message: dict[str, Any]) -> RenderType:
    return RenderType.WEBHOOK if message.get("webhook_id") else RenderType.NORMAL


def render_body(
    message: dict[str, Any], context: MessageContext
) -> tuple[tuple[ContentNode, ...], tuple[ComponentNode, ...]]:
    """Structured components when the message has any, otherwise its content."""
    if has_structured_components(message):
        try:
            components = parse_components(message.get("components"))
        except Exception as exc:
            logging.getLogger(__name__).warning(
                "Failed to parse structured components for message %s: %s",
                message.get("id"),
                exc,
            )
        else:
            if components:
                return (), tuple(components)
            _log(f"  Message {message.get('id')} has no usable components; rendering content")

    raw = message.get("content")
    if not isinstance(raw, str) or not raw:
        return (), ()
    return tuple(render_content(raw, context.render_context(_content_mode(message)))), ()


def render_message(message: dict[str, Any], context: MessageContext) -> RenderedMessage:
    if not isinstance(message, dict):
        raise TypeError(f"message must be a dict, got {type(message).__name__}")

    author_id, _ = _author_profile(message, context)
    content, components = render_body(message, context)
    message_type = message.get("type")
    return RenderedMessage(
        id=str(message.get("id") or ""),
        profile=author_id,
        timestamp=_str_or_none(message.get("timestamp")),
        edited=message.get("edited_timestamp") is not None,
        crosspost=is_crosspost(message, context.guild_id),
        highlight=bool(message.get("mention_everyone")),
        system=isinstance(message_type, int) and message_type not in NON_SYSTEM_TYPES,
        reply=render_reply(message, context),
        command=render_command(message),
        content=content,
        components=components,
        attachments=render_attachments(message),
        reactions=render_reactions(message),
        thread=render_thread(message, context),
    )

