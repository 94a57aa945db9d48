from __future__ import annotations

import asyncio
import sys
from dataclasses import dataclass, field
from typing import Any, Iterable

from .directory import Directory
from .entities import EntityTable, build_entity_table
from .message import MessageContext, RenderedMessage, render_message
from .settings import TranscriptSettings, build_settings


def _log(message: str) -> None:
    from .runtime import get_verbose_logging

    if get_verbose_logging():
        print(message, file=sys.stderr, flush=True)


@dataclass(frozen=True)
class Transcript:
    components_version: str
    entities: EntityTable
    messages: tuple[RenderedMessage, ...] = ()
    context: MessageContext | None = field(default=None, compare=False, repr=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "components_version": self.components_version,
            "profiles": self.entities.to_dict(),
            "messages": [message.to_dict(self.context) for message in self.messages],
        }


async def build_transcript(
    messages: list[dict[str, Any]],
    directory: Directory,
    *,
    guild_id: str | None = None,
    guild_roles: Iterable[dict[str, Any]] | dict[str, Any] | None = None,
    settings: TranscriptSettings | None = None,
) -> Transcript:
    """Resolve every referenced entity, then render each message against the table."""
    if messages is None:
        raise TypeError("messages must be a list of message payloads, not None")
    if not isinstance(messages, list):
        raise TypeError(f"messages must be a list, got {type(messages).__name__}")

    settings = settings or build_settings()
    payloads = [message for message in messages if isinstance(message, dict)]
    if len(payloads) != len(messages):
        _log(f"  Skipping {len(messages) - len(payloads)} non-object message entries")
    if guild_id is None:
        guild_id = next(
            (str(m["guild_id"]) for m in payloads if m.get("guild_id") is not None), None
        )

    entities = await build_entity_table(
        payloads,
        directory,
        guild_id=guild_id,
        guild_roles=guild_roles,
        max_workers=settings.resolve_jobs,
    )

    context = MessageContext.for_messages(
        payloads,
        entities,
        guild_id=guild_id,
        reply_max_chars=settings.reply_max_chars,
        thread_preview_max_chars=settings.thread_preview_max_chars,
        large_emoji_limit=settings.large_emoji_limit,
    )
    rendered = tuple(render_message(message, context) for message in payloads)
    _log(f"  Rendered {len(rendered)} message(s)")
    return Transcript(
        components_version=settings.components_version,
        entities=entities,
        messages=rendered,
        context=context,
    )


def build_transcript_sync(
    messages: list[dict[str, Any]],
    directory: Directory,
    **kwargs: Any,
) -> Transcript:
    return asyncio.run(build_transcript(messages, directory, **kwargs))
