from __future__ import annotations

import re
from typing import Any

import regex

CUSTOM_EMOJI_RE = re.compile(r"<(?P<animated>a)?:(?P<name>\w{2,32}):(?P<id>\d{15,25})>")

# One emoji: a flag pair, an emoji-presentation character, or a text-presentation
# character made emoji by a modifier, VS16, keycap or tag sequence.
_EMOJI_UNIT = r"""
    \p{RI} \p{RI}
  | \p{Emoji_Presentation}
    (?: \p{Emoji_Modifier} | \uFE0F \u20E3? | [\U000E0020-\U000E007E]+ \U000E007F )?
  | \p{Emoji}
    (?: \p{Emoji_Modifier} | \uFE0F \u20E3? | \u20E3 | [\U000E0020-\U000E007E]+ \U000E007F )
"""
UNICODE_EMOJI_RE = regex.compile(
    r"(?P<syntax> (?:%s) (?: \u200D (?:%s) )* )" % (_EMOJI_UNIT, _EMOJI_UNIT),
    regex.VERBOSE,
)
TEXT_PRESENTATION_RE = regex.compile(r"\P{Emoji_Presentation}\u20E3?")

DISCORD_CDN = "https://cdn.discordapp.com"
TWEMOJI_BASE = "https://cdn.jsdelivr.net/gh/twitter/twemoji@14.0.2/assets/svg"


def custom_emoji_url(emoji_id: str, *, animated: bool = False) -> str:
    extension = "gif" if animated else "png"
    return f"{DISCORD_CDN}/emojis/{emoji_id}.{extension}"


def is_unicode_emoji(value: str) -> bool:
    if not value or not UNICODE_EMOJI_RE.fullmatch(value):
        return False
    return not TEXT_PRESENTATION_RE.fullmatch(value)


def twemoji_codepoints(value: str) -> str:
    if "\u200D" not in value:
        value = value.replace("\uFE0F", "")
    return "-".join(f"{ord(ch):x}" for ch in value)


def unicode_emoji_url(value: str) -> str:
    return f"{TWEMOJI_BASE}/{twemoji_codepoints(value)}.svg"


def emoji_url(emoji: dict[str, Any]) -> str | None:
    """Source URL for an emoji payload (``{"id", "name", "animated"}``)."""
    emoji_id = emoji.get("id")
    if emoji_id:
        return custom_emoji_url(str(emoji_id), animated=bool(emoji.get("animated")))
    name = emoji.get("name") or emoji.get("surrogate")
    if isinstance(name, str) and name:
        return unicode_emoji_url(name)
    return None


def iter_unicode_emoji(text: str):
    for match in UNICODE_EMOJI_RE.finditer(text):
        syntax = match.group("syntax")
        if TEXT_PRESENTATION_RE.fullmatch(syntax):
            continue
        yield match


def count_emoji_only(text: str) -> int | None:
    """Number of emoji in ``text`` when nothing but emoji and whitespace remains.

    Returns ``None`` when any other visible character is present.
    """
    count = 0

    def _strip_custom(match: re.Match[str]) -> str:
        nonlocal count
        count += 1
        return " "

    remaining = CUSTOM_EMOJI_RE.sub(_strip_custom, text)
    pieces: list[str] = []
    cursor = 0
    for match in iter_unicode_emoji(remaining):
        pieces.append(remaining[cursor : match.start()])
        cursor = match.end()
        count += 1
    pieces.append(remaining[cursor:])
    if "".join(pieces).strip():
        return None
    return count
