from __future__ import annotations

import contextlib
import re
from typing import Any

from ..models import Attachment, IncomingMessage, ReplyReference, utcnow

MAX_WEBHOOK_USERNAME_CHARS = 80
REPLY_PREVIEW_CHARS = 50

_IMAGE_NAME_RE = re.compile(r"\.(png|jpe?g|gif|webp)$", re.IGNORECASE)


def collapse_spaces(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()


def as_int(value: object, default: int = 0) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        with contextlib.suppress(ValueError):
            return int(value.strip())
    return default


def webhook_username(name: str) -> str:
    cleaned = collapse_spaces(name)
    # Discord rejects webhook usernames containing "discord".
    cleaned = re.sub("discord", lambda match: f"{match.group(0)[0]}1{match.group(0)[2:]}", cleaned, flags=re.IGNORECASE)
    if not cleaned:
        cleaned = "Unknown"
    return cleaned[:MAX_WEBHOOK_USERNAME_CHARS]


def attachments_of(message: Any) -> tuple[Attachment, ...]:
    return tuple(
        Attachment(
            url=str(item.url),
            filename=str(getattr(item, "filename", "") or "file"),
            size=as_int(getattr(item, "size", 0)),
        )
        for item in getattr(message, "attachments", ()) or ()
    )


def incoming_from_message(message: Any) -> IncomingMessage:
    """Flatten a discord.Message into the engine's platform-neutral message."""
    guild = getattr(message, "guild", None)
    author = message.author
    webhook_id = getattr(message, "webhook_id", None)
    return IncomingMessage(
        message_id=str(message.id),
        channel_id=str(message.channel.id),
        guild_id=str(guild.id) if guild is not None else None,
        author_id=str(author.id),
        content=message.content or "",
        attachments=attachments_of(message),
        created_at=getattr(message, "created_at", None) or utcnow(),
        author_is_bot=bool(getattr(author, "bot", False)),
        webhook_id=str(webhook_id) if webhook_id else None,
        reply_to=reply_reference_of(message),
    )


def _first_image_url(message: Any) -> str | None:
    for item in getattr(message, "attachments", ()) or ():
        content_type = str(getattr(item, "content_type", "") or "")
        if content_type.startswith("image/") or _IMAGE_NAME_RE.search(str(getattr(item, "filename", "") or "")):
            return str(item.url)
    return None


def describe_reply(target: Any, channel_id: object, guild_id: object) -> ReplyReference:
    author = target.author
    avatar = getattr(author, "display_avatar", None)
    return ReplyReference(
        message_id=str(target.id),
        channel_id=str(channel_id),
        guild_id=str(guild_id) if guild_id else None,
        author_name=str(getattr(author, "display_name", "") or getattr(author, "name", "") or "Unknown User"),
        author_avatar_url=str(avatar.url) if avatar is not None else None,
        content=target.content or "",
        has_attachments=bool(getattr(target, "attachments", None)),
        has_embeds=bool(getattr(target, "embeds", None)),
        has_stickers=bool(getattr(target, "stickers", None)),
        image_url=_first_image_url(target),
    )


def reply_reference_of(message: Any) -> ReplyReference | None:
    reference = getattr(message, "reference", None)
    message_id = getattr(reference, "message_id", None)
    if not message_id:
        return None
    guild = getattr(message, "guild", None)
    channel_id = getattr(reference, "channel_id", None) or message.channel.id
    guild_id = getattr(reference, "guild_id", None) or (guild.id if guild is not None else None)
    resolved = getattr(reference, "resolved", None)
    # Deleted or uncached targets carry no author; the gateway fetches them later.
    if resolved is None or getattr(resolved, "author", None) is None:
        return ReplyReference(
            message_id=str(message_id),
            channel_id=str(channel_id),
            guild_id=str(guild_id) if guild_id else None,
        )
    return describe_reply(resolved, channel_id, guild_id)


def reply_preview(reply: ReplyReference) -> str:
    if reply.content:
        preview = reply.content[:REPLY_PREVIEW_CHARS]
        if len(reply.content) > REPLY_PREVIEW_CHARS:
            preview += "..."
        return preview
    if reply.has_attachments:
        return "*[Attachment]*"
    if reply.has_embeds:
        return "*[Embed]*"
    if reply.has_stickers:
        return "*[Sticker]*"
    return "*[Empty message]*"


def reply_jump_url(reply: ReplyReference) -> str:
    return f"https://discord.com/channels/{reply.guild_id or '@me'}/{reply.channel_id}/{reply.message_id}"
