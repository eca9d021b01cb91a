from __future__ import annotations

import io
import logging
from typing import Any, Sequence

import discord

from ..models import Attachment, ReplyReference
from ..proxy.errors import ChannelRejected
from ..proxy.locks import KeyedLocks
from .common import as_int, attachments_of, describe_reply, reply_jump_url, reply_preview, webhook_username

logger = logging.getLogger("chameleon_bot")


def _embed_colour(value: str | None) -> discord.Colour | None:
    if not value:
        return None
    try:
        return discord.Colour.from_str(value.strip())
    except ValueError:
        return None


def build_reply_embed(reply: ReplyReference, color: str | None = None) -> discord.Embed:
    embed = discord.Embed(
        description=f"[Reply to:]({reply_jump_url(reply)}) {reply_preview(reply)}",
        colour=_embed_colour(color),
    )
    embed.set_author(name=reply.author_name or "Unknown User", icon_url=reply.author_avatar_url)
    if reply.image_url:
        embed.set_thumbnail(url=reply.image_url)
    return embed


def _rejected(exc: discord.HTTPException) -> bool:
    if isinstance(exc, (discord.Forbidden, discord.NotFound)):
        return True
    status = as_int(getattr(exc, "status", 0))
    return 400 <= status < 500 and status != 429


class DiscordWebhookGateway:
    """Channel gateway that speaks as personas through one named webhook per channel.

    Threads share their parent channel's webhook and are addressed with
    ``thread=``. Discord cannot change the author of a webhook message after it
    is sent, so reproxying goes through delete-and-resend.
    """

    supports_edit_persona = False

    def __init__(self, client: discord.Client, *, webhook_name: str = "Chameleon Proxy") -> None:
        self.client = client
        self.webhook_name = webhook_name
        self._webhooks: dict[int, discord.Webhook] = {}
        self._webhook_locks = KeyedLocks()

    async def _resolve_channel(self, channel_id: str) -> Any:
        snowflake = as_int(channel_id)
        channel = self.client.get_channel(snowflake)
        if channel is None:
            try:
                channel = await self.client.fetch_channel(snowflake)
            except discord.HTTPException as exc:
                if _rejected(exc):
                    raise ChannelRejected(f"channel {channel_id} is not reachable: {exc}") from exc
                raise
        return channel

    async def _webhook_target(self, channel_id: str) -> tuple[discord.Webhook, discord.abc.Snowflake | None]:
        channel = await self._resolve_channel(channel_id)
        thread = None
        if isinstance(channel, discord.Thread):
            thread = channel
            channel = channel.parent
        if not isinstance(channel, (discord.TextChannel, discord.ForumChannel, discord.VoiceChannel)):
            raise ChannelRejected(f"channel {channel_id} does not support webhooks")
        return await self._webhook_for(channel), thread

    async def _webhook_for(self, channel: Any) -> discord.Webhook:
        cached = self._webhooks.get(channel.id)
        if cached is not None:
            return cached
        async with self._webhook_locks.hold(str(channel.id)):
            cached = self._webhooks.get(channel.id)
            if cached is not None:
                return cached
            try:
                existing = await channel.webhooks()
                webhook = next(
                    (
                        hook
                        for hook in existing
                        if hook.name == self.webhook_name and hook.token and hook.user == self.client.user
                    ),
                    None,
                )
                if webhook is None:
                    webhook = await channel.create_webhook(name=self.webhook_name, reason="Proxy messages")
                    logger.info("[gateway.webhook_created] channel=%s webhook=%s", channel.id, webhook.id)
            except discord.HTTPException as exc:
                if _rejected(exc):
                    raise ChannelRejected(f"cannot manage webhooks in channel {channel.id}: {exc}") from exc
                raise
            self._webhooks[channel.id] = webhook
            return webhook

    async def _resolve_reply(self, reply: ReplyReference) -> ReplyReference | None:
        if reply.resolved:
            return reply
        try:
            channel = await self._resolve_channel(reply.channel_id)
            target = await channel.fetch_message(as_int(reply.message_id))
        except (ChannelRejected, discord.HTTPException) as exc:
            # The reply context is dropped; the message itself is still proxied.
            logger.info("[gateway.reply_unavailable] message=%s error=%s", reply.message_id, exc)
            return None
        return describe_reply(target, reply.channel_id, reply.guild_id)

    def _forget_webhook(self, webhook: discord.Webhook) -> None:
        for channel_id, cached in list(self._webhooks.items()):
            if cached.id == webhook.id:
                self._webhooks.pop(channel_id, None)

    async def _files(self, attachments: Sequence[Attachment]) -> list[discord.File]:
        files: list[discord.File] = []
        for item in attachments:
            data = await self.client.http.get_from_cdn(item.url)
            files.append(discord.File(io.BytesIO(data), filename=item.filename or "file"))
        return files

    async def send_as_persona(
        self,
        channel_id: str,
        persona_name: str,
        persona_avatar: str | None,
        content: str,
        attachments: Sequence[Attachment],
        origin_account_id: str,
        *,
        reply_to: ReplyReference | None = None,
        embed_color: str | None = None,
    ) -> str:
        webhook, thread = await self._webhook_target(channel_id)
        kwargs: dict[str, Any] = {
            "content": content or None,
            "username": webhook_username(persona_name),
            "wait": True,
            "allowed_mentions": discord.AllowedMentions(everyone=False, roles=True, users=True),
        }
        if persona_avatar:
            kwargs["avatar_url"] = persona_avatar
        if thread is not None:
            kwargs["thread"] = thread
        if reply_to is not None:
            reply = await self._resolve_reply(reply_to)
            if reply is not None:
                kwargs["embed"] = build_reply_embed(reply, embed_color)
        files = await self._files(attachments)
        if files:
            kwargs["files"] = files
        try:
            sent = await webhook.send(**kwargs)
        except discord.NotFound:
            # Webhook was deleted behind our back; the next attempt recreates it.
            self._forget_webhook(webhook)
            raise
        except discord.HTTPException as exc:
            if _rejected(exc):
                raise ChannelRejected(f"send rejected in channel {channel_id}: {exc}") from exc
            raise
        logger.debug(
            "[gateway.sent] channel=%s message=%s origin=%s",
            channel_id,
            sent.id,
            origin_account_id,
        )
        return str(sent.id)

    async def edit_message(self, channel_id: str, message_id: str, new_content: str) -> None:
        webhook, thread = await self._webhook_target(channel_id)
        kwargs: dict[str, Any] = {"content": new_content}
        if thread is not None:
            kwargs["thread"] = thread
        try:
            await webhook.edit_message(as_int(message_id), **kwargs)
        except discord.HTTPException as exc:
            if _rejected(exc):
                raise ChannelRejected(f"edit rejected for message {message_id}: {exc}") from exc
            raise

    async def delete_message(self, channel_id: str, message_id: str) -> None:
        channel = await self._resolve_channel(channel_id)
        try:
            await channel.get_partial_message(as_int(message_id)).delete()
        except discord.NotFound:
            # Already gone counts as deleted.
            return
        except discord.HTTPException as exc:
            if _rejected(exc):
                raise ChannelRejected(f"delete rejected for message {message_id}: {exc}") from exc
            raise

    async def edit_persona(
        self,
        channel_id: str,
        message_id: str,
        persona_name: str,
        persona_avatar: str | None,
    ) -> None:
        raise ChannelRejected("Discord webhooks cannot change the author of a sent message")

    async def fetch_message(self, channel_id: str, message_id: str) -> tuple[str, tuple[Attachment, ...]]:
        channel = await self._resolve_channel(channel_id)
        try:
            message = await channel.fetch_message(as_int(message_id))
        except discord.HTTPException as exc:
            if _rejected(exc):
                raise ChannelRejected(f"cannot fetch message {message_id}: {exc}") from exc
            raise
        return message.content or "", attachments_of(message)

    async def send_log(self, channel_id: str, content: str) -> None:
        channel = await self._resolve_channel(channel_id)
        try:
            await channel.send(content, allowed_mentions=discord.AllowedMentions.none())
        except discord.HTTPException as exc:
            if _rejected(exc):
                raise ChannelRejected(f"log channel {channel_id} rejected the message: {exc}") from exc
            raise
