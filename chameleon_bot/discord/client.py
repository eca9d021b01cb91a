from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import timedelta
from typing import Any

import discord

from ..config import Settings
from ..models import utcnow
from ..proxy.channel import ChannelCallPolicy
from ..proxy.dispatcher import Proxied, ProxyDispatcher, Skipped
from ..proxy.errors import StorageFailure
from ..proxy.ownership import MessageOwnershipStore
from ..proxy.ratelimit import ChannelRateLimiter
from ..proxy.registry import SystemRegistry
from ..proxy.switches import SwitchTracker
from .common import incoming_from_message
from .gateway import DiscordWebhookGateway

logger = logging.getLogger("chameleon_bot")


class ChameleonDiscordBot(discord.Client):
    def __init__(self, settings: Settings, store: Any) -> None:
        intents = discord.Intents.default()
        intents.message_content = settings.discord_message_content_intent
        intents.guild_messages = True

        super().__init__(intents=intents)

        self.settings = settings
        self.store = store
        self.registry = SystemRegistry(
            store,
            ttl_seconds=settings.registry_cache_ttl_seconds,
            guild_defaults=settings.guild_defaults,
        )
        self.switches = SwitchTracker(store)
        self.ownership = MessageOwnershipStore(store)
        self.gateway = DiscordWebhookGateway(self, webhook_name=settings.webhook_name)
        self.dispatcher = ProxyDispatcher(
            self.registry,
            self.switches,
            self.ownership,
            self.gateway,
            rate_limiter=ChannelRateLimiter(
                settings.channel_rate_capacity,
                settings.channel_rate_per_second,
            ),
            call_policy=ChannelCallPolicy(
                timeout_seconds=settings.channel_call_timeout_seconds,
                attempts=settings.channel_call_attempts,
                base_delay=settings.channel_backoff_base_seconds,
                max_delay=settings.channel_backoff_max_seconds,
            ),
            max_content_chars=settings.max_proxy_content_chars,
        )
        self.retention_worker_task: asyncio.Task[None] | None = None

    async def setup_hook(self) -> None:
        await self.store.init()
        if self.settings.message_retention_hours > 0:
            self.retention_worker_task = asyncio.create_task(self._retention_worker(), name="retention-worker")

    async def close(self) -> None:
        await self._cancel_task(self.retention_worker_task)
        await self._run_shutdown_step("store.close", self.store.close(), timeout=6.0)
        await self._run_shutdown_step("discord.Client.close", super().close(), timeout=6.0)

    async def _run_shutdown_step(self, label: str, coro: object, *, timeout: float) -> None:
        try:
            await asyncio.wait_for(coro, timeout=timeout)  # type: ignore[arg-type]
        except asyncio.TimeoutError:
            logger.warning("Shutdown step timed out: %s", label)
        except Exception as exc:
            logger.warning("Shutdown step failed: %s (%s)", label, exc)

    async def _cancel_task(self, task: asyncio.Task[None] | None) -> None:
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _retention_worker(self) -> None:
        interval = self.settings.retention_sweep_minutes * 60
        retention = timedelta(hours=self.settings.message_retention_hours)
        while True:
            try:
                await self.ownership.purge_older_than(utcnow() - retention)
            except StorageFailure as exc:
                logger.warning("Retention sweep failed: %s", exc)
            await asyncio.sleep(interval)

    async def on_ready(self) -> None:
        if self.user:
            logger.info("Connected as %s (%s)", self.user, self.user.id)

    async def on_message(self, message: discord.Message) -> None:
        if message.author.bot or message.webhook_id:
            return
        incoming = incoming_from_message(message)
        try:
            outcome = await self.dispatcher.handle_incoming(incoming)
        except StorageFailure as exc:
            # The replacement was sent but could not be recorded.
            logger.error(
                "Proxy record write failed for message %s in channel %s: %s",
                incoming.message_id,
                incoming.channel_id,
                exc,
            )
            return

        if isinstance(outcome, Proxied):
            return
        if isinstance(outcome, Skipped) and outcome.reason.value in {"ambiguous-tag", "dispatch-failed"}:
            logger.info(
                "Message %s not proxied: %s %s",
                incoming.message_id,
                outcome.reason.value,
                outcome.detail or ",".join(outcome.contenders),
            )

    async def on_raw_message_delete(self, payload: discord.RawMessageDeleteEvent) -> None:
        # Deletions made outside the bot (moderators, Discord clients) still close the record.
        try:
            await self.ownership.mark_deleted(str(payload.message_id))
        except StorageFailure as exc:
            logger.warning("Could not record deletion of message %s: %s", payload.message_id, exc)
