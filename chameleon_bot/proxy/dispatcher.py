from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Awaitable, Callable, TypeVar

from ..models import Alter, IncomingMessage, ProxyMessageRecord, utcnow
from .channel import ChannelCallPolicy, ChannelGateway, call_with_retry
from .errors import DispatchFailed
from .layout import format_persona_name, resolve_avatar, resolve_color
from .locks import KeyedLocks
from .matcher import MatchStatus, match_tags
from .ownership import MessageOwnershipStore
from .ratelimit import ChannelRateLimiter
from .registry import SystemRegistry, SystemView
from .switches import SwitchTracker

logger = logging.getLogger("chameleon_bot")

T = TypeVar("T")

ESCAPE_PREFIX = "\\"
BREAK_PREFIX = "\\\\"
DEFAULT_MAX_CONTENT_CHARS = 2000


class SkipReason(str, enum.Enum):
    NOT_CONFIGURED = "not-configured"
    AMBIGUOUS_TAG = "ambiguous-tag"
    NO_MATCH = "no-match"
    EMPTY_BODY = "empty-body"
    DISPATCH_FAILED = "dispatch-failed"
    ESCAPED = "escaped"
    CONTENT_TOO_LONG = "content-too-long"
    IGNORED_AUTHOR = "ignored-author"


@dataclass(frozen=True, slots=True)
class Proxied:
    record: ProxyMessageRecord
    alter: Alter
    persona_name: str
    via: str = "tag"
    original_deleted: bool = True


@dataclass(frozen=True, slots=True)
class Skipped:
    reason: SkipReason
    detail: str = ""
    contenders: tuple[str, ...] = ()


class ActionStatus(str, enum.Enum):
    OK = "ok"
    UNAUTHORIZED = "unauthorized"
    NOT_FOUND = "not_found"
    DISPATCH_FAILED = "dispatch_failed"


@dataclass(frozen=True, slots=True)
class ActionResult:
    status: ActionStatus
    record: ProxyMessageRecord | None = None
    detail: str = ""
    transient: bool = True

    @property
    def ok(self) -> bool:
        return self.status is ActionStatus.OK

    @property
    def retryable(self) -> bool:
        return self.status is ActionStatus.DISPATCH_FAILED and self.transient


class ProxyDispatcher:
    def __init__(
        self,
        registry: SystemRegistry,
        switches: SwitchTracker,
        ownership: MessageOwnershipStore,
        gateway: ChannelGateway,
        *,
        rate_limiter: ChannelRateLimiter | None = None,
        call_policy: ChannelCallPolicy | None = None,
        max_content_chars: int = DEFAULT_MAX_CONTENT_CHARS,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.registry = registry
        self.switches = switches
        self.ownership = ownership
        self.gateway = gateway
        self.rate_limiter = rate_limiter
        self.call_policy = call_policy or ChannelCallPolicy()
        self.max_content_chars = max(1, int(max_content_chars))
        self._sleep = sleep
        self._clock = clock
        self._message_locks = KeyedLocks()

    async def _channel_call(self, label: str, channel_id: str, factory: Callable[[], Awaitable[T]]) -> T:
        limiter = self.rate_limiter

        async def _throttle() -> None:
            if limiter is not None:
                await limiter.acquire(channel_id)

        return await call_with_retry(
            label,
            factory,
            self.call_policy,
            before_attempt=_throttle,
            sleep=self._sleep,
        )

    async def handle_incoming(self, message: IncomingMessage) -> Proxied | Skipped:
        if message.author_is_bot or message.webhook_id:
            return Skipped(SkipReason.IGNORED_AUTHOR)
        if not message.guild_id:
            return Skipped(SkipReason.NOT_CONFIGURED, "direct message")

        try:
            view = await self.registry.get_system_config(message.author_id)
            guild = await self.registry.get_guild_config(message.guild_id) if view is not None else None
        except Exception as exc:
            logger.warning("[proxy.registry_error] author=%s error=%s", message.author_id, exc)
            return Skipped(SkipReason.NOT_CONFIGURED, "registry unavailable")

        if view is None or guild is None:
            return Skipped(SkipReason.NOT_CONFIGURED, "no linked system")
        if not guild.proxying_enabled:
            return Skipped(SkipReason.NOT_CONFIGURED, "proxying disabled in guild")
        if message.channel_id in guild.blocked_channel_ids:
            return Skipped(SkipReason.NOT_CONFIGURED, "channel blocked")

        content = message.content
        if content.startswith(ESCAPE_PREFIX):
            if content.startswith(BREAK_PREFIX):
                await self._update_autoproxy_state(view, autoproxy_break=True)
            return Skipped(SkipReason.ESCAPED)

        on_break = view.system.autoproxy_break or await self._apply_break_cooldown(view)

        options = view.match_options(guild)
        if message.attachments and not options.allow_empty_body:
            options = replace(options, allow_empty_body=True)
        match = match_tags(content, view.candidates, options)

        if match.status is MatchStatus.AMBIGUOUS:
            logger.info(
                "[proxy.ambiguous] system=%s channel=%s contenders=%s",
                view.system_id,
                message.channel_id,
                ",".join(match.contenders),
            )
            return Skipped(SkipReason.AMBIGUOUS_TAG, contenders=match.contenders)

        if match.matched:
            alter = view.alter(match.alter_id)
            body = match.content
            via = "tag"
        else:
            alter_id, via = await self._autoproxy_target(view, guild.autoproxy_enabled and not on_break)
            alter = view.alter(alter_id)
            body = content.strip() if options.trim_whitespace else content
        if alter is None:
            return Skipped(SkipReason.NO_MATCH)

        if not body.strip() and not message.attachments:
            return Skipped(SkipReason.EMPTY_BODY)
        if len(body) > self.max_content_chars:
            return Skipped(SkipReason.CONTENT_TOO_LONG, f"{len(body)} > {self.max_content_chars}")

        persona_name = format_persona_name(alter, view.system, allow_closed_names=guild.allow_closed_names)
        avatar = resolve_avatar(alter, view.system)
        color = resolve_color(alter, view.system)
        try:
            dispatched_id = await self._channel_call(
                "send_as_persona",
                message.channel_id,
                lambda: self.gateway.send_as_persona(
                    message.channel_id,
                    persona_name,
                    avatar,
                    body,
                    message.attachments,
                    message.author_id,
                    reply_to=message.reply_to,
                    embed_color=color,
                ),
            )
        except DispatchFailed as exc:
            logger.warning(
                "[proxy.send_failed] system=%s channel=%s message=%s error=%s",
                view.system_id,
                message.channel_id,
                message.message_id,
                exc,
            )
            return Skipped(SkipReason.DISPATCH_FAILED, str(exc))

        # The original is only removed once the replacement exists.
        original_deleted = True
        try:
            await self._channel_call(
                "delete_original",
                message.channel_id,
                lambda: self.gateway.delete_message(message.channel_id, message.message_id),
            )
        except DispatchFailed as exc:
            original_deleted = False
            logger.warning(
                "[proxy.original_kept] channel=%s message=%s error=%s",
                message.channel_id,
                message.message_id,
                exc,
            )

        proxied_at = self._clock()
        record = ProxyMessageRecord(
            dispatched_message_id=str(dispatched_id),
            original_message_id=message.message_id,
            channel_id=message.channel_id,
            guild_id=message.guild_id,
            system_id=view.system_id,
            alter_id=alter.alter_id,
            author_id=message.author_id,
            created_at=proxied_at,
        )
        await self.ownership.put(record)
        logger.info(
            "[proxy.sent] system=%s alter=%s channel=%s via=%s dispatched=%s",
            view.system_id,
            alter.alter_id,
            message.channel_id,
            via,
            record.dispatched_message_id,
        )

        # The last proxy time only matters to systems with a break cooldown.
        tracked_at = proxied_at if view.system.autoproxy_cooldown_seconds > 0 else None
        if via == "tag":
            await self._update_autoproxy_state(
                view,
                autoproxy_break=False,
                last_proxied_alter_id=alter.alter_id,
                last_proxied_at=tracked_at,
                previous_break=on_break,
            )
        else:
            await self._update_autoproxy_state(
                view,
                autoproxy_break=on_break,
                last_proxied_at=tracked_at,
                previous_break=on_break,
            )
        if guild.log_channel_id:
            await self._post_log(guild.log_channel_id, record, persona_name)

        return Proxied(
            record=record,
            alter=alter,
            persona_name=persona_name,
            via=via,
            original_deleted=original_deleted,
        )

    async def _autoproxy_target(self, view: SystemView, guild_allows: bool) -> tuple[str | None, str]:
        system = view.system
        if not guild_allows or system.autoproxy_mode == "off" or system.autoproxy_break:
            return None, ""

        if system.autoproxy_mode == "front":
            try:
                front = await self.switches.current_front(system.system_id)
            except Exception as exc:
                logger.warning("[proxy.front_error] system=%s error=%s", system.system_id, exc)
                return None, ""
            # Co-fronting is deliberately not guessed at.
            if len(front) != 1:
                return None, ""
            return front[0], "autoproxy-front"

        if system.autoproxy_mode == "latch":
            return system.last_proxied_alter_id, "autoproxy-latch"
        return None, ""

    async def _apply_break_cooldown(self, view: SystemView) -> bool:
        """Put the system on break once it has been silent longer than its cooldown."""
        system = view.system
        cooldown = system.autoproxy_cooldown_seconds
        if cooldown <= 0 or system.autoproxy_break or system.last_proxied_at is None:
            return False
        if (self._clock() - system.last_proxied_at).total_seconds() <= cooldown:
            return False
        logger.info("[proxy.cooldown_break] system=%s cooldown=%ss", system.system_id, cooldown)
        await self._update_autoproxy_state(view, autoproxy_break=True)
        return True

    async def _update_autoproxy_state(
        self,
        view: SystemView,
        *,
        autoproxy_break: bool,
        last_proxied_alter_id: str | None = None,
        last_proxied_at: datetime | None = None,
        previous_break: bool | None = None,
    ) -> None:
        system = view.system
        stored_break = system.autoproxy_break if previous_break is None else previous_break
        changes: dict[str, object] = {}
        if stored_break != autoproxy_break:
            changes["autoproxy_break"] = autoproxy_break
        if last_proxied_alter_id is not None and system.last_proxied_alter_id != last_proxied_alter_id:
            changes["last_proxied_alter_id"] = last_proxied_alter_id
        if last_proxied_at is not None:
            changes["last_proxied_at"] = last_proxied_at
        if not changes:
            return
        try:
            await self.registry.store.update_autoproxy_state(system.system_id, **changes)
        except Exception as exc:
            logger.warning("[proxy.state_error] system=%s error=%s", system.system_id, exc)
            return
        self.registry.invalidate_system(system.system_id)

    async def _post_log(self, log_channel_id: str, record: ProxyMessageRecord, persona_name: str) -> None:
        line = (
            f"Proxied message `{record.dispatched_message_id}` in <#{record.channel_id}> "
            f"as **{persona_name}** (author <@{record.author_id}>, system `{record.system_id}`)"
        )
        try:
            await self._channel_call(
                "send_log",
                log_channel_id,
                lambda: self.gateway.send_log(log_channel_id, line),
            )
        except DispatchFailed as exc:
            logger.warning("[proxy.log_failed] channel=%s error=%s", log_channel_id, exc)

    async def _load_owned(self, dispatched_message_id: str, account_id: str) -> ProxyMessageRecord | ActionResult:
        record = await self.ownership.get_by_dispatched_id(dispatched_message_id)
        if record is None:
            return ActionResult(ActionStatus.NOT_FOUND, detail="not a proxied message")
        # Any account linked to the owning system may act, not only the original author.
        if not await self.registry.is_member(account_id, record.system_id):
            return ActionResult(ActionStatus.UNAUTHORIZED, record=record)
        return record

    async def edit_proxied(
        self,
        dispatched_message_id: str,
        requesting_account_id: str,
        new_content: str,
    ) -> ActionResult:
        if not new_content.strip():
            raise ValueError("new content is empty")
        if len(new_content) > self.max_content_chars:
            raise ValueError(f"new content exceeds {self.max_content_chars} characters")

        async with self._message_locks.hold(dispatched_message_id):
            record = await self._load_owned(dispatched_message_id, requesting_account_id)
            if isinstance(record, ActionResult):
                return record
            if record.deleted:
                return ActionResult(ActionStatus.NOT_FOUND, record=record, detail="message was deleted")

            try:
                await self._channel_call(
                    "edit_message",
                    record.channel_id,
                    lambda: self.gateway.edit_message(record.channel_id, record.dispatched_message_id, new_content),
                )
            except DispatchFailed as exc:
                return ActionResult(ActionStatus.DISPATCH_FAILED, record=record, detail=str(exc), transient=exc.retryable)

            edited_at = self._clock()
            await self.ownership.touch_edited(record.dispatched_message_id, edited_at)
            logger.info("[proxy.edited] dispatched=%s by=%s", record.dispatched_message_id, requesting_account_id)
            return ActionResult(ActionStatus.OK, record=replace(record, edited_at=edited_at))

    async def delete_proxied(self, dispatched_message_id: str, requesting_account_id: str) -> ActionResult:
        async with self._message_locks.hold(dispatched_message_id):
            record = await self._load_owned(dispatched_message_id, requesting_account_id)
            if isinstance(record, ActionResult):
                return record
            if record.deleted:
                return ActionResult(ActionStatus.OK, record=record, detail="already deleted")

            try:
                await self._channel_call(
                    "delete_message",
                    record.channel_id,
                    lambda: self.gateway.delete_message(record.channel_id, record.dispatched_message_id),
                )
            except DispatchFailed as exc:
                return ActionResult(ActionStatus.DISPATCH_FAILED, record=record, detail=str(exc), transient=exc.retryable)

            deleted_at = self._clock()
            await self.ownership.mark_deleted(record.dispatched_message_id, deleted_at)
            logger.info("[proxy.deleted] dispatched=%s by=%s", record.dispatched_message_id, requesting_account_id)
            return ActionResult(ActionStatus.OK, record=replace(record, deleted=True, deleted_at=deleted_at))

    async def reproxy(
        self,
        dispatched_message_id: str,
        requesting_account_id: str,
        new_alter_id: str,
    ) -> ActionResult:
        async with self._message_locks.hold(dispatched_message_id):
            record = await self._load_owned(dispatched_message_id, requesting_account_id)
            if isinstance(record, ActionResult):
                return record
            if record.deleted:
                return ActionResult(ActionStatus.NOT_FOUND, record=record, detail="message was deleted")

            view = await self.registry.get_system_view(record.system_id)
            alter = view.alter(new_alter_id) if view is not None else None
            if view is None or alter is None:
                return ActionResult(ActionStatus.NOT_FOUND, record=record, detail="alter not found in system")
            if alter.alter_id == record.alter_id:
                return ActionResult(ActionStatus.OK, record=record, detail="already attributed")

            guild = await self.registry.get_guild_config(record.guild_id)
            persona_name = format_persona_name(alter, view.system, allow_closed_names=guild.allow_closed_names)
            avatar = resolve_avatar(alter, view.system)
            try:
                if self.gateway.supports_edit_persona:
                    updated = await self._reproxy_in_place(record, alter, persona_name, avatar)
                else:
                    updated = await self._reproxy_by_resend(record, alter, persona_name, avatar)
            except DispatchFailed as exc:
                return ActionResult(ActionStatus.DISPATCH_FAILED, record=record, detail=str(exc), transient=exc.retryable)

            await self._update_autoproxy_state(
                view,
                autoproxy_break=view.system.autoproxy_break,
                last_proxied_alter_id=alter.alter_id,
            )
            logger.info(
                "[proxy.reproxied] dispatched=%s alter=%s by=%s",
                updated.dispatched_message_id,
                alter.alter_id,
                requesting_account_id,
            )
            return ActionResult(ActionStatus.OK, record=updated)

    async def _reproxy_in_place(
        self,
        record: ProxyMessageRecord,
        alter: Alter,
        persona_name: str,
        avatar: str | None,
    ) -> ProxyMessageRecord:
        await self._channel_call(
            "edit_persona",
            record.channel_id,
            lambda: self.gateway.edit_persona(record.channel_id, record.dispatched_message_id, persona_name, avatar),
        )
        await self.ownership.update_alter(record.dispatched_message_id, alter.alter_id)
        return replace(record, alter_id=alter.alter_id)

    async def _reproxy_by_resend(
        self,
        record: ProxyMessageRecord,
        alter: Alter,
        persona_name: str,
        avatar: str | None,
    ) -> ProxyMessageRecord:
        content, attachments = await self._channel_call(
            "fetch_message",
            record.channel_id,
            lambda: self.gateway.fetch_message(record.channel_id, record.dispatched_message_id),
        )
        new_id = str(
            await self._channel_call(
                "send_as_persona",
                record.channel_id,
                lambda: self.gateway.send_as_persona(
                    record.channel_id,
                    persona_name,
                    avatar,
                    content,
                    attachments,
                    record.author_id,
                ),
            )
        )
        # Re-key before deleting: the platform's delete event for the old id must no longer find the record.
        await self.ownership.replace_dispatched(record.dispatched_message_id, new_id, alter.alter_id)
        try:
            await self._channel_call(
                "delete_message",
                record.channel_id,
                lambda: self.gateway.delete_message(record.channel_id, record.dispatched_message_id),
            )
        except DispatchFailed as exc:
            logger.warning(
                "[proxy.reproxy_old_kept] channel=%s dispatched=%s error=%s",
                record.channel_id,
                record.dispatched_message_id,
                exc,
            )
        return replace(record, dispatched_message_id=new_id, alter_id=alter.alter_id)
