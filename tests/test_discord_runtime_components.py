from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from types import SimpleNamespace

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

discord = pytest.importorskip("discord")

import chameleon_bot.discord.client as client_mod  # noqa: E402
from chameleon_bot.discord.common import incoming_from_message, reply_preview, webhook_username  # noqa: E402
from chameleon_bot.discord.gateway import DiscordWebhookGateway, build_reply_embed  # noqa: E402
from chameleon_bot.models import ReplyReference  # noqa: E402
from chameleon_bot.proxy.dispatcher import SkipReason, Skipped  # noqa: E402
from chameleon_bot.proxy.errors import ChannelRejected, StorageFailure  # noqa: E402


def _http_error(cls: type, status: int) -> Exception:
    return cls(SimpleNamespace(status=status, reason="error"), "error")


class _FakePartial:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.deleted = 0

    async def delete(self) -> None:
        self.deleted += 1
        if self.error is not None:
            raise self.error


class _FakeChannel:
    def __init__(self, channel_id: int, *, partial_error: Exception | None = None) -> None:
        self.id = channel_id
        self.partial = _FakePartial(partial_error)
        self.created: list[str] = []
        self.existing: list[object] = []

    def get_partial_message(self, message_id: int) -> _FakePartial:
        return self.partial

    async def webhooks(self) -> list[object]:
        return list(self.existing)

    async def create_webhook(self, *, name: str, reason: str | None = None) -> object:
        self.created.append(name)
        return SimpleNamespace(id=len(self.created), name=name, token="t", user=None)


def _gateway(*channels: _FakeChannel) -> DiscordWebhookGateway:
    by_id = {channel.id: channel for channel in channels}
    client = SimpleNamespace(get_channel=by_id.get, user=None)
    return DiscordWebhookGateway(client, webhook_name="Proxy")  # type: ignore[arg-type]


def test_delete_treats_missing_message_as_done() -> None:
    channel = _FakeChannel(1, partial_error=_http_error(discord.NotFound, 404))

    asyncio.run(_gateway(channel).delete_message("1", "55"))

    assert channel.partial.deleted == 1


def test_delete_maps_forbidden_to_rejection() -> None:
    channel = _FakeChannel(1, partial_error=_http_error(discord.Forbidden, 403))

    with pytest.raises(ChannelRejected):
        asyncio.run(_gateway(channel).delete_message("1", "55"))


def test_delete_server_errors_propagate_for_retry() -> None:
    channel = _FakeChannel(1, partial_error=_http_error(discord.DiscordServerError, 503))

    with pytest.raises(discord.HTTPException):
        asyncio.run(_gateway(channel).delete_message("1", "55"))


def test_webhook_is_created_once_per_channel() -> None:
    channel = _FakeChannel(1)
    gateway = _gateway(channel)

    async def scenario() -> None:
        first, second = await asyncio.gather(gateway._webhook_for(channel), gateway._webhook_for(channel))
        assert first is second

    asyncio.run(scenario())

    assert channel.created == ["Proxy"]


def test_existing_named_webhook_is_reused() -> None:
    channel = _FakeChannel(1)
    channel.existing = [SimpleNamespace(id=77, name="Proxy", token="t", user=None)]

    webhook = asyncio.run(_gateway(channel)._webhook_for(channel))

    assert webhook.id == 77
    assert channel.created == []


def test_non_webhook_channels_are_rejected() -> None:
    with pytest.raises(ChannelRejected):
        asyncio.run(_gateway(_FakeChannel(1)).send_as_persona("1", "Rose", None, "hi", (), "acc-1"))


def test_gateway_cannot_edit_persona() -> None:
    gateway = _gateway()

    assert gateway.supports_edit_persona is False
    with pytest.raises(ChannelRejected):
        asyncio.run(gateway.edit_persona("1", "2", "Rose", None))


def test_webhook_username_is_sanitized_and_clipped() -> None:
    assert webhook_username("  Rose   |  Discord fans ") == "Rose | D1scord fans"
    assert len(webhook_username("x" * 200)) == 80
    assert webhook_username("   ") == "Unknown"


def _discord_message(content: str, **overrides: object) -> SimpleNamespace:
    values: dict[str, object] = {
        "id": 500,
        "channel": SimpleNamespace(id=40),
        "guild": SimpleNamespace(id=30),
        "author": SimpleNamespace(id=20, bot=False),
        "content": content,
        "attachments": [SimpleNamespace(url="https://cdn.example/a.png", filename="a.png", size=12)],
        "created_at": None,
        "webhook_id": None,
    }
    values.update(overrides)
    return SimpleNamespace(**values)


def test_incoming_message_is_flattened() -> None:
    incoming = incoming_from_message(_discord_message("R: hi"))

    assert incoming.message_id == "500"
    assert incoming.channel_id == "40"
    assert incoming.guild_id == "30"
    assert incoming.author_id == "20"
    assert incoming.attachments[0].filename == "a.png"
    assert incoming.created_at.tzinfo is not None
    assert incoming.reply_to is None


def _author(name: str) -> SimpleNamespace:
    return SimpleNamespace(display_name=name, name=name.lower(), display_avatar=SimpleNamespace(url=f"https://cdn.example/{name}.png"))


def test_incoming_reply_keeps_resolved_context() -> None:
    target = SimpleNamespace(
        id=321,
        author=_author("Sam"),
        content="original words",
        attachments=[SimpleNamespace(url="https://cdn.example/pic.jpg", filename="pic.jpg", content_type=None)],
        embeds=[],
        stickers=[],
    )
    reference = SimpleNamespace(message_id=321, channel_id=40, guild_id=30, resolved=target)

    reply = incoming_from_message(_discord_message("R: answering", reference=reference)).reply_to

    assert reply is not None and reply.resolved
    assert reply.message_id == "321"
    assert reply.author_name == "Sam"
    assert reply.author_avatar_url == "https://cdn.example/Sam.png"
    assert reply.image_url == "https://cdn.example/pic.jpg"


def test_incoming_reply_to_uncached_message_keeps_only_ids() -> None:
    reference = SimpleNamespace(message_id=321, channel_id=None, guild_id=None, resolved=None)

    reply = incoming_from_message(_discord_message("R: answering", reference=reference)).reply_to

    assert reply == ReplyReference(message_id="321", channel_id="40", guild_id="30")
    assert not reply.resolved


def test_reply_preview_clips_and_describes_media() -> None:
    assert reply_preview(ReplyReference("1", "2", content="x" * 60)) == "x" * 50 + "..."
    assert reply_preview(ReplyReference("1", "2", content="short")) == "short"
    assert reply_preview(ReplyReference("1", "2", has_attachments=True)) == "*[Attachment]*"
    assert reply_preview(ReplyReference("1", "2", has_stickers=True)) == "*[Sticker]*"
    assert reply_preview(ReplyReference("1", "2")) == "*[Empty message]*"


def test_reply_embed_links_back_to_the_target() -> None:
    reply = ReplyReference(
        message_id="321",
        channel_id="40",
        guild_id="30",
        author_name="Sam",
        author_avatar_url="https://cdn.example/Sam.png",
        content="original words",
        image_url="https://cdn.example/pic.jpg",
    )

    embed = build_reply_embed(reply, "#ff8800")

    assert embed.description == "[Reply to:](https://discord.com/channels/30/40/321) original words"
    assert embed.author.name == "Sam"
    assert embed.thumbnail.url == "https://cdn.example/pic.jpg"
    assert embed.colour == discord.Colour(0xFF8800)
    assert build_reply_embed(reply, "not a colour").colour is None


class _ReplyChannel(_FakeChannel):
    def __init__(self, channel_id: int, target: object | None) -> None:
        super().__init__(channel_id)
        self.target = target

    async def fetch_message(self, message_id: int) -> object:
        if self.target is None:
            raise _http_error(discord.NotFound, 404)
        return self.target


def test_unresolved_reply_is_fetched_or_dropped() -> None:
    target = SimpleNamespace(id=321, author=_author("Sam"), content="hi", attachments=[], embeds=[], stickers=[])
    pending = ReplyReference(message_id="321", channel_id="40", guild_id="30")

    fetched = asyncio.run(_gateway(_ReplyChannel(40, target))._resolve_reply(pending))
    missing = asyncio.run(_gateway(_ReplyChannel(40, None))._resolve_reply(pending))

    assert fetched is not None and fetched.author_name == "Sam" and fetched.content == "hi"
    assert missing is None


class _FakeDispatcher:
    def __init__(self, outcome: object = None, error: Exception | None = None) -> None:
        self.outcome = outcome
        self.error = error
        self.seen: list[object] = []

    async def handle_incoming(self, message: object) -> object:
        self.seen.append(message)
        if self.error is not None:
            raise self.error
        return self.outcome


def test_on_message_hands_human_messages_to_dispatcher() -> None:
    dispatcher = _FakeDispatcher(Skipped(SkipReason.NO_MATCH))
    fake_bot = SimpleNamespace(dispatcher=dispatcher)

    asyncio.run(client_mod.ChameleonDiscordBot.on_message(fake_bot, _discord_message("hello")))
    asyncio.run(
        client_mod.ChameleonDiscordBot.on_message(
            fake_bot, _discord_message("hello", author=SimpleNamespace(id=1, bot=True))
        )
    )

    assert len(dispatcher.seen) == 1


def test_on_message_logs_storage_failure(caplog: pytest.LogCaptureFixture) -> None:
    fake_bot = SimpleNamespace(dispatcher=_FakeDispatcher(error=StorageFailure("put")))

    with caplog.at_level("ERROR", logger="chameleon_bot"):
        asyncio.run(client_mod.ChameleonDiscordBot.on_message(fake_bot, _discord_message("R: hi")))

    assert any("record write failed" in record.getMessage() for record in caplog.records)


def test_raw_delete_marks_record_deleted() -> None:
    marked: list[str] = []

    class _Ownership:
        async def mark_deleted(self, dispatched_message_id: str) -> bool:
            marked.append(dispatched_message_id)
            return True

    fake_bot = SimpleNamespace(ownership=_Ownership())

    asyncio.run(client_mod.ChameleonDiscordBot.on_raw_message_delete(fake_bot, SimpleNamespace(message_id=99)))

    assert marked == ["99"]


def test_cancel_task_handles_none_and_running_tasks() -> None:
    async def scenario() -> None:
        task = asyncio.create_task(asyncio.sleep(10))
        await client_mod.ChameleonDiscordBot._cancel_task(SimpleNamespace(), None)
        await client_mod.ChameleonDiscordBot._cancel_task(SimpleNamespace(), task)
        assert task.cancelled()

    asyncio.run(scenario())
