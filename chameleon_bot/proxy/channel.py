from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Protocol, Sequence, TypeVar

from ..models import Attachment, ReplyReference
from .errors import ChannelRejected, DispatchFailed

logger = logging.getLogger("chameleon_bot")

T = TypeVar("T")


class ChannelGateway(Protocol):
    supports_edit_persona: bool

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
    ) -> str: ...

    async def edit_message(self, channel_id: str, message_id: str, new_content: str) -> None: ...

    async def delete_message(self, channel_id: str, message_id: str) -> None: ...

    async def edit_persona(
        self,
        channel_id: str,
        message_id: str,
        persona_name: str,
        persona_avatar: str | None,
    ) -> None: ...

    async def fetch_message(self, channel_id: str, message_id: str) -> tuple[str, tuple[Attachment, ...]]: ...

    async def send_log(self, channel_id: str, content: str) -> None: ...


@dataclass(frozen=True, slots=True)
class ChannelCallPolicy:
    timeout_seconds: float = 10.0
    attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 4.0
    jitter: float = 0.2

    def __post_init__(self) -> None:
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        if self.attempts < 1:
            raise ValueError("attempts must be >= 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("retry delays must be >= 0")

    def backoff(self, attempt: int) -> float:
        delay = min(self.max_delay, self.base_delay * (2 ** max(0, attempt - 1)))
        if self.jitter > 0:
            delay += random.random() * self.jitter
        return delay


async def call_with_retry(
    label: str,
    factory: Callable[[], Awaitable[T]],
    policy: ChannelCallPolicy,
    *,
    before_attempt: Callable[[], Awaitable[object]] | None = None,
    sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
) -> T:
    last_error: BaseException | None = None
    for attempt in range(1, policy.attempts + 1):
        if before_attempt is not None:
            await before_attempt()
        try:
            return await asyncio.wait_for(factory(), timeout=policy.timeout_seconds)
        except asyncio.CancelledError:
            raise
        except ChannelRejected as exc:
            logger.warning("[channel.rejected] call=%s attempt=%s error=%s", label, attempt, exc)
            raise DispatchFailed(label, attempt, exc, retryable=False) from exc
        except asyncio.TimeoutError as exc:
            # A timed out call may or may not have landed; it is never treated as success.
            last_error = exc
            logger.warning("[channel.timeout] call=%s attempt=%s/%s", label, attempt, policy.attempts)
        except Exception as exc:
            last_error = exc
            logger.warning(
                "[channel.error] call=%s attempt=%s/%s error=%s",
                label,
                attempt,
                policy.attempts,
                exc,
            )

        if attempt < policy.attempts:
            await sleep(policy.backoff(attempt))

    raise DispatchFailed(label, policy.attempts, last_error)
