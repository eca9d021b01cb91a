from __future__ import annotations

import enum
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable

from ..models import SwitchRecord, utcnow
from .errors import StorageFailure, SwitchConflict
from .locks import KeyedLocks

logger = logging.getLogger("chameleon_bot")


class SwitchStatus(str, enum.Enum):
    OK = "ok"
    CONFLICT = "conflict"


@dataclass(frozen=True, slots=True)
class SwitchResult:
    status: SwitchStatus
    record: SwitchRecord | None
    previous: SwitchRecord | None = None
    reason: str = ""

    @property
    def ok(self) -> bool:
        return self.status is SwitchStatus.OK


class SwitchTracker:
    """Per-system front history: at most one open record, strictly ordered in time."""

    def __init__(self, store: Any) -> None:
        self.store = store
        self._locks = KeyedLocks()

    async def switch(
        self,
        system_id: str,
        alter_ids: Iterable[str],
        at: datetime | None = None,
        triggered_by: str = "",
    ) -> SwitchResult:
        moment = at or utcnow()
        if moment.tzinfo is None:
            raise ValueError("switch time must be timezone aware")

        async with self._locks.hold(system_id):
            current = await self.store.get_open_switch(system_id)
            if current is not None and moment < current.started_at:
                logger.info(
                    "[switch.conflict] system=%s at=%s open_since=%s",
                    system_id,
                    moment.isoformat(),
                    current.started_at.isoformat(),
                )
                return SwitchResult(
                    SwitchStatus.CONFLICT,
                    record=current,
                    reason="switch time precedes the current front's start",
                )

            record = SwitchRecord(
                switch_id=uuid.uuid4().hex,
                system_id=system_id,
                alter_ids=tuple(alter_ids),
                started_at=moment,
                triggered_by=triggered_by,
            )
            try:
                await self.store.apply_switch(
                    record,
                    close_switch_id=current.switch_id if current is not None else None,
                    closed_at=moment if current is not None else None,
                )
            except Exception as exc:
                logger.error("[switch.store_error] system=%s error=%s", system_id, exc)
                raise StorageFailure("apply_switch", exc) from exc
            if current is not None:
                current.ended_at = moment
            logger.info(
                "[switch.ok] system=%s front=%s by=%s",
                system_id,
                ",".join(record.alter_ids) or "-",
                triggered_by or "-",
            )
            return SwitchResult(SwitchStatus.OK, record=record, previous=current)

    async def switch_or_raise(
        self,
        system_id: str,
        alter_ids: Iterable[str],
        at: datetime | None = None,
        triggered_by: str = "",
    ) -> SwitchRecord:
        result = await self.switch(system_id, alter_ids, at=at, triggered_by=triggered_by)
        if not result.ok or result.record is None:
            raise SwitchConflict(system_id, result.reason or "switch rejected")
        return result.record

    async def current_front(self, system_id: str) -> tuple[str, ...]:
        current = await self.store.get_open_switch(system_id)
        if current is None:
            return ()
        return current.alter_ids

    async def history(self, system_id: str, limit: int = 20) -> list[SwitchRecord]:
        return list(await self.store.list_switches(system_id, limit))
