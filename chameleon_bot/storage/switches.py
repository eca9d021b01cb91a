from __future__ import annotations

from datetime import datetime
from typing import List, Optional

import aiosqlite

from ..models import SwitchRecord
from .utils import _dump_ids, _from_iso, _load_ids, _sqlite_connection, _to_iso


def _row_to_switch(row: aiosqlite.Row) -> SwitchRecord:
    started_at = _from_iso(row["started_at"])
    if started_at is None:
        raise ValueError(f"switch {row['switch_id']} has no start time")
    return SwitchRecord(
        switch_id=str(row["switch_id"]),
        system_id=str(row["system_id"]),
        alter_ids=_load_ids(row["alter_ids"]),
        started_at=started_at,
        ended_at=_from_iso(row["ended_at"]),
        triggered_by=str(row["triggered_by"]),
    )


class StoreSwitchesMixin:
    async def get_open_switch(self, system_id: str) -> Optional[SwitchRecord]:
        async with _sqlite_connection(self.db_path) as db:
            async with db.execute(
                "SELECT * FROM switches WHERE system_id = ? AND ended_at IS NULL",
                (system_id,),
            ) as cursor:
                row = await cursor.fetchone()
        if row is None:
            return None
        return _row_to_switch(row)

    async def apply_switch(
        self,
        record: SwitchRecord,
        *,
        close_switch_id: str | None,
        closed_at: datetime | None,
    ) -> None:
        """Close the previous open record and open ``record`` in one transaction."""
        async with _sqlite_connection(self.db_path) as db:
            try:
                if close_switch_id is not None:
                    cursor = await db.execute(
                        "UPDATE switches SET ended_at = ? WHERE switch_id = ? AND ended_at IS NULL",
                        (_to_iso(closed_at), close_switch_id),
                    )
                    if cursor.rowcount != 1:
                        raise RuntimeError(f"switch {close_switch_id} is no longer open")
                await db.execute(
                    """
                    INSERT INTO switches (switch_id, system_id, alter_ids, started_at, ended_at, triggered_by)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.switch_id,
                        record.system_id,
                        _dump_ids(record.alter_ids),
                        _to_iso(record.started_at),
                        _to_iso(record.ended_at),
                        record.triggered_by,
                    ),
                )
                await db.commit()
            except Exception:
                await db.rollback()
                raise

    async def list_switches(self, system_id: str, limit: int = 20) -> List[SwitchRecord]:
        async with _sqlite_connection(self.db_path) as db:
            async with db.execute(
                """
                SELECT *
                FROM switches
                WHERE system_id = ?
                ORDER BY started_at DESC, rowid DESC
                LIMIT ?
                """,
                (system_id, max(1, int(limit))),
            ) as cursor:
                rows = await cursor.fetchall()
        return [_row_to_switch(row) for row in rows]

    async def count_open_switches(self, system_id: str) -> int:
        async with _sqlite_connection(self.db_path) as db:
            async with db.execute(
                "SELECT COUNT(*) FROM switches WHERE system_id = ? AND ended_at IS NULL",
                (system_id,),
            ) as cursor:
                row = await cursor.fetchone()
        return int(row[0]) if row else 0
