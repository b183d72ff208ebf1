"""Report persistence. Professional and anonymous reports are distinct variants
of one tagged union and are stored side by side, discriminated by `kind`."""
from __future__ import annotations

from datetime import datetime
from typing import Callable

import aiosqlite
from pydantic import TypeAdapter

from persona_veil.crypto import primitives
from persona_veil.models import Report
from persona_veil.store.db import Database
from persona_veil.utils.retry import storage_call_with_retry
from persona_veil.utils.timestamps import utcnow

_REPORT_ADAPTER: TypeAdapter[Report] = TypeAdapter(Report)


def parse_report(data: dict | str | bytes) -> Report:
    if isinstance(data, (str, bytes)):
        return _REPORT_ADAPTER.validate_json(data)
    return _REPORT_ADAPTER.validate_python(data)


class ReportStore:
    def __init__(self, database: Database, *, clock: Callable[[], datetime] = utcnow) -> None:
        self._db = database
        self._clock = clock

    async def insert(self, db: aiosqlite.Connection, report: Report) -> str:
        """Insert on an open connection, so callers can fold it into their transaction."""
        report_id = primitives.random_hex(16)
        await db.execute(
            "INSERT INTO reports (report_id, kind, report_json, created_at) VALUES (?, ?, ?, ?)",
            (report_id, report.kind, report.model_dump_json(), self._clock().timestamp()),
        )
        return report_id

    async def add(self, report: Report) -> str:
        async def _add() -> str:
            async with self._db.transaction() as db:
                return await self.insert(db, report)

        return await storage_call_with_retry(_add)

    async def list_reports(self, *, kind: str | None = None, limit: int = 50) -> list[Report]:
        query = "SELECT report_json FROM reports"
        params: tuple = ()
        if kind is not None:
            query += " WHERE kind = ?"
            params = (kind,)
        query += " ORDER BY created_at DESC LIMIT ?"

        async def _list() -> list[Report]:
            async with self._db.connect() as db:
                async with db.execute(query, (*params, limit)) as cursor:
                    rows = await cursor.fetchall()
            return [parse_report(r[0]) for r in rows]

        return await storage_call_with_retry(_list)
