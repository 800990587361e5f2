"""
FP event stores: the reviewed-event records the calibration layer aggregates.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import aiosqlite

from fptrust.trust.models import FPEvent, from_iso, to_iso

logger = logging.getLogger(__name__)


class SqliteFPEventStore:
    """Async SQLite store of reviewed rule firings."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self._lock = asyncio.Lock()
        self._connection: Optional[aiosqlite.Connection] = None

    async def _get_connection(self) -> aiosqlite.Connection:
        if self._connection is None:
            self._connection = await aiosqlite.connect(str(self.db_path))
            self._connection.row_factory = aiosqlite.Row
        return self._connection

    async def initialize(self) -> None:
        """Create schema if not exists."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        async with self._lock:
            conn = await self._get_connection()
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS fp_events (
                    event_id TEXT PRIMARY KEY,
                    rule_id TEXT NOT NULL,
                    org_id_hash TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    is_false_positive INTEGER NOT NULL DEFAULT 1
                )
            """)
            await conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_fp_rule_ts ON fp_events(rule_id, timestamp)"
            )
            await conn.commit()
            logger.info(f"Initialized FP event store at {self.db_path}")

    async def close(self) -> None:
        if self._connection:
            await self._connection.close()
            self._connection = None

    async def record_event(self, event: FPEvent) -> None:
        """Insert an event; re-recording the same event_id replaces it."""
        async with self._lock:
            conn = await self._get_connection()
            await conn.execute(
                """
                INSERT OR REPLACE INTO fp_events (
                    event_id, rule_id, org_id_hash, timestamp, is_false_positive
                ) VALUES (?, ?, ?, ?, ?)
            """,
                (
                    event.event_id,
                    event.rule_id,
                    event.org_id_hash,
                    to_iso(event.timestamp),
                    1 if event.is_false_positive else 0,
                ),
            )
            await conn.commit()

    async def list_events(
        self,
        rule_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[FPEvent]:
        clauses = []
        params: list = []
        if rule_id is not None:
            clauses.append("rule_id = ?")
            params.append(rule_id)
        if start is not None:
            clauses.append("timestamp >= ?")
            params.append(to_iso(start))
        if end is not None:
            clauses.append("timestamp <= ?")
            params.append(to_iso(end))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        conn = await self._get_connection()
        cursor = await conn.execute(
            f"SELECT * FROM fp_events {where} ORDER BY timestamp, event_id", params
        )
        rows = await cursor.fetchall()
        return [
            FPEvent(
                event_id=r["event_id"],
                rule_id=r["rule_id"],
                org_id_hash=r["org_id_hash"],
                timestamp=from_iso(r["timestamp"]),
                is_false_positive=bool(r["is_false_positive"]),
            )
            for r in rows
        ]


class NoOpFPEventStore:
    """Holds no data. Every aggregate over it is refused by the k gate."""

    async def initialize(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def record_event(self, event: FPEvent) -> None:
        logger.debug(f"Dropping FP event {event.event_id} (no-op store)")

    async def list_events(
        self,
        rule_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[FPEvent]:
        return []
