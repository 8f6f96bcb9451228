from __future__ import annotations

import inspect
import json
import logging
import sqlite3
import time
import uuid
from pathlib import Path
from typing import Any, Callable, List, Optional

from .models import EXECUTED, EXPIRED, PENDING, AdminSignal, AdminSignalEvent, Signal

log = logging.getLogger("repository")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS signals (
    id TEXT PRIMARY KEY,
    pair TEXT NOT NULL,
    direction TEXT NOT NULL,
    timeframe INTEGER NOT NULL,
    confidence REAL NOT NULL DEFAULT 0,
    entry_time_ms INTEGER NOT NULL,
    entry_price REAL NOT NULL DEFAULT 0,
    result TEXT,
    profit_loss REAL,
    factors TEXT NOT NULL DEFAULT '[]',
    strategy TEXT NOT NULL DEFAULT '',
    source TEXT NOT NULL DEFAULT 'analysis',
    admin_signal_id TEXT,
    processing_status TEXT NOT NULL DEFAULT 'pending',
    created_at_ms INTEGER NOT NULL,
    updated_at_ms INTEGER
);

CREATE TABLE IF NOT EXISTS admin_signals (
    id TEXT PRIMARY KEY,
    pair TEXT NOT NULL,
    direction TEXT NOT NULL,
    scheduled_time_ms INTEGER NOT NULL,
    timeframe INTEGER NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    created_at_ms INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_admin_signals_sched ON admin_signals (status, scheduled_time_ms);

CREATE TABLE IF NOT EXISTS system_settings (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at_ms INTEGER NOT NULL
);
"""


def get_connection(db_path: str) -> sqlite3.Connection:
    if db_path != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path, timeout=30.0)
    conn.row_factory = sqlite3.Row
    if db_path != ":memory:":
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA busy_timeout=30000;")
    return conn


def _now_ms() -> int:
    return int(time.time() * 1000)


class SignalRepository:
    """SQLite-backed persistence for signals, admin signals and system settings.

    Admin-signal and settings writes made through this instance are pushed to
    subscribers. Writes from other processes are only seen by polling.
    """

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self.conn.executescript(_SCHEMA)
        self.conn.commit()
        self._admin_subs: List[Callable[[AdminSignalEvent], Any]] = []
        self._settings_subs: List[Callable[[str, Any], Any]] = []

    @classmethod
    def open(cls, db_path: str) -> "SignalRepository":
        return cls(get_connection(db_path))

    def close(self) -> None:
        self.conn.close()

    # -- signals ---------------------------------------------------------

    async def create_signal(self, signal: Signal) -> Optional[Signal]:
        if not signal.id or not signal.pair or not signal.timeframe:
            raise ValueError(f"Invalid signal data: {signal!r}")
        existing = await self.get_signal_by_id(signal.id)
        if existing is not None:
            log.warning("signal_exists id=%s", signal.id)
            return existing
        created_at = signal.created_at_ms or _now_ms()
        self.conn.execute(
            """
            INSERT INTO signals (
                id, pair, direction, timeframe, confidence, entry_time_ms, entry_price,
                result, profit_loss, factors, strategy, source, admin_signal_id, processing_status, created_at_ms
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                signal.id,
                signal.pair,
                signal.direction,
                int(signal.timeframe),
                float(signal.confidence),
                int(signal.entry_time_ms),
                float(signal.entry_price),
                signal.result,
                signal.profit_loss,
                json.dumps(list(signal.factors)),
                signal.strategy,
                signal.source,
                signal.admin_signal_id,
                "completed" if signal.result else "pending",
                created_at,
            ),
        )
        self.conn.commit()
        return await self.get_signal_by_id(signal.id)

    async def get_signal_by_id(self, signal_id: str) -> Optional[Signal]:
        row = self.conn.execute("SELECT * FROM signals WHERE id = ?", (signal_id,)).fetchone()
        return self._row_to_signal(row) if row is not None else None

    async def update_signal_result(
        self,
        signal_id: str,
        result: str,
        profit_loss: float,
        entry_price: Optional[float] = None,
    ) -> Optional[Signal]:
        """Write a terminal result once. Returns the stored row either way."""
        cur = self.conn.execute(
            """
            UPDATE signals
            SET result = ?, profit_loss = ?, entry_price = COALESCE(?, entry_price),
                processing_status = 'completed', updated_at_ms = ?
            WHERE id = ? AND result IS NULL
            """,
            (result, float(profit_loss), entry_price, _now_ms(), signal_id),
        )
        self.conn.commit()
        if cur.rowcount == 0:
            log.info("signal_result_kept id=%s (already resolved or missing)", signal_id)
        return await self.get_signal_by_id(signal_id)

    async def get_pending_signals(self) -> List[Signal]:
        rows = self.conn.execute(
            "SELECT * FROM signals WHERE result IS NULL ORDER BY created_at_ms DESC, rowid DESC"
        ).fetchall()
        return [self._row_to_signal(r) for r in rows]

    async def get_all_signals(self) -> List[Signal]:
        rows = self.conn.execute("SELECT * FROM signals ORDER BY created_at_ms DESC, rowid DESC").fetchall()
        return [self._row_to_signal(r) for r in rows]

    async def clear_signal_history(self) -> None:
        self.conn.execute("DELETE FROM signals")
        self.conn.commit()

    # -- admin signals ---------------------------------------------------

    async def create_admin_signal(
        self,
        pair: str,
        direction: str,
        scheduled_time_ms: int,
        timeframe: int,
    ) -> AdminSignal:
        admin = AdminSignal(
            id=uuid.uuid4().hex,
            pair=pair,
            direction=direction,
            scheduled_time_ms=int(scheduled_time_ms),
            timeframe=int(timeframe),
            status=PENDING,
            created_at_ms=_now_ms(),
        )
        self.conn.execute(
            """
            INSERT INTO admin_signals (id, pair, direction, scheduled_time_ms, timeframe, status, created_at_ms)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (admin.id, admin.pair, admin.direction, admin.scheduled_time_ms, admin.timeframe, admin.status, admin.created_at_ms),
        )
        self.conn.commit()
        await self._publish_admin(AdminSignalEvent(op="INSERT", new=admin))
        return admin

    async def get_admin_signal(self, admin_id: str) -> Optional[AdminSignal]:
        row = self.conn.execute("SELECT * FROM admin_signals WHERE id = ?", (admin_id,)).fetchone()
        return self._row_to_admin(row) if row is not None else None

    async def get_admin_signals(
        self,
        start_ms: Optional[int] = None,
        end_ms: Optional[int] = None,
        pair: Optional[str] = None,
        status: Optional[str] = PENDING,
    ) -> List[AdminSignal]:
        clauses = []
        params: List[Any] = []
        if status is not None:
            clauses.append("status = ?")
            params.append(status)
        if start_ms is not None:
            clauses.append("scheduled_time_ms >= ?")
            params.append(int(start_ms))
        if end_ms is not None:
            clauses.append("scheduled_time_ms <= ?")
            params.append(int(end_ms))
        if pair:
            clauses.append("pair = ?")
            params.append(pair)
        where = ("WHERE " + " AND ".join(clauses)) if clauses else ""
        rows = self.conn.execute(
            f"SELECT * FROM admin_signals {where} ORDER BY scheduled_time_ms ASC", params
        ).fetchall()
        return [self._row_to_admin(r) for r in rows]

    async def list_admin_signals(self) -> List[AdminSignal]:
        rows = self.conn.execute("SELECT * FROM admin_signals ORDER BY scheduled_time_ms DESC").fetchall()
        return [self._row_to_admin(r) for r in rows]

    async def delete_admin_signal(self, admin_id: str) -> bool:
        cur = self.conn.execute("DELETE FROM admin_signals WHERE id = ?", (admin_id,))
        self.conn.commit()
        return cur.rowcount > 0

    async def mark_admin_signal_executed(self, admin_id: str) -> bool:
        return await self._transition_admin(admin_id, EXECUTED)

    async def mark_admin_signal_expired(self, admin_id: str) -> bool:
        return await self._transition_admin(admin_id, EXPIRED)

    async def _transition_admin(self, admin_id: str, status: str) -> bool:
        old = await self.get_admin_signal(admin_id)
        cur = self.conn.execute(
            "UPDATE admin_signals SET status = ? WHERE id = ? AND status = ?",
            (status, admin_id, PENDING),
        )
        self.conn.commit()
        if cur.rowcount == 0:
            return False
        new = await self.get_admin_signal(admin_id)
        if new is not None:
            await self._publish_admin(AdminSignalEvent(op="UPDATE", new=new, old=old))
        return True

    # -- settings --------------------------------------------------------

    async def get_setting(self, key: str, default: Any = None) -> Any:
        row = self.conn.execute("SELECT value FROM system_settings WHERE key = ?", (key,)).fetchone()
        if row is None:
            return default
        return json.loads(row["value"])

    async def set_setting(self, key: str, value: Any) -> None:
        self.conn.execute(
            """
            INSERT INTO system_settings (key, value, updated_at_ms) VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at_ms=excluded.updated_at_ms
            """,
            (key, json.dumps(value), _now_ms()),
        )
        self.conn.commit()
        for cb in list(self._settings_subs):
            await _call(cb, key, value)

    # -- push ------------------------------------------------------------

    def subscribe_admin_signals(self, callback: Callable[[AdminSignalEvent], Any]) -> Callable[[], None]:
        self._admin_subs.append(callback)
        return lambda: self._admin_subs.remove(callback) if callback in self._admin_subs else None

    def subscribe_settings(self, callback: Callable[[str, Any], Any]) -> Callable[[], None]:
        self._settings_subs.append(callback)
        return lambda: self._settings_subs.remove(callback) if callback in self._settings_subs else None

    async def _publish_admin(self, event: AdminSignalEvent) -> None:
        for cb in list(self._admin_subs):
            await _call(cb, event)

    # -- rows ------------------------------------------------------------

    def _row_to_signal(self, row: sqlite3.Row) -> Signal:
        return Signal(
            id=row["id"],
            pair=row["pair"],
            direction=row["direction"],
            timeframe=int(row["timeframe"]),
            confidence=float(row["confidence"] or 0.0),
            entry_time_ms=int(row["entry_time_ms"]),
            entry_price=float(row["entry_price"] or 0.0),
            result=row["result"],
            profit_loss=float(row["profit_loss"]) if row["profit_loss"] is not None else None,
            factors=json.loads(row["factors"] or "[]"),
            strategy=row["strategy"] or "",
            source=row["source"] or "analysis",
            admin_signal_id=row["admin_signal_id"],
            created_at_ms=int(row["created_at_ms"]),
        )

    def _row_to_admin(self, row: sqlite3.Row) -> AdminSignal:
        return AdminSignal(
            id=row["id"],
            pair=row["pair"],
            direction=row["direction"],
            scheduled_time_ms=int(row["scheduled_time_ms"]),
            timeframe=int(row["timeframe"]),
            status=row["status"],
            created_at_ms=int(row["created_at_ms"]),
        )


async def _call(cb: Callable[..., Any], *args: Any) -> None:
    try:
        res = cb(*args)
        if inspect.isawaitable(res):
            await res
    except Exception as e:
        log.warning("subscriber_failed err=%s", e)
