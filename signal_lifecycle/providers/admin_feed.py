from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import AsyncIterator, Optional

import websockets

from ..models import PENDING, AdminSignal, AdminSignalEvent

log = logging.getLogger("admin_feed")


def _parse_ts_ms(value) -> int:
    if isinstance(value, (int, float)):
        return int(value)
    s = str(value).strip()
    if s.isdigit():
        return int(s)
    dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def parse_admin_row(row: Optional[dict]) -> Optional[AdminSignal]:
    if not isinstance(row, dict) or not row.get("id"):
        return None
    sched = row.get("scheduled_time_ms", row.get("scheduled_time"))
    if sched is None:
        return None
    return AdminSignal(
        id=str(row["id"]),
        pair=str(row.get("pair") or ""),
        direction=str(row.get("direction") or row.get("type") or "").lower(),
        scheduled_time_ms=_parse_ts_ms(sched),
        timeframe=int(row.get("timeframe") or 1),
        status=str(row.get("status") or PENDING),
        created_at_ms=_parse_ts_ms(row["created_at_ms"]) if row.get("created_at_ms") else 0,
    )


def parse_event(msg: str) -> Optional[AdminSignalEvent]:
    try:
        j = json.loads(msg)
    except ValueError:
        return None
    if not isinstance(j, dict):
        return None
    op = str(j.get("op") or j.get("eventType") or "").upper()
    if op not in ("INSERT", "UPDATE"):
        return None
    try:
        new = parse_admin_row(j.get("new"))
        old = parse_admin_row(j.get("old"))
    except (TypeError, ValueError) as e:
        log.warning("admin_feed_bad_row err=%s", e)
        return None
    if new is None:
        return None
    return AdminSignalEvent(op=op, new=new, old=old)


class AdminSignalFeed:
    """Push channel for operator signals over a websocket. Auto-reconnects."""

    def __init__(self, url: str, *, heartbeat_s: int = 20):
        self.url = url
        self.heartbeat_s = heartbeat_s

    async def stream(self) -> AsyncIterator[AdminSignalEvent]:
        sub_msg = {"method": "SUBSCRIBE", "params": ["admin_signals"], "id": 1}

        backoff = 1
        while True:
            try:
                async with websockets.connect(
                    self.url,
                    ping_interval=self.heartbeat_s,
                    ping_timeout=self.heartbeat_s,
                    close_timeout=5,
                ) as ws:
                    backoff = 1
                    await ws.send(json.dumps(sub_msg))
                    log.info("admin_feed_subscribed url=%s", self.url)

                    async for msg in ws:
                        evt = parse_event(msg)
                        if evt is None:
                            continue
                        yield evt

            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.warning("admin_feed_error err=%s reconnect_in=%ss", e, backoff)
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, 60)
