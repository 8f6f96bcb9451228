from __future__ import annotations

import logging
import uuid
from typing import Callable, Optional, Set

from .clock import Clock, fmt_ms
from .config import AdminWindowConfig
from .events import EventHub
from .models import PENDING, AdminSignal, AdminSignalEvent, Signal
from .pairs import normalize_pair
from .store import SignalStore

log = logging.getLogger("admin")

ADMIN_CONFIDENCE = 99.0


class AdminSignalDispatcher:
    """Turns operator-scheduled signals into open Signals, at most once each.

    Push events, the poll loop, deferred timers and the controller's own tick
    all go through ``offer``/``materialize``. The consumed set and the
    ``opening`` flag are set before any await, so whichever channel arrives
    first wins and nothing else can open a Signal until it is in the store.
    """

    def __init__(
        self,
        repo,
        store: SignalStore,
        candles,
        resolver,
        clock: Clock,
        events: EventHub,
        *,
        pair: str,
        window: Optional[AdminWindowConfig] = None,
    ):
        self.repo = repo
        self.store = store
        self.candles = candles
        self.resolver = resolver
        self.clock = clock
        self.events = events
        self.pair = pair
        self.window = window or AdminWindowConfig()

        self.gate: Callable[[], bool] = lambda: True
        self.activate: Callable[[Signal], None] = self._default_activate

        self.waiting_for: Optional[AdminSignal] = None
        self.opening = False
        self._timer = None
        self._consumed: Set[str] = set()

    # -- window arithmetic ----------------------------------------------

    def _diff_ms(self, admin: AdminSignal, now_ms: int) -> int:
        return int(admin.scheduled_time_ms) - int(now_ms)

    def is_executable(self, admin: AdminSignal, now_ms: int) -> bool:
        diff = self._diff_ms(admin, now_ms)
        return diff <= self.window.execute_ahead_s * 1000 and diff > -self.window.expire_after_s * 1000

    def is_expired(self, admin: AdminSignal, now_ms: int) -> bool:
        return self._diff_ms(admin, now_ms) <= -self.window.expire_after_s * 1000

    def is_lookahead(self, admin: AdminSignal, now_ms: int) -> bool:
        diff = self._diff_ms(admin, now_ms)
        return self.window.execute_ahead_s * 1000 < diff <= self.window.lookahead_s * 1000

    def is_consumed(self, admin_id: str) -> bool:
        return admin_id in self._consumed

    # -- lookup ---------------------------------------------------------

    async def find_eligible(self, pair: Optional[str] = None) -> Optional[AdminSignal]:
        now = self.clock.now_ms()
        rows = await self.repo.get_admin_signals(
            start_ms=now - self.window.lookback_s * 1000,
            end_ms=now + self.window.lookahead_s * 1000,
            status=PENDING,
        )
        target = normalize_pair(pair or self.pair)
        for admin in sorted(rows, key=lambda a: a.scheduled_time_ms):
            if admin.id in self._consumed:
                continue
            if normalize_pair(admin.pair) == target:
                return admin
        return None

    # -- transitions ----------------------------------------------------

    async def offer(self, admin: AdminSignal, channel: str, *, check_gate: bool = True) -> Optional[Signal]:
        if admin.status != PENDING or admin.id in self._consumed:
            return None
        if normalize_pair(admin.pair) != normalize_pair(self.pair):
            log.debug("admin_offer_ignored id=%s pair=%s tracking=%s", admin.id, admin.pair, self.pair)
            return None

        now = self.clock.now_ms()
        if self.is_expired(admin, now):
            await self.materialize(admin)
            return None
        if check_gate and not self.gate():
            log.debug("admin_offer_blocked id=%s channel=%s", admin.id, channel)
            return None

        if self.is_executable(admin, now):
            log.info("admin_offer_execute id=%s channel=%s entry_in=%.1fs", admin.id, channel, self._diff_ms(admin, now) / 1000.0)
            return await self.materialize(admin)

        self.schedule(admin)
        return None

    async def materialize(self, admin: AdminSignal) -> Optional[Signal]:
        if admin.id in self._consumed:
            log.info("admin_duplicate_delivery id=%s", admin.id)
            return None

        now = self.clock.now_ms()
        if self.is_expired(admin, now):
            await self._expire(admin)
            return None
        if not self.is_executable(admin, now):
            return None
        if self.opening or self.store.get_current() is not None:
            log.info("admin_materialize_busy id=%s", admin.id)
            return None

        self._consumed.add(admin.id)
        self.opening = True
        try:
            return await self._open(admin, now)
        finally:
            self.opening = False

    async def _expire(self, admin: AdminSignal) -> None:
        self._consumed.add(admin.id)
        log.warning("admin_signal_expired id=%s scheduled=%s", admin.id, fmt_ms(admin.scheduled_time_ms))
        await self.repo.mark_admin_signal_expired(admin.id)
        if self.waiting_for is not None and self.waiting_for.id == admin.id:
            self.cancel_scheduled()

    async def _open(self, admin: AdminSignal, now: int) -> Optional[Signal]:
        if self.waiting_for is not None and self.waiting_for.id == admin.id:
            self.cancel_scheduled()

        try:
            signal = Signal(
                id=uuid.uuid4().hex,
                pair=admin.pair,
                direction=admin.direction,
                timeframe=int(admin.timeframe),
                confidence=ADMIN_CONFIDENCE,
                entry_time_ms=int(admin.scheduled_time_ms),
                entry_price=await self._reference_price(admin),
                strategy="admin",
                source="admin",
                admin_signal_id=admin.id,
                created_at_ms=now,
            )
            created = await self.repo.create_signal(signal)
            if created is None:
                raise RuntimeError("Failed to create signal")
        except Exception as e:
            self._consumed.discard(admin.id)
            log.error("admin_materialize_failed id=%s err=%s", admin.id, e)
            return None

        await self.repo.mark_admin_signal_executed(admin.id)
        self.store.add(created)
        log.info(
            "admin_signal_opened admin_id=%s signal_id=%s pair=%s dir=%s entry=%s",
            admin.id,
            created.id,
            created.pair,
            created.direction,
            fmt_ms(created.entry_time_ms),
        )
        await self.events.opened(created)
        self.activate(created)
        return created

    def schedule(self, admin: AdminSignal) -> None:
        self.cancel_scheduled()
        delay_ms = admin.scheduled_time_ms - self.window.execute_ahead_s * 1000 - self.clock.now_ms()
        self.waiting_for = admin
        self._timer = self.clock.call_later(
            max(0, delay_ms) / 1000.0,
            lambda: self.clock.spawn(self._fire_deferred(admin), name=f"admin_deferred:{admin.id}"),
        )
        log.info("admin_signal_scheduled id=%s recheck_in=%.1fs", admin.id, max(0, delay_ms) / 1000.0)

    def cancel_scheduled(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
        self._timer = None
        self.waiting_for = None

    async def _fire_deferred(self, admin: AdminSignal) -> None:
        self._timer = None
        self.waiting_for = None
        await self.offer(admin, "timer")

    # -- channels -------------------------------------------------------

    async def handle_event(self, event: AdminSignalEvent) -> Optional[Signal]:
        new = event.new
        if new.status != PENDING:
            return None
        if event.op == "UPDATE" and event.old is not None and event.old.status == PENDING:
            return None
        return await self.offer(new, "push")

    async def expire_missed(self) -> int:
        """Mark pending rows whose window has already closed as expired."""
        cutoff = self.clock.now_ms() - self.window.expire_after_s * 1000
        rows = await self.repo.get_admin_signals(end_ms=cutoff, status=PENDING)
        expired = 0
        for admin in rows:
            if admin.id in self._consumed:
                continue
            await self._expire(admin)
            expired += 1
        return expired

    async def poll_once(self) -> Optional[Signal]:
        await self.expire_missed()
        if not self.gate():
            return None
        admin = await self.find_eligible()
        if admin is None:
            return None
        if not self.is_executable(admin, self.clock.now_ms()):
            return None
        return await self.offer(admin, "poll")

    async def _reference_price(self, admin: AdminSignal) -> float:
        try:
            candles = await self.candles.fetch_candles(admin.pair, int(admin.timeframe), 2)
        except Exception as e:
            log.warning("admin_reference_price_failed id=%s err=%s", admin.id, e)
            return 0.0
        return float(candles[-1].close) if candles else 0.0

    def _default_activate(self, signal: Signal) -> None:
        self.clock.spawn(self.resolver.resolve(signal), name=f"resolve:{signal.id}")
