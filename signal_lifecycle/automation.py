from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Callable, Dict, List, Optional

from .admin import AdminSignalDispatcher
from .clock import Clock, fmt_ms, next_minute_ms
from .config import AutomationConfig, ResolverConfig
from .events import EventHub
from .models import BUY, SELL, AdminSignalEvent, Analysis, Candle, Signal
from .results import ResultResolver
from .store import SignalStore
from .system import SystemSwitch

log = logging.getLogger("automation")

IDLE = "idle"
SEARCHING = "searching"
ADMIN_WAIT = "admin_wait"
ACTIVE = "active"

NO_OPPORTUNITY_MSG = "No opportunity found after several attempts. Try another pair or strategy."
ADMIN_MODE_MSG = "System in admin mode. Waiting for an operator signal..."
ANALYSIS_RETRY_MSG = "Analysis error. Retrying..."
ANALYSIS_FAILED_MSG = "Analysis failed repeatedly. Search stopped."


class AutomationController:
    """Top-level loop: find an admin signal or an analysis verdict, open one Signal at a time.

    ``stop`` only ends the search. A Signal that is already open keeps being
    resolved, and the watchdog keeps running until ``close``.
    """

    def __init__(
        self,
        *,
        store: SignalStore,
        repo,
        dispatcher: AdminSignalDispatcher,
        resolver: ResultResolver,
        switch: SystemSwitch,
        candles,
        analyzer: Callable[[List[Candle], str], Analysis],
        clock: Clock,
        events: EventHub,
        pair: str,
        timeframe: int,
        strategy: str,
        cfg: Optional[AutomationConfig] = None,
        resolver_cfg: Optional[ResolverConfig] = None,
        admin_poll_interval_s: float = 2.0,
        candle_limit: int = 100,
    ):
        self.store = store
        self.repo = repo
        self.dispatcher = dispatcher
        self.resolver = resolver
        self.switch = switch
        self.candles = candles
        self.analyzer = analyzer
        self.clock = clock
        self.events = events
        self.pair = pair
        self.timeframe = int(timeframe)
        self.strategy = strategy
        self.cfg = cfg or AutomationConfig()
        self.resolver_cfg = resolver_cfg or ResolverConfig()
        self.admin_poll_interval_s = admin_poll_interval_s
        self.candle_limit = candle_limit

        self.automated = False
        self._in_flight = False
        self._attempts = 0
        self._retries = 0

        self._search_task: Optional[asyncio.Task] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._watchdog_task: Optional[asyncio.Task] = None
        self._unsub_push: Optional[Callable[[], None]] = None
        self._retry_handle = None
        self._backup_handles: Dict[str, object] = {}

        dispatcher.pair = pair
        dispatcher.gate = self.can_open
        dispatcher.activate = self._activate

    # -- state ----------------------------------------------------------

    @property
    def state(self) -> str:
        if self.store.get_current() is not None:
            return ACTIVE
        if self.dispatcher.waiting_for is not None:
            return ADMIN_WAIT
        if self.automated:
            return SEARCHING
        return IDLE

    @property
    def attempts(self) -> int:
        return self._attempts

    @property
    def retries(self) -> int:
        return self._retries

    def can_open(self) -> bool:
        return (
            self.automated
            and not self._in_flight
            and not self.dispatcher.opening
            and self.store.get_current() is None
        )

    # -- lifecycle ------------------------------------------------------

    def open(self) -> None:
        if self._watchdog_task is None:
            self._watchdog_task = self.clock.spawn(self._watchdog_loop(), name="watchdog")

    async def close(self) -> None:
        self.stop()
        _cancel(self._watchdog_task)
        self._watchdog_task = None
        for handle in self._backup_handles.values():
            handle.cancel()
        self._backup_handles.clear()

    def start(self) -> None:
        if self.automated:
            return
        self.automated = True
        self._attempts = 0
        self._retries = 0
        self._unsub_push = self.repo.subscribe_admin_signals(self.on_push)
        self._search_task = self.clock.spawn(self._search_loop(), name="search")
        self._poll_task = self.clock.spawn(self._poll_loop(), name="admin_poll")
        log.info("automation_started pair=%s tf=%s strategy=%s", self.pair, self.timeframe, self.strategy)

    def stop(self) -> None:
        was_running = self.automated
        self.automated = False
        _cancel(self._search_task)
        _cancel(self._poll_task)
        self._search_task = None
        self._poll_task = None
        if self._unsub_push is not None:
            self._unsub_push()
            self._unsub_push = None
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None
        self.dispatcher.cancel_scheduled()
        self._attempts = 0
        self._retries = 0
        if was_running:
            current = self.store.get_current()
            log.info("automation_stopped active_signal=%s", current.id if current else None)

    def set_pair(self, pair: str) -> None:
        if pair == self.pair:
            return
        self.pair = pair
        self.dispatcher.pair = pair
        self.dispatcher.cancel_scheduled()
        self._restart_search()

    def set_timeframe(self, timeframe: int) -> None:
        if int(timeframe) == self.timeframe:
            return
        self.timeframe = int(timeframe)
        self._restart_search()

    def set_strategy(self, strategy: str) -> None:
        self.strategy = strategy

    def _restart_search(self) -> None:
        self._attempts = 0
        if self.automated:
            self.clock.spawn(self.tick(), name="search_restart")

    def on_push(self, event: AdminSignalEvent) -> None:
        self.clock.spawn(self.dispatcher.handle_event(event), name="admin_push")

    # -- loops ----------------------------------------------------------

    async def _search_loop(self) -> None:
        while self.automated:
            await self.tick()
            await self.clock.sleep(self.cfg.tick_interval_s)

    async def _poll_loop(self) -> None:
        while self.automated:
            try:
                await self.dispatcher.poll_once()
            except Exception as e:
                log.warning("admin_poll_failed err=%s", e)
            await self.clock.sleep(self.admin_poll_interval_s)

    async def _watchdog_loop(self) -> None:
        while True:
            await self.clock.sleep(self.cfg.watchdog_interval_s)
            try:
                self.watchdog_tick()
            except Exception as e:
                log.warning("watchdog_failed err=%s", e)

    # -- search ---------------------------------------------------------

    async def tick(self) -> Optional[Signal]:
        if not self.automated or self._in_flight or self.dispatcher.opening:
            return None
        if self.store.get_current() is not None or self.dispatcher.waiting_for is not None:
            return None

        self._in_flight = True
        try:
            return await self._search_once()
        except Exception as e:
            await self._on_search_error(e)
            return None
        finally:
            self._in_flight = False

    async def _search_once(self) -> Optional[Signal]:
        admin = await self.dispatcher.find_eligible(self.pair)
        if admin is not None:
            opened = await self.dispatcher.offer(admin, "tick", check_gate=False)
            if opened is not None:
                return opened
            if self.dispatcher.waiting_for is not None:
                log.info("admin_wait id=%s scheduled=%s", admin.id, fmt_ms(admin.scheduled_time_ms))
                return None

        if not await self.switch.is_enabled():
            self._attempts += 1
            log.debug("system_disabled attempts=%d", self._attempts)
            if self._attempts >= self.cfg.max_attempts:
                self._attempts = 0
                await self.events.error(ADMIN_MODE_MSG)
            return None

        candles = await self.candles.fetch_candles(self.pair, self.timeframe, self.candle_limit)
        verdict = self.analyzer(candles, self.strategy)
        self._retries = 0

        if self._qualifies(verdict):
            return await self._open_signal(verdict, candles)

        self._attempts += 1
        log.info(
            "no_signal confidence=%.1f direction=%s factors=%d required=%.1f attempt=%d/%d",
            verdict.confidence,
            verdict.direction,
            len(verdict.factors),
            self.cfg.min_confidence,
            self._attempts,
            self.cfg.max_attempts,
        )
        if self._attempts >= self.cfg.max_attempts:
            await self.events.error(NO_OPPORTUNITY_MSG)
            self._abort_search("no_opportunity")
        return None

    def _qualifies(self, verdict: Analysis) -> bool:
        return (
            verdict.confidence >= self.cfg.min_confidence
            and verdict.direction in ("up", "down")
            and len(verdict.factors) >= self.cfg.min_factors
        )

    async def _open_signal(self, verdict: Analysis, candles: List[Candle]) -> Optional[Signal]:
        now = self.clock.now_ms()
        signal = Signal(
            id=uuid.uuid4().hex,
            pair=self.pair,
            direction=BUY if verdict.direction == "up" else SELL,
            timeframe=self.timeframe,
            confidence=float(verdict.confidence),
            entry_time_ms=next_minute_ms(now),
            entry_price=float(candles[-1].close) if candles else 0.0,
            factors=list(verdict.factors),
            strategy=self.strategy,
            source="analysis",
            created_at_ms=now,
        )
        if self.dispatcher.opening or self.store.get_current() is not None:
            log.info("signal_open_skipped reason=busy pair=%s", self.pair)
            return None
        created = await self.repo.create_signal(signal)
        if created is None:
            raise RuntimeError("Failed to create signal")

        self._attempts = 0
        self.store.add(created)
        log.info(
            "signal_opened id=%s pair=%s dir=%s confidence=%.1f entry=%s factors=%s",
            created.id,
            created.pair,
            created.direction,
            created.confidence,
            fmt_ms(created.entry_time_ms),
            created.factors,
        )
        await self.events.opened(created)
        self._activate(created)
        return created

    async def _on_search_error(self, err: Exception) -> None:
        self._retries += 1
        log.warning("analysis_error retry=%d/%d err=%s", self._retries, self.cfg.max_retries, err)
        if self._retries <= self.cfg.max_retries:
            await self.events.error(ANALYSIS_RETRY_MSG)
            delay = self.cfg.retry_backoff_s * self._retries
            self._retry_handle = self.clock.call_later(
                delay, lambda: self.clock.spawn(self.tick(), name="search_retry")
            )
            return
        await self.events.error(ANALYSIS_FAILED_MSG)
        self._abort_search("retry_ceiling")

    def _abort_search(self, reason: str) -> None:
        log.warning("search_aborted reason=%s pair=%s", reason, self.pair)
        self.stop()

    # -- active signal --------------------------------------------------

    def resume(self, pending: List[Signal]) -> None:
        """Hand signals left unresolved by a previous run back to the resolver."""
        for signal in pending:
            log.info("resume_pending id=%s expiry=%s", signal.id, fmt_ms(signal.expiry_ms))
            self._activate(signal)

    def _activate(self, signal: Signal) -> None:
        self.clock.spawn(self.resolver.resolve(signal, self._handle_resolved), name=f"resolve:{signal.id}")

        delay_s = max(0, signal.expiry_ms - self.clock.now_ms()) / 1000.0 + self.resolver_cfg.backup_delay_s
        self._backup_handles[signal.id] = self.clock.call_later(delay_s, lambda: self._backup_check(signal.id))

    def _backup_check(self, signal_id: str) -> None:
        self._backup_handles.pop(signal_id, None)
        signal = self.store.get(signal_id)
        if signal is None or signal.is_resolved:
            return
        log.warning("backup_check id=%s", signal_id)
        self.clock.spawn(self.resolver.resolve(signal, self._handle_resolved), name=f"resolve_backup:{signal_id}")

    def _handle_resolved(self, signal: Signal) -> None:
        handle = self._backup_handles.pop(signal.id, None)
        if handle is not None:
            handle.cancel()
        self._attempts = 0
        self._retries = 0
        log.info("controller_signal_done id=%s result=%s next_state=%s", signal.id, signal.result, self.state)

    def watchdog_tick(self) -> bool:
        current = self.store.get_current()
        if current is None or current.is_resolved:
            return False
        if self.resolver.is_processing(current.id):
            return False
        if self.clock.now_ms() <= current.expiry_ms + int(self.cfg.watchdog_margin_s * 1000):
            return False
        log.warning("watchdog_forcing_resolve id=%s expired_at=%s", current.id, fmt_ms(current.expiry_ms))
        self.clock.spawn(self.resolver.resolve(current, self._handle_resolved), name=f"resolve_watchdog:{current.id}")
        return True


def _cancel(task: Optional[asyncio.Task]) -> None:
    if task is None or task.done():
        return
    try:
        if task is asyncio.current_task():
            return
    except RuntimeError:
        pass
    task.cancel()
