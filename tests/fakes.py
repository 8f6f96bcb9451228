from __future__ import annotations

import asyncio
from typing import Callable, Dict, List, Optional

from signal_lifecycle.admin import AdminSignalDispatcher
from signal_lifecycle.automation import AutomationController
from signal_lifecycle.clock import Clock
from signal_lifecycle.config import AdminWindowConfig, AutomationConfig, ResolverConfig
from signal_lifecycle.events import EventHub
from signal_lifecycle.models import BUY, Analysis, Candle, Signal
from signal_lifecycle.price_resolver import PriceResolver
from signal_lifecycle.repository import SignalRepository
from signal_lifecycle.results import ResultResolver
from signal_lifecycle.store import SignalStore
from signal_lifecycle.system import SystemSwitch

# 2023-11-14 22:13:00 UTC, a whole minute
START_MS = 1_699_999_980_000


async def settle(rounds: int = 50) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeTimer:
    def __init__(self, due_ms: int, callback: Callable[[], None]):
        self.due_ms = due_ms
        self.callback = callback
        self.cancelled = False
        self.fired = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeClock(Clock):
    """Virtual time.

    With ``auto_advance`` every sleep jumps the clock forward and returns at
    once. Without it sleepers block until ``advance`` moves time past them.
    """

    def __init__(self, now_ms: int = START_MS, *, auto_advance: bool = True):
        super().__init__()
        self.t = int(now_ms)
        self.auto_advance = auto_advance
        self.sleeps: List[float] = []
        self.timers: List[FakeTimer] = []
        self._sleepers: List[tuple] = []

    def now_ms(self) -> int:
        return self.t

    async def sleep(self, seconds: float) -> None:
        seconds = max(0.0, float(seconds))
        self.sleeps.append(seconds)
        due = self.t + int(round(seconds * 1000))
        if self.auto_advance:
            self.t = max(self.t, due)
            await asyncio.sleep(0)
            return
        fut = asyncio.get_running_loop().create_future()
        self._sleepers.append((due, fut))
        await fut

    def call_later(self, delay_s: float, callback: Callable[[], None]) -> FakeTimer:
        timer = FakeTimer(self.t + int(round(max(0.0, float(delay_s)) * 1000)), callback)
        self.timers.append(timer)
        return timer

    def pending_timers(self) -> List[FakeTimer]:
        return [t for t in self.timers if not t.cancelled and not t.fired]

    def _next_due(self, target: int) -> Optional[int]:
        dues = [d for d, f in self._sleepers if not f.done()]
        dues += [t.due_ms for t in self.pending_timers()]
        dues = [d for d in dues if d <= target]
        return min(dues) if dues else None

    async def advance(self, seconds: float) -> None:
        target = self.t + int(round(seconds * 1000))
        await settle()
        while True:
            due = self._next_due(target)
            if due is None:
                break
            self.t = max(self.t, due)
            for d, fut in list(self._sleepers):
                if d <= self.t and not fut.done():
                    fut.set_result(None)
            self._sleepers = [(d, f) for d, f in self._sleepers if not f.done()]
            for timer in sorted(self.pending_timers(), key=lambda x: x.due_ms):
                if timer.due_ms <= self.t:
                    timer.fired = True
                    timer.callback()
            await settle()
        self.t = max(self.t, target)
        await settle()


class FakeGateway:
    """Point prices by instant, or a scripted sequence of responses.

    Script entries are floats, None, or exceptions (raised).
    """

    def __init__(self, prices: Optional[Dict[int, float]] = None, *, script: Optional[list] = None, default=None):
        self.prices = dict(prices or {})
        self.script = list(script or [])
        self.default = default
        self.calls: List[tuple] = []

    async def price_at(self, symbol: str, instant_ms: int) -> Optional[float]:
        self.calls.append((symbol, instant_ms))
        if self.script:
            item = self.script.pop(0)
        else:
            item = self.prices.get(int(instant_ms), self.default)
        if isinstance(item, BaseException):
            raise item
        return item


class FakeCandles:
    def __init__(self, closes: Optional[List[float]] = None, *, error: Optional[Exception] = None):
        self.candles = [_candle(i, c) for i, c in enumerate(closes or [])]
        self.error = error
        self.hold: Optional[asyncio.Event] = None
        self.calls: List[tuple] = []

    async def fetch_candles(self, pair: str, timeframe: int, limit: Optional[int] = None) -> List[Candle]:
        self.calls.append((pair, timeframe, limit))
        if self.hold is not None:
            await self.hold.wait()
        if self.error is not None:
            raise self.error
        return list(self.candles)


def _candle(idx: int, close: float) -> Candle:
    base = START_MS + idx * 60_000
    return Candle(
        open_time_ms=base,
        close_time_ms=base + 60_000 - 1,
        open=close,
        high=close,
        low=close,
        close=close,
        volume=1.0,
    )


class FakeAnalyzer:
    def __init__(self, verdict: Optional[Analysis] = None, *, error: Optional[Exception] = None):
        self.verdict = verdict or Analysis(confidence=80.0, direction="up", factors=["ema9_above_ema21"])
        self.error = error
        self.calls = 0

    def __call__(self, candles: List[Candle], strategy: str) -> Analysis:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.verdict


def make_signal(
    *,
    id: str = "sig-1",
    pair: str = "BTC/USDT",
    direction: str = BUY,
    entry_time_ms: int = START_MS + 60_000,
    timeframe: int = 1,
    entry_price: float = 50000.0,
    created_at_ms: int = START_MS,
) -> Signal:
    return Signal(
        id=id,
        pair=pair,
        direction=direction,
        timeframe=timeframe,
        confidence=80.0,
        entry_time_ms=entry_time_ms,
        entry_price=entry_price,
        created_at_ms=created_at_ms,
    )


class Harness:
    """Every engine component wired over an in-memory repository."""

    def __init__(
        self,
        *,
        clock: Optional[FakeClock] = None,
        gateway: Optional[FakeGateway] = None,
        candles: Optional[FakeCandles] = None,
        analyzer: Optional[FakeAnalyzer] = None,
        pair: str = "BTC/USDT",
        automation: Optional[AutomationConfig] = None,
    ):
        self.clock = clock or FakeClock()
        self.gateway = gateway or FakeGateway()
        self.candles = candles or FakeCandles([50000.0, 50010.0])
        self.analyzer = analyzer or FakeAnalyzer()
        self.repo = SignalRepository.open(":memory:")
        self.store = SignalStore()
        self.events = EventHub()
        self.switch = SystemSwitch(self.repo)
        self.prices = PriceResolver(self.gateway, self.clock)
        self.resolver = ResultResolver(self.repo, self.store, self.prices, self.candles, self.clock, self.events)
        self.dispatcher = AdminSignalDispatcher(
            self.repo,
            self.store,
            self.candles,
            self.resolver,
            self.clock,
            self.events,
            pair=pair,
            window=AdminWindowConfig(),
        )
        self.controller = AutomationController(
            store=self.store,
            repo=self.repo,
            dispatcher=self.dispatcher,
            resolver=self.resolver,
            switch=self.switch,
            candles=self.candles,
            analyzer=self.analyzer,
            clock=self.clock,
            events=self.events,
            pair=pair,
            timeframe=1,
            strategy="trend_momentum",
            cfg=automation or AutomationConfig(),
            resolver_cfg=ResolverConfig(),
        )

        self.opened: List[Signal] = []
        self.resolved: List[Signal] = []
        self.errors: List[str] = []
        self.events.on_opened(self.opened.append)
        self.events.on_resolved(self.resolved.append)
        self.events.on_error(self.errors.append)

    def close(self) -> None:
        self.switch.close()
        self.repo.close()
