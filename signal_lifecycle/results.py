from __future__ import annotations

import inspect
import logging
from dataclasses import replace
from typing import Any, Callable, Dict, Optional, Set, Tuple

from .clock import Clock, fmt_ms
from .events import EventHub
from .models import BUY, LOSS, SELL, WIN, Signal
from .price_resolver import PriceLookupError, PriceResolver
from .store import SignalStore

log = logging.getLogger("resolver")

CREATED = "created"
AWAITING_ENTRY = "awaiting_entry"
AWAITING_EXIT = "awaiting_exit"
RESOLVED = "resolved"


def score(direction: str, entry_price: float, exit_price: float) -> Tuple[str, float]:
    """Outcome and absolute percentage move. A flat move is a loss."""
    if entry_price <= 0:
        raise ValueError(f"No usable entry price: {entry_price}")
    change = (exit_price - entry_price) / entry_price
    won = (direction == BUY and exit_price > entry_price) or (direction == SELL and exit_price < entry_price)
    return (WIN if won else LOSS), abs(change) * 100.0


class ResultResolver:
    """Drives one signal from creation to a persisted win/loss.

    Per signal: created -> awaiting_entry -> awaiting_exit -> resolved. Only
    one resolution runs per id at a time, and the first result written to the
    repository is the one every caller ends up with.
    """

    def __init__(
        self,
        repo,
        store: SignalStore,
        prices: PriceResolver,
        candles,
        clock: Clock,
        events: EventHub,
        *,
        exit_margin_s: float = 3.0,
        patience_attempts: int = 5,
    ):
        self.repo = repo
        self.store = store
        self.prices = prices
        self.candles = candles
        self.clock = clock
        self.events = events
        self.exit_margin_ms = int(exit_margin_s * 1000)
        self.patience_attempts = max(1, int(patience_attempts))

        self._processing: Set[str] = set()
        self._entry_prices: Dict[str, Tuple[float, bool]] = {}
        self._states: Dict[str, str] = {}

    def state_of(self, signal_id: str) -> Optional[str]:
        state = self._states.get(signal_id)
        if state is None:
            known = self.store.get(signal_id)
            if known is not None and known.is_resolved:
                return RESOLVED
        return state

    def is_processing(self, signal_id: str) -> bool:
        return signal_id in self._processing

    async def resolve(
        self,
        signal: Signal,
        on_resolved: Optional[Callable[[Signal], Any]] = None,
    ) -> Optional[Signal]:
        if signal.is_resolved:
            await self._publish(signal, on_resolved)
            return signal

        if signal.id in self._processing:
            log.info("resolve_skipped id=%s reason=in_flight", signal.id)
            return None
        self._processing.add(signal.id)
        self._states.setdefault(signal.id, CREATED)

        try:
            try:
                persisted = await self.repo.get_signal_by_id(signal.id)
                if persisted is not None and persisted.is_resolved:
                    final = persisted
                else:
                    final = await self._run(signal)
            except Exception as e:
                log.exception("resolve_failed id=%s err=%s; forcing loss", signal.id, e)
                final = await self._force_loss(signal)

            await self._publish(final, on_resolved)
            return final
        finally:
            self._processing.discard(signal.id)
            self._states.pop(signal.id, None)
            self._entry_prices.pop(signal.id, None)

    async def _run(self, signal: Signal) -> Signal:
        log.info(
            "resolve_start id=%s pair=%s dir=%s entry=%s exit=%s",
            signal.id,
            signal.pair,
            signal.direction,
            fmt_ms(signal.entry_time_ms),
            fmt_ms(signal.expiry_ms),
        )

        self._states[signal.id] = AWAITING_ENTRY
        await self.clock.sleep_until(signal.entry_time_ms)
        entry_price, verified = await self._entry_price(signal)

        self._states[signal.id] = AWAITING_EXIT
        await self.clock.sleep_until(signal.expiry_ms + self.exit_margin_ms)
        exit_price = await self._exit_price(signal, entry_price)

        result, profit_loss = score(signal.direction, entry_price, exit_price)
        log.info(
            "result_computed id=%s pair=%s dir=%s entry=%s exit=%s result=%s pl=%.4f verified_entry=%s",
            signal.id,
            signal.pair,
            signal.direction,
            entry_price,
            exit_price,
            result,
            profit_loss,
            verified,
        )
        return await self._persist(signal, result, profit_loss, entry_price if verified else None)

    async def _patient_price(self, pair: str, instant_ms: int) -> Optional[float]:
        for attempt in range(1, self.patience_attempts + 1):
            try:
                price = await self.prices.fetch(pair, instant_ms)
            except PriceLookupError as e:
                log.warning("price_unavailable pair=%s ts=%s err=%s", pair, instant_ms, e)
                return None
            if price is not None:
                return price
            if attempt < self.patience_attempts:
                await self.clock.sleep(self.prices.delay_for(attempt))
        return None

    async def _entry_price(self, signal: Signal) -> Tuple[float, bool]:
        cached = self._entry_prices.get(signal.id)
        if cached is not None:
            return cached

        price = await self._patient_price(signal.pair, signal.entry_time_ms)
        if price is not None:
            entry = (price, True)
        else:
            log.warning("entry_price_fallback id=%s using_reference=%s", signal.id, signal.entry_price)
            entry = (float(signal.entry_price), False)
        self._entry_prices[signal.id] = entry
        return entry

    async def _exit_price(self, signal: Signal, entry_price: float) -> float:
        price = await self._patient_price(signal.pair, signal.expiry_ms)
        if price is not None:
            return price

        try:
            candles = await self.candles.fetch_candles(signal.pair, signal.timeframe, 2)
            if candles:
                log.warning("exit_price_fallback id=%s source=ohlc close=%s", signal.id, candles[-1].close)
                return float(candles[-1].close)
        except Exception as e:
            log.warning("exit_price_ohlc_failed id=%s err=%s", signal.id, e)

        log.warning("exit_price_fallback id=%s source=entry price=%s", signal.id, entry_price)
        return entry_price

    async def _persist(
        self,
        signal: Signal,
        result: str,
        profit_loss: float,
        entry_price: Optional[float],
    ) -> Signal:
        current = await self.repo.get_signal_by_id(signal.id)
        if current is not None and current.is_resolved:
            log.info("result_adopted id=%s result=%s (written by another resolver)", signal.id, current.result)
            return current

        saved = await self.repo.update_signal_result(signal.id, result, profit_loss, entry_price)
        if saved is not None and saved.is_resolved:
            return saved
        return replace(
            signal,
            result=result,
            profit_loss=profit_loss,
            entry_price=entry_price if entry_price is not None else signal.entry_price,
        )

    async def _force_loss(self, signal: Signal) -> Signal:
        try:
            return await self._persist(signal, LOSS, 0.0, None)
        except Exception as e:
            log.exception("forced_loss_persist_failed id=%s err=%s", signal.id, e)
            return replace(signal, result=LOSS, profit_loss=0.0)

    async def _publish(self, final: Signal, on_resolved: Optional[Callable[[Signal], Any]]) -> None:
        known = self.store.get(final.id)
        announced = known is not None and known.is_resolved
        if known is None:
            self.store.add(final)
        self.store.update(final)

        if on_resolved is not None:
            try:
                res = on_resolved(final)
                if inspect.isawaitable(res):
                    await res
            except Exception as e:
                log.warning("on_resolved_failed id=%s err=%s", final.id, e)

        if not announced:
            log.info("signal_resolved id=%s result=%s pl=%s", final.id, final.result, final.profit_loss)
            await self.events.resolved(final)
