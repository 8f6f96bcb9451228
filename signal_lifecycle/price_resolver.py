from __future__ import annotations

import logging
from typing import Dict, Optional, Tuple

from .clock import Clock, floor_minute_ms
from .pairs import gateway_symbol

log = logging.getLogger("prices")


class PriceLookupError(RuntimeError):
    """The gateway kept failing for every attempt."""


def next_delay(attempt: int, *, initial_delay_s: float = 1.0, factor: float = 1.5) -> float:
    """Backoff before retry number ``attempt`` (1-based)."""
    return float(initial_delay_s) * (float(factor) ** max(0, int(attempt) - 1))


class PriceResolver:
    """Point price at an instant, cached briefly and retried on errors.

    A None from the gateway means the instant has no price yet. That is
    returned straight away and the caller decides when to ask again.
    """

    def __init__(
        self,
        gateway,
        clock: Clock,
        *,
        cache_ttl_s: float = 5.0,
        max_attempts: int = 5,
        initial_delay_s: float = 1.0,
        backoff_factor: float = 1.5,
    ):
        self.gateway = gateway
        self.clock = clock
        self.cache_ttl_ms = int(cache_ttl_s * 1000)
        self.max_attempts = max(1, int(max_attempts))
        self.initial_delay_s = initial_delay_s
        self.backoff_factor = backoff_factor
        self._cache: Dict[Tuple[str, int], Tuple[float, int]] = {}

    def delay_for(self, attempt: int) -> float:
        return next_delay(attempt, initial_delay_s=self.initial_delay_s, factor=self.backoff_factor)

    def _cached(self, key: Tuple[str, int]) -> Optional[float]:
        hit = self._cache.get(key)
        if hit is None:
            return None
        price, stored_at = hit
        if self.clock.now_ms() - stored_at > self.cache_ttl_ms:
            del self._cache[key]
            return None
        return price

    def _remember(self, key: Tuple[str, int], price: float) -> None:
        now = self.clock.now_ms()
        stale = [k for k, (_, stored_at) in self._cache.items() if now - stored_at > self.cache_ttl_ms]
        for k in stale:
            del self._cache[k]
        self._cache[key] = (price, now)

    async def price_at(self, pair: str, instant_ms: int) -> Optional[float]:
        try:
            return await self.fetch(pair, instant_ms)
        except PriceLookupError:
            return None

    async def fetch(self, pair: str, instant_ms: int) -> Optional[float]:
        """Like ``price_at`` but raises PriceLookupError once retries are spent."""
        symbol = gateway_symbol(pair)
        key = (symbol, floor_minute_ms(instant_ms))
        cached = self._cached(key)
        if cached is not None:
            return cached

        for attempt in range(1, self.max_attempts + 1):
            try:
                price = await self.gateway.price_at(symbol, int(instant_ms))
            except Exception as e:
                if attempt >= self.max_attempts:
                    log.error("price_lookup_exhausted symbol=%s ts=%s attempts=%d err=%s", symbol, instant_ms, attempt, e)
                    raise PriceLookupError(f"{symbol} @ {instant_ms}: {e}") from e
                delay = self.delay_for(attempt)
                log.warning(
                    "price_lookup_retry attempt=%d/%d symbol=%s ts=%s backoff=%.2fs err=%s",
                    attempt,
                    self.max_attempts,
                    symbol,
                    instant_ms,
                    delay,
                    e,
                )
                await self.clock.sleep(delay)
                continue

            if price is None:
                log.debug("price_not_ready symbol=%s ts=%s", symbol, instant_ms)
                return None
            self._remember(key, float(price))
            return float(price)
        return None
