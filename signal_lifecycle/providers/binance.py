from __future__ import annotations

import asyncio
import logging
from typing import List, Optional

import aiohttp

from ..models import Candle
from ..pairs import gateway_symbol

log = logging.getLogger("binance")


def _rest_base(market: str) -> str:
    return "https://fapi.binance.com" if market == "futures" else "https://api.binance.com"


def _klines_path(market: str) -> str:
    return "/fapi/v1/klines" if market == "futures" else "/api/v3/klines"


def minutes_to_interval(minutes: int) -> str:
    m = int(minutes)
    if m % 1440 == 0:
        return f"{m // 1440}d"
    if m % 60 == 0:
        return f"{m // 60}h"
    return f"{m}m"


class BinanceProvider:
    """OHLC candles for analysis and as the secondary exit-price source."""

    def __init__(
        self,
        market: str = "spot",
        *,
        rest_timeout_s: int = 20,
        rest_max_retries: int = 4,
        rest_backoff_s: float = 0.8,
        rest_conn_limit: int = 40,
        rest_conn_limit_per_host: int = 10,
        default_limit: int = 100,
        rest_base: Optional[str] = None,
    ):
        self.market = market
        self.rest_base = (rest_base or _rest_base(market)).rstrip("/")
        self.rest_timeout_s = rest_timeout_s

        # REST robustness
        self.rest_max_retries = rest_max_retries
        self.rest_backoff_s = rest_backoff_s
        self.rest_conn_limit = rest_conn_limit
        self.rest_conn_limit_per_host = rest_conn_limit_per_host
        self.default_limit = default_limit

        self._session: Optional[aiohttp.ClientSession] = None

    async def close(self) -> None:
        """Close the shared aiohttp session (best-effort)."""
        if self._session is not None and not self._session.closed:
            await self._session.close()

    def _timeout(self) -> aiohttp.ClientTimeout:
        return aiohttp.ClientTimeout(
            total=self.rest_timeout_s,
            connect=min(10, self.rest_timeout_s),
            sock_connect=min(10, self.rest_timeout_s),
            sock_read=max(10, int(self.rest_timeout_s * 0.75)),
        )

    def _connector(self) -> aiohttp.TCPConnector:
        return aiohttp.TCPConnector(
            limit=self.rest_conn_limit,
            limit_per_host=self.rest_conn_limit_per_host,
            ttl_dns_cache=300,
            enable_cleanup_closed=True,
        )

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout(), connector=self._connector())
        return self._session

    async def fetch_candles(self, pair: str, timeframe: int, limit: Optional[int] = None) -> List[Candle]:
        symbol = gateway_symbol(pair)
        interval = minutes_to_interval(timeframe)
        url = self.rest_base + _klines_path(self.market)
        params = {"symbol": symbol, "interval": interval, "limit": int(limit or self.default_limit)}

        sess = await self._get_session()

        backoff = float(self.rest_backoff_s)
        last_err: Optional[BaseException] = None
        data = []
        for attempt in range(1, int(self.rest_max_retries) + 1):
            try:
                async with sess.get(url, params=params) as resp:
                    # Rate-limit / ban signals
                    if resp.status in (418, 429):
                        txt = await resp.text()
                        retry_after = resp.headers.get("Retry-After")
                        sleep_s = float(retry_after) if (retry_after and retry_after.isdigit()) else backoff
                        log.warning(
                            "rest_rate_limited status=%s symbol=%s tf=%s sleep=%.1fs body=%s",
                            resp.status,
                            symbol,
                            interval,
                            sleep_s,
                            txt[:200],
                        )
                        await asyncio.sleep(sleep_s)
                        backoff = min(backoff * 2.0, 20.0)
                        last_err = RuntimeError(f"Binance rate limited: {resp.status}")
                        continue

                    if resp.status != 200:
                        txt = await resp.text()
                        raise RuntimeError(f"Binance klines failed: {resp.status} {txt[:500]}")

                    data = await resp.json(content_type=None)

                last_err = None
                break

            except (asyncio.TimeoutError, aiohttp.ClientError) as e:
                last_err = e
                if attempt >= int(self.rest_max_retries):
                    break
                log.warning(
                    "rest_timeout_or_client_err attempt=%d/%d symbol=%s tf=%s backoff=%.1fs err=%s",
                    attempt,
                    self.rest_max_retries,
                    symbol,
                    interval,
                    backoff,
                    e,
                )
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2.0, 20.0)

        if last_err is not None:
            raise last_err

        out: List[Candle] = []
        for row in data:
            # [0]=open time, [6]=close time
            out.append(Candle(
                open_time_ms=int(row[0]),
                close_time_ms=int(row[6]),
                open=float(row[1]),
                high=float(row[2]),
                low=float(row[3]),
                close=float(row[4]),
                volume=float(row[5]),
            ))
        return out
