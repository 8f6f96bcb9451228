from __future__ import annotations

import logging
import time
from typing import Optional

import aiohttp

from ..pairs import gateway_symbol

log = logging.getLogger("broker")


class BrokerPriceGateway:
    """Time-indexed point prices from the broker's symbol-price API.

    ``price_at`` returns None when the instant is not available yet (the API
    answers with a bare string such as ``"OK"``) or is unknown (400/404).
    Anything else that goes wrong raises.
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str = "",
        partner: str = "",
        slot: str = "default",
        timeout_s: int = 10,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.partner = partner
        self.slot = slot
        self.timeout_s = timeout_s
        self._session: Optional[aiohttp.ClientSession] = None

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout_s, connect=min(5, self.timeout_s)),
                connector=aiohttp.TCPConnector(limit=10, ttl_dns_cache=300),
            )
        return self._session

    def _headers(self) -> dict:
        return {
            "api-key": self.api_key,
            "x-partner": self.partner,
            "x-timestamp": str(int(time.time() * 1000)),
            "Content-Type": "application/json",
        }

    async def _last(self, symbol: str, limit_time_ms: int) -> Optional[dict]:
        sess = await self._get_session()
        params = {"pair": symbol, "slot": self.slot, "limitTime": str(int(limit_time_ms))}
        async with sess.get(self.base_url + "/symbol-price/last", params=params, headers=self._headers()) as resp:
            if resp.status in (400, 404):
                log.warning("broker_price_not_found symbol=%s ts=%s status=%s", symbol, limit_time_ms, resp.status)
                return None
            if resp.status != 200:
                txt = await resp.text()
                raise RuntimeError(f"Broker price request failed: {resp.status} {txt[:300]}")
            data = await resp.json(content_type=None)

        if isinstance(data, str):
            log.debug("broker_price_not_ready symbol=%s ts=%s", symbol, limit_time_ms)
            return None
        if not isinstance(data, dict) or "closePrice" not in data:
            log.warning("broker_price_bad_payload symbol=%s payload=%s", symbol, str(data)[:200])
            return None
        return data

    async def price_at(self, pair: str, instant_ms: int) -> Optional[float]:
        data = await self._last(gateway_symbol(pair), instant_ms)
        if data is None:
            return None
        return float(data["closePrice"])
