from __future__ import annotations

import logging
from typing import Callable, Dict, List

from .indicators import body_ratio, bollinger, ema, pct_change, rsi_wilder
from .models import Analysis, Candle

log = logging.getLogger("analysis")

MIN_CANDLES = 30
NEUTRAL = Analysis(confidence=50.0, direction="neutral", factors=[])


def _trend_momentum(candles: List[Candle]) -> Analysis:
    """Vote of four independent reads. Three agreeing factors make a call."""
    closes = [c.close for c in candles]
    last = candles[-1]

    up: List[str] = []
    down: List[str] = []

    ema9 = ema(closes, 9)
    ema21 = ema(closes, 21)
    if ema9 is not None and ema21 is not None:
        if ema9 > ema21:
            up.append("ema9_above_ema21")
        elif ema9 < ema21:
            down.append("ema9_below_ema21")

    rsi = rsi_wilder(closes, 14)
    if rsi is not None:
        if 55.0 <= rsi <= 75.0:
            up.append(f"rsi_bullish({rsi:.1f})")
        elif 25.0 <= rsi <= 45.0:
            down.append(f"rsi_bearish({rsi:.1f})")

    body = body_ratio(last.open, last.high, last.low, last.close)
    if body >= 0.5:
        up.append("strong_bull_body")
    elif body <= -0.5:
        down.append("strong_bear_body")

    chg = pct_change(closes[-1], closes[-4])
    if chg is not None:
        if chg > 0.05:
            up.append(f"momentum_3bar({chg:+.2f}%)")
        elif chg < -0.05:
            down.append(f"momentum_3bar({chg:+.2f}%)")

    if len(up) >= 3 and len(up) > len(down):
        return Analysis(confidence=min(99.0, 55.0 + 10.0 * len(up)), direction="up", factors=up)
    if len(down) >= 3 and len(down) > len(up):
        return Analysis(confidence=min(99.0, 55.0 + 10.0 * len(down)), direction="down", factors=down)
    return NEUTRAL


def _rsi_reversal(candles: List[Candle]) -> Analysis:
    closes = [c.close for c in candles]
    rsi = rsi_wilder(closes, 14)
    if rsi is None:
        return NEUTRAL
    bands = bollinger(closes, 20, 2.0)
    turning_up = closes[-1] > closes[-2]

    if rsi < 30.0 and turning_up:
        factors = [f"rsi_oversold({rsi:.1f})", "turning_up"]
        if bands is not None and min(c.low for c in candles[-3:]) <= bands[0]:
            factors.append("bollinger_lower_touch")
        return Analysis(confidence=min(99.0, 70.0 + 5.0 * len(factors)), direction="up", factors=factors)

    if rsi > 70.0 and not turning_up and closes[-1] < closes[-2]:
        factors = [f"rsi_overbought({rsi:.1f})", "turning_down"]
        if bands is not None and max(c.high for c in candles[-3:]) >= bands[2]:
            factors.append("bollinger_upper_touch")
        return Analysis(confidence=min(99.0, 70.0 + 5.0 * len(factors)), direction="down", factors=factors)

    return NEUTRAL


STRATEGIES: Dict[str, Callable[[List[Candle]], Analysis]] = {
    "trend_momentum": _trend_momentum,
    "rsi_reversal": _rsi_reversal,
}


def analyze(candles: List[Candle], strategy: str) -> Analysis:
    fn = STRATEGIES.get(strategy)
    if fn is None:
        raise ValueError(f"Unknown strategy: {strategy}")
    if len(candles) < MIN_CANDLES:
        log.debug("analysis_skipped reason=insufficient_candles n=%d", len(candles))
        return NEUTRAL
    for c in candles[-MIN_CANDLES:]:
        if c.close <= 0:
            raise ValueError(f"Invalid close price at {c.open_time_ms}: {c.close}")
    return fn(candles)
