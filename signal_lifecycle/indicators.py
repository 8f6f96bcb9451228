from __future__ import annotations
from typing import List, Optional, Tuple


def ema_next(prev_ema: Optional[float], x: float, length: int) -> float:
    if length <= 1:
        return x
    alpha = 2.0 / (length + 1.0)
    return x if prev_ema is None else (alpha * x + (1.0 - alpha) * prev_ema)


def ema(values: List[float], length: int) -> Optional[float]:
    if length <= 0 or len(values) < length:
        return None
    # seed with the SMA of the first window
    out = sum(values[:length]) / float(length)
    for x in values[length:]:
        out = ema_next(out, x, length)
    return out


def sma(values: List[float], length: int) -> Optional[float]:
    if length <= 0 or len(values) < length:
        return None
    return sum(values[-length:]) / float(length)


def rsi_wilder(closes: List[float], length: int = 14) -> Optional[float]:
    if length <= 0 or len(closes) < length + 1:
        return None
    # Wilder's smoothing
    gains = 0.0
    losses = 0.0
    for i in range(-length, 0):
        ch = closes[i] - closes[i - 1]
        if ch >= 0:
            gains += ch
        else:
            losses -= ch
    avg_gain = gains / length
    avg_loss = losses / length
    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return 100.0 - (100.0 / (1.0 + rs))


def pct_change(new: float, old: float) -> Optional[float]:
    if old == 0:
        return None
    return (new - old) / old * 100.0


def body_ratio(open_: float, high: float, low: float, close: float) -> float:
    """Signed body as a fraction of the bar range. 0 for a flat bar."""
    rng = high - low
    if rng <= 0:
        return 0.0
    return (close - open_) / rng


def bollinger(values: List[float], length: int = 20, mult: float = 2.0) -> Optional[Tuple[float, float, float]]:
    mid = sma(values, length)
    if mid is None:
        return None
    window = values[-length:]
    var = sum((x - mid) ** 2 for x in window) / float(length)
    dev = mult * var ** 0.5
    return mid - dev, mid, mid + dev
