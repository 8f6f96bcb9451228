from __future__ import annotations
from dataclasses import dataclass, field
from typing import List, Optional


BUY = "buy"
SELL = "sell"
WIN = "win"
LOSS = "loss"

PENDING = "pending"
EXECUTED = "executed"
EXPIRED = "expired"


@dataclass(frozen=True)
class Candle:
    open_time_ms: int
    close_time_ms: int
    open: float
    high: float
    low: float
    close: float
    volume: float


@dataclass(frozen=True)
class Analysis:
    confidence: float
    direction: str  # up | down | neutral
    factors: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class Signal:
    id: str
    pair: str
    direction: str  # buy | sell
    timeframe: int  # minutes
    confidence: float
    entry_time_ms: int
    entry_price: float
    result: Optional[str] = None  # win | loss
    profit_loss: Optional[float] = None
    factors: List[str] = field(default_factory=list)
    strategy: str = ""
    source: str = "analysis"  # analysis | admin
    admin_signal_id: Optional[str] = None
    created_at_ms: int = 0

    @property
    def expiry_ms(self) -> int:
        return self.entry_time_ms + self.timeframe * 60_000

    @property
    def is_resolved(self) -> bool:
        return self.result is not None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "pair": self.pair,
            "direction": self.direction,
            "timeframe": self.timeframe,
            "confidence": self.confidence,
            "entry_time_ms": self.entry_time_ms,
            "entry_price": self.entry_price,
            "result": self.result,
            "profit_loss": self.profit_loss,
            "factors": list(self.factors),
            "strategy": self.strategy,
            "source": self.source,
            "admin_signal_id": self.admin_signal_id,
            "created_at_ms": self.created_at_ms,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "Signal":
        pl = d.get("profit_loss")
        return cls(
            id=str(d["id"]),
            pair=str(d.get("pair") or ""),
            direction=str(d.get("direction") or BUY),
            timeframe=int(d.get("timeframe") or 1),
            confidence=float(d.get("confidence") or 0.0),
            entry_time_ms=int(d["entry_time_ms"]),
            entry_price=float(d.get("entry_price") or 0.0),
            result=d.get("result") or None,
            profit_loss=float(pl) if pl is not None else None,
            factors=list(d.get("factors") or []),
            strategy=str(d.get("strategy") or ""),
            source=str(d.get("source") or "analysis"),
            admin_signal_id=d.get("admin_signal_id"),
            created_at_ms=int(d.get("created_at_ms") or 0),
        )


@dataclass(frozen=True)
class AdminSignal:
    id: str
    pair: str
    direction: str
    scheduled_time_ms: int
    timeframe: int
    status: str = PENDING
    created_at_ms: int = 0


@dataclass(frozen=True)
class AdminSignalEvent:
    op: str  # INSERT | UPDATE
    new: AdminSignal
    old: Optional[AdminSignal] = None
