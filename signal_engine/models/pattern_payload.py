"""
PerpFlow — Candlestick Pattern Payload Model
──────────────────────────────────────────────
Defines the canonical structure of cached pattern results.
This is what /api/candlestick-screener returns and what Redis stores.
"""

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from signal_engine.errors import InvalidInput


class Timeframe(str, Enum):
    SHORT  = "1h"
    MEDIUM = "4h"
    LONG   = "1d"

    @classmethod
    def parse(cls, value: Any) -> "Timeframe":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise InvalidInput(
                f"Unknown timeframe {value!r} — must be one of 1h, 4h, 1d",
                details={"timeframe": value},
            ) from None


ALL_TIMEFRAMES: List[Timeframe] = [Timeframe.SHORT, Timeframe.MEDIUM, Timeframe.LONG]


def _epoch_ms(value: Any, name: str) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise InvalidInput(f"{name} must be epoch milliseconds, got {value!r}")
    return int(value)


@dataclass
class Candle:
    open:      float
    close:     float
    high:      float
    low:       float
    timestamp: int
    volume:    Optional[float] = None

    def to_dict(self) -> dict:
        d = {
            "open": self.open, "close": self.close,
            "high": self.high, "low": self.low,
            "timestamp": self.timestamp,
        }
        if self.volume is not None:
            d["volume"] = self.volume
        return d

    @classmethod
    def from_dict(cls, d: dict) -> "Candle":
        if not isinstance(d, dict):
            raise InvalidInput(f"Candle must be an object, got {type(d).__name__}")
        return cls(
            open=d.get("open", 0.0),
            close=d.get("close", 0.0),
            high=d.get("high", 0.0),
            low=d.get("low", 0.0),
            timestamp=d.get("timestamp", 0),
            volume=d.get("volume"),
        )


@dataclass
class PatternRecord:
    symbol:          str
    type:            str              # "bullish" | "bearish"
    current_candle:  Candle
    previous_candle: Candle
    body_ratio:      float
    detected_at:     int              # epoch ms
    price_change:    Optional[float] = None
    extra:           Dict[str, Any] = field(default_factory=dict)

    @property
    def identity(self) -> tuple:
        return (self.symbol, self.detected_at)

    def to_dict(self) -> dict:
        d = dict(self.extra)
        d.update({
            "symbol":         self.symbol,
            "type":           self.type,
            "currentCandle":  self.current_candle.to_dict(),
            "previousCandle": self.previous_candle.to_dict(),
            "bodyRatio":      self.body_ratio,
            "detectedAt":     self.detected_at,
        })
        if self.price_change is not None:
            d["priceChange"] = self.price_change
        return d

    @classmethod
    def from_dict(cls, d: dict) -> "PatternRecord":
        if not isinstance(d, dict):
            raise InvalidInput(f"Pattern must be an object, got {type(d).__name__}")
        known = {"symbol", "type", "currentCandle", "previousCandle",
                 "bodyRatio", "detectedAt", "priceChange"}
        return cls(
            symbol=d.get("symbol", ""),
            type=d.get("type", ""),
            current_candle=Candle.from_dict(d.get("currentCandle") or {}),
            previous_candle=Candle.from_dict(d.get("previousCandle") or {}),
            body_ratio=d.get("bodyRatio", 0.0),
            detected_at=d.get("detectedAt", 0),
            price_change=d.get("priceChange"),
            extra={k: v for k, v in d.items() if k not in known},
        )


@dataclass
class TimeframeCacheEntry:
    """One per class. Replaced wholesale on every successful refresh."""
    timeframe:     Timeframe
    patterns:      List[PatternRecord] = field(default_factory=list)
    saved_at:      Optional[int] = None      # epoch ms
    next_update:   Optional[int] = None      # epoch ms, next eligible refresh
    total_scanned: int = 0

    def to_dict(self) -> dict:
        return {
            "patterns":     [p.to_dict() for p in self.patterns],
            "savedAt":      self.saved_at,
            "nextUpdate":   self.next_update,
            "totalScanned": self.total_scanned,
        }

    @classmethod
    def from_dict(cls, timeframe: Timeframe, d: dict) -> "TimeframeCacheEntry":
        """Raises InvalidInput when the stored shape is not one we wrote."""
        patterns = d.get("patterns") or []
        if not isinstance(patterns, list):
            raise InvalidInput(f"{timeframe.value} patterns is not a list")
        return cls(
            timeframe=timeframe,
            patterns=[PatternRecord.from_dict(p) for p in patterns],
            saved_at=_epoch_ms(d.get("savedAt"), "savedAt"),
            next_update=_epoch_ms(d.get("nextUpdate"), "nextUpdate"),
            total_scanned=d.get("totalScanned", 0) or 0,
        )


@dataclass
class PatternSnapshot:
    """Everything read_all() returns: per-class sequences plus shared metadata."""
    patterns:      Dict[Timeframe, List[PatternRecord]]
    timestamp:     Optional[str]
    total_scanned: int
    next_update:   Dict[str, int]

    def counts(self) -> Dict[str, int]:
        return {tf.value: len(self.patterns.get(tf, [])) for tf in ALL_TIMEFRAMES}

    def to_dict(self) -> dict:
        d: Dict[str, Any] = {
            tf.value: [p.to_dict() for p in self.patterns.get(tf, [])]
            for tf in ALL_TIMEFRAMES
        }
        d["timestamp"]    = self.timestamp
        d["totalScanned"] = self.total_scanned
        d["nextUpdate"]   = self.next_update
        return d


def _fmt_age(minutes: float) -> Optional[str]:
    if math.isinf(minutes):
        return None
    minutes = int(minutes)
    if minutes < 60:
        return f"{minutes}m"
    if minutes < 1440:
        return f"{minutes // 60}h"
    return f"{minutes // 1440}d"
