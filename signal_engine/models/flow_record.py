"""
PerpFlow — Flow Record Model
─────────────────────────────
One institutional open-interest flow, keyed by symbol.
Stored in Redis in the producer's camelCase shape so the blob is
readable by anything that already speaks that format.
"""

import math
from dataclasses import dataclass, field
from numbers import Real
from typing import Any, Dict, List, Optional, Tuple

from signal_engine.errors import InvalidInput

# Descending rank order. Missing values count as 0.
TIE_BREAK_CHAIN: Tuple[str, ...] = (
    "priority_score",
    "manipulation_confidence",
    "abnormality_score",
    "open_interest_value",
)

# snake_case attribute → camelCase wire key
_WIRE_KEYS = {
    "symbol":                  "symbol",
    "open_interest":           "openInterest",
    "open_interest_value":     "openInterestValue",
    "oi_change_24h":           "oiChange24h",
    "oi_change_percent":       "oiChangePercent",
    "price":                   "price",
    "price_change_24h":        "priceChange24h",
    "volume_24h":              "volume24h",
    "funding_rate":            "fundingRate",
    "timestamp":               "timestamp",
    "historical_oi":           "historicalOI",
    "oi_velocity":             "oiVelocity",
    "oi_acceleration":         "oiAcceleration",
    "abnormality_score":       "abnormalityScore",
    "whale_rating":            "whaleRating",
    "priority_score":          "priorityScore",
    "volume_category":         "volumeCategory",
    "manipulation_confidence": "manipulationConfidence",
    "suspicion":               "suspicion",
    "long_short_ratio":        "longShortRatio",
}
_ATTR_FOR_WIRE = {v: k for k, v in _WIRE_KEYS.items()}

_SCORE_FIELDS = {
    "priority_score", "manipulation_confidence",
    "abnormality_score", "open_interest_value",
}


def _is_number(v: Any) -> bool:
    return isinstance(v, Real) and not isinstance(v, bool) and math.isfinite(v)


@dataclass
class FlowRecord:
    symbol:              str
    open_interest:       float = 0.0
    open_interest_value: float = 0.0
    oi_change_24h:       float = 0.0
    oi_change_percent:   float = 0.0
    price:               float = 0.0
    price_change_24h:    float = 0.0
    volume_24h:          float = 0.0
    funding_rate:        float = 0.0
    timestamp:           int = 0            # epoch ms, stamped on upsert

    # Producer-derived, all optional
    historical_oi:           Optional[List[float]] = None
    oi_velocity:             Optional[float] = None
    oi_acceleration:         Optional[float] = None
    abnormality_score:       Optional[float] = None
    whale_rating:            Optional[str] = None     # mega | large | medium | small
    priority_score:          Optional[float] = None
    volume_category:         Optional[str] = None     # low | medium | high
    manipulation_confidence: Optional[float] = None
    suspicion:               Optional[Dict[str, Any]] = None
    long_short_ratio:        Optional[Dict[str, Any]] = None

    # Unknown producer keys, carried through untouched
    extra: Dict[str, Any] = field(default_factory=dict)

    def rank_key(self) -> Tuple[float, ...]:
        """Sort key for descending rank (use with reverse=True)."""
        return tuple(float(getattr(self, f) or 0) for f in TIE_BREAK_CHAIN)

    def to_dict(self) -> dict:
        d = dict(self.extra)
        for attr, wire in _WIRE_KEYS.items():
            val = getattr(self, attr)
            if val is None:
                continue
            d[wire] = val
        return d

    @classmethod
    def from_dict(cls, d: dict) -> "FlowRecord":
        if not isinstance(d, dict):
            raise InvalidInput(f"Flow record must be an object, got {type(d).__name__}")

        symbol = d.get("symbol")
        if not isinstance(symbol, str) or not symbol.strip():
            raise InvalidInput("Flow record is missing a symbol")

        kwargs: Dict[str, Any] = {}
        extra:  Dict[str, Any] = {}
        for key, val in d.items():
            attr = _ATTR_FOR_WIRE.get(key)
            if attr is None:
                extra[key] = val
                continue
            if attr in _SCORE_FIELDS and val is not None and not _is_number(val):
                raise InvalidInput(
                    f"{symbol}: {key} must be a finite number",
                    details={"symbol": symbol, "field": key},
                )
            kwargs[attr] = val

        kwargs["symbol"] = symbol.strip()
        for required in ("open_interest", "open_interest_value", "oi_change_24h",
                         "oi_change_percent", "price", "price_change_24h",
                         "volume_24h", "funding_rate"):
            if kwargs.get(required) is None:
                kwargs[required] = 0.0
        if kwargs.get("timestamp") is None:
            kwargs["timestamp"] = 0
        return cls(extra=extra, **kwargs)


def rank_flows(flows: List[FlowRecord]) -> List[FlowRecord]:
    """
    Order flows by the tie-break chain, highest first.
    Full ties keep their input order (sorted() is stable).
    """
    return sorted(flows, key=FlowRecord.rank_key, reverse=True)
