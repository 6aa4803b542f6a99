"""
PerpFlow — TTL Configuration
─────────────────────────────
Single source of truth for cache keys and durations.
Every per-timeframe TTL is one full candle period plus a buffer, so an
entry is still readable (stale but present) after its next refresh is due.
"""

import os

# ── Institutional flows ──────────────────────────────────────

FLOWS_KEY     = "institutional:flows"       # consolidated blob
PRIORITY_KEY  = "institutional:priority"    # rank-ordered sorted set

MAX_FLOWS       = int(os.environ.get("MAX_FLOWS", "10"))
FLOWS_TTL_HOURS = int(os.environ.get("FLOWS_TTL_HOURS", "1"))
FLOWS_TTL       = FLOWS_TTL_HOURS * 3600    # both representations share it

# ── Candlestick patterns ─────────────────────────────────────

PATTERN_KEYS = {
    "1h": "candlestick:patterns:1h",
    "4h": "candlestick:patterns:4h",
    "1d": "candlestick:patterns:1d",
}
METADATA_KEY = "candlestick:metadata"

PATTERN_TTL = {
    "1h": 65 * 60,          # 1 hour  + 5 min
    "4h": 4 * 65 * 60,      # 4 hours + 20 min
    "1d": 25 * 60 * 60,     # 1 day   + 1 hour
}

# Metadata lives as long as the longest-lived class
METADATA_TTL = max(PATTERN_TTL.values())

# ── Due window ───────────────────────────────────────────────
# A class is due during minutes [0, DUE_WINDOW_MINUTES] of its boundary hour
DUE_WINDOW_MINUTES = 2
