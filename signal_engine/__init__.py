"""
PerpFlow Signal Engine
───────────────────────
Keeps the top institutional flows and the per-timeframe candlestick
pattern sets fresh in Redis, driven only by stored metadata and the clock.
"""

__version__ = "1.0.0"
