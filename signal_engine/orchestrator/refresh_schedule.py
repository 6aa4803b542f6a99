"""
PerpFlow — Candle-Close Refresh Schedule
═══════════════════════════════════════════════════════════════════════

Every timeframe is recomputed once per closed candle, never more.
No process keeps time for us: each invocation asks the clock and
derives "what is due" and "when is the next boundary" from scratch.

─────────────────────────────────────────────────────────────────────
BOUNDARIES (UTC)
─────────────────────────────────────────────────────────────────────
  1h   minute 0 of every hour
  4h   minute 0 of hours 00 · 04 · 08 · 12 · 16 · 20
  1d   minute 0 of hour 00

A class is *due* during minutes 0–2 of its boundary hour, which gives
an external cron a little slack. A boundary is never "next" at the
instant it begins: at exactly 12:00:00 the next 4h boundary is 16:00.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from signal_engine.cache.ttl_config import DUE_WINDOW_MINUTES
from signal_engine.models.pattern_payload import ALL_TIMEFRAMES, Timeframe

log = logging.getLogger("pf.schedule")

Clock = Callable[[], datetime]

SCHEDULE_DESCRIPTIONS = {
    "1h": "Every hour at minute 0-2",
    "4h": "Every 4 hours (0, 4, 8, 12, 16, 20 UTC) at minute 0-2",
    "1d": "Daily at 00:00-00:02 UTC",
}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_epoch_ms(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


def as_utc(now: datetime) -> datetime:
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


class RefreshScheduler:
    """Stateless apart from the injected clock."""

    def __init__(self, clock: Clock = utc_now):
        self.clock = clock

    def now(self) -> datetime:
        return as_utc(self.clock())

    def next_boundary(self, timeframe: Timeframe, now: Optional[datetime] = None) -> datetime:
        now  = as_utc(now) if now is not None else self.now()
        hour = now.replace(minute=0, second=0, microsecond=0)
        tf   = Timeframe.parse(timeframe)

        if tf is Timeframe.SHORT:
            return hour + timedelta(hours=1)
        if tf is Timeframe.MEDIUM:
            block_start = hour.replace(hour=hour.hour - hour.hour % 4)
            return block_start + timedelta(hours=4)
        return hour.replace(hour=0) + timedelta(days=1)

    def next_update_times(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Next boundary per class, epoch ms — the shape stored in metadata."""
        now = as_utc(now) if now is not None else self.now()
        return {tf.value: to_epoch_ms(self.next_boundary(tf, now)) for tf in ALL_TIMEFRAMES}

    def due_classes(self, now: Optional[datetime] = None) -> List[Timeframe]:
        now = as_utc(now) if now is not None else self.now()
        if now.minute > DUE_WINDOW_MINUTES:
            return []

        due = [Timeframe.SHORT]
        if now.hour % 4 == 0:
            due.append(Timeframe.MEDIUM)
        if now.hour == 0:
            due.append(Timeframe.LONG)
        log.debug(f"Due at {now:%H:%M} UTC: {[tf.value for tf in due]}")
        return due

    def schedule_status(self, now: Optional[datetime] = None) -> dict:
        now = as_utc(now) if now is not None else self.now()
        return {
            "currentTime":           now.isoformat(),
            "currentUTCHour":        now.hour,
            "currentUTCMinute":      now.minute,
            "timeframesToUpdateNow": [tf.value for tf in self.due_classes(now)],
            "nextUpdateTimes":       self.next_update_times(now),
            "updateSchedule":        dict(SCHEDULE_DESCRIPTIONS),
        }
