"""
PerpFlow — Timeframe Pattern Cache
────────────────────────────────────
Per-class candlestick pattern sets, each replaced wholesale on refresh.

  candlestick:patterns:{1h,4h,1d}   {patterns, savedAt, nextUpdate, totalScanned}
  candlestick:metadata              {timestamp, totalScanned, nextUpdate{}, savedAt}

Entry TTL = one candle period + buffer, so an entry outlives its
nextUpdate and a late reader gets stale-but-present instead of nothing.
The metadata key doubles as the cheap "is anything cached" probe.
"""

import json
import logging
import math
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

from signal_engine.cache.redis_client import StoreClient
from signal_engine.cache.ttl_config import METADATA_KEY, METADATA_TTL, PATTERN_KEYS, PATTERN_TTL
from signal_engine.errors import InvalidInput, MalformedCachedPayload, StorageError
from signal_engine.models.pattern_payload import (
    ALL_TIMEFRAMES, PatternRecord, PatternSnapshot, Timeframe, TimeframeCacheEntry, _fmt_age,
)
from signal_engine.orchestrator.refresh_schedule import RefreshScheduler, to_epoch_ms

log = logging.getLogger("pf.timeframes")


def _coerce_patterns(patterns: Sequence) -> List[PatternRecord]:
    return [p if isinstance(p, PatternRecord) else PatternRecord.from_dict(p) for p in patterns]


class TimeframeCacheStore:

    def __init__(self, client: StoreClient, scheduler: Optional[RefreshScheduler] = None):
        self.client    = client
        self.scheduler = scheduler or RefreshScheduler()

    # ── Reads ────────────────────────────────────────────────

    async def _read_entry(self, tf: Timeframe) -> Optional[TimeframeCacheEntry]:
        key  = PATTERN_KEYS[tf.value]
        data = await self.client.get_json(key)
        if data is None:
            return None
        if not isinstance(data, dict):
            raise MalformedCachedPayload(f"{tf.value} entry is not an object", key=key)
        try:
            return TimeframeCacheEntry.from_dict(tf, data)
        except (AttributeError, TypeError, ValueError, InvalidInput) as e:
            raise MalformedCachedPayload(f"{tf.value} entry unreadable: {e}", key=key) from e

    async def _read_metadata(self) -> Optional[dict]:
        data = await self.client.get_json(METADATA_KEY)
        if data is not None and not isinstance(data, dict):
            raise MalformedCachedPayload("Metadata is not an object", key=METADATA_KEY)
        if data is not None and not isinstance(data.get("nextUpdate") or {}, dict):
            raise MalformedCachedPayload("Metadata nextUpdate is not a map", key=METADATA_KEY)
        return data

    async def get_entry(self, timeframe) -> Optional[TimeframeCacheEntry]:
        tf = Timeframe.parse(timeframe)
        try:
            return await self._read_entry(tf)
        except StorageError as e:
            log.warning(f"{tf.value}: entry read failed ({e})")
            return None

    async def read_all(self) -> Optional[PatternSnapshot]:
        """
        None when metadata is absent (store uninitialised) or unreadable.
        A missing class entry reads as an empty sequence.
        """
        try:
            metadata = await self._read_metadata()
        except StorageError as e:
            log.warning(f"Pattern metadata read failed: {e}")
            return None
        if metadata is None:
            log.info("No candlestick patterns cached yet")
            return None

        patterns: Dict[Timeframe, List[PatternRecord]] = {}
        for tf in ALL_TIMEFRAMES:
            entry = await self.get_entry(tf)
            patterns[tf] = entry.patterns if entry else []

        next_update = metadata.get("nextUpdate") or self.scheduler.next_update_times()
        snapshot = PatternSnapshot(
            patterns=patterns,
            timestamp=metadata.get("timestamp"),
            total_scanned=metadata.get("totalScanned", 0) or 0,
            next_update=next_update,
        )
        log.debug(f"Retrieved cached patterns {snapshot.counts()}")
        return snapshot

    async def needs_update(self, timeframe, now: Optional[datetime] = None) -> bool:
        """
        True when there is no entry, the entry has no nextUpdate, it can't
        be read, or the clock has reached nextUpdate. Missing a due window
        just means the next check reports True.
        """
        tf = Timeframe.parse(timeframe)
        try:
            entry = await self._read_entry(tf)
        except StorageError as e:
            log.warning(f"{tf.value}: needs_update check failed ({e}) — assuming stale")
            return True

        if entry is None or not entry.next_update:
            return True
        now = now or self.scheduler.now()
        return to_epoch_ms(now) >= entry.next_update

    async def data_age(self, timeframe) -> float:
        """Whole minutes since savedAt; math.inf when nothing is cached."""
        entry = await self.get_entry(timeframe)
        if entry is None or not entry.saved_at:
            return math.inf
        return round((to_epoch_ms(self.scheduler.now()) - entry.saved_at) / 60000)

    async def data_ages(self) -> Dict[str, float]:
        return {tf.value: await self.data_age(tf) for tf in ALL_TIMEFRAMES}

    async def status(self) -> dict:
        snapshot = await self.read_all()
        ages     = await self.data_ages()
        counts   = snapshot.counts() if snapshot else None
        total    = sum(counts.values()) if counts else 0
        return {
            "cached":        snapshot is not None,
            "patterns":      {**counts, "total": total} if counts else None,
            "dataAge":       {k: (None if math.isinf(v) else v) for k, v in ages.items()},
            "dataAgeLabel":  {k: _fmt_age(v) for k, v in ages.items()},
            "nextUpdate":    snapshot.next_update if snapshot else self.scheduler.next_update_times(),
            "lastUpdate":    snapshot.timestamp if snapshot else None,
            "totalScanned":  snapshot.total_scanned if snapshot else None,
            "isInitialized": bool(snapshot) and total > 0,
        }

    # ── Writes ───────────────────────────────────────────────

    async def write_many(
        self,
        results: Dict[Timeframe, Sequence],
        scanned_total: int,
        now: Optional[datetime] = None,
    ) -> Dict[str, int]:
        """
        Replace several class entries and the shared metadata in one
        transaction. Returns the pattern count written per class.
        Raises StorageError; on failure no entry was replaced.
        """
        now    = now or self.scheduler.now()
        now_ms = to_epoch_ms(now)

        try:
            metadata = await self._read_metadata() or {}
        except MalformedCachedPayload as e:
            log.warning(f"Replacing malformed metadata: {e}")
            metadata = {}

        next_map = dict(metadata.get("nextUpdate") or {})
        pipe     = self.client.pipeline()
        counts: Dict[str, int] = {}

        for timeframe, patterns in results.items():
            tf    = Timeframe.parse(timeframe)
            entry = TimeframeCacheEntry(
                timeframe=tf,
                patterns=_coerce_patterns(patterns),
                saved_at=now_ms,
                next_update=to_epoch_ms(self.scheduler.next_boundary(tf, now)),
                total_scanned=scanned_total,
            )
            pipe.setex(PATTERN_KEYS[tf.value], PATTERN_TTL[tf.value], json.dumps(entry.to_dict()))
            next_map[tf.value] = entry.next_update
            counts[tf.value]   = len(entry.patterns)

        pipe.setex(METADATA_KEY, METADATA_TTL, json.dumps({
            "timestamp":    now.astimezone(timezone.utc).isoformat(),
            "totalScanned": scanned_total,
            "nextUpdate":   next_map,
            "savedAt":      now_ms,
        }))

        try:
            await self.client.execute(pipe, "patterns_write")
        except StorageError as e:
            log.error(f"Pattern write failed for {sorted(counts)}: {e}")
            raise

        log.info(f"Candlestick patterns saved — {counts}")
        return counts

    async def write(self, timeframe, patterns: Sequence, scanned_total: int) -> int:
        counts = await self.write_many({Timeframe.parse(timeframe): patterns}, scanned_total)
        return counts[Timeframe.parse(timeframe).value]

    async def clear(self) -> None:
        keys = [PATTERN_KEYS[tf.value] for tf in ALL_TIMEFRAMES] + [METADATA_KEY]
        try:
            await self.client.delete(*keys)
        except StorageError as e:
            log.error(f"Candlestick cache clear failed: {e}")
            raise
        log.info("Candlestick cache cleared")

    async def health_check(self) -> bool:
        return await self.client.ping()
