"""
PerpFlow — Refresh Orchestrator
─────────────────────────────────
Decides which timeframes to recompute, asks the producer for exactly
those, and writes the results back. The only place a recompute is
triggered; the screener endpoint only reads.

  IDLE ─▶ target set empty ───────────────────────────▶ DONE (no update needed)
   │
   └──▶ COMPUTING_SUBSET ─▶ producer ok ─▶ write_many ─▶ DONE
                         └▶ producer fails or returns
                            unusable patterns ─────────▶ FAILED (nothing written)

Scheduled runs target due classes that also need an update, so a
second tick inside the same window is a no-op. Forced runs target
exactly what the caller names.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from signal_engine.cache.timeframe_store import TimeframeCacheStore
from signal_engine.errors import ComputeProducerError, InvalidInput
from signal_engine.models.pattern_payload import ALL_TIMEFRAMES, PatternRecord, Timeframe
from signal_engine.orchestrator.producer import BODY_LIMIT, PatternProducer
from signal_engine.orchestrator.refresh_schedule import RefreshScheduler, as_utc

log = logging.getLogger("pf.refresh")


class RefreshState(str, Enum):
    IDLE             = "idle"
    COMPUTING_SUBSET = "computing_subset"
    DONE             = "done"
    FAILED           = "failed"


@dataclass
class RefreshResult:
    state:           RefreshState
    message:         str
    trigger:         str                               # "scheduled" | "forced"
    targeted:        List[str] = field(default_factory=list)
    updated:         Dict[str, int] = field(default_factory=dict)   # class → pattern count
    failed:          List[str] = field(default_factory=list)
    next_update:     Dict[str, int] = field(default_factory=dict)
    total_scanned:   int = 0
    duration_s:      float = 0.0
    error:           Optional[Dict[str, Any]] = None

    @property
    def success(self) -> bool:
        return self.state is RefreshState.DONE

    def to_dict(self) -> dict:
        d = {
            "success":     self.success,
            "state":       self.state.value,
            "message":     self.message,
            "trigger":     self.trigger,
            "targeted":    self.targeted,
            "updated":     self.updated,
            "failed":      self.failed,
            "nextUpdate":  self.next_update,
            "totalScanned": self.total_scanned,
            "duration":    self.duration_s,
        }
        if self.error:
            d["error"] = self.error
        return d




def parse_timeframes(names: Any) -> List[Timeframe]:
    """Validate and de-duplicate, keeping 1h → 4h → 1d order."""
    if not isinstance(names, (list, tuple)):
        raise InvalidInput("timeframes must be a list", details={"got": repr(names)})
    wanted = {Timeframe.parse(n) for n in names}
    return [tf for tf in ALL_TIMEFRAMES if tf in wanted]


class RefreshOrchestrator:
    """
    Holds no per-run state, so one instance can serve concurrent
    requests. Each run's outcome lives only in its RefreshResult.
    """

    def __init__(
        self,
        store: TimeframeCacheStore,
        producer: PatternProducer,
        scheduler: Optional[RefreshScheduler] = None,
    ):
        self.store     = store
        self.producer  = producer
        self.scheduler = scheduler or store.scheduler

    async def _current_next_update(self, now: datetime) -> Dict[str, int]:
        snapshot = await self.store.read_all()
        if snapshot and snapshot.next_update:
            return dict(snapshot.next_update)
        return self.scheduler.next_update_times(now)

    async def run_due(self, now: Optional[datetime] = None, catch_up: bool = False) -> RefreshResult:
        """
        Scheduled path. Targets classes inside their due window that also
        report needs_update, both judged at the same instant `now`.
        catch_up=True drops the window requirement, for ticks that run
        outside minutes 0–2.
        """
        now = self.scheduler.now() if now is None else as_utc(now)
        candidates = ALL_TIMEFRAMES if catch_up else self.scheduler.due_classes(now)
        targets = [tf for tf in candidates if await self.store.needs_update(tf, now)]
        return await self._run(targets, trigger="scheduled", now=now)

    async def run_forced(self, timeframes: Iterable[Any]) -> RefreshResult:
        """Manual path. Always honoured, regardless of windows or freshness."""
        targets = parse_timeframes(timeframes)
        return await self._run(targets, trigger="forced", now=self.scheduler.now())

    async def initialize(self) -> RefreshResult:
        """Populate every class from scratch."""
        return await self.run_forced(ALL_TIMEFRAMES)

    async def _compute(self, targets: List[Timeframe]) -> Tuple[Dict[Timeframe, List[PatternRecord]], int]:
        """Producer call plus output validation; every failure is a ComputeProducerError."""
        try:
            # Targets are already vetted; force keeps the producer from re-checking
            result = await self.producer.compute(targets, force=True)
        except ComputeProducerError:
            raise
        except Exception as e:
            raise ComputeProducerError(f"Producer raised {type(e).__name__}: {e}",
                                       classification="exception") from e

        patterns: Dict[Timeframe, List[PatternRecord]] = {}
        try:
            for tf, items in result.patterns.items():
                tf = Timeframe.parse(tf)
                if not isinstance(items, list):
                    raise InvalidInput(f"{tf.value} patterns is not a list")
                patterns[tf] = [PatternRecord.from_dict(p) for p in items]
            total = int(result.total_scanned or 0)
        except (InvalidInput, AttributeError, TypeError, ValueError) as e:
            raise ComputeProducerError(
                f"Producer returned unusable patterns: {e}",
                classification="malformed_response",
                body=repr(result.patterns)[:BODY_LIMIT],
            ) from e
        return patterns, total

    async def _run(self, targets: List[Timeframe], *, trigger: str, now: datetime) -> RefreshResult:
        t0 = time.monotonic()

        if not targets:
            log.info(f"[{trigger}] No timeframes need updating")
            return RefreshResult(
                state=RefreshState.DONE,
                message="No timeframes need updating",
                trigger=trigger,
                next_update=await self._current_next_update(now),
            )

        names = [tf.value for tf in targets]
        log.info(f"[{trigger}] Computing {names}")

        try:
            patterns, total = await self._compute(targets)
        except ComputeProducerError as e:
            return await self._failed(trigger, names, e, t0, now)

        # Never write a class nobody asked for
        to_write = {tf: patterns[tf] for tf in targets if tf in patterns}
        missing  = [tf.value for tf in targets if tf not in patterns]
        extra    = [tf.value for tf in patterns if tf not in targets]
        if extra:
            log.warning(f"[{trigger}] Ignoring untargeted classes from producer: {extra}")

        updated: Dict[str, int] = {}
        if to_write:
            updated = await self.store.write_many(to_write, total, now)

        duration = round(time.monotonic() - t0, 2)
        if missing:
            log.warning(f"[{trigger}] Producer returned nothing for {missing}")
        log.info(f"[{trigger}] Done — {updated} in {duration}s")

        return RefreshResult(
            state=RefreshState.DONE,
            message="Refresh completed" if not missing else "Refresh completed with missing timeframes",
            trigger=trigger,
            targeted=names,
            updated=updated,
            failed=missing,
            next_update=await self._current_next_update(now),
            total_scanned=total,
            duration_s=duration,
        )

    async def _failed(self, trigger: str, names: List[str], error: ComputeProducerError,
                      t0: float, now: datetime) -> RefreshResult:
        duration = round(time.monotonic() - t0, 2)
        log.error(f"[{trigger}] Producer failed for {names} ({error.classification}): {error.message}")
        return RefreshResult(
            state=RefreshState.FAILED,
            message="Failed to compute candlestick patterns",
            trigger=trigger,
            targeted=names,
            failed=names,
            next_update=await self._current_next_update(now),
            duration_s=duration,
            error=error.as_dict(),
        )
