"""
PerpFlow — Candlestick Screener Endpoints
───────────────────────────────────────────
/api/candlestick-screener   read-only, never triggers a recompute
/api/candlestick-status     cache summary
/api/candlestick-*          refresh triggers, all routed through the orchestrator

A cold cache returns a pending body rather than an error; the next
scheduled or manual refresh fills it.
"""

import logging
import math
from typing import Any

from signal_engine.cache.timeframe_store import TimeframeCacheStore
from signal_engine.errors import InvalidInput
from signal_engine.models.pattern_payload import ALL_TIMEFRAMES
from signal_engine.orchestrator.refresh import RefreshOrchestrator, RefreshResult

log = logging.getLogger("pf.api.candlestick")


async def get_screener_response(store: TimeframeCacheStore) -> dict:
    snapshot = await store.read_all()
    if snapshot is None:
        return _pending_response(store)

    ages = await store.data_ages()
    data = snapshot.to_dict()
    counts = snapshot.counts()
    log.debug(f"Screener served from cache {counts}")
    return {
        "success":      True,
        "data":         data,
        "counts":       counts,
        "cached":       True,
        "nextUpdate":   snapshot.next_update,
        "dataAge":      {k: (None if math.isinf(v) else v) for k, v in ages.items()},
        "_served_from": "cache",
    }


def _pending_response(store: TimeframeCacheStore) -> dict:
    empty = {tf.value: [] for tf in ALL_TIMEFRAMES}
    return {
        "success":      True,
        "data":         {**empty, "timestamp": None, "totalScanned": 0,
                         "nextUpdate": store.scheduler.next_update_times()},
        "counts":       {tf.value: 0 for tf in ALL_TIMEFRAMES},
        "cached":       False,
        "nextUpdate":   store.scheduler.next_update_times(),
        "_served_from": "pending",
        "_message":     "No patterns cached yet. Run /api/candlestick-init or wait for the next candle close.",
    }


async def get_status_response(store: TimeframeCacheStore) -> dict:
    status = await store.status()
    status["redisHealthy"] = await store.health_check()
    status["schedule"]     = store.scheduler.schedule_status()
    return {"success": True, **status}


# ── Triggers ─────────────────────────────────────────────────

async def run_auto_update(orchestrator: RefreshOrchestrator) -> RefreshResult:
    return await orchestrator.run_due()


def get_schedule_response(orchestrator: RefreshOrchestrator) -> dict:
    return {"success": True, **orchestrator.scheduler.schedule_status()}


async def run_manual_refresh(orchestrator: RefreshOrchestrator, body: Any) -> RefreshResult:
    """Body: {"timeframes": ["1h", "4h"]}."""
    timeframes = body.get("timeframes") if isinstance(body, dict) else None
    if not timeframes:
        raise InvalidInput("Body must include a non-empty \"timeframes\" list")
    return await orchestrator.run_forced(timeframes)


async def run_initialize(orchestrator: RefreshOrchestrator) -> RefreshResult:
    return await orchestrator.initialize()


async def clear_cache(store: TimeframeCacheStore) -> dict:
    await store.clear()
    return {"success": True, "message": "Candlestick cache cleared"}
