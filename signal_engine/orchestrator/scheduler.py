"""
PerpFlow — Refresh Ticker
═══════════════════════════════════════════════════════════════════════

Optional in-process trigger for long-lived deployments.
Serverless deployments skip this and point an external cron at
POST /api/candlestick-auto-update instead; both paths end in
RefreshOrchestrator.run_due, so running both is wasteful but safe.

  :01 every hour   run_due()                 inside the 0–2 minute window
  :10 every hour   run_due(catch_up=True)    heals a missed window
"""

import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from signal_engine.orchestrator.refresh import RefreshOrchestrator

log = logging.getLogger("pf.ticker")

GRACE_S = 60   # a tick later than this is dropped; the catch-up tick covers it


class RefreshTicker:

    def __init__(self, orchestrator: RefreshOrchestrator):
        self.orchestrator = orchestrator
        self._scheduler: Optional[AsyncIOScheduler] = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    async def tick(self) -> None:
        try:
            result = await self.orchestrator.run_due()
            log.info(f"[tick] {result.message} {result.updated or ''}")
        except Exception as e:
            log.error(f"[tick] run_due failed: {e}")

    async def catch_up(self) -> None:
        try:
            result = await self.orchestrator.run_due(catch_up=True)
            if result.targeted:
                log.info(f"[catch_up] refreshed {result.targeted}")
        except Exception as e:
            log.error(f"[catch_up] run_due failed: {e}")

    def start(self) -> None:
        if self.running:
            log.warning("Ticker already running — ignoring start call")
            return

        self._scheduler = AsyncIOScheduler(timezone="UTC")
        jobs = [
            (self.tick,     "1",  "refresh_due",      "Refresh due timeframes (minute 1)"),
            (self.catch_up, "10", "refresh_catch_up", "Catch up missed timeframes (minute 10)"),
        ]
        for func, minute, job_id, name in jobs:
            self._scheduler.add_job(
                func,
                CronTrigger(minute=minute, timezone="UTC"),
                id                 = job_id,
                name               = name,
                max_instances      = 1,
                misfire_grace_time = GRACE_S,
                replace_existing   = True,
            )
            log.info(f"  {name}")

        self._scheduler.start()
        log.info(f"Ticker live — {len(jobs)} jobs registered")

    def stop(self) -> None:
        if self.running:
            self._scheduler.shutdown(wait=False)
            log.info("Ticker stopped")
        self._scheduler = None

    def status(self) -> dict:
        if not self.running:
            return {"running": False, "jobs": []}

        jobs = []
        for job in self._scheduler.get_jobs():
            nxt = job.next_run_time
            jobs.append({
                "id":       job.id,
                "name":     job.name,
                "next_run": nxt.isoformat() if nxt else None,
            })
        jobs.sort(key=lambda j: j["next_run"] or "9999")
        return {"running": True, "job_count": len(jobs), "jobs": jobs}
