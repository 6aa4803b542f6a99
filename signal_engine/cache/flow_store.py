"""
PerpFlow — Priority Flow Store
───────────────────────────────
Bounded top-N set of institutional flows, persisted twice:

  institutional:flows     consolidated JSON blob  {flows, lastUpdated, totalFlows}
  institutional:priority  sorted set, member = flow JSON, score = priorityScore

Both are written in one MULTI/EXEC with the same TTL.

Read fallback order:
  1. consolidated blob
  2. sorted set (top N by score, re-ranked by the tie-break chain)
  3. empty list — "no data yet", never an error
"""

import json
import logging
from dataclasses import replace
from typing import Any, Dict, List, Optional

from signal_engine.cache.redis_client import StoreClient
from signal_engine.cache.ttl_config import FLOWS_KEY, FLOWS_TTL, MAX_FLOWS, PRIORITY_KEY
from signal_engine.errors import InvalidInput, MalformedCachedPayload, StorageError
from signal_engine.models.flow_record import FlowRecord, rank_flows
from signal_engine.orchestrator.refresh_schedule import Clock, to_epoch_ms, utc_now

log = logging.getLogger("pf.flows")


def _parse_flows(items: List[Any], source: str) -> List[FlowRecord]:
    """Skip records that no longer parse instead of failing the whole read."""
    flows = []
    for item in items:
        try:
            if isinstance(item, str):
                item = json.loads(item)
            flows.append(FlowRecord.from_dict(item))
        except (ValueError, InvalidInput) as e:
            log.warning(f"Dropping unreadable flow from {source}: {e}")
    return flows


class PriorityFlowStore:

    def __init__(
        self,
        client: StoreClient,
        *,
        max_flows: int = MAX_FLOWS,
        ttl_seconds: int = FLOWS_TTL,
        clock: Clock = utc_now,
    ):
        self.client      = client
        self.max_flows   = max_flows
        self.ttl_seconds = ttl_seconds
        self.clock       = clock

    # ── Reads ────────────────────────────────────────────────

    async def _read_blob(self) -> Optional[List[FlowRecord]]:
        data = await self.client.get_json(FLOWS_KEY)
        if data is None:
            return None
        if not isinstance(data, dict) or not isinstance(data.get("flows"), list):
            raise MalformedCachedPayload("Consolidated flows blob has no flows list", key=FLOWS_KEY)
        return _parse_flows(data["flows"], FLOWS_KEY)

    async def _read_index(self) -> List[FlowRecord]:
        members = await self.client.zrange_desc(PRIORITY_KEY, self.max_flows)
        return rank_flows(_parse_flows(members, PRIORITY_KEY))

    async def get_all(self) -> List[FlowRecord]:
        """Current flows in stored order. Never raises."""
        try:
            flows = await self._read_blob()
            if flows is not None:
                log.debug(f"Retrieved {len(flows)} flows from main key")
                return flows
        except StorageError as e:
            log.warning(f"Flows blob unreadable ({e}) — trying rank index")

        try:
            flows = await self._read_index()
            if flows:
                log.info(f"Retrieved {len(flows)} flows from rank index fallback")
            return flows
        except StorageError as e:
            log.warning(f"Flows rank index unreadable ({e}) — returning empty")
            return []

    async def _load_base(self) -> List[FlowRecord]:
        """
        Pre-merge base for an upsert. Malformed data reads as a miss;
        an unreachable backend propagates, since the write would fail too.
        """
        try:
            flows = await self._read_blob()
            if flows is not None:
                return flows
        except MalformedCachedPayload as e:
            log.warning(f"Ignoring malformed flows blob during upsert: {e}")
        try:
            return await self._read_index()
        except MalformedCachedPayload:
            return []

    @staticmethod
    def ranked(records: List[FlowRecord]) -> List[FlowRecord]:
        return rank_flows(records)

    async def count(self) -> int:
        try:
            return await self.client.zcard(PRIORITY_KEY)
        except StorageError as e:
            log.warning(f"Flows count failed: {e}")
            return 0

    # ── Writes ───────────────────────────────────────────────

    def _validate_batch(self, records: Any) -> List[FlowRecord]:
        if not isinstance(records, list):
            raise InvalidInput("Flows batch must be a list", details={"got": type(records).__name__})

        # Records built in code go through the same validation as wire dicts
        batch = [FlowRecord.from_dict(r.to_dict() if isinstance(r, FlowRecord) else r) for r in records]

        seen = set()
        for flow in batch:
            if flow.symbol in seen:
                raise InvalidInput(
                    f"Duplicate symbol {flow.symbol} in batch",
                    details={"symbol": flow.symbol},
                )
            seen.add(flow.symbol)
        return batch

    async def _persist(self, flows: List[FlowRecord], now_ms: int) -> None:
        dicts = [f.to_dict() for f in flows]
        blob  = {"flows": dicts, "lastUpdated": now_ms, "totalFlows": len(dicts)}

        pipe = self.client.pipeline()
        pipe.setex(FLOWS_KEY, self.ttl_seconds, json.dumps(blob))
        pipe.delete(PRIORITY_KEY)
        if dicts:
            pipe.zadd(PRIORITY_KEY, {
                json.dumps(d): float(f.priority_score or 0) for f, d in zip(flows, dicts)
            })
            pipe.zremrangebyrank(PRIORITY_KEY, 0, -(self.max_flows + 1))
            pipe.expire(PRIORITY_KEY, self.ttl_seconds)
        await self.client.execute(pipe, "flows_upsert")

    async def upsert_batch(self, records: List[Any]) -> Dict[str, int]:
        """
        Merge a scored batch into the top-N set.

        Same symbol → replaced wholesale and re-stamped.
        New symbol  → inserted.
        Then rank, keep the top N, drop the rest for good.

        Raises InvalidInput for a bad batch and StorageError if either
        representation fails to write; nothing should be assumed applied then.
        """
        batch  = self._validate_batch(records)
        now_ms = to_epoch_ms(self.clock())

        merged: Dict[str, FlowRecord] = {f.symbol: f for f in await self._load_base()}
        added = updated = 0
        for flow in batch:
            flow = replace(flow, timestamp=now_ms)
            if flow.symbol in merged:
                updated += 1
            else:
                added += 1
            merged[flow.symbol] = flow

        ranked  = rank_flows(list(merged.values()))
        kept    = ranked[:self.max_flows]
        removed = len(ranked) - len(kept)
        if removed:
            log.info(f"Evicting {removed} lowest-ranked flows: "
                     f"{[f.symbol for f in ranked[self.max_flows:]]}")

        try:
            await self._persist(kept, now_ms)
        except StorageError as e:
            log.error(f"Flows upsert failed: {e}")
            raise

        log.info(f"Flows updated: {len(kept)} stored ({added} new, {updated} updated, {removed} removed)")
        return {"added": added, "updated": updated, "removed": removed, "total": len(kept)}

    async def clear(self) -> None:
        try:
            await self.client.delete(FLOWS_KEY, PRIORITY_KEY)
        except StorageError as e:
            log.error(f"Flows clear failed: {e}")
            raise
        log.info("Cleared all flows")

    async def health_check(self) -> bool:
        return await self.client.ping()
