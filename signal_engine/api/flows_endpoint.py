"""
PerpFlow — Institutional Flows Endpoint
─────────────────────────────────────────
/api/institutional-flows

GET never fails: a dead or empty store serves an empty list.
POST is the ingest path for the upstream scorer; write failures
propagate so the caller retries the whole batch.
"""

import logging
from typing import Any, List, Optional

from signal_engine.cache.flow_store import PriorityFlowStore
from signal_engine.errors import InvalidInput
from signal_engine.models.flow_record import FlowRecord

log = logging.getLogger("pf.api.flows")


def _last_updated(flows: List[FlowRecord]) -> Optional[int]:
    return max((f.timestamp or 0 for f in flows), default=0) or None


async def get_flows_response(store: PriorityFlowStore) -> dict:
    flows = store.ranked(await store.get_all())
    return {
        "success":     True,
        "flows":       [f.to_dict() for f in flows],
        "count":       len(flows),
        "lastUpdated": _last_updated(flows),
    }


async def ingest_flows(store: PriorityFlowStore, body: Any) -> dict:
    """
    Body: {"flows": [...]}. An empty list wipes the store; anything
    that isn't a list is rejected before Redis is touched.
    """
    flows = body.get("flows") if isinstance(body, dict) else None
    if not isinstance(flows, list):
        raise InvalidInput("Invalid flows data: expected {\"flows\": [...]}")

    if not flows:
        await store.clear()
        log.info("Empty ingest — flows cleared")
        return {"success": True, "message": "Cleared all flows", "total": 0}

    stats = await store.upsert_batch(flows)
    return {
        "success": True,
        "message": f"Stored {stats['total']} flows",
        **stats,
    }


async def clear_flows(store: PriorityFlowStore) -> dict:
    await store.clear()
    return {"success": True, "message": "Cleared all flows"}
