import asyncio
import json

import pytest

from signal_engine.cache.ttl_config import FLOWS_KEY, PRIORITY_KEY
from signal_engine.errors import InvalidInput, StorageTimeout, StorageUnavailable
from signal_engine.models.flow_record import FlowRecord, rank_flows
from signal_engine.orchestrator.refresh_schedule import to_epoch_ms
from tests.fakes import make_flow


def symbols(flows):
    return [f.symbol for f in flows]


def is_ranked(flows):
    keys = [f.rank_key() for f in flows]
    return all(a >= b for a, b in zip(keys, keys[1:]))


def seed_ten(store):
    batch = [make_flow(f"S{i}", priority=i * 10) for i in range(1, 11)]
    return asyncio.run(store.upsert_batch(batch))


# ── ranking ──────────────────────────────────────────────────

def test_tie_break_chain_order():
    flows = [FlowRecord.from_dict(d) for d in (
        make_flow("A", 50, manipulationConfidence=0.2),
        make_flow("B", 50, manipulationConfidence=0.9),
        make_flow("C", 50, manipulationConfidence=0.9, abnormalityScore=3.0),
        make_flow("D", 70),
        make_flow("E", 50, manipulationConfidence=0.9, abnormalityScore=3.0,
                  openInterestValue=9_000_000.0),
    )]
    assert symbols(rank_flows(flows)) == ["D", "E", "C", "B", "A"]


def test_missing_scores_count_as_zero():
    flows = [FlowRecord.from_dict(d) for d in (
        {"symbol": "BARE"},
        make_flow("LOW", priority=0.5),
    )]
    assert symbols(rank_flows(flows)) == ["LOW", "BARE"]


def test_full_ties_keep_input_order():
    flows = [FlowRecord.from_dict(make_flow(s, 10)) for s in ("X", "Y", "Z")]
    assert symbols(rank_flows(flows)) == ["X", "Y", "Z"]


# ── upsert ───────────────────────────────────────────────────

def test_upsert_into_empty_store(flow_store):
    stats = asyncio.run(flow_store.upsert_batch([make_flow("BTC", 5), make_flow("ETH", 9)]))
    assert stats == {"added": 2, "updated": 0, "removed": 0, "total": 2}
    assert symbols(asyncio.run(flow_store.get_all())) == ["ETH", "BTC"]


def test_upsert_caps_at_max_and_stays_ranked(flow_store):
    batch = [make_flow(f"S{i}", priority=(i * 37) % 23) for i in range(25)]
    stats = asyncio.run(flow_store.upsert_batch(batch))
    flows = asyncio.run(flow_store.get_all())
    assert stats["total"] == len(flows) == 10
    assert stats["removed"] == 15
    assert is_ranked(flows)


def test_upsert_replaces_existing_symbol_wholesale(flow_store):
    asyncio.run(flow_store.upsert_batch([make_flow("SOL", 10, whaleRating="mega")]))
    asyncio.run(flow_store.upsert_batch([make_flow("SOL", 20)]))
    flows = asyncio.run(flow_store.get_all())
    assert len(flows) == 1
    assert flows[0].priority_score == 20
    assert flows[0].whale_rating is None


def test_upsert_stamps_timestamp(flow_store, clock):
    asyncio.run(flow_store.upsert_batch([make_flow("BTC", 5, timestamp=1)]))
    flows = asyncio.run(flow_store.get_all())
    assert flows[0].timestamp == to_epoch_ms(clock())


def test_lowered_existing_symbol_is_the_one_evicted(flow_store):
    seed_ten(flow_store)
    stats = asyncio.run(flow_store.upsert_batch([
        make_flow("S10", priority=1),    # was the leader
        make_flow("NEW", priority=55),
    ]))
    flows = asyncio.run(flow_store.get_all())
    assert stats == {"added": 1, "updated": 1, "removed": 1, "total": 10}
    assert "S10" not in symbols(flows)
    assert symbols(flows)[:2] == ["S9", "S8"]
    assert "NEW" in symbols(flows)
    assert is_ranked(flows)


def test_weak_newcomer_does_not_displace_anyone(flow_store):
    seed_ten(flow_store)
    before = symbols(asyncio.run(flow_store.get_all()))
    stats = asyncio.run(flow_store.upsert_batch([make_flow("WEAK", priority=1)]))
    assert stats["removed"] == 1
    assert symbols(asyncio.run(flow_store.get_all())) == before


def test_empty_batch_is_a_noop_merge(flow_store):
    seed_ten(flow_store)
    stats = asyncio.run(flow_store.upsert_batch([]))
    assert stats == {"added": 0, "updated": 0, "removed": 0, "total": 10}


def test_non_list_batch_rejected(flow_store, fake_redis):
    with pytest.raises(InvalidInput):
        asyncio.run(flow_store.upsert_batch({"symbol": "BTC"}))
    assert "execute" not in fake_redis.calls


def test_duplicate_symbols_in_batch_rejected(flow_store):
    with pytest.raises(InvalidInput) as exc:
        asyncio.run(flow_store.upsert_batch([make_flow("BTC", 1), make_flow("BTC", 2)]))
    assert exc.value.details["symbol"] == "BTC"


def test_non_numeric_score_rejected(flow_store):
    with pytest.raises(InvalidInput):
        asyncio.run(flow_store.upsert_batch([make_flow("BTC", priority="high")]))


def test_both_representations_written_with_ttl(flow_store, fake_redis):
    seed_ten(flow_store)
    blob = json.loads(fake_redis.strings[FLOWS_KEY])
    assert blob["totalFlows"] == 10
    assert len(fake_redis.zsets[PRIORITY_KEY]) == 10
    assert asyncio.run(fake_redis.ttl(FLOWS_KEY)) == 3600
    assert asyncio.run(fake_redis.ttl(PRIORITY_KEY)) == 3600


def test_unknown_producer_fields_survive(flow_store):
    asyncio.run(flow_store.upsert_batch([make_flow("BTC", 5, exchange="binance")]))
    stored = asyncio.run(flow_store.get_all())[0].to_dict()
    assert stored["exchange"] == "binance"


# ── reads & fallback ─────────────────────────────────────────

def test_get_all_empty_store(flow_store):
    assert asyncio.run(flow_store.get_all()) == []


def test_falls_back_to_rank_index(flow_store, fake_redis):
    seed_ten(flow_store)
    fake_redis._drop(FLOWS_KEY)
    flows = asyncio.run(flow_store.get_all())
    assert symbols(flows) == [f"S{i}" for i in range(10, 0, -1)]


def test_malformed_blob_falls_back_to_index(flow_store, fake_redis):
    seed_ten(flow_store)
    fake_redis.seed(FLOWS_KEY, "{not json")
    assert len(asyncio.run(flow_store.get_all())) == 10


def test_get_all_never_raises_when_backend_down(flow_store, fake_redis):
    seed_ten(flow_store)
    fake_redis.fail("get")
    fake_redis.fail("zrange")
    assert asyncio.run(flow_store.get_all()) == []


def test_flows_expire_together(flow_store, clock):
    seed_ten(flow_store)
    clock.advance(minutes=59)
    assert len(asyncio.run(flow_store.get_all())) == 10
    clock.advance(minutes=1)
    assert asyncio.run(flow_store.get_all()) == []
    assert asyncio.run(flow_store.count()) == 0


def test_upsert_after_expiry_starts_fresh(flow_store, clock):
    seed_ten(flow_store)
    clock.advance(hours=2)
    stats = asyncio.run(flow_store.upsert_batch([make_flow("BTC", 1)]))
    assert stats == {"added": 1, "updated": 0, "removed": 0, "total": 1}


# ── failures ─────────────────────────────────────────────────

def test_write_failure_propagates_and_changes_nothing(flow_store, fake_redis):
    seed_ten(flow_store)
    before = dict(fake_redis.strings), {k: dict(v) for k, v in fake_redis.zsets.items()}
    fake_redis.fail("execute")
    with pytest.raises(StorageUnavailable):
        asyncio.run(flow_store.upsert_batch([make_flow("NEW", 500)]))
    assert (fake_redis.strings, fake_redis.zsets) == before


def test_write_timeout_classified(flow_store, fake_redis):
    fake_redis.fail("execute", timeout=True)
    with pytest.raises(StorageTimeout):
        asyncio.run(flow_store.upsert_batch([make_flow("BTC", 1)]))


def test_upsert_refuses_when_base_unreadable(flow_store, fake_redis):
    seed_ten(flow_store)
    fake_redis.fail("get")
    with pytest.raises(StorageUnavailable):
        asyncio.run(flow_store.upsert_batch([make_flow("NEW", 500)]))


# ── housekeeping ─────────────────────────────────────────────

def test_count_and_clear(flow_store):
    seed_ten(flow_store)
    assert asyncio.run(flow_store.count()) == 10
    asyncio.run(flow_store.clear())
    assert asyncio.run(flow_store.count()) == 0
    assert asyncio.run(flow_store.get_all()) == []


def test_health_check(flow_store, fake_redis):
    assert asyncio.run(flow_store.health_check()) is True
    fake_redis.fail("ping")
    assert asyncio.run(flow_store.health_check()) is False


@pytest.mark.parametrize("score", [float("nan"), float("inf"), float("-inf")])
def test_non_finite_score_rejected(flow_store, fake_redis, score):
    batch = [make_flow("A", 5), make_flow("B", score), make_flow("C", 9)]
    with pytest.raises(InvalidInput):
        asyncio.run(flow_store.upsert_batch(batch))
    assert "execute" not in fake_redis.calls


def test_non_finite_tie_breaker_rejected(flow_store):
    with pytest.raises(InvalidInput):
        asyncio.run(flow_store.upsert_batch([make_flow("A", 5, manipulationConfidence=float("nan"))]))


def test_non_finite_score_on_record_object_rejected(flow_store):
    record = FlowRecord.from_dict(make_flow("A", 5))
    record.priority_score = float("nan")
    with pytest.raises(InvalidInput):
        asyncio.run(flow_store.upsert_batch([record]))


def test_upsert_leaves_caller_records_untouched(flow_store, clock):
    record = FlowRecord.from_dict(make_flow("BTC", 5, timestamp=1))
    asyncio.run(flow_store.upsert_batch([record]))
    assert record.timestamp == 1
    assert asyncio.run(flow_store.get_all())[0].timestamp == to_epoch_ms(clock())
