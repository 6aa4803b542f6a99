import asyncio
import json
import math

import pytest

from signal_engine.cache.ttl_config import METADATA_KEY, PATTERN_KEYS
from signal_engine.errors import InvalidInput, StorageUnavailable
from signal_engine.models.pattern_payload import ALL_TIMEFRAMES, Timeframe
from signal_engine.orchestrator.refresh_schedule import to_epoch_ms
from tests.fakes import make_pattern, utc


def identities(patterns):
    return [p.identity for p in patterns]


def sample(prefix, n=3, base=1_710_000_000_000):
    return [make_pattern(f"{prefix}{i}", base + i) for i in range(n)]


def test_read_all_none_when_uninitialised(timeframe_store):
    assert asyncio.run(timeframe_store.read_all()) is None


def test_write_then_read_all_per_class(timeframe_store):
    written = {
        Timeframe.SHORT:  sample("H", 3),
        Timeframe.MEDIUM: sample("F", 1),
        Timeframe.LONG:   [],
    }
    for tf, patterns in written.items():
        asyncio.run(timeframe_store.write(tf, patterns, 200))

    snapshot = asyncio.run(timeframe_store.read_all())
    for tf, patterns in written.items():
        expected = [(p["symbol"], p["detectedAt"]) for p in patterns]
        assert identities(snapshot.patterns[tf]) == expected
    assert snapshot.total_scanned == 200


def test_missing_class_reads_as_empty(timeframe_store):
    asyncio.run(timeframe_store.write("1h", sample("H"), 50))
    snapshot = asyncio.run(timeframe_store.read_all())
    assert snapshot.patterns[Timeframe.MEDIUM] == []
    assert snapshot.patterns[Timeframe.LONG] == []


def test_write_returns_count(timeframe_store):
    assert asyncio.run(timeframe_store.write("4h", sample("F", 4), 10)) == 4


def test_write_sets_next_update_and_ttl(timeframe_store, fake_redis, clock):
    asyncio.run(timeframe_store.write("4h", sample("F"), 10))
    entry = json.loads(fake_redis.strings[PATTERN_KEYS["4h"]])
    assert entry["savedAt"] == to_epoch_ms(clock())
    assert entry["nextUpdate"] == to_epoch_ms(utc(2024, 3, 14, 12, 0))
    assert asyncio.run(fake_redis.ttl(PATTERN_KEYS["4h"])) == 260 * 60
    assert asyncio.run(fake_redis.ttl(METADATA_KEY)) == 25 * 3600


def test_metadata_next_update_merges_across_writes(timeframe_store, fake_redis, clock):
    asyncio.run(timeframe_store.write("1d", sample("D"), 10))
    clock.advance(hours=1)
    asyncio.run(timeframe_store.write("1h", sample("H"), 10))
    meta = json.loads(fake_redis.strings[METADATA_KEY])
    assert set(meta["nextUpdate"]) == {"1h", "1d"}
    assert meta["nextUpdate"]["1d"] == to_epoch_ms(utc(2024, 3, 15, 0, 0))


def test_write_many_is_one_transaction(timeframe_store, fake_redis):
    counts = asyncio.run(timeframe_store.write_many({
        Timeframe.SHORT: sample("H", 2),
        Timeframe.LONG:  sample("D", 5),
    }, 300))
    assert counts == {"1h": 2, "1d": 5}
    assert fake_redis.calls.count("execute") == 1


def test_write_failure_propagates_and_keeps_old_entry(timeframe_store, fake_redis):
    asyncio.run(timeframe_store.write("1h", sample("OLD"), 10))
    before = dict(fake_redis.strings)
    fake_redis.fail("execute")
    with pytest.raises(StorageUnavailable):
        asyncio.run(timeframe_store.write("1h", sample("NEW"), 10))
    assert fake_redis.strings == before


def test_unknown_timeframe_rejected(timeframe_store):
    with pytest.raises(InvalidInput):
        asyncio.run(timeframe_store.write("15m", [], 0))


# ── needs_update ─────────────────────────────────────────────

def test_needs_update_lifecycle(timeframe_store, clock):
    asyncio.run(timeframe_store.clear())
    assert asyncio.run(timeframe_store.needs_update("1h")) is True

    asyncio.run(timeframe_store.write("1h", sample("H"), 10))
    assert asyncio.run(timeframe_store.needs_update("1h")) is False

    clock.set(utc(2024, 3, 14, 9, 59, 59))
    assert asyncio.run(timeframe_store.needs_update("1h")) is False

    clock.set(utc(2024, 3, 14, 10, 0))
    assert asyncio.run(timeframe_store.needs_update("1h")) is True


def test_entry_without_next_update_needs_update(timeframe_store, fake_redis):
    fake_redis.seed(PATTERN_KEYS["1d"], json.dumps({"patterns": [], "savedAt": 1}))
    assert asyncio.run(timeframe_store.needs_update("1d")) is True


def test_unreadable_entry_needs_update(timeframe_store, fake_redis):
    fake_redis.seed(PATTERN_KEYS["4h"], "garbage")
    assert asyncio.run(timeframe_store.needs_update("4h")) is True


def test_non_numeric_timestamps_read_as_miss(timeframe_store, fake_redis):
    fake_redis.seed(PATTERN_KEYS["1h"], json.dumps(
        {"patterns": [], "savedAt": "x", "nextUpdate": "2024-03-14T10:00:00Z"}
    ))
    assert asyncio.run(timeframe_store.needs_update("1h")) is True
    assert asyncio.run(timeframe_store.get_entry("1h")) is None
    assert math.isinf(asyncio.run(timeframe_store.data_age("1h")))


def test_non_object_pattern_items_read_as_miss(timeframe_store, fake_redis):
    fake_redis.seed(PATTERN_KEYS["4h"], json.dumps({"patterns": ["BTCUSDT"], "nextUpdate": 1}))
    assert asyncio.run(timeframe_store.get_entry("4h")) is None
    assert asyncio.run(timeframe_store.needs_update("4h")) is True


def test_malformed_metadata_is_replaced_on_write(timeframe_store, fake_redis):
    fake_redis.seed(METADATA_KEY, json.dumps({"nextUpdate": "soon"}))
    assert asyncio.run(timeframe_store.read_all()) is None
    asyncio.run(timeframe_store.write("1h", sample("H"), 10))
    assert set(json.loads(fake_redis.strings[METADATA_KEY])["nextUpdate"]) == {"1h"}


def test_backend_down_needs_update(timeframe_store, fake_redis):
    asyncio.run(timeframe_store.write("1h", sample("H"), 10))
    fake_redis.fail("get")
    assert asyncio.run(timeframe_store.needs_update("1h")) is True


def test_expired_entry_needs_update(timeframe_store, clock):
    asyncio.run(timeframe_store.write("1h", sample("H"), 10))
    clock.advance(minutes=65)
    assert asyncio.run(timeframe_store.get_entry("1h")) is None
    assert asyncio.run(timeframe_store.needs_update("1h")) is True


def test_entry_outlives_its_next_update(timeframe_store, clock):
    asyncio.run(timeframe_store.write("1h", sample("H"), 10))
    clock.set(utc(2024, 3, 14, 10, 20))
    assert asyncio.run(timeframe_store.needs_update("1h")) is True
    assert len(asyncio.run(timeframe_store.get_entry("1h")).patterns) == 3


# ── ages, status, clear ──────────────────────────────────────

def test_data_age(timeframe_store, clock):
    assert math.isinf(asyncio.run(timeframe_store.data_age("4h")))
    asyncio.run(timeframe_store.write("4h", sample("F"), 10))
    clock.advance(minutes=42)
    assert asyncio.run(timeframe_store.data_age("4h")) == 42


def test_status_uninitialised(timeframe_store):
    status = asyncio.run(timeframe_store.status())
    assert status["cached"] is False
    assert status["isInitialized"] is False
    assert status["dataAge"] == {"1h": None, "4h": None, "1d": None}
    assert set(status["nextUpdate"]) == {"1h", "4h", "1d"}


def test_status_after_write(timeframe_store, clock):
    asyncio.run(timeframe_store.write_many({tf: sample(tf.value, 2) for tf in ALL_TIMEFRAMES}, 99))
    clock.advance(minutes=90)
    status = asyncio.run(timeframe_store.status())
    assert status["cached"] is True
    assert status["isInitialized"] is True
    assert status["patterns"] == {"1h": 0, "4h": 2, "1d": 2, "total": 4}
    assert status["dataAgeLabel"]["1d"] == "1h"
    assert status["totalScanned"] == 99


def test_clear_removes_everything(timeframe_store):
    asyncio.run(timeframe_store.write_many({tf: sample("X") for tf in ALL_TIMEFRAMES}, 10))
    asyncio.run(timeframe_store.clear())
    assert asyncio.run(timeframe_store.read_all()) is None
    for tf in ALL_TIMEFRAMES:
        assert asyncio.run(timeframe_store.needs_update(tf)) is True


def test_read_all_swallows_backend_failure(timeframe_store, fake_redis):
    asyncio.run(timeframe_store.write("1h", sample("H"), 10))
    fake_redis.fail("get")
    assert asyncio.run(timeframe_store.read_all()) is None
