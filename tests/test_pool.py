import logging

from lanes.pool import TokenPool, default_record_from_env
from models import CredentialRecord


def _pool_with(store, default_record, names):
    pool = TokenPool(store, default_record)
    pool.load_pool(names)
    return pool


def test_round_robin_returns_each_lane_once_then_cycles(store, default_record):
    store.save(CredentialRecord(name="C", cookies="sid=c", bearer_token="token-c"))
    pool = _pool_with(store, default_record, ["A", "B", "C"])

    picked = [pool.next().name for _ in range(3)]
    assert picked == ["A", "B", "C"]
    assert pool.next().name == "A"


def test_load_pool_skips_unknown_names_and_resets_cursor(store, default_record, caplog):
    pool = _pool_with(store, default_record, ["A", "B"])
    pool.next()

    with caplog.at_level(logging.WARNING):
        loaded = pool.load_pool(["B", "missing", "A"])

    assert loaded == ["B", "A"]
    assert "missing" in caplog.text
    assert pool.next().name == "B"


def test_empty_pool_falls_back_to_default_record(store, default_record):
    pool = TokenPool(store, default_record)

    assert len(pool) == 0
    assert pool.next() is default_record
    assert pool.next() is default_record


def test_by_name_pins_lane_without_moving_cursor(store, default_record):
    pool = _pool_with(store, default_record, ["A", "B"])

    assert pool.by_name("B").name == "B"
    assert pool.by_name("B").name == "B"
    assert pool.next().name == "A"


def test_by_name_unknown_falls_back_to_next(store, default_record, caplog):
    pool = _pool_with(store, default_record, ["A", "B"])

    with caplog.at_level(logging.WARNING):
        record = pool.by_name("Z")

    assert record.name == "A"
    assert "'Z' not in pool" in caplog.text
    assert pool.by_name(None).name == "B"


def test_reset_empties_pool(store, default_record):
    pool = _pool_with(store, default_record, ["A", "B"])
    pool.reset()

    assert pool.names == []
    assert pool.status()["using_default"] is True
    assert pool.next().name == "default"


def test_status_masks_proxy_credentials(store, default_record):
    pool = _pool_with(store, default_record, ["A"])
    status = pool.status()

    assert status["size"] == 1
    lane = status["lanes"][0]
    assert lane["name"] == "A"
    assert lane["proxy"] == "10.0.0.1:8080 (with auth)"
    assert "pass" not in str(status)


def test_default_record_from_env(monkeypatch):
    monkeypatch.setenv("FLOW_DEFAULT_LANE", "env-lane")
    monkeypatch.setenv("FLOW_COOKIES", "sid=env")
    monkeypatch.setenv("FLOW_BEARER_TOKEN", "Bearer env-token")
    monkeypatch.delenv("FLOW_PROXY", raising=False)

    record = default_record_from_env()

    assert record.name == "env-lane"
    assert record.cookies == "sid=env"
    assert record.bearer_token == "env-token"
    assert record.proxy is None
