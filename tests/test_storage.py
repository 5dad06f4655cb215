"""
Tests for SQLite persistence layer (storage.py).

Covers:
  - Schema creation and versioning
  - snapshot_engine / restore_engine roundtrip
  - Incremental daily data writes
  - Restored engine keeps operating identically
"""

from __future__ import annotations

import pytest

from conftest import LAUNCH, T
from stakeledger_core.custodian import InMemoryToken
from stakeledger_core.invariants import InvariantChecker
from stakeledger_core.staking import StakingEngine
from stakeledger_core.storage import LedgerStore


@pytest.fixture
def store(tmp_path):
    s = LedgerStore(str(tmp_path / "test.db"))
    yield s
    s.close()


@pytest.fixture
def busy_engine(engine, clock):
    engine.fund_rewards("funder", 10 * T, 60)
    a = engine.stake_start("alice", 100 * T, 30)
    engine.stake_start("bob", 100 * T, 90)
    clock.set_day(20)
    engine.stake_start("carol", 500 * T, 45)
    clock.set_day(35)
    engine.stake_good_accounting("bob", "alice", 0, a.stake_id)
    return engine


def _fresh(clock):
    tok = InMemoryToken()
    eng = StakingEngine(tok, 0, "treasury", clock=clock, invariant_checker=InvariantChecker())
    return eng, tok


class TestSchema:
    def test_tables_created(self, store):
        rows = store._conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table'"
        ).fetchall()
        names = {r["name"] for r in rows}
        assert {"meta", "stakes", "daily_data", "funded_days",
                "pending_shares", "balances", "schema_version"} <= names

    def test_schema_version(self, store):
        assert store.schema_version() == LedgerStore.CURRENT_SCHEMA_VERSION

    def test_newer_schema_rejected(self, tmp_path):
        path = str(tmp_path / "future.db")
        s = LedgerStore(path)
        s._conn.execute("UPDATE schema_version SET version = 99 WHERE id = 1")
        s._conn.commit()
        s.close()
        with pytest.raises(RuntimeError):
            LedgerStore(path)

    def test_empty_store_restores_nothing(self, store, clock):
        eng, tok = _fresh(clock)
        assert not store.restore_engine(eng, tok)
        assert eng.launch_timestamp == 0

    def test_meta(self, store):
        store.set_meta("launch_timestamp", 123)
        assert store.get_meta("launch_timestamp") == "123"
        assert store.get_meta("missing") is None


class TestRoundtrip:
    def test_state_restored(self, store, busy_engine, token, clock):
        store.snapshot_engine(busy_engine, token)
        eng, tok = _fresh(clock)
        assert store.restore_engine(eng, tok)

        assert eng.globals() == busy_engine.globals()
        assert eng.launch_timestamp == LAUNCH
        assert eng.stakes == busy_engine.stakes
        assert eng.daily.processed == busy_engine.daily.processed
        assert eng.daily.cumulative == busy_engine.daily.cumulative
        assert eng.daily.funded == busy_engine.daily.funded
        assert eng.daily.pending_shares == busy_engine.daily.pending_shares
        assert tok.balances == token.balances
        assert tok.total_supply == token.total_supply

    def test_big_integers_survive(self, store, busy_engine, token, clock):
        store.snapshot_engine(busy_engine, token)
        eng, _ = _fresh(clock)
        store.restore_engine(eng)
        assert max(eng.daily.cumulative) > 2 ** 63

    def test_restored_engine_matches_original(self, store, busy_engine, token, clock):
        store.snapshot_engine(busy_engine, token)
        eng, tok = _fresh(clock)
        store.restore_engine(eng, tok)

        clock.set_day(120)
        bob = busy_engine.stake_lists("bob", 0)
        expected = busy_engine.stake_end("bob", 0, bob.stake_id)
        assert eng.stake_end("bob", 0, bob.stake_id) == expected

    def test_incremental_snapshots(self, store, busy_engine, token, clock):
        store.snapshot_engine(busy_engine, token)
        first = store.latest_day()
        clock.set_day(50)
        busy_engine.daily_data_update(50)
        carol = busy_engine.stake_lists("carol", 0)
        busy_engine.stake_end("carol", 0, carol.stake_id)
        store.snapshot_engine(busy_engine, token)

        assert store.latest_day() == 50 > first
        eng, tok = _fresh(clock)
        store.restore_engine(eng, tok)
        assert eng.stake_count("carol") == 0
        assert eng.daily.cumulative == busy_engine.daily.cumulative
        assert eng.globals() == busy_engine.globals()

    def test_context_manager(self, tmp_path):
        with LedgerStore(str(tmp_path / "cm.db")) as s:
            assert not s.has_state()
