"""
SQLite-based persistence layer for StakeLedger state.

Stores ledger totals, open and good-accounted stakes, processed days,
funded future days, pending shares and (for the in-memory custodian)
token balances, so that a ledger can recover after restart.

Amounts are stored as decimal TEXT: base units and the scaled payout
index do not fit SQLite's 64-bit INTEGER.

Usage:
    store = LedgerStore("data/stakeledger.db")
    store.snapshot_engine(engine, token)
    ...
    store.restore_engine(engine, token)
"""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path
from typing import Any

from stakeledger_core.daily import DailyDatum
from stakeledger_core.staking import Stake

logger = logging.getLogger("stakeledger_storage")

# Ledger-wide totals kept in the ``meta`` table.
_META_KEYS = (
    "launch_timestamp",
    "locked_stake_total",
    "stake_shares_total",
    "next_stake_shares_total",
    "stake_penalty_total",
    "share_rate",
    "latest_stake_id",
    "token_total_supply",
)


class LedgerStore:
    """Thin SQLite wrapper for persisting staking state."""

    CURRENT_SCHEMA_VERSION = 1

    def __init__(self, db_path: str = "data/stakeledger.db"):
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA busy_timeout = 5000")
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")
        self._create_tables()
        self._ensure_schema_version()
        logger.info(f"Storage opened: {db_path}")

    # ── schema ───────────────────────────────────────────────────

    def _create_tables(self) -> None:
        c = self._conn
        c.execute("""
            CREATE TABLE IF NOT EXISTS meta (
                key   TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS stakes (
                stake_id      INTEGER PRIMARY KEY,
                owner         TEXT NOT NULL,
                position      INTEGER NOT NULL,
                staked_amount TEXT NOT NULL,
                stake_shares  TEXT NOT NULL,
                locked_day    INTEGER NOT NULL,
                staked_days   INTEGER NOT NULL,
                unlocked_day  INTEGER NOT NULL DEFAULT 0
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS daily_data (
                day                    INTEGER PRIMARY KEY,
                day_payout_total       TEXT NOT NULL,
                day_share_payout       TEXT NOT NULL,
                day_stake_shares_total TEXT NOT NULL
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS funded_days (
                day    INTEGER PRIMARY KEY,
                amount TEXT NOT NULL
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS pending_shares (
                locked_day INTEGER PRIMARY KEY,
                shares     TEXT NOT NULL
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS balances (
                address TEXT PRIMARY KEY,
                balance TEXT NOT NULL
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                id      INTEGER PRIMARY KEY CHECK (id = 1),
                version INTEGER NOT NULL
            )
        """)
        c.commit()

    def _ensure_schema_version(self) -> None:
        row = self._conn.execute(
            "SELECT version FROM schema_version WHERE id = 1"
        ).fetchone()
        if row is None:
            self._conn.execute(
                "INSERT INTO schema_version (id, version) VALUES (1, ?)",
                (self.CURRENT_SCHEMA_VERSION,),
            )
            self._conn.commit()
        elif row["version"] > self.CURRENT_SCHEMA_VERSION:
            raise RuntimeError(
                f"Database schema v{row['version']} is newer than this software "
                f"(v{self.CURRENT_SCHEMA_VERSION}).  Upgrade StakeLedger."
            )

    def schema_version(self) -> int:
        row = self._conn.execute(
            "SELECT version FROM schema_version WHERE id = 1"
        ).fetchone()
        return row["version"]

    # ── meta ─────────────────────────────────────────────────────

    def get_meta(self, key: str) -> str | None:
        row = self._conn.execute(
            "SELECT value FROM meta WHERE key = ?", (key,)
        ).fetchone()
        return row["value"] if row else None

    def set_meta(self, key: str, value: Any) -> None:
        self._conn.execute(
            "INSERT OR REPLACE INTO meta (key, value) VALUES (?, ?)",
            (key, str(value)),
        )
        self._conn.commit()

    def has_state(self) -> bool:
        return self.get_meta("latest_stake_id") is not None

    # ── loaders ──────────────────────────────────────────────────

    def load_stakes(self) -> list[dict[str, Any]]:
        rows = self._conn.execute(
            "SELECT * FROM stakes ORDER BY owner, position"
        ).fetchall()
        return [dict(r) for r in rows]

    def load_daily_data(self) -> list[dict[str, Any]]:
        rows = self._conn.execute(
            "SELECT * FROM daily_data ORDER BY day"
        ).fetchall()
        return [dict(r) for r in rows]

    def latest_day(self) -> int:
        """Number of processed days stored."""
        row = self._conn.execute(
            "SELECT MAX(day) AS day FROM daily_data"
        ).fetchone()
        return row["day"] + 1 if row and row["day"] is not None else 0

    # ── bulk helpers ─────────────────────────────────────────────

    def snapshot_engine(self, engine: Any, token: Any = None) -> None:
        """Persist the full current state of a StakingEngine atomically.

        Processed days are append-only and only the new ones are written.
        *token*, when it exposes ``balances``, is saved as well.
        """
        c = self._conn
        stored_days = self.latest_day()
        try:
            c.execute("BEGIN IMMEDIATE")

            meta = {
                "launch_timestamp": engine.launch_timestamp,
                "locked_stake_total": engine.locked_stake_total,
                "stake_shares_total": engine.stake_shares_total,
                "next_stake_shares_total": engine.next_stake_shares_total,
                "stake_penalty_total": engine.stake_penalty_total,
                "share_rate": engine.rates.current_rate(),
                "latest_stake_id": engine.latest_stake_id,
            }
            if token is not None and hasattr(token, "balances"):
                meta["token_total_supply"] = token.total_supply
            c.executemany(
                "INSERT OR REPLACE INTO meta (key, value) VALUES (?, ?)",
                [(k, str(v)) for k, v in meta.items()],
            )

            c.execute("DELETE FROM stakes")
            c.executemany(
                """INSERT INTO stakes
                   (stake_id, owner, position, staked_amount, stake_shares,
                    locked_day, staked_days, unlocked_day)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                [
                    (s.stake_id, owner, position, str(s.staked_amount),
                     str(s.stake_shares), s.locked_day, s.staked_days,
                     s.unlocked_day)
                    for owner, owned in engine.stakes.items()
                    for position, s in enumerate(owned)
                ],
            )

            c.executemany(
                """INSERT OR REPLACE INTO daily_data
                   (day, day_payout_total, day_share_payout, day_stake_shares_total)
                   VALUES (?, ?, ?, ?)""",
                [
                    (d.day, str(d.day_payout_total), str(d.day_share_payout),
                     str(d.day_stake_shares_total))
                    for d in engine.daily.processed[stored_days:]
                ],
            )

            c.execute("DELETE FROM funded_days")
            c.executemany(
                "INSERT INTO funded_days (day, amount) VALUES (?, ?)",
                [(day, str(amt)) for day, amt in engine.daily.funded.items()],
            )
            c.execute("DELETE FROM pending_shares")
            c.executemany(
                "INSERT INTO pending_shares (locked_day, shares) VALUES (?, ?)",
                [(day, str(sh)) for day, sh in engine.daily.pending_shares.items()],
            )

            if token is not None and hasattr(token, "balances"):
                c.execute("DELETE FROM balances")
                c.executemany(
                    "INSERT INTO balances (address, balance) VALUES (?, ?)",
                    [(a, str(b)) for a, b in token.balances.items()],
                )

            c.execute("COMMIT")
        except Exception:
            c.execute("ROLLBACK")
            raise
        logger.debug(
            f"Snapshot saved: {engine.latest_stake_id} stakes issued, "
            f"{engine.daily.daily_data_count} days processed"
        )

    def restore_engine(self, engine: Any, token: Any = None) -> bool:
        """
        Restore engine (and token) state from the database.

        Returns False, leaving *engine* untouched, when nothing was saved.
        """
        if not self.has_state():
            return False

        def meta_int(key: str) -> int:
            value = self.get_meta(key)
            return int(value) if value is not None else 0

        engine.launch_timestamp = meta_int("launch_timestamp")
        engine.locked_stake_total = meta_int("locked_stake_total")
        engine.stake_shares_total = meta_int("stake_shares_total")
        engine.next_stake_shares_total = meta_int("next_stake_shares_total")
        engine.stake_penalty_total = meta_int("stake_penalty_total")
        engine.latest_stake_id = meta_int("latest_stake_id")
        engine.rates.share_rate = meta_int("share_rate")

        engine.stakes = {}
        for row in self.load_stakes():
            engine.stakes.setdefault(row["owner"], []).append(Stake(
                stake_id=row["stake_id"],
                owner=row["owner"],
                staked_amount=int(row["staked_amount"]),
                stake_shares=int(row["stake_shares"]),
                locked_day=row["locked_day"],
                staked_days=row["staked_days"],
                unlocked_day=row["unlocked_day"],
            ))

        daily = engine.daily
        daily.processed = []
        daily.cumulative = [0]
        for row in self.load_daily_data():
            datum = DailyDatum(
                day=row["day"],
                day_payout_total=int(row["day_payout_total"]),
                day_share_payout=int(row["day_share_payout"]),
                day_stake_shares_total=int(row["day_stake_shares_total"]),
                processed=True,
            )
            daily.processed.append(datum)
            daily.cumulative.append(daily.cumulative[-1] + datum.day_share_payout)

        daily.funded = {
            r["day"]: int(r["amount"])
            for r in self._conn.execute("SELECT * FROM funded_days").fetchall()
        }
        daily.pending_shares = {
            r["locked_day"]: int(r["shares"])
            for r in self._conn.execute("SELECT * FROM pending_shares").fetchall()
        }

        if token is not None and hasattr(token, "balances"):
            token.balances = {
                r["address"]: int(r["balance"])
                for r in self._conn.execute("SELECT * FROM balances").fetchall()
            }
            token.total_supply = meta_int("token_total_supply")

        logger.info(
            f"Restored {sum(len(v) for v in engine.stakes.values())} stakes, "
            f"{daily.daily_data_count} processed days"
        )
        return True

    # ── lifecycle ────────────────────────────────────────────────

    def close(self) -> None:
        self._conn.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
