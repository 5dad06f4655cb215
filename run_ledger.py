#!/usr/bin/env python3
"""
StakeLedger runner: serves a staking ledger over HTTP with:
  - In-memory token custodian seeded from ``[genesis.accounts]``
  - Optional SQLite persistence (snapshot after every write)
  - Background catch-up of unprocessed days

Usage:
    python run_ledger.py --config stakeledger.toml
    python run_ledger.py --port 8080 --db data/stakeledger.db

Environment variables (alternative to flags): see
``stakeledger_core.config.load_config``.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import os
import sys
import time

# ---------------------------------------------------------------------------
# Ensure the project root is in sys.path so imports work before pip install
# ---------------------------------------------------------------------------
PROJECT_ROOT = os.path.dirname(os.path.abspath(__file__))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from stakeledger_core.api import APIServer  # noqa: E402
from stakeledger_core.config import StakeLedgerConfig, load_config  # noqa: E402
from stakeledger_core.custodian import InMemoryToken  # noqa: E402
from stakeledger_core.errors import StakingError  # noqa: E402
from stakeledger_core.invariants import InvariantChecker  # noqa: E402
from stakeledger_core.logging_config import setup_logging  # noqa: E402
from stakeledger_core.penalty import PenaltySplit  # noqa: E402
from stakeledger_core.precision import format_amount, to_units  # noqa: E402
from stakeledger_core.staking import StakingEngine  # noqa: E402
from stakeledger_core.storage import LedgerStore  # noqa: E402

logger = logging.getLogger("stakeledger_runner")

# Seconds between background catch-up passes
UPDATE_INTERVAL = 3600


class LedgerNode:
    """Token, engine, storage and API wired together from a config."""

    def __init__(self, config: StakeLedgerConfig, update_interval: int = UPDATE_INTERVAL):
        self.config = config
        self.update_interval = update_interval
        lc = config.ledger

        self.token = InMemoryToken(symbol=lc.token, custody_address=lc.custody_address)
        self.store: LedgerStore | None = None
        if config.storage.enabled:
            self.store = LedgerStore(config.storage.path)

        self.engine = StakingEngine(
            self.token,
            self._launch_timestamp(),
            lc.penalty_recipient,
            penalty_split=PenaltySplit((
                (lc.penalty_recipient, lc.penalty_recipient_weight),
                (lc.burn_address, lc.burn_weight),
            )),
            max_catch_up_days=lc.max_catch_up_days,
            invariant_checker=InvariantChecker() if lc.check_invariants else None,
        )

        self._api: APIServer | None = None
        self._bg_tasks: list[asyncio.Task] = []

    def _launch_timestamp(self) -> int:
        if self.config.ledger.launch_timestamp:
            return int(self.config.ledger.launch_timestamp)
        if self.store is not None:
            stored = self.store.get_meta("launch_timestamp")
            if stored is not None:
                return int(stored)
        return int(time.time())

    # ---- state ----

    def load_state(self) -> None:
        if self.store is not None and self.store.restore_engine(self.engine, self.token):
            g = self.engine.globals()
            logger.info(
                f"Restored ledger: {g.latest_stake_id} stakes issued, "
                f"{g.daily_data_count} days processed, "
                f"locked={format_amount(g.locked_stake_total, self.token.symbol)}, "
                f"share_rate={g.share_rate}"
            )
            return
        accounts = self.config.genesis.accounts
        if accounts:
            logger.info(f"Applying genesis balances ({len(accounts)} accounts)")
        for address, amount in accounts.items():
            units = to_units(str(amount))
            self.token.mint(address, units)
            logger.debug(f"Genesis: {address} <- {format_amount(units, self.token.symbol)}")
        self.persist()

    def persist(self) -> None:
        if self.store is not None:
            self.store.snapshot_engine(self.engine, self.token)

    # ---- background catch-up ----

    def catch_up(self) -> int:
        """Close every unprocessed day, in budget-sized steps."""
        closed = 0
        target = self.engine.current_day()
        budget = self.engine.daily.max_catch_up_days
        while self.engine.daily.daily_data_count < target:
            step = min(self.engine.daily.daily_data_count + budget, target)
            closed += self.engine.daily_data_update(step)
        if closed:
            self.persist()
        return closed

    async def _catch_up_loop(self) -> None:
        while True:
            try:
                closed = self.catch_up()
                if closed:
                    logger.info(f"Background catch-up closed {closed} days")
            except StakingError as exc:
                logger.warning(f"Background catch-up failed: {exc}")
            await asyncio.sleep(self.update_interval)

    # ---- lifecycle ----

    async def start(self) -> None:
        self.load_state()
        if self.config.api.enabled:
            self._api = APIServer(
                self.engine,
                self.token,
                host=self.config.api.host,
                port=self.config.api.port,
                api_config=self.config.api,
                on_commit=self.persist,
            )
            await self._api.start()
        if self.update_interval > 0:
            self._bg_tasks.append(asyncio.create_task(self._catch_up_loop()))
        logger.info(
            f"Ledger started | launch={self.engine.launch_timestamp} "
            f"| token={self.token.symbol}"
        )

    async def stop(self) -> None:
        for task in self._bg_tasks:
            task.cancel()
        if self._api is not None:
            await self._api.stop()
        if self.store is not None:
            logger.info("Saving ledger state to database...")
            self.persist()
            self.store.close()


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="StakeLedger staking ledger")
    p.add_argument("--config", default=None, help="Path to stakeledger.toml config file")
    p.add_argument("--host", default=None, help="API listen host")
    p.add_argument("--port", type=int, default=None, help="API listen port")
    p.add_argument("--db", default=None, help="SQLite database path (enables storage)")
    p.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING, ...")
    p.add_argument("--update-interval", type=int, default=UPDATE_INTERVAL,
                   help="Seconds between background catch-up passes (0 = off)")
    return p.parse_args(argv)


async def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    cfg = load_config(args.config)

    # CLI flags override config
    if args.host:
        cfg.api.host = args.host
    if args.port:
        cfg.api.port = args.port
    if args.db:
        cfg.storage.path = args.db
        cfg.storage.enabled = True
    if args.log_level:
        cfg.logging.level = args.log_level.upper()

    setup_logging(cfg.logging.level, cfg.logging.format, cfg.logging.file)

    node = LedgerNode(cfg, update_interval=args.update_interval)
    await node.start()
    try:
        while True:
            await asyncio.sleep(1)
    except asyncio.CancelledError:
        pass
    finally:
        await node.stop()


def main_sync():
    """Synchronous entry point for console_scripts."""
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(main())


if __name__ == "__main__":
    main_sync()
