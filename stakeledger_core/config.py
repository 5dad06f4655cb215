"""
TOML-based configuration for StakeLedger.

Loads settings from a TOML file and/or environment variables.
Environment variables take precedence over file values.

Usage:
    from stakeledger_core.config import load_config
    cfg = load_config("stakeledger.toml")
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from stakeledger_core.custodian import BURN_ADDRESS, CUSTODY_ADDRESS
from stakeledger_core.daily import DEFAULT_MAX_CATCH_UP_DAYS

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib  # type: ignore[import,no-redef]


@dataclass
class LedgerConfig:
    """Staking ledger settings.

    ``launch_timestamp`` anchors day 0 (epoch seconds).  0 means "the
    first time the ledger starts"; the runner then pins the value in
    storage so restarts keep the same day numbering.
    """
    token: str = "STK"
    custody_address: str = CUSTODY_ADDRESS
    launch_timestamp: int = 0
    penalty_recipient: str = "stakeledger:treasury"
    burn_address: str = BURN_ADDRESS
    penalty_recipient_weight: int = 3
    burn_weight: int = 2
    max_catch_up_days: int = DEFAULT_MAX_CATCH_UP_DAYS
    check_invariants: bool = True


@dataclass
class APIConfig:
    """REST API settings."""
    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 8080
    api_key: str = ""                 # require this key on POST endpoints (empty = no auth)
    rate_limit_rpm: int = 120          # max requests per minute per IP (0 = unlimited)
    cors_origins: list[str] = field(default_factory=list)  # allowed CORS origins (empty = no CORS)
    max_body_bytes: int = 65_536


@dataclass
class StorageConfig:
    """Persistence settings."""
    enabled: bool = False
    backend: str = "sqlite"
    path: str = "data/stakeledger.db"


@dataclass
class GenesisConfig:
    """
    Initial token balances of the in-memory custodian.

    ``accounts`` maps address → whole-token amount (int or decimal
    string).  Ignored when the ledger is restored from storage.
    """
    accounts: dict[str, Any] = field(default_factory=dict)


@dataclass
class LoggingConfig:
    """Logging settings."""
    level: str = "INFO"
    format: str = "human"   # "human" or "json"
    file: str | None = None


@dataclass
class StakeLedgerConfig:
    """Top-level configuration container."""
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    api: APIConfig = field(default_factory=APIConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    genesis: GenesisConfig = field(default_factory=GenesisConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _merge(dc: Any, raw: dict[str, Any]) -> None:
    """Merge a raw dict into a dataclass instance (in-place)."""
    for key, value in raw.items():
        key_under = key.replace("-", "_")
        if hasattr(dc, key_under):
            setattr(dc, key_under, value)


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_config(path: str | None = None) -> StakeLedgerConfig:
    """
    Load configuration from a TOML file, then overlay environment variables.

    Env-var mapping (selected):
        STAKELEDGER_LAUNCH_TS          -> ledger.launch_timestamp
        STAKELEDGER_PENALTY_RECIPIENT  -> ledger.penalty_recipient
        STAKELEDGER_MAX_CATCH_UP_DAYS  -> ledger.max_catch_up_days
        STAKELEDGER_CHECK_INVARIANTS   -> ledger.check_invariants
        STAKELEDGER_API_HOST           -> api.host
        STAKELEDGER_API_PORT           -> api.port
        STAKELEDGER_API_KEY            -> api.api_key
        STAKELEDGER_CORS_ORIGINS       -> api.cors_origins   (comma-separated)
        STAKELEDGER_LOG_LEVEL          -> logging.level
        STAKELEDGER_LOG_FMT            -> logging.format
        STAKELEDGER_DB_PATH            -> storage.path
    """
    cfg = StakeLedgerConfig()

    # ── TOML file ────────────────────────────────────────────────
    if path is not None:
        p = Path(path)
        if p.exists():
            with open(p, "rb") as f:
                data = tomllib.load(f)
            for section_name, section_dc in [
                ("ledger", cfg.ledger),
                ("api", cfg.api),
                ("storage", cfg.storage),
                ("genesis", cfg.genesis),
                ("logging", cfg.logging),
            ]:
                if section_name in data:
                    _merge(section_dc, data[section_name])

    # ── Environment variable overrides ───────────────────────────
    if v := os.environ.get("STAKELEDGER_LAUNCH_TS"):
        cfg.ledger.launch_timestamp = int(v)
    if v := os.environ.get("STAKELEDGER_PENALTY_RECIPIENT"):
        cfg.ledger.penalty_recipient = v
    if v := os.environ.get("STAKELEDGER_MAX_CATCH_UP_DAYS"):
        cfg.ledger.max_catch_up_days = int(v)
    if v := os.environ.get("STAKELEDGER_CHECK_INVARIANTS"):
        cfg.ledger.check_invariants = _env_bool(v)
    if v := os.environ.get("STAKELEDGER_API_HOST"):
        cfg.api.host = v
    if v := os.environ.get("STAKELEDGER_API_PORT"):
        cfg.api.port = int(v)
        cfg.api.enabled = True
    if v := os.environ.get("STAKELEDGER_API_KEY"):
        cfg.api.api_key = v
    if v := os.environ.get("STAKELEDGER_CORS_ORIGINS"):
        cfg.api.cors_origins = [o.strip() for o in v.split(",") if o.strip()]
    if v := os.environ.get("STAKELEDGER_LOG_LEVEL"):
        cfg.logging.level = v.upper()
    if v := os.environ.get("STAKELEDGER_LOG_FMT"):
        cfg.logging.format = v
    if v := os.environ.get("STAKELEDGER_DB_PATH"):
        cfg.storage.path = v
        cfg.storage.enabled = True

    return cfg
