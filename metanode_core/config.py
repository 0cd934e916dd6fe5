"""
TOML-based configuration for the stake ledger service.

Loads settings from a TOML file and/or environment variables.
Environment variables take precedence over file values.

Usage:
    from metanode_core.config import load_config
    cfg = load_config("metanode.toml")
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

if sys.version_info >= (3, 11):
    import tomllib
else:
    try:
        import tomllib  # type: ignore[import]
    except ModuleNotFoundError:
        import tomli as tomllib  # type: ignore[import,no-redef]


@dataclass
class CampaignConfig:
    """Reward emission window and rate."""
    start_height: int = 1
    end_height: int = 100_001
    reward_per_height: int = 1
    reward_token: str = "MetaNode"
    # Initial treasury credit for the in-memory gateway (0 = unfunded).
    treasury_funding: int = 0


@dataclass
class HeightConfig:
    """How the current height is derived.

    ``manual`` starts at ``initial_height`` and only moves when the service
    is told to advance; ``clock`` counts ``interval_seconds`` periods since
    ``genesis_time`` (0 = first service start; a restored snapshot keeps the
    genesis it was saved with).
    """
    mode: str = "clock"
    interval_seconds: float = 12.0
    genesis_time: float = 0.0
    initial_height: int = 0


@dataclass
class LimitsConfig:
    """Resource ceilings."""
    max_pools: int = 64
    max_event_records: int = 100_000


@dataclass
class PoolConfig:
    """A pool to create at startup when the ledger has none."""
    asset: str = "native"
    weight: int = 10
    min_deposit: int = 0
    unstake_lock_heights: int = 2


@dataclass
class AdminConfig:
    """Account that receives every role at bootstrap."""
    initial_admin: str = "admin"


@dataclass
class APIConfig:
    """REST API settings."""
    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 8090
    api_key: str = ""                 # key for user POST routes (empty = routes disabled)
    admin_api_key: str = ""           # key for /admin/* routes (empty = routes disabled)
    rate_limit_rpm: int = 120          # max requests per minute per IP (0 = unlimited)
    cors_origins: list[str] = field(default_factory=list)
    max_body_bytes: int = 65_536


@dataclass
class StorageConfig:
    """Persistence settings."""
    enabled: bool = False
    path: str = "data/metanode.db"
    snapshot_interval_seconds: float = 60.0


@dataclass
class LoggingConfig:
    level: str = "INFO"
    format: str = "human"   # "human" or "json"
    file: str | None = None


@dataclass
class MetaNodeConfig:
    """Top-level configuration container."""
    campaign: CampaignConfig = field(default_factory=CampaignConfig)
    height: HeightConfig = field(default_factory=HeightConfig)
    limits: LimitsConfig = field(default_factory=LimitsConfig)
    admin: AdminConfig = field(default_factory=AdminConfig)
    pools: list[PoolConfig] = field(default_factory=list)
    api: APIConfig = field(default_factory=APIConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _merge(dc: Any, raw: dict[str, Any]) -> None:
    """Merge a raw dict into a dataclass instance (in-place)."""
    for key, value in raw.items():
        key_under = key.replace("-", "_")
        if hasattr(dc, key_under):
            setattr(dc, key_under, value)


def _parse_pools(raw: Any) -> list[PoolConfig]:
    if not isinstance(raw, list):
        raise ValueError("[[pools]] must be an array of tables")
    pools = []
    for entry in raw:
        pc = PoolConfig()
        _merge(pc, entry)
        pools.append(pc)
    return pools


def load_config(path: str | None = None) -> MetaNodeConfig:
    """
    Load configuration from a TOML file, then overlay environment variables.

    Env-var mapping:
        METANODE_HOST          -> api.host
        METANODE_PORT          -> api.port
        METANODE_API_KEY       -> api.api_key
        METANODE_ADMIN_API_KEY -> api.admin_api_key
        METANODE_CORS_ORIGINS  -> api.cors_origins  (comma-separated)
        METANODE_LOG_LEVEL     -> logging.level
        METANODE_LOG_FMT       -> logging.format
        METANODE_DB_PATH       -> storage.path (enables storage)
        METANODE_ADMIN         -> admin.initial_admin
        METANODE_HEIGHT_MODE   -> height.mode
        METANODE_MAX_POOLS     -> limits.max_pools
    """
    cfg = MetaNodeConfig()

    # ── TOML file ────────────────────────────────────────────────
    if path is not None:
        p = Path(path)
        if p.exists():
            with open(p, "rb") as f:
                data = tomllib.load(f)
            for section_name, section_dc in [
                ("campaign", cfg.campaign),
                ("height", cfg.height),
                ("limits", cfg.limits),
                ("admin", cfg.admin),
                ("api", cfg.api),
                ("storage", cfg.storage),
                ("logging", cfg.logging),
            ]:
                if section_name in data:
                    _merge(section_dc, data[section_name])
            if "pools" in data:
                cfg.pools = _parse_pools(data["pools"])

    # ── Environment variable overrides ───────────────────────────
    if v := os.environ.get("METANODE_HOST"):
        cfg.api.host = v
    if v := os.environ.get("METANODE_PORT"):
        cfg.api.port = int(v)
    if v := os.environ.get("METANODE_API_KEY"):
        cfg.api.api_key = v
    if v := os.environ.get("METANODE_ADMIN_API_KEY"):
        cfg.api.admin_api_key = v
    if v := os.environ.get("METANODE_CORS_ORIGINS"):
        cfg.api.cors_origins = [o.strip() for o in v.split(",") if o.strip()]
    if v := os.environ.get("METANODE_LOG_LEVEL"):
        cfg.logging.level = v.upper()
    if v := os.environ.get("METANODE_LOG_FMT"):
        cfg.logging.format = v
    if v := os.environ.get("METANODE_DB_PATH"):
        cfg.storage.path = v
        cfg.storage.enabled = True
    if v := os.environ.get("METANODE_ADMIN"):
        cfg.admin.initial_admin = v
    if v := os.environ.get("METANODE_HEIGHT_MODE"):
        cfg.height.mode = v.lower()
    if v := os.environ.get("METANODE_MAX_POOLS"):
        cfg.limits.max_pools = int(v)

    return cfg
