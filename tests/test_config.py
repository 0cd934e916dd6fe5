"""
Tests for metanode_core.config: TOML configuration and environment overrides.

Covers:
  - Default values for all dataclass sections
  - TOML parsing, section merging and [[pools]] tables
  - Environment variable overrides (precedence over TOML)
  - _merge helper edge cases
  - Missing / malformed files
"""

from __future__ import annotations

import os
import tempfile
import textwrap
import unittest
from unittest.mock import patch

from metanode_core.config import (
    APIConfig,
    CampaignConfig,
    HeightConfig,
    LoggingConfig,
    MetaNodeConfig,
    PoolConfig,
    StorageConfig,
    _merge,
    _parse_pools,
    load_config,
)


def _load_toml(content: str) -> MetaNodeConfig:
    with tempfile.NamedTemporaryFile(mode="w", suffix=".toml", delete=False) as f:
        f.write(textwrap.dedent(content))
        f.flush()
        name = f.name
    try:
        return load_config(name)
    finally:
        os.unlink(name)


# ═══════════════════════════════════════════════════════════════════
#  Defaults
# ═══════════════════════════════════════════════════════════════════

class TestDefaults(unittest.TestCase):

    def test_campaign_defaults(self):
        c = CampaignConfig()
        self.assertEqual(c.start_height, 1)
        self.assertEqual(c.end_height, 100_001)
        self.assertEqual(c.reward_per_height, 1)
        self.assertEqual(c.treasury_funding, 0)

    def test_height_defaults(self):
        h = HeightConfig()
        self.assertEqual(h.mode, "clock")
        self.assertEqual(h.interval_seconds, 12.0)

    def test_pool_defaults(self):
        p = PoolConfig()
        self.assertEqual(p.asset, "native")
        self.assertEqual(p.weight, 10)
        self.assertEqual(p.unstake_lock_heights, 2)

    def test_api_defaults(self):
        a = APIConfig()
        self.assertTrue(a.enabled)
        self.assertEqual(a.port, 8090)
        self.assertEqual(a.api_key, "")
        self.assertEqual(a.admin_api_key, "")
        self.assertEqual(a.cors_origins, [])

    def test_storage_defaults(self):
        s = StorageConfig()
        self.assertFalse(s.enabled)
        self.assertEqual(s.path, "data/metanode.db")

    def test_logging_defaults(self):
        log_cfg = LoggingConfig()
        self.assertEqual(log_cfg.level, "INFO")
        self.assertEqual(log_cfg.format, "human")
        self.assertIsNone(log_cfg.file)

    def test_top_level_defaults(self):
        cfg = MetaNodeConfig()
        self.assertEqual(cfg.pools, [])
        self.assertEqual(cfg.admin.initial_admin, "admin")
        self.assertEqual(cfg.limits.max_pools, 64)


# ═══════════════════════════════════════════════════════════════════
#  _merge / _parse_pools
# ═══════════════════════════════════════════════════════════════════

class TestMerge(unittest.TestCase):

    def test_merge_updates_fields(self):
        c = CampaignConfig()
        _merge(c, {"start_height": 5, "reward_token": "GOV"})
        self.assertEqual(c.start_height, 5)
        self.assertEqual(c.reward_token, "GOV")

    def test_merge_ignores_unknown_keys(self):
        c = CampaignConfig()
        _merge(c, {"unknown_field": 42})
        self.assertFalse(hasattr(c, "unknown_field"))

    def test_merge_hyphenated_keys(self):
        c = CampaignConfig()
        _merge(c, {"reward-per-height": 7})
        self.assertEqual(c.reward_per_height, 7)

    def test_parse_pools_requires_list(self):
        with self.assertRaises(ValueError):
            _parse_pools({"asset": "native"})

    def test_parse_pools(self):
        pools = _parse_pools([{"asset": "native"}, {"asset": "MNT", "weight": 20}])
        self.assertEqual([p.asset for p in pools], ["native", "MNT"])
        self.assertEqual(pools[1].weight, 20)
        self.assertEqual(pools[1].unstake_lock_heights, 2)


# ═══════════════════════════════════════════════════════════════════
#  TOML loading
# ═══════════════════════════════════════════════════════════════════

class TestLoadConfig(unittest.TestCase):

    def test_load_no_file(self):
        cfg = load_config(None)
        self.assertEqual(cfg.api.port, 8090)

    def test_load_missing_file(self):
        cfg = load_config("/tmp/__nonexistent_metanode__.toml")
        self.assertEqual(cfg.campaign.end_height, 100_001)

    def test_load_toml_file(self):
        cfg = _load_toml("""\
            [campaign]
            start_height = 10
            end_height = 500
            reward_per_height = 3
            treasury_funding = 1000

            [height]
            mode = "manual"
            initial_height = 4

            [admin]
            initial_admin = "ops"

            [[pools]]
            asset = "native"
            weight = 10

            [[pools]]
            asset = "MNT"
            weight = 20
            min_deposit = 5
            unstake_lock_heights = 6

            [api]
            port = 3000
            cors_origins = ["http://localhost:3000"]

            [storage]
            enabled = true
            path = "/tmp/x.db"
        """)
        self.assertEqual(cfg.campaign.start_height, 10)
        self.assertEqual(cfg.campaign.reward_per_height, 3)
        self.assertEqual(cfg.campaign.treasury_funding, 1000)
        self.assertEqual(cfg.height.mode, "manual")
        self.assertEqual(cfg.height.initial_height, 4)
        self.assertEqual(cfg.admin.initial_admin, "ops")
        self.assertEqual(len(cfg.pools), 2)
        self.assertEqual(cfg.pools[1].min_deposit, 5)
        self.assertEqual(cfg.pools[1].unstake_lock_heights, 6)
        self.assertEqual(cfg.api.port, 3000)
        self.assertEqual(cfg.api.cors_origins, ["http://localhost:3000"])
        self.assertTrue(cfg.storage.enabled)

    def test_example_config_parses(self):
        root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
        cfg = load_config(os.path.join(root, "metanode.example.toml"))
        self.assertEqual([p.weight for p in cfg.pools], [10, 20])
        self.assertEqual(cfg.pools[0].asset, "native")


# ═══════════════════════════════════════════════════════════════════
#  Environment variable overrides
# ═══════════════════════════════════════════════════════════════════

class TestEnvOverrides(unittest.TestCase):

    @patch.dict(os.environ, {"METANODE_HOST": "10.0.0.1", "METANODE_PORT": "5555"})
    def test_env_host_port(self):
        cfg = load_config(None)
        self.assertEqual(cfg.api.host, "10.0.0.1")
        self.assertEqual(cfg.api.port, 5555)

    @patch.dict(os.environ, {"METANODE_LOG_LEVEL": "debug", "METANODE_LOG_FMT": "json"})
    def test_env_logging(self):
        cfg = load_config(None)
        self.assertEqual(cfg.logging.level, "DEBUG")
        self.assertEqual(cfg.logging.format, "json")

    @patch.dict(os.environ, {"METANODE_DB_PATH": "/tmp/mn.db"})
    def test_env_db_path_enables_storage(self):
        cfg = load_config(None)
        self.assertEqual(cfg.storage.path, "/tmp/mn.db")
        self.assertTrue(cfg.storage.enabled)

    @patch.dict(os.environ, {"METANODE_CORS_ORIGINS": "http://a.com, http://b.com"})
    def test_env_cors_origins(self):
        cfg = load_config(None)
        self.assertEqual(cfg.api.cors_origins, ["http://a.com", "http://b.com"])

    @patch.dict(os.environ, {"METANODE_ADMIN": "root", "METANODE_HEIGHT_MODE": "MANUAL",
                             "METANODE_MAX_POOLS": "8", "METANODE_API_KEY": "k",
                             "METANODE_ADMIN_API_KEY": "ak"})
    def test_env_admin_height_limits(self):
        cfg = load_config(None)
        self.assertEqual(cfg.admin.initial_admin, "root")
        self.assertEqual(cfg.height.mode, "manual")
        self.assertEqual(cfg.limits.max_pools, 8)
        self.assertEqual(cfg.api.api_key, "k")
        self.assertEqual(cfg.api.admin_api_key, "ak")

    @patch.dict(os.environ, {"METANODE_PORT": "8888"})
    def test_env_wins_over_toml(self):
        cfg = _load_toml("""\
            [api]
            port = 1111
        """)
        self.assertEqual(cfg.api.port, 8888)


if __name__ == "__main__":
    unittest.main()
