"""
Tests for wiring a ledger from configuration.
"""

import pytest

from metanode_core.config import MetaNodeConfig, PoolConfig
from metanode_core.heights import ClockHeightSource, ManualHeightSource
from metanode_core.service import bootstrap_pools, build_height_source, build_ledger


@pytest.fixture
def cfg():
    c = MetaNodeConfig()
    c.height.mode = "manual"
    c.height.initial_height = 3
    c.campaign.treasury_funding = 500
    c.pools = [PoolConfig(), PoolConfig(asset="MNT", weight=20)]
    return c


class TestBuildLedger:
    def test_campaign_and_limits(self, cfg):
        cfg.limits.max_pools = 5
        ledger = build_ledger(cfg)
        assert ledger.campaign.start_height == 1
        assert ledger.campaign.end_height == 100_001
        assert ledger.max_pools == 5
        assert ledger.heights.current_height() == 3

    def test_treasury_funded(self, cfg):
        ledger = build_ledger(cfg)
        assert ledger.summary()["treasury"] == 500

    def test_initial_admin(self, cfg):
        cfg.admin.initial_admin = "ops"
        ledger = build_ledger(cfg)
        assert ledger.access.has_capability("ops", "admin_role")
        assert not ledger.access.has_capability("admin", "admin_role")


class TestHeightSource:
    def test_manual(self, cfg):
        assert isinstance(build_height_source(cfg), ManualHeightSource)

    def test_clock(self, cfg):
        cfg.height.mode = "clock"
        cfg.height.genesis_time = 1_000.0
        source = build_height_source(cfg)
        assert isinstance(source, ClockHeightSource)
        assert source.genesis_time == 1_000.0

    def test_unknown_mode(self, cfg):
        cfg.height.mode = "lunar"
        with pytest.raises(ValueError, match="Unknown height mode"):
            build_height_source(cfg)


class TestBootstrapPools:
    def test_creates_configured_pools_once(self, cfg):
        ledger = build_ledger(cfg)
        assert bootstrap_pools(ledger, cfg) == 2
        assert ledger.pool_info(0)["asset"] == "native"
        assert ledger.pool_info(1)["weight"] == 20
        assert ledger.pool_info(1)["last_settled_height"] == 3
        assert bootstrap_pools(ledger, cfg) == 0
        assert ledger.pool_count() == 2

    def test_no_pools_configured(self, cfg):
        cfg.pools = []
        ledger = build_ledger(cfg)
        assert bootstrap_pools(ledger, cfg) == 0
