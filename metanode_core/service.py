"""
Wiring of a ``StakeLedger`` from configuration.

``build_ledger`` constructs the height source, gateway, authorization gate
and event log described by a ``MetaNodeConfig``; ``bootstrap_pools`` creates
the configured default pools on an empty ledger.
"""

from __future__ import annotations

import logging

from metanode_core.access import AccessControl
from metanode_core.config import MetaNodeConfig
from metanode_core.events import EventLog
from metanode_core.heights import ClockHeightSource, HeightSource, ManualHeightSource
from metanode_core.rewards import CampaignWindow
from metanode_core.staking import StakeLedger
from metanode_core.transfers import InMemoryTransferGateway

logger = logging.getLogger("metanode")


def build_height_source(cfg: MetaNodeConfig) -> HeightSource:
    mode = cfg.height.mode
    if mode == "manual":
        return ManualHeightSource(cfg.height.initial_height)
    if mode == "clock":
        return ClockHeightSource(
            interval_seconds=cfg.height.interval_seconds,
            genesis_time=cfg.height.genesis_time or None,
        )
    raise ValueError(f"Unknown height mode {mode!r}; use 'manual' or 'clock'")


def build_ledger(cfg: MetaNodeConfig) -> StakeLedger:
    gateway = InMemoryTransferGateway()
    ledger = StakeLedger(
        heights=build_height_source(cfg),
        gateway=gateway,
        access=AccessControl(cfg.admin.initial_admin),
        campaign=CampaignWindow(
            start_height=cfg.campaign.start_height,
            end_height=cfg.campaign.end_height,
            reward_per_height=cfg.campaign.reward_per_height,
        ),
        reward_token=cfg.campaign.reward_token,
        events=EventLog(max_records=cfg.limits.max_event_records),
        max_pools=cfg.limits.max_pools,
    )
    if cfg.campaign.treasury_funding > 0:
        gateway.mint(cfg.campaign.reward_token, gateway.custody,
                     cfg.campaign.treasury_funding)
    return ledger


def bootstrap_pools(ledger: StakeLedger, cfg: MetaNodeConfig) -> int:
    """Create configured pools if the ledger has none; return how many."""
    if ledger.pool_count() > 0 or not cfg.pools:
        return 0
    admin = cfg.admin.initial_admin
    for pc in cfg.pools:
        ledger.add_pool(admin, pc.asset, pc.weight, pc.min_deposit,
                        pc.unstake_lock_heights)
    logger.info(f"Bootstrapped {len(cfg.pools)} pools")
    return len(cfg.pools)
