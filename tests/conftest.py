"""
Shared pytest fixtures for the MetaNode Stake test suite.
"""

import pytest

from metanode_core.access import AccessControl
from metanode_core.heights import ManualHeightSource
from metanode_core.pools import NATIVE_ASSET
from metanode_core.rewards import CampaignWindow
from metanode_core.staking import StakeLedger
from metanode_core.transfers import InMemoryTransferGateway


@pytest.fixture
def heights():
    """Manually driven height source starting at 0."""
    return ManualHeightSource(0)


@pytest.fixture
def gateway():
    return InMemoryTransferGateway()


@pytest.fixture
def access():
    """Role table where ``admin`` holds every role."""
    return AccessControl("admin")


@pytest.fixture
def ledger(heights, gateway, access):
    """Empty ledger, campaign [0, 1_000_000) emitting 1 unit per height."""
    return StakeLedger(
        heights, gateway, access,
        campaign=CampaignWindow(start_height=0, end_height=1_000_000,
                                reward_per_height=1),
        reward_token="MetaNode",
    )


@pytest.fixture
def pooled_ledger(ledger, gateway):
    """Native pool (weight 10) and MNT pool (weight 20), lock 2, funded users."""
    ledger.add_pool("admin", NATIVE_ASSET, 10, 0, 2)
    ledger.add_pool("admin", "MNT", 20, 0, 2)
    for user in ("alice", "bob"):
        gateway.mint(NATIVE_ASSET, user, 10_000)
        gateway.mint("MNT", user, 10_000)
    gateway.mint("MetaNode", gateway.custody, 1_000_000)
    return ledger
