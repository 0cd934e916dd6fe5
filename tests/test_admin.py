"""
Tests for pool and campaign administration on the stake ledger.

Covers:
  - add_pool ordering rule (pool 0 native, later pools tokens)
  - add_pool policy validation, pool ceiling, campaign end
  - Initial settlement height of a new pool
  - set_pool_weight total bookkeeping and optional full settlement
  - update_pool_policy
  - Campaign setters and their events
  - Authorization on every administrative call
"""

import pytest

from metanode_core import events as ev
from metanode_core.access import ADMIN_ROLE
from metanode_core.errors import AuthorizationError, ValidationError
from metanode_core.pools import NATIVE_ASSET
from metanode_core.rewards import CampaignWindow
from metanode_core.staking import StakeLedger


class TestAddPool:
    def test_first_pool_must_be_native(self, ledger):
        with pytest.raises(ValidationError, match="invalid staking token"):
            ledger.add_pool("admin", "MNT", 10, 0, 2)
        pool = ledger.add_pool("admin", NATIVE_ASSET, 10, 0, 2)
        assert pool.pid == 0
        assert pool.is_native

    def test_later_pools_must_not_be_native(self, ledger):
        ledger.add_pool("admin", NATIVE_ASSET, 10, 0, 2)
        with pytest.raises(ValidationError, match="invalid staking token"):
            ledger.add_pool("admin", NATIVE_ASSET, 10, 0, 2)
        assert ledger.add_pool("admin", "MNT", 20, 0, 2).pid == 1
        assert ledger.registry.total_pool_weight == 30

    def test_zero_lock_rejected(self, ledger):
        with pytest.raises(ValidationError, match="withdraw locked blocks"):
            ledger.add_pool("admin", NATIVE_ASSET, 10, 0, 0)

    def test_zero_weight_rejected(self, ledger):
        with pytest.raises(ValidationError, match="pool weight"):
            ledger.add_pool("admin", NATIVE_ASSET, 0, 0, 2)

    def test_empty_asset_rejected(self, ledger):
        with pytest.raises(ValidationError):
            ledger.add_pool("admin", "", 10, 0, 2)

    def test_pool_ceiling(self, heights, gateway, access):
        ledger = StakeLedger(heights, gateway, access,
                             campaign=CampaignWindow(0, 1_000, 1), max_pools=2)
        ledger.add_pool("admin", NATIVE_ASSET, 1, 0, 1)
        ledger.add_pool("admin", "A", 1, 0, 1)
        with pytest.raises(ValidationError, match="pool limit"):
            ledger.add_pool("admin", "B", 1, 0, 1)

    def test_rejected_after_campaign_end(self, ledger, heights):
        heights.set(1_000_000)
        with pytest.raises(ValidationError, match="already ended"):
            ledger.add_pool("admin", NATIVE_ASSET, 10, 0, 2)

    def test_settles_from_campaign_start(self, heights, gateway, access):
        ledger = StakeLedger(heights, gateway, access,
                             campaign=CampaignWindow(100, 1_000, 1))
        heights.set(40)
        assert ledger.add_pool("admin", NATIVE_ASSET, 1, 0, 1).last_settled_height == 100
        heights.set(150)
        assert ledger.add_pool("admin", "MNT", 1, 0, 1).last_settled_height == 150

    def test_settle_all_first(self, pooled_ledger, heights):
        pooled_ledger.deposit("alice", 1, 100)
        heights.set(30)
        pooled_ledger.add_pool("admin", "USDC", 30, 0, 2, settle_all_first=True)
        assert pooled_ledger.pool_info(0)["last_settled_height"] == 30
        assert pooled_ledger.pool_info(1)["last_settled_height"] == 30
        # Pool 1 earned 20/30 of 30 heights before the new weight applied
        assert pooled_ledger.pending_reward(1, "alice") == 20

    def test_requires_admin_role(self, ledger):
        with pytest.raises(AuthorizationError):
            ledger.add_pool("mallory", NATIVE_ASSET, 10, 0, 2)
        assert ledger.pool_count() == 0

    def test_emits_add_pool(self, ledger):
        ledger.add_pool("admin", NATIVE_ASSET, 10, 5, 3)
        event = ledger.events.records(ev.ADD_POOL)[0]
        assert event.fields["pid"] == 0
        assert event.fields["weight"] == 10
        assert event.fields["min_deposit"] == 5
        assert event.fields["unstake_lock_heights"] == 3


class TestSetPoolWeight:
    def test_adjusts_total_by_delta(self, pooled_ledger):
        pooled_ledger.set_pool_weight("admin", 1, 50)
        assert pooled_ledger.pool_info(1)["weight"] == 50
        assert pooled_ledger.registry.total_pool_weight == 60

    def test_zero_weight_rejected(self, pooled_ledger):
        with pytest.raises(ValidationError, match="pool weight"):
            pooled_ledger.set_pool_weight("admin", 1, 0)

    def test_target_pool_settled_before_change(self, pooled_ledger, heights):
        pooled_ledger.deposit("alice", 1, 100)
        heights.set(30)
        pooled_ledger.set_pool_weight("admin", 1, 10)
        assert pooled_ledger.pool_info(1)["last_settled_height"] == 30
        assert pooled_ledger.pool_info(0)["last_settled_height"] == 0
        heights.set(60)
        # 20 from the first 30 heights, then half of the next 30
        assert pooled_ledger.pending_reward(1, "alice") == 35

    def test_changes_other_pools_share(self, pooled_ledger, heights):
        pooled_ledger.deposit_native("bob", 100)
        heights.set(30)
        pooled_ledger.set_pool_weight("admin", 1, 80, settle_all_first=True)
        assert pooled_ledger.pending_reward(0, "bob") == 10
        heights.set(120)
        # Pool 0 now holds 10/90 of emission
        assert pooled_ledger.pending_reward(0, "bob") == 20

    def test_requires_admin_role(self, pooled_ledger):
        with pytest.raises(AuthorizationError):
            pooled_ledger.set_pool_weight("alice", 1, 5)

    def test_unknown_pool(self, pooled_ledger):
        with pytest.raises(ValidationError, match="invalid pid"):
            pooled_ledger.set_pool_weight("admin", 9, 5)


class TestUpdatePoolPolicy:
    def test_updates_fields_and_emits(self, pooled_ledger):
        pooled_ledger.update_pool_policy("admin", 1, 7, 9)
        info = pooled_ledger.pool_info(1)
        assert info["min_deposit"] == 7
        assert info["unstake_lock_heights"] == 9
        fields = pooled_ledger.events.records(ev.UPDATE_POOL_INFO)[-1].fields
        assert fields == {"pid": 1, "min_deposit": 7, "unstake_lock_heights": 9}

    def test_zero_lock_rejected(self, pooled_ledger):
        with pytest.raises(ValidationError):
            pooled_ledger.update_pool_policy("admin", 1, 0, 0)
        assert pooled_ledger.pool_info(1)["unstake_lock_heights"] == 2


class TestCampaign:
    def test_set_window(self, ledger):
        ledger.set_campaign_window("admin", 10, 500)
        assert ledger.campaign.to_dict()["start_height"] == 10
        assert ledger.campaign.end_height == 500
        names = [e.name for e in ledger.events.records()]
        assert names == [ev.SET_START_HEIGHT, ev.SET_END_HEIGHT]

    def test_start_after_end_rejected(self, ledger):
        with pytest.raises(ValidationError):
            ledger.set_start_height("admin", 2_000_000)
        with pytest.raises(ValidationError):
            ledger.set_campaign_window("admin", 5, 4)
        assert ledger.campaign.start_height == 0
        assert ledger.campaign.end_height == 1_000_000

    def test_set_start_and_end_individually(self, ledger):
        ledger.set_start_height("admin", 7)
        ledger.set_end_height("admin", 70)
        assert (ledger.campaign.start_height, ledger.campaign.end_height) == (7, 70)

    def test_reward_per_height_must_be_positive(self, ledger):
        with pytest.raises(ValidationError):
            ledger.set_reward_per_height("admin", 0)
        ledger.set_reward_per_height("admin", 4)
        assert ledger.multiplier(0, 5) == 20

    def test_set_reward_token(self, ledger):
        ledger.set_reward_token("admin", "GOV")
        assert ledger.reward_token == "GOV"
        with pytest.raises(ValidationError):
            ledger.set_reward_token("admin", "")

    def test_update_campaign_applies_all_fields(self, ledger):
        result = ledger.update_campaign("admin", start_height=10, end_height=500,
                                        reward_per_height=3, reward_token="GOV")
        assert result == {"start_height": 10, "end_height": 500,
                          "reward_per_height": 3, "reward_token": "GOV"}
        names = [e.name for e in ledger.events.records()]
        assert names == [ev.SET_START_HEIGHT, ev.SET_END_HEIGHT,
                         ev.SET_REWARD_PER_HEIGHT, ev.SET_REWARD_TOKEN]

    def test_update_campaign_keeps_omitted_fields(self, ledger):
        ledger.update_campaign("admin", reward_per_height=2)
        assert ledger.campaign.to_dict() == {"start_height": 0, "end_height": 1_000_000,
                                             "reward_per_height": 2}
        assert ledger.reward_token == "MetaNode"

    @pytest.mark.parametrize("kwargs", [
        {"start_height": 5, "end_height": 900, "reward_per_height": 0},
        {"start_height": 5, "end_height": 4},
        {"end_height": 900, "reward_token": ""},
    ])
    def test_update_campaign_is_all_or_nothing(self, ledger, kwargs):
        with pytest.raises(ValidationError):
            ledger.update_campaign("admin", **kwargs)
        assert ledger.campaign.to_dict() == {"start_height": 0, "end_height": 1_000_000,
                                             "reward_per_height": 1}
        assert ledger.reward_token == "MetaNode"
        assert len(ledger.events) == 0

    def test_setters_require_admin(self, ledger):
        for call in (
            lambda: ledger.set_reward_token("bob", "X"),
            lambda: ledger.set_start_height("bob", 1),
            lambda: ledger.set_end_height("bob", 10),
            lambda: ledger.set_campaign_window("bob", 1, 10),
            lambda: ledger.set_reward_per_height("bob", 2),
            lambda: ledger.update_campaign("bob", end_height=10),
        ):
            with pytest.raises(AuthorizationError):
                call()

    def test_granted_admin_can_administer(self, ledger):
        ledger.access.grant("admin", ADMIN_ROLE, "ops")
        ledger.add_pool("ops", NATIVE_ASSET, 10, 0, 2)
        assert ledger.pool_count() == 1
