"""
Multi-pool stake ledger with lazy reward accrual.

Stakers deposit an asset into a pool and accrue the reward token in
proportion to the pool's weight and their share of the pool's stake.
Principal leaves the ledger in two steps: ``unstake`` queues a withdrawal
request that unlocks after the pool's lock window, ``withdraw`` pays out
every unlocked request.

Lazy Settlement
───────────────
Nothing happens per height.  Each pool keeps an accumulator

    acc_reward_per_share += pool_reward × SCALE / total_staked

advanced only when a user touches the pool (``settle_pool``), where

    pool_reward = multiplier(last_settled, now) × weight / total_pool_weight

A user is owed ``stake × acc / SCALE − baseline + accrued``; the baseline
is reset after every change to the stake so no interval is credited twice.
If a pool has no stake during an interval, that interval's reward is
forfeited.

Atomicity
─────────
Every public operation runs under one re-entrant lock.  New values are
computed with checked arithmetic first, the strict transfer (if any) runs
next, and only then is state assigned.  A failure at any step therefore
leaves pools, users and balances untouched.  The sole partial outcome is
the best-effort reward payout in ``claim``.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Optional

from metanode_core import events as ev
from metanode_core.access import ADMIN_ROLE, AccessControl
from metanode_core.errors import PausedError, ValidationError
from metanode_core.events import EventLog
from metanode_core.heights import HeightSource
from metanode_core.pools import (
    NATIVE_ASSET,
    NATIVE_PID,
    Pool,
    PoolRegistry,
    UserInfo,
    WithdrawalRequest,
)
from metanode_core.precision import (
    SCALE,
    checked_add,
    checked_sub,
    mul_div,
    require_amount,
)
from metanode_core.rewards import CampaignWindow
from metanode_core.transfers import TransferGateway

logger = logging.getLogger("metanode_staking")

DEFAULT_MAX_POOLS: int = 64


@dataclass(frozen=True)
class Settlement:
    """Accumulator state a pool would have if settled at ``height``."""
    pid: int
    height: int
    acc_reward_per_share: int
    pool_reward: int
    changed: bool


class StakeLedger:
    """
    Owns the pool registry, campaign parameters and pause flags.

    Collaborators are passed in explicitly: the height source, the transfer
    gateway, the authorization gate and the event log.
    """

    def __init__(
        self,
        heights: HeightSource,
        gateway: TransferGateway,
        access: AccessControl,
        campaign: Optional[CampaignWindow] = None,
        reward_token: str = "MetaNode",
        events: Optional[EventLog] = None,
        max_pools: int = DEFAULT_MAX_POOLS,
    ) -> None:
        self.heights = heights
        self.gateway = gateway
        self.access = access
        self.campaign = campaign or CampaignWindow()
        self.reward_token = reward_token
        self.events = events or EventLog()
        self.max_pools = max_pools
        self.registry = PoolRegistry()
        self.paused = False
        self.withdraw_paused = False
        self.claim_paused = False
        self._lock = threading.RLock()

    # ── settlement ──────────────────────────────────────────────────

    def _preview_settlement(self, pool: Pool, height: int) -> Settlement:
        if pool.last_settled_height >= height:
            return Settlement(pool.pid, pool.last_settled_height,
                              pool.acc_reward_per_share, 0, False)
        emission = self.campaign.interval_reward(pool.last_settled_height, height)
        reward = mul_div(emission, pool.weight, self.registry.total_pool_weight,
                         "pool reward")
        acc = pool.acc_reward_per_share
        if pool.total_staked > 0:
            acc = checked_add(
                acc, mul_div(reward, SCALE, pool.total_staked, "reward per share"),
                "acc_reward_per_share",
            )
        return Settlement(pool.pid, height, acc, reward, True)

    def _apply_settlement(self, pool: Pool, s: Settlement) -> None:
        if not s.changed:
            return
        pool.acc_reward_per_share = s.acc_reward_per_share
        pool.last_settled_height = s.height
        self.events.emit(ev.UPDATE_POOL, s.height, pid=pool.pid,
                         last_settled_height=s.height, pool_reward=s.pool_reward)
        logger.debug(
            f"Settled pool {pool.pid} at {s.height}: reward={s.pool_reward} "
            f"acc={s.acc_reward_per_share}"
        )

    def _preview_all(self, height: int) -> list[Settlement]:
        return [self._preview_settlement(p, height) for p in self.registry.pools]

    def _apply_all(self, settlements: list[Settlement]) -> None:
        for s in settlements:
            self._apply_settlement(self.registry.pools[s.pid], s)

    def settle_pool(self, pid: int) -> int:
        """Advance pool *pid* to the current height; return its accumulator."""
        with self._lock:
            pool = self.registry.get_pool(pid)
            self._apply_settlement(
                pool, self._preview_settlement(pool, self.heights.current_height())
            )
            return pool.acc_reward_per_share

    def mass_update_pools(self) -> None:
        """Settle every pool.  Cost is linear in ``max_pools`` at most."""
        with self._lock:
            self._apply_all(self._preview_all(self.heights.current_height()))

    # ── guards ──────────────────────────────────────────────────────

    def _require_not_paused(self) -> None:
        if self.paused:
            raise PausedError("ledger is paused")

    def _require_withdraw_not_paused(self) -> None:
        if self.withdraw_paused:
            raise PausedError("withdraw is paused")

    def _require_claim_not_paused(self) -> None:
        if self.claim_paused:
            raise PausedError("claim is paused")

    @staticmethod
    def _credit_pending(user: UserInfo, acc: int) -> int:
        """``accrued_reward`` after crediting reward earned since the baseline."""
        if user.stake_amount == 0:
            return user.accrued_reward
        return checked_add(user.accrued_reward, user.earned_since_baseline(acc),
                           "accrued reward")

    # ── user operations ─────────────────────────────────────────────

    def deposit(self, caller: str, pid: int, amount: int) -> UserInfo:
        """Stake *amount* of a token pool's asset."""
        amount = require_amount(amount)
        with self._lock:
            self._require_not_paused()
            pool = self.registry.get_pool(pid)
            if pid == NATIVE_PID:
                raise ValidationError("deposit does not support native staking")
            if amount <= pool.min_deposit:
                raise ValidationError("deposit amount is too small")
            return self._deposit(caller, pool, amount)

    def deposit_native(self, caller: str, amount: int) -> UserInfo:
        """Stake native currency into pool 0."""
        amount = require_amount(amount)
        with self._lock:
            self._require_not_paused()
            pool = self.registry.get_pool(NATIVE_PID)
            if not pool.is_native:
                raise ValidationError("invalid staking token address")
            if amount < pool.min_deposit:
                raise ValidationError("deposit amount is too small")
            return self._deposit(caller, pool, amount)

    def _deposit(self, caller: str, pool: Pool, amount: int) -> UserInfo:
        s = self._preview_settlement(pool, self.heights.current_height())
        user = self.registry.peek_user(pool.pid, caller)

        accrued = self._credit_pending(user, s.acc_reward_per_share)
        stake = checked_add(user.stake_amount, amount, "stake amount")
        total = checked_add(pool.total_staked, amount, "total staked")
        baseline = mul_div(stake, s.acc_reward_per_share, SCALE, "baseline")

        self.gateway.pull_strict(pool.asset, caller, amount)

        self._apply_settlement(pool, s)
        record = self.registry.user(pool.pid, caller)
        record.accrued_reward = accrued
        record.stake_amount = stake
        record.settlement_baseline = baseline
        pool.total_staked = total

        self.events.emit(ev.DEPOSIT, s.height, user=caller, pid=pool.pid,
                         amount=amount, stake_amount=stake, total_staked=total)
        logger.info(f"Deposit {amount} into pool {pool.pid} by {caller}")
        return record

    def unstake(self, caller: str, pid: int, amount: int) -> WithdrawalRequest | None:
        """
        Move *amount* of stake into a withdrawal request.

        The request unlocks ``unstake_lock_heights`` after the current
        height.  No asset leaves custody here.
        """
        amount = require_amount(amount)
        with self._lock:
            self._require_not_paused()
            pool = self.registry.get_pool(pid)
            self._require_withdraw_not_paused()
            user = self.registry.peek_user(pid, caller)
            if amount > user.stake_amount:
                raise ValidationError("not enough staking token balance")

            height = self.heights.current_height()
            s = self._preview_settlement(pool, height)
            accrued = self._credit_pending(user, s.acc_reward_per_share)
            stake = user.stake_amount - amount
            total = checked_sub(pool.total_staked, amount, "total staked")
            baseline = mul_div(stake, s.acc_reward_per_share, SCALE, "baseline")
            request = None
            if amount > 0:
                unlock = checked_add(height, pool.unstake_lock_heights, "unlock height")
                request = WithdrawalRequest(amount=amount, unlock_height=unlock)

            self._apply_settlement(pool, s)
            record = self.registry.user(pid, caller)
            record.accrued_reward = accrued
            record.stake_amount = stake
            record.settlement_baseline = baseline
            if request is not None:
                record.requests.append(request)
            pool.total_staked = total

            self.events.emit(ev.REQUEST_UNSTAKE, height, user=caller, pid=pid,
                             amount=amount, stake_amount=stake, total_staked=total,
                             unlock_height=request.unlock_height if request else None)
            logger.info(f"Unstake request {amount} from pool {pid} by {caller}")
            return request

    def withdraw(self, caller: str, pid: int) -> int:
        """Pay out every unlocked withdrawal request; return the total."""
        with self._lock:
            self._require_not_paused()
            pool = self.registry.get_pool(pid)
            self._require_withdraw_not_paused()
            height = self.heights.current_height()
            user = self.registry.peek_user(pid, caller)
            amount, remaining = user.split_unlocked(height)

            if amount > 0:
                self.gateway.transfer_strict(pool.asset, caller, amount)
                self.registry.user(pid, caller).requests = remaining
                logger.info(f"Withdraw {amount} from pool {pid} by {caller}")

            self.events.emit(ev.WITHDRAW, height, user=caller, pid=pid,
                             amount=amount, pending_requests=len(remaining))
            return amount

    def claim(self, caller: str, pid: int) -> int:
        """
        Pay the caller's pending reward.

        The payout is best-effort: if the treasury holds less than the
        pending amount, whatever is available is sent and the rest is
        dropped.  ``accrued_reward`` is zeroed either way.
        """
        with self._lock:
            self._require_not_paused()
            pool = self.registry.get_pool(pid)
            self._require_claim_not_paused()
            s = self._preview_settlement(pool, self.heights.current_height())
            user = self.registry.peek_user(pid, caller)
            pending = user.pending(s.acc_reward_per_share)
            baseline = user.entitlement(s.acc_reward_per_share)

            paid = 0
            if pending > 0:
                paid = self.gateway.transfer_best_effort(self.reward_token, caller, pending)

            self._apply_settlement(pool, s)
            record = self.registry.user(pid, caller)
            if pending > 0:
                record.accrued_reward = 0
            record.settlement_baseline = baseline

            self.events.emit(ev.CLAIM, s.height, user=caller, pid=pid,
                             reward=pending, paid=paid)
            if pending > 0:
                logger.info(f"Claim {paid}/{pending} from pool {pid} by {caller}")
            return paid

    # ── queries ─────────────────────────────────────────────────────

    def pool_count(self) -> int:
        return len(self.registry)

    def multiplier(self, from_height: int, to_height: int) -> int:
        return self.campaign.multiplier(from_height, to_height)

    def pending_reward(
        self, pid: int, address: str, at_height: Optional[int] = None,
    ) -> int:
        """Reward *address* would be owed in pool *pid* at *at_height*."""
        with self._lock:
            pool = self.registry.get_pool(pid)
            if at_height is None:
                at_height = self.heights.current_height()
            s = self._preview_settlement(pool, at_height)
            return self.registry.peek_user(pid, address).pending(s.acc_reward_per_share)

    def staked_balance(self, pid: int, address: str) -> int:
        with self._lock:
            self.registry.get_pool(pid)
            return self.registry.peek_user(pid, address).stake_amount

    def withdraw_amounts(self, pid: int, address: str) -> tuple[int, int]:
        """``(total_requested, currently_unlockable)`` for *address*."""
        with self._lock:
            self.registry.get_pool(pid)
            return self.registry.peek_user(pid, address).withdraw_amounts(
                self.heights.current_height()
            )

    def pool_info(self, pid: int) -> dict:
        with self._lock:
            return self.registry.get_pool(pid).to_dict()

    def user_info(self, pid: int, address: str) -> dict:
        with self._lock:
            self.registry.get_pool(pid)
            info = self.registry.peek_user(pid, address).to_dict()
            info["pending_reward"] = self.pending_reward(pid, address)
            info["requested"], info["unlockable"] = self.withdraw_amounts(pid, address)
            return info

    def summary(self) -> dict:
        with self._lock:
            height = self.heights.current_height()
            return {
                "height": height,
                "pool_count": len(self.registry),
                "total_pool_weight": self.registry.total_pool_weight,
                "reward_token": self.reward_token,
                "campaign": self.campaign.to_dict(),
                "campaign_active": self.campaign.is_active(height),
                "paused": self.paused,
                "withdraw_paused": self.withdraw_paused,
                "claim_paused": self.claim_paused,
                "treasury": self.gateway.balance_of(self.reward_token,
                                                    self.gateway.custody),
            }

    # ── pool administration ─────────────────────────────────────────

    def add_pool(
        self,
        caller: str,
        asset: str,
        weight: int,
        min_deposit: int,
        unstake_lock_heights: int,
        settle_all_first: bool = False,
    ) -> Pool:
        """
        Register a new pool.  The first pool must stake the native
        currency; every later pool must stake a token.
        """
        self.access.require(caller, ADMIN_ROLE)
        weight = require_amount(weight, "weight")
        min_deposit = require_amount(min_deposit, "min_deposit")
        unstake_lock_heights = require_amount(unstake_lock_heights,
                                              "unstake_lock_heights")
        if not isinstance(asset, str) or not asset:
            raise ValidationError("invalid staking token address")
        with self._lock:
            if len(self.registry) == 0:
                if asset != NATIVE_ASSET:
                    raise ValidationError("invalid staking token address")
            elif asset == NATIVE_ASSET:
                raise ValidationError("invalid staking token address")
            if unstake_lock_heights == 0:
                raise ValidationError("invalid withdraw locked blocks")
            if weight == 0:
                raise ValidationError("invalid pool weight")
            if len(self.registry) >= self.max_pools:
                raise ValidationError(f"pool limit reached ({self.max_pools})")
            height = self.heights.current_height()
            if height >= self.campaign.end_height:
                raise ValidationError("already ended")

            settlements = self._preview_all(height) if settle_all_first else []
            total = checked_add(self.registry.total_pool_weight, weight,
                                "total pool weight")
            pool = Pool(
                pid=len(self.registry),
                asset=asset,
                weight=weight,
                last_settled_height=max(height, self.campaign.start_height),
                min_deposit=min_deposit,
                unstake_lock_heights=unstake_lock_heights,
            )

            self._apply_all(settlements)
            self.registry.append_pool(pool, total)
            self.events.emit(ev.ADD_POOL, height, pid=pool.pid, asset=asset,
                             weight=weight, last_settled_height=pool.last_settled_height,
                             min_deposit=min_deposit,
                             unstake_lock_heights=unstake_lock_heights)
            logger.info(f"Pool {pool.pid} added: asset={asset} weight={weight}")
            return pool

    def update_pool_policy(
        self, caller: str, pid: int, min_deposit: int, unstake_lock_heights: int,
    ) -> Pool:
        self.access.require(caller, ADMIN_ROLE)
        min_deposit = require_amount(min_deposit, "min_deposit")
        unstake_lock_heights = require_amount(unstake_lock_heights,
                                              "unstake_lock_heights")
        with self._lock:
            pool = self.registry.get_pool(pid)
            if unstake_lock_heights == 0:
                raise ValidationError("invalid withdraw locked blocks")
            pool.min_deposit = min_deposit
            pool.unstake_lock_heights = unstake_lock_heights
            self.events.emit(ev.UPDATE_POOL_INFO, self.heights.current_height(),
                             pid=pid, min_deposit=min_deposit,
                             unstake_lock_heights=unstake_lock_heights)
            logger.info(
                f"Pool {pid} policy: min_deposit={min_deposit} "
                f"lock={unstake_lock_heights}"
            )
            return pool

    def set_pool_weight(
        self, caller: str, pid: int, weight: int, settle_all_first: bool = False,
    ) -> Pool:
        """
        Change one pool's weight.  Every pool's share moves with the new
        total, so ``settle_all_first`` keeps the others' past accrual exact;
        the target pool is always settled.
        """
        self.access.require(caller, ADMIN_ROLE)
        weight = require_amount(weight, "weight")
        with self._lock:
            pool = self.registry.get_pool(pid)
            if weight == 0:
                raise ValidationError("invalid pool weight")
            height = self.heights.current_height()
            if settle_all_first:
                settlements = self._preview_all(height)
            else:
                settlements = [self._preview_settlement(pool, height)]
            total = checked_add(
                checked_sub(self.registry.total_pool_weight, pool.weight,
                            "total pool weight"),
                weight, "total pool weight",
            )

            self._apply_all(settlements)
            pool.weight = weight
            self.registry.total_pool_weight = total
            self.events.emit(ev.SET_POOL_WEIGHT, height, pid=pid, weight=weight,
                             total_pool_weight=total)
            logger.info(f"Pool {pid} weight={weight} total={total}")
            return pool

    # ── campaign administration ─────────────────────────────────────

    def set_reward_token(self, caller: str, token: str) -> None:
        self.access.require(caller, ADMIN_ROLE)
        if not isinstance(token, str) or not token:
            raise ValidationError("invalid reward token")
        with self._lock:
            self.reward_token = token
            self.events.emit(ev.SET_REWARD_TOKEN, self.heights.current_height(),
                             token=token)
            logger.info(f"Reward token set to {token}")

    def set_start_height(self, caller: str, start_height: int) -> None:
        self.access.require(caller, ADMIN_ROLE)
        with self._lock:
            self.set_campaign_window(caller, start_height, self.campaign.end_height)

    def set_end_height(self, caller: str, end_height: int) -> None:
        self.access.require(caller, ADMIN_ROLE)
        with self._lock:
            self.set_campaign_window(caller, self.campaign.start_height, end_height)

    def set_campaign_window(self, caller: str, start_height: int, end_height: int) -> None:
        self.access.require(caller, ADMIN_ROLE)
        with self._lock:
            CampaignWindow.validate(start_height, end_height,
                                    self.campaign.reward_per_height)
            height = self.heights.current_height()
            if start_height != self.campaign.start_height:
                self.campaign.start_height = start_height
                self.events.emit(ev.SET_START_HEIGHT, height, start_height=start_height)
            if end_height != self.campaign.end_height:
                self.campaign.end_height = end_height
                self.events.emit(ev.SET_END_HEIGHT, height, end_height=end_height)
            logger.info(f"Campaign window [{start_height}, {end_height})")

    def set_reward_per_height(self, caller: str, reward_per_height: int) -> None:
        self.access.require(caller, ADMIN_ROLE)
        with self._lock:
            CampaignWindow.validate(self.campaign.start_height,
                                    self.campaign.end_height, reward_per_height)
            self.campaign.reward_per_height = reward_per_height
            self.events.emit(ev.SET_REWARD_PER_HEIGHT, self.heights.current_height(),
                             reward_per_height=reward_per_height)
            logger.info(f"Reward per height set to {reward_per_height}")

    def update_campaign(
        self,
        caller: str,
        start_height: Optional[int] = None,
        end_height: Optional[int] = None,
        reward_per_height: Optional[int] = None,
        reward_token: Optional[str] = None,
    ) -> dict:
        """
        Change any subset of the campaign parameters in one step.

        Omitted values keep their current setting.  Every value is validated
        against the final window before anything is written, so a rejected
        update leaves the campaign untouched.
        """
        self.access.require(caller, ADMIN_ROLE)
        if reward_token is not None and (not isinstance(reward_token, str)
                                         or not reward_token):
            raise ValidationError("invalid reward token")
        with self._lock:
            campaign = self.campaign
            start = campaign.start_height if start_height is None else start_height
            end = campaign.end_height if end_height is None else end_height
            rate = (campaign.reward_per_height if reward_per_height is None
                    else reward_per_height)
            CampaignWindow.validate(start, end, rate)

            height = self.heights.current_height()
            if start != campaign.start_height:
                campaign.start_height = start
                self.events.emit(ev.SET_START_HEIGHT, height, start_height=start)
            if end != campaign.end_height:
                campaign.end_height = end
                self.events.emit(ev.SET_END_HEIGHT, height, end_height=end)
            if rate != campaign.reward_per_height:
                campaign.reward_per_height = rate
                self.events.emit(ev.SET_REWARD_PER_HEIGHT, height,
                                 reward_per_height=rate)
            if reward_token is not None and reward_token != self.reward_token:
                self.reward_token = reward_token
                self.events.emit(ev.SET_REWARD_TOKEN, height, token=reward_token)
            logger.info(
                f"Campaign updated: [{start}, {end}) at {rate}/height "
                f"paid in {self.reward_token}"
            )
            return {**campaign.to_dict(), "reward_token": self.reward_token}

    # ── pause flags ─────────────────────────────────────────────────

    def _set_flag(self, caller: str, attr: str, value: bool, event: str) -> None:
        self.access.require(caller, ADMIN_ROLE)
        with self._lock:
            if getattr(self, attr) == value:
                state = "paused" if value else "unpaused"
                raise ValidationError(f"{attr.replace('_', ' ')} already {state}")
            setattr(self, attr, value)
            self.events.emit(event, self.heights.current_height(), by=caller)
            logger.warning(f"{event} by {caller}")

    def pause(self, caller: str) -> None:
        self._set_flag(caller, "paused", True, ev.PAUSE)

    def unpause(self, caller: str) -> None:
        self._set_flag(caller, "paused", False, ev.UNPAUSE)

    def pause_withdraw(self, caller: str) -> None:
        self._set_flag(caller, "withdraw_paused", True, ev.PAUSE_WITHDRAW)

    def unpause_withdraw(self, caller: str) -> None:
        self._set_flag(caller, "withdraw_paused", False, ev.UNPAUSE_WITHDRAW)

    def pause_claim(self, caller: str) -> None:
        self._set_flag(caller, "claim_paused", True, ev.PAUSE_CLAIM)

    def unpause_claim(self, caller: str) -> None:
        self._set_flag(caller, "claim_paused", False, ev.UNPAUSE_CLAIM)
