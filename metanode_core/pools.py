"""
Pool registry and per-user records for the stake ledger.

The registry owns the ordered list of pools, the sum of their weights and
the user records keyed by ``(pid, address)``.  Nothing here settles
rewards; ``metanode_core.staking`` drives every mutation through the
settle-then-mutate sequence.

Pool 0 is reserved for the native currency, identified by the
``NATIVE_ASSET`` sentinel.  All later pools stake a token asset.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from metanode_core.errors import ValidationError
from metanode_core.precision import (
    SCALE,
    checked_add,
    checked_sub,
    mul_div,
)

NATIVE_ASSET: str = "native"
NATIVE_PID: int = 0


# ── Records ────────────────────────────────────────────────────────────

@dataclass
class WithdrawalRequest:
    """Principal waiting for its lock window to pass."""
    amount: int
    unlock_height: int

    def is_unlocked(self, height: int) -> bool:
        return self.unlock_height <= height

    def to_dict(self) -> dict:
        return {"amount": self.amount, "unlock_height": self.unlock_height}


@dataclass
class Pool:
    pid: int
    asset: str
    weight: int
    last_settled_height: int
    acc_reward_per_share: int = 0
    total_staked: int = 0
    min_deposit: int = 0
    unstake_lock_heights: int = 1

    @property
    def is_native(self) -> bool:
        return self.asset == NATIVE_ASSET

    def to_dict(self) -> dict:
        return {
            "pid": self.pid,
            "asset": self.asset,
            "weight": self.weight,
            "last_settled_height": self.last_settled_height,
            "acc_reward_per_share": self.acc_reward_per_share,
            "total_staked": self.total_staked,
            "min_deposit": self.min_deposit,
            "unstake_lock_heights": self.unstake_lock_heights,
        }


@dataclass
class UserInfo:
    """
    A staker's position in one pool.

    ``settlement_baseline`` is ``stake_amount × acc / SCALE`` as of the last
    settlement, so only reward earned since then is ever credited again.
    """
    stake_amount: int = 0
    settlement_baseline: int = 0
    accrued_reward: int = 0
    requests: list[WithdrawalRequest] = field(default_factory=list)

    def entitlement(self, acc_reward_per_share: int) -> int:
        return mul_div(self.stake_amount, acc_reward_per_share, SCALE, "entitlement")

    def earned_since_baseline(self, acc_reward_per_share: int) -> int:
        return checked_sub(
            self.entitlement(acc_reward_per_share),
            self.settlement_baseline,
            "entitlement sub baseline",
        )

    def pending(self, acc_reward_per_share: int) -> int:
        """Reward owed and unpaid at the given accumulator value."""
        return checked_add(
            self.earned_since_baseline(acc_reward_per_share),
            self.accrued_reward,
            "pending reward",
        )

    def split_unlocked(self, height: int) -> tuple[int, list[WithdrawalRequest]]:
        """
        Return ``(unlocked_total, remaining)``.

        Every request unlocked at *height* is drained, wherever it sits in
        the queue; the remaining requests keep their relative order.
        """
        total = 0
        remaining: list[WithdrawalRequest] = []
        for req in self.requests:
            if req.is_unlocked(height):
                total = checked_add(total, req.amount, "withdraw total")
            else:
                remaining.append(req)
        return total, remaining

    def withdraw_amounts(self, height: int) -> tuple[int, int]:
        """``(total_requested, currently_unlockable)``."""
        requested = 0
        unlockable = 0
        for req in self.requests:
            requested += req.amount
            if req.is_unlocked(height):
                unlockable += req.amount
        return requested, unlockable

    def to_dict(self) -> dict:
        return {
            "stake_amount": self.stake_amount,
            "settlement_baseline": self.settlement_baseline,
            "accrued_reward": self.accrued_reward,
            "requests": [r.to_dict() for r in self.requests],
        }


# ── Registry ───────────────────────────────────────────────────────────

class PoolRegistry:
    """Ordered pools, their total weight, and user records."""

    def __init__(self) -> None:
        self.pools: list[Pool] = []
        self.total_pool_weight: int = 0
        self.users: dict[tuple[int, str], UserInfo] = {}

    def __len__(self) -> int:
        return len(self.pools)

    def get_pool(self, pid: int) -> Pool:
        if isinstance(pid, bool) or not isinstance(pid, int) or not 0 <= pid < len(self.pools):
            raise ValidationError(f"invalid pid: {pid}")
        return self.pools[pid]

    def peek_user(self, pid: int, address: str) -> UserInfo:
        """The stored record, or a detached zero record (never stored)."""
        return self.users.get((pid, address)) or UserInfo()

    def user(self, pid: int, address: str) -> UserInfo:
        """The stored record, created zero-valued on first use."""
        key = (pid, address)
        record = self.users.get(key)
        if record is None:
            record = UserInfo()
            self.users[key] = record
        return record

    def pool_totals(self) -> dict[int, tuple[int, int]]:
        """``pid -> (active stake, queued withdrawals)`` summed over all users."""
        totals = {pool.pid: [0, 0] for pool in self.pools}
        for (pid, _), u in self.users.items():
            sums = totals.setdefault(pid, [0, 0])
            sums[0] += u.stake_amount
            sums[1] += sum(r.amount for r in u.requests)
        return {pid: (staked, queued) for pid, (staked, queued) in totals.items()}

    def append_pool(self, pool: Pool, total_pool_weight: int) -> None:
        """Append *pool*; the caller supplies the checked new weight sum."""
        self.pools.append(pool)
        self.total_pool_weight = total_pool_weight
