"""
Ledger invariant checks.

  - Accumulators never decrease
  - Settlement heights never decrease
  - Pool ``total_staked`` equals the sum of its users' stake
  - ``total_pool_weight`` equals the sum of pool weights
  - Custody holds at least the principal owed for every staked asset
    (active stake plus queued withdrawal requests)

``capture`` snapshots the fields that must be monotonic; ``verify``
compares the current ledger against the snapshot and returns
``(passed, error_message)``.  The API health check and the test-suite run
these after sequences of operations.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class LedgerSnapshot:
    acc_reward_per_share: dict[int, int] = field(default_factory=dict)
    last_settled_height: dict[int, int] = field(default_factory=dict)


class InvariantChecker:

    def __init__(self):
        self._snapshot: LedgerSnapshot | None = None

    def capture(self, ledger) -> None:
        snap = LedgerSnapshot()
        for pool in ledger.registry.pools:
            snap.acc_reward_per_share[pool.pid] = pool.acc_reward_per_share
            snap.last_settled_height[pool.pid] = pool.last_settled_height
        self._snapshot = snap

    def verify(self, ledger) -> tuple[bool, str]:
        errors: list[str] = []
        # One pass over user records serves every check
        totals = ledger.registry.pool_totals()
        for check in (
            self._check_monotonic,
            self._check_total_staked,
            self._check_total_weight,
            self._check_custody,
        ):
            ok, msg = check(ledger, totals)
            if not ok:
                errors.append(msg)
        self._snapshot = None
        if errors:
            return False, "; ".join(errors)
        return True, ""

    def _check_monotonic(self, ledger, _totals) -> tuple[bool, str]:
        snap = self._snapshot
        if snap is None:
            return True, ""
        for pool in ledger.registry.pools:
            old_acc = snap.acc_reward_per_share.get(pool.pid, 0)
            if pool.acc_reward_per_share < old_acc:
                return (False,
                        f"Accumulator decreased on pool {pool.pid}: "
                        f"{old_acc} -> {pool.acc_reward_per_share}")
            old_height = snap.last_settled_height.get(pool.pid, 0)
            if pool.last_settled_height < old_height:
                return (False,
                        f"Settlement height decreased on pool {pool.pid}: "
                        f"{old_height} -> {pool.last_settled_height}")
        return True, ""

    def _check_total_staked(self, ledger, totals) -> tuple[bool, str]:
        for pool in ledger.registry.pools:
            staked = totals.get(pool.pid, (0, 0))[0]
            if staked != pool.total_staked:
                return (False,
                        f"Stake mismatch on pool {pool.pid}: "
                        f"users hold {staked}, pool records {pool.total_staked}")
        return True, ""

    def _check_total_weight(self, ledger, _totals) -> tuple[bool, str]:
        weights = sum(p.weight for p in ledger.registry.pools)
        if weights != ledger.registry.total_pool_weight:
            return (False,
                    f"Weight mismatch: pools sum to {weights}, "
                    f"total_pool_weight is {ledger.registry.total_pool_weight}")
        return True, ""

    def _check_custody(self, ledger, totals) -> tuple[bool, str]:
        owed: dict[str, int] = {}
        for pool in ledger.registry.pools:
            queued = totals.get(pool.pid, (0, 0))[1]
            owed[pool.asset] = owed.get(pool.asset, 0) + pool.total_staked + queued
        custody = ledger.gateway.custody
        for asset, amount in owed.items():
            held = ledger.gateway.balance_of(asset, custody)
            if held < amount:
                return (False,
                        f"Custody short on {asset}: holds {held}, owes {amount}")
        return True, ""
