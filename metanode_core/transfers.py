"""
Asset movement between stakers and the ledger's custody account.

Two payout semantics exist:

  - **strict**: principal deposits and withdrawals.  Any failure raises
    ``TransferFailureError`` and the whole ledger operation aborts.
  - **best-effort**: reward payout.  Sends ``min(amount, custody balance)``
    and reports what was actually sent; a shortfall is not an error.

``InMemoryTransferGateway`` keeps balances in dictionaries and is used by
the service runner and the test-suite.  A production deployment swaps in a
gateway that talks to the real asset ledger.
"""

from __future__ import annotations

import logging

from metanode_core.errors import TransferFailureError, ValidationError
from metanode_core.precision import MAX_UINT, require_amount

logger = logging.getLogger("metanode_transfers")

CUSTODY_ACCOUNT: str = "metanode-stake"


class TransferGateway:
    """Interface consumed by ``StakeLedger``."""

    custody: str = CUSTODY_ACCOUNT

    def pull_strict(self, asset: str, owner: str, amount: int) -> None:
        """Move *amount* of *asset* from *owner* into custody."""
        raise NotImplementedError

    def transfer_strict(self, asset: str, to: str, amount: int) -> None:
        """Move *amount* of *asset* from custody to *to*."""
        raise NotImplementedError

    def transfer_best_effort(self, asset: str, to: str, amount: int) -> int:
        """Send up to *amount* from custody; return the amount sent."""
        raise NotImplementedError

    def balance_of(self, asset: str, holder: str) -> int:
        raise NotImplementedError


class InMemoryTransferGateway(TransferGateway):

    def __init__(self, custody: str = CUSTODY_ACCOUNT) -> None:
        self.custody = custody
        self.balances: dict[str, dict[str, int]] = {}
        # Recipients whose incoming transfers fail, e.g. a contract
        # account that refuses native currency.
        self.rejecting: set[str] = set()

    # ── helpers ──────────────────────────────────────────────────

    def _book(self, asset: str) -> dict[str, int]:
        return self.balances.setdefault(asset, {})

    def _move(self, asset: str, src: str, dst: str, amount: int) -> None:
        book = self._book(asset)
        src_bal = book.get(src, 0)
        if amount > src_bal:
            raise TransferFailureError(
                f"insufficient {asset} balance: {src} has {src_bal}, needs {amount}"
            )
        dst_bal = book.get(dst, 0)
        if dst_bal + amount > MAX_UINT:
            raise TransferFailureError(f"{asset} balance overflow for {dst}")
        book[src] = src_bal - amount
        book[dst] = dst_bal + amount

    def mint(self, asset: str, holder: str, amount: int) -> None:
        """Credit *holder* out of thin air (funding, genesis, tests)."""
        amount = require_amount(amount)
        book = self._book(asset)
        new = book.get(holder, 0) + amount
        if new > MAX_UINT:
            raise ValidationError(f"{asset} balance overflow for {holder}")
        book[holder] = new

    # ── gateway interface ────────────────────────────────────────

    def pull_strict(self, asset: str, owner: str, amount: int) -> None:
        if amount == 0:
            return
        self._move(asset, owner, self.custody, amount)
        logger.debug(f"Pulled {amount} {asset} from {owner}")

    def transfer_strict(self, asset: str, to: str, amount: int) -> None:
        if amount == 0:
            return
        if to in self.rejecting:
            raise TransferFailureError(f"{asset} transfer to {to} failed")
        self._move(asset, self.custody, to, amount)
        logger.debug(f"Sent {amount} {asset} to {to}")

    def transfer_best_effort(self, asset: str, to: str, amount: int) -> int:
        available = self.balance_of(asset, self.custody)
        sent = min(amount, available)
        if sent > 0:
            self._move(asset, self.custody, to, sent)
        if sent < amount:
            logger.warning(
                f"Treasury short: sent {sent} of {amount} {asset} to {to}"
            )
        return sent

    def balance_of(self, asset: str, holder: str) -> int:
        return self.balances.get(asset, {}).get(holder, 0)
