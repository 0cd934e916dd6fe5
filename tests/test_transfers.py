"""
Tests for the in-memory transfer gateway.

Covers:
  - Strict pulls into custody and strict payouts
  - Rejecting recipients
  - Best-effort payout shortfall
  - Balance overflow
"""

import logging

import pytest

from metanode_core.errors import TransferFailureError, ValidationError
from metanode_core.precision import MAX_UINT
from metanode_core.transfers import CUSTODY_ACCOUNT, InMemoryTransferGateway


@pytest.fixture
def gw():
    g = InMemoryTransferGateway()
    g.mint("MNT", "alice", 100)
    return g


class TestStrict:
    def test_pull_moves_into_custody(self, gw):
        gw.pull_strict("MNT", "alice", 60)
        assert gw.balance_of("MNT", "alice") == 40
        assert gw.balance_of("MNT", CUSTODY_ACCOUNT) == 60

    def test_pull_insufficient_balance(self, gw):
        with pytest.raises(TransferFailureError, match="insufficient"):
            gw.pull_strict("MNT", "alice", 101)
        assert gw.balance_of("MNT", "alice") == 100

    def test_zero_pull_is_noop(self, gw):
        gw.pull_strict("MNT", "nobody", 0)
        assert gw.balance_of("MNT", "nobody") == 0

    def test_transfer_out_of_custody(self, gw):
        gw.pull_strict("MNT", "alice", 60)
        gw.transfer_strict("MNT", "bob", 25)
        assert gw.balance_of("MNT", "bob") == 25
        with pytest.raises(TransferFailureError):
            gw.transfer_strict("MNT", "bob", 36)

    def test_rejecting_recipient(self, gw):
        gw.pull_strict("MNT", "alice", 60)
        gw.rejecting.add("vault")
        with pytest.raises(TransferFailureError, match="failed"):
            gw.transfer_strict("MNT", "vault", 1)
        assert gw.balance_of("MNT", CUSTODY_ACCOUNT) == 60

    def test_recipient_overflow(self, gw):
        gw.mint("MNT", CUSTODY_ACCOUNT, 10)
        gw.mint("MNT", "whale", MAX_UINT)
        with pytest.raises(TransferFailureError, match="overflow"):
            gw.transfer_strict("MNT", "whale", 1)


class TestBestEffort:
    def test_full_payout(self, gw):
        gw.mint("MetaNode", CUSTODY_ACCOUNT, 50)
        assert gw.transfer_best_effort("MetaNode", "alice", 20) == 20
        assert gw.balance_of("MetaNode", CUSTODY_ACCOUNT) == 30

    def test_shortfall_sends_what_is_available(self, gw, caplog):
        gw.mint("MetaNode", CUSTODY_ACCOUNT, 5)
        with caplog.at_level(logging.WARNING, logger="metanode_transfers"):
            sent = gw.transfer_best_effort("MetaNode", "alice", 10)
        assert sent == 5
        assert gw.balance_of("MetaNode", "alice") == 5
        assert "Treasury short" in caplog.text

    def test_empty_treasury(self, gw):
        assert gw.transfer_best_effort("MetaNode", "alice", 10) == 0


class TestMint:
    def test_mint_overflow(self, gw):
        with pytest.raises(ValidationError):
            gw.mint("MNT", "alice", MAX_UINT)

    def test_custom_custody_account(self):
        g = InMemoryTransferGateway(custody="vault")
        g.mint("X", "a", 3)
        g.pull_strict("X", "a", 3)
        assert g.balance_of("X", "vault") == 3
