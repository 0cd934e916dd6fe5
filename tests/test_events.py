"""
Tests for the append-only event log.
"""

import logging

import pytest

from metanode_core import events as ev
from metanode_core.events import EventLog, StakeEvent


class TestEventLog:
    def test_sequence_numbers(self):
        log = EventLog()
        a = log.emit(ev.DEPOSIT, 1, user="alice", amount=5)
        b = log.emit(ev.CLAIM, 2, user="alice", reward=1, paid=1)
        assert (a.seq, b.seq) == (1, 2)
        assert log.last_seq == 2
        assert len(log) == 2

    def test_records_are_frozen(self):
        event = EventLog().emit(ev.PAUSE, 0, by="admin")
        with pytest.raises(AttributeError):
            event.name = "Other"

    def test_filter_by_name(self):
        log = EventLog()
        log.emit(ev.DEPOSIT, 1)
        log.emit(ev.WITHDRAW, 2)
        log.emit(ev.DEPOSIT, 3)
        assert [e.height for e in log.records(ev.DEPOSIT)] == [1, 3]
        assert len(log.records()) == 3

    def test_since_and_limit(self):
        log = EventLog()
        for h in range(10):
            log.emit(ev.UPDATE_POOL, h)
        assert [e.seq for e in log.since(7)] == [8, 9, 10]
        assert [e.seq for e in log.since(0, limit=2)] == [1, 2]
        assert log.since(10) == []

    def test_oldest_records_roll_off(self):
        log = EventLog(max_records=3)
        for h in range(5):
            log.emit(ev.DEPOSIT, h)
        assert [e.seq for e in log.records()] == [3, 4, 5]
        assert log.last_seq == 5

    def test_roll_off_is_logged(self, caplog):
        log = EventLog(max_records=1)
        with caplog.at_level(logging.DEBUG, logger="metanode_events"):
            log.emit(ev.DEPOSIT, 1)
            log.emit(ev.DEPOSIT, 2)
        assert "dropped 1 oldest record" in caplog.text
        assert [e.height for e in log.since(0)] == [2]

    def test_to_dict(self):
        event = StakeEvent(seq=4, name=ev.WITHDRAW, height=9,
                           fields={"amount": 3}, timestamp=1.0)
        assert event.to_dict() == {"seq": 4, "name": "Withdraw", "height": 9,
                                   "fields": {"amount": 3}, "timestamp": 1.0}


class TestLedgerEmission:
    def test_every_user_operation_emits(self, pooled_ledger, heights):
        pooled_ledger.deposit("alice", 1, 10)
        pooled_ledger.unstake("alice", 1, 4)
        heights.set(2)
        pooled_ledger.withdraw("alice", 1)
        pooled_ledger.claim("alice", 1)
        names = [e.name for e in pooled_ledger.events.records()
                 if e.name not in (ev.ADD_POOL, ev.UPDATE_POOL)]
        assert names == [ev.DEPOSIT, ev.REQUEST_UNSTAKE, ev.WITHDRAW, ev.CLAIM]

    def test_request_unstake_fields(self, pooled_ledger):
        pooled_ledger.deposit("alice", 1, 10)
        pooled_ledger.unstake("alice", 1, 4)
        fields = pooled_ledger.events.records(ev.REQUEST_UNSTAKE)[0].fields
        assert fields["amount"] == 4
        assert fields["stake_amount"] == 6
        assert fields["total_staked"] == 6
        assert fields["unlock_height"] == 2
