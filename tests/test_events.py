"""
Tests for the pool event log.

Covers:
  - Sequence numbering, since / limit / kind filters
  - Subscriber delivery and isolation of failing subscribers
  - Loading persisted records
  - Dict codec for events
"""

import pytest

from shieldpool_core.events import (
    EVENT_TYPES,
    EventLog,
    EventRecord,
    LeafInserted,
    Shield,
    Transfer,
    event_from_dict,
)

TOKEN = "0x" + "c0" * 20


def _leaf(i):
    return LeafInserted(commitment=100 + i, leaf_index=i, root=900 + i)


class TestEventLog:
    def test_sequence_numbers(self):
        log = EventLog()
        records = log.publish_all([_leaf(0), _leaf(1)])
        assert [r.seq for r in records] == [1, 2]
        assert log.last_seq == 2
        assert len(log) == 2

    def test_since(self):
        log = EventLog()
        log.publish_all([_leaf(i) for i in range(5)])
        assert [r.seq for r in log.since(3)] == [4, 5]
        assert [r.seq for r in log.since(0, limit=2)] == [1, 2]
        assert log.since(5) == []

    def test_kind_filter(self):
        log = EventLog()
        log.publish(_leaf(0))
        log.publish(Shield(commitment=100, leaf_index=0, token=TOKEN))
        assert [r.kind for r in log.since(0, kind="Shield")] == ["Shield"]

    def test_subscribers(self):
        log = EventLog()
        seen = []
        log.subscribe(seen.append)
        log.publish(_leaf(0))
        log.unsubscribe(seen.append)
        log.publish(_leaf(1))
        assert [r.seq for r in seen] == [1]

    def test_failing_subscriber_isolated(self, caplog):
        log = EventLog()
        seen = []

        def broken(record):
            raise RuntimeError("boom")

        log.subscribe(broken)
        log.subscribe(seen.append)
        log.publish(_leaf(0))
        assert len(seen) == 1
        assert "subscriber failed" in caplog.text

    def test_load_in_order(self):
        log = EventLog()
        log.load(EventRecord(7, _leaf(0)))
        log.load(EventRecord(9, _leaf(1)))
        assert log.last_seq == 9
        assert log.publish(_leaf(2)).seq == 10
        with pytest.raises(ValueError):
            log.load(EventRecord(8, _leaf(3)))


class TestEventCodec:
    def test_field_elements_as_hex(self):
        d = _leaf(0).to_dict()
        assert d["commitment"] == "0x" + format(100, "064x")
        assert d["leaf_index"] == 0

    def test_transfer_roundtrip(self):
        event = Transfer(nullifier=5, output1=6, output2=0, leaf_index1=3,
                         leaf_index2=None, memo1=b"\xff", memo2=b"")
        back = event_from_dict("Transfer", event.to_dict())
        assert back == event

    def test_record_to_dict(self):
        rec = EventRecord(3, _leaf(0))
        assert rec.to_dict()["kind"] == "LeafInserted"
        assert rec.to_dict()["seq"] == 3

    def test_unknown_kind(self):
        with pytest.raises(ValueError):
            event_from_dict("Mint", {})

    def test_registry_complete(self):
        assert "MultiTransfer" in EVENT_TYPES
        assert "OwnershipTransferred" in EVENT_TYPES


class TestLedgerPublishing:
    def test_rejected_operation_publishes_nothing(self, funded):
        h = funded
        seq = h.pool.events.last_seq
        h.verifier.accept = False
        with pytest.raises(Exception):
            h.pool.transfer(h.transfer_request())
        assert h.pool.events.last_seq == seq

    def test_subscriber_sees_committed_events(self, funded):
        h = funded
        seen = []
        h.pool.events.subscribe(seen.append)
        h.pool.transfer(h.transfer_request())
        assert [r.kind for r in seen] == ["LeafInserted", "LeafInserted", "Transfer"]
