"""Tests for the ICE candidate buffer."""

from conftest import make_candidate
from meshcast.peer.candidates import CandidateBuffer
from meshcast.peer.connection import UPLINK_KEY, mesh_key


class TestCandidateBuffer:
    def test_drain_returns_receipt_order_once(self):
        buffer = CandidateBuffer()
        key = mesh_key("peer-a")
        first, second, third = make_candidate(1), make_candidate(2), make_candidate(3)
        for candidate in (first, second, third):
            buffer.add(key, candidate)

        assert buffer.pending(key) == 3
        assert buffer.drain(key) == [first, second, third]
        assert buffer.drain(key) == []
        assert key not in buffer

    def test_keys_are_independent(self):
        buffer = CandidateBuffer()
        buffer.add(UPLINK_KEY, make_candidate(1))
        buffer.add(mesh_key("peer-a"), make_candidate(2))

        assert len(buffer.drain(UPLINK_KEY)) == 1
        assert buffer.pending(mesh_key("peer-a")) == 1

    def test_discard(self):
        buffer = CandidateBuffer()
        buffer.add(mesh_key("peer-a"), make_candidate())
        buffer.discard(mesh_key("peer-a"))
        buffer.discard(mesh_key("never-seen"))
        assert len(buffer) == 0

    def test_clear(self):
        buffer = CandidateBuffer()
        buffer.add(UPLINK_KEY, make_candidate(1))
        buffer.add(mesh_key("peer-a"), make_candidate(2))
        buffer.clear()
        assert len(buffer) == 0
