import json

import pytest

from videocall.core.errors import ProtocolParseError
from videocall.core.protocol import (
    IceCandidate,
    Jsep,
    envelope_jsep,
    message_request,
    new_transaction_id,
    parse_envelope,
    plugin_data,
    plugin_error,
    trickle_request,
)


class TestJsep:
    def test_round_trip(self):
        raw = {"type": "offer", "sdp": "v=0\r\no=- 1 1 IN IP4 0.0.0.0\r\n"}
        assert Jsep.parse(raw).to_dict() == raw

    def test_extra_fields_are_ignored(self):
        jsep = Jsep.parse({"type": "answer", "sdp": "v=0", "trickle": True})
        assert jsep.to_dict() == {"type": "answer", "sdp": "v=0"}

    @pytest.mark.parametrize("payload", [None, {"type": "offer"}, {"type": "bogus", "sdp": "v=0"}, "offer"])
    def test_invalid(self, payload):
        with pytest.raises(ProtocolParseError):
            Jsep.parse(payload)


class TestIceCandidate:
    def test_round_trip(self):
        raw = {"sdpMid": "0", "sdpMLineIndex": 0, "candidate": "candidate:1 1 udp 1 10.0.0.1 5000 typ host"}
        assert IceCandidate.parse(raw).to_dict() == raw

    def test_completed_sentinel(self):
        candidate = IceCandidate.parse({"completed": True})
        assert candidate.completed
        assert candidate.to_dict() == {"completed": True}

    def test_missing_candidate_line(self):
        with pytest.raises(ProtocolParseError):
            IceCandidate.parse({"sdpMid": "0", "sdpMLineIndex": 0})


class TestEnvelopes:
    def test_transaction_ids_are_unique(self):
        ids = {new_transaction_id() for _ in range(500)}
        assert len(ids) == 500
        assert all(txn.startswith("txn-") for txn in ids)

    def test_message_carries_ids_and_jsep(self):
        envelope = message_request(100, 200, "txn-1", {"request": "accept"}, Jsep(type="answer", sdp="A"))
        assert envelope == {
            "janus": "message",
            "session_id": 100,
            "handle_id": 200,
            "transaction": "txn-1",
            "body": {"request": "accept"},
            "jsep": {"type": "answer", "sdp": "A"},
        }

    def test_message_without_jsep(self):
        assert "jsep" not in message_request(1, 2, "t", {"request": "list"})

    def test_trickle_completed(self):
        envelope = trickle_request(1, 2, "t", IceCandidate.end_of_candidates())
        assert envelope["candidate"] == {"completed": True}

    @pytest.mark.parametrize("text", ["not json", "[1, 2]", json.dumps({"transaction": "t"}), json.dumps({"janus": 5})])
    def test_parse_rejects(self, text):
        with pytest.raises(ProtocolParseError):
            parse_envelope(text)

    def test_parse_accepts(self):
        assert parse_envelope('{"janus": "ack", "transaction": "t"}')["janus"] == "ack"

    def test_plugin_data_absent(self):
        assert plugin_data({"janus": "event"}) is None

    def test_plugin_error_forms(self):
        assert plugin_error({"videocall": "event", "error_code": 476, "error": "Username taken"}) == (476, "Username taken")
        assert plugin_error({"result": {"event": "error", "error_code": 479, "error": "User not found"}}) == (479, "User not found")
        assert plugin_error({"result": {"event": "registered", "username": "alice"}}) is None

    def test_envelope_jsep(self):
        assert envelope_jsep({"janus": "event"}) is None
        assert envelope_jsep({"janus": "event", "jsep": {"type": "answer", "sdp": "A"}}).type == "answer"
