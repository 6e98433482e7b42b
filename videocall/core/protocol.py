# core/protocol.py
"""Janus wire format: envelopes, JSEP objects and ICE candidates.

Builders return plain dicts ready for ``json.dumps``; parsing goes through
``parse_envelope`` which turns malformed frames into ``ProtocolParseError``.
"""
import json
import secrets
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, ValidationError

from .errors import ProtocolParseError

JANUS_SUBPROTOCOL = "janus-protocol"
VIDEOCALL_PLUGIN = "janus.plugin.videocall"

# Envelope kinds the gateway sends back
SUCCESS = "success"
ACK = "ack"
ERROR = "error"
EVENT = "event"
WEBRTCUP = "webrtcup"
HANGUP = "hangup"
DETACHED = "detached"
MEDIA = "media"
SLOWLINK = "slowlink"
TIMEOUT = "timeout"
TRICKLE = "trickle"


def new_transaction_id() -> str:
    return f"txn-{secrets.token_hex(6)}"


class Jsep(BaseModel):
    """``{type, sdp}`` pair exchanged with the gateway."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    type: Literal["offer", "answer", "pranswer"]
    sdp: str

    @classmethod
    def parse(cls, payload: Any) -> "Jsep":
        try:
            return cls.model_validate(payload)
        except ValidationError as e:
            raise ProtocolParseError(f"invalid jsep: {e.errors()[0]['msg']}") from e

    def to_dict(self) -> Dict[str, str]:
        return {"type": self.type, "sdp": self.sdp}


class IceCandidate(BaseModel):
    """One trickled candidate, or the ``{completed: true}`` end-of-candidates sentinel."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    candidate: Optional[str] = None
    sdpMid: Optional[str] = None
    sdpMLineIndex: Optional[int] = None
    completed: bool = False

    @classmethod
    def end_of_candidates(cls) -> "IceCandidate":
        return cls(completed=True)

    @classmethod
    def parse(cls, payload: Any) -> "IceCandidate":
        if isinstance(payload, dict) and payload.get("completed") is True:
            return cls.end_of_candidates()
        try:
            parsed = cls.model_validate(payload)
        except ValidationError as e:
            raise ProtocolParseError(f"invalid candidate: {e.errors()[0]['msg']}") from e
        if not parsed.candidate:
            raise ProtocolParseError("candidate without 'candidate' line")
        return parsed

    def to_dict(self) -> Dict[str, Any]:
        if self.completed:
            return {"completed": True}
        return {"sdpMid": self.sdpMid, "sdpMLineIndex": self.sdpMLineIndex, "candidate": self.candidate}


# ---------- Envelope builders ----------

def create_request(transaction: str) -> dict:
    return {"janus": "create", "transaction": transaction}


def attach_request(session_id: int, transaction: str, plugin: str = VIDEOCALL_PLUGIN) -> dict:
    return {"janus": "attach", "plugin": plugin, "session_id": session_id, "transaction": transaction}


def message_request(session_id: int, handle_id: int, transaction: str, body: dict,
                    jsep: Optional[Jsep] = None) -> dict:
    envelope = {
        "janus": "message",
        "session_id": session_id,
        "handle_id": handle_id,
        "transaction": transaction,
        "body": body,
    }
    if jsep is not None:
        envelope["jsep"] = jsep.to_dict()
    return envelope


def trickle_request(session_id: int, handle_id: int, transaction: str, candidate: IceCandidate) -> dict:
    return {
        "janus": "trickle",
        "session_id": session_id,
        "handle_id": handle_id,
        "transaction": transaction,
        "candidate": candidate.to_dict(),
    }


def keepalive_request(session_id: int, transaction: str) -> dict:
    return {"janus": "keepalive", "session_id": session_id, "transaction": transaction}


def detach_request(session_id: int, handle_id: int, transaction: str) -> dict:
    return {"janus": "detach", "session_id": session_id, "handle_id": handle_id, "transaction": transaction}


def destroy_request(session_id: int, transaction: str) -> dict:
    return {"janus": "destroy", "session_id": session_id, "transaction": transaction}


# ---------- Inbound parsing ----------

def parse_envelope(text: str) -> dict:
    """Decode one inbound frame; anything that is not a Janus envelope is rejected."""
    try:
        data = json.loads(text)
    except (TypeError, ValueError) as e:
        raise ProtocolParseError(f"frame is not JSON: {e}") from e
    if not isinstance(data, dict):
        raise ProtocolParseError("frame is not a JSON object")
    if not isinstance(data.get("janus"), str):
        raise ProtocolParseError("frame has no 'janus' field")
    return data


def plugin_data(envelope: dict) -> Optional[dict]:
    """Return ``plugindata.data`` of an event, or None when there is none."""
    plugindata = envelope.get("plugindata")
    if not isinstance(plugindata, dict):
        return None
    data = plugindata.get("data")
    return data if isinstance(data, dict) else None


def plugin_error(data: dict) -> Optional[tuple]:
    """Extract ``(code, reason)`` from a videocall error event, if it is one.

    The plugin reports errors either at the top of its payload
    (``error_code``/``error``) or as ``result.event == "error"``.
    """
    result = data.get("result") if isinstance(data.get("result"), dict) else {}
    if "error_code" in data or "error" in data:
        return data.get("error_code"), str(data.get("error", ""))
    if result.get("event") == "error":
        return result.get("error_code"), str(result.get("error", ""))
    return None


def envelope_jsep(envelope: dict) -> Optional[Jsep]:
    if "jsep" not in envelope:
        return None
    return Jsep.parse(envelope["jsep"])
