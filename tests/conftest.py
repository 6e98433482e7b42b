import asyncio
import json

import pytest

from videocall.core.errors import MediaNegotiationFailed, TransportNotOpen
from videocall.core.protocol import IceCandidate, Jsep

SESSION_ID = 100
HANDLE_ID = 200


class FakeTransport:
    """Stands in for SignalingClient: records outbound envelopes, lets tests feed inbound ones."""

    def __init__(self):
        self.listener = None
        self.sent = []
        self.open = False
        self.closed_with = None

    @property
    def is_connected(self):
        return self.open

    async def connect(self, connect_timeout=None):
        self.open = True
        await self.listener.on_transport_open()

    async def send(self, text):
        if not self.open:
            raise TransportNotOpen("fake transport is closed")
        self.sent.append(json.loads(text))

    async def close(self, code=1000, reason=""):
        if not self.open:
            return
        self.open = False
        self.closed_with = (code, reason)
        await self.listener.on_transport_closed(code, reason, False)

    async def drop(self, code=1006, reason="gone"):
        self.open = False
        await self.listener.on_transport_closed(code, reason, True)

    async def feed(self, envelope):
        await self.listener.on_transport_message(json.dumps(envelope))

    def sent_of(self, kind, request=None):
        found = [e for e in self.sent if e["janus"] == kind]
        if request is not None:
            found = [e for e in found if e.get("body", {}).get("request") == request]
        return found

    def last(self, kind, request=None):
        found = self.sent_of(kind, request)
        assert found, f"nothing sent of kind {kind} {request or ''}"
        return found[-1]


class FakeEngine:
    """Media engine double that records every call made on it."""

    def __init__(self, candidates=None, fail=()):
        self.calls = []
        self.fail = set(fail)
        self.candidates = candidates if candidates is not None else [
            IceCandidate(candidate="candidate:1 1 udp 2122260223 10.0.0.1 5000 typ host", sdpMid="0", sdpMLineIndex=0),
        ]
        self.local_description = None
        self.remote_description = None
        self.applied_candidates = []
        self.closed = 0
        self._candidate_callbacks = []
        self._track_callbacks = []
        self._state_callbacks = []

    def _record(self, name, *args):
        self.calls.append((name,) + args)
        if name in self.fail:
            raise MediaNegotiationFailed(name, "injected failure")

    def on_local_candidate(self, callback):
        self._candidate_callbacks.append(callback)

    def on_track(self, callback):
        self._track_callbacks.append(callback)

    def on_connection_state(self, callback):
        self._state_callbacks.append(callback)

    async def start_local_media(self):
        self._record("start_local_media")
        return ["local-video"]

    async def create_offer(self, constraints):
        self._record("create_offer")
        return Jsep(type="offer", sdp="v=0 offer")

    async def create_answer(self, constraints):
        self._record("create_answer")
        return Jsep(type="answer", sdp="v=0 answer")

    async def set_local_description(self, jsep):
        self._record("set_local_description", jsep.type)
        self.local_description = jsep
        for candidate in self.candidates:
            for callback in self._candidate_callbacks:
                await callback(candidate)
        for callback in self._candidate_callbacks:
            await callback(IceCandidate.end_of_candidates())

    async def set_remote_description(self, jsep):
        self._record("set_remote_description", jsep.type)
        self.remote_description = jsep

    async def add_ice_candidate(self, candidate):
        self._record("add_ice_candidate", candidate)
        self.applied_candidates.append(candidate)

    async def emit_state(self, kind):
        for callback in self._state_callbacks:
            await callback(kind)

    async def close(self):
        self.calls.append(("close",))
        self.closed += 1


class RecordingListener:
    """Session listener that keeps every callback in order."""

    def __init__(self):
        self.events = []

    def names(self):
        return [event[0] for event in self.events]

    def __getattr__(self, name):
        if not name.startswith("on_"):
            raise AttributeError(name)

        async def record(*args):
            self.events.append((name,) + args)

        return record


async def until(predicate, attempts=200):
    """Lets the loop run until ``predicate()`` holds."""
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition never became true")


def success(transaction, data=None, session_id=None):
    envelope = {"janus": "success", "transaction": transaction}
    if data is not None:
        envelope["data"] = data
    if session_id is not None:
        envelope["session_id"] = session_id
    return envelope


def plugin_event(result, transaction=None, jsep=None, session_id=SESSION_ID):
    envelope = {
        "janus": "event",
        "session_id": session_id,
        "sender": HANDLE_ID,
        "plugindata": {"plugin": "janus.plugin.videocall", "data": {"videocall": "event", "result": result}},
    }
    if transaction is not None:
        envelope["transaction"] = transaction
    if jsep is not None:
        envelope["jsep"] = jsep
    return envelope


async def attach(transport):
    """Answers the create and attach requests of a freshly opened session."""
    await transport.feed(success(transport.last("create")["transaction"], {"id": SESSION_ID}))
    await transport.feed(success(transport.last("attach")["transaction"], {"id": HANDLE_ID}, SESSION_ID))


async def register(transport, task, username="alice"):
    """Completes a pending register request started as ``task``."""
    await until(lambda: transport.sent_of("message", "register"))
    txn = transport.last("message", "register")["transaction"]
    await transport.feed({"janus": "ack", "session_id": SESSION_ID, "transaction": txn})
    await transport.feed(plugin_event({"event": "registered", "username": username}, txn))
    return await task


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def listener():
    return RecordingListener()
