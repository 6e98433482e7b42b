import asyncio

import pytest

from conftest import FakeEngine, until
from videocall.core.errors import GatewayTimeout, InvalidState, PeerUnavailable
from videocall.core.negotiation import (
    CallAccepted,
    CallPhase,
    CallState,
    CreateOffer,
    IncomingCall,
    MediaUp,
    NegotiationController,
    OfferReady,
    PlaceCall,
    PrepareMedia,
    ReleaseMedia,
    RemoteHangup,
    SendCall,
    SendHangup,
    TransportLost,
    transition,
)
from videocall.core.protocol import IceCandidate, Jsep

OFFER = Jsep(type="offer", sdp="O")
ANSWER = Jsep(type="answer", sdp="A")


def candidate(n):
    return IceCandidate(candidate=f"candidate:{n} 1 udp 1 10.0.0.{n} 5000 typ host", sdpMid="0", sdpMLineIndex=0)


class FakeSession:
    def __init__(self):
        self.calls = []
        self.trickled = []
        self.reply = None

    async def _pending(self, *call):
        self.calls.append(call)
        self.reply = asyncio.get_running_loop().create_future()
        return self.reply

    async def send_call(self, peer, jsep):
        return await self._pending("call", peer, jsep)

    async def send_accept(self, jsep):
        return await self._pending("accept", jsep)

    async def hangup(self, busy=False):
        self.calls.append(("hangup", busy))

    async def trickle(self, candidate):
        self.trickled.append(candidate)

    def sent(self, name):
        return [c for c in self.calls if c[0] == name]


class Harness:
    def __init__(self, **engine_kwargs):
        self.session = FakeSession()
        self.engines = []
        self.events = []
        self.engine_kwargs = engine_kwargs
        self.controller = NegotiationController(self.session, self._make_engine, self._emit)

    def _make_engine(self):
        engine = FakeEngine(**self.engine_kwargs)
        self.engines.append(engine)
        return engine

    def _emit(self, name, *args):
        self.events.append((name,) + args)

    @property
    def engine(self):
        return self.engines[-1]

    def names(self):
        return [e[0] for e in self.events]

    async def outbound(self, peer="bob"):
        calls = len(self.session.sent("call"))
        task = asyncio.create_task(self.controller.place_call(peer))
        await until(lambda: len(self.session.sent("call")) > calls)
        self.session.reply.set_result({"event": "calling"})
        await task

    async def inbound(self, peer="carol"):
        await self.controller.handle(IncomingCall(peer, OFFER))
        accepts = len(self.session.sent("accept"))
        task = asyncio.create_task(self.controller.accept_incoming())
        await until(lambda: len(self.session.sent("accept")) > accepts)
        self.session.reply.set_result({"event": "accepted"})
        await task


class TestTransition:
    def test_place_call_from_idle(self):
        state, actions = transition(CallState(), PlaceCall("bob"))
        assert state.phase is CallPhase.OFFERING
        assert state.attempt == 1
        assert [type(a) for a in actions] == [PrepareMedia, CreateOffer]

    def test_place_call_while_busy(self):
        with pytest.raises(InvalidState):
            transition(CallState(CallPhase.ESTABLISHED, peer="bob", attempt=1), PlaceCall("dave"))

    def test_offer_ready_sends_call(self):
        state = CallState(CallPhase.OFFERING, peer="bob", attempt=3)
        state, actions = transition(state, OfferReady(3, OFFER))
        assert state.phase is CallPhase.OFFER_SENT
        assert actions == [SendCall("bob", OFFER)]

    def test_stale_outcome_is_dropped(self):
        state = CallState(CallPhase.OFFERING, peer="bob", attempt=3)
        assert transition(state, OfferReady(2, OFFER)) == (state, [])

    def test_incoming_while_established_is_turned_away(self):
        state = CallState(CallPhase.ESTABLISHED, peer="bob", attempt=1)
        assert transition(state, IncomingCall("eve", OFFER)) == (state, [SendHangup(busy=True)])

    def test_remote_hangup_releases_without_hangup(self):
        state = CallState(CallPhase.ESTABLISHED, peer="bob", attempt=1)
        state, actions = transition(state, RemoteHangup("bye"))
        assert state.phase is CallPhase.CLOSING
        assert state.reason == "bye"
        assert actions == [ReleaseMedia()]

    def test_hangups_ignored_when_idle(self):
        state = CallState()
        assert transition(state, RemoteHangup()) == (state, [])
        assert transition(state, TransportLost("SessionLost")) == (state, [])

    def test_accepted_without_answer_fails(self):
        state = CallState(CallPhase.OFFER_SENT, peer="bob", attempt=1)
        state, actions = transition(state, CallAccepted("bob", None))
        assert state.reason == "MediaNegotiationFailed"
        assert actions == [SendHangup(), ReleaseMedia()]

    def test_media_up_notifies_once(self):
        state = CallState(CallPhase.ESTABLISHED, peer="bob", attempt=1)
        state, actions = transition(state, MediaUp())
        assert len(actions) == 1
        assert transition(state, MediaUp()) == (state, [])


class TestOutboundCall:
    @pytest.mark.asyncio
    async def test_happy_path(self):
        h = Harness()
        await h.outbound("bob")
        assert h.controller.phase is CallPhase.OFFER_SENT
        _, peer, jsep = h.session.sent("call")[0]
        assert (peer, jsep.type) == ("bob", "offer")

        await h.controller.handle(CallAccepted("bob", ANSWER))
        await h.controller.handle(MediaUp())
        assert h.controller.phase is CallPhase.ESTABLISHED
        assert h.engine.remote_description == ANSWER
        assert h.names() == ["local_stream", "call_accepted", "call_established"]

    @pytest.mark.asyncio
    async def test_local_candidates_follow_the_call(self):
        h = Harness(candidates=[candidate(1), candidate(2)])
        task = asyncio.create_task(h.controller.place_call("bob"))
        await until(lambda: h.session.sent("call"))
        assert h.session.calls[0][0] == "call"
        await until(lambda: len(h.session.trickled) == 3)
        assert h.session.trickled == [candidate(1), candidate(2), IceCandidate.end_of_candidates()]
        h.session.reply.set_result({})
        await task

    @pytest.mark.asyncio
    async def test_remote_candidates_wait_for_remote_description(self):
        h = Harness()
        await h.outbound()
        await h.controller.add_remote_candidate(candidate(1))
        await h.controller.add_remote_candidate(candidate(2))
        assert h.engine.applied_candidates == []

        await h.controller.handle(CallAccepted("bob", ANSWER))
        assert h.engine.applied_candidates == [candidate(1), candidate(2)]
        names = [c[0] for c in h.engine.calls]
        assert names.index("set_remote_description") < names.index("add_ice_candidate")

        await h.controller.add_remote_candidate(candidate(3))
        assert h.engine.applied_candidates == [candidate(1), candidate(2), candidate(3)]

    @pytest.mark.asyncio
    async def test_gateway_rejects_call(self):
        h = Harness()
        task = asyncio.create_task(h.controller.place_call("dave"))
        await until(lambda: h.session.sent("call"))
        h.session.reply.set_exception(PeerUnavailable(479, "User not found"))
        await task

        assert h.controller.phase is CallPhase.IDLE
        assert h.events[-1] == ("call_ended", "PeerUnavailable")
        assert h.engine.closed == 1
        assert not h.session.sent("hangup")

    @pytest.mark.asyncio
    async def test_offer_failure_ends_call_without_hangup(self):
        h = Harness(fail={"create_offer"})
        await h.controller.place_call("bob")
        assert h.controller.phase is CallPhase.IDLE
        assert h.events[-1] == ("call_ended", "MediaNegotiationFailed")
        assert not h.session.sent("call")
        assert not h.session.sent("hangup")
        assert h.engine.closed == 1

    @pytest.mark.asyncio
    async def test_answer_that_fails_to_apply(self):
        h = Harness(fail={"set_remote_description"})
        await h.outbound()
        await h.controller.handle(CallAccepted("bob", ANSWER))
        assert h.events[-1] == ("call_ended", "MediaNegotiationFailed")
        assert h.session.sent("hangup")

    @pytest.mark.asyncio
    async def test_place_call_while_busy_raises(self):
        h = Harness()
        await h.outbound()
        with pytest.raises(InvalidState):
            await h.controller.place_call("dave")


class TestInboundCall:
    @pytest.mark.asyncio
    async def test_accept_sends_answer(self):
        h = Harness()
        await h.inbound("carol")
        assert ("incoming_call", "carol") in h.events
        _, jsep = h.session.sent("accept")[0]
        assert jsep.type == "answer"
        assert h.engine.remote_description == OFFER
        names = [c[0] for c in h.engine.calls]
        assert names.index("set_remote_description") < names.index("create_answer")
        assert h.controller.phase is CallPhase.ANSWER_SENT

        await h.controller.handle(CallAccepted("carol", None))
        await h.controller.handle(MediaUp())
        assert h.names()[-2:] == ["call_accepted", "call_established"]

    @pytest.mark.asyncio
    async def test_incoming_candidates_buffered_until_accept(self):
        h = Harness()
        await h.controller.handle(IncomingCall("carol", OFFER))
        await h.controller.add_remote_candidate(candidate(1))
        assert h.engine.applied_candidates == []
        task = asyncio.create_task(h.controller.accept_incoming())
        await until(lambda: h.session.sent("accept"))
        assert h.engine.applied_candidates == [candidate(1)]
        h.session.reply.set_result({})
        await task

    @pytest.mark.asyncio
    async def test_reject(self):
        h = Harness()
        await h.controller.handle(IncomingCall("carol", OFFER))
        await h.controller.reject_incoming()
        assert h.session.sent("hangup")
        assert h.events[-1] == ("call_ended", "rejected")
        assert h.engine.closed == 1

    @pytest.mark.asyncio
    async def test_incoming_without_offer_is_refused(self):
        h = Harness()
        await h.controller.handle(IncomingCall("carol", None))
        assert h.controller.phase is CallPhase.IDLE
        assert h.session.sent("hangup")
        assert h.events == [("error", "MediaNegotiationFailed", "incoming call without an offer")]

    @pytest.mark.asyncio
    async def test_second_caller_gets_hangup(self):
        h = Harness()
        await h.outbound()
        await h.controller.handle(CallAccepted("bob", ANSWER))
        await h.controller.handle(IncomingCall("eve", OFFER))
        assert h.controller.phase is CallPhase.ESTABLISHED
        assert h.controller.state.peer == "bob"
        assert h.session.sent("hangup") == [("hangup", True)]
        assert len(h.engines) == 1

    @pytest.mark.asyncio
    async def test_accept_without_incoming_call(self):
        h = Harness()
        with pytest.raises(InvalidState):
            await h.controller.accept_incoming()


class TestTeardown:
    @pytest.mark.asyncio
    async def test_hangup_is_idempotent(self):
        h = Harness()
        await h.outbound()
        await h.controller.handle(CallAccepted("bob", ANSWER))
        await h.controller.hangup()
        await h.controller.hangup()
        assert len(h.session.sent("hangup")) == 1
        assert h.names().count("call_ended") == 1
        assert h.engine.closed == 1
        assert h.controller.phase is CallPhase.IDLE

    @pytest.mark.asyncio
    async def test_transport_lost_mid_call(self):
        h = Harness()
        await h.outbound()
        await h.controller.handle(CallAccepted("bob", ANSWER))
        await h.controller.handle(TransportLost("TransportClosedUnexpectedly"))
        assert h.events[-1] == ("call_ended", "TransportClosedUnexpectedly")
        assert not h.session.sent("hangup")
        assert h.engine.closed == 1

    @pytest.mark.asyncio
    async def test_late_reply_after_hangup_is_ignored(self):
        h = Harness()
        task = asyncio.create_task(h.controller.place_call("bob"))
        await until(lambda: h.session.sent("call"))
        await h.controller.hangup()
        h.session.reply.set_exception(GatewayTimeout("call timed out"))
        await task
        assert h.names().count("call_ended") == 1
        assert h.events[-1] == ("call_ended", "hangup")

    @pytest.mark.asyncio
    async def test_connection_failure_hangs_up(self):
        h = Harness()
        await h.outbound()
        await h.controller.handle(CallAccepted("bob", ANSWER))
        await h.engine.emit_state("failed")
        assert ("connection_state", "failed") in h.events
        assert h.events[-1] == ("call_ended", "connection failed")
        assert h.session.sent("hangup")

    @pytest.mark.asyncio
    async def test_new_call_after_previous_ended(self):
        h = Harness()
        await h.outbound("bob")
        await h.controller.handle(RemoteHangup("bye"))
        await h.outbound("dave")
        assert h.controller.state.attempt == 2
        assert len(h.engines) == 2
        assert h.engines[0].closed == 1
