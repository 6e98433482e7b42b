# core/negotiation.py
"""Call state machine bridging videocall plugin events and the media engine.

``transition`` is pure: given the current ``CallState`` and an event it returns
the next state and the actions to run. ``NegotiationController`` runs those
actions against the session and the media engine and feeds their outcome back
in as new events. Outcomes are tagged with the call attempt they belong to, so
anything that finishes after a hangup is simply dropped.
"""
import logging
from collections import deque
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, List, Optional, Tuple

from .errors import InvalidState, VideoCallError
from .protocol import IceCandidate, Jsep

logger = logging.getLogger(__name__)

OFFER_CONSTRAINTS = {"OfferToReceiveAudio": True, "OfferToReceiveVideo": True}


class CallPhase(str, Enum):
    IDLE = "IDLE"
    OFFERING = "OFFERING"
    OFFER_SENT = "OFFER_SENT"
    INCOMING = "INCOMING"
    ANSWERING = "ANSWERING"
    ANSWER_SENT = "ANSWER_SENT"
    ESTABLISHED = "ESTABLISHED"
    CLOSING = "CLOSING"


# Phases in which the gateway knows about the call and expects a hangup
GATEWAY_AWARE = (
    CallPhase.OFFER_SENT,
    CallPhase.INCOMING,
    CallPhase.ANSWERING,
    CallPhase.ANSWER_SENT,
    CallPhase.ESTABLISHED,
)


@dataclass(frozen=True)
class CallState:
    phase: CallPhase = CallPhase.IDLE
    peer: Optional[str] = None
    remote_offer: Optional[Jsep] = None
    attempt: int = 0
    reason: Optional[str] = None
    media_up: bool = False

    @property
    def active(self) -> bool:
        return self.phase not in (CallPhase.IDLE, CallPhase.CLOSING)


# ---------- Events ----------

@dataclass(frozen=True)
class PlaceCall:
    peer: str


@dataclass(frozen=True)
class AcceptIncoming:
    pass


@dataclass(frozen=True)
class RejectIncoming:
    pass


@dataclass(frozen=True)
class LocalHangup:
    reason: str = "hangup"


@dataclass(frozen=True)
class IncomingCall:
    peer: str
    jsep: Optional[Jsep]


@dataclass(frozen=True)
class CallAccepted:
    peer: Optional[str]
    jsep: Optional[Jsep]


@dataclass(frozen=True)
class RemoteHangup:
    reason: str = "hangup"


@dataclass(frozen=True)
class MediaUp:
    pass


@dataclass(frozen=True)
class TransportLost:
    reason: str


@dataclass(frozen=True)
class OfferReady:
    attempt: int
    jsep: Jsep


@dataclass(frozen=True)
class AnswerReady:
    attempt: int
    jsep: Jsep


@dataclass(frozen=True)
class CallSent:
    attempt: int


@dataclass(frozen=True)
class AnswerSent:
    attempt: int


@dataclass(frozen=True)
class NegotiationFailed:
    attempt: int
    stage: str
    detail: str = ""


@dataclass(frozen=True)
class SignalingFailed:
    attempt: int
    reason: str
    detail: str = ""


@dataclass(frozen=True)
class MediaReleased:
    attempt: int


OUTCOMES = (OfferReady, AnswerReady, CallSent, AnswerSent, NegotiationFailed, SignalingFailed, MediaReleased)
FAILURES = (NegotiationFailed, SignalingFailed)


# ---------- Actions ----------

@dataclass(frozen=True)
class PrepareMedia:
    pass


@dataclass(frozen=True)
class CreateOffer:
    pass


@dataclass(frozen=True)
class SendCall:
    peer: str
    jsep: Jsep


@dataclass(frozen=True)
class ApplyRemoteDescription:
    jsep: Jsep


@dataclass(frozen=True)
class CreateAnswer:
    pass


@dataclass(frozen=True)
class SendAccept:
    jsep: Jsep


@dataclass(frozen=True)
class SendHangup:
    busy: bool = False


@dataclass(frozen=True)
class ReleaseMedia:
    pass


@dataclass(frozen=True)
class Notify:
    event: str
    args: tuple = ()


def _closing(state: CallState, reason: str, hangup: bool) -> Tuple[CallState, list]:
    actions = [SendHangup()] if hangup else []
    return replace(state, phase=CallPhase.CLOSING, reason=reason), actions + [ReleaseMedia()]


def transition(state: CallState, event) -> Tuple[CallState, list]:
    """Returns ``(next_state, actions)``; unchanged state means the event was ignored."""
    phase = state.phase

    if isinstance(event, OUTCOMES) and event.attempt != state.attempt:
        return state, []

    if isinstance(event, PlaceCall):
        if phase is not CallPhase.IDLE:
            raise InvalidState(phase, f"call {event.peer}")
        started = CallState(CallPhase.OFFERING, peer=event.peer, attempt=state.attempt + 1)
        return started, [PrepareMedia(), CreateOffer()]

    if isinstance(event, IncomingCall):
        if phase is not CallPhase.IDLE:
            # Already busy: turn the new caller away
            return state, [SendHangup(busy=True)]
        if event.jsep is None or event.jsep.type != "offer":
            return state, [SendHangup(), Notify("error", ("MediaNegotiationFailed", "incoming call without an offer"))]
        ringing = CallState(CallPhase.INCOMING, peer=event.peer, remote_offer=event.jsep, attempt=state.attempt + 1)
        return ringing, [PrepareMedia(), Notify("incoming_call", (event.peer,))]

    if isinstance(event, AcceptIncoming):
        if phase is not CallPhase.INCOMING:
            raise InvalidState(phase, "accept an incoming call")
        return (replace(state, phase=CallPhase.ANSWERING),
                [ApplyRemoteDescription(state.remote_offer), CreateAnswer()])

    if isinstance(event, RejectIncoming):
        if phase is not CallPhase.INCOMING:
            raise InvalidState(phase, "reject an incoming call")
        return _closing(state, "rejected", hangup=True)

    if isinstance(event, LocalHangup):
        if not state.active:
            return state, []
        return _closing(state, event.reason, hangup=True)

    if isinstance(event, RemoteHangup):
        if not state.active:
            return state, []
        return _closing(state, event.reason or "hangup", hangup=False)

    if isinstance(event, TransportLost):
        if not state.active:
            return state, []
        return _closing(state, event.reason, hangup=False)

    if isinstance(event, OfferReady) and phase is CallPhase.OFFERING:
        return replace(state, phase=CallPhase.OFFER_SENT), [SendCall(state.peer, event.jsep)]

    if isinstance(event, AnswerReady) and phase is CallPhase.ANSWERING:
        return replace(state, phase=CallPhase.ANSWER_SENT), [SendAccept(event.jsep)]

    if isinstance(event, CallAccepted):
        peer = event.peer or state.peer
        if phase is CallPhase.OFFER_SENT:
            if event.jsep is None or event.jsep.type != "answer":
                return _closing(state, "MediaNegotiationFailed", hangup=True)
            return (replace(state, phase=CallPhase.ESTABLISHED, peer=peer),
                    [ApplyRemoteDescription(event.jsep), Notify("call_accepted", (peer,))])
        if phase is CallPhase.ANSWER_SENT:
            return replace(state, phase=CallPhase.ESTABLISHED, peer=peer), [Notify("call_accepted", (peer,))]
        return state, []

    if isinstance(event, MediaUp):
        if phase in (CallPhase.ESTABLISHED, CallPhase.ANSWER_SENT) and not state.media_up:
            return (replace(state, phase=CallPhase.ESTABLISHED, media_up=True),
                    [Notify("call_established", (state.peer,))])
        return state, []

    if isinstance(event, NegotiationFailed) and state.active:
        return _closing(state, "MediaNegotiationFailed", hangup=phase in GATEWAY_AWARE)

    if isinstance(event, SignalingFailed) and state.active:
        return _closing(state, event.reason, hangup=False)

    if isinstance(event, MediaReleased) and phase is CallPhase.CLOSING:
        return CallState(attempt=state.attempt), [Notify("call_ended", (state.reason,))]

    return state, []


class NegotiationController:
    """Runs the call state machine against the session and a media engine."""

    def __init__(self, session, engine_factory: Callable[[], object], emit: Callable[..., object]):
        self.session = session
        self.engine_factory = engine_factory
        self.engine = None
        self.state = CallState()
        self._emit = emit
        self._reset_ice()

    @property
    def phase(self) -> CallPhase:
        return self.state.phase

    # ---------- Verbs ----------

    async def place_call(self, peer: str):
        await self.handle(PlaceCall(peer))

    async def accept_incoming(self):
        await self.handle(AcceptIncoming())

    async def reject_incoming(self):
        await self.handle(RejectIncoming())

    async def hangup(self, reason: str = "hangup"):
        await self.handle(LocalHangup(reason))

    async def handle(self, event):
        queue = deque([event])
        while queue:
            current = queue.popleft()
            state, actions = transition(self.state, current)
            if state is not self.state:
                if state.phase is not self.state.phase:
                    logger.info("[Negotiation] %s -> %s (%s)", self.state.phase.value, state.phase.value,
                                type(current).__name__)
                self.state = state
            elif not actions:
                logger.debug("[Negotiation] Ignoring %s in %s", type(current).__name__, state.phase.value)
            for action in actions:
                outcome = await self._perform(action, state.attempt)
                if outcome is not None:
                    queue.append(outcome)
                    if isinstance(outcome, FAILURES):
                        break
                if self.state is not state:
                    # Something else moved the call on while we were waiting
                    break

    # ---------- ICE ----------

    async def add_remote_candidate(self, candidate: IceCandidate):
        """Applies a remote candidate now, or holds it until the remote description is set."""
        if not self.state.active:
            logger.debug("[Negotiation] Dropping remote candidate outside of a call")
            return
        if self.engine is None or not self._remote_description_set:
            self._remote_candidates.append(candidate)
            return
        await self._apply_remote_candidate(candidate)

    async def _apply_remote_candidate(self, candidate: IceCandidate):
        try:
            await self.engine.add_ice_candidate(candidate)
        except Exception as e:
            logger.warning("[Negotiation] Error adding ICE candidate: %s", e)

    async def _drain_remote_candidates(self):
        while self._remote_candidates:
            await self._apply_remote_candidate(self._remote_candidates.pop(0))
        self._remote_description_set = True

    async def _on_local_candidate(self, candidate: IceCandidate):
        if not self.state.active:
            return
        if not self._trickle_open:
            self._local_candidates.append(candidate)
            return
        await self._send_local_candidate(candidate)

    async def _send_local_candidate(self, candidate: IceCandidate):
        if candidate.completed:
            if self._gathering_complete_sent:
                return
            self._gathering_complete_sent = True
        try:
            await self.session.trickle(candidate)
        except VideoCallError as e:
            logger.warning("[Negotiation] Could not trickle candidate: %s", e)

    async def _open_trickle(self):
        self._trickle_open = True
        while self._local_candidates:
            await self._send_local_candidate(self._local_candidates.pop(0))

    def _reset_ice(self):
        self._remote_description_set = False
        self._remote_candidates: List[IceCandidate] = []
        self._trickle_open = False
        self._local_candidates: List[IceCandidate] = []
        self._gathering_complete_sent = False

    # ---------- Media engine callbacks ----------

    async def _on_track(self, track):
        self._emit("remote_stream", track)

    async def _on_connection_state(self, kind: str):
        self._emit("connection_state", kind)
        if kind == "failed":
            await self.handle(LocalHangup("connection failed"))

    # ---------- Actions ----------

    async def _perform(self, action, attempt: int):
        if isinstance(action, Notify):
            self._emit(action.event, *action.args)
        elif isinstance(action, PrepareMedia):
            try:
                await self._prepare_media()
            except Exception as e:
                logger.error("[Negotiation] Could not start local media: %s", e)
                return NegotiationFailed(attempt, "media", str(e))
        elif isinstance(action, CreateOffer):
            try:
                offer = await self.engine.create_offer(OFFER_CONSTRAINTS)
                return OfferReady(attempt, await self._set_local(offer))
            except Exception as e:
                logger.error("[Negotiation] Offer failed: %s", e)
                return NegotiationFailed(attempt, "offer", str(e))
        elif isinstance(action, CreateAnswer):
            try:
                answer = await self.engine.create_answer(OFFER_CONSTRAINTS)
                return AnswerReady(attempt, await self._set_local(answer))
            except Exception as e:
                logger.error("[Negotiation] Answer failed: %s", e)
                return NegotiationFailed(attempt, "answer", str(e))
        elif isinstance(action, ApplyRemoteDescription):
            try:
                await self.engine.set_remote_description(action.jsep)
            except Exception as e:
                logger.error("[Negotiation] Remote description rejected: %s", e)
                return NegotiationFailed(attempt, "remote-description", str(e))
            await self._drain_remote_candidates()
        elif isinstance(action, SendCall):
            logger.info("[Negotiation] Calling %s", action.peer)
            return await self._send_and_wait(self.session.send_call(action.peer, action.jsep), attempt, CallSent)
        elif isinstance(action, SendAccept):
            return await self._send_and_wait(self.session.send_accept(action.jsep), attempt, AnswerSent)
        elif isinstance(action, SendHangup):
            await self.session.hangup(busy=action.busy)
        elif isinstance(action, ReleaseMedia):
            await self._release_media()
            return MediaReleased(attempt)
        return None

    async def _send_and_wait(self, send, attempt: int, done):
        try:
            reply = await send
        except VideoCallError as e:
            return SignalingFailed(attempt, e.kind, str(e))
        if self.state.attempt == attempt and self.state.active:
            await self._open_trickle()
        try:
            await reply
        except VideoCallError as e:
            logger.warning("[Negotiation] Gateway refused: %s", e)
            return SignalingFailed(attempt, e.kind, str(e))
        return done(attempt)

    async def _set_local(self, jsep: Jsep) -> Jsep:
        await self.engine.set_local_description(jsep)
        return self.engine.local_description or jsep

    async def _prepare_media(self):
        if self.engine is not None:
            return
        self._reset_ice()
        engine = self.engine_factory()
        engine.on_local_candidate(self._on_local_candidate)
        engine.on_track(self._on_track)
        engine.on_connection_state(self._on_connection_state)
        self.engine = engine
        tracks = await engine.start_local_media()
        if tracks:
            self._emit("local_stream", tracks)

    async def _release_media(self):
        engine, self.engine = self.engine, None
        self._reset_ice()
        if engine is None:
            return
        try:
            await engine.close()
        except Exception as e:
            logger.warning("[Negotiation] Error while releasing media: %s", e)
