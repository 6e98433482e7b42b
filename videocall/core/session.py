# core/session.py
"""Janus session, plugin handle and transaction bookkeeping.

The session sits between the WebSocket transport and the call logic. It turns
call-control verbs into Janus envelopes, keeps one pending entry per outbound
transaction, and demultiplexes inbound envelopes into listener callbacks.
"""
import asyncio
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Protocol

from .errors import (
    Cancelled,
    GatewayError,
    GatewayTimeout,
    InvalidState,
    MediaNegotiationFailed,
    NotRegistered,
    PeerUnavailable,
    ProtocolParseError,
    SessionLost,
    TransportClosedUnexpectedly,
    VideoCallError,
)
from .protocol import (
    IceCandidate,
    Jsep,
    VIDEOCALL_PLUGIN,
    attach_request,
    create_request,
    destroy_request,
    detach_request,
    envelope_jsep,
    keepalive_request,
    message_request,
    new_transaction_id,
    parse_envelope,
    plugin_data,
    plugin_error,
    trickle_request,
)
from .signaling_client import NORMAL_CLOSE_CODE

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    IDLE = "IDLE"
    CREATING_SESSION = "CREATING_SESSION"
    ATTACHING = "ATTACHING"
    READY = "READY"
    REGISTERED = "REGISTERED"
    FAILED = "FAILED"
    CLOSED = "CLOSED"


ATTACHED_STATES = (SessionState.READY, SessionState.REGISTERED)
TERMINAL_STATES = (SessionState.FAILED, SessionState.CLOSED)
SETUP_KINDS = ("create", "attach")
# The gateway answers these with a bare ack and nothing else
ACK_TERMINAL_KINDS = ("trickle", "keepalive")


@dataclass
class PendingTransaction:
    txn: str
    kind: str
    sent_at: float
    deadline: float
    future: asyncio.Future
    timer: Optional[asyncio.TimerHandle] = None


class SessionListener(Protocol):
    async def on_connected(self) -> None: ...

    async def on_session_ready(self) -> None: ...

    async def on_plugin_event(self, name: str, result: dict, jsep: Optional[Jsep]) -> None: ...

    async def on_remote_candidate(self, candidate: IceCandidate) -> None: ...

    async def on_webrtcup(self) -> None: ...

    async def on_media_hangup(self, reason: str) -> None: ...

    async def on_media_info(self, kind: str, envelope: dict) -> None: ...

    async def on_async_error(self, error: VideoCallError) -> None: ...

    async def on_transport_error(self, kind: str, detail: str) -> None: ...

    async def on_session_failed(self, error: VideoCallError) -> None: ...

    async def on_session_lost(self, error: SessionLost) -> None: ...

    async def on_session_closed(self, error: Optional[VideoCallError]) -> None: ...


class JanusSession:
    """Owns the Janus session id, the videocall handle and the pending transaction table."""

    def __init__(self, transport, listener: SessionListener, transaction_timeout: float = 10.0,
                 keepalive_interval: float = 25.0, plugin: str = VIDEOCALL_PLUGIN):
        self.transport = transport
        self.listener = listener
        self.transaction_timeout = transaction_timeout
        self.keepalive_interval = keepalive_interval
        self.plugin = plugin

        self.state = SessionState.IDLE
        self.session_id: Optional[int] = None
        self.handle_id: Optional[int] = None
        self.username: Optional[str] = None
        self.peer: Optional[str] = None

        self.pending: Dict[str, PendingTransaction] = {}
        self._used_transactions: set = set()
        self._deferred_username: Optional[str] = None
        self._deferred_register: Optional[asyncio.Future] = None
        self._keepalive_task: Optional[asyncio.Task] = None
        self._settled = asyncio.Event()
        self._failure: Optional[VideoCallError] = None
        self._tasks: set = set()

        self._handlers = {
            "success": self._on_success,
            "ack": self._on_ack,
            "error": self._on_error,
            "event": self._on_event,
            "trickle": self._on_trickle,
            "webrtcup": self._on_webrtcup,
            "hangup": self._on_hangup,
            "detached": self._on_detached,
            "timeout": self._on_timeout,
            "media": self._on_media_info,
            "slowlink": self._on_media_info,
        }

    @property
    def attached(self) -> bool:
        return self.state in ATTACHED_STATES and self.handle_id is not None

    # ---------- Lifecycle ----------

    async def start(self):
        """Sends ``create``; the rest of the setup is driven by the replies."""
        if self.state is not SessionState.IDLE:
            raise InvalidState(self.state, "start")
        self._set_state(SessionState.CREATING_SESSION)
        try:
            await self._request("create", create_request)
        except VideoCallError as e:
            await self._fail(e)

    async def wait_ready(self, timeout: Optional[float] = None):
        """Waits until the handle is attached, or raises what stopped it."""
        try:
            await asyncio.wait_for(self._settled.wait(), timeout)
        except asyncio.TimeoutError:
            raise GatewayTimeout(f"session not ready after {timeout}s") from None
        if self._failure is not None:
            raise self._failure
        if not self.attached:
            raise InvalidState(self.state, "wait for readiness")

    async def close(self):
        """Destroys the gateway session best-effort and cancels everything pending."""
        if self.state in TERMINAL_STATES:
            return
        if self.session_id is not None and self.transport.is_connected:
            try:
                await self._request("destroy", lambda txn: destroy_request(self.session_id, txn))
            except VideoCallError as e:
                logger.debug("[Session] Could not send destroy: %s", e)
        self._set_state(SessionState.CLOSED)
        self._shutdown(Cancelled("session closed"))

    # ---------- Transport listener ----------

    async def on_transport_open(self):
        await self.listener.on_connected()
        await self.start()

    async def on_transport_message(self, text: str):
        try:
            envelope = parse_envelope(text)
        except ProtocolParseError as e:
            logger.warning("[Session] Dropping unparsable frame: %s", e)
            return
        logger.debug("[Session] <- %s", text)

        sid = envelope.get("session_id")
        if sid is not None and self.session_id is not None and sid != self.session_id:
            logger.warning("[Session] Ignoring %s for foreign session %s", envelope["janus"], sid)
            return

        handler = self._handlers.get(envelope["janus"])
        if handler is None:
            logger.info("[Session] Unhandled envelope kind %r", envelope["janus"])
            return
        await handler(envelope)

    async def on_transport_closed(self, code: int, reason: str, remote: bool):
        error = None
        if remote or code != NORMAL_CLOSE_CODE:
            error = TransportClosedUnexpectedly(code, reason)
        if self.state not in TERMINAL_STATES:
            self._set_state(SessionState.CLOSED)
        self._shutdown(Cancelled(f"transport closed ({code})"))
        await self.listener.on_session_closed(error)

    async def on_transport_error(self, kind: str, detail: str):
        await self.listener.on_transport_error(kind, detail)

    # ---------- Call-control verbs ----------

    async def register(self, username: str) -> str:
        """Claims ``username``; waits for the handle first if it is not attached yet."""
        if self.state in TERMINAL_STATES or (self.state in ATTACHED_STATES and self.handle_id is None):
            raise InvalidState(self.state, "register")
        if self.state not in ATTACHED_STATES:
            if self._deferred_register is not None and not self._deferred_register.done():
                self._deferred_register.set_exception(Cancelled("superseded by a newer register"))
            logger.info("[Session] Handle not attached yet; deferring register of %s", username)
            self._deferred_username = username
            self._deferred_register = asyncio.get_running_loop().create_future()
            result = await self._deferred_register
        else:
            result = await (await self._send_register(username))
        return result.get("username", username)

    async def send_call(self, peer: str, jsep: Jsep) -> asyncio.Future:
        """Transmits the ``call`` request and returns the pending reply."""
        if self.state is not SessionState.REGISTERED:
            raise InvalidState(self.state, "call")
        if self.peer is not None:
            raise InvalidState(self.state, f"call {peer} while in a call with {self.peer}")
        self.peer = peer
        try:
            future = await self._message("call", {"request": "call", "username": peer}, jsep)
        except VideoCallError:
            self.peer = None
            raise
        future.add_done_callback(self._forget_peer_on_failure)
        return future

    async def call(self, peer: str, jsep: Jsep) -> dict:
        return await (await self.send_call(peer, jsep))

    async def send_accept(self, jsep: Jsep) -> asyncio.Future:
        """Transmits ``accept`` with the local answer and returns the pending reply."""
        if self.state is not SessionState.REGISTERED:
            raise InvalidState(self.state, "accept")
        if jsep.type != "answer":
            raise MediaNegotiationFailed("answer", f"accept needs an answer, got {jsep.type}")
        return await self._message("accept", {"request": "accept"}, jsep)

    async def accept(self, jsep: Jsep) -> dict:
        return await (await self.send_accept(jsep))

    async def hangup(self, busy: bool = False):
        """Fire-and-forget hangup of the current call.

        With ``busy`` it only turns away a second caller and ``peer`` is left alone.
        """
        if not busy:
            self.peer = None
        if not self.attached:
            return
        try:
            await self._message("hangup", {"request": "hangup"})
        except VideoCallError as e:
            logger.warning("[Session] Could not send hangup: %s", e)

    async def trickle(self, candidate: IceCandidate):
        """Forwards one local candidate, or the end-of-candidates sentinel."""
        if not self.attached:
            raise InvalidState(self.state, "trickle")
        await self._request(
            "trickle", lambda txn: trickle_request(self.session_id, self.handle_id, txn, candidate)
        )

    async def keepalive(self):
        if self.session_id is None or self.state in TERMINAL_STATES:
            raise InvalidState(self.state, "keepalive")
        await self._request("keepalive", lambda txn: keepalive_request(self.session_id, txn))

    async def list_users(self) -> List[str]:
        if not self.attached:
            raise InvalidState(self.state, "list users")
        result = await (await self._message("list", {"request": "list"}))
        return list(result.get("list", []))

    async def configure(self, **settings) -> dict:
        """Sends a ``set`` request (audio, video, bitrate, ...) for the current call."""
        if not self.attached:
            raise InvalidState(self.state, "configure")
        return await (await self._message("set", {"request": "set", **settings}))

    async def detach(self):
        if not self.attached:
            raise InvalidState(self.state, "detach")
        await (await self._request(
            "detach", lambda txn: detach_request(self.session_id, self.handle_id, txn)
        ))
        self.handle_id = None
        self.peer = None
        self._set_state(SessionState.READY)
        if self._keepalive_task is not None:
            self._keepalive_task.cancel()
            self._keepalive_task = None

    async def destroy(self):
        if self.session_id is None or self.state in TERMINAL_STATES:
            raise InvalidState(self.state, "destroy")
        await (await self._request("destroy", lambda txn: destroy_request(self.session_id, txn)))
        self._set_state(SessionState.CLOSED)
        self._shutdown(Cancelled("session destroyed"))

    # ---------- Inbound dispatch ----------

    async def _on_success(self, envelope: dict):
        entry = self._take(envelope.get("transaction"))
        if entry is None:
            logger.warning("[Session] success for unknown transaction %s", envelope.get("transaction"))
            return
        data = envelope.get("data") if isinstance(envelope.get("data"), dict) else {}

        if entry.kind == "create" and "session_id" not in envelope:
            self._settle(entry, data)
            await self._on_session_created(data)
        elif entry.kind == "attach":
            self._settle(entry, data)
            await self._on_handle_attached(data)
        else:
            pdata = plugin_data(envelope)
            if pdata is not None:
                data = pdata.get("result") if isinstance(pdata.get("result"), dict) else pdata
            self._settle(entry, data)

    async def _on_session_created(self, data: dict):
        session_id = data.get("id")
        if not isinstance(session_id, int) or session_id <= 0:
            await self._fail(ProtocolParseError(f"create reply without a session id: {data}"))
            return
        self.session_id = session_id
        logger.info("[Session] Session created: %s", session_id)
        self._set_state(SessionState.ATTACHING)
        try:
            await self._request("attach", lambda txn: attach_request(session_id, txn, self.plugin))
        except VideoCallError as e:
            await self._fail(e)

    async def _on_handle_attached(self, data: dict):
        handle_id = data.get("id")
        if not isinstance(handle_id, int) or handle_id <= 0:
            await self._fail(ProtocolParseError(f"attach reply without a handle id: {data}"))
            return
        self.handle_id = handle_id
        logger.info("[Session] Plugin attached, handle ID: %s", handle_id)
        self._set_state(SessionState.READY)
        self._keepalive_task = asyncio.create_task(self._keepalive_loop())
        self._settled.set()
        await self.listener.on_session_ready()
        await self._flush_deferred_register()

    async def _on_ack(self, envelope: dict):
        entry = self.pending.get(envelope.get("transaction"))
        if entry is None:
            return
        if entry.kind in ACK_TERMINAL_KINDS:
            self._settle(self._take(entry.txn), {})
            return
        # The request is being processed asynchronously; give it another full deadline
        loop = asyncio.get_running_loop()
        entry.timer.cancel()
        entry.deadline = loop.time() + self.transaction_timeout
        self._arm(entry)

    async def _on_error(self, envelope: dict):
        error = envelope.get("error") if isinstance(envelope.get("error"), dict) else {}
        failure = GatewayError(error.get("code"), str(error.get("reason", "No reason provided")))
        logger.error("[Session] %s", failure)
        entry = self._take(envelope.get("transaction"))
        if entry is None:
            await self.listener.on_async_error(failure)
            return
        self._settle(entry, error=failure)
        if entry.kind in SETUP_KINDS:
            await self._fail(failure)

    async def _on_event(self, envelope: dict):
        data = plugin_data(envelope)
        if data is None:
            logger.debug("[Session] Ignoring event without plugindata")
            return
        try:
            jsep = envelope_jsep(envelope)
        except ProtocolParseError as e:
            logger.warning("[Session] Dropping malformed jsep: %s", e)
            jsep = None

        entry = self._take(envelope.get("transaction"))
        failure = plugin_error(data)
        if failure is not None:
            code, reason = failure
            error = self._plugin_failure(entry.kind if entry else None, code, reason)
            logger.warning("[Session] Plugin error %s: %s", code, reason)
            if entry is not None:
                self._settle(entry, error=error)
            else:
                await self.listener.on_plugin_event("error", {"error_code": code, "error": reason}, None)
            return

        result = data.get("result") if isinstance(data.get("result"), dict) else {}
        if entry is not None:
            self._settle(entry, result)
        name = result.get("event")
        if not name:
            return
        self._track_call(name, result)
        await self.listener.on_plugin_event(name, result, jsep)

    async def _on_trickle(self, envelope: dict):
        try:
            candidate = IceCandidate.parse(envelope.get("candidate"))
        except ProtocolParseError as e:
            logger.warning("[Session] Dropping remote candidate: %s", e)
            return
        await self.listener.on_remote_candidate(candidate)

    async def _on_webrtcup(self, envelope: dict):
        logger.info("[Session] Media path up for %s/%s", self.session_id, self.handle_id)
        await self.listener.on_webrtcup()

    async def _on_hangup(self, envelope: dict):
        self.peer = None
        await self.listener.on_media_hangup(str(envelope.get("reason", "")))

    async def _on_detached(self, envelope: dict):
        self.handle_id = None
        await self._lose(SessionLost("plugin handle detached"), SessionState.FAILED)

    async def _on_timeout(self, envelope: dict):
        await self._lose(SessionLost("session timed out on the gateway"), SessionState.CLOSED)

    async def _on_media_info(self, envelope: dict):
        await self.listener.on_media_info(envelope["janus"], envelope)

    def _track_call(self, name: str, result: dict):
        if name == "registered":
            self.username = result.get("username", self.username)
            if self.state is SessionState.READY:
                self._set_state(SessionState.REGISTERED)
        elif name == "incomingcall" and self.peer is None:
            self.peer = result.get("username")
        elif name == "accepted":
            self.peer = result.get("username") or self.peer
        elif name == "hangup":
            self.peer = None

    @staticmethod
    def _plugin_failure(kind: Optional[str], code, reason: str) -> GatewayError:
        if kind == "register":
            return NotRegistered(code, reason)
        if kind == "call":
            return PeerUnavailable(code, reason)
        return GatewayError(code, reason)

    # ---------- Transactions ----------

    def _next_transaction(self) -> str:
        txn = new_transaction_id()
        while txn in self._used_transactions:
            txn = new_transaction_id()
        self._used_transactions.add(txn)
        return txn

    async def _request(self, kind: str, build: Callable[[str], dict]) -> asyncio.Future:
        loop = asyncio.get_running_loop()
        txn = self._next_transaction()
        envelope = build(txn)
        now = loop.time()
        entry = PendingTransaction(txn, kind, now, now + self.transaction_timeout, loop.create_future())
        entry.future.add_done_callback(self._log_outcome)
        self.pending[txn] = entry
        self._arm(entry)
        try:
            await self.transport.send(json.dumps(envelope))
        except VideoCallError as e:
            self._settle(self._take(txn), error=e)
            raise
        logger.debug("[Session] -> %s %s", kind, txn)
        return entry.future

    async def _message(self, kind: str, body: dict, jsep: Optional[Jsep] = None) -> asyncio.Future:
        if self.handle_id is None:
            raise InvalidState(self.state, f"{kind} without a plugin handle")
        return await self._request(
            kind, lambda txn: message_request(self.session_id, self.handle_id, txn, body, jsep)
        )

    async def _send_register(self, username: str) -> asyncio.Future:
        logger.info("[Session] Sending register request for username: %s", username)
        return await self._message("register", {"request": "register", "username": username})

    async def _flush_deferred_register(self):
        deferred, username = self._deferred_register, self._deferred_username
        self._deferred_register = self._deferred_username = None
        if deferred is None or deferred.done():
            return
        try:
            future = await self._send_register(username)
        except VideoCallError as e:
            deferred.set_exception(e)
            return
        _chain(future, deferred)

    def _arm(self, entry: PendingTransaction):
        loop = asyncio.get_running_loop()
        entry.timer = loop.call_later(max(0.0, entry.deadline - loop.time()), self._expire, entry.txn)

    def _take(self, txn) -> Optional[PendingTransaction]:
        entry = self.pending.pop(txn, None) if txn is not None else None
        if entry is not None and entry.timer is not None:
            entry.timer.cancel()
        return entry

    @staticmethod
    def _settle(entry: Optional[PendingTransaction], result=None, error: Optional[Exception] = None):
        if entry is None or entry.future.done():
            return
        if error is not None:
            entry.future.set_exception(error)
        else:
            entry.future.set_result(result if result is not None else {})

    def _expire(self, txn: str):
        entry = self._take(txn)
        if entry is None:
            return
        logger.warning("[Session] Transaction %s (%s) got no reply within %.1fs",
                       txn, entry.kind, self.transaction_timeout)
        error = GatewayTimeout(f"{entry.kind} request {txn} timed out")
        self._settle(entry, error=error)
        if entry.kind in SETUP_KINDS:
            self._spawn(self._fail(error))

    @staticmethod
    def _log_outcome(future: asyncio.Future):
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.debug("[Session] Request finished with %s: %s", type(error).__name__, error)

    def _forget_peer_on_failure(self, future: asyncio.Future):
        if future.cancelled() or future.exception() is not None:
            self.peer = None

    # ---------- Teardown ----------

    async def _fail(self, error: VideoCallError):
        if self.state in TERMINAL_STATES:
            return
        logger.error("[Session] Session setup failed: %s", error)
        self._set_state(SessionState.FAILED)
        self._failure = error
        self._shutdown(Cancelled(f"session failed: {error}"))
        await self.listener.on_session_failed(error)

    async def _lose(self, error: SessionLost, state: SessionState):
        if self.state in TERMINAL_STATES:
            return
        logger.warning("[Session] %s", error)
        self._set_state(state)
        self._failure = error
        self._shutdown(Cancelled(str(error)))
        await self.listener.on_session_lost(error)

    def _shutdown(self, reason: Cancelled):
        if self._keepalive_task is not None and self._keepalive_task is not asyncio.current_task():
            self._keepalive_task.cancel()
        self._keepalive_task = None
        for txn in list(self.pending):
            self._settle(self._take(txn), error=reason)
        if self._deferred_register is not None and not self._deferred_register.done():
            self._deferred_register.set_exception(self._failure or reason)
        self._deferred_register = self._deferred_username = None
        if self._failure is None and self.state is SessionState.CLOSED:
            self._failure = reason
        self.peer = None
        self._settled.set()

    async def _keepalive_loop(self):
        while self.attached:
            await asyncio.sleep(self.keepalive_interval)
            if not self.attached:
                break
            try:
                await self.keepalive()
            except VideoCallError as e:
                logger.warning("[Session] Keepalive failed: %s", e)
                break

    def _spawn(self, coro):
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _set_state(self, state: SessionState):
        if state is not self.state:
            logger.info("[Session] %s -> %s", self.state.value, state.value)
            self.state = state


def _chain(source: asyncio.Future, target: asyncio.Future):
    def copy(done: asyncio.Future):
        if target.done():
            return
        if done.cancelled():
            target.set_exception(Cancelled("request cancelled"))
        elif done.exception() is not None:
            target.set_exception(done.exception())
        else:
            target.set_result(done.result())

    source.add_done_callback(copy)
