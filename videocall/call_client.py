# call_client.py
"""High-level one-to-one video call client for the Janus videocall plugin.

Wires the WebSocket transport, the Janus session and the negotiation
controller together and re-exposes everything as pyee events::

    client = VideoCallClient(CallConfig(server_uri="ws://gateway:8188"))

    @client.on("incoming_call")
    async def ring(peer):
        await client.accept_incoming()

    await client.connect()
    await client.register("alice")
"""
import asyncio
import logging
from typing import Callable, List, Optional

from pyee.asyncio import AsyncIOEventEmitter

from .config import CallConfig
from .core.errors import InvalidState, SessionLost, VideoCallError
from .core.negotiation import (
    CallAccepted,
    CallPhase,
    IncomingCall,
    MediaUp,
    NegotiationController,
    RemoteHangup,
    SignalingFailed,
    TransportLost,
)
from .core.protocol import IceCandidate, Jsep
from .core.rtc_peer import RTCPeerManager
from .core.session import JanusSession, SessionState
from .core.signaling_client import SignalingClient

logger = logging.getLogger(__name__)


class VideoCallClient(AsyncIOEventEmitter):
    def __init__(self, config: CallConfig, engine_factory: Optional[Callable[[], object]] = None,
                 transport=None):
        super().__init__()
        self.config = config
        self.transport = transport or SignalingClient(config.server_uri, idle_interval=config.idle_interval_sec)
        self.session = JanusSession(
            self.transport,
            self,
            transaction_timeout=config.transaction_timeout,
            keepalive_interval=config.keepalive_interval_sec,
        )
        self.transport.listener = self.session
        self.controller = NegotiationController(
            self.session,
            engine_factory or (lambda: RTCPeerManager(config)),
            self.emit,
        )
        self._disconnected = False
        self._closed = False
        self._tasks: set = set()
        self.on("error", self._log_error)

    @property
    def phase(self) -> CallPhase:
        return self.controller.phase

    @property
    def username(self) -> Optional[str]:
        return self.session.username

    # ---------- Operations ----------

    async def connect(self):
        """Opens the WebSocket and waits until the videocall handle is attached."""
        try:
            await self.transport.connect(self.config.connect_timeout)
        except VideoCallError as e:
            self.emit("error", e.kind, str(e))
            raise
        try:
            await self.session.wait_ready()
        except VideoCallError:
            await self.close()
            raise

    async def register(self, username: str) -> str:
        try:
            return await self.session.register(username)
        except VideoCallError as e:
            self.emit("error", e.kind, str(e))
            raise

    async def place_call(self, peer: str):
        if self.session.state is not SessionState.REGISTERED:
            raise InvalidState(self.session.state, f"call {peer}")
        await self.controller.place_call(peer)

    async def accept_incoming(self):
        await self.controller.accept_incoming()

    async def reject_incoming(self):
        await self.controller.reject_incoming()

    async def hangup(self):
        await self.controller.hangup()

    async def list_users(self) -> List[str]:
        return await self.session.list_users()

    async def close(self):
        if self._closed:
            return
        self._closed = True
        await self.controller.hangup("closed")
        await self.session.close()
        await self.transport.close()

    # ---------- Session listener ----------

    async def on_connected(self):
        logger.info("Connected to %s", self.config.server_uri)
        self.emit("connected")

    async def on_session_ready(self):
        logger.info("Videocall handle ready (session %s)", self.session.session_id)

    async def on_plugin_event(self, name: str, result: dict, jsep: Optional[Jsep]):
        if name == "registered":
            self.emit("registered", result.get("username", self.session.username))
        elif name == "incomingcall":
            await self.controller.handle(IncomingCall(result.get("username"), jsep))
        elif name == "accepted":
            await self.controller.handle(CallAccepted(result.get("username"), jsep))
        elif name == "hangup":
            await self.controller.handle(RemoteHangup(result.get("reason") or "hangup"))
        elif name == "error":
            await self._on_plugin_error(result)
        else:
            logger.debug("Plugin event %s: %s", name, result)

    async def _on_plugin_error(self, result: dict):
        detail = f"{result.get('error_code')}: {result.get('error')}"
        state = self.controller.state
        if state.phase is CallPhase.OFFER_SENT:
            await self.controller.handle(SignalingFailed(state.attempt, "PeerUnavailable", detail))
        else:
            self.emit("error", "GatewayError", detail)

    async def on_remote_candidate(self, candidate: IceCandidate):
        await self.controller.add_remote_candidate(candidate)

    async def on_webrtcup(self):
        await self.controller.handle(MediaUp())

    async def on_media_hangup(self, reason: str):
        await self.controller.handle(RemoteHangup(reason or "hangup"))

    async def on_media_info(self, kind: str, envelope: dict):
        if kind == "slowlink":
            logger.warning("Slow link reported (uplink=%s, lost=%s)", envelope.get("uplink"), envelope.get("lost"))
        else:
            logger.info("Media %s receiving=%s", envelope.get("type"), envelope.get("receiving"))

    async def on_async_error(self, error: VideoCallError):
        self.emit("error", error.kind, str(error))

    async def on_transport_error(self, kind: str, detail: str):
        self.emit("error", kind, detail)

    async def on_session_failed(self, error: VideoCallError):
        self.emit("error", error.kind, str(error))

    async def on_session_lost(self, error: SessionLost):
        self._disconnect()
        await self.controller.handle(TransportLost(error.kind))
        self._spawn(self.transport.close())

    async def on_session_closed(self, error: Optional[VideoCallError]):
        self._disconnect()
        await self.controller.handle(TransportLost(error.kind if error else "closed"))

    # ---------- Helpers ----------

    def _disconnect(self):
        if self._disconnected:
            return
        self._disconnected = True
        logger.info("Disconnected from %s", self.config.server_uri)
        self.emit("disconnected")

    def _spawn(self, coro):
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    @staticmethod
    def _log_error(kind, detail=""):
        logger.error("%s: %s", kind, detail)
