# core/signaling_client.py
import asyncio
import logging
from enum import Enum
from typing import Optional, Protocol

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from .errors import InvalidState, TransportNotOpen, TransportUnreachable
from .protocol import JANUS_SUBPROTOCOL

logger = logging.getLogger(__name__)

NORMAL_CLOSE_CODE = 1000
ABNORMAL_CLOSE_CODE = 1006
# Private-use close code reported when the liveness probe gives up
IDLE_TIMEOUT_CODE = 4000


class TransportState(str, Enum):
    CLOSED = "CLOSED"
    CONNECTING = "CONNECTING"
    OPEN = "OPEN"
    CLOSING = "CLOSING"


class TransportListener(Protocol):
    async def on_transport_open(self) -> None: ...

    async def on_transport_message(self, text: str) -> None: ...

    async def on_transport_closed(self, code: int, reason: str, remote: bool) -> None: ...

    async def on_transport_error(self, kind: str, detail: str) -> None: ...


class SignalingClient:
    """Manages the WebSocket connection to the gateway and hands text frames to a listener."""

    def __init__(self, server_url: str, listener: Optional[TransportListener] = None,
                 idle_interval: float = 20.0, subprotocol: str = JANUS_SUBPROTOCOL):
        self.url = server_url
        self.listener = listener
        self.idle_interval = idle_interval
        self.subprotocol = subprotocol
        self.ws = None
        self.state = TransportState.CLOSED
        self._listen_task: Optional[asyncio.Task] = None
        self._liveness_task: Optional[asyncio.Task] = None
        self._closed = asyncio.Event()
        self._last_received = 0.0
        self._local_close: Optional[tuple] = None

    @property
    def is_connected(self) -> bool:
        """Returns the current connection status."""
        return self.state is TransportState.OPEN

    async def connect(self, connect_timeout: float = 40.0):
        """Opens the WebSocket, negotiating the Janus sub-protocol."""
        if self.listener is None:
            raise InvalidState(self.state, "connect without a listener")
        if self.state is not TransportState.CLOSED:
            raise TransportUnreachable(f"transport is already {self.state.value}")
        self.state = TransportState.CONNECTING
        self._local_close = None
        self._closed = asyncio.Event()
        logger.info("[Signaling] Connecting to %s", self.url)
        try:
            # Keepalive pings are handled by the liveness watchdog below
            self.ws = await websockets.connect(
                self.url,
                subprotocols=[self.subprotocol],
                open_timeout=connect_timeout,
                ping_interval=None,
            )
        except (OSError, asyncio.TimeoutError, InvalidHandshake, InvalidURI) as e:
            self.state = TransportState.CLOSED
            logger.warning("[Signaling] Connection to %s failed: %s", self.url, e)
            raise TransportUnreachable(str(e) or type(e).__name__) from e

        if self.ws.subprotocol != self.subprotocol:
            logger.warning("[Signaling] Server did not accept sub-protocol %r", self.subprotocol)

        self.state = TransportState.OPEN
        self._last_received = asyncio.get_running_loop().time()
        logger.info("[Signaling] Connection successful.")
        await self.listener.on_transport_open()
        self._listen_task = asyncio.create_task(self._listen())
        self._liveness_task = asyncio.create_task(self._watch_liveness())
        return self.ws

    async def send(self, text: str):
        """Sends one text frame; only allowed while OPEN."""
        if self.state is not TransportState.OPEN or self.ws is None:
            raise TransportNotOpen(f"cannot send while {self.state.value}")
        try:
            await self.ws.send(text)
        except ConnectionClosed as e:
            raise TransportNotOpen(f"connection closed while sending: {e}") from e

    async def close(self, code: int = NORMAL_CLOSE_CODE, reason: str = ""):
        """Closes the WebSocket connection gracefully. Safe to call repeatedly."""
        if self.state in (TransportState.CLOSED, TransportState.CLOSING):
            return
        self.state = TransportState.CLOSING
        self._local_close = (code, reason)
        if self.ws is not None:
            await self.ws.close(code, reason)
        if self._listen_task is not None and self._listen_task is not asyncio.current_task():
            await self._listen_task
        else:
            await self._finish_close()

    async def _listen(self):
        """Listens for incoming frames until the socket goes away."""
        loop = asyncio.get_running_loop()
        try:
            async for message in self.ws:
                self._last_received = loop.time()
                if isinstance(message, bytes):
                    try:
                        message = message.decode("utf-8")
                    except UnicodeDecodeError:
                        logger.warning("[Signaling] Dropping non UTF-8 binary frame.")
                        await self.listener.on_transport_error("decode", "binary frame is not UTF-8")
                        continue
                try:
                    await self.listener.on_transport_message(message)
                except Exception as e:
                    logger.exception("[Signaling] Listener failed on inbound frame")
                    await self.listener.on_transport_error("listener", str(e))
        except ConnectionClosed:
            logger.debug("[Signaling] Connection closed.")
        finally:
            await self._finish_close()

    async def _watch_liveness(self):
        """Probes the gateway with a ping whenever nothing arrived for ``idle_interval``."""
        loop = asyncio.get_running_loop()
        while self.state is TransportState.OPEN:
            idle = loop.time() - self._last_received
            wait = self.idle_interval - idle
            if wait > 0:
                try:
                    await asyncio.wait_for(self._closed.wait(), timeout=wait)
                    return
                except asyncio.TimeoutError:
                    continue
            try:
                pong = await self.ws.ping()
                await asyncio.wait_for(pong, timeout=self.idle_interval)
            except asyncio.TimeoutError:
                logger.warning("[Signaling] No traffic for %.0fs and no pong; closing.", self.idle_interval)
                await self.close(IDLE_TIMEOUT_CODE, "idle timeout")
                return
            except ConnectionClosed:
                return
            self._last_received = loop.time()

    async def _finish_close(self):
        if self.state is TransportState.CLOSED and self._closed.is_set():
            return
        if self._local_close is not None:
            code, reason = self._local_close
            remote = False
        else:
            code = self.ws.close_code if self.ws is not None and self.ws.close_code else ABNORMAL_CLOSE_CODE
            reason = (self.ws.close_reason if self.ws is not None else "") or ""
            remote = True
        self.state = TransportState.CLOSED
        self._closed.set()
        logger.info("[Signaling] WebSocket closed. Code: %s, Reason: %s, remote=%s", code, reason, remote)
        await self.listener.on_transport_closed(code, reason, remote)
