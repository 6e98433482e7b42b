# core/rtc_peer.py
import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Protocol, Sequence, Union

from aiortc import (
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCRtpSender,
    RTCSessionDescription,
)
from aiortc.contrib.media import MediaPlayer, MediaRelay
from aiortc.sdp import SessionDescription, candidate_from_sdp, candidate_to_sdp

from .errors import MediaNegotiationFailed
from .protocol import IceCandidate, Jsep

logger = logging.getLogger(__name__)

Callback = Callable[..., Union[None, Awaitable[None]]]

FRONT_CAMERA_HINTS = ("front", "user", "facetime", "integrated")


class MediaEngine(Protocol):
    """What the negotiation layer needs from a WebRTC stack."""

    local_description: Optional[Jsep]

    async def start_local_media(self) -> list: ...

    async def create_offer(self, constraints: dict) -> Jsep: ...

    async def create_answer(self, constraints: dict) -> Jsep: ...

    async def set_local_description(self, jsep: Jsep) -> None: ...

    async def set_remote_description(self, jsep: Jsep) -> None: ...

    async def add_ice_candidate(self, candidate: IceCandidate) -> None: ...

    def on_local_candidate(self, callback: Callback) -> None: ...

    def on_track(self, callback: Callback) -> None: ...

    def on_connection_state(self, callback: Callback) -> None: ...

    async def close(self) -> None: ...


def pick_camera(devices: Sequence[str], prefer_front: bool = True) -> Optional[str]:
    """Picks the capture device, favouring a front-facing one when asked to."""
    if not devices:
        return None
    if prefer_front:
        for device in devices:
            if any(hint in device.lower() for hint in FRONT_CAMERA_HINTS):
                return device
    return devices[0]


def local_candidates(sdp: str) -> List[IceCandidate]:
    """Extracts the gathered candidates from a local session description."""
    description = SessionDescription.parse(sdp)
    found = []
    for index, media in enumerate(description.media):
        for candidate in media.ice_candidates:
            found.append(IceCandidate(
                candidate="candidate:" + candidate_to_sdp(candidate),
                sdpMid=media.rtp.muxId,
                sdpMLineIndex=index,
            ))
    return found


def prefer_h264(codecs: list) -> list:
    """Moves H264 (high profile first) ahead of the other video codecs."""
    def rank(codec):
        if codec.mimeType.lower() != "video/h264":
            return 2
        profile = (codec.parameters or {}).get("profile-level-id", "")
        return 0 if str(profile).lower().startswith("64") else 1

    return sorted(codecs, key=rank)


class RTCPeerManager:
    """``MediaEngine`` backed by a single aiortc peer connection."""

    def __init__(self, config):
        self.config = config
        self.pc: Optional[RTCPeerConnection] = None
        self.relay: Optional[MediaRelay] = None
        self.local_tracks: list = []
        self._resources: list = []
        self._candidate_callbacks: List[Callback] = []
        self._track_callbacks: List[Callback] = []
        self._state_callbacks: List[Callback] = []
        self._closed = False

    @property
    def local_description(self) -> Optional[Jsep]:
        if self.pc is None or self.pc.localDescription is None:
            return None
        return Jsep(type=self.pc.localDescription.type, sdp=self.pc.localDescription.sdp)

    # ---------- Callback registration ----------

    def on_local_candidate(self, callback: Callback):
        self._candidate_callbacks.append(callback)

    def on_track(self, callback: Callback):
        self._track_callbacks.append(callback)

    def on_connection_state(self, callback: Callback):
        self._state_callbacks.append(callback)

    # ---------- Setup ----------

    def _ensure_pc(self) -> RTCPeerConnection:
        if self._closed:
            raise MediaNegotiationFailed("media", "engine already closed")
        if self.pc is not None:
            return self.pc

        ice_servers = [
            RTCIceServer(urls=server.urls, username=server.username, credential=server.credential)
            for server in self.config.ice_servers
        ]
        pc = RTCPeerConnection(RTCConfiguration(iceServers=ice_servers))
        self.pc = pc
        self._resources.append(("peer connection", self._close_pc))

        @pc.on("track")
        async def on_track(track):
            logger.info("[RTC] Remote %s track received", track.kind)
            await self._invoke(self._track_callbacks, track)

        @pc.on("connectionstatechange")
        async def on_connectionstatechange():
            logger.info("[RTC] connectionState -> %s", pc.connectionState)
            await self._invoke(self._state_callbacks, pc.connectionState)

        return pc

    async def start_local_media(self) -> list:
        """Opens the camera (and microphone) and adds them to the peer connection."""
        pc = self._ensure_pc()
        camera = pick_camera(self.config.camera_devices, self.config.prefer_front_camera)

        video_track = audio_track = None
        if camera is not None:
            player = MediaPlayer(
                camera,
                format=self.config.camera_format,
                options={
                    "video_size": f"{self.config.video_width}x{self.config.video_height}",
                    "framerate": str(self.config.video_fps),
                },
            )
            self._resources.append(("capturer", lambda: self._stop_player(player)))
            video_track = player.video
            audio_track = player.audio
            logger.info("[RTC] Capturing from %s", camera)
        if self.config.audio_device:
            microphone = MediaPlayer(self.config.audio_device, format=self.config.audio_format)
            self._resources.append(("microphone", lambda: self._stop_player(microphone)))
            audio_track = microphone.audio

        if video_track is None and audio_track is None:
            logger.info("[RTC] No capture device; receiving only")
            pc.addTransceiver("audio", direction="recvonly")
            self._apply_codec_preferences(pc.addTransceiver("video", direction="recvonly"))
            return []

        self.relay = MediaRelay()
        self._resources.append(("local stream", self._stop_local_tracks))
        for kind, source in (("audio", audio_track), ("video", video_track)):
            if source is None:
                transceiver = pc.addTransceiver(kind, direction="recvonly")
            else:
                track = self.relay.subscribe(source)
                self.local_tracks.append(track)
                pc.addTrack(track)
                transceiver = next(t for t in pc.getTransceivers() if t.sender.track is track)
            if kind == "video":
                self._apply_codec_preferences(transceiver)
        return list(self.local_tracks)

    def _apply_codec_preferences(self, transceiver):
        if not self.config.enable_h264_high_profile:
            return
        codecs = RTCRtpSender.getCapabilities("video").codecs
        transceiver.setCodecPreferences(prefer_h264(codecs))

    # ---------- Negotiation ----------

    async def create_offer(self, constraints: dict) -> Jsep:
        pc = self._ensure_pc()
        if not pc.getTransceivers():
            # Nothing added yet: still offer to receive both kinds
            if constraints.get("OfferToReceiveAudio", True):
                pc.addTransceiver("audio", direction="recvonly")
            if constraints.get("OfferToReceiveVideo", True):
                self._apply_codec_preferences(pc.addTransceiver("video", direction="recvonly"))
        offer = await pc.createOffer()
        return Jsep(type=offer.type, sdp=offer.sdp)

    async def create_answer(self, constraints: dict) -> Jsep:
        pc = self._ensure_pc()
        answer = await pc.createAnswer()
        return Jsep(type=answer.type, sdp=answer.sdp)

    async def set_local_description(self, jsep: Jsep):
        pc = self._ensure_pc()
        await pc.setLocalDescription(RTCSessionDescription(sdp=jsep.sdp, type=jsep.type))
        # aiortc gathers during setLocalDescription, so everything is known now
        for candidate in local_candidates(pc.localDescription.sdp):
            await self._invoke(self._candidate_callbacks, candidate)
        await self._invoke(self._candidate_callbacks, IceCandidate.end_of_candidates())

    async def set_remote_description(self, jsep: Jsep):
        pc = self._ensure_pc()
        logger.info("[RTC] Applying remote %s", jsep.type)
        await pc.setRemoteDescription(RTCSessionDescription(sdp=jsep.sdp, type=jsep.type))

    async def add_ice_candidate(self, candidate: IceCandidate):
        pc = self._ensure_pc()
        if candidate.completed:
            for transport in self._ice_transports():
                await transport.addRemoteCandidate(None)
            return

        sdp = candidate.candidate
        if sdp.startswith("candidate:"):
            sdp = sdp[len("candidate:"):]
        parsed = candidate_from_sdp(sdp)
        parsed.sdpMid = candidate.sdpMid
        parsed.sdpMLineIndex = candidate.sdpMLineIndex
        await pc.addIceCandidate(parsed)

    def _ice_transports(self) -> list:
        seen, transports = set(), []
        for transceiver in self.pc.getTransceivers():
            dtls = transceiver.receiver.transport
            if dtls is None or id(dtls.transport) in seen:
                continue
            seen.add(id(dtls.transport))
            transports.append(dtls.transport)
        return transports

    # ---------- Teardown ----------

    async def close(self):
        """Releases everything in reverse order of acquisition; safe to call twice."""
        if self._closed:
            return
        self._closed = True
        while self._resources:
            name, release = self._resources.pop()
            try:
                result = release()
                if asyncio.iscoroutine(result):
                    await result
                logger.debug("[RTC] Released %s", name)
            except Exception as e:
                logger.warning("[RTC] Error releasing %s: %s", name, e)
        self._candidate_callbacks.clear()
        self._track_callbacks.clear()
        self._state_callbacks.clear()

    def _stop_local_tracks(self):
        for track in self.local_tracks:
            track.stop()
        self.local_tracks = []
        self.relay = None

    @staticmethod
    def _stop_player(player: MediaPlayer):
        for track in (player.audio, player.video):
            if track is not None:
                track.stop()

    async def _close_pc(self):
        pc, self.pc = self.pc, None
        if pc is not None:
            await pc.close()

    @staticmethod
    async def _invoke(callbacks: List[Callback], *args):
        for callback in list(callbacks):
            result = callback(*args)
            if asyncio.iscoroutine(result):
                await result
