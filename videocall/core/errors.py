# core/errors.py
"""Error taxonomy for the signaling core.

Every error carries a ``kind`` string. Consumers receive that string in
``error(kind, detail)`` and ``call_ended(reason)`` events.
"""
from typing import Optional


class VideoCallError(Exception):
    kind = "VideoCallError"

    def __init__(self, detail: str = ""):
        super().__init__(detail or self.kind)
        self.detail = detail


class TransportUnreachable(VideoCallError):
    kind = "TransportUnreachable"


class TransportNotOpen(VideoCallError):
    kind = "TransportNotOpen"


class TransportClosedUnexpectedly(VideoCallError):
    kind = "TransportClosedUnexpectedly"

    def __init__(self, code: Optional[int] = None, reason: str = ""):
        super().__init__(f"WebSocket closed ({code}): {reason}" if code is not None else reason)
        self.code = code
        self.reason = reason


class ProtocolParseError(VideoCallError):
    kind = "ProtocolParseError"


class GatewayError(VideoCallError):
    kind = "GatewayError"

    def __init__(self, code: Optional[int] = None, reason: str = ""):
        super().__init__(f"Janus error ({code}): {reason}")
        self.code = code
        self.reason = reason


class GatewayTimeout(VideoCallError):
    kind = "GatewayTimeout"


class SessionLost(VideoCallError):
    kind = "SessionLost"


class NotRegistered(GatewayError):
    kind = "NotRegistered"


class PeerUnavailable(GatewayError):
    kind = "PeerUnavailable"


class MediaNegotiationFailed(VideoCallError):
    kind = "MediaNegotiationFailed"

    def __init__(self, stage: str, detail: str = ""):
        super().__init__(f"{stage}: {detail}" if detail else stage)
        self.stage = stage


class Cancelled(VideoCallError):
    kind = "Cancelled"


class InvalidState(VideoCallError):
    kind = "InvalidState"

    def __init__(self, state, action: str):
        name = getattr(state, "value", state)
        super().__init__(f"cannot {action} while {name}")
        self.state = state
        self.action = action
