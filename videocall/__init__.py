from .call_client import VideoCallClient
from .config import CallConfig, IceServerConfig

__all__ = ["VideoCallClient", "CallConfig", "IceServerConfig"]
