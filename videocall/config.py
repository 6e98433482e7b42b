# config.py
import os
import sys
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

DEFAULT_SERVER_URI = "ws://127.0.0.1:8188"
DEFAULT_STUN = "stun:stun.l.google.com:19302"


def default_camera_format() -> Optional[str]:
    if sys.platform.startswith("linux"):
        return "v4l2"
    if sys.platform == "darwin":
        return "avfoundation"
    if sys.platform == "win32":
        return "dshow"
    return None


class IceServerConfig(BaseModel):
    urls: str
    username: Optional[str] = None
    credential: Optional[str] = None


class CallConfig(BaseModel):
    server_uri: str = DEFAULT_SERVER_URI
    connect_timeout_ms: int = Field(40000, gt=0)
    idle_interval_sec: float = Field(20, gt=0)
    keepalive_interval_sec: float = Field(25, gt=0)
    transaction_timeout_ms: int = Field(10000, gt=0)
    ice_servers: List[IceServerConfig] = Field(default_factory=lambda: [IceServerConfig(urls=DEFAULT_STUN)])
    enable_h264_high_profile: bool = True
    prefer_front_camera: bool = True
    video_width: int = Field(640, gt=0)
    video_height: int = Field(480, gt=0)
    video_fps: int = Field(30, gt=0)
    camera_devices: List[str] = Field(default_factory=list)
    camera_format: Optional[str] = Field(default_factory=default_camera_format)
    audio_device: Optional[str] = None
    audio_format: Optional[str] = None

    @field_validator("server_uri")
    @classmethod
    def check_scheme(cls, value: str) -> str:
        if not value.startswith(("ws://", "wss://")):
            raise ValueError(f"server_uri must be a ws:// or wss:// URL, got {value!r}")
        return value

    @property
    def connect_timeout(self) -> float:
        return self.connect_timeout_ms / 1000

    @property
    def transaction_timeout(self) -> float:
        return self.transaction_timeout_ms / 1000

    @classmethod
    def from_env(cls, **overrides) -> "CallConfig":
        """Builds a config from ``VIDEOCALL_*`` variables (and a .env file); keyword overrides win."""
        load_dotenv()
        values = {}
        for name in cls.model_fields:
            raw = os.getenv(f"VIDEOCALL_{name.upper()}")
            if raw is None or raw == "":
                continue
            if name == "ice_servers":
                values[name] = [{"urls": url.strip()} for url in raw.split(",") if url.strip()]
            elif name == "camera_devices":
                values[name] = [device.strip() for device in raw.split(",") if device.strip()]
            else:
                values[name] = raw
        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**values)
