"""Environment-driven settings for the participant client and the relay."""

import os
from dataclasses import dataclass, replace
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


DEFAULT_SIGNALING_URL = "ws://localhost:3000/ws"
DEFAULT_STUN_SERVER_URL = "stun:stun.l.google.com:19302"


@dataclass(frozen=True)
class Settings:
    signaling_url: str = DEFAULT_SIGNALING_URL
    stun_server_url: str = DEFAULT_STUN_SERVER_URL

    # "synthetic" produces silence plus a test pattern; anything else is handed to ffmpeg
    capture_source: str = "synthetic"
    capture_format: Optional[str] = None

    relay_host: str = "0.0.0.0"
    relay_port: int = 3000

    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            signaling_url=os.getenv("PEERCALL_SIGNALING_URL", DEFAULT_SIGNALING_URL),
            stun_server_url=os.getenv("PEERCALL_STUN_SERVER_URL", DEFAULT_STUN_SERVER_URL),
            capture_source=os.getenv("PEERCALL_CAPTURE_SOURCE", "synthetic"),
            capture_format=os.getenv("PEERCALL_CAPTURE_FORMAT") or None,
            relay_host=os.getenv("PEERCALL_RELAY_HOST", "0.0.0.0"),
            relay_port=int(os.getenv("PEERCALL_RELAY_PORT", "3000")),
            log_level=os.getenv("PEERCALL_LOG_LEVEL", "INFO").upper(),
        )

    def override(self, **values) -> "Settings":
        """Return a copy with every non-None keyword applied (CLI flags win over env)."""
        return replace(self, **{k: v for k, v in values.items() if v is not None})
