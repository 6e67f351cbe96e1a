"""Runtime configuration, read from VCRELAY_* environment variables."""

import os
from dataclasses import dataclass, field
from typing import Mapping, Optional

from .bridge import DATA_CHUNK, DEFAULT_TOPIC
from .relay import DEFAULT_IDLE_TIMEOUT, DEFAULT_PIPE_DIR

DEFAULT_CHANNEL = "echo"
DEFAULT_CONNECT_TIMEOUT = 10.0
DEFAULT_REQUEST_TIMEOUT = 30.0
DEFAULT_READY_TIMEOUT = 30.0


def default_log_path() -> str:
    # One log per process; stdout belongs to the control channel
    return f"/tmp/vcrelay_{os.getpid()}.log"


@dataclass
class RelayConfig:
    channel_name: str = DEFAULT_CHANNEL
    topic: str = DEFAULT_TOPIC
    pipe_dir: str = DEFAULT_PIPE_DIR
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    ready_timeout: float = DEFAULT_READY_TIMEOUT
    idle_timeout: float = DEFAULT_IDLE_TIMEOUT
    chunk_size: int = DATA_CHUNK
    max_reads: Optional[int] = None
    bus_url: Optional[str] = None
    log_path: str = field(default_factory=default_log_path)
    greeting: str = "Extension message"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "RelayConfig":
        """Build a config from the environment, falling back to defaults.

        Raises ValueError if a numeric variable cannot be parsed.
        """
        env = os.environ if environ is None else environ
        max_reads = env.get("VCRELAY_MAX_READS")
        return cls(
            channel_name=env.get("VCRELAY_CHANNEL", DEFAULT_CHANNEL),
            topic=env.get("VCRELAY_TOPIC", DEFAULT_TOPIC),
            pipe_dir=env.get("VCRELAY_PIPE_DIR", DEFAULT_PIPE_DIR),
            connect_timeout=float(env.get("VCRELAY_CONNECT_TIMEOUT", DEFAULT_CONNECT_TIMEOUT)),
            request_timeout=float(env.get("VCRELAY_REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT)),
            ready_timeout=float(env.get("VCRELAY_READY_TIMEOUT", DEFAULT_READY_TIMEOUT)),
            idle_timeout=float(env.get("VCRELAY_IDLE_TIMEOUT", DEFAULT_IDLE_TIMEOUT)),
            chunk_size=int(env.get("VCRELAY_CHUNK_SIZE", DATA_CHUNK)),
            max_reads=int(max_reads) if max_reads else None,
            bus_url=env.get("VCRELAY_BUS_URL") or None,
            log_path=env.get("VCRELAY_LOG") or default_log_path(),
        )
