import logging
import os
from dataclasses import dataclass

from .protocol import CHUNK_SIZE

logger = logging.getLogger(__name__)

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8000
DEFAULT_PIPE_CAPACITY = 256 * 1024  # Bytes buffered per direction of a loopback pipe
DEFAULT_LOG_LEVEL = "INFO"


@dataclass
class Settings:
    chunk_size: int = CHUNK_SIZE
    pipe_capacity: int = DEFAULT_PIPE_CAPACITY
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    log_level: str = DEFAULT_LOG_LEVEL


def _env_int(environ, name: str, default: int) -> int:
    value = environ.get(name)
    if not value:
        return default
    try:
        parsed = int(value)
    except ValueError:
        logger.warning(f"Ignoring non-integer {name}={value!r}, using {default}")
        return default
    if parsed <= 0:
        logger.warning(f"Ignoring non-positive {name}={parsed}, using {default}")
        return default
    return parsed


def load_settings(environ=None) -> Settings:
    """Build Settings from VIRTSTREAM_* environment variables."""
    if environ is None:
        environ = os.environ
    return Settings(
        chunk_size=_env_int(environ, "VIRTSTREAM_CHUNK_SIZE", CHUNK_SIZE),
        pipe_capacity=_env_int(environ, "VIRTSTREAM_PIPE_CAPACITY", DEFAULT_PIPE_CAPACITY),
        host=environ.get("VIRTSTREAM_HOST", DEFAULT_HOST),
        port=_env_int(environ, "VIRTSTREAM_PORT", DEFAULT_PORT),
        log_level=environ.get("VIRTSTREAM_LOG_LEVEL", DEFAULT_LOG_LEVEL).upper(),
    )
