import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from virtstream.config import DEFAULT_PIPE_CAPACITY, DEFAULT_PORT, load_settings
from virtstream.protocol import CHUNK_SIZE


def test_defaults():
    settings = load_settings({})
    assert settings.chunk_size == CHUNK_SIZE == 64 * 1024
    assert settings.pipe_capacity == DEFAULT_PIPE_CAPACITY
    assert settings.host == "127.0.0.1"
    assert settings.port == DEFAULT_PORT
    assert settings.log_level == "INFO"


def test_environment_overrides():
    settings = load_settings({
        "VIRTSTREAM_CHUNK_SIZE": "4096",
        "VIRTSTREAM_PIPE_CAPACITY": "1024",
        "VIRTSTREAM_HOST": "0.0.0.0",
        "VIRTSTREAM_PORT": "9000",
        "VIRTSTREAM_LOG_LEVEL": "debug",
    })
    assert settings.chunk_size == 4096
    assert settings.pipe_capacity == 1024
    assert settings.host == "0.0.0.0"
    assert settings.port == 9000
    assert settings.log_level == "DEBUG"


def test_invalid_numbers_fall_back():
    settings = load_settings({
        "VIRTSTREAM_CHUNK_SIZE": "lots",
        "VIRTSTREAM_PORT": "-1",
    })
    assert settings.chunk_size == CHUNK_SIZE
    assert settings.port == DEFAULT_PORT
