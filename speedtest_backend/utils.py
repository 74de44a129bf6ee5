import math
import os
import re
import time
from typing import Optional, Sequence, Tuple

from .exceptions import InvalidContentLength, InvalidSizeParameter, MissingContentLength

MIB = 1024 * 1024

# Download limits
MIN_DOWNLOAD_SIZE = 50 * MIB
MAX_DOWNLOAD_SIZE = 200 * MIB
DEFAULT_DOWNLOAD_SIZE = 100 * MIB
CHUNK_SIZE = 64 * 1024

# Leading integer, the way browsers and JS clients parse a numeric query value
LEADING_INT = re.compile(r"\s*([+-]?\d+)")


def generate_random_chunk(size: int) -> bytes:
    if size < 0:
        raise ValueError(f"Chunk size must be non-negative, got {size}")
    return os.urandom(size)


class PayloadGenerator:
    """Produces incompressible chunks for one download session.

    Each call returns fresh bytes, so identical requests never produce
    identical payloads and intermediaries cannot cache or compress them.
    """

    def __init__(self, chunk_size: int = CHUNK_SIZE):
        if chunk_size <= 0:
            raise ValueError(f"Chunk size must be positive, got {chunk_size}")
        self.chunk_size = chunk_size
        self.chunks_generated = 0

    def next_chunk(self, remaining: int) -> bytes:
        size = min(self.chunk_size, remaining)
        self.chunks_generated += 1
        return generate_random_chunk(size)


def clamp_download_size(size_param: Optional[str]) -> int:
    if size_param is None or size_param.strip() == "":
        return DEFAULT_DOWNLOAD_SIZE

    match = LEADING_INT.match(size_param)
    if match is None:
        raise InvalidSizeParameter(size_param)
    requested = int(match.group(1))

    return max(MIN_DOWNLOAD_SIZE, min(MAX_DOWNLOAD_SIZE, requested))


def parse_content_length(header: Optional[str]) -> int:
    if header is None:
        raise MissingContentLength()

    try:
        declared = int(header.strip(), 10)
    except ValueError:
        raise InvalidContentLength(header)

    if declared <= 0:
        raise InvalidContentLength(header)
    return declared


def now_ms() -> int:
    return int(time.time() * 1000)


def mean_and_jitter(samples: Sequence[float]) -> Tuple[float, float]:
    """Return (mean, population standard deviation) of RTT samples."""
    if not samples:
        raise ValueError("At least one sample is required")

    mean = sum(samples) / len(samples)
    variance = sum((s - mean) ** 2 for s in samples) / len(samples)
    return mean, math.sqrt(variance)


def to_mbps(num_bytes: int, seconds: float) -> float:
    if seconds <= 0:
        return 0.0
    return (num_bytes * 8) / seconds / 1_000_000
