"""Client side of the speed test: latency, jitter and throughput."""

import logging
import time
from typing import Iterator, Optional

import httpx

from .models import LatencyResult, ThroughputResult, UploadResult
from .utils import CHUNK_SIZE, DEFAULT_DOWNLOAD_SIZE, generate_random_chunk, mean_and_jitter, to_mbps

logger = logging.getLogger("speedtest-backend")

DEFAULT_PING_COUNT = 10
DEFAULT_UPLOAD_SIZE = 10 * 1024 * 1024


class SpeedTestClient:
    """Runs ping, download and upload tests against one server.

    Any ``httpx.Client`` works as transport, including Starlette's
    ``TestClient``.
    """

    def __init__(self, base_url: str = "", http: Optional[httpx.Client] = None, timeout: float = 60.0):
        self.base_url = base_url.rstrip("/")
        self.http = http or httpx.Client(timeout=timeout)
        self._owns_http = http is None

    def close(self):
        if self._owns_http:
            self.http.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def measure_latency(self, count: int = DEFAULT_PING_COUNT) -> LatencyResult:
        """Ping ``count`` times, one request at a time.

        Requests are strictly sequential so the round-trip times are not
        inflated by queuing behind each other.
        """
        if count <= 0:
            raise ValueError(f"Ping count must be positive, got {count}")

        samples = []
        for _ in range(count):
            start = time.perf_counter()
            response = self.http.get(self._url("/api/ping"))
            rtt_ms = (time.perf_counter() - start) * 1000
            response.raise_for_status()
            samples.append(rtt_ms)

        latency, jitter = mean_and_jitter(samples)
        logger.debug(f"Ping samples (ms): {', '.join(f'{s:.2f}' for s in samples)}")
        return LatencyResult(latency_ms=latency, jitter_ms=jitter, samples=samples)

    def measure_download(self, size: int = DEFAULT_DOWNLOAD_SIZE) -> ThroughputResult:
        received = 0
        start = time.perf_counter()
        with self.http.stream("GET", self._url("/api/download"), params={"size": size}) as response:
            response.raise_for_status()
            expected = int(response.headers.get("content-length", 0))
            for chunk in response.iter_bytes():
                received += len(chunk)
        duration = time.perf_counter() - start

        if received != expected:
            logger.warning(f"Download ended early: {received} of {expected} bytes")
        return ThroughputResult(
            transferred_bytes=received,
            expected_bytes=expected,
            duration=duration,
            mbps=to_mbps(received, duration),
        )

    def measure_upload(self, size: int = DEFAULT_UPLOAD_SIZE) -> ThroughputResult:
        """Upload ``size`` random bytes and report the server-side timing."""
        if size <= 0:
            raise ValueError(f"Upload size must be positive, got {size}")

        response = self.http.post(
            self._url("/api/upload"),
            content=_random_body(size),
            headers={"Content-Length": str(size), "Content-Type": "application/octet-stream"},
        )
        response.raise_for_status()
        result = UploadResult(**response.json())

        return ThroughputResult(
            transferred_bytes=result.received,
            expected_bytes=result.expected,
            duration=result.duration,
            mbps=to_mbps(result.received, result.duration),
        )


def _random_body(size: int) -> Iterator[bytes]:
    remaining = size
    while remaining > 0:
        chunk = generate_random_chunk(min(CHUNK_SIZE, remaining))
        remaining -= len(chunk)
        yield chunk
