"""Download and upload session engines.

The download side is an ASGI response that writes a random payload one chunk
at a time and never produces a chunk before the transport has accepted the
previous one. The upload side drains a request body while counting bytes.
"""

import enum
import logging
import time
from functools import partial
from typing import Awaitable, Callable, Mapping, Optional

import anyio
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import Receive, Scope, Send

from .exceptions import AdmissionRejected, UploadStreamError
from .models import UploadResult
from .utils import CHUNK_SIZE, PayloadGenerator, now_ms

logger = logging.getLogger("speedtest-backend")

NO_STORE = "no-store, no-cache, must-revalidate"


class SessionState(str, enum.Enum):
    WRITING = "writing"
    WAITING_FOR_DRAIN = "waiting_for_drain"
    FINISHED = "finished"
    ABORTED = "aborted"


class DownloadSession:
    """State of one download exchange."""

    def __init__(self, target_bytes: int, chunk_size: int = CHUNK_SIZE):
        if target_bytes < 0:
            raise ValueError(f"Target size must be non-negative, got {target_bytes}")
        self.target_bytes = target_bytes
        self.chunk_size = chunk_size
        self.sent_bytes = 0
        self.state = SessionState.WRITING
        self.abort_reason: Optional[str] = None
        self._generator: Optional[PayloadGenerator] = PayloadGenerator(chunk_size)

    @property
    def draining(self) -> bool:
        return self.state is SessionState.WAITING_FOR_DRAIN

    @property
    def remaining(self) -> int:
        return self.target_bytes - self.sent_bytes

    @property
    def done(self) -> bool:
        return self.state in (SessionState.FINISHED, SessionState.ABORTED)

    async def write_to(self, send: Send) -> None:
        """Write the whole payload, then the end-of-body message.

        ``send`` returns only once the transport has room for more data, so
        the session sits in WAITING_FOR_DRAIN for as long as the call is
        pending and goes back to WRITING when it returns.
        """
        while self.sent_bytes < self.target_bytes and not self.done:
            chunk = self._generator.next_chunk(self.remaining)
            self.state = SessionState.WAITING_FOR_DRAIN
            await send({"type": "http.response.body", "body": chunk, "more_body": True})
            self.sent_bytes += len(chunk)
            self.state = SessionState.WRITING
            # Let other sessions run between chunks
            await anyio.sleep(0)

        if self.done:
            return
        await send({"type": "http.response.body", "body": b"", "more_body": False})
        self.state = SessionState.FINISHED
        logger.debug(f"Download finished: {self.sent_bytes} bytes in {self._generator.chunks_generated} chunks")
        self._generator = None

    def abort(self, reason: str) -> None:
        if self.done:
            return
        self.state = SessionState.ABORTED
        self.abort_reason = reason
        self._generator = None
        logger.info(f"Download aborted after {self.sent_bytes}/{self.target_bytes} bytes: {reason}")


class RandomPayloadResponse(Response):
    """Streams ``target_bytes`` of random data with an exact Content-Length."""

    media_type = "application/octet-stream"

    def __init__(
        self,
        target_bytes: int,
        chunk_size: int = CHUNK_SIZE,
        headers: Optional[Mapping[str, str]] = None,
        on_close: Optional[Callable[[], None]] = None,
    ):
        self.session = DownloadSession(target_bytes, chunk_size)
        self.status_code = 200
        self.background = None
        self.on_close = on_close

        all_headers = {
            "Content-Length": str(target_bytes),
            "Content-Disposition": 'attachment; filename="speedtest.dat"',
            "Cache-Control": NO_STORE,
            "Pragma": "no-cache",
            "Expires": "0",
        }
        if headers:
            all_headers.update(headers)
        self.init_headers(all_headers)

    async def _listen_for_disconnect(self, receive: Receive) -> None:
        while True:
            message = await receive()
            if message["type"] == "http.disconnect":
                self.session.abort("client disconnected")
                break

    async def _stream(self, send: Send) -> None:
        try:
            await self.session.write_to(send)
        except OSError as e:
            self.session.abort(f"transport error: {e}")
        except MemoryError:
            self.session.abort("payload buffer allocation failed")

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        logger.debug(f"Download started: {self.session.target_bytes} bytes")
        try:
            await send(
                {
                    "type": "http.response.start",
                    "status": self.status_code,
                    "headers": self.raw_headers,
                }
            )

            async with anyio.create_task_group() as task_group:

                async def wrap(func: Callable[[], Awaitable[None]]) -> None:
                    await func()
                    task_group.cancel_scope.cancel()

                task_group.start_soon(wrap, partial(self._stream, send))
                await wrap(partial(self._listen_for_disconnect, receive))
        except OSError as e:
            self.session.abort(f"transport error: {e}")
        finally:
            if not self.session.done:
                self.session.abort("cancelled")
            if self.on_close is not None:
                self.on_close()


class UploadSession:
    """Counts the bytes of one upload without keeping them."""

    def __init__(self, expected_bytes: int):
        self.expected_bytes = expected_bytes
        self.received_bytes = 0
        self.start_time = time.perf_counter()
        self.end_time: Optional[float] = None

    def observe(self, chunk: bytes) -> None:
        self.received_bytes += len(chunk)

    @property
    def duration(self) -> float:
        end = self.end_time if self.end_time is not None else time.perf_counter()
        return end - self.start_time

    def finish(self) -> UploadResult:
        self.end_time = time.perf_counter()
        return UploadResult(
            received=self.received_bytes,
            expected=self.expected_bytes,
            duration=self.duration,
            timestamp=now_ms(),
        )


async def count_upload(request: Request, session: UploadSession) -> UploadResult:
    """Drain the request body into ``session`` and return the measurement.

    ``ClientDisconnect`` propagates to the caller; any other failure of the
    body stream is raised as ``UploadStreamError``.
    """
    try:
        async for chunk in request.stream():
            session.observe(chunk)
    except (OSError, RuntimeError) as e:
        logger.warning(f"Upload stream error after {session.received_bytes} bytes: {e}")
        raise UploadStreamError() from e

    result = session.finish()
    if result.received != result.expected:
        logger.info(f"Partial upload: received {result.received} of {result.expected} bytes")
    logger.debug(f"Upload finished: {result.received} bytes in {result.duration:.3f}s")
    return result


class SessionLimiter:
    """Optional cap on concurrent download/upload sessions.

    All calls happen on the event loop thread, so a plain counter is enough.
    A limit of None means unlimited.
    """

    def __init__(self, limit: Optional[int] = None):
        self.limit = limit
        self.active = 0

    def acquire(self) -> None:
        if self.limit is not None and self.active >= self.limit:
            logger.warning(f"Rejecting session: {self.active} active (limit {self.limit})")
            raise AdmissionRejected()
        self.active += 1

    def release(self) -> None:
        if self.active > 0:
            self.active -= 1
