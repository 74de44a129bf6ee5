import logging
from typing import Optional

from fastapi import APIRouter, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.requests import ClientDisconnect

from . import __version__
from .config import Settings
from .exceptions import SpeedTestError
from .lifecycle import lifespan
from .middleware import NO_CACHE_HEADERS, BodySizeLimitMiddleware, NoCacheMiddleware
from .models import HealthStatus, PingResponse, UploadResult
from .streams import RandomPayloadResponse, SessionLimiter, UploadSession, count_upload
from .utils import clamp_download_size, now_ms, parse_content_length

logger = logging.getLogger("speedtest-backend")

# nginx's "client closed request"; never reaches the client
CLIENT_CLOSED_REQUEST = 499

router = APIRouter()


@router.get("/health", response_model=HealthStatus)
async def health():
    return HealthStatus(status="ok", timestamp=now_ms())


@router.get("/api/ping", response_model=PingResponse)
async def ping():
    server_time = now_ms()
    return PingResponse(timestamp=server_time, serverTime=server_time)


@router.get("/api/download")
async def download(request: Request, size: Optional[str] = None):
    target_bytes = clamp_download_size(size)

    limiter: SessionLimiter = request.app.state.limiter
    limiter.acquire()
    return RandomPayloadResponse(target_bytes, on_close=limiter.release)


@router.post("/api/upload", response_model=UploadResult)
async def upload(request: Request, content_length: Optional[str] = Header(None)):
    expected_bytes = parse_content_length(content_length)

    limiter: SessionLimiter = request.app.state.limiter
    limiter.acquire()
    try:
        session = UploadSession(expected_bytes)
        try:
            return await count_upload(request, session)
        except ClientDisconnect:
            logger.info(f"Client disconnected during upload after {session.received_bytes} bytes")
            return Response(status_code=CLIENT_CLOSED_REQUEST)
    finally:
        limiter.release()


async def speedtest_error_handler(request: Request, exc: SpeedTestError):
    return JSONResponse({"error": exc.message}, status_code=exc.status_code)


async def http_error_handler(request: Request, exc: StarletteHTTPException):
    error = "Not found" if exc.status_code == 404 else exc.detail
    return JSONResponse({"error": error}, status_code=exc.status_code, headers=exc.headers)


async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse({"error": "Invalid request"}, status_code=400)


async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.method} {request.url.path}", exc_info=exc)
    # Runs outside the middleware stack, so the envelope headers are set here
    headers = dict(NO_CACHE_HEADERS)
    origin = request.headers.get("origin")
    if origin is not None and origin == request.app.state.settings.allowed_origin:
        headers["Access-Control-Allow-Origin"] = origin
        headers["Access-Control-Allow-Credentials"] = "true"
        headers["Vary"] = "Origin"
    return JSONResponse({"error": "Internal server error"}, status_code=500, headers=headers)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    if settings is None:
        settings = Settings()

    app = FastAPI(
        title="Speed Test API",
        version=__version__,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.limiter = SessionLimiter(settings.max_concurrent_sessions)

    app.include_router(router)

    app.add_exception_handler(SpeedTestError, speedtest_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    # Last added runs first
    app.add_middleware(BodySizeLimitMiddleware, limit=settings.json_body_limit)
    app.add_middleware(NoCacheMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.allowed_origin],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    return app


app = create_app(Settings.from_env())
