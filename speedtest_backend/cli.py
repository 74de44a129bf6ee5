"""CLI entry point for speedtest-backend."""

import argparse
import logging
import sys

import httpx

from speedtest_backend import __version__
from speedtest_backend.client import DEFAULT_PING_COUNT, DEFAULT_UPLOAD_SIZE, SpeedTestClient
from speedtest_backend.config import Settings
from speedtest_backend.exceptions import ConfigError
from speedtest_backend.utils import DEFAULT_DOWNLOAD_SIZE

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("speedtest-backend")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="HTTP bandwidth and latency test server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  speedtest-backend serve                        # Listen on $PORT (default 3001)
  speedtest-backend serve -p 8080 -o https://app.example.com
  speedtest-backend measure http://localhost:3001
  speedtest-backend measure http://localhost:3001 --download-size 52428800
        """,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the speed test server")
    serve.add_argument("--host", help="Interface to bind (default: $HOST or 0.0.0.0)")
    serve.add_argument("-p", "--port", type=int, help="Port to listen on (default: $PORT or 3001)")
    serve.add_argument("-o", "--origin", help="Allowed CORS origin (default: $FRONTEND_URL)")
    serve.add_argument(
        "--max-sessions",
        type=int,
        metavar="N",
        help="Reject download/upload sessions above N concurrent (default: unlimited)",
    )

    measure = subparsers.add_parser("measure", help="Run a speed test against a server")
    measure.add_argument("url", help="Base URL of the server, e.g. http://localhost:3001")
    measure.add_argument(
        "-n", "--pings", type=int, default=DEFAULT_PING_COUNT, help=f"Ping samples (default: {DEFAULT_PING_COUNT})"
    )
    measure.add_argument(
        "--download-size",
        type=int,
        default=DEFAULT_DOWNLOAD_SIZE,
        metavar="BYTES",
        help="Requested download size; the server clamps it to 50-200 MiB",
    )
    measure.add_argument(
        "--upload-size",
        type=int,
        default=DEFAULT_UPLOAD_SIZE,
        metavar="BYTES",
        help=f"Upload size (default: {DEFAULT_UPLOAD_SIZE})",
    )
    return parser


def serve(args) -> int:
    try:
        settings = Settings.from_env(
            host=args.host,
            port=args.port,
            allowed_origin=args.origin,
            max_concurrent_sessions=args.max_sessions,
            log_level="debug" if args.verbose else None,
        )
    except ConfigError as e:
        logger.error(str(e))
        return 1

    # main builds its module-level app from the environment on import
    from speedtest_backend.lifecycle import SpeedTestServer
    from speedtest_backend.main import create_app

    server = SpeedTestServer(create_app(settings), settings)
    server.run()
    return 0


def measure(args) -> int:
    try:
        with SpeedTestClient(args.url) as client:
            latency = client.measure_latency(args.pings)
            logger.info(f"Latency: {latency.latency_ms:.2f} ms (jitter {latency.jitter_ms:.2f} ms)")

            download = client.measure_download(args.download_size)
            logger.info(
                f"Download: {download.mbps:.2f} Mbps "
                f"({download.transferred_bytes} bytes in {download.duration:.2f}s)"
            )

            upload = client.measure_upload(args.upload_size)
            logger.info(
                f"Upload: {upload.mbps:.2f} Mbps "
                f"({upload.transferred_bytes} bytes in {upload.duration:.2f}s)"
            )
    except (httpx.HTTPError, ValueError) as e:
        logger.error(f"Speed test failed: {e}")
        return 1
    return 0


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.verbose:
        logging.getLogger("speedtest-backend").setLevel(logging.DEBUG)

    if args.command == "serve":
        sys.exit(serve(args))
    sys.exit(measure(args))


if __name__ == "__main__":
    main()
