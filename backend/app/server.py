"""Command line entry point that serves the relay with uvicorn."""

from __future__ import annotations

import argparse
import logging
import socket
import sys

import uvicorn

from app.config import get_settings

logger = logging.getLogger(__name__)


def get_local_ip_address() -> str:
    """Best-effort LAN address of this host, ``localhost`` when offline."""

    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        # No packets are sent; connecting a UDP socket only selects a route.
        sock.connect(("10.255.255.255", 1))
        address = sock.getsockname()[0]
    except OSError:
        return "localhost"
    finally:
        sock.close()
    if address.startswith("127."):
        return "localhost"
    return address


def parse_args(argv: list[str]) -> argparse.Namespace:
    settings = get_settings()
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--host", default=settings.host, help="Interface to bind")
    parser.add_argument("--port", type=int, default=settings.port, help="Port to listen on")
    parser.add_argument("--certfile", default=None, help="TLS certificate (PEM)")
    parser.add_argument("--keyfile", default=None, help="TLS private key (PEM)")
    parser.add_argument(
        "--insecure",
        action="store_true",
        help="Serve plain ws:// even when certificates are available",
    )
    parser.add_argument(
        "--log-level",
        default=settings.log_level,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        type=str.upper,
        help="Log verbosity level",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    settings = get_settings()
    settings.log_level = args.log_level

    ssl_files = None
    if not args.insecure:
        if args.certfile and args.keyfile:
            ssl_files = (args.certfile, args.keyfile)
        else:
            ssl_files = settings.resolved_ssl_files()

    from app.main import app

    scheme = "https" if ssl_files else "http"
    local_ip = get_local_ip_address()
    logger.info("Signalling relay running (%s)", scheme.upper())
    logger.info("  Local:   %s://localhost:%s", scheme, args.port)
    logger.info("  Network: %s://%s:%s", scheme, local_ip, args.port)
    if ssl_files:
        logger.info("Self-signed certificates must be accepted once on every device that connects")
    else:
        logger.warning("No TLS certificate configured; browsers only allow WebRTC on localhost over http")

    uvicorn.run(
        app,
        host=args.host,
        port=args.port,
        ssl_certfile=str(ssl_files[0]) if ssl_files else None,
        ssl_keyfile=str(ssl_files[1]) if ssl_files else None,
        log_level=args.log_level.lower(),
        log_config=None,
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
