"""Command-line entrypoint: run the API under uvicorn.

Binds to a dual-stack IPv6 socket when the host supports it, falling back to
IPv4. ``BIND_ADDRESS`` overrides detection; ``PORT`` and ``LOG_LEVEL`` come from
the regular settings.
"""

import asyncio
import os
import socket

import structlog
import uvicorn

from firestarter_api.config import get_settings
from firestarter_api.observability import configure_logging

logger = structlog.get_logger()

APP_PATH = "firestarter_api.main:app"


def can_bind_ipv6_dualstack(port: int) -> bool:
    """Test if [::] on this port would accept both IPv6 and IPv4 connections."""
    try:
        sock = socket.socket(socket.AF_INET6, socket.SOCK_STREAM)
    except OSError:
        return False
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 0)
        sock.bind(("::", port))
        return True
    except (AttributeError, OSError):
        return False
    finally:
        sock.close()


def resolve_host(bind_address: str, port: int, default_host: str) -> str:
    if bind_address != "auto":
        return bind_address
    if can_bind_ipv6_dualstack(port):
        return "::"
    return default_host


async def _serve_dualstack(port: int, log_level: str) -> None:
    sock = socket.socket(socket.AF_INET6, socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 0)
    sock.bind(("::", port))
    sock.listen(128)
    sock.setblocking(False)

    server = uvicorn.Server(uvicorn.Config(APP_PATH, log_level=log_level))
    await server.serve(sockets=[sock])


def main() -> None:
    """Start uvicorn with an auto-detected or explicit bind address."""
    settings = get_settings()
    configure_logging(settings.log_level)
    log_level = settings.log_level.lower()

    host = resolve_host(os.getenv("BIND_ADDRESS", "auto"), settings.port, settings.host)
    logger.info("Starting server", host=host, port=settings.port, environment=settings.environment)

    if host == "::":
        # Pass our own socket so IPV6_V6ONLY=0 is honoured
        asyncio.run(_serve_dualstack(settings.port, log_level))
    else:
        uvicorn.run(APP_PATH, host=host, port=settings.port, log_level=log_level)


if __name__ == "__main__":
    main()
