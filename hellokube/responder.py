"""Fixed-response HTTP responder: the workload every pod runs.

Every request, whatever its method, path or headers, gets ``200`` and the
same ASCII greeting. The listener is bound before the server starts so an
occupied port is a fatal startup error rather than a log line from uvicorn.
"""
from __future__ import annotations

import argparse
import logging
import socket
import sys

import uvicorn
from fastapi import FastAPI
from fastapi.responses import Response

from .settings import settings

logger = logging.getLogger("hellokube.responder")

GREETING: str = settings.greeting
BODY: bytes = GREETING.encode("ascii")

METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]

app = FastAPI(title="hellokube responder", docs_url=None, redoc_url=None, openapi_url=None)


@app.api_route("/{path:path}", methods=METHODS, include_in_schema=False)
def respond() -> Response:
    return Response(content=BODY, media_type="text/plain", headers={"Content-Length": str(len(BODY))})


def bind_listener(host: str, port: int) -> socket.socket:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        sock.listen(128)
    except OSError:
        sock.close()
        raise
    return sock


def serve(port: int | None = None, host: str = "0.0.0.0") -> None:
    port = settings.container_port if port is None else port
    try:
        sock = bind_listener(host, port)
    except OSError as e:
        logger.error("Cannot bind %s:%d: %s", host, port, e)
        raise SystemExit(1) from e

    logger.info("Responder listening on %s:%d", host, sock.getsockname()[1])
    server = uvicorn.Server(uvicorn.Config(app, log_level="warning", access_log=False))
    try:
        server.run(sockets=[sock])
    finally:
        sock.close()


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="hellokube fixed-response responder")
    p.add_argument("--host", default="0.0.0.0")
    p.add_argument("--port", type=int, default=settings.container_port)
    args = p.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    serve(args.port, args.host)
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
