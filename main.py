"""hellokube control plane.

Run with ``uvicorn main:app`` or ``python main.py``; the reconcile loop and
the node-port proxy start with the app.
"""
from __future__ import annotations

import logging

import uvicorn

from hellokube.api import create_app
from hellokube.settings import settings

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")

app = create_app()


if __name__ == "__main__":
    uvicorn.run(app, host=settings.api_host, port=settings.api_port)
