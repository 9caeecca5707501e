"""Helpers to launch the local API together with the background service."""

from __future__ import annotations

import logging
import threading
import time
import webbrowser

import uvicorn

from .service import TrackerService
from .webapp import create_app


def run_dashboard(
    service: TrackerService,
    *,
    host: str = "127.0.0.1",
    port: int = 8765,
    open_browser: bool = False,
    log_level: str = "info",
) -> None:
    """Serve the API; sampling, analysis and calendar sync run alongside it."""
    app = create_app(service)

    if open_browser:
        url = f"http://{host}:{port}/docs"
        threading.Thread(
            target=_launch_browser_after_delay, args=(url,), daemon=True
        ).start()

    logging.getLogger("uvicorn.error").setLevel(log_level.upper())
    try:
        uvicorn.run(app, host=host, port=port, log_level=log_level)
    finally:
        service.close()


def _launch_browser_after_delay(url: str) -> None:
    time.sleep(1.0)
    try:
        webbrowser.open(url)
    except Exception:
        logging.getLogger(__name__).exception("Failed to launch browser for %s", url)
