"""Entrypoint for the Airflow gateway."""

from __future__ import annotations

import sys
from pathlib import Path

if __package__ in (None, ""):
    sys.path.insert(0, str(Path(__file__).resolve().parents[1]))  # pragma: no cover

import uvicorn

from airflow_gateway import __version__
from airflow_gateway.config import load_settings
from airflow_gateway.logging_utils import configure_logging, get_logger


def run_entrypoint() -> None:
    """Configure logging and serve the HTTP app with uvicorn."""
    settings = load_settings()
    configure_logging()
    from airflow_gateway.transport.http_server import create_http_app

    logger = get_logger(__name__)
    logger.info("Initializing Airflow gateway v%s", __version__)
    logger.info("Upstream: %s  IdP issuer: %s", settings.upstream.base_url, settings.idp.issuer_uri)
    if settings.logging.file:
        logger.info("Log file configured at: %s", settings.logging.file)

    app = create_http_app()
    # Plain HTTP API; no websocket endpoints.
    uvicorn.run(
        app,
        host=settings.server.host,
        port=settings.server.port,
        ws="none",
        log_config=None,
    )


if __name__ == "__main__":  # pragma: no cover
    run_entrypoint()
