"""Entrypoint for the deployment orchestrator service."""

from __future__ import annotations

import sys
from pathlib import Path

if __package__ in (None, ""):
    sys.path.insert(0, str(Path(__file__).resolve().parents[1]))  # pragma: no cover

from sso_deployer import __version__
from sso_deployer.config import load_settings
from sso_deployer.logging_utils import configure_logging, get_logger


def run_entrypoint() -> None:
    """Serve the HTTP intake and run the deployment queue in the same event loop."""
    settings = load_settings()
    configure_logging()
    from sso_deployer.transport.http_server import create_http_app

    try:
        import uvicorn
    except ImportError as exc:
        raise RuntimeError("uvicorn is required to run the HTTP server") from exc

    logger = get_logger(__name__)
    logger.info("Starting AWS SSO deployer v%s", __version__)
    if not settings.notification.topic_arn:
        logger.info("DEPLOYMENT_TOPIC_ARN not set; status notifications are disabled")

    app = create_http_app()
    uvicorn.run(
        app,
        host=settings.server.host,
        port=settings.server.port,
        ws="none",
        log_config=None,
    )


if __name__ == "__main__":  # pragma: no cover
    run_entrypoint()
