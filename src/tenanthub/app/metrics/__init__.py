"""Prometheus metrics exposition for the control-plane process."""

import logging

from prometheus_client import start_http_server

logger = logging.getLogger(__name__)


def start_metrics_server(port: int) -> None:
    """Serve /metrics from the default registry on a background thread."""
    start_http_server(port)
    logger.info("Metrics server listening on :%d", port)
