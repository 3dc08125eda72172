from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

from fastapi import FastAPI, Request
from prometheus_client import Counter, Histogram

_HTTP_REQUESTS = Counter(
    "syncgate_http_requests_total",
    "Requests served by the syncgate HTTP surface",
    labelnames=["component", "method", "route", "status"],
)
_HTTP_LATENCY = Histogram(
    "syncgate_http_request_duration_seconds",
    "Time spent serving syncgate HTTP requests",
    labelnames=["component", "method", "route"],
    buckets=(0.001, 0.005, 0.025, 0.1, 0.5, 1, 5),
)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str) -> None:
    numeric = getattr(logging, (level or "INFO").upper(), logging.INFO)
    logging.basicConfig(level=numeric if isinstance(numeric, int) else logging.INFO, format=LOG_FORMAT)


def node_log_prefix(api_host: str, node_type: str, node_id: int) -> str:
    return f"[{api_host}] {node_type}(NodeID={node_id})"


class NodeLogAdapter(logging.LoggerAdapter):
    """Prepends the per-node prefix to every record.

    The prefix is looked up lazily so it follows node type changes.
    """

    def __init__(self, logger: logging.Logger, prefix_fn: Callable[[], str]) -> None:
        super().__init__(logger, {})
        self._prefix_fn = prefix_fn

    def process(self, msg: Any, kwargs: Any) -> tuple[Any, Any]:
        return f"{self._prefix_fn()} {msg}", kwargs


def install_http_observability(app: FastAPI, *, component: str) -> None:
    """Count and time every request by its route template (not the raw path)."""
    http_log = logging.getLogger(f"syncgate.{component}.http")

    @app.middleware("http")
    async def observe_request(request: Request, call_next):  # noqa: ANN001, ANN202
        began = time.monotonic()
        status = "500"
        try:
            response = await call_next(request)
            status = str(response.status_code)
            return response
        finally:
            took = time.monotonic() - began
            route = getattr(request.scope.get("route"), "path", None) or request.url.path
            _HTTP_REQUESTS.labels(component, request.method, route, status).inc()
            _HTTP_LATENCY.labels(component, request.method, route).observe(took)
            http_log.debug("http_request method=%s route=%s status=%s took_ms=%.1f", request.method, route, status, took * 1000)
