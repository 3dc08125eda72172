from __future__ import annotations

from prometheus_client import Counter, Gauge

_DATAPLANE_OPS_TOTAL = Counter(
    "syncgate_dataplane_operations_total",
    "Live data-plane operations issued by the agent",
    labelnames=["op", "result"],
)
_RECONCILE_TICKS_TOTAL = Counter(
    "syncgate_reconcile_ticks_total",
    "Reconciliation ticks by outcome",
    labelnames=["node", "result"],
)
_REPORTS_TOTAL = Counter(
    "syncgate_panel_reports_total",
    "Usage/online reports sent to the panel",
    labelnames=["node", "kind", "result"],
)
_REPORTED_BYTES_TOTAL = Counter(
    "syncgate_reported_traffic_bytes_total",
    "Traffic bytes acknowledged by the panel",
    labelnames=["node", "direction"],
)
_SUBSCRIBERS = Gauge(
    "syncgate_node_subscribers",
    "Subscribers currently provisioned per node",
    labelnames=["node"],
)


def observe_dataplane_op(op: str, result: str) -> None:
    _DATAPLANE_OPS_TOTAL.labels(op, result).inc()


def observe_tick(node_id: int, result: str) -> None:
    _RECONCILE_TICKS_TOTAL.labels(str(node_id), result).inc()


def observe_report(node_id: int, kind: str, result: str) -> None:
    _REPORTS_TOTAL.labels(str(node_id), kind, result).inc()


def observe_reported_bytes(node_id: int, upload: int, download: int) -> None:
    if upload > 0:
        _REPORTED_BYTES_TOTAL.labels(str(node_id), "upload").inc(upload)
    if download > 0:
        _REPORTED_BYTES_TOTAL.labels(str(node_id), "download").inc(download)


def set_subscribers(node_id: int, count: int) -> None:
    _SUBSCRIBERS.labels(str(node_id)).set(count)
