# conversion_observability/metrics.py
"""
Prometheus metrics for the converter.

This module does NOT start a standalone HTTP server.
The HTTP service mounts the ASGI exporter:

    from prometheus_client import make_asgi_app
    app.mount("/metrics", make_asgi_app())

The CLI is short-lived; set METRICS_HTTP_SERVER=1 to expose a sidecar
server while a large conversion runs, or call maybe_start_http_server().
"""

import os
import threading
from typing import Any, Dict, Tuple, Type

from prometheus_client import Counter, Histogram, start_http_server

# ----------------------------
# Optional standalone server
# ----------------------------
_METRICS_PORT = int(os.getenv("METRICS_PORT", "8001"))
_server_started = False
_server_lock = threading.Lock()


def maybe_start_http_server() -> None:
    """
    Start a sidecar metrics HTTP server exactly once,
    but only if METRICS_HTTP_SERVER=1 is set in the environment.
    """
    global _server_started
    if _server_started or os.getenv("METRICS_HTTP_SERVER") != "1":
        return
    with _server_lock:
        if not _server_started and os.getenv("METRICS_HTTP_SERVER") == "1":
            start_http_server(_METRICS_PORT)
            _server_started = True


# ----------------------------
# Registration helper (avoid duplicate collectors)
# ----------------------------
_METRICS: Dict[Tuple[Type[Any], str], Any] = {}


def get_metric(cls: Type[Any], name: str, *args, **kwargs):
    key = (cls, name)
    if key in _METRICS:
        return _METRICS[key]
    metric = cls(name, *args, **kwargs)
    _METRICS[key] = metric
    return metric


# ----------------------------
# Converter metrics
# ----------------------------

# Conversions by declared input format and outcome (success / failure / security)
conversions_total = get_metric(
    Counter,
    "payconv_conversions_total",
    "Number of conversion attempts",
    ["input_format", "result"],
)

conversion_seconds = get_metric(
    Histogram,
    "payconv_conversion_seconds",
    "End-to-end conversion latency in seconds",
    ["input_format"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30),
)

security_violations_total = get_metric(
    Counter,
    "payconv_security_violations_total",
    "Security violations detected while validating or converting",
    ["category"],
)

records_parsed_total = get_metric(
    Counter,
    "payconv_records_parsed_total",
    "Source records recognised by a parser",
    ["input_format", "record_type"],
)

parse_warnings_total = get_metric(
    Counter,
    "payconv_parse_warnings_total",
    "Non-fatal warnings emitted by parsers",
    ["input_format"],
)
