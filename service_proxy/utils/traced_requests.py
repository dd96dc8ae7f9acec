import logging
from contextlib import contextmanager
from typing import Dict, Optional

from opentelemetry.trace import Tracer
from prometheus_client import Counter, Histogram

logger = logging.getLogger("uvicorn.error")

DISPATCH_OUTCOMES = Counter(
    "service_proxy_dispatch_total",
    "Dispatched requests by outcome",
    ["outcome"],
)
UPSTREAM_SECONDS = Histogram(
    "service_proxy_upstream_seconds",
    "Time until the upstream response headers arrived",
)


@contextmanager
def traced_request(
    tracer: Tracer,
    operation: str,
    method: str,
    path: str,
    start_message: Optional[str] = None,
    extra_attrs: Optional[Dict] = None,
):
    """Context manager to create a span, set common request attributes and log a start message."""
    with tracer.start_as_current_span(operation) as span:
        span.set_attribute("http.method", method)
        span.set_attribute("http.target", path)
        if extra_attrs:
            for k, v in extra_attrs.items():
                if v is not None:
                    span.set_attribute(k, v)
        if start_message:
            logger.debug(start_message)
        yield span


def record_outcome(outcome: str) -> None:
    DISPATCH_OUTCOMES.labels(outcome=outcome).inc()
