"""
Prometheus instruments for the storefront.

HTTP traffic is recorded by ``PrometheusMiddleware``; the order, payment and
billing counters are incremented by the services that own those transitions.
"""
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from prometheus_client.openmetrics.exposition import generate_latest as generate_latest_openmetrics
from fastapi import Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
import time


# HTTP
http_requests_total = Counter(
    'http_requests_total',
    'HTTP requests served',
    ['method', 'endpoint', 'status_code']
)

http_request_duration_seconds = Histogram(
    'http_request_duration_seconds',
    'Time to produce a response',
    ['method', 'endpoint'],
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# Orders, payments, billing
orders_created_total = Counter(
    'orders_created_total',
    'Orders placed',
    ['discounted']
)

order_transitions_total = Counter(
    'order_transitions_total',
    'Order status transitions applied',
    ['from_status', 'to_status']
)

payment_transitions_total = Counter(
    'payment_transitions_total',
    'Payment status transitions applied',
    ['method', 'to_status']
)

revenues_created_total = Counter(
    'revenues_created_total',
    'Revenue records created from completed payments'
)

settlement_sweep_errors_total = Counter(
    'settlement_sweep_errors_total',
    'Units of work that failed during the daily billing sweep',
    ['stage']
)

effects_failed_total = Counter(
    'effects_failed_total',
    'Side effects dropped after exhausting retries',
    ['kind']
)

payment_webhooks_total = Counter(
    'payment_webhooks_total',
    'Provider callbacks received',
    ['provider', 'outcome']
)

settlement_sweep_duration_seconds = Histogram(
    'settlement_sweep_duration_seconds',
    'Wall time of one daily billing sweep',
    buckets=[0.1, 0.5, 1.0, 5.0, 15.0, 60.0, 300.0]
)


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Counts requests and times them, labelled by route template."""

    async def dispatch(self, request: Request, call_next):
        if request.url.path == "/metrics":
            return await call_next(request)

        started = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
        finally:
            # Routing fills scope["route"]; the template keeps label cardinality bounded
            route = request.scope.get("route")
            endpoint = getattr(route, "path", None) or "unmatched"
            http_requests_total.labels(request.method, endpoint, status_code).inc()
            http_request_duration_seconds.labels(request.method, endpoint).observe(time.perf_counter() - started)

        return response


def get_metrics_response(openmetrics: bool = False) -> Response:
    """Current registry in the text exposition format, or OpenMetrics when asked."""
    if openmetrics:
        content = generate_latest_openmetrics()
        content_type = "application/openmetrics-text; version=1.0.0; charset=utf-8"
    else:
        content = generate_latest()
        content_type = CONTENT_TYPE_LATEST

    return Response(content=content, media_type=content_type)
