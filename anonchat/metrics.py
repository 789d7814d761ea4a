"""
Prometheus metrics for the AnonChat API.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Admin login outcome counter (result)
- Chat action counter (action, result)
- Security event counter (event)

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

# Using default buckets: .005, .01, .025, .05, .075, .1, .25, .5, .75, 1.0, 2.5, 5.0, 7.5, 10.0
request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# result: success, invalid_credentials, locked, rate_limited, csrf_invalid, validation_error
login_attempts_total = Counter(
    "login_attempts_total",
    "Admin login attempts by outcome",
    labelnames=["result"]
)

chat_actions_total = Counter(
    "chat_actions_total",
    "Chat API actions by outcome",
    labelnames=["action", "result"]
)

security_events_total = Counter(
    "security_events_total",
    "Security events written to the audit sinks",
    labelnames=["event"]
)


# =============================================================================
# Helper Functions
# =============================================================================

ROUTE_LABELS = frozenset({
    "/health/live",
    "/health/ready",
    "/api/csrf",
    "/api/session",
    "/api/admin-login",
    "/api/join",
    "/api/logout",
    "/api/chat",
})


def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Count one request and observe its latency.

    Paths outside the API surface share the "other" label so that probing
    random URLs cannot grow the label set.
    """
    label = path if path in ROUTE_LABELS else "other"
    http_requests_total.labels(method=method, path=label, status=str(status)).inc()
    request_latency_seconds.labels(method=method, path=label).observe(latency_seconds)


def record_login_outcome(result: str) -> None:
    login_attempts_total.labels(result=result).inc()


def record_chat_action(action: str, result: str) -> None:
    chat_actions_total.labels(action=action, result=result).inc()


def record_security_event(event: str) -> None:
    security_events_total.labels(event=event).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
