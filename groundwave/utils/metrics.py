from __future__ import annotations

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest


HTTP_REQUESTS_TOTAL = Counter(
    "groundwave_http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "groundwave_http_request_duration_seconds",
    "HTTP request duration (seconds)",
    ["method", "path"],
)

POW_CHALLENGES_TOTAL = Counter(
    "groundwave_pow_challenges_total",
    "Proof-of-work challenges issued",
    ["risk"],
)

POW_VERIFICATIONS_TOTAL = Counter(
    "groundwave_pow_verifications_total",
    "Proof-of-work verification attempts",
    ["result"],
)

ACCESS_DENIED_TOTAL = Counter(
    "groundwave_access_denied_total",
    "Requests rejected by an admission gate",
    ["reason"],
)

WEBAUTHN_CEREMONIES_TOTAL = Counter(
    "groundwave_webauthn_ceremonies_total",
    "WebAuthn ceremony outcomes",
    ["ceremony", "result"],
)


def render_metrics() -> tuple[bytes, str]:
    return generate_latest(), CONTENT_TYPE_LATEST
