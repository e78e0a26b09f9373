"""Prometheus metrics for credential and audit events."""

from prometheus_client import Counter, Histogram

REQUEST_COUNT = Counter(
    "authcore_http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "authcore_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

TOKENS_ISSUED = Counter(
    "authcore_refresh_tokens_issued_total",
    "Refresh token families started",
)
TOKENS_ROTATED = Counter(
    "authcore_refresh_tokens_rotated_total",
    "Successful refresh token rotations",
)
TOKENS_REVOKED = Counter(
    "authcore_refresh_tokens_revoked_total",
    "Refresh tokens revoked",
    ["reason"],
)
TOKEN_REUSE_DETECTED = Counter(
    "authcore_refresh_token_reuse_detected_total",
    "Superseded refresh tokens presented again",
)
TOKENS_RECLAIMED = Counter(
    "authcore_refresh_tokens_reclaimed_total",
    "Expired refresh token rows deleted by the retention sweep",
)

AUDIT_APPENDS = Counter(
    "authcore_audit_appends_total",
    "Audit ledger appends",
    ["outcome"],  # chained | degraded | failed
)
