from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter, Response

router = APIRouter()

# Metrics Definitions
JOB_TRANSITIONS = Counter(
    "job_transitions_total",
    "Job lifecycle transitions applied",
    ["from_status", "to_status"]
)

APPLICATION_TRANSITIONS = Counter(
    "application_transitions_total",
    "Application status transitions applied",
    ["from_status", "to_status"]
)

TRANSITION_REJECTIONS = Counter(
    "transition_rejections_total",
    "Lifecycle operations rejected before any write",
    ["operation", "error"]  # error = exception kind
)

JOB_TIME_TO_COMPLETE = Histogram(
    "job_time_to_complete_seconds",
    "Time from worker start to completion",
    buckets=[300, 900, 1800, 3600, 7200, 14400, 28800, 86400]
)

FUNDS_RELEASED = Counter(
    "funds_released_total",
    "Transfers to workers",
    ["result"]  # success|failed
)

GATEWAY_ERRORS = Counter(
    "gateway_errors_total",
    "Payment gateway call failures",
    ["operation", "kind"]  # kind = unavailable|rejected
)

WEBHOOK_EVENTS = Counter(
    "webhook_events_total",
    "Payment webhook events received",
    ["event_type", "outcome"]  # processed|duplicate|ignored
)

NOTIFICATIONS_SENT = Counter(
    "notifications_total",
    "Notifications persisted",
    ["type", "result"]  # stored|failed
)

REALTIME_CONNECTIONS = Gauge(
    "realtime_connections",
    "Open notification websocket connections"
)

DEPENDENCY_HEALTH = Gauge(
    "dependency_health",
    "Last probe result per dependency (1 healthy, 0 critical)",
    ["dependency"]
)


@router.get("/metrics")
async def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
