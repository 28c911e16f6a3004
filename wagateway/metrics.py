from __future__ import annotations

from prometheus_client import Counter, Gauge


WA_SESSIONS = Gauge(
    "wagateway_sessions",
    "Number of registered WhatsApp sessions grouped by status",
    labelnames=("status",),
)
WA_SESSION_START_TOTAL = Counter(
    "wagateway_session_start_total", "Total number of session creation requests accepted"
)
WA_QR_ISSUED_TOTAL = Counter(
    "wagateway_qr_issued_total", "Total number of QR challenges received from the engine"
)
WA_SESSION_CLOSED_TOTAL = Counter(
    "wagateway_session_closed_total",
    "Sessions removed from the registry grouped by terminal status",
    labelnames=("status",),
)
WA_SEND_TOTAL = Counter(
    "wagateway_send_total",
    "Outbound message attempts grouped by result",
    labelnames=("result",),
)
EVENT_ERRORS = Counter(
    "wagateway_events_errors_total",
    "Engine event handling errors grouped by category",
    labelnames=("type",),
)

__all__ = [
    "EVENT_ERRORS",
    "WA_QR_ISSUED_TOTAL",
    "WA_SEND_TOTAL",
    "WA_SESSIONS",
    "WA_SESSION_CLOSED_TOTAL",
    "WA_SESSION_START_TOTAL",
]
