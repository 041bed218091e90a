from prometheus_client import Counter, Gauge, Histogram

# -----------------------------
# HTTP / API level metrics
# -----------------------------
REQUEST_COUNT = Counter(
    "xen_gateway_requests_total",
    "Total HTTP requests to xen-gateway",
    ["method", "endpoint"],
)

REQUEST_LATENCY = Histogram(
    "xen_gateway_request_latency_seconds",
    "Latency of HTTP requests to xen-gateway",
    ["endpoint"],
)

# -----------------------------
# Hypervisor side metrics
# -----------------------------
XEN_OPERATIONS = Counter(
    "xen_operations_total",
    "Gateway operations performed against XenAPI",
    ["operation", "outcome"],
)

XEN_SESSIONS_OPEN = Gauge(
    "xen_sessions_open",
    "Number of XenAPI sessions currently logged in",
)

XEN_SESSION_FAILURES = Counter(
    "xen_session_failures_total",
    "Failed XenAPI logins by classified cause",
    ["cause"],
)


def record_operation(operation: str, outcome: str) -> None:
    XEN_OPERATIONS.labels(operation=operation, outcome=outcome).inc()


def record_session_opened() -> None:
    XEN_SESSIONS_OPEN.inc()


def record_session_closed() -> None:
    XEN_SESSIONS_OPEN.dec()


def record_session_failure(cause: str) -> None:
    XEN_SESSION_FAILURES.labels(cause=cause).inc()
