from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

RELAYED_REQUESTS = Counter(
    "peergate_relayed_requests_total",
    "Total requests relayed through the tunnel",
    ["method", "status"],
)

BYTES_TRANSFERRED = Counter(
    "peergate_bytes_total",
    "Bytes carried over data channels",
    ["direction"],  # direction: out (to host) / in (from host)
)

NEGOTIATIONS = Counter(
    "peergate_negotiations_total",
    "Peer session negotiations",
    ["outcome"],  # outcome: connected/failed/timeout
)

ACTIVE_CHANNELS = Gauge(
    "peergate_active_channels",
    "Data channels currently bound to an exchange",
)

ACTIVE_SESSIONS = Gauge(
    "peergate_active_sessions",
    "Peer sessions currently connected",
)

RELAY_DURATION = Histogram(
    "peergate_relay_duration_seconds",
    "Time from relay start to response headers",
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)


def bucket_status(status: int) -> str:
    """Bucket HTTP status to prevent cardinality explosion."""
    if 100 <= status < 600:
        return f"{status // 100}xx"
    return "other"


def generate_metrics() -> bytes:
    return generate_latest()


def get_content_type() -> str:
    return CONTENT_TYPE_LATEST
