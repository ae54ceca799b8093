import time

from prometheus_client import Counter, Gauge, Histogram
from starlette.requests import Request

REQUESTS = Counter("http_requests_total", "HTTP requests", ["method", "path", "status"])
REQ_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10),
)
OTP_ISSUED = Counter("otp_issued_total", "Verification codes issued", ["channel"])
OTP_VERIFICATIONS = Counter("otp_verifications_total", "Verification code checks", ["channel", "reason"])
OTP_DELIVERY_FAILURES = Counter("otp_delivery_failures_total", "Failed code deliveries", ["channel", "reason"])
OTP_ACTIVE = Gauge("otp_active_codes", "Live verification codes held in memory", ["channel"])
OTP_SWEPT = Counter("otp_swept_total", "Expired codes removed by the sweeper", ["channel"])
DEDUP_REJECTED = Counter("dedup_rejected_total", "Requests rejected as in-flight duplicates", ["operation"])


async def metrics_middleware(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    duration = time.perf_counter() - start
    # templated route keeps label cardinality bounded (no raw phone numbers)
    route = getattr(request.scope.get("route"), "path", None) or "unmatched"
    REQUESTS.labels(request.method, route, str(response.status_code)).inc()
    REQ_DURATION.labels(request.method, route).observe(duration)
    return response
