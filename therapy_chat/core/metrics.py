from prometheus_client import Counter, Histogram
from starlette_prometheus import metrics, PrometheusMiddleware

# ==================================================
# Prometheus Metrics Definition
# ==================================================

# 1. Standard HTTP Metrics
http_requests_total = Counter(
    "http_requests_total",
    "Total number of HTTP requests",
    ["method", "endpoint", "status"]
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"]
)

# 2. AI Metrics
# LLM calls are much slower than DB calls, hence the custom buckets.
llm_inference_duration_seconds = Histogram(
    "llm_inference_duration_seconds",
    "Time spent processing LLM inference",
    ["model"],
    buckets=[0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0]
)

# 3. Export / Fine-tune Metrics
training_exports_total = Counter(
    "training_exports_total",
    "Fine-tune export attempts by outcome",
    ["outcome"]
)

fine_tune_status_total = Counter(
    "fine_tune_status_total",
    "Fine-tune job status notifications received",
    ["status"]
)


def setup_metrics(app):
    """
    Configures the Prometheus middleware and exposes the /metrics endpoint.
    """
    app.add_middleware(PrometheusMiddleware)
    app.add_route("/metrics", metrics)
