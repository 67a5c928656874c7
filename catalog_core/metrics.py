from time import perf_counter
from flask import Blueprint, g, request, Response
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST

metrics_bp = Blueprint("metrics", __name__)

# Prometheus metrics
REQUEST_LATENCY = Histogram(
    "catalog_http_request_latency_seconds",
    "Latency of HTTP requests",
    ["method", "path", "status"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5),
)
REQUEST_COUNT = Counter(
    "catalog_http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
ERROR_COUNT = Counter(
    "catalog_http_errors_total",
    "Total HTTP 5xx responses",
    ["method", "path", "status"],
)

# ingestion pipeline
UPSTREAM_RETRIES = Counter(
    "catalog_upstream_retries_total",
    "Retried upstream provider calls",
    ["provider"],
)
PIPELINE_RUNS = Counter(
    "catalog_pipeline_runs_total",
    "Ingestion pipeline invocations by outcome",
    ["status"],
)
PIPELINE_DURATION = Histogram(
    "catalog_pipeline_duration_seconds",
    "Wall-clock duration of completed pipeline runs",
    buckets=(1, 10, 30, 60, 300, 900, 1800, 3600, 7200),
)
AVAILABILITY_UPSERTS = Counter(
    "catalog_availabilities_upserted_total",
    "Availability rows written by ingestion",
    ["result"],
)
ENRICHMENT_RESULTS = Counter(
    "catalog_enrichment_total",
    "Movies processed by metadata enrichment",
    ["outcome"],
)

@metrics_bp.before_app_request
def _metrics_before():
    g._t_start = perf_counter()

@metrics_bp.after_app_request
def _metrics_after(resp):
    start = getattr(g, "_t_start", None)
    if start is None:
        return resp
    dur = perf_counter() - start
    method = request.method
    # stabilize label cardinality: use the rule pattern when available
    path = request.url_rule.rule if request.url_rule else request.path
    status = str(resp.status_code)

    REQUEST_LATENCY.labels(method, path, status).observe(dur)
    REQUEST_COUNT.labels(method, path, status).inc()
    if resp.status_code >= 500:
        ERROR_COUNT.labels(method, path, status).inc()
    return resp

@metrics_bp.get("/metrics")
def metrics():
    data = generate_latest()
    return Response(data, mimetype=CONTENT_TYPE_LATEST)
