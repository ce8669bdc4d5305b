"""Prometheus metrics for the API and the worker.

Everything registers on the default ``prometheus_client`` registry, which
``wykra.main`` serves on ``/metrics``.
"""
from __future__ import annotations

from datetime import datetime, timezone

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

HTTP_REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "Duration of HTTP requests in seconds",
    ["method", "route", "status"],
    buckets=(0.1, 0.3, 0.5, 0.7, 1, 3, 5, 7, 10),
)
HTTP_REQUESTS = Counter("http_requests_total", "Total number of HTTP requests", ["method", "route", "status"])
HTTP_REQUEST_ERRORS = Counter(
    "http_request_errors_total", "Total number of HTTP request errors", ["method", "route", "status"]
)

TASKS_CREATED = Counter("tasks_created_total", "Total number of tasks created", ["task_type"])
TASKS_COMPLETED = Counter("tasks_completed_total", "Total number of tasks completed successfully", ["task_type"])
TASKS_FAILED = Counter("tasks_failed_total", "Total number of tasks that failed", ["task_type"])
TASK_DURATION = Histogram(
    "task_processing_duration_seconds",
    "Duration of task processing in seconds",
    ["status", "task_type"],
    buckets=(1, 5, 10, 30, 60, 120, 300, 600),
)
TASK_QUEUE_SIZE = Gauge("task_queue_size", "Current size of the task queue", ["queue_name"])
TASK_QUEUE_WAIT = Histogram(
    "task_queue_wait_time_seconds",
    "Time a task spent waiting in queue before processing",
    ["task_type", "queue_name"],
    buckets=(0.1, 0.5, 1, 5, 10, 30, 60, 300),
)

LLM_PROMPT_TOKENS = Counter("llm_prompt_tokens_total", "Prompt tokens used in LLM requests", ["model", "service"])
LLM_COMPLETION_TOKENS = Counter(
    "llm_completion_tokens_total", "Completion tokens used in LLM requests", ["model", "service"]
)
LLM_TOTAL_TOKENS = Counter("llm_total_tokens_total", "Prompt plus completion tokens", ["model", "service"])
LLM_CALLS = Counter("llm_calls_total", "Total number of LLM API calls", ["model", "service"])
LLM_CALL_DURATION = Histogram(
    "llm_call_duration_seconds",
    "Duration of LLM API calls in seconds",
    ["model", "service", "status"],
    buckets=(0.5, 1, 2, 5, 10, 20, 30, 60),
)
LLM_CALL_ERRORS = Counter("llm_call_errors_total", "Total number of LLM API call errors", ["model", "service", "error_type"])

BRIGHTDATA_CALLS = Counter("brightdata_calls_total", "Total number of BrightData API calls", ["dataset", "operation", "status"])
BRIGHTDATA_CALL_DURATION = Histogram(
    "brightdata_call_duration_seconds",
    "Duration of BrightData API calls in seconds",
    ["dataset", "operation", "status"],
    buckets=(0.5, 1, 2, 5, 10, 30, 60, 120, 300),
)
BRIGHTDATA_CALL_ERRORS = Counter(
    "brightdata_call_errors_total", "Total number of BrightData API call errors", ["dataset", "operation", "error_type"]
)

DB_QUERY_DURATION = Histogram(
    "db_query_duration_seconds",
    "Duration of database queries in seconds",
    ["operation", "entity"],
    buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1, 5),
)
DB_QUERIES = Counter("db_queries_total", "Total number of database queries", ["operation", "entity"])
DB_QUERY_ERRORS = Counter("db_query_errors_total", "Total number of database query errors", ["operation", "entity", "error_type"])


def render_latest() -> tuple[bytes, str]:
    return generate_latest(), CONTENT_TYPE_LATEST


def task_type(topic: str, name: str) -> str:
    return f"{topic}_{name}"


def record_http_request(method: str, route: str, status: int, duration_seconds: float) -> None:
    labels = (method, route, str(status))
    HTTP_REQUESTS.labels(*labels).inc()
    HTTP_REQUEST_DURATION.labels(*labels).observe(duration_seconds)
    if status >= 400:
        HTTP_REQUEST_ERRORS.labels(*labels).inc()


def record_task_created(kind: str) -> None:
    TASKS_CREATED.labels(kind).inc()


def record_task_finished(kind: str, status: str, duration_seconds: float) -> None:
    """``status`` is the terminal task status, ``completed`` or ``failed``."""
    if status == "completed":
        TASKS_COMPLETED.labels(kind).inc()
    else:
        TASKS_FAILED.labels(kind).inc()
    TASK_DURATION.labels(status, kind).observe(duration_seconds)


def set_queue_size(queue_name: str, size: int) -> None:
    TASK_QUEUE_SIZE.labels(queue_name).set(size)


def record_queue_wait(kind: str, queue_name: str, enqueued_at: str | None) -> None:
    if not enqueued_at:
        return
    try:
        queued = datetime.fromisoformat(enqueued_at)
    except ValueError:
        return
    if queued.tzinfo is None:
        queued = queued.replace(tzinfo=timezone.utc)
    waited = (datetime.now(timezone.utc) - queued).total_seconds()
    TASK_QUEUE_WAIT.labels(kind, queue_name).observe(max(waited, 0.0))


def record_llm_call(
    model: str,
    service: str,
    input_tokens: int = 0,
    output_tokens: int = 0,
    duration_seconds: float = 0.0,
    error_type: str | None = None,
) -> None:
    LLM_CALLS.labels(model, service).inc()
    LLM_CALL_DURATION.labels(model, service, "error" if error_type else "success").observe(duration_seconds)
    if error_type:
        LLM_CALL_ERRORS.labels(model, service, error_type).inc()
        return
    LLM_PROMPT_TOKENS.labels(model, service).inc(input_tokens)
    LLM_COMPLETION_TOKENS.labels(model, service).inc(output_tokens)
    LLM_TOTAL_TOKENS.labels(model, service).inc(input_tokens + output_tokens)


def record_brightdata_call(
    dataset: str,
    operation: str,
    duration_seconds: float,
    error_type: str | None = None,
) -> None:
    status = "error" if error_type else "success"
    BRIGHTDATA_CALLS.labels(dataset, operation, status).inc()
    BRIGHTDATA_CALL_DURATION.labels(dataset, operation, status).observe(duration_seconds)
    if error_type:
        BRIGHTDATA_CALL_ERRORS.labels(dataset, operation, error_type).inc()


def record_db_query(operation: str, entity: str, duration_seconds: float, error_type: str | None = None) -> None:
    DB_QUERIES.labels(operation, entity).inc()
    DB_QUERY_DURATION.labels(operation, entity).observe(duration_seconds)
    if error_type:
        DB_QUERY_ERRORS.labels(operation, entity, error_type).inc()
