"""Prometheus metric definitions for the task engine and its collaborators."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


tasks_claimed_total = Counter("tasks_claimed_total", "Total task claims", ["service", "task_type"])
tasks_completed_total = Counter("tasks_completed_total", "Total tasks finalized", ["service", "task_type"])
task_outcomes_total = Counter(
    "task_outcomes_total",
    "Task processing outcomes",
    ["service", "task_type", "outcome"],
)
task_processing_seconds = Histogram(
    "task_processing_seconds",
    "Task processing duration seconds from claim to finalize",
    ["service", "task_type"],
)
task_errors_total = Counter(
    "task_errors_total",
    "Task processing errors surfaced to the caller",
    ["service", "task_type", "error_type"],
)
business_failures_total = Counter(
    "business_failures_total",
    "Processor-reported business failures moved to an explicit failed state",
    ["service", "task_type"],
)
processor_calls_total = Counter(
    "processor_calls_total",
    "Calls issued to the payment processor",
    ["service", "operation", "result"],
)
notifications_sent_total = Counter(
    "notifications_sent_total",
    "Notification emails handed to the mail provider",
    ["service", "template_id"],
)
pending_tasks = Gauge(
    "pending_tasks",
    "Current count of tasks whose eligible time has passed",
    ["service", "task_type"],
)
webhook_events_total = Counter(
    "webhook_events_total",
    "Processor webhook events received",
    ["service", "event_type", "result"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
