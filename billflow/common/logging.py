"""JSON log lines carrying the trace id and the task being processed."""

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar

from pythonjsonlogger.json import JsonFormatter

from billflow.common.config import CommonSettings


trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="")
task_type_ctx: ContextVar[str] = ContextVar("task_type", default="")
task_key_ctx: ContextVar[str] = ContextVar("task_key", default="")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(service_name)s %(trace_id)s %(task_type)s %(task_key)s %(message)s"

# Client libraries that log every request at INFO.
NOISY_LOGGERS = ("httpx", "stripe", "aiokafka")


class TaskContextFilter(logging.Filter):
    def __init__(self, service_name: str) -> None:
        super().__init__()
        self.service_name = service_name

    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = self.service_name
        record.trace_id = trace_id_ctx.get()
        record.task_type = task_type_ctx.get()
        record.task_key = task_key_ctx.get()
        return True


@contextmanager
def task_context(task_type: str, task_key: str):
    """Tag every record logged inside the block with the task's type and key."""

    type_token = task_type_ctx.set(task_type)
    key_token = task_key_ctx.set(task_key)
    try:
        yield
    finally:
        task_type_ctx.reset(type_token)
        task_key_ctx.reset(key_token)


def configure_logging(config: CommonSettings) -> None:
    """Route all records through one JSON stdout handler; call once per process."""

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(TaskContextFilter(config.service_name))
    handler.setFormatter(JsonFormatter(LOG_FORMAT))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(config.log_level)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


logger = logging.getLogger("billflow")
