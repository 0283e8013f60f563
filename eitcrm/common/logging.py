"""Structured JSON logging with request/update/delivery context fields."""

import logging
import sys
from contextvars import ContextVar

from pythonjsonlogger.json import JsonFormatter

from eitcrm.common.config import settings


trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="")
update_id_ctx: ContextVar[str] = ContextVar("update_id", default="")
delivery_id_ctx: ContextVar[str] = ContextVar("delivery_id", default="")


class ContextFilter(logging.Filter):
    """Inject service and correlation identifiers into every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = settings.service_name
        record.trace_id = trace_id_ctx.get()
        record.update_id = update_id_ctx.get()
        record.delivery_id = delivery_id_ctx.get()
        return True


def configure_logging() -> None:
    """Configure root logger once per service process."""

    handler = logging.StreamHandler(sys.stdout)
    context_filter = ContextFilter()
    handler.addFilter(context_filter)
    formatter = JsonFormatter(
        "%(asctime)s %(levelname)s %(service_name)s %(trace_id)s %(update_id)s %(delivery_id)s %(message)s"
    )
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(settings.log_level)
    root.addFilter(context_filter)


logger = logging.getLogger("eitcrm")
