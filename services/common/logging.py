import logging
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Literal

from opentelemetry import trace

from .config import ServiceSettings


_PLACEHOLDER = "-"
_LOG_FORMAT = (
    "%(asctime)s | %(levelname)s | %(name)s | trace_id=%(trace_id)s span_id=%(span_id)s "
    "| tenant=%(tenant_id)s | %(message)s"
)

_TENANT_ID: ContextVar[str | None] = ContextVar("notification_tenant_id", default=None)


@contextmanager
def bind_tenant(tenant_id: str | None) -> Iterator[None]:
    """Attach a tenant id to every log record emitted inside the block."""

    token = _TENANT_ID.set(tenant_id)
    try:
        yield
    finally:
        _TENANT_ID.reset(token)


def current_tenant() -> str | None:
    return _TENANT_ID.get()


def _hex(value: int, length: int) -> str:
    return format(value, f"0{length}x")


class TraceContextFilter(logging.Filter):
    """Populate trace/span identifiers and the bound tenant on each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.tenant_id = _TENANT_ID.get() or _PLACEHOLDER
        record.trace_id = _PLACEHOLDER
        record.span_id = _PLACEHOLDER
        span_context = trace.get_current_span().get_span_context()
        if span_context is not None and span_context.is_valid:
            record.trace_id = _hex(span_context.trace_id, 32)
            record.span_id = _hex(span_context.span_id, 16)
        return True


def configure_logging(settings: ServiceSettings) -> None:
    """Configure root logging level, format and context filter."""

    logging_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = settings.log_level
    logging.basicConfig(level=logging_level, format=_LOG_FORMAT)
    root_logger = logging.getLogger()
    root_logger.setLevel(logging_level)
    context_filter = next(
        (f for f in root_logger.filters if isinstance(f, TraceContextFilter)),
        None,
    )
    if context_filter is None:
        context_filter = TraceContextFilter()
        root_logger.addFilter(context_filter)
    for handler in root_logger.handlers:
        if not any(isinstance(f, TraceContextFilter) for f in handler.filters):
            handler.addFilter(context_filter)
