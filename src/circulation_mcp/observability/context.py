"""Context managers for tracing circulation operations."""

from contextlib import contextmanager

from . import logfire


@contextmanager
def trace_repository_operation(repository: str, operation: str, table: str | None = None, **attributes):
    """Span around one unit of work against the circulation tables."""
    with logfire.span(
        f"db.{repository}.{operation}",
        db_repository=repository,
        db_operation=operation,
        db_table=table or repository,
        **attributes,
    ) as span:
        try:
            yield span
        except Exception as e:
            span.set_attribute("db.error", str(e))
            span.set_attribute("db.error_kind", getattr(e, "kind", type(e).__name__))
            raise
