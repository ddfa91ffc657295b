"""OpenTelemetry spans for matrix operations.

``@traced`` wraps table resolution and write-and-commit; ``instance.run``
opens its own span around the whole lifecycle. Spans are tagged with the
running instance (taken from structlog's context variables) so spans of
concurrently running instances can be told apart. Without a configured
tracer provider the OpenTelemetry API hands out no-op tracers.

Example:
    >>> from insert_matrix.telemetry import traced
    >>>
    >>> @traced(operation_name="writer.write_and_commit")
    ... def write_and_commit(table, batches): ...
"""

from __future__ import annotations

import functools
from typing import TYPE_CHECKING, Any, ParamSpec, TypeVar, overload

import structlog
from opentelemetry import trace
from opentelemetry.trace import Span, Status, StatusCode, Tracer

if TYPE_CHECKING:
    from collections.abc import Callable

P = ParamSpec("P")
R = TypeVar("R")

TRACER_NAME = "insert-matrix"
ATTRIBUTE_PREFIX = "insert_matrix"


def get_tracer() -> Tracer:
    """Tracer for this package from the global tracer provider."""
    return trace.get_tracer(TRACER_NAME)


def tag_span(span: Span, **attributes: Any) -> None:
    """Set ``insert_matrix.*`` attributes, skipping None values."""
    for key, value in attributes.items():
        if value is not None:
            span.set_attribute(f"{ATTRIBUTE_PREFIX}.{key}", value)


@overload
def traced(
    func: Callable[P, R],
    *,
    operation_name: str | None = ...,
    attributes: dict[str, Any] | None = ...,
) -> Callable[P, R]: ...


@overload
def traced(
    func: None = ...,
    *,
    operation_name: str | None = ...,
    attributes: dict[str, Any] | None = ...,
) -> Callable[[Callable[P, R]], Callable[P, R]]: ...


def traced(
    func: Callable[P, R] | None = None,
    *,
    operation_name: str | None = None,
    attributes: dict[str, Any] | None = None,
) -> Callable[P, R] | Callable[[Callable[P, R]], Callable[P, R]]:
    """Run the decorated function inside a span.

    Usable bare (``@traced``) or with arguments. The span records the
    function name and, when bound, the running instance. A raised exception
    is recorded with its type, the span is marked as an error, and the
    exception propagates unchanged.

    Args:
        func: Function to wrap, when used bare.
        operation_name: Span name. Defaults to the function name.
        attributes: Extra static span attributes, set as given.
    """

    def decorator(fn: Callable[P, R]) -> Callable[P, R]:
        span_name = operation_name or fn.__name__

        @functools.wraps(fn)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            bound = structlog.contextvars.get_contextvars()
            with get_tracer().start_as_current_span(span_name) as span:
                tag_span(span, operation=fn.__name__, instance=bound.get("instance"))
                for key, value in (attributes or {}).items():
                    span.set_attribute(key, value)
                try:
                    return fn(*args, **kwargs)
                except Exception as exc:
                    tag_span(span, error_type=type(exc).__name__)
                    span.record_exception(exc)
                    span.set_status(Status(StatusCode.ERROR, str(exc)))
                    raise

        return wrapper

    if func is None:
        return decorator
    return decorator(func)


__all__ = [
    "TRACER_NAME",
    "get_tracer",
    "tag_span",
    "traced",
]
