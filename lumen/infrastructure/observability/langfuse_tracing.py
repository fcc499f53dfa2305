# Langfuse integration
from typing import Any, Callable, TypeVar

from langfuse import observe

from lumen.infrastructure.config.settings import get_settings

F = TypeVar("F", bound=Callable[..., Any])


def trace_stage(name: str, capture_io: bool = True) -> Callable[[F], F]:
    """Wrap a reasoning call or sandbox run in a Langfuse observation.

    Tracing is decided once, when the decorated function is defined. With
    ``LUMEN_LANGFUSE_ENABLED`` unset the function is returned untouched, so no
    Langfuse client is ever created. Pass ``capture_io=False`` for anything that
    sees de-redacted values.
    """

    def decorator(func: F) -> F:
        if not get_settings().langfuse_enabled:
            return func
        return observe(name=name, capture_input=capture_io, capture_output=capture_io)(func)

    return decorator
