"""
Decorators - error handling decorators

Used at the telemetry boundary, where a broken external sink must never take
down dispatch.
"""

import functools
import logging
from typing import Callable, TypeVar, Any

from .exceptions import OrchestratorError


T = TypeVar('T')

logger = logging.getLogger(__name__)


def suppress_errors(
    default_return: Any = None,
    log_errors: bool = True,
    reraise: bool = False
):
    """
    Error handling decorator for synchronous callables

    Args:
        default_return: Value returned when the wrapped call fails
        log_errors: Log the failure
        reraise: Re-raise after logging

    Example:
        @suppress_errors(default_return=None)
        def deliver(event):
            ...
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> T:
            try:
                return func(*args, **kwargs)
            except OrchestratorError as e:
                if log_errors:
                    logger.error(f"[{func.__name__}] Error: {e.code} - {e.message}")
                if reraise:
                    raise
                return default_return
            except Exception as e:
                if log_errors:
                    logger.exception(f"[{func.__name__}] Unexpected error: {e}")
                if reraise:
                    raise
                return default_return
        return wrapper
    return decorator
