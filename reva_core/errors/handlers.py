# =============================================================================
# reva_core/errors/handlers.py
# Error Handling Utilities for the Reva Sync Core
# =============================================================================

from __future__ import annotations
import asyncio
import functools
import inspect
import traceback
from typing import Any, Callable, Dict, Optional, Set, TypeVar

from reva_core.logging import get_logger
from .exceptions import ErrorClassification, SyncCoreError

logger = get_logger(__name__)

T = TypeVar("T")

# Strong references to callback tasks so they are not garbage collected mid-flight
_background_callbacks: Set[asyncio.Task] = set()


def handle_error(
    error: BaseException,
    log_error: bool = True,
    context: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Centralized error handling function.

    Nothing in the sync core is allowed to crash the host process, so
    failures are logged and turned into a dict the caller can attach to a
    status flag.

    Args:
        error: The exception to handle
        log_error: Whether to log the error
        context: Short description of what was being done

    Returns:
        Serializable description of the error
    """
    if isinstance(error, SyncCoreError):
        info = error.to_dict()
    else:
        info = {
            "error_type": error.__class__.__name__,
            "code": "UNKNOWN",
            "message": str(error),
            "details": {
                "traceback": "".join(
                    traceback.format_exception(type(error), error, error.__traceback__)
                ),
            },
            "recoverable": True,
            "classification": classify_error(error).value,
        }

    if context:
        info["context"] = context

    if log_error:
        prefix = f"{context}: " if context else ""
        logger.error(
            f"{prefix}[{info['code']}] {info['message']}",
            extra={"details": info["details"]},
        )

    return info


def classify_error(error: BaseException) -> ErrorClassification:
    """
    Map an exception onto the retry taxonomy.

    Structured sync errors carry their own classification. Bare network
    failures (timeouts, refused connections) are transient; anything else
    is permanent so that it surfaces instead of looping forever.
    """
    if isinstance(error, SyncCoreError):
        return error.classification
    if isinstance(error, (asyncio.TimeoutError, TimeoutError, ConnectionError, OSError)):
        return ErrorClassification.TRANSIENT
    return ErrorClassification.PERMANENT


def invoke_callback(callback: Callable[..., Any], *args: Any, label: str = "callback") -> bool:
    """
    Call a listener with per-callback error isolation.

    Coroutine results are scheduled on the running loop and their failures
    are logged the same way.

    Returns:
        False if the callback raised synchronously, True otherwise
    """
    try:
        result = callback(*args)
    except Exception as e:
        logger.error(f"Error in {label}: {e}", exc_info=True)
        return False

    if inspect.isawaitable(result):
        task = asyncio.ensure_future(result)
        _background_callbacks.add(task)
        task.add_done_callback(functools.partial(_finish_callback_task, label))
    return True


def _finish_callback_task(label: str, task: asyncio.Task) -> None:
    _background_callbacks.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(f"Error in {label}: {exc}", exc_info=exc)


def error_boundary(
    default_return: Any = None,
    error_message: Optional[str] = None,
    log: bool = True,
):
    """
    Decorator to wrap functions with error handling.

    Args:
        default_return: Value to return if function fails
        error_message: Custom error message for the log line
        log: Whether to log errors

    Usage:
        @error_boundary(default_return=None, error_message="Probe failed")
        def probe() -> bool:
            ...
    """
    def decorator(func: Callable[..., T]) -> Callable[..., Optional[T]]:
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> Optional[T]:
            try:
                return func(*args, **kwargs)
            except Exception as e:
                if log:
                    logger.error(
                        f"{error_message or 'Error in ' + func.__name__}: {e}",
                        exc_info=True,
                    )
                return default_return

        return wrapper

    return decorator
