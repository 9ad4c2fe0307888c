"""
Error handling framework for Session Keeper.

This module provides:
- Hierarchical exception classes
- Error context preservation
- Structured error responses
- A decorator and a context manager for boundary error handling
"""

from typing import Optional, Dict, Any, List, Type, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
import traceback
from contextlib import contextmanager
import asyncio
import functools

from .logging import get_logger


logger = get_logger("session-keeper.errors")


class ErrorSeverity(Enum):
    """Error severity levels."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Error categories for classification."""
    SYSTEM = "system"
    PROCESS = "process"
    SCHEDULER = "scheduler"
    CONFIGURATION = "configuration"
    EXTERNAL_SERVICE = "external_service"
    INTERNAL = "internal"
    UNKNOWN = "unknown"


@dataclass
class ErrorContext:
    """Context information for an error."""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    session_id: Optional[str] = None
    component: Optional[str] = None
    operation: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    stack_trace: Optional[str] = None


class SessionKeeperError(Exception):
    """Base exception for all Session Keeper errors."""

    code: str = "SESSION_KEEPER_ERROR"
    default_message: str = "An error occurred in Session Keeper"
    severity: ErrorSeverity = ErrorSeverity.ERROR
    category: ErrorCategory = ErrorCategory.UNKNOWN
    is_retryable: bool = False

    def __init__(
        self,
        message: Optional[str] = None,
        context: Optional[ErrorContext] = None,
        cause: Optional[Exception] = None,
        **kwargs
    ):
        """Initialize error."""
        self.message = message or self.default_message
        self.context = context or ErrorContext()
        self.cause = cause
        self.kwargs = kwargs

        if not self.context.stack_trace and cause is not None:
            self.context.stack_trace = "".join(
                traceback.format_exception(type(cause), cause, cause.__traceback__)
            )

        super().__init__(self.message)

    def get_suggestions(self) -> List[str]:
        """Get error resolution suggestions."""
        return []

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "severity": self.severity.value,
                "category": self.category.value,
                "is_retryable": self.is_retryable,
                "suggestions": self.get_suggestions(),
                "context": {
                    "timestamp": self.context.timestamp.isoformat(),
                    "session_id": self.context.session_id,
                    "component": self.context.component,
                    "operation": self.context.operation,
                    "metadata": self.context.metadata
                }
            }
        }


class ConfigurationError(SessionKeeperError):
    """Configuration errors."""
    code = "CONFIG_ERROR"
    default_message = "Configuration error"
    category = ErrorCategory.CONFIGURATION

    def get_suggestions(self) -> List[str]:
        return [
            "Check your configuration file syntax",
            "Verify SESSION_KEEPER_* environment variables",
        ]


class ProcessError(SessionKeeperError):
    """OS process inspection or signalling errors."""
    code = "PROCESS_ERROR"
    default_message = "Process operation failed"
    category = ErrorCategory.PROCESS


class ProcessStateError(ProcessError):
    """Misuse of the in-memory process status table."""
    code = "PROCESS_STATE_ERROR"
    default_message = "Invalid process state transition"
    category = ErrorCategory.INTERNAL
    severity = ErrorSeverity.CRITICAL


class SchedulerError(SessionKeeperError):
    """Scheduler errors."""
    code = "SCHEDULER_ERROR"
    default_message = "Scheduler error occurred"
    category = ErrorCategory.SCHEDULER


class SchedulerJobNotFoundError(SchedulerError):
    """Raised when a job id is unknown to the scheduler."""
    code = "SCHEDULER_JOB_NOT_FOUND"

    def __init__(self, job_id: str, **kwargs):
        self.job_id = job_id
        super().__init__(f"Scheduler job not found: {job_id}", **kwargs)


class InvalidCronExpressionError(SchedulerError):
    """Raised when a cron expression cannot be parsed."""
    code = "INVALID_CRON_EXPRESSION"
    severity = ErrorSeverity.WARNING

    def __init__(self, expression: str, **kwargs):
        self.expression = expression
        super().__init__(f"Invalid cron expression: {expression!r}", **kwargs)


class ExternalServiceError(SessionKeeperError):
    """Errors raised by an external collaborator."""
    code = "EXTERNAL_SERVICE_ERROR"
    default_message = "External service error"
    category = ErrorCategory.EXTERNAL_SERVICE
    is_retryable = True

    def __init__(self, service_name: str, **kwargs):
        self.service_name = service_name
        message = kwargs.pop("message", None) or f"Error communicating with external service: {service_name}"
        super().__init__(message, **kwargs)


def handle_errors(
    *error_classes: Type[Exception],
    fallback: Optional[Callable] = None,
    reraise: bool = True,
    log_level: ErrorSeverity = ErrorSeverity.ERROR
):
    """
    Decorator for handling errors in functions.

    Args:
        error_classes: Exception classes to catch
        fallback: Fallback function to call on error
        reraise: Whether to reraise the exception
        log_level: Logging level for errors
    """
    error_classes = error_classes or (Exception,)

    def decorator(func):
        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            try:
                return await func(*args, **kwargs)
            except error_classes as e:
                getattr(logger, log_level.value)(
                    f"error_in_{func.__name__}",
                    error=str(e),
                    error_type=type(e).__name__,
                )

                if fallback:
                    if asyncio.iscoroutinefunction(fallback):
                        return await fallback(*args, **kwargs)
                    return fallback(*args, **kwargs)

                if reraise:
                    raise

                return None

        @functools.wraps(func)
        def sync_wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except error_classes as e:
                getattr(logger, log_level.value)(
                    f"error_in_{func.__name__}",
                    error=str(e),
                    error_type=type(e).__name__,
                )

                if fallback:
                    return fallback(*args, **kwargs)

                if reraise:
                    raise

                return None

        return async_wrapper if asyncio.iscoroutinefunction(func) else sync_wrapper

    return decorator


@contextmanager
def error_context(
    component: str,
    operation: str,
    reraise: bool = True,
    **metadata
):
    """
    Context manager for error handling with context.

    Args:
        component: Component name
        operation: Operation name
        reraise: Whether to reraise exceptions
        **metadata: Additional context metadata
    """
    context = ErrorContext(
        component=component,
        operation=operation,
        metadata=metadata
    )

    try:
        yield context
    except SessionKeeperError as e:
        e.context.component = e.context.component or component
        e.context.operation = e.context.operation or operation
        e.context.metadata.update(metadata)
        logger.error("session_keeper_error_in_context", error=e.to_dict())
        if reraise:
            raise
    except Exception as e:
        wrapped = SessionKeeperError(
            message=str(e),
            context=context,
            cause=e
        )
        logger.error("unexpected_error_in_context", error=wrapped.to_dict())
        if reraise:
            raise wrapped from e


__all__ = [
    'SessionKeeperError',
    'ErrorContext',
    'ErrorSeverity',
    'ErrorCategory',
    'ConfigurationError',
    'ProcessError',
    'ProcessStateError',
    'SchedulerError',
    'SchedulerJobNotFoundError',
    'InvalidCronExpressionError',
    'ExternalServiceError',
    'handle_errors',
    'error_context',
]
