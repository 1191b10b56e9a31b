"""
Standardized Error Handling for tiermeta
========================================

This module provides the exception hierarchy and error handling helpers used by
every metastore operation.

Errors fall into two families:

- Resource errors (``MetaStoreResourceError``): pool exhaustion, broken or
  missing connections, driver failures. Always propagated, never retried.
- Domain errors (``MetaStoreDomainError``): unknown storage policy names,
  updates with nothing to set, unsupported dialects, invalid identifiers.

Soft failures (zero-row updates, empty aggregation inputs, unresolved file ids)
are not errors and never raise.
"""

import functools
import logging
import time
from contextlib import contextmanager
from typing import Any, Callable, Dict, Optional, Type

from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)


class MetaStoreError(Exception):
    """Base exception for all metastore errors."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        self.context = context or {}
        super().__init__(message)

        context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
        logger.error(
            f"Metastore error: {message}" + (f" ({context_str})" if context_str else "")
        )


class MetaStoreResourceError(MetaStoreError):
    """Raised when the backing store or a driver call fails."""

    pass


class MetaStoreConnectionError(MetaStoreResourceError):
    """Raised when no usable connection can be obtained."""

    pass


class MetaStoreDomainError(MetaStoreError):
    """Raised when a request is well-formed SQL-wise but invalid for the domain."""

    pass


class MetaStoreConfigurationError(MetaStoreDomainError):
    """Raised when metastore configuration is invalid."""

    pass


class UnknownStoragePolicyError(MetaStoreDomainError):
    """Raised when a storage policy name is not known to the metastore."""

    pass


class EmptyUpdateError(MetaStoreDomainError):
    """Raised when an update statement would set no fields."""

    pass


class UnsupportedDialectError(MetaStoreDomainError):
    """Raised when an administrative operation does not support the database."""

    pass


class InvalidTimeWindowError(MetaStoreDomainError):
    """Raised for empty or inverted time windows."""

    pass


class InvalidIdentifierError(MetaStoreDomainError):
    """Raised when a table name is not a plain SQL identifier."""

    pass


class UnknownAccessCountTableError(MetaStoreDomainError):
    """Raised when a table is not registered as an access-count table."""

    pass


class InvalidCountFilterError(MetaStoreDomainError):
    """Raised when an aggregate count filter cannot be parsed."""

    pass


class InvalidValueError(MetaStoreDomainError):
    """Raised when a value violates a data-model constraint."""

    pass


def with_error_handling(
    error_type: Type[MetaStoreError] = MetaStoreResourceError,
    context: Optional[Dict[str, Any]] = None,
):
    """
    Decorator converting driver exceptions into metastore errors.

    MetaStoreError subclasses pass through untouched. SQLAlchemy errors are
    wrapped in ``error_type`` with the original exception chained.

    Args:
        error_type: Type of MetaStoreError to raise
        context: Additional context to include in the error
    """

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except MetaStoreError:
                raise
            except SQLAlchemyError as e:
                error_context = (context or {}).copy()
                error_context.update(
                    {
                        "function": func.__name__,
                        "original_error_type": type(e).__name__,
                    }
                )
                raise error_type(f"Error in {func.__name__}: {e}", error_context) from e

        return wrapper

    return decorator


@contextmanager
def metastore_operation_context(operation: str, **context):
    """
    Context manager logging the start, duration and failure of an operation.

    Args:
        operation: Description of the operation
        **context: Additional context for logging
    """
    logger.debug(f"Starting metastore operation: {operation}", extra=context)
    start_time = time.time()

    try:
        yield
        duration = time.time() - start_time
        logger.debug(
            f"Metastore operation completed: {operation} ({duration:.3f}s)",
            extra=context,
        )
    except MetaStoreError:
        logger.error(f"Metastore operation failed: {operation}", extra=context)
        raise
    except Exception as e:
        logger.error(
            f"Unexpected error in metastore operation: {operation} - {e}", extra=context
        )
        raise


def log_metastore_performance(func: Callable) -> Callable:
    """Decorator to log timing for metastore operations."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        start_time = time.time()

        try:
            result = func(*args, **kwargs)
            duration = time.time() - start_time
            logger.debug(f"Metastore operation {func.__name__} completed in {duration:.3f}s")
            return result

        except Exception as e:
            duration = time.time() - start_time
            logger.warning(
                f"Metastore operation {func.__name__} failed after {duration:.3f}s: {e}"
            )
            raise

    return wrapper
