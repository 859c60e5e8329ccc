"""Utility functions and decorators for samplerec."""

import time
import logging
from functools import wraps
from typing import TypeVar, Callable

import numpy as np

logger = logging.getLogger(__name__)

T = TypeVar('T')


def retry_with_backoff(
    max_retries: int = 3,
    initial_delay: float = 1.0,
    backoff_factor: float = 2.0,
    exceptions: tuple = (Exception,)
):
    """
    Retry the wrapped call on ``exceptions``, sleeping ``initial_delay`` and
    multiplying the delay by ``backoff_factor`` after each failed attempt.

    After ``max_retries`` attempts the last error is re-raised; exceptions
    outside ``exceptions`` are never retried.

    Example:
        @retry_with_backoff(max_retries=5, initial_delay=0.05, exceptions=(TransactionConflictError,))
        def bump_counter():
            ...
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args, **kwargs) -> T:
            delay = initial_delay
            for attempt in range(1, max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if attempt == max_retries:
                        logger.error(f"{func.__name__} gave up after {max_retries} attempts: {e}")
                        raise
                    logger.warning(
                        f"{func.__name__} attempt {attempt}/{max_retries} failed ({e}), "
                        f"retrying in {delay:.2f}s"
                    )
                    time.sleep(delay)
                    delay *= backoff_factor
            raise ValueError("max_retries must be at least 1")

        return wrapper
    return decorator


def make_rng(seed: int | None = None) -> np.random.Generator:
    """Random generator for sampling and shuffles; pass a seed for reproducible runs."""
    return np.random.default_rng(seed)


def chunked(items: list, size: int) -> list[list]:
    """Split a list into consecutive chunks of at most ``size`` items."""
    if size <= 0:
        raise ValueError("chunk size must be positive")
    return [items[i:i + size] for i in range(0, len(items), size)]
