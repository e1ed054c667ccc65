"""
Retry policy for payment-processor calls.

Transient failures (connection, rate limit, processor 5xx) surface as
``RetryableExternalPaymentError`` and are retried with exponential backoff
and jitter.  Permanent failures are raised on the first attempt.
"""

from __future__ import annotations

import logging
from typing import Callable, TypeVar

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from commission_config.schema import RetryPolicy
from commission_kernel.exceptions import RetryableExternalPaymentError
from commission_kernel.logging_config import get_logger

logger = get_logger("gateways.retry")

T = TypeVar("T")


def build_retrying(policy: RetryPolicy) -> Retrying:
    """Tenacity controller for ``policy``; the last error is re-raised."""
    return Retrying(
        retry=retry_if_exception_type(RetryableExternalPaymentError),
        stop=stop_after_attempt(policy.max_attempts),
        wait=wait_exponential_jitter(
            initial=policy.initial_wait_seconds,
            max=policy.max_wait_seconds,
            jitter=policy.jitter_seconds,
        ),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )


def call_with_retry(policy: RetryPolicy, fn: Callable[..., T], *args, **kwargs) -> T:
    """Invoke ``fn`` under ``policy``."""
    return build_retrying(policy)(fn, *args, **kwargs)
