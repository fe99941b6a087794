"""
Retry Controller — Transient Failure Policy
=============================================

Pure decisions about whether and when to retry a failed request.

The controller never calls the transport. The dispatcher owns the loop:
it asks ``should_retry``, sleeps ``compute_delay``, and re-submits the
request through admission control. Progress is carried in an immutable
``RetryContext`` so concurrent lineages never share a counter.
"""

from __future__ import annotations

from dataclasses import dataclass

from courier.core.config import Settings
from courier.core.exceptions import RequestError
from courier.core.types import ErrorKind
from courier.models.request import RequestDescriptor

RETRYABLE_KINDS = frozenset({ErrorKind.NETWORK, ErrorKind.TIMEOUT, ErrorKind.SERVER})

@dataclass(frozen=True)
class RetryPolicy:
    """Resolved retry configuration for one request."""

    max_retries: int = 0
    delay_s: float = 1.0
    incremental: bool = False
    extra_statuses: frozenset[int] = frozenset()

    @classmethod
    def resolve(cls, request: RequestDescriptor, settings: Settings) -> RetryPolicy:
        """
        Build the policy from the descriptor, falling back to settings.

        ``retry=True`` uses the global RETRY_TIMES, an int is taken as the
        retry count, ``False`` disables retries.
        """
        if request.retry is True:
            max_retries = settings.RETRY_TIMES
        elif request.retry is False or request.retry is None:
            max_retries = 0
        else:
            max_retries = max(int(request.retry), 0)

        delay = request.retry_delay_s if request.retry_delay_s is not None else settings.RETRY_DELAY_S
        return cls(
            max_retries=max_retries,
            delay_s=delay,
            incremental=request.retry_incremental,
            extra_statuses=frozenset(request.retry_statuses),
        )

@dataclass(frozen=True)
class RetryContext:
    """Progress of one retry lineage. ``retries`` = retries already performed."""

    retries: int = 0
    last_error: RequestError | None = None

    def next(self, error: RequestError) -> RetryContext:
        return RetryContext(retries=self.retries + 1, last_error=error)

class RetryController:
    """Stateless retry decisions."""

    @staticmethod
    def is_retryable(error: RequestError, extra_statuses: frozenset[int] = frozenset()) -> bool:
        if error.status is not None and error.status in extra_statuses:
            return True
        if error.kind == ErrorKind.SERVER:
            return error.status is None or error.status >= 500
        return error.kind in RETRYABLE_KINDS

    def should_retry(self, error: RequestError, attempts_so_far: int, policy: RetryPolicy) -> bool:
        """
        True if another attempt is allowed.

        ``attempts_so_far`` counts retries already performed, not the
        initial call.
        """
        return attempts_so_far < policy.max_retries and self.is_retryable(
            error, policy.extra_statuses
        )

    def compute_delay(self, attempt: int, policy: RetryPolicy) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        if policy.incremental:
            return policy.delay_s * max(attempt, 1)
        return policy.delay_s
