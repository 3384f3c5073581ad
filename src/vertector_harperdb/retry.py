"""
Retry policy for single transport requests.

Only transient failures (5xx responses, timeouts/aborts) are retried. The
delay before retry n is `retry_delay * n` (linear backoff). Each call gets a
fresh tenacity controller, so attempt counters are never shared between
concurrent requests.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_incrementing,
)

from vertector_harperdb.errors import TransientTransportError, TransportError

logger = logging.getLogger(__name__)

T = TypeVar("T")

TIMEOUT_CODES = frozenset({"ECONNABORTED", "ETIMEDOUT"})


def is_transient(error: BaseException) -> bool:
    """
    Classify a transport failure as retry-eligible.

    Transient: explicit TransientTransportError, any TransportError carrying
    a 5xx status, or a timeout/abort code. Everything else is permanent.
    """
    if isinstance(error, TransientTransportError):
        return True
    if isinstance(error, TransportError):
        if error.status is not None and error.status >= 500:
            return True
        return error.code in TIMEOUT_CODES
    return False


class RetryPolicy:
    """
    Wraps a send function with bounded retries on transient failures.

    Example:
        policy = RetryPolicy(max_retries=3, retry_delay=1.0)
        response = await policy.call(transport.send, "POST", "/", body, 30.0)
    """

    def __init__(
        self,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        *,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
        on_retry: Callable[[RetryCallState], Any] | None = None,
    ):
        """
        Initialize retry policy.

        Args:
            max_retries: Retries allowed after the first attempt
            retry_delay: Base delay in seconds; retry n waits retry_delay * n
            sleep: Async sleep function (injectable for tests)
            on_retry: Optional hook invoked before each retry sleep
        """
        if max_retries < 0:
            raise ValueError("max_retries cannot be negative")
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._sleep = sleep or asyncio.sleep
        self._on_retry = on_retry

    @classmethod
    def from_config(cls, retry_config, **kwargs) -> "RetryPolicy":
        """Build a policy from a RetryConfig."""
        return cls(
            max_retries=retry_config.max_retries,
            retry_delay=retry_config.retry_delay,
            **kwargs,
        )

    def _log_retry(self, retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.warning(
            f"Transient failure (attempt {retry_state.attempt_number}/{self.max_retries + 1}): "
            f"{error}. Retrying in {delay:.2f}s...",
            extra={"attempt": retry_state.attempt_number, "retry_delay_s": delay}
        )

    def _controller(self, on_retry: Callable[[RetryCallState], Any] | None = None) -> AsyncRetrying:
        hooks = [hook for hook in (self._on_retry, on_retry) if hook is not None]

        def before_sleep(retry_state: RetryCallState) -> None:
            self._log_retry(retry_state)
            for hook in hooks:
                hook(retry_state)

        return AsyncRetrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_incrementing(start=self.retry_delay, increment=self.retry_delay),
            retry=retry_if_exception(is_transient),
            before_sleep=before_sleep,
            sleep=self._sleep,
            reraise=True,
        )

    async def call(
        self,
        send: Callable[..., Awaitable[T]],
        *args: Any,
        on_retry: Callable[[RetryCallState], Any] | None = None,
        **kwargs: Any,
    ) -> T:
        """
        Invoke send, retrying transient failures within the budget.

        on_retry runs before each retry sleep, after the policy-wide hook.

        Raises:
            The last error once the budget is exhausted, or the first
            non-transient error immediately.
        """
        return await self._controller(on_retry)(send, *args, **kwargs)
