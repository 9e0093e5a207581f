"""Retry utilities for LLM API calls with exponential backoff and per-attempt cancellation."""

import errno
import socket
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Protocol, TypeVar

import httpx

import config
from utils import get_logger
from .base import ErrorCategory
from .errors import BadGatewayError, StreamInterruptedError
from .hooks import HookRunner, ModelErrorContext, hook_runner as default_hook_runner

logger = get_logger(__name__)
T = TypeVar("T")

DEFAULT_INITIAL_DELAY = config.RETRY_INITIAL_DELAY
DEFAULT_MAX_DELAY = config.RETRY_MAX_DELAY
DEFAULT_BACKOFF_FACTOR = config.RETRY_BACKOFF_FACTOR
DEFAULT_MAX_RETRIES = config.RETRY_MAX_ATTEMPTS
MAX_RETRIES_ABSOLUTE_LIMIT = config.RETRY_MAX_ATTEMPTS_LIMIT


# ── Transient network detection ───────────────────────────────────────────────

_TRANSIENT_ERRNO_NAMES = {
    "ECONNRESET",
    "ETIMEDOUT",
    "ECONNREFUSED",
    "ENOTFOUND",
    "EAI_AGAIN",
    "EPIPE",
    "ENETRESET",
    "ENETUNREACH",
}

_TRANSIENT_MESSAGE_PATTERNS = (
    "terminated",
    "socket hang up",
    "network",
    "connection reset",
)


def _errno_name(error: BaseException) -> str | None:
    code = getattr(error, "code", None)
    if isinstance(code, str):
        return code
    number = getattr(error, "errno", None)
    if isinstance(number, int):
        return errno.errorcode.get(number)
    return None


def is_transient_network_error(error: BaseException | None, _depth: int = 0) -> bool:
    """Check if an error (or anything in its cause chain) is a dropped connection.

    Args:
        error: Exception to check

    Returns:
        True for socket resets, timeouts, DNS hiccups and similar
    """
    if not isinstance(error, BaseException) or _depth > 8:
        return False

    if isinstance(error, (ConnectionError, TimeoutError, socket.gaierror, httpx.TransportError)):
        return True

    if _errno_name(error) in _TRANSIENT_ERRNO_NAMES:
        return True

    message = str(error).lower()
    if any(pattern in message for pattern in _TRANSIENT_MESSAGE_PATTERNS):
        return True

    cause = error.__cause__ or error.__context__
    return is_transient_network_error(cause, _depth + 1)


# ── Retry policy ──────────────────────────────────────────────────────────────

class RetryPolicy:
    """Exponential backoff: ``delay(n) = min(initial * factor**n, max_delay)``."""

    def __init__(
        self,
        max_retries: int | None = None,
        initial_delay: float | None = None,
        max_delay: float | None = None,
        backoff_factor: float | None = None,
    ):
        requested = DEFAULT_MAX_RETRIES if max_retries is None else max_retries
        self.max_retries = max(0, min(requested, MAX_RETRIES_ABSOLUTE_LIMIT))
        self.initial_delay = DEFAULT_INITIAL_DELAY if initial_delay is None else initial_delay
        self.max_delay = DEFAULT_MAX_DELAY if max_delay is None else max_delay
        self.backoff_factor = DEFAULT_BACKOFF_FACTOR if backoff_factor is None else backoff_factor

    def get_delay_for_attempt(self, attempt: int) -> float:
        return min(self.initial_delay * self.backoff_factor ** attempt, self.max_delay)

    def should_retry(self, attempt: int) -> bool:
        return attempt < self.max_retries


default_retry_policy = RetryPolicy()


# ── Cancellation ──────────────────────────────────────────────────────────────

class CancellationToken:
    """Cancellation signal owned by a single retry attempt."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


# ── Error classification ──────────────────────────────────────────────────────

class ErrorClassifier(Protocol):
    def is_retryable(self, error: BaseException) -> bool: ...

    def is_known_error(self, error: BaseException) -> bool: ...

    def suggested_delay(self, error: BaseException) -> float | None: ...


class AdapterErrorClassifier:
    """ErrorClassifier backed by a provider adapter's ``classify_error``.

    ``retry_unknown_errors`` decides what happens to errors the adapter does
    not recognise: retried (the default) or treated as unrecoverable.
    """

    def __init__(self, adapter, retry_unknown_errors: bool | None = None):
        self.adapter = adapter
        if retry_unknown_errors is None:
            retry_unknown_errors = config.RETRY_UNKNOWN_ERRORS
        self.retry_unknown_errors = retry_unknown_errors

    def is_retryable(self, error: BaseException) -> bool:
        classified = self.adapter.classify_error(error)
        if classified.category == ErrorCategory.UNKNOWN:
            return self.retry_unknown_errors
        return classified.should_retry

    def is_known_error(self, error: BaseException) -> bool:
        return self.adapter.classify_error(error).category != ErrorCategory.UNKNOWN

    def suggested_delay(self, error: BaseException) -> float | None:
        return self.adapter.classify_error(error).suggested_delay


# ── Executor ──────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class RetryContext:
    input: list
    options: Any = None
    provider_request: Any = None


class RetryExecutor:
    """Runs an operation with retry, backoff, error hooks and per-attempt cancellation."""

    def __init__(
        self,
        error_classifier: ErrorClassifier,
        hook_runner: HookRunner | None = None,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] | None = None,
    ):
        self.error_classifier = error_classifier
        self.hook_runner = hook_runner or default_hook_runner
        self.policy = policy or default_retry_policy
        self.sleep = sleep or time.sleep

    def execute(
        self,
        operation: Callable[[CancellationToken], T],
        context: RetryContext,
        hooks=None,
    ) -> T:
        """Execute ``operation`` until it succeeds or fails for good.

        Args:
            operation: Callable receiving the current attempt's CancellationToken
            context: Request snapshot passed to error hooks
            hooks: Caller's LlmHooks

        Returns:
            Result from operation

        Raises:
            BadGatewayError: retries exhausted or the error is not retryable
        """
        attempt = 0

        while True:
            signal = CancellationToken()
            try:
                result = operation(signal)
                if attempt > 0:
                    logger.debug(f"API call succeeded after {attempt} retries")
                return result
            except Exception as error:
                # Abandon this attempt before anything else runs
                signal.cancel()
                self._recover(error, attempt, context, hooks)
                attempt += 1

    def stream(
        self,
        operation: Callable[[CancellationToken], Iterator[T]],
        context: RetryContext,
        hooks=None,
    ) -> Iterator[T]:
        """Yield from ``operation``, retrying failures that happen before the first item.

        Once an item has been yielded the attempt cannot be replayed, so a
        later failure raises StreamInterruptedError instead of retrying.

        Raises:
            BadGatewayError: retries exhausted or the error is not retryable
            StreamInterruptedError: the stream broke after yielding
        """
        attempt = 0

        while True:
            signal = CancellationToken()
            delivered = False
            try:
                for item in operation(signal):
                    delivered = True
                    yield item
                if attempt > 0:
                    logger.debug(f"Stream request succeeded after {attempt} retries")
                return
            except Exception as error:
                signal.cancel()
                if delivered:
                    logger.error("Stream failed after partial data was delivered")
                    logger.var(error=error)
                    self.hook_runner.run_on_unrecoverable_error(
                        hooks, self._error_context(context, error, attempt)
                    )
                    raise StreamInterruptedError(str(error) or type(error).__name__) from error
                self._recover(error, attempt, context, hooks)
                attempt += 1

    def _recover(self, error: Exception, attempt: int, context: RetryContext, hooks) -> None:
        """Raise BadGatewayError if ``error`` ends the call, otherwise wait out the backoff."""
        exhausted = not self.policy.should_retry(attempt)
        if exhausted or not self.error_classifier.is_retryable(error):
            if exhausted:
                logger.error(f"API call failed after {self.policy.max_retries} retries")
            else:
                logger.error("API call failed with non-retryable error")
            logger.var(error=error)

            self.hook_runner.run_on_unrecoverable_error(
                hooks, self._error_context(context, error, attempt)
            )
            raise BadGatewayError(str(error) or type(error).__name__) from error

        if not self.error_classifier.is_known_error(error):
            logger.warning("API returned unknown error type, will retry")
            logger.var(error=error)

        delay = self._delay_for(error, attempt)
        logger.warning(f"API call failed. Retrying in {delay:.1f}s... (attempt {attempt + 1}/{self.policy.max_retries})")

        self.hook_runner.run_on_retryable_error(
            hooks, self._error_context(context, error, attempt)
        )

        self.sleep(delay)

    def _delay_for(self, error: BaseException, attempt: int) -> float:
        delay = self.policy.get_delay_for_attempt(attempt)
        suggested = self.error_classifier.suggested_delay(error)
        if suggested:
            delay = max(delay, min(suggested, self.policy.max_delay))
        return delay

    @staticmethod
    def _error_context(context: RetryContext, error: BaseException, attempt: int) -> ModelErrorContext:
        return ModelErrorContext(
            error=error,
            input=list(context.input),
            options=context.options,
            provider_request=context.provider_request,
            attempt=attempt,
        )
