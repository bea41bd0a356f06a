"""Retry executor — bounded retries with exponential backoff, jitter and cancellation.

Every outbound provider call goes through ``RetryExecutor``. Callers choose
between two styles:

* ``run()`` returns a tagged result (``Success``, ``RetryableFailure``,
  ``TerminalFailure`` or ``Cancelled``) so control flow branches on an explicit
  case instead of on exceptions.
* ``execute()`` unwraps that result, returning the value or raising
  ``RetryExhausted`` / ``RetryCancelled`` with the full attempt trail.
"""

import asyncio
import logging
import random
import socket
import time
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Generic, TypeVar

import httpx

from farewatch.services.providers import KIND_TIMEOUT, ProviderError, is_retryable_status

logger = logging.getLogger(__name__)

T = TypeVar("T")

JITTER_RATIO = 0.1  # ±10%


def default_retry_predicate(error: BaseException) -> bool:
    """Retry connection failures, DNS errors, timeouts and HTTP 5xx/429/408."""
    if isinstance(error, (RetryCancelled, asyncio.CancelledError)):
        return False
    if isinstance(error, ProviderError):
        return error.is_transient
    if isinstance(error, httpx.HTTPStatusError):
        return is_retryable_status(error.response.status_code)
    if isinstance(error, (httpx.TimeoutException, httpx.NetworkError)):
        return True
    if isinstance(error, socket.gaierror):
        return True
    return isinstance(error, (ConnectionError, TimeoutError))


def no_timeout_retry_predicate(error: BaseException) -> bool:
    """Default predicate minus timeouts, for user-initiated lookups."""
    if isinstance(error, ProviderError) and (error.kind == KIND_TIMEOUT or error.status_code == 408):
        return False
    if isinstance(error, (httpx.TimeoutException, TimeoutError)):
        return False
    return default_retry_predicate(error)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0           # seconds
    max_delay: float = 10.0           # seconds
    backoff_multiplier: float = 2.0
    jitter: bool = True
    retry_predicate: Callable[[BaseException], bool] = field(default=default_retry_predicate, compare=False)
    name: str = "default"

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")
        if self.base_delay < 0 or self.max_delay < self.base_delay:
            raise ValueError("require 0 <= base_delay <= max_delay")


NETWORK_POLICY = RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=10.0, backoff_multiplier=2, name="network")
RATE_LIMIT_POLICY = RetryPolicy(max_attempts=5, base_delay=2.0, max_delay=30.0, backoff_multiplier=2.5, name="rate_limit")
SERVER_ERROR_POLICY = RetryPolicy(max_attempts=3, base_delay=2.0, max_delay=15.0, backoff_multiplier=2, name="server_error")
TIMEOUT_POLICY = RetryPolicy(max_attempts=2, base_delay=0.5, max_delay=5.0, backoff_multiplier=3, jitter=False, name="timeout")
USER_INITIATED_POLICY = replace(
    NETWORK_POLICY, max_attempts=2, retry_predicate=no_timeout_retry_predicate, name="user_initiated"
)

RETRY_POLICIES = {
    p.name: p
    for p in (NETWORK_POLICY, RATE_LIMIT_POLICY, SERVER_ERROR_POLICY, TIMEOUT_POLICY, USER_INITIATED_POLICY)
}


def compute_delay(policy: RetryPolicy, attempt: int, rng: random.Random | None = None) -> float:
    """Wait before attempt ``attempt + 1``: capped exponential growth, ±10% jitter."""
    delay = min(policy.base_delay * policy.backoff_multiplier ** (attempt - 1), policy.max_delay)
    if policy.jitter:
        r = (rng or random).uniform(-1.0, 1.0)
        delay += r * JITTER_RATIO * delay
    return max(0.0, min(delay, policy.max_delay))


@dataclass
class Attempt:
    number: int
    delay: float                      # wait that preceded this attempt
    timestamp: float
    error: BaseException | None = None


@dataclass
class RetryOutcome:
    attempts: list[Attempt] = field(default_factory=list)
    total_time: float = 0.0
    value: Any = None
    error: BaseException | None = None

    @property
    def succeeded(self) -> bool:
        return bool(self.attempts) and self.attempts[-1].error is None


class RetryError(Exception):
    pass


class RetryExhausted(RetryError):
    def __init__(self, message: str, outcome: RetryOutcome, retryable: bool = True):
        super().__init__(message)
        self.attempts = outcome.attempts
        self.total_time = outcome.total_time
        self.last_error = outcome.error
        self.retryable = retryable


class RetryCancelled(RetryError):
    def __init__(self, message: str, outcome: RetryOutcome | None = None):
        super().__init__(message)
        self.attempts = outcome.attempts if outcome else []
        self.total_time = outcome.total_time if outcome else 0.0


@dataclass(frozen=True)
class Success(Generic[T]):
    value: T
    outcome: RetryOutcome


@dataclass(frozen=True)
class RetryableFailure:
    """Every attempt failed with a retryable error; attempts are exhausted."""
    error: BaseException
    outcome: RetryOutcome


@dataclass(frozen=True)
class TerminalFailure:
    """The retry predicate refused the error; no further attempts were made."""
    error: BaseException
    outcome: RetryOutcome


@dataclass(frozen=True)
class Cancelled:
    outcome: RetryOutcome


ExecutionResult = Success | RetryableFailure | TerminalFailure | Cancelled


class CancellationToken:
    """Cooperative cancellation signal shared between a caller and running retries."""

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


class RetryExecutor:
    """Runs async operations under a ``RetryPolicy``."""

    def __init__(
        self,
        name: str = "operation",
        rng: random.Random | None = None,
        on_retry: Callable[[int, float, BaseException], None] | None = None,
    ):
        self.name = name
        self._rng = rng
        self._on_retry = on_retry

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        policy: RetryPolicy = NETWORK_POLICY,
        cancellation_token: CancellationToken | None = None,
    ) -> T:
        result = await self.run(operation, policy, cancellation_token)
        if isinstance(result, Success):
            return result.value
        if isinstance(result, Cancelled):
            raise RetryCancelled(
                f"{self.name} cancelled after {len(result.outcome.attempts)} attempts", result.outcome
            )
        raise RetryExhausted(
            f"{self.name} failed after {len(result.outcome.attempts)} attempts: {result.error}",
            result.outcome,
            retryable=isinstance(result, RetryableFailure),
        ) from result.error

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        policy: RetryPolicy = NETWORK_POLICY,
        cancellation_token: CancellationToken | None = None,
    ) -> ExecutionResult:
        started = time.monotonic()
        outcome = RetryOutcome()
        delay = 0.0

        for number in range(1, policy.max_attempts + 1):
            if cancellation_token and cancellation_token.is_cancelled:
                return self._finish(Cancelled(outcome), started)

            attempt = Attempt(number=number, delay=delay, timestamp=time.time())
            outcome.attempts.append(attempt)
            try:
                value = await self._attempt(operation, cancellation_token)
            except RetryCancelled as e:
                attempt.error = e
                return self._finish(Cancelled(outcome), started)
            except Exception as e:
                attempt.error = e
                outcome.error = e
                if not self._should_retry(policy, e):
                    logger.error(f"{self.name} failed with non-retryable error on attempt {number}: {e!r}")
                    return self._finish(TerminalFailure(e, outcome), started)
                if number == policy.max_attempts:
                    logger.error(f"{self.name} failed permanently after {number} attempts: {e!r}")
                    return self._finish(RetryableFailure(e, outcome), started)

                delay = compute_delay(policy, number, self._rng)
                if self._on_retry:
                    self._on_retry(number, delay, e)
                logger.warning(
                    f"{self.name} attempt {number}/{policy.max_attempts} failed, "
                    f"retrying in {delay:.2f}s: {e!r}"
                )
                if not await self._wait(delay, cancellation_token):
                    return self._finish(Cancelled(outcome), started)
            else:
                outcome.value = value
                outcome.error = None
                if number > 1:
                    logger.info(f"{self.name} succeeded on attempt {number}/{policy.max_attempts}")
                return self._finish(Success(value, outcome), started)

        # max_attempts >= 1 guarantees the loop returns
        raise AssertionError("retry loop exited without a result")

    @staticmethod
    def _should_retry(policy: RetryPolicy, error: BaseException) -> bool:
        if isinstance(error, (RetryCancelled, asyncio.CancelledError)):
            return False
        return policy.retry_predicate(error)

    @staticmethod
    def _finish(result: ExecutionResult, started: float) -> ExecutionResult:
        result.outcome.total_time = time.monotonic() - started
        return result

    @staticmethod
    async def _attempt(
        operation: Callable[[], Awaitable[T]], token: CancellationToken | None
    ) -> T:
        if token is None:
            return await operation()

        op_task = asyncio.ensure_future(operation())
        cancel_task = asyncio.ensure_future(token.wait())
        try:
            await asyncio.wait({op_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            op_task.cancel()
            raise
        finally:
            cancel_task.cancel()
        if op_task.done():
            return op_task.result()

        op_task.cancel()
        try:
            await op_task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.debug(f"operation raised while being cancelled: {e!r}")
        raise RetryCancelled("operation cancelled mid-attempt")

    @staticmethod
    async def _wait(delay: float, token: CancellationToken | None) -> bool:
        """Sleep ``delay`` seconds; False if the token fired first."""
        if token is None:
            await asyncio.sleep(delay)
            return True
        if token.is_cancelled:
            return False
        try:
            await asyncio.wait_for(token.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return True
        return False
