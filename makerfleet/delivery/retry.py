"""
Bounded retry executor.

Every ledger-facing operation in makerfleet runs through `execute`, which
retries a coroutine under a fixed-delay RetryPolicy and reports the final
result as a RetryResult instead of raising on exhaustion.
"""

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, Optional, Tuple, Type, TypeVar

from makerfleet.delivery.timing import Clock

logger = logging.getLogger(__name__)

T = TypeVar("T")

ErrorTypes = Tuple[Type[BaseException], ...]


@dataclass(frozen=True)
class RetryPolicy:
    """
    Immutable retry policy.

    `operation` is called at most `max_attempts + max_refreshes` times:
    refresh-class errors spend their own budget first, and every other
    call counts against `max_attempts`.

    Attributes:
        max_attempts: Hard ceiling on counted attempts
        delay: Fixed wait between attempts (seconds)
        retry_on: Error types worth retrying
        refresh_on: Error types retried immediately (stale validity window);
            these draw on `max_refreshes` before touching `max_attempts`
        max_refreshes: Separate budget for refresh-class errors
        cooldown_on: Error types that wait `cooldown` instead of `delay`
        cooldown: Long wait for rate limiting (seconds)
    """
    max_attempts: int = 3
    delay: float = 1.0
    retry_on: ErrorTypes = (Exception,)
    refresh_on: ErrorTypes = ()
    max_refreshes: int = 0
    cooldown_on: ErrorTypes = ()
    cooldown: float = 0.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.delay < 0 or self.cooldown < 0:
            raise ValueError("delays cannot be negative")
        if self.max_refreshes < 0:
            raise ValueError("max_refreshes cannot be negative")

    def is_refresh(self, error: BaseException) -> bool:
        return bool(self.refresh_on) and isinstance(error, self.refresh_on)

    def is_retryable(self, error: BaseException) -> bool:
        return isinstance(error, self.retry_on) or self.is_refresh(error)

    def delay_for(self, error: BaseException) -> float:
        """Wait before retrying after `error`."""
        if self.is_refresh(error):
            return 0.0
        if self.cooldown_on and isinstance(error, self.cooldown_on):
            return self.cooldown
        return self.delay


@dataclass
class RetryResult(Generic[T]):
    """Result of a retried operation."""
    success: bool
    value: Optional[T] = None
    error: Optional[BaseException] = None
    attempts: int = 0
    refreshes: int = 0
    exhausted: bool = False

    def unwrap(self) -> T:
        """Return the value, or re-raise the final error."""
        if not self.success:
            if self.error is not None:
                raise self.error
            raise RuntimeError("operation failed without an error")
        return self.value


async def execute(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    clock: Optional[Clock] = None,
    label: str = "operation",
    log: Optional[logging.Logger] = None,
) -> RetryResult[T]:
    """
    Run `operation` until it succeeds or the policy gives up.

    Non-retryable errors fail on the spot. Exhaustion is reported through
    the result (`exhausted=True`), never raised.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        policy: RetryPolicy governing attempts and waits
        clock: Clock used for waits (real time by default)
        label: Name used in log lines
        log: Logger to write attempt progress to

    Returns:
        RetryResult with value or last error
    """
    clock = clock or Clock()
    log = log or logger

    attempts = 0
    refreshes = 0
    last_error: Optional[BaseException] = None

    while attempts < policy.max_attempts:
        try:
            value = await operation()
        except Exception as e:
            last_error = e

            if policy.is_refresh(e) and refreshes < policy.max_refreshes:
                refreshes += 1
                log.warning(
                    f"{label}: {e} - refreshing and retrying immediately "
                    f"({refreshes}/{policy.max_refreshes})"
                )
                continue

            attempts += 1

            if not policy.is_retryable(e):
                log.error(f"{label}: non-retryable error on attempt {attempts}: {e}")
                return RetryResult(
                    success=False, error=e, attempts=attempts, refreshes=refreshes
                )

            if attempts >= policy.max_attempts:
                break

            wait = policy.delay_for(e)
            log.warning(
                f"{label}: attempt {attempts}/{policy.max_attempts} failed: {e}. "
                f"Retrying in {wait:g}s..."
            )
            if wait > 0:
                await clock.sleep(wait)
            continue

        attempts += 1
        if attempts > 1 or refreshes:
            log.info(f"{label}: succeeded on attempt {attempts}")
        return RetryResult(success=True, value=value, attempts=attempts, refreshes=refreshes)

    log.error(f"{label}: failed after {attempts} attempts: {last_error}")
    return RetryResult(
        success=False,
        error=last_error,
        attempts=attempts,
        refreshes=refreshes,
        exhausted=True,
    )
