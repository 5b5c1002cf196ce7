import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Iterator, TypeVar

from tenacity import RetryCallState, Retrying, retry_if_exception, stop_after_attempt, wait_exponential

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _always(_exc: BaseException) -> bool:
    return True


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with a cap and a retryability predicate.

    ``initial_delay`` and ``max_delay`` are seconds. ``max_attempts`` counts the
    first call, so ``max_attempts=1`` means no retries at all.
    """

    max_attempts: int = 3
    initial_delay: float = 0.5
    max_delay: float = 2.0
    multiplier: float = 2.0
    is_retryable: Callable[[BaseException], bool] = field(default=_always)

    def delays(self) -> Iterator[float]:
        delay = self.initial_delay
        for _ in range(max(self.max_attempts - 1, 0)):
            yield delay
            delay = min(delay * self.multiplier, self.max_delay)

    def wait(self) -> wait_exponential:
        return wait_exponential(multiplier=self.initial_delay, exp_base=self.multiplier, max=self.max_delay)


NO_RETRY = RetryPolicy(max_attempts=1)


def call_with_retry(
    fn: Callable[[], T],
    policy: RetryPolicy,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "call",
) -> T:
    """Run ``fn`` under ``policy``; the last error is re-raised unchanged."""

    def log_retry(state: RetryCallState) -> None:
        logger.warning(
            "[%s] attempt %d failed (%s), retrying in %d ms",
            label,
            state.attempt_number,
            state.outcome.exception(),
            int(state.next_action.sleep * 1000),
        )

    retrying = Retrying(
        stop=stop_after_attempt(max(policy.max_attempts, 1)),
        wait=policy.wait(),
        retry=retry_if_exception(policy.is_retryable),
        before_sleep=log_retry,
        sleep=sleep,
        reraise=True,
    )
    try:
        return retrying(fn)
    except Exception as exc:
        logger.warning("[%s] giving up: %s", label, exc)
        raise
