import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from app.config import STEP_BACKOFF_SECONDS, STEP_MAX_ATTEMPTS, STEP_TIMEOUT_SECONDS
from app.services.context_gatherer import NotFoundError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """How a workflow step is retried.

    ``max_attempts`` counts the first try, so 3 means two retries. The wait
    before retry n is ``backoff_seconds * 2 ** (n - 1)``. ``timeout_seconds``
    bounds each individual attempt; None disables the bound.
    """
    max_attempts: int = STEP_MAX_ATTEMPTS
    backoff_seconds: float = STEP_BACKOFF_SECONDS
    timeout_seconds: float | None = STEP_TIMEOUT_SECONDS
    non_retryable: tuple[type[BaseException], ...] = (NotFoundError,)

    def delay_for(self, attempt: int) -> float:
        return self.backoff_seconds * (2 ** (attempt - 1))


class StepFailedError(RuntimeError):
    def __init__(self, step: str, attempts: int, cause: BaseException) -> None:
        super().__init__(f"Step '{step}' failed after {attempts} attempt(s): {cause}")
        self.step = step
        self.attempts = attempts
        self.cause = cause


async def run_step(
    name: str,
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
) -> T:
    """Run ``fn`` under ``policy``; non-retryable errors propagate unchanged."""
    policy = policy or RetryPolicy()
    attempts = max(1, policy.max_attempts)
    last_error: BaseException | None = None

    for attempt in range(1, attempts + 1):
        try:
            if policy.timeout_seconds:
                return await asyncio.wait_for(fn(), timeout=policy.timeout_seconds)
            return await fn()
        except policy.non_retryable:
            raise
        except Exception as e:
            last_error = e
            logger.warning("Step %s attempt %d/%d failed: %r", name, attempt, attempts, e)
            if attempt < attempts:
                await asyncio.sleep(policy.delay_for(attempt))

    raise StepFailedError(name, attempts, last_error) from last_error
