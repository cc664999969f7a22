import logging
import time

from services.errors import TransientProviderError

logger = logging.getLogger(__name__)


def call_with_retry(fn, *, attempts: int = 3, base_delay: float = 0.5, max_delay: float = 4.0,
                    backoff_factor: float = 2.0, sleep=time.sleep, operation: str = "provider call"):
    """
    Run ``fn`` and retry it on TransientProviderError with exponential backoff.

    Anything else propagates on the first failure. After the last attempt the
    final TransientProviderError is re-raised for the caller to turn into an
    ERROR_* state.
    """
    delay = base_delay
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except TransientProviderError as exc:
            if attempt >= attempts:
                logger.error("%s failed after %s attempts: %s", operation, attempt, exc.message)
                raise
            logger.warning(
                "Retrying %s (attempt %s/%s) in %.2fs", operation, attempt, attempts, delay,
                extra={"provider": exc.provider, "reason": exc.message},
            )
            sleep(delay)
            delay = min(delay * backoff_factor, max_delay)
