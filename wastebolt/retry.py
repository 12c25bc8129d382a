import logging
import time
from typing import Callable, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def retry_io(
    fn: Callable[[], T],
    *,
    attempts: int,
    base_sleep_s: float,
    retry_on: Tuple[Type[BaseException], ...],
    label: str = "io",
) -> T:
    """
    Run fn, retrying transient failures with exponential backoff.

    Sleeps base_sleep_s * 2 ** (attempt - 1) between tries and re-raises the
    last error once attempts are exhausted.
    """
    attempts = max(attempts, 1)
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except retry_on as e:
            if attempt == attempts:
                logger.error("%s failed after %d attempts: %s", label, attempts, e)
                raise
            sleep_s = base_sleep_s * (2 ** (attempt - 1))
            logger.warning("%s attempt %d/%d failed (%s); retrying in %.2fs", label, attempt, attempts, e, sleep_s)
            time.sleep(sleep_s)
    raise RuntimeError("unreachable")
