"""
Bounded polling used by every wait-for-kernel-settle point.

Device-mapper, LVM and loop devices release resources asynchronously, so
stages and teardown steps poll for the expected state instead of assuming it.
"""

import logging
import time
from typing import Callable, Type

from .errors import PollTimeout, TimingError

logger = logging.getLogger(__name__)


def wait_for(
    predicate: Callable[[], bool],
    *,
    interval: float = 0.5,
    attempts: int = 10,
    message: str = "Timed out waiting for condition",
    error: Type[TimingError] = PollTimeout,
) -> int:
    """Call ``predicate`` until it returns True, sleeping ``interval`` between tries.

    The predicate may have side effects (e.g. retrying ``cryptsetup close``);
    it is called at most ``attempts`` times.

    Args:
        predicate: Zero-argument callable, True means done
        interval: Seconds to sleep between attempts
        attempts: Maximum number of predicate calls (at least 1)
        message: Error message when attempts are exhausted
        error: TimingError subclass to raise

    Returns:
        Number of attempts that were needed

    Raises:
        error: If the predicate never returned True
    """
    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        if predicate():
            return attempt
        if attempt < attempts:
            logger.debug(f"{message} (attempts remaining: {attempts - attempt})")
            time.sleep(interval)

    raise error(f"{message} after {attempts} attempt(s) at {interval}s intervals")


def wait_until_gone(
    exists: Callable[[], bool],
    *,
    what: str,
    interval: float = 0.5,
    attempts: int = 20,
    error: Type[TimingError] = PollTimeout,
) -> int:
    """Poll until ``exists()`` turns False."""
    return wait_for(
        lambda: not exists(),
        interval=interval,
        attempts=attempts,
        message=f"Timed out waiting for {what} to be removed",
        error=error,
    )
