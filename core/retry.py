# Retry policy for calls to external collaborators (audit store, alert sink)

import logging
import time
from typing import Callable, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryPolicy:
    """
    Retry with exponential backoff.

    - retry_limit: number of retries after the first attempt
    - base_delay: delay before the first retry, doubled each time
    - max_delay: upper bound for a single delay
    """

    def __init__(
        self,
        retry_limit: int = 3,
        base_delay: float = 0.05,
        max_delay: float = 2.0,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.retry_limit = retry_limit
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._sleep = sleep

    def should_retry(self, attempt: int) -> bool:
        return attempt < self.retry_limit

    def get_delay(self, attempt: int) -> float:
        return min(self.base_delay * (2 ** attempt), self.max_delay)

    def call(
        self,
        func: Callable[..., T],
        *args,
        retry_on: Tuple[Type[BaseException], ...] = (Exception,),
        **kwargs
    ) -> T:
        """Call func, retrying on the given exceptions; the last error propagates."""
        attempt = 0
        while True:
            try:
                return func(*args, **kwargs)
            except retry_on as e:
                if not self.should_retry(attempt):
                    raise
                delay = self.get_delay(attempt)
                logger.warning("Retry #%d in %.2fs due to: %s", attempt + 1, delay, e)
                self._sleep(delay)
                attempt += 1
