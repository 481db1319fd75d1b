from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, TypeVar

log = logging.getLogger(__name__)

T = TypeVar("T")


def _never(_: BaseException) -> bool:
    return False


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry a callable up to `max_attempts` times.

    The delay before attempt n+1 is `base_delay_s * multiplier ** (n - 1)`, so multiplier=1.0
    gives a fixed delay and multiplier=2.0 gives 1s, 2s, 4s... Errors rejected by `retryable`
    propagate immediately.
    """

    max_attempts: int = 3
    base_delay_s: float = 1.0
    multiplier: float = 2.0
    retryable: Callable[[BaseException], bool] = _never
    sleep: Callable[[float], None] = field(default=time.sleep, compare=False)

    def delay_for(self, attempt: int) -> float:
        return self.base_delay_s * (self.multiplier ** (attempt - 1))

    def run(self, fn: Callable[[], T], *, label: str = "operation") -> T:
        attempt = 1
        while True:
            try:
                return fn()
            except Exception as e:  # noqa: BLE001
                if not self.retryable(e) or attempt >= self.max_attempts:
                    raise
                delay = self.delay_for(attempt)
                log.warning("%s failed (attempt %d/%d): %s; retrying in %.1fs", label, attempt, self.max_attempts, e, delay)
                self.sleep(delay)
                attempt += 1
