import threading
import time
from dataclasses import replace
from typing import Callable

from .models import Denied, Granted, RateDecision, RateLimitState
from ..utils.logger import setup_logger

logger = setup_logger('registrar.rate_limiter', 'logs/registrar.log')

class RateLimiter:
    """Minimum spacing between submission attempts.

    One instance may be shared by several engines. Spacing is enforced on
    every granted attempt whatever its outcome turns out to be.
    """

    def __init__(self, min_interval: float = 1.0, clock: Callable[[], float] = time.monotonic):
        if min_interval < 0:
            raise ValueError(f"min_interval must be non-negative, got {min_interval}")
        self._clock = clock
        self._lock = threading.Lock()
        self.state = RateLimitState(last_attempt_at=None, min_interval=float(min_interval))

    @property
    def min_interval(self) -> float:
        return self.state.min_interval

    def try_acquire(self) -> RateDecision:
        with self._lock:
            now = self._clock()
            last = self.state.last_attempt_at

            if last is not None:
                elapsed = now - last
                if elapsed < self.state.min_interval:
                    retry_after = self.state.min_interval - elapsed
                    logger.debug(f"Submission denied, {retry_after:.3f}s until next slot")
                    return Denied(retry_after=retry_after)

            self.state = replace(self.state, last_attempt_at=now)
            return Granted(at=now)
