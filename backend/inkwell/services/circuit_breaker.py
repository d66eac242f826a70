"""
Inkwell Backend: Circuit Breaker
================================

What:  Fails OCR dispatches fast while the worker is known to be down.
Why:   Without it each confirm would wait out a full retry cycle against a dead
       worker, holding a dispatch slot the whole time.
How:   Counts consecutive exhausted dispatches (each one already retried by
       tenacity). Past the threshold the breaker opens and every dispatch is
       rejected with CircuitBreakerOpenError until the recovery timeout
       elapses; then a single trial dispatch decides whether to close again.
Who:   Owned by HttpOcrDispatcher; its state is reported by GET /health.

State Machine:
    CLOSED ──(threshold consecutive failures)──▶ OPEN
    OPEN ──(recovery_timeout elapsed)──▶ HALF_OPEN
    HALF_OPEN ──(trial succeeds)──▶ CLOSED
    HALF_OPEN ──(trial fails)──▶ OPEN

Dispatch workers run on one event loop, so plain attributes are enough.
"""

import logging
import time
from typing import Callable, Optional

from inkwell.exceptions import CircuitBreakerOpenError

logger = logging.getLogger(__name__)


class CircuitBreaker:
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: int = 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.failure_count = 0
        self.state = self.CLOSED
        self.opened_at: Optional[float] = None
        self._clock = clock

    def can_execute(self) -> bool:
        """
        Gate a dispatch attempt.

        Raises:
            CircuitBreakerOpenError: OPEN and still inside the recovery window
        """
        if self.state != self.OPEN:
            return True

        elapsed = self._clock() - (self.opened_at or 0.0)
        if elapsed >= self.recovery_timeout:
            logger.info("OCR circuit HALF_OPEN after %.1fs, allowing a trial dispatch", elapsed)
            self.state = self.HALF_OPEN
            return True

        raise CircuitBreakerOpenError(recovery_time=max(1, int(self.recovery_timeout - elapsed)))

    def record_success(self) -> None:
        if self.state != self.CLOSED:
            logger.info("OCR circuit CLOSED, worker recovered")
        self.failure_count = 0
        self.state = self.CLOSED
        self.opened_at = None

    def record_failure(self) -> None:
        self.failure_count += 1

        if self.state == self.HALF_OPEN:
            logger.warning("OCR circuit back to OPEN, trial dispatch failed")
            self._open()
        elif self.state == self.CLOSED and self.failure_count >= self.failure_threshold:
            logger.warning(
                "OCR circuit OPEN after %d consecutive failed dispatches",
                self.failure_count,
            )
            self._open()

    def _open(self) -> None:
        self.state = self.OPEN
        self.opened_at = self._clock()
