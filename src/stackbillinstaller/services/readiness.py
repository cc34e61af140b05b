"""Bounded polling primitive used by every provisioning step."""

import time
from typing import Callable, Optional

from stackbillinstaller.errors import InstallerError
from stackbillinstaller.models import WaitResult


class RunDeadline:
    """Overall wall-clock budget for one provisioning run."""

    def __init__(self, seconds: Optional[float], clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        self.expires_at = None if seconds is None else clock() + seconds
        self.cancelled = False

    def remaining(self) -> Optional[float]:
        if self.cancelled:
            return 0.0
        if self.expires_at is None:
            return None
        return max(0.0, self.expires_at - self.clock())

    @property
    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def cancel(self):
        self.cancelled = True


class ReadinessWaiter:
    """Polls a predicate until it holds, the timeout elapses or the run deadline expires."""

    def __init__(
        self,
        logger,
        deadline: Optional[RunDeadline] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.logger = logger
        self.deadline = deadline
        self.clock = clock
        self.sleep = sleep

    def wait_until(
        self,
        predicate: Callable[[], bool],
        timeout: float,
        poll_interval: float,
        description: str = "condition",
    ) -> WaitResult:
        start = self.clock()
        budget = timeout
        limited_by_deadline = False
        if self.deadline is not None:
            remaining = self.deadline.remaining()
            if remaining is not None and remaining < budget:
                budget = remaining
                limited_by_deadline = True

        attempts = 0
        while True:
            if self.deadline is not None and self.deadline.expired:
                return WaitResult(
                    ready=False,
                    attempts=attempts,
                    elapsed=self.clock() - start,
                    reason="run deadline exceeded",
                )

            attempts += 1
            if self._probe(predicate, description):
                elapsed = self.clock() - start
                self.logger.debug("%s ready after %s attempt(s), %.1fs", description, attempts, elapsed)
                return WaitResult(ready=True, attempts=attempts, elapsed=elapsed)

            elapsed = self.clock() - start
            if elapsed + poll_interval > budget:
                reason = "run deadline exceeded" if limited_by_deadline else f"timed out after {timeout:g}s"
                self.logger.debug("%s not ready: %s", description, reason)
                return WaitResult(ready=False, attempts=attempts, elapsed=elapsed, reason=reason)

            self.logger.debug("Waiting for %s (attempt %s, %.0fs elapsed)", description, attempts, elapsed)
            self.sleep(poll_interval)

    def _probe(self, predicate: Callable[[], bool], description: str) -> bool:
        try:
            return bool(predicate())
        except InstallerError as exc:
            self.logger.debug("Readiness probe for %s failed: %s", description, exc)
            return False
        except Exception as exc:
            self.logger.debug("Readiness probe for %s raised %s: %s", description, type(exc).__name__, exc)
            return False
