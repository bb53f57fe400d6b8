"""
Readiness probing for the supervised server.

The probe is advisory: a server that never becomes healthy is logged as a
warning and startup continues. The wall-clock cost is bounded by
max_attempts * interval plus the per-request timeouts.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

import httpx

logger = logging.getLogger(__name__)


@dataclass
class RetryResult:
    """Outcome of a bounded retry loop."""

    attempts: int
    succeeded: bool


def retry(
    predicate: Callable[[], bool],
    max_attempts: int,
    interval: float,
    sleep: Callable[[float], None] = time.sleep,
) -> RetryResult:
    """Call predicate until it returns True or max_attempts is used up.

    Sleeps a fixed interval after every failed attempt, so a predicate that
    never succeeds costs exactly max_attempts * interval. A predicate that
    raises counts as a failed attempt.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    for attempt in range(1, max_attempts + 1):
        try:
            if predicate():
                return RetryResult(attempts=attempt, succeeded=True)
        except Exception as e:
            logger.debug(f"Attempt {attempt}/{max_attempts} raised: {e}")

        sleep(interval)

    return RetryResult(attempts=max_attempts, succeeded=False)


class HealthOutcome(Enum):
    HEALTHY = "healthy"
    UNHEALTHY_AFTER_TIMEOUT = "unhealthy-after-timeout"


@dataclass
class HealthState:
    """Result of probing the server's readiness endpoint."""

    attempts: int = 0
    outcome: HealthOutcome = HealthOutcome.UNHEALTHY_AFTER_TIMEOUT

    @property
    def healthy(self) -> bool:
        return self.outcome is HealthOutcome.HEALTHY


class HealthProber:
    """Polls a readiness endpoint until it answers or attempts run out."""

    def __init__(
        self,
        request_timeout: float = 2.0,
        client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._request_timeout = request_timeout
        self._client = client
        self._sleep = sleep

    def check(self, client: httpx.Client, endpoint: str) -> bool:
        """Issue a single readiness request. Any non-error response is a success."""
        try:
            response = client.get(endpoint, timeout=self._request_timeout)
        except httpx.HTTPError as e:
            logger.debug(f"Health check against {endpoint} failed: {e}")
            return False
        if response.is_error:
            logger.debug(f"Health check against {endpoint} returned {response.status_code}")
            return False
        return True

    def probe(self, endpoint: str, max_attempts: int, interval: float) -> HealthState:
        """Probe endpoint up to max_attempts times, interval seconds apart."""
        logger.info(
            f"Waiting for server at {endpoint} "
            f"(up to {max_attempts} attempts, {interval}s apart)"
        )

        if self._client is not None:
            result = self._run(self._client, endpoint, max_attempts, interval)
        else:
            with httpx.Client() as client:
                result = self._run(client, endpoint, max_attempts, interval)

        if result.succeeded:
            logger.info(f"Server is healthy after {result.attempts} attempt(s)")
            return HealthState(attempts=result.attempts, outcome=HealthOutcome.HEALTHY)

        logger.warning(
            f"Server health check timed out after {result.attempts} attempts, continuing anyway"
        )
        return HealthState(
            attempts=result.attempts,
            outcome=HealthOutcome.UNHEALTHY_AFTER_TIMEOUT,
        )

    def _run(
        self, client: httpx.Client, endpoint: str, max_attempts: int, interval: float
    ) -> RetryResult:
        return retry(
            lambda: self.check(client, endpoint),
            max_attempts=max_attempts,
            interval=interval,
            sleep=self._sleep,
        )
