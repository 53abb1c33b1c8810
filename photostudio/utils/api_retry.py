"""
Retry handling for AI capability calls

Transient failures (rate limits, 5xx, dropped connections) are retried with
exponential backoff. Timeouts and content-policy refusals fail the call at once.
A circuit breaker shared by all callers of one handler stops hammering a
backend that keeps failing.
"""
import asyncio
import time
import logging
from typing import Callable, Any, Dict, Optional
import aiohttp

from photostudio.exceptions import TransientGenerationError, GenerationTimeoutError

logger = logging.getLogger(__name__)

CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half_open"


class CircuitBreakerOpen(Exception):
    """Raised when circuit breaker is open"""
    pass


class APIRetryHandler:
    """
    Retry handler with exponential backoff and a circuit breaker.

    Breaker states:
    - closed: calls pass through, exhausted retries are counted
    - open: calls fail fast with CircuitBreakerOpen until circuit_timeout passes
    - half_open: a single trial call decides between closed and open
    """

    RETRYABLE_ERRORS = (TransientGenerationError, aiohttp.ClientError)

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        timeout: Optional[float] = 180.0,
        circuit_failure_threshold: int = 5,
        circuit_timeout: float = 60.0,
        name: str = "api"
    ):
        """
        Args:
            max_retries: Maximum number of attempts (first call included)
            base_delay: Base delay in seconds for exponential backoff
            max_delay: Maximum delay between retries
            timeout: Per-attempt timeout in seconds (None disables it)
            circuit_failure_threshold: Consecutive failed calls that open the circuit
            circuit_timeout: Seconds the circuit stays open before a trial call is allowed
            name: Label used in log messages
        """
        self.max_retries = max(1, max_retries)
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.timeout = timeout
        self.circuit_failure_threshold = circuit_failure_threshold
        self.circuit_timeout = circuit_timeout
        self.name = name

        self.state = CLOSED
        self._failures = 0
        self._opened_at = 0.0
        self._trial_in_flight = False
        self._lock = asyncio.Lock()

    @property
    def is_open(self) -> bool:
        return self.state == OPEN

    async def _acquire(self) -> bool:
        """Admit a call; returns True when the call is the half-open trial"""
        async with self._lock:
            if self.state == OPEN:
                remaining = self.circuit_timeout - (time.monotonic() - self._opened_at)
                if remaining > 0:
                    raise CircuitBreakerOpen(f"{self.name} unavailable, retry in {remaining:.1f}s")
                logger.info(f"[{self.name}] Circuit half-open, trying backend")
                self.state = HALF_OPEN

            if self.state == HALF_OPEN:
                if self._trial_in_flight:
                    raise CircuitBreakerOpen(f"{self.name} recovering, trial call in progress")
                self._trial_in_flight = True
                return True
            return False

    async def _release(self, trial: bool, healthy: Optional[bool]):
        async with self._lock:
            if trial:
                self._trial_in_flight = False
            if healthy is None:
                # Cancelled before an outcome, nothing learned about the backend
                return

            if healthy:
                if self.state != CLOSED or self._failures:
                    logger.info(f"[{self.name}] Backend healthy again after {self._failures} failures")
                self.state = CLOSED
                self._failures = 0
                return

            self._failures += 1
            if trial or self._failures >= self.circuit_failure_threshold:
                self.state = OPEN
                self._opened_at = time.monotonic()
                logger.error(
                    f"[{self.name}] Circuit opened after {self._failures} failures, "
                    f"next trial in {self.circuit_timeout}s"
                )
            else:
                logger.warning(f"[{self.name}] Failure {self._failures}/{self.circuit_failure_threshold}")

    def _delay_for(self, attempt: int) -> float:
        return min(self.base_delay * (2 ** attempt), self.max_delay)

    async def _attempt(self, api_call: Callable, *args, **kwargs) -> Any:
        if self.timeout:
            try:
                return await asyncio.wait_for(api_call(*args, **kwargs), timeout=self.timeout)
            except asyncio.TimeoutError:
                raise GenerationTimeoutError(f"Image generation timed out after {self.timeout}s")
        return await api_call(*args, **kwargs)

    async def execute_with_retry(self, api_call: Callable, *args, **kwargs) -> Any:
        """
        Run api_call under the retry policy.

        Raises:
            CircuitBreakerOpen: the breaker rejected the call
            GenerationTimeoutError: an attempt exceeded the timeout
            TransientGenerationError / aiohttp.ClientError: retries exhausted
            Exception: any other error, raised on first occurrence
        """
        trial = await self._acquire()
        healthy = None

        try:
            for attempt in range(self.max_retries):
                try:
                    result = await self._attempt(api_call, *args, **kwargs)
                    healthy = True
                    return result
                except self.RETRYABLE_ERRORS as e:
                    logger.warning(
                        f"[{self.name}] Attempt {attempt + 1}/{self.max_retries} failed: "
                        f"{type(e).__name__}: {e}"
                    )
                    if attempt == self.max_retries - 1:
                        raise
                    delay = self._delay_for(attempt)
                    if delay:
                        logger.info(f"[{self.name}] Retrying in {delay}s")
                    await asyncio.sleep(delay)
        except GenerationTimeoutError:
            healthy = False
            logger.warning(f"[{self.name}] Call timed out after {self.timeout}s")
            raise
        except self.RETRYABLE_ERRORS:
            healthy = False
            logger.error(f"[{self.name}] All {self.max_retries} attempts exhausted")
            raise
        except Exception as e:
            # The backend answered, it just refused or rejected the request
            logger.warning(f"[{self.name}] Non-retryable error: {type(e).__name__}: {e}")
            healthy = True
            raise
        finally:
            await self._release(trial, healthy)

    def get_stats(self) -> Dict:
        return {
            "state": self.state,
            "consecutive_failures": self._failures,
            "failure_threshold": self.circuit_failure_threshold,
        }
