"""
Remote Call Gateway - single path for every outbound call.

CRITICAL: All calls to the remote system MUST flow through this gateway.

This ensures:
1. At most `concurrency_limit` calls execute at any instant (FIFO wait list)
2. Transient network failures are retried with capped exponential backoff
3. Non-transient failures (reverts, bad input) surface on first occurrence
4. No component implements its own retry loop
"""
import asyncio
import time
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

from perpconsole.exceptions import RemoteUnavailableError, ShutdownError
from perpconsole.gateway.limiter import FifoLimiter
from perpconsole.gateway.retry import RetryPolicy, is_transient_error
from perpconsole.monitoring.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[Any]]
ProbeFn = Callable[[], Awaitable[Any]]


class RemoteCallGateway:
    """
    Bounded-concurrency, retrying wrapper around outbound calls.

    A slot is held for one attempt at a time; backoff sleeps happen outside
    the concurrency budget so a retrying call does not starve other callers.
    """

    def __init__(
        self,
        concurrency_limit: int = 3,
        retry_policy: Optional[RetryPolicy] = None,
        *,
        probe: Optional[ProbeFn] = None,
        probe_before_retry: bool = True,
        probe_timeout: float = 5.0,
        sleep: SleepFn = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the gateway.
        
        Args:
            concurrency_limit: Maximum simultaneous in-flight calls
            retry_policy: Attempt cap and backoff schedule
            probe: Cheap readiness read (e.g. chain head) used before retry
                sleeps and by wait_until_healthy
            probe_before_retry: Issue one best-effort probe before each backoff
            probe_timeout: Upper bound on a single probe, in seconds
            sleep: Awaitable sleep, injectable for deterministic tests
            clock: Monotonic clock, injectable for deterministic tests
        """
        self.limiter = FifoLimiter(concurrency_limit)
        self.retry_policy = retry_policy or RetryPolicy()
        self.probe = probe
        self.probe_before_retry = probe_before_retry
        self.probe_timeout = probe_timeout
        self._sleep = sleep
        self._clock = clock

        # Metrics
        self.calls_started = 0
        self.calls_failed = 0
        self.retries = 0
        self.observed_delays: List[float] = []

        logger.info(
            "Gateway initialized",
            concurrency_limit=concurrency_limit,
            attempts=self.retry_policy.attempts,
            base_delay=self.retry_policy.base_delay,
            max_delay=self.retry_policy.max_delay,
        )

    @property
    def concurrency_limit(self) -> int:
        return self.limiter.limit

    async def call(
        self,
        fn: Callable[..., Awaitable[T]],
        *args: Any,
        label: Optional[str] = None,
        **kwargs: Any,
    ) -> T:
        """
        Run `fn(*args, **kwargs)` inside the concurrency budget with retry.

        Returns:
            Whatever fn returns on the first successful attempt

        Raises:
            The original exception when it is not transient, or the last
            transient exception once the attempt cap is exhausted.
            ShutdownError if the gateway closes while waiting for a slot.
        """
        name = label or getattr(fn, "__name__", "call")
        policy = self.retry_policy
        self.calls_started += 1

        attempt = 0
        while True:
            attempt += 1
            try:
                async with self.limiter.slot():
                    return await fn(*args, **kwargs)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if not is_transient_error(e):
                    self.calls_failed += 1
                    logger.debug("GATEWAY_CALL_FAILED", label=name, attempt=attempt, error=str(e), error_type=type(e).__name__)
                    raise

                if attempt >= policy.attempts:
                    self.calls_failed += 1
                    logger.warning(
                        "GATEWAY_RETRIES_EXHAUSTED",
                        label=name,
                        attempts=attempt,
                        error=str(e),
                    )
                    raise

                delay = policy.delay_for(attempt)
                logger.warning(
                    "GATEWAY_RETRY",
                    label=name,
                    attempt=attempt,
                    max_attempts=policy.attempts,
                    delay_ms=int(delay * 1000),
                    error=str(e),
                )

            # Outside the except block so the failed attempt's traceback is released
            if self.probe_before_retry:
                await self._probe_once(name)
            self.retries += 1
            self.observed_delays.append(delay)
            await self._sleep(delay)

    async def _probe_once(self, label: str) -> bool:
        """Best-effort readiness probe. Its failure never aborts the retry cycle."""
        if self.probe is None:
            return False
        try:
            async with self.limiter.slot():
                await asyncio.wait_for(self.probe(), timeout=self.probe_timeout)
            return True
        except (asyncio.CancelledError, ShutdownError):
            raise
        except Exception as e:
            logger.debug("GATEWAY_PROBE_FAILED", label=label, error=str(e))
            return False

    async def wait_until_healthy(self, timeout: float = 30.0, interval: float = 1.0) -> int:
        """
        Poll the probe until it succeeds or the timeout elapses.
        
        Returns:
            Number of probe attempts it took
        
        Raises:
            RemoteUnavailableError: If no probe succeeded within the timeout
        """
        if self.probe is None:
            return 0

        deadline = self._clock() + timeout
        attempts = 0
        last_error: Optional[str] = None
        while True:
            attempts += 1
            try:
                async with self.limiter.slot():
                    await asyncio.wait_for(self.probe(), timeout=self.probe_timeout)
                if attempts > 1:
                    logger.info("HEALTH_OK", attempts=attempts)
                return attempts
            except (asyncio.CancelledError, ShutdownError):
                raise
            except Exception as e:
                last_error = str(e) or type(e).__name__
                logger.info("HEALTH_WAIT", attempt=attempts, error=last_error)

            if self._clock() + interval > deadline:
                logger.error("HEALTH_TIMEOUT", attempts=attempts, timeout=timeout, error=last_error)
                raise RemoteUnavailableError(
                    f"remote endpoint not healthy after {timeout:.1f}s ({attempts} probes): {last_error}"
                )
            await self._sleep(interval)

    def close(self) -> None:
        """Shut down: queued callers receive ShutdownError, new calls are refused."""
        self.limiter.close()

    def stats(self) -> dict:
        return {
            "concurrency_limit": self.limiter.limit,
            "in_flight": self.limiter.in_flight,
            "peak_in_flight": self.limiter.peak_in_flight,
            "calls_started": self.calls_started,
            "calls_failed": self.calls_failed,
            "retries": self.retries,
        }
