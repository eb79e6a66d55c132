"""
Retry Module - PV Digital Twin Platform

Timeout plus bounded exponential backoff around upstream data fetches.
Exhausted retries surface as ``UpstreamDataError``.
"""
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Any, Callable, Optional, Set

from pv_twin.domain.errors import TwinError, UpstreamDataError

logger = logging.getLogger(__name__)


@dataclass
class RetryPolicy:
    attempts: int = 3
    base_delay_s: float = 0.2
    max_delay_s: float = 2.0
    timeout_s: Optional[float] = 10.0

    @classmethod
    def from_settings(cls, settings: dict) -> "RetryPolicy":
        cfg = settings.get("retry", {}) if settings else {}
        return cls(
            attempts=max(int(cfg.get("attempts", 3)), 1),
            base_delay_s=float(cfg.get("base_delay_s", 0.2)),
            max_delay_s=float(cfg.get("max_delay_s", 2.0)),
            timeout_s=cfg.get("timeout_s", 10.0),
        )

    def delay_for(self, attempt: int) -> float:
        return min(self.base_delay_s * (2 ** attempt), self.max_delay_s)


class RetryingCaller:
    """Runs a callable under the policy.

    Each timed attempt gets its own single-thread executor. A fetch that
    times out cannot be interrupted; its thread runs on until the callable
    returns, but it never holds up later calls.
    """

    def __init__(self, policy: RetryPolicy, sleep: Callable[[float], None] = time.sleep):
        self.policy = policy
        self._sleep = sleep
        self._abandoned: Set[ThreadPoolExecutor] = set()
        self._lock = threading.Lock()

    def _call_once(self, operation: str, fn: Callable[..., Any], *args, **kwargs) -> Any:
        if not self.policy.timeout_s:
            return fn(*args, **kwargs)
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"fetch-{operation}")
        future = executor.submit(fn, *args, **kwargs)
        try:
            return future.result(timeout=self.policy.timeout_s)
        except FutureTimeout:
            with self._lock:
                self._abandoned.add(executor)
            future.add_done_callback(lambda _: self._release(executor))
            raise
        finally:
            executor.shutdown(wait=False)

    def _release(self, executor: ThreadPoolExecutor):
        with self._lock:
            self._abandoned.discard(executor)

    @property
    def abandoned_calls(self) -> int:
        """Timed-out fetches whose threads have not returned yet."""
        with self._lock:
            return len(self._abandoned)

    def call(self, operation: str, fn: Callable[..., Any], *args, **kwargs) -> Any:
        last_error: Optional[BaseException] = None
        for attempt in range(self.policy.attempts):
            try:
                return self._call_once(operation, fn, *args, **kwargs)
            except TwinError as e:
                if not e.retryable:
                    raise
                last_error = e
            except FutureTimeout as e:
                last_error = e
            except (OSError, ConnectionError, RuntimeError) as e:
                last_error = e

            if attempt + 1 < self.policy.attempts:
                delay = self.policy.delay_for(attempt)
                logger.warning(
                    "Upstream call %s failed (attempt %d/%d). Retrying in %.2fs",
                    operation, attempt + 1, self.policy.attempts, delay,
                    extra={"props": {"operation": operation, "error": repr(last_error)}}
                )
                self._sleep(delay)

        raise UpstreamDataError(
            f"{operation} failed after {self.policy.attempts} attempts: {last_error!r}",
            {"operation": operation, "attempts": self.policy.attempts}
        ) from last_error

    def shutdown(self):
        stuck = self.abandoned_calls
        if stuck:
            logger.warning("%d timed-out upstream call(s) still running at shutdown", stuck,
                           extra={"props": {"abandoned_calls": stuck}})
