"""
Fan-Out Executor - Run one operation against many agents at once.

Every target gets its own worker thread, started at once, and its own
deadline (start time + timeout). A failure on one target - refused connection,
timeout, bad key, conflict, garbage response - becomes that target's outcome
and never cancels or delays the others.

Results come back in input order, one outcome per target, never fewer.

Usage:
    from cobbler.fanout import FanOutExecutor

    executor = FanOutExecutor(timeout=60)
    result = executor.run(targets, client.get_status)
    for outcome in result:
        print(outcome.target.address, outcome.value or outcome.error)
    sys.exit(1 if result.had_failures else 0)
"""

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Callable, List, Sequence, Tuple, TypeVar

from cobbler.errors import AgentError, NetworkError
from cobbler.types import FanOutResult, OperationOutcome, Target

logger = logging.getLogger("cobbler.fanout")

T = TypeVar("T")


class FanOutExecutor:
    """Concurrent, deadline-bounded fan-out over targets."""

    def __init__(self, timeout: float):
        """
        Args:
            timeout: Per-target deadline in seconds
        """
        self.timeout = timeout

    def _call(self, target: Target, operation: Callable[[Target], T]) -> OperationOutcome[T]:
        try:
            return OperationOutcome(target=target, value=operation(target))
        except AgentError as e:
            if e.address is None:
                e.address = target.address
            logger.debug(f"{target.address}: {e.kind} error: {e}")
            return OperationOutcome(target=target, error=e)
        except Exception as e:
            logger.exception(f"Unexpected error from {target.address}")
            return OperationOutcome(target=target, error=AgentError(f"unexpected error: {e}", target.address))

    def run(self, targets: Sequence[Target], operation: Callable[[Target], T]) -> FanOutResult[T]:
        """Run `operation` once per target and collect outcomes in input order."""
        if not targets:
            return FanOutResult()

        # One worker per target; no call ever waits in the queue
        executor = ThreadPoolExecutor(max_workers=len(targets), thread_name_prefix="fanout")
        outcomes: List[OperationOutcome[T]] = []

        try:
            submitted: List[Tuple[Target, float, Future]] = []
            for target in targets:
                deadline = time.monotonic() + self.timeout
                submitted.append((target, deadline, executor.submit(self._call, target, operation)))

            for target, deadline, future in submitted:
                remaining = max(0.0, deadline - time.monotonic())
                try:
                    outcomes.append(future.result(timeout=remaining))
                except FutureTimeout:
                    future.cancel()
                    logger.warning(f"{target.address}: no response within {self.timeout:g}s")
                    outcomes.append(OperationOutcome(
                        target=target,
                        error=NetworkError(f"timed out after {self.timeout:g}s", target.address),
                    ))
        finally:
            # Stragglers past their deadline are abandoned, not waited on
            executor.shutdown(wait=False, cancel_futures=True)

        return FanOutResult(outcomes=outcomes)


def fan_out(
    targets: Sequence[Target],
    operation: Callable[[Target], T],
    timeout: float,
) -> FanOutResult[T]:
    """Convenience wrapper around FanOutExecutor.run()."""
    return FanOutExecutor(timeout=timeout).run(targets, operation)
