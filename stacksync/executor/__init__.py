"""Plan execution.

Operations run in waves: a wave is every pending operation whose dependencies
have all succeeded. Operations in a wave are independent and run concurrently
on a thread pool. A failure only affects the operations that depend on it,
which are reported as skipped; everything else keeps going.
"""

import time
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Protocol

from ..errors import ExecutionAborted, StackError
from ..plan import Operation, OperationKind
from ..retry import NO_RETRY, RetryPolicy, call_with_retry

logger = logging.getLogger(__name__)

class OperationStatus(str, Enum):
    SUCCEEDED = "succeeded"
    PRETEND = "pretend"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

@dataclass
class OperationResult:
    operation: Operation
    status: OperationStatus
    attempts: int = 0
    error: Optional[StackError] = None
    # "entry #N Kind" of the failed operation this one was waiting for
    blocked_by: Optional[str] = None
    value: object = None

    @property
    def succeeded(self) -> bool:
        return self.status in (OperationStatus.SUCCEEDED, OperationStatus.PRETEND)

    def __str__(self) -> str:
        text = f"{self.operation} {self.status.value}"
        if self.error is not None:
            text += f" after {self.attempts} attempt(s): {self.error}"
        if self.blocked_by:
            text += f" (blocked by {self.blocked_by})"
        return text

class OperationHandler(Protocol):
    """Performs single operations against git and GitHub."""
    def create(self, op: Operation) -> object: ...
    def update_branch(self, op: Operation) -> object: ...
    def update_base(self, op: Operation) -> object: ...
    def update_description(self, op: Operation) -> object: ...
    def merge(self, op: Operation) -> object: ...

def describe_failure(result: OperationResult) -> str:
    """The blocking entry and operation kind, following skips to their cause."""
    if result.status == OperationStatus.SKIPPED and result.blocked_by:
        return result.blocked_by
    op = result.operation
    return f"entry #{op.position} {op.kind.value}"

class Executor:
    """Runs plan operations in dependency order."""
    def __init__(self, handler: OperationHandler, concurrency: int = 0,
                 retry_policy: RetryPolicy = NO_RETRY, pretend: bool = False,
                 sleep: Callable[[float], None] = time.sleep):
        self.handler = handler
        self.concurrency = concurrency
        self.retry_policy = retry_policy
        self.pretend = pretend
        self.sleep = sleep
        self._cancelled = threading.Event()
        self.dispatch: Dict[OperationKind, Callable[[Operation], object]] = {
            OperationKind.CREATE: handler.create,
            OperationKind.UPDATE_BRANCH: handler.update_branch,
            OperationKind.UPDATE_BASE: handler.update_base,
            OperationKind.UPDATE_DESCRIPTION: handler.update_description,
            OperationKind.MERGE: handler.merge,
            OperationKind.SKIP: lambda op: None,
        }

    def cancel(self) -> None:
        """Stop starting new operations; in-flight ones finish."""
        if not self._cancelled.is_set():
            logger.warning("Cancellation requested, finishing in-flight operations...")
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def _run_one(self, op: Operation) -> OperationResult:
        if self.cancelled:
            return OperationResult(op, OperationStatus.CANCELLED)
        if self.pretend:
            logger.info(f"[pretend] {op} ({op.reason})" if op.reason else f"[pretend] {op}")
            return OperationResult(op, OperationStatus.PRETEND)
        func = self.dispatch[op.kind]
        try:
            value, attempts = call_with_retry(lambda: func(op), self.retry_policy, str(op), sleep=self.sleep)
        except StackError as e:
            logger.error(f"{op} failed: {e}")
            return OperationResult(op, OperationStatus.FAILED, attempts=e.attempts, error=e)
        logger.debug(f"{op} succeeded after {attempts} attempt(s)")
        return OperationResult(op, OperationStatus.SUCCEEDED, attempts=attempts, value=value)

    def _run_wave(self, wave: List[Operation]) -> List[OperationResult]:
        if self.concurrency <= 1 or len(wave) == 1:
            results = []
            stopped = False
            for op in wave:
                if stopped:
                    results.append(OperationResult(op, OperationStatus.CANCELLED))
                    continue
                result = self._run_one(op)
                results.append(result)
                # Nothing else in the wave starts after a fatal error
                stopped = result.error is not None and result.error.fatal
            return results
        with ThreadPoolExecutor(max_workers=self.concurrency) as pool:
            return list(pool.map(self._run_one, wave))

    def execute(self, operations: List[Operation],
                prior_results: Optional[List[OperationResult]] = None) -> List[OperationResult]:
        """Execute operations, returning one result per operation in input order.

        prior_results holds outcomes of operations run earlier that some of
        these operations depend on.

        Raises:
            ExecutionAborted: a fatal error (e.g. AuthFailure) stopped the run
        """
        known: Dict[str, OperationResult] = {r.operation.id: r for r in prior_results or []}
        ids = {op.id for op in operations}
        for op in operations:
            for dep in op.depends_on:
                if dep not in ids and dep not in known:
                    raise ValueError(f"{op.id} depends on unknown operation {dep}")

        results: Dict[str, OperationResult] = {}
        pending = list(operations)
        fatal: Optional[StackError] = None

        def ordered() -> List[OperationResult]:
            return [results[op.id] for op in operations if op.id in results]

        while pending:
            if self.cancelled or fatal is not None:
                for op in pending:
                    results[op.id] = OperationResult(op, OperationStatus.CANCELLED)
                break

            wave: List[Operation] = []
            waiting: List[Operation] = []
            for op in pending:
                deps = [results.get(d) or known.get(d) for d in op.depends_on]
                failed = next((r for r in deps if r is not None and not r.succeeded), None)
                if failed is not None:
                    blocked_by = describe_failure(failed)
                    logger.warning(f"Skipping {op}: blocked by {blocked_by}")
                    results[op.id] = OperationResult(op, OperationStatus.SKIPPED, blocked_by=blocked_by)
                elif all(r is not None for r in deps):
                    wave.append(op)
                else:
                    waiting.append(op)

            if not wave:
                if waiting and len(waiting) == len(pending):
                    raise ValueError(f"dependency cycle among {[op.id for op in waiting]}")
                pending = waiting
                continue

            for result in self._run_wave(wave):
                results[result.operation.id] = result
                if result.error is not None and result.error.fatal and fatal is None:
                    fatal = result.error
            pending = waiting

        if fatal is not None:
            raise ExecutionAborted(fatal, ordered())
        return ordered()
