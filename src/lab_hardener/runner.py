"""Sequential per-target operation runner with bounded retries."""

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Generic, Iterable, List, Optional, TypeVar

import structlog

from lab_hardener.exceptions import OperationSkipped, PermanentOperationError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass
class OperationResult:
    """Structured outcome of an operation on one target."""

    target: str
    success: bool
    attempts: int = 0
    output: Any = None
    error: Optional[str] = None
    skipped: bool = False
    duration: float = 0.0

    @property
    def status(self) -> str:
        if self.skipped:
            return "skipped"
        return "ok" if self.success else "failed"

    def to_dict(self) -> Dict[str, Any]:
        output = self.output.to_dict() if hasattr(self.output, "to_dict") else self.output
        return {
            "target": self.target,
            "status": self.status,
            "success": self.success,
            "attempts": self.attempts,
            "output": output,
            "error": self.error,
            "duration": round(self.duration, 3),
        }


@dataclass
class RunSummary:
    """Per-target results plus aggregate counts."""

    operation: str
    results: List[OperationResult] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.success and not r.skipped)

    @property
    def skipped(self) -> int:
        return sum(1 for r in self.results if r.skipped)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.success)

    @property
    def success_rate(self) -> int:
        if not self.results:
            return 0
        return (self.total - self.failed) * 100 // self.total

    @property
    def ok(self) -> bool:
        return self.failed == 0

    def get(self, target: str) -> Optional[OperationResult]:
        for result in self.results:
            if result.target == target:
                return result
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation": self.operation,
            "total": self.total,
            "succeeded": self.succeeded,
            "skipped": self.skipped,
            "failed": self.failed,
            "success_rate": self.success_rate,
            "results": [r.to_dict() for r in self.results],
        }


class OperationRunner(Generic[T]):
    """Run an operation against each target in turn.

    A failing target is retried up to ``retries`` extra times with
    exponential backoff. One target's failure never stops the others.
    Operations raise :class:`OperationSkipped` when their effect is already
    in place and :class:`PermanentOperationError` for errors retrying can't fix.
    """

    def __init__(
        self,
        retries: int = 2,
        retry_delay: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.retries = retries
        self.retry_delay = retry_delay
        self._sleep = sleep
        self._clock = clock

    def run(
        self,
        operation: str,
        targets: Iterable[T],
        func: Callable[[T], Any],
        key: Callable[[T], str] = str,
    ) -> RunSummary:
        """Apply ``func`` to every target and collect the results."""
        summary = RunSummary(operation=operation)
        targets = list(targets)
        logger.info("operation_start", operation=operation, targets=len(targets))

        for target in targets:
            summary.results.append(self.run_one(operation, target, func, key(target)))

        logger.info(
            "operation_complete",
            operation=operation,
            succeeded=summary.succeeded,
            skipped=summary.skipped,
            failed=summary.failed,
        )
        return summary

    def run_one(self, operation: str, target: T, func: Callable[[T], Any], name: str) -> OperationResult:
        result = OperationResult(target=name, success=False)
        started = self._clock()
        attempts = self.retries + 1

        for attempt in range(1, attempts + 1):
            result.attempts = attempt
            try:
                result.output = func(target)
                result.success = True
                result.error = None
                break

            except OperationSkipped as e:
                result.success = True
                result.skipped = True
                result.error = None
                result.output = str(e)
                logger.info("target_skipped", operation=operation, target=name, reason=str(e))
                break

            except PermanentOperationError as e:
                result.error = str(e)
                result.output = e.output
                logger.error("target_failed", operation=operation, target=name, error=str(e), retry=False)
                break

            except Exception as e:
                result.error = str(e)
                if attempt < attempts:
                    delay = self.retry_delay * (2 ** (attempt - 1))
                    logger.warning(
                        "target_retry", operation=operation, target=name, attempt=attempt, delay=delay, error=str(e)
                    )
                    self._sleep(delay)
                    continue
                logger.error("target_failed", operation=operation, target=name, attempts=attempt, error=str(e))

        result.duration = self._clock() - started
        return result
