"""
Parallel execution of goal test cases.

A fixed pool of asyncio workers drains a FIFO queue of test cases. Each
worker builds its own runner (and so its own agent session) through the
``runner_factory``, and tags its logs with a ``run_id/test_id``
correlation ID. Every submitted test case ends up with exactly one
result: run, errored, or skipped when ``stop()`` halts the queue.
"""

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional, Sequence

from agent_harness.config import OrchestratorConfig, settings
from agent_harness.conversation.scenario import GoalOrientedTestCase
from agent_harness.evaluation.goal_evaluator import GoalTestResult, ResultStatus
from agent_harness.logging_context import correlated, get_test_logger
from agent_harness.runner.goal_test_runner import GoalTestRunner
from agent_harness.storage.database import HarnessDatabase

logger = get_test_logger(__name__)


class EventType(str, Enum):
    EXECUTION_STARTED = "execution_started"
    WORKER_STATUS = "worker_status"
    PROGRESS = "progress"
    EXECUTION_COMPLETED = "execution_completed"


class WorkerStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"


@dataclass
class ProgressEvent:
    type: EventType
    run_id: str
    total: int = 0
    completed: int = 0
    passed: int = 0
    failed: int = 0
    errors: int = 0
    skipped: int = 0
    worker_id: Optional[int] = None
    worker_status: Optional[WorkerStatus] = None
    test_id: Optional[str] = None
    timestamp: float = field(default_factory=time.time)


ProgressListener = Callable[[ProgressEvent], None]
RunnerFactory = Callable[[str], GoalTestRunner]


@dataclass
class ExecutionSummary:
    run_id: str
    total: int
    passed: int = 0
    failed: int = 0
    errors: int = 0
    skipped: int = 0
    duration_ms: float = 0.0
    stopped: bool = False
    experiment_id: Optional[str] = None
    results: list[GoalTestResult] = field(default_factory=list)

    @property
    def completed(self) -> int:
        return self.passed + self.failed + self.errors

    @property
    def pass_rate(self) -> float:
        return self.passed / self.completed if self.completed else 0.0


def generate_run_id() -> str:
    return f"RUN-{datetime.now(timezone.utc):%Y%m%d-%H%M%S}-{uuid.uuid4().hex[:6]}"


class TestOrchestrator:
    """Runs test cases concurrently with one isolated session per worker."""

    __test__ = False

    def __init__(
        self,
        runner_factory: RunnerFactory,
        database: Optional[HarnessDatabase] = None,
        concurrency: Optional[int] = None,
        listener: Optional[ProgressListener] = None,
        config: Optional[OrchestratorConfig] = None,
    ) -> None:
        config = config or settings.orchestrator
        concurrency = concurrency if concurrency is not None else config.concurrency
        if not 1 <= concurrency <= config.max_concurrency:
            raise ValueError(
                f"concurrency must be between 1 and {config.max_concurrency}, got {concurrency}"
            )
        self._factory = runner_factory
        self._db = database
        self._concurrency = concurrency
        self._listener = listener
        self._stopping = False
        self._startup_errors: list[str] = []
        self._summary: Optional[ExecutionSummary] = None

    @property
    def concurrency(self) -> int:
        return self._concurrency

    def stop(self) -> None:
        """Stop drawing new tests. Tests already running finish normally."""
        if not self._stopping:
            logger.info("Stop requested; in-flight tests will finish")
        self._stopping = True

    async def run(
        self,
        test_cases: Sequence[GoalOrientedTestCase],
        run_id: Optional[str] = None,
        experiment_id: Optional[str] = None,
    ) -> ExecutionSummary:
        run_id = run_id or generate_run_id()
        self._stopping = False
        self._startup_errors = []
        summary = ExecutionSummary(
            run_id=run_id, total=len(test_cases), experiment_id=experiment_id
        )
        self._summary = summary
        results: list[Optional[GoalTestResult]] = [None] * len(test_cases)

        queue: asyncio.Queue[tuple[int, GoalOrientedTestCase]] = asyncio.Queue()
        for index, test_case in enumerate(test_cases):
            queue.put_nowait((index, test_case))

        if self._db is not None:
            self._db.create_test_run(run_id, len(test_cases), experiment_id)
        logger.info(
            "Run %s: %d test(s), %d worker(s)", run_id, len(test_cases), self._concurrency
        )
        self._emit(EventType.EXECUTION_STARTED)

        start = time.monotonic()
        worker_count = min(self._concurrency, len(test_cases))
        await asyncio.gather(*(
            self._worker(worker_id, queue, run_id, experiment_id, results)
            for worker_id in range(worker_count)
        ))

        # Left over only after stop(), or when no worker could build a runner
        while not queue.empty():
            index, test_case = queue.get_nowait()
            if self._startup_errors and not self._stopping:
                leftover = GoalTestResult.errored(
                    test_case, run_id, f"No worker could start: {self._startup_errors[0]}"
                )
            else:
                leftover = GoalTestResult.skipped(test_case, run_id)
            results[index] = leftover
            self._record(leftover)
            if self._db is not None:
                self._db.save_test_result(leftover)

        summary.results = [r for r in results if r is not None]
        summary.duration_ms = (time.monotonic() - start) * 1000
        summary.stopped = self._stopping
        if self._db is not None:
            self._db.complete_test_run(
                run_id, summary.passed, summary.failed, summary.errors, summary.skipped,
                status="stopped" if summary.stopped else "completed",
            )
        self._emit(EventType.EXECUTION_COMPLETED)
        logger.info(
            "Run %s finished: %d passed, %d failed, %d error(s), %d skipped",
            run_id, summary.passed, summary.failed, summary.errors, summary.skipped,
        )
        return summary

    async def _worker(
        self,
        worker_id: int,
        queue: "asyncio.Queue[tuple[int, GoalOrientedTestCase]]",
        run_id: str,
        experiment_id: Optional[str],
        results: list[Optional[GoalTestResult]],
    ) -> None:
        session_id = f"{run_id}-w{worker_id}-{uuid.uuid4().hex[:8]}"
        try:
            runner = self._factory(session_id)
        except Exception as e:
            logger.exception("Worker %d could not create a runner", worker_id)
            self._startup_errors.append(f"{type(e).__name__}: {e}")
            self._emit(
                EventType.WORKER_STATUS, worker_id=worker_id, worker_status=WorkerStatus.STOPPED
            )
            return
        self._emit(EventType.WORKER_STATUS, worker_id=worker_id, worker_status=WorkerStatus.IDLE)
        try:
            while not self._stopping:
                try:
                    index, test_case = queue.get_nowait()
                except asyncio.QueueEmpty:
                    break
                self._emit(
                    EventType.WORKER_STATUS, worker_id=worker_id,
                    worker_status=WorkerStatus.RUNNING, test_id=test_case.id,
                )
                with correlated(run_id, test_case.id):
                    try:
                        result = await runner.run_test(
                            test_case, run_id, experiment_id=experiment_id
                        )
                    except Exception as e:
                        logger.exception(
                            "Worker %d: test %s failed outside the runner", worker_id, test_case.id
                        )
                        result = GoalTestResult.errored(
                            test_case, run_id, f"{type(e).__name__}: {e}"
                        )
                        if self._db is not None:
                            self._db.save_test_result(result)
                results[index] = result
                self._record(result)
                self._emit(EventType.PROGRESS, worker_id=worker_id, test_id=test_case.id)
        finally:
            await runner.aclose()
            self._emit(
                EventType.WORKER_STATUS, worker_id=worker_id, worker_status=WorkerStatus.STOPPED
            )

    def _record(self, result: GoalTestResult) -> None:
        summary = self._summary
        if result.status == ResultStatus.PASSED:
            summary.passed += 1
        elif result.status == ResultStatus.FAILED:
            summary.failed += 1
        elif result.status == ResultStatus.ERROR:
            summary.errors += 1
        else:
            summary.skipped += 1

    def _emit(self, event_type: EventType, **kwargs) -> None:
        if self._listener is None:
            return
        s = self._summary
        event = ProgressEvent(
            type=event_type,
            run_id=s.run_id,
            total=s.total,
            completed=s.completed,
            passed=s.passed,
            failed=s.failed,
            errors=s.errors,
            skipped=s.skipped,
            **kwargs,
        )
        try:
            self._listener(event)
        except Exception:
            logger.exception("Progress listener raised on %s", event_type.value)


def format_report(summary: ExecutionSummary) -> str:
    """Format an execution summary into a human-readable report."""
    lines = [
        "=" * 60,
        "GOAL TEST RUN REPORT",
        "=" * 60,
        "",
        f"Run:        {summary.run_id}",
    ]
    stopped_note = "  (stopped early)" if summary.stopped else ""
    if summary.experiment_id:
        lines.append(f"Experiment: {summary.experiment_id}")
    lines += [
        f"Duration:   {summary.duration_ms / 1000:.1f}s{stopped_note}",
        "",
        "RESULTS",
        f"  Total:      {summary.total}",
        f"  Passed:     {summary.passed}",
        f"  Failed:     {summary.failed}",
        f"  Errors:     {summary.errors}",
        f"  Skipped:    {summary.skipped}",
        f"  Pass rate:  {summary.pass_rate:.1%}",
        "",
        "PER-TEST BREAKDOWN:",
    ]
    for result in summary.results:
        lines.append(
            f"  [{result.status.value.upper()}] {result.test_id} ({result.test_name}) - "
            f"{result.turn_count} turn(s), {result.duration_ms / 1000:.1f}s"
        )
        if result.status != ResultStatus.PASSED and result.summary:
            lines.append(f"      {result.summary}")
    lines.append("=" * 60)
    return "\n".join(lines)
