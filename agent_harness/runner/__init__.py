from agent_harness.runner.goal_test_runner import GoalTestRunner
from agent_harness.runner.orchestrator import (
    ExecutionSummary,
    ProgressEvent,
    TestOrchestrator,
    format_report,
)

__all__ = [
    "GoalTestRunner",
    "TestOrchestrator",
    "ExecutionSummary",
    "ProgressEvent",
    "format_report",
]
