from agent_harness.evaluation.goal_evaluator import (
    GoalEvaluator,
    GoalTestResult,
    ResultStatus,
    StopReason,
)

__all__ = ["GoalEvaluator", "GoalTestResult", "ResultStatus", "StopReason"]
