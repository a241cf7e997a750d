"""
Goal and constraint evaluation for a finished simulated conversation.

Turns the final ProgressState of a conversation into a pass/fail verdict:
every required goal must be met, no critical constraint may be violated,
the agent may not hand the call off unless a transfer was the goal, and
the run must not have been cut off by a turn or time ceiling.
"""

import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Optional

from agent_harness.conversation.goals import (
    ConstraintType,
    ConstraintViolation,
    Goal,
    GoalContext,
    GoalResult,
    GoalType,
    Severity,
)
from agent_harness.conversation.progress_tracker import (
    FlowState,
    IssueType,
    ProgressIssue,
    ProgressTracker,
)
from agent_harness.conversation.scenario import GoalOrientedTestCase
from agent_harness.schemas.conversation_schema import ConversationTurn

logger = logging.getLogger(__name__)


class StopReason(str, Enum):
    GOALS_COMPLETE = "goals_complete"
    TERMINAL_INTENT = "terminal_intent"
    MAX_TURNS = "max_turns"
    MAX_DURATION = "max_duration"
    CRITICAL_ISSUE = "critical_issue"
    CONSTRAINT_VIOLATION = "constraint_violation"
    ERROR = "error"
    SKIPPED = "skipped"


CEILING_STOP_REASONS = {StopReason.MAX_TURNS, StopReason.MAX_DURATION}


class ResultStatus(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    ERROR = "error"
    SKIPPED = "skipped"


@dataclass
class GoalTestResult:
    """Terminal artifact of one test case."""

    test_id: str
    test_name: str
    run_id: str
    passed: bool
    status: ResultStatus
    goal_results: list[GoalResult] = field(default_factory=list)
    constraint_violations: list[ConstraintViolation] = field(default_factory=list)
    transcript: list[ConversationTurn] = field(default_factory=list)
    turn_count: int = 0
    duration_ms: float = 0.0
    issues: list[ProgressIssue] = field(default_factory=list)
    stop_reason: Optional[StopReason] = None
    error: Optional[str] = None
    summary: str = ""
    progress: dict[str, Any] = field(default_factory=dict)

    @property
    def goals_completed(self) -> int:
        return sum(1 for g in self.goal_results if g.passed)

    @classmethod
    def skipped(cls, test_case: GoalOrientedTestCase, run_id: str) -> "GoalTestResult":
        return cls(
            test_id=test_case.id,
            test_name=test_case.name,
            run_id=run_id,
            passed=False,
            status=ResultStatus.SKIPPED,
            stop_reason=StopReason.SKIPPED,
            summary="SKIPPED: execution stopped before this test started",
        )

    @classmethod
    def errored(
        cls,
        test_case: GoalOrientedTestCase,
        run_id: str,
        error: str,
        duration_ms: float = 0.0,
        transcript: Optional[list[ConversationTurn]] = None,
    ) -> "GoalTestResult":
        return cls(
            test_id=test_case.id,
            test_name=test_case.name,
            run_id=run_id,
            passed=False,
            status=ResultStatus.ERROR,
            transcript=transcript or [],
            duration_ms=duration_ms,
            stop_reason=StopReason.ERROR,
            error=error,
            summary=f"ERROR: {error}",
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "test_id": self.test_id,
            "test_name": self.test_name,
            "run_id": self.run_id,
            "passed": self.passed,
            "status": self.status.value,
            "goal_results": [g.to_dict() for g in self.goal_results],
            "constraint_violations": [v.to_dict() for v in self.constraint_violations],
            "turn_count": self.turn_count,
            "duration_ms": round(self.duration_ms, 1),
            "issues": [i.to_dict() for i in self.issues],
            "stop_reason": self.stop_reason.value if self.stop_reason else None,
            "error": self.error,
            "summary": self.summary,
        }


class GoalEvaluator:
    """Evaluates goals and constraints against a conversation's progress."""

    def evaluate_goal(
        self, goal: Goal, tracker: ProgressTracker, context: GoalContext
    ) -> GoalResult:
        state = tracker.state
        details: dict[str, Any] = {}
        if goal.type == GoalType.DATA_COLLECTION:
            collected = [f for f in goal.required_fields if f in state.collected_fields]
            missing = [f for f in goal.required_fields if f not in state.collected_fields]
            details = {
                "required": list(goal.required_fields),
                "collected": collected,
                "missing": missing,
            }

        if goal.id in state.completed_goals:
            return GoalResult(goal.id, True, "Completed during conversation", details)

        if goal.type == GoalType.DATA_COLLECTION:
            passed = not details["missing"]
            message = (
                "All required fields collected" if passed
                else f"Missing fields: {', '.join(details['missing'])}"
            )
        elif goal.type == GoalType.BOOKING_CONFIRMED:
            passed = state.booking_confirmed or state.current_flow_state == FlowState.CONFIRMATION
            message = "Booking confirmed" if passed else "Agent never confirmed a booking"
        elif goal.type == GoalType.TRANSFER_INITIATED:
            passed = state.transfer_initiated
            message = "Transfer initiated" if passed else "Agent never initiated a transfer"
        elif goal.type == GoalType.CONVERSATION_ENDED:
            passed = tracker.is_goal_satisfied(goal)
            message = "Conversation ended" if passed else "Conversation did not reach an end"
        else:
            passed = bool(goal.success_criteria and goal.success_criteria(context))
            message = "Custom criteria met" if passed else "Custom criteria not met"
        return GoalResult(goal.id, passed, message, details)

    def check_constraints(
        self,
        test_case: GoalOrientedTestCase,
        context: GoalContext,
        final: bool = True,
    ) -> list[ConstraintViolation]:
        """Check constraints. ``must_happen`` is only judged once the run is over."""
        violations = []
        for constraint in test_case.constraints:
            message = None
            if constraint.type == ConstraintType.MUST_HAPPEN:
                if final and constraint.condition and not constraint.condition(context):
                    message = f"Required event did not happen: {constraint.description}"
            elif constraint.type == ConstraintType.MUST_NOT_HAPPEN:
                if constraint.condition and constraint.condition(context):
                    message = f"Forbidden event happened: {constraint.description}"
            elif constraint.type == ConstraintType.MAX_TURNS:
                if constraint.max_turns is not None and context.turn_count > constraint.max_turns:
                    message = f"{context.turn_count} turns exceeds limit of {constraint.max_turns}"
            elif constraint.type == ConstraintType.MAX_TIME:
                if constraint.max_time_ms is not None and context.elapsed_ms > constraint.max_time_ms:
                    message = (
                        f"{context.elapsed_ms:.0f}ms exceeds limit of {constraint.max_time_ms:.0f}ms"
                    )
            if message:
                violations.append(ConstraintViolation(constraint, context.turn_count, message))
        return violations

    def check_running_constraints(
        self, test_case: GoalOrientedTestCase, tracker: ProgressTracker
    ) -> list[ConstraintViolation]:
        """Critical violations observable mid-conversation."""
        violations = self.check_constraints(test_case, tracker.build_context(), final=False)
        return [v for v in violations if v.severity == Severity.CRITICAL]

    def evaluate_test(
        self,
        test_case: GoalOrientedTestCase,
        tracker: ProgressTracker,
        transcript: list[ConversationTurn],
        run_id: str,
        duration_ms: float,
        stop_reason: StopReason,
        error: Optional[str] = None,
    ) -> GoalTestResult:
        tracker.evaluate_goals()
        state = tracker.state
        context = replace(tracker.build_context(transcript), elapsed_ms=duration_ms)

        goal_results = [self.evaluate_goal(g, tracker, context) for g in test_case.goals]
        for goal, result in zip(test_case.goals, goal_results):
            if not result.passed:
                tracker.mark_goal_failed(goal.id)

        violations = self.check_constraints(test_case, context, final=True)
        critical = [v for v in violations if v.severity == Severity.CRITICAL]

        transfer_expected = any(
            g.type == GoalType.TRANSFER_INITIATED and g.required for g in test_case.goals
        )
        unexpected_transfer = state.transfer_initiated and not transfer_expected
        if unexpected_transfer:
            tracker.record_issue(
                IssueType.UNEXPECTED_TRANSFER, "high", state.turn_number,
                "Agent transferred the call but no transfer goal was required",
            )

        required_ok = all(
            r.passed for g, r in zip(test_case.goals, goal_results) if g.required
        )
        passed = (
            error is None
            and required_ok
            and not critical
            and not unexpected_transfer
            and stop_reason not in CEILING_STOP_REASONS
        )
        if error is not None:
            status = ResultStatus.ERROR
        else:
            status = ResultStatus.PASSED if passed else ResultStatus.FAILED

        result = GoalTestResult(
            test_id=test_case.id,
            test_name=test_case.name,
            run_id=run_id,
            passed=passed,
            status=status,
            goal_results=goal_results,
            constraint_violations=violations,
            transcript=list(transcript),
            turn_count=state.turn_number,
            duration_ms=duration_ms,
            issues=list(state.issues),
            stop_reason=stop_reason,
            error=error,
            progress=tracker.snapshot_dict(),
        )
        result.summary = self.generate_summary(test_case, result, unexpected_transfer)
        logger.info("Test %s: %s", test_case.id, result.summary)
        return result

    def generate_summary(
        self,
        test_case: GoalOrientedTestCase,
        result: GoalTestResult,
        unexpected_transfer: bool = False,
    ) -> str:
        required_ids = {g.id for g in test_case.goals if g.required}
        required_met = sum(1 for r in result.goal_results if r.goal_id in required_ids and r.passed)
        head = result.status.value.upper()
        parts = [
            f"{head}: {required_met}/{len(required_ids)} required goals met "
            f"in {result.turn_count} turns ({result.duration_ms / 1000:.1f}s)"
        ]
        missing = [
            f for r in result.goal_results for f in r.details.get("missing", [])
        ]
        if missing:
            parts.append(f"missing fields: {', '.join(missing)}")
        if result.constraint_violations:
            parts.append(
                "violations: " + "; ".join(
                    f"[{v.severity.value}] {v.message}" for v in result.constraint_violations
                )
            )
        if unexpected_transfer:
            parts.append("unexpected transfer")
        if result.stop_reason and result.stop_reason != StopReason.GOALS_COMPLETE:
            parts.append(f"stopped: {result.stop_reason.value}")
        if result.error:
            parts.append(f"error: {result.error}")
        return " | ".join(parts)
