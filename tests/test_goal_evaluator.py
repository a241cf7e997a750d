"""Tests for goal and constraint evaluation of finished conversations."""

from agent_harness.conversation.goals import (
    CONSTRAINT_NO_ERRORS,
    GOAL_COLLECT_INSURANCE,
    GOAL_CONVERSATION_ENDED,
    GOAL_TRANSFER_INITIATED,
    Constraint,
    ConstraintType,
    Severity,
    max_time_constraint,
    max_turns_constraint,
)
from agent_harness.conversation.intents import AgentIntent
from agent_harness.conversation.progress_tracker import IssueType, ProgressTracker
from agent_harness.evaluation.goal_evaluator import (
    GoalEvaluator,
    GoalTestResult,
    ResultStatus,
    StopReason,
)
from agent_harness.schemas.conversation_schema import ConversationTurn, Role
from tests.conftest import GOAL_BASICS, make_intent_result, make_progress_config, make_test_case

ALWAYS = Constraint(
    type=ConstraintType.MUST_NOT_HAPPEN,
    description="Anything at all",
    severity=Severity.CRITICAL,
    condition=lambda ctx: True,
)


def _tracker_with_basics(test_case, collect_dob: bool = True) -> ProgressTracker:
    tracker = ProgressTracker(test_case.goals, make_progress_config())
    tracker.update(make_intent_result(AgentIntent.ASKING_PARENT_NAME), "Sarah Johnson", 1)
    if collect_dob:
        tracker.update(make_intent_result(AgentIntent.ASKING_CHILD_DOB), "2014-03-15", 2)
    return tracker


class TestEvaluateTest:
    def setup_method(self):
        self.evaluator = GoalEvaluator()

    def _evaluate(self, test_case, tracker, stop_reason=StopReason.GOALS_COMPLETE, **kwargs):
        return self.evaluator.evaluate_test(
            test_case, tracker, kwargs.pop("transcript", []), "RUN-1", 1500.0, stop_reason, **kwargs
        )

    def test_all_goals_met_passes(self):
        test_case = make_test_case()
        result = self._evaluate(test_case, _tracker_with_basics(test_case))
        assert result.passed is True
        assert result.status == ResultStatus.PASSED
        assert result.turn_count == 2
        assert result.summary.startswith("PASSED: 1/1 required goals met in 2 turns")

    def test_missing_field_fails(self):
        test_case = make_test_case()
        result = self._evaluate(test_case, _tracker_with_basics(test_case, collect_dob=False),
                                StopReason.TERMINAL_INTENT)
        assert result.status == ResultStatus.FAILED
        goal = result.goal_results[0]
        assert goal.message == "Missing fields: child_dob"
        assert goal.details["collected"] == ["parent_name"]
        assert "missing fields: child_dob" in result.summary
        assert "stopped: terminal_intent" in result.summary

    def test_ceiling_stop_fails_even_with_goals_met(self):
        test_case = make_test_case()
        result = self._evaluate(test_case, _tracker_with_basics(test_case), StopReason.MAX_TURNS)
        assert result.passed is False
        assert result.status == ResultStatus.FAILED

    def test_error_sets_error_status(self):
        test_case = make_test_case()
        result = self._evaluate(test_case, _tracker_with_basics(test_case), StopReason.ERROR,
                                error="connection refused")
        assert result.status == ResultStatus.ERROR
        assert "error: connection refused" in result.summary

    def test_optional_goal_does_not_fail_the_test(self):
        test_case = make_test_case(goals=(GOAL_BASICS, GOAL_COLLECT_INSURANCE))
        result = self._evaluate(test_case, _tracker_with_basics(test_case))
        assert result.passed is True
        assert [g.passed for g in result.goal_results] == [True, False]
        assert result.goals_completed == 1

    def test_confirmed_booking_without_goodbye_has_not_ended(self):
        test_case = make_test_case(goals=(GOAL_BASICS, GOAL_CONVERSATION_ENDED))
        tracker = _tracker_with_basics(test_case)
        tracker.update(make_intent_result(AgentIntent.CONFIRMING_BOOKING), "", 3)
        result = self._evaluate(test_case, tracker, StopReason.TERMINAL_INTENT)
        ended = result.goal_results[1]
        assert ended.passed is False
        assert ended.message == "Conversation did not reach an end"

    def test_unexpected_transfer_fails(self):
        test_case = make_test_case()
        tracker = _tracker_with_basics(test_case)
        tracker.update(make_intent_result(AgentIntent.INITIATING_TRANSFER), "", 3)
        result = self._evaluate(test_case, tracker, StopReason.TERMINAL_INTENT)
        assert result.passed is False
        assert any(i.type == IssueType.UNEXPECTED_TRANSFER for i in result.issues)
        assert "unexpected transfer" in result.summary

    def test_expected_transfer_passes(self):
        test_case = make_test_case(goals=(GOAL_TRANSFER_INITIATED,))
        tracker = ProgressTracker(test_case.goals, make_progress_config())
        tracker.update(make_intent_result(AgentIntent.INITIATING_TRANSFER), "", 1)
        result = self._evaluate(test_case, tracker, StopReason.TERMINAL_INTENT)
        assert result.passed is True

    def test_critical_violation_fails(self):
        test_case = make_test_case(constraints=(ALWAYS,))
        result = self._evaluate(test_case, _tracker_with_basics(test_case))
        assert result.passed is False
        assert result.constraint_violations[0].severity == Severity.CRITICAL

    def test_non_critical_violation_is_reported_but_passes(self):
        test_case = make_test_case(constraints=(max_turns_constraint(1),))
        result = self._evaluate(test_case, _tracker_with_basics(test_case))
        assert result.passed is True
        assert len(result.constraint_violations) == 1
        assert "2 turns exceeds limit of 1" in result.constraint_violations[0].message

    def test_max_time_uses_run_duration(self):
        test_case = make_test_case(constraints=(max_time_constraint(1000),))
        result = self._evaluate(test_case, _tracker_with_basics(test_case))
        assert "1500ms exceeds limit of 1000ms" in result.constraint_violations[0].message

    def test_error_turn_violates_no_errors(self):
        test_case = make_test_case(constraints=(CONSTRAINT_NO_ERRORS,))
        transcript = [
            ConversationTurn(role=Role.CALLER, content="Hi"),
            ConversationTurn(role=Role.AGENT, content="[error] boom", is_error=True),
        ]
        result = self._evaluate(test_case, _tracker_with_basics(test_case), transcript=transcript)
        assert len(result.constraint_violations) == 1
        assert result.constraint_violations[0].severity == Severity.HIGH

    def test_to_dict(self):
        test_case = make_test_case()
        data = self._evaluate(test_case, _tracker_with_basics(test_case)).to_dict()
        assert data["status"] == "passed"
        assert data["stop_reason"] == "goals_complete"
        assert data["goal_results"][0]["goal_id"] == "collect-basics"


class TestRunningConstraints:
    def setup_method(self):
        self.evaluator = GoalEvaluator()

    def test_only_critical_violations_returned(self):
        test_case = make_test_case(constraints=(ALWAYS, max_turns_constraint(0)))
        tracker = _tracker_with_basics(test_case)
        violations = self.evaluator.check_running_constraints(test_case, tracker)
        assert [v.constraint for v in violations] == [ALWAYS]

    def test_must_happen_waits_for_the_end(self):
        never = Constraint(
            type=ConstraintType.MUST_HAPPEN,
            description="Never happens",
            severity=Severity.CRITICAL,
            condition=lambda ctx: False,
        )
        test_case = make_test_case(constraints=(never,))
        tracker = _tracker_with_basics(test_case)
        assert self.evaluator.check_running_constraints(test_case, tracker) == []
        context = tracker.build_context()
        assert len(self.evaluator.check_constraints(test_case, context, final=True)) == 1


class TestResultFactories:
    def test_skipped(self):
        result = GoalTestResult.skipped(make_test_case(), "RUN-1")
        assert result.status == ResultStatus.SKIPPED
        assert result.stop_reason == StopReason.SKIPPED
        assert result.passed is False

    def test_errored(self):
        result = GoalTestResult.errored(make_test_case(), "RUN-1", "RuntimeError: boom")
        assert result.status == ResultStatus.ERROR
        assert result.summary == "ERROR: RuntimeError: boom"
