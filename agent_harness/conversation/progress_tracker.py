"""
Per-conversation progress tracking.

Follows one simulated call turn by turn: which fields the caller has
handed over, which coarse flow state the agent is in, whether the agent
has confirmed a booking or started a transfer, which health issues have
shown up, and which goals are complete.

Usage:
    tracker = ProgressTracker(goals=[GOAL_COLLECT_PARENT_INFO])
    tracker.update(intent_result, "Sarah Johnson", turn_number=1)
    assert "parent_name" in tracker.state.collected_fields
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Sequence

from agent_harness.config import ProgressConfig, settings
from agent_harness.conversation.goals import Goal, GoalContext, GoalType
from agent_harness.conversation.intent_detector import IntentDetectionResult
from agent_harness.conversation.intents import (
    CONFIRMATION_INTENTS,
    INTENT_TO_FIELD,
    AgentIntent,
)
from agent_harness.schemas.conversation_schema import ConversationTurn

logger = logging.getLogger(__name__)

TURNS_PER_PENDING_FIELD = 2


class FlowState(str, Enum):
    """Coarse phase of the scheduling conversation."""
    INITIAL = "initial"
    GREETING = "greeting"
    COLLECTING_PARENT_INFO = "collecting_parent_info"
    COLLECTING_CHILD_INFO = "collecting_child_info"
    COLLECTING_HISTORY = "collecting_history"
    COLLECTING_INSURANCE = "collecting_insurance"
    COLLECTING_SPECIAL_INFO = "collecting_special_info"
    SCHEDULING = "scheduling"
    BOOKING = "booking"
    CONFIRMATION = "confirmation"
    TRANSFER = "transfer"
    ENDED = "ended"


# Every intent must appear here; None leaves the flow state unchanged.
FLOW_STATE_FOR_INTENT: dict[AgentIntent, Optional[FlowState]] = {
    AgentIntent.GREETING: FlowState.GREETING,
    AgentIntent.SAYING_GOODBYE: FlowState.ENDED,
    AgentIntent.ASKING_PARENT_NAME: FlowState.COLLECTING_PARENT_INFO,
    AgentIntent.ASKING_SPELL_NAME: FlowState.COLLECTING_PARENT_INFO,
    AgentIntent.ASKING_PHONE: FlowState.COLLECTING_PARENT_INFO,
    AgentIntent.ASKING_EMAIL: FlowState.COLLECTING_PARENT_INFO,
    AgentIntent.ASKING_CHILD_COUNT: FlowState.COLLECTING_CHILD_INFO,
    AgentIntent.ASKING_CHILD_NAME: FlowState.COLLECTING_CHILD_INFO,
    AgentIntent.ASKING_CHILD_DOB: FlowState.COLLECTING_CHILD_INFO,
    AgentIntent.ASKING_CHILD_AGE: FlowState.COLLECTING_CHILD_INFO,
    AgentIntent.ASKING_NEW_PATIENT: FlowState.COLLECTING_HISTORY,
    AgentIntent.ASKING_PREVIOUS_VISIT: FlowState.COLLECTING_HISTORY,
    AgentIntent.ASKING_PREVIOUS_ORTHO: FlowState.COLLECTING_HISTORY,
    AgentIntent.ASKING_INSURANCE: FlowState.COLLECTING_INSURANCE,
    AgentIntent.ASKING_SPECIAL_NEEDS: FlowState.COLLECTING_SPECIAL_INFO,
    AgentIntent.ASKING_TIME_PREFERENCE: FlowState.SCHEDULING,
    AgentIntent.ASKING_LOCATION_PREFERENCE: FlowState.SCHEDULING,
    AgentIntent.CONFIRMING_INFORMATION: None,
    AgentIntent.CONFIRMING_SPELLING: None,
    AgentIntent.ASKING_PROCEED_CONFIRMATION: None,
    AgentIntent.REMINDING_BRING_CARD: None,
    AgentIntent.SEARCHING_AVAILABILITY: FlowState.SCHEDULING,
    AgentIntent.OFFERING_TIME_SLOTS: FlowState.BOOKING,
    AgentIntent.CONFIRMING_BOOKING: FlowState.CONFIRMATION,
    AgentIntent.OFFERING_ADDRESS: None,
    AgentIntent.PROVIDING_ADDRESS: None,
    AgentIntent.PROVIDING_PARKING_INFO: None,
    AgentIntent.INITIATING_TRANSFER: FlowState.TRANSFER,
    AgentIntent.HANDLING_ERROR: None,
    AgentIntent.ASKING_CLARIFICATION: None,
    AgentIntent.UNKNOWN: None,
}

_unmapped = set(AgentIntent) - set(FLOW_STATE_FOR_INTENT)
if _unmapped:
    raise RuntimeError(
        f"FLOW_STATE_FOR_INTENT is missing intents: {sorted(i.value for i in _unmapped)}"
    )


class IssueType(str, Enum):
    REPEATING = "repeating"
    STUCK = "stuck"
    UNKNOWN_INTENT = "unknown_intent"
    ERROR = "error"
    CONSTRAINT_VIOLATION = "constraint_violation"
    UNEXPECTED_TRANSFER = "unexpected_transfer"


@dataclass
class CollectedField:
    value: Any
    collected_at_turn: int
    confirmed: bool = False


@dataclass
class ProgressIssue:
    type: IssueType
    severity: str  # "low", "medium", "high", "critical"
    turn_number: int
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "severity": self.severity,
            "turn_number": self.turn_number,
            "message": self.message,
        }


@dataclass
class ProgressState:
    turn_number: int = 0
    collected_fields: dict[str, CollectedField] = field(default_factory=dict)
    pending_fields: list[str] = field(default_factory=list)
    intent_history: list[AgentIntent] = field(default_factory=list)
    booking_confirmed: bool = False
    transfer_initiated: bool = False
    current_flow_state: FlowState = FlowState.INITIAL
    issues: list[ProgressIssue] = field(default_factory=list)
    completed_goals: list[str] = field(default_factory=list)
    failed_goals: list[str] = field(default_factory=list)
    active_goals: list[str] = field(default_factory=list)
    started_at: float = field(default_factory=time.monotonic)


@dataclass
class ProgressSummary:
    collected_count: int
    pending_count: int
    percent_complete: float
    estimated_turns_remaining: int
    flow_state: FlowState
    issue_count: int


class ProgressTracker:
    """Owns the ProgressState of a single conversation."""

    def __init__(
        self,
        goals: Sequence[Goal] = (),
        config: Optional[ProgressConfig] = None,
    ) -> None:
        self._config = config or settings.progress
        self._goals = list(goals)
        self._transcript: list[ConversationTurn] = []
        self._state = self._initial_state()

    def _initial_state(self) -> ProgressState:
        pending: list[str] = []
        for goal in self._goals:
            for name in goal.required_fields:
                if name not in pending:
                    pending.append(name)
        return ProgressState(
            pending_fields=pending,
            active_goals=[g.id for g in self._goals],
        )

    @property
    def state(self) -> ProgressState:
        return self._state

    @property
    def goals(self) -> list[Goal]:
        return list(self._goals)

    @property
    def pending_fields(self) -> list[str]:
        return list(self._state.pending_fields)

    @property
    def elapsed_ms(self) -> float:
        return (time.monotonic() - self._state.started_at) * 1000

    def set_transcript(self, transcript: list[ConversationTurn]) -> None:
        """Share the runner's transcript so custom goals can inspect it."""
        self._transcript = transcript

    def update(
        self,
        intent_result: IntentDetectionResult,
        caller_utterance: str,
        turn_number: int,
    ) -> ProgressState:
        state = self._state
        intent = intent_result.primary_intent
        state.turn_number = turn_number

        self._detect_repetition(intent, turn_number)
        state.intent_history.append(intent)

        field_name = INTENT_TO_FIELD.get(intent)
        if field_name and caller_utterance and field_name not in state.collected_fields:
            state.collected_fields[field_name] = CollectedField(
                value=caller_utterance, collected_at_turn=turn_number
            )
            if field_name in state.pending_fields:
                state.pending_fields.remove(field_name)
            logger.debug("Collected %s at turn %d", field_name, turn_number)

        if intent in CONFIRMATION_INTENTS:
            for collected in state.collected_fields.values():
                collected.confirmed = True

        all_intents = intent_result.all_intents
        if AgentIntent.CONFIRMING_BOOKING in all_intents:
            self.mark_booking_confirmed()
        if AgentIntent.INITIATING_TRANSFER in all_intents:
            self.mark_transfer_initiated()

        next_state = FLOW_STATE_FOR_INTENT[intent]
        if next_state is not None and next_state != state.current_flow_state:
            logger.debug(
                "Flow state: %s -> %s", state.current_flow_state.value, next_state.value
            )
            state.current_flow_state = next_state

        self._detect_stuck(turn_number)
        if (
            intent == AgentIntent.UNKNOWN
            and intent_result.confidence < self._config.low_confidence_threshold
        ):
            self.record_issue(
                IssueType.UNKNOWN_INTENT, "low", turn_number,
                f"Could not classify agent reply (confidence {intent_result.confidence:.2f})",
            )

        self.evaluate_goals()
        return state

    # --- Sticky flags ---

    def mark_booking_confirmed(self) -> None:
        self._state.booking_confirmed = True

    def mark_transfer_initiated(self) -> None:
        self._state.transfer_initiated = True

    # --- Issues ---

    def record_issue(
        self, issue_type: IssueType, severity: str, turn_number: int, message: str
    ) -> ProgressIssue:
        issue = ProgressIssue(issue_type, severity, turn_number, message)
        self._state.issues.append(issue)
        logger.info("Issue at turn %d [%s/%s]: %s", turn_number, issue_type.value, severity, message)
        return issue

    def _has_issue(self, issue_type: IssueType) -> bool:
        return any(i.type == issue_type for i in self._state.issues)

    def _detect_repetition(self, intent: AgentIntent, turn_number: int) -> None:
        """Flag when the agent has asked the same thing N times in a row already."""
        window = self._config.max_repetition_count
        recent = self._state.intent_history[-window:]
        if (
            intent != AgentIntent.UNKNOWN
            and len(recent) == window
            and all(i == intent for i in recent)
        ):
            self.record_issue(
                IssueType.REPEATING, "medium", turn_number,
                f"Agent repeated '{intent.value}' {window + 1} times in a row",
            )

    def _detect_stuck(self, turn_number: int) -> None:
        # Only fires when nothing at all was collected; slow-but-progressing calls are fine.
        if (
            turn_number >= self._config.stuck_threshold_turns
            and not self._state.collected_fields
            and not self._has_issue(IssueType.STUCK)
        ):
            self.record_issue(
                IssueType.STUCK, "high", turn_number,
                f"No information collected after {turn_number} turns",
            )

    def should_abort(self) -> bool:
        return any(i.severity == "critical" for i in self._state.issues)

    # --- Goals ---

    def build_context(self, history: Optional[list[ConversationTurn]] = None) -> GoalContext:
        state = self._state
        return GoalContext.build(
            collected_data={k: v.value for k, v in state.collected_fields.items()},
            conversation_history=history if history is not None else self._transcript,
            intent_history=state.intent_history,
            agent_confirmed_booking=state.booking_confirmed,
            agent_initiated_transfer=state.transfer_initiated,
            turn_count=state.turn_number,
            elapsed_ms=self.elapsed_ms,
        )

    def is_goal_satisfied(self, goal: Goal, context: Optional[GoalContext] = None) -> bool:
        state = self._state
        if goal.type == GoalType.DATA_COLLECTION:
            return all(f in state.collected_fields for f in goal.required_fields)
        if goal.type == GoalType.BOOKING_CONFIRMED:
            return state.booking_confirmed or state.current_flow_state == FlowState.CONFIRMATION
        if goal.type == GoalType.TRANSFER_INITIATED:
            return state.transfer_initiated
        if goal.type == GoalType.CONVERSATION_ENDED:
            # A confirmed booking or a transfer does not close the call by itself
            last_intent = state.intent_history[-1] if state.intent_history else None
            return (
                state.current_flow_state == FlowState.ENDED
                or last_intent == AgentIntent.SAYING_GOODBYE
            )
        if goal.success_criteria is None:
            return False
        return bool(goal.success_criteria(context or self.build_context()))

    def evaluate_goals(self) -> None:
        """Move newly satisfied goals to completed. Completed goals never revert."""
        state = self._state
        context = None
        for goal in self._goals:
            if goal.id in state.completed_goals:
                continue
            if goal.type == GoalType.CUSTOM and context is None:
                context = self.build_context()
            if self.is_goal_satisfied(goal, context):
                state.completed_goals.append(goal.id)
                if goal.id in state.active_goals:
                    state.active_goals.remove(goal.id)
                logger.info("Goal '%s' completed at turn %d", goal.id, state.turn_number)

    def mark_goal_failed(self, goal_id: str) -> None:
        state = self._state
        if goal_id not in state.failed_goals and goal_id not in state.completed_goals:
            state.failed_goals.append(goal_id)
            if goal_id in state.active_goals:
                state.active_goals.remove(goal_id)

    def goals_complete(self) -> bool:
        required = [g for g in self._goals if g.required]
        return bool(required) and all(g.id in self._state.completed_goals for g in required)

    def has_failed_goals(self) -> bool:
        return bool(self._state.failed_goals)

    # --- Reporting ---

    def summary(self) -> ProgressSummary:
        state = self._state
        collected = len(state.collected_fields)
        pending = len(state.pending_fields)
        total = collected + pending
        return ProgressSummary(
            collected_count=collected,
            pending_count=pending,
            percent_complete=round(collected / total * 100, 1) if total else 100.0,
            estimated_turns_remaining=pending * TURNS_PER_PENDING_FIELD,
            flow_state=state.current_flow_state,
            issue_count=len(state.issues),
        )

    def snapshot_dict(self) -> dict[str, Any]:
        state = self._state
        return {
            "turn_number": state.turn_number,
            "collected_fields": {
                k: {"value": v.value, "turn": v.collected_at_turn, "confirmed": v.confirmed}
                for k, v in state.collected_fields.items()
            },
            "pending_fields": list(state.pending_fields),
            "intent_history": [i.value for i in state.intent_history],
            "booking_confirmed": state.booking_confirmed,
            "transfer_initiated": state.transfer_initiated,
            "flow_state": state.current_flow_state.value,
            "issues": [i.to_dict() for i in state.issues],
            "completed_goals": list(state.completed_goals),
            "failed_goals": list(state.failed_goals),
        }

    def reset(self) -> None:
        self._transcript = []
        self._state = self._initial_state()
