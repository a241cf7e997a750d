"""
Goals, constraints and the read-only context custom checks receive.

A goal describes an outcome the agent must reach (collect fields, confirm
a booking, ...). A constraint describes something that must, or must
not, happen along the way. Presets cover the common scheduling checks.
"""

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Mapping, Optional

from agent_harness.conversation.intents import AgentIntent
from agent_harness.schemas.conversation_schema import ConversationTurn


class GoalType(str, Enum):
    DATA_COLLECTION = "data_collection"
    BOOKING_CONFIRMED = "booking_confirmed"
    TRANSFER_INITIATED = "transfer_initiated"
    CONVERSATION_ENDED = "conversation_ended"
    CUSTOM = "custom"


class ConstraintType(str, Enum):
    MUST_HAPPEN = "must_happen"
    MUST_NOT_HAPPEN = "must_not_happen"
    MAX_TURNS = "max_turns"
    MAX_TIME = "max_time"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(frozen=True)
class GoalContext:
    """Immutable view of a conversation handed to custom predicates."""

    collected_data: Mapping[str, Any]
    conversation_history: tuple[ConversationTurn, ...]
    intent_history: tuple[AgentIntent, ...]
    agent_confirmed_booking: bool
    agent_initiated_transfer: bool
    turn_count: int
    elapsed_ms: float

    @classmethod
    def build(
        cls,
        collected_data: dict[str, Any],
        conversation_history: list[ConversationTurn],
        intent_history: list[AgentIntent],
        agent_confirmed_booking: bool,
        agent_initiated_transfer: bool,
        turn_count: int,
        elapsed_ms: float,
    ) -> "GoalContext":
        return cls(
            collected_data=MappingProxyType(dict(collected_data)),
            conversation_history=tuple(conversation_history),
            intent_history=tuple(intent_history),
            agent_confirmed_booking=agent_confirmed_booking,
            agent_initiated_transfer=agent_initiated_transfer,
            turn_count=turn_count,
            elapsed_ms=elapsed_ms,
        )


@dataclass(frozen=True)
class Goal:
    id: str
    type: GoalType
    description: str
    required_fields: tuple[str, ...] = ()
    success_criteria: Optional[Callable[[GoalContext], bool]] = None
    required: bool = True
    priority: int = 1


@dataclass(frozen=True)
class Constraint:
    type: ConstraintType
    description: str
    severity: Severity = Severity.MEDIUM
    condition: Optional[Callable[[GoalContext], bool]] = None
    max_turns: Optional[int] = None
    max_time_ms: Optional[float] = None


@dataclass
class GoalResult:
    goal_id: str
    passed: bool
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "goal_id": self.goal_id,
            "passed": self.passed,
            "message": self.message,
            "details": self.details,
        }


@dataclass
class ConstraintViolation:
    constraint: Constraint
    turn_number: int
    message: str

    @property
    def severity(self) -> Severity:
        return self.constraint.severity

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.constraint.type.value,
            "description": self.constraint.description,
            "severity": self.constraint.severity.value,
            "turn_number": self.turn_number,
            "message": self.message,
        }


# --- Preset goals ---

GOAL_COLLECT_PARENT_INFO = Goal(
    id="collect-parent-info",
    type=GoalType.DATA_COLLECTION,
    description="Collect the parent's name and phone number",
    required_fields=("parent_name", "parent_phone"),
)

GOAL_COLLECT_CHILD_INFO = Goal(
    id="collect-child-info",
    type=GoalType.DATA_COLLECTION,
    description="Collect the child's name and date of birth",
    required_fields=("child_names", "child_dob"),
)

GOAL_COLLECT_INSURANCE = Goal(
    id="collect-insurance",
    type=GoalType.DATA_COLLECTION,
    description="Ask about insurance",
    required_fields=("insurance",),
    required=False,
    priority=2,
)

GOAL_COLLECT_HISTORY = Goal(
    id="collect-history",
    type=GoalType.DATA_COLLECTION,
    description="Establish whether the child is a new patient",
    required_fields=("is_new_patient",),
    required=False,
    priority=2,
)

GOAL_BOOKING_CONFIRMED = Goal(
    id="booking-confirmed",
    type=GoalType.BOOKING_CONFIRMED,
    description="Agent confirms the appointment is booked",
)

GOAL_TRANSFER_INITIATED = Goal(
    id="transfer-initiated",
    type=GoalType.TRANSFER_INITIATED,
    description="Agent hands the call to a person",
)

GOAL_CONVERSATION_ENDED = Goal(
    id="conversation-ended",
    type=GoalType.CONVERSATION_ENDED,
    description="Conversation reaches a natural end",
    required=False,
    priority=3,
)


# --- Preset constraints ---

def _had_error_turn(ctx: GoalContext) -> bool:
    return any(t.is_error for t in ctx.conversation_history)


def _repeated_question(ctx: GoalContext) -> bool:
    intents = ctx.intent_history
    return any(
        intents[i] == intents[i + 1] == intents[i + 2] and intents[i] != AgentIntent.UNKNOWN
        for i in range(len(intents) - 2)
    )


CONSTRAINT_NO_ERRORS = Constraint(
    type=ConstraintType.MUST_NOT_HAPPEN,
    description="No agent errors during the conversation",
    severity=Severity.HIGH,
    condition=_had_error_turn,
)

CONSTRAINT_NO_REPETITION = Constraint(
    type=ConstraintType.MUST_NOT_HAPPEN,
    description="Agent does not ask the same thing three times in a row",
    severity=Severity.MEDIUM,
    condition=_repeated_question,
)


def max_turns_constraint(limit: int, severity: Severity = Severity.MEDIUM) -> Constraint:
    return Constraint(
        type=ConstraintType.MAX_TURNS,
        description=f"Finish within {limit} turns",
        severity=severity,
        max_turns=limit,
    )


def max_time_constraint(limit_ms: float, severity: Severity = Severity.MEDIUM) -> Constraint:
    return Constraint(
        type=ConstraintType.MAX_TIME,
        description=f"Finish within {limit_ms / 1000:.0f} seconds",
        severity=severity,
        max_time_ms=limit_ms,
    )
