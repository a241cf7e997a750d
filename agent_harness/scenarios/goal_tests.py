"""
Built-in goal-oriented test cases.

Tests declare what the call has to achieve, not the order of questions,
so they pass whatever order the agent asks in.
"""

from dataclasses import replace

from agent_harness.conversation.goals import (
    CONSTRAINT_NO_ERRORS,
    CONSTRAINT_NO_REPETITION,
    GOAL_BOOKING_CONFIRMED,
    GOAL_COLLECT_CHILD_INFO,
    GOAL_COLLECT_HISTORY,
    GOAL_COLLECT_INSURANCE,
    GOAL_COLLECT_PARENT_INFO,
    GOAL_CONVERSATION_ENDED,
    GOAL_TRANSFER_INITIATED,
    Constraint,
    ConstraintType,
    GoalContext,
    Severity,
    max_turns_constraint,
)
from agent_harness.conversation.scenario import GoalOrientedTestCase, ResponseConfig
from agent_harness.scenarios.personas import (
    DAVID_WILSON,
    JANE_SMITH,
    MARIA_GARCIA,
    MICHAEL_DAVIS,
    ROBERT_CHEN,
    SARAH_JOHNSON,
    TERSE_TOM,
)


def _special_needs_acknowledged(ctx: GoalContext) -> bool:
    return "special_needs" in ctx.collected_data


GOAL_HAPPY_001 = GoalOrientedTestCase(
    id="GOAL-HAPPY-001",
    name="New Patient Single Child",
    description="New patient orthodontic consult booking for one child",
    category="happy-path",
    tags=("booking", "new-patient", "single-child", "priority-high"),
    persona=SARAH_JOHNSON,
    goals=(
        GOAL_COLLECT_PARENT_INFO,
        GOAL_COLLECT_CHILD_INFO,
        GOAL_BOOKING_CONFIRMED,
        GOAL_CONVERSATION_ENDED,
    ),
    constraints=(CONSTRAINT_NO_ERRORS, max_turns_constraint(25)),
    response_config=ResponseConfig(max_turns=25),
    initial_message="Hi I need to schedule an orthodontic appointment for my child",
)

GOAL_HAPPY_002 = GoalOrientedTestCase(
    id="GOAL-HAPPY-002",
    name="New Patient Two Siblings",
    description="New patient consults for two children in one call",
    category="happy-path",
    tags=("booking", "new-patient", "siblings"),
    persona=MICHAEL_DAVIS,
    goals=(
        GOAL_COLLECT_PARENT_INFO,
        replace(
            GOAL_COLLECT_CHILD_INFO,
            id="collect-children-info",
            description="Collect information for both children",
            required_fields=("child_count", "child_names", "child_dob"),
        ),
        GOAL_BOOKING_CONFIRMED,
    ),
    constraints=(CONSTRAINT_NO_ERRORS, max_turns_constraint(30)),
    response_config=ResponseConfig(max_turns=30),
    initial_message="Hi I need to schedule appointments for my two kids",
)

GOAL_HAPPY_003 = GoalOrientedTestCase(
    id="GOAL-HAPPY-003",
    name="Quick Info Provider",
    description="Verbose parent volunteers details; the call should be short",
    category="happy-path",
    tags=("booking", "verbose"),
    persona=JANE_SMITH,
    goals=(
        replace(
            GOAL_COLLECT_PARENT_INFO,
            required_fields=("parent_name", "parent_phone", "parent_email"),
        ),
        GOAL_COLLECT_CHILD_INFO,
        GOAL_BOOKING_CONFIRMED,
    ),
    constraints=(CONSTRAINT_NO_ERRORS, max_turns_constraint(20)),
    response_config=ResponseConfig(max_turns=20, use_llm=True),
    initial_message="Hi I need to schedule an appointment",
)

GOAL_HAPPY_004 = GoalOrientedTestCase(
    id="GOAL-HAPPY-004",
    name="Special Needs Child",
    description="Booking for a child with special needs",
    category="happy-path",
    tags=("booking", "special-needs"),
    persona=DAVID_WILSON,
    goals=(
        GOAL_COLLECT_PARENT_INFO,
        replace(
            GOAL_COLLECT_CHILD_INFO,
            required_fields=("child_names", "child_dob", "special_needs"),
        ),
        GOAL_BOOKING_CONFIRMED,
    ),
    constraints=(
        CONSTRAINT_NO_ERRORS,
        max_turns_constraint(25),
        Constraint(
            type=ConstraintType.MUST_HAPPEN,
            description="Agent asks about special needs",
            severity=Severity.MEDIUM,
            condition=_special_needs_acknowledged,
        ),
    ),
    response_config=ResponseConfig(max_turns=25),
    initial_message="Hi, I'd like to book an orthodontic consult for my son",
)

GOAL_HAPPY_005 = GoalOrientedTestCase(
    id="GOAL-HAPPY-005",
    name="Uninsured New Patient",
    description="Booking for a family with no insurance",
    category="happy-path",
    tags=("booking", "no-insurance"),
    persona=MARIA_GARCIA,
    goals=(
        GOAL_COLLECT_PARENT_INFO,
        GOAL_COLLECT_CHILD_INFO,
        GOAL_COLLECT_INSURANCE,
        GOAL_BOOKING_CONFIRMED,
    ),
    constraints=(CONSTRAINT_NO_ERRORS, max_turns_constraint(25)),
    response_config=ResponseConfig(max_turns=25),
)

GOAL_EDGE_001 = GoalOrientedTestCase(
    id="GOAL-EDGE-001",
    name="Terse Caller Who Changes Answers",
    description="Brief, impatient caller; agent must not loop on the same question",
    category="edge-case",
    tags=("terse", "changes-answer"),
    persona=TERSE_TOM,
    goals=(GOAL_COLLECT_PARENT_INFO, GOAL_COLLECT_CHILD_INFO, GOAL_BOOKING_CONFIRMED),
    constraints=(CONSTRAINT_NO_ERRORS, CONSTRAINT_NO_REPETITION, max_turns_constraint(25)),
    response_config=ResponseConfig(max_turns=25),
    initial_message="Need an appointment",
)

GOAL_EDGE_002 = GoalOrientedTestCase(
    id="GOAL-EDGE-002",
    name="Returning Patient With Prior Treatment",
    description="Existing patient who had braces before",
    category="edge-case",
    tags=("returning-patient", "history"),
    persona=ROBERT_CHEN,
    goals=(
        GOAL_COLLECT_PARENT_INFO,
        GOAL_COLLECT_CHILD_INFO,
        replace(GOAL_COLLECT_HISTORY, required=True),
        GOAL_BOOKING_CONFIRMED,
    ),
    constraints=(CONSTRAINT_NO_ERRORS, max_turns_constraint(25)),
    response_config=ResponseConfig(max_turns=25),
    initial_message="Hi, my son has been to your office before and needs a follow-up",
)

GOAL_ERR_001 = GoalOrientedTestCase(
    id="GOAL-ERR-001",
    name="Caller Asks For A Person",
    description="Caller wants a live agent; the call should be transferred",
    category="error-handling",
    tags=("transfer",),
    persona=SARAH_JOHNSON,
    goals=(GOAL_TRANSFER_INITIATED,),
    constraints=(max_turns_constraint(10, Severity.HIGH),),
    response_config=ResponseConfig(max_turns=10),
    initial_message="I need to talk to a real person about my daughter's braces, please",
)

GOAL_TESTS: dict[str, GoalOrientedTestCase] = {
    test.id: test
    for test in (
        GOAL_HAPPY_001,
        GOAL_HAPPY_002,
        GOAL_HAPPY_003,
        GOAL_HAPPY_004,
        GOAL_HAPPY_005,
        GOAL_EDGE_001,
        GOAL_EDGE_002,
        GOAL_ERR_001,
    )
}


def get_goal_test(test_id: str) -> GoalOrientedTestCase:
    try:
        return GOAL_TESTS[test_id]
    except KeyError:
        raise KeyError(
            f"Unknown goal test '{test_id}'. Available: {', '.join(GOAL_TESTS)}"
        ) from None


def list_goal_tests(category: str = "") -> list[GoalOrientedTestCase]:
    return [t for t in GOAL_TESTS.values() if not category or t.category == category]
