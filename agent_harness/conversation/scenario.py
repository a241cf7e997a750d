"""The unit of work: one persona, its goals and constraints, and how to open the call."""

from dataclasses import dataclass, field
from typing import Optional

from agent_harness.conversation.goals import Constraint, Goal
from agent_harness.conversation.response_generator import InitialMessage
from agent_harness.schemas.persona_schema import Persona


@dataclass(frozen=True)
class ResponseConfig:
    """How the simulated caller answers, and per-test overrides of runner limits."""

    use_llm: bool = False
    max_turns: Optional[int] = None
    max_duration_sec: Optional[float] = None


@dataclass(frozen=True)
class GoalOrientedTestCase:
    id: str
    name: str
    persona: Persona
    goals: tuple[Goal, ...]
    category: str = "general"
    description: str = ""
    constraints: tuple[Constraint, ...] = ()
    response_config: ResponseConfig = field(default_factory=ResponseConfig)
    initial_message: Optional[InitialMessage] = None
    tags: tuple[str, ...] = ()

    @property
    def required_goals(self) -> list[Goal]:
        return [g for g in self.goals if g.required]
