"""Shared test fixtures, fakes and helpers."""

import random
from typing import Callable, Optional, Sequence, Union

import pytest

from agent_harness.clients.agent_client import AgentTransportError
from agent_harness.clients.content_source import FileContentSource
from agent_harness.clients.llm_provider import LLMRequest, LLMResponse
from agent_harness.config import (
    ExperimentConfig,
    IntentConfig,
    ProgressConfig,
    RunnerConfig,
)
from agent_harness.conversation.goals import Constraint, Goal, GoalType
from agent_harness.conversation.intent_detector import IntentDetectionResult, IntentDetector
from agent_harness.conversation.intents import AgentIntent
from agent_harness.conversation.scenario import GoalOrientedTestCase, ResponseConfig
from agent_harness.experiments.experiment_service import ExperimentService
from agent_harness.experiments.variant_service import VariantService
from agent_harness.schemas.conversation_schema import AgentResponse
from agent_harness.schemas.experiment_schema import (
    CreateExperimentInput,
    Experiment,
    ExperimentMetrics,
    Variant,
    VariantType,
)
from agent_harness.schemas.persona_schema import (
    ChildData,
    Persona,
    PersonaInventory,
    PersonaTraits,
)
from agent_harness.storage.database import HarnessDatabase

ScriptItem = Union[str, AgentResponse, Exception]

GOAL_BASICS = Goal(
    id="collect-basics",
    type=GoalType.DATA_COLLECTION,
    description="Collect the parent's name and the child's date of birth",
    required_fields=("parent_name", "child_dob"),
)

# Agent replies that walk a caller through GOAL_BASICS
HAPPY_SCRIPT = (
    "Thanks for calling! May I have your name?",
    "And what is your child's date of birth?",
    "Perfect, your appointment is booked for Monday at 9am.",
)

TRANSFER_SCRIPT = ("Let me transfer you to one of our team members.",)

PROMPT_TARGET = "prompts/SystemPrompt.md"


@pytest.fixture
def db(tmp_path):
    return HarnessDatabase(tmp_path / "harness.db")


@pytest.fixture
def content_source(tmp_path):
    root = tmp_path / "content"
    root.mkdir()
    return FileContentSource(root)


def make_persona(
    first_name: str = "Sarah",
    last_name: str = "Johnson",
    children: Optional[Sequence[ChildData]] = None,
    traits: Optional[PersonaTraits] = None,
    **inventory,
) -> Persona:
    """Helper to create a Persona with one child by default."""
    if children is None:
        children = (ChildData(first_name="Emma", last_name=last_name, date_of_birth="2014-03-15"),)
    return Persona(
        name=f"{first_name} {last_name}",
        description="Test caller",
        inventory=PersonaInventory(
            parent_first_name=first_name,
            parent_last_name=last_name,
            parent_phone=inventory.pop("parent_phone", "2155551234"),
            children=tuple(children),
            **inventory,
        ),
        traits=traits or PersonaTraits(),
    )


def make_test_case(
    test_id: str = "TEST-001",
    goals: Sequence[Goal] = (GOAL_BASICS,),
    constraints: Sequence[Constraint] = (),
    max_turns: Optional[int] = 10,
    persona: Optional[Persona] = None,
    initial_message: Optional[str] = "Hi, I'd like to book an appointment for my daughter.",
) -> GoalOrientedTestCase:
    """Helper to create a GoalOrientedTestCase with sensible defaults."""
    return GoalOrientedTestCase(
        id=test_id,
        name=f"Test case {test_id}",
        persona=persona or make_persona(),
        goals=tuple(goals),
        constraints=tuple(constraints),
        response_config=ResponseConfig(max_turns=max_turns, max_duration_sec=60),
        initial_message=initial_message,
    )


def make_intent_result(
    intent: AgentIntent,
    confidence: float = 0.9,
    secondary: Sequence[AgentIntent] = (),
) -> IntentDetectionResult:
    """Helper to create an IntentDetectionResult."""
    return IntentDetectionResult(
        primary_intent=intent,
        confidence=confidence,
        secondary_intents=list(secondary),
    )


def make_progress_config(**overrides) -> ProgressConfig:
    values = {"stuck_threshold_turns": 5, "max_repetition_count": 2, "low_confidence_threshold": 0.5}
    values.update(overrides)
    return ProgressConfig(**values)


def make_runner_config(**overrides) -> RunnerConfig:
    values = {
        "max_turns": 30,
        "max_duration_sec": 60.0,
        "delay_between_turns_ms": 0,
        "save_progress_snapshots": True,
        "abort_on_critical_violation": False,
    }
    values.update(overrides)
    return RunnerConfig(**values)


def make_intent_config(**overrides) -> IntentConfig:
    values = {
        "use_llm": False,
        "cache_enabled": True,
        "cache_ttl_sec": 300.0,
        "cache_max_entries": 100,
    }
    values.update(overrides)
    return IntentConfig(**values)


def make_experiment_config(**overrides) -> ExperimentConfig:
    values = {
        "min_sample_size": 20,
        "max_sample_size": 100,
        "significance_threshold": 0.05,
        "no_difference_extra_samples": 10,
        "min_practical_difference": 0.05,
        "pass_rate_drop_threshold": 0.1,
        "auto_conclude": False,
    }
    values.update(overrides)
    return ExperimentConfig(**values)


def make_keyword_detector() -> IntentDetector:
    return IntentDetector(None, make_intent_config())


class FakeAgentClient:
    """Scripted stand-in for HttpAgentClient.

    Each new session replays the script from the start; once the script
    runs out the last item repeats. Exceptions in the script are raised.
    """

    def __init__(
        self,
        script: Sequence[ScriptItem],
        session_id: str = "fake-session",
        observer: Optional[Callable[[str], None]] = None,
    ) -> None:
        self._script = list(script)
        self._index = 0
        self._observer = observer
        self.session_id = session_id
        self.sessions: list[str] = []
        self.sent: list[str] = []
        self.closed = False

    def new_session(self, prefix: str = "session") -> str:
        self._index = 0
        self.session_id = f"{prefix}-{len(self.sessions)}"
        self.sessions.append(self.session_id)
        return self.session_id

    async def send_message(self, message: str) -> AgentResponse:
        self.sent.append(message)
        if self._observer is not None:
            self._observer(message)
        item = self._script[min(self._index, len(self._script) - 1)]
        self._index += 1
        if isinstance(item, Exception):
            raise item
        if isinstance(item, AgentResponse):
            return item
        return AgentResponse(text=item, response_time_ms=5.0)

    async def aclose(self) -> None:
        self.closed = True


class FakeLLMProvider:
    """Returns canned completions; an empty list means every call fails."""

    def __init__(self, contents: Sequence[str] = (), available: bool = True) -> None:
        self._contents = list(contents)
        self._available = available
        self.requests: list[LLMRequest] = []

    def is_available(self) -> bool:
        return self._available

    async def execute(self, request: LLMRequest) -> LLMResponse:
        self.requests.append(request)
        if not self._contents:
            return LLMResponse(success=False, error="offline", provider="api")
        content = self._contents[min(len(self.requests), len(self._contents)) - 1]
        return LLMResponse(success=True, content=content, provider="api")


def transport_error(message: str = "connection refused", timed_out: bool = False) -> AgentTransportError:
    return AgentTransportError(message, timed_out=timed_out)


def make_metrics(passed: bool, turn_count: int = 4, duration_ms: float = 1200.0) -> ExperimentMetrics:
    return ExperimentMetrics(
        passed=passed,
        goals_completed=1 if passed else 0,
        goals_total=1,
        goal_completion_rate=1.0 if passed else 0.0,
        turn_count=turn_count,
        duration_ms=duration_ms,
    )


def make_prompt_experiment(
    db: HarnessDatabase,
    content_source: FileContentSource,
    config: Optional[ExperimentConfig] = None,
    seed: int = 7,
    **create_kwargs,
) -> tuple[ExperimentService, Experiment, Variant, Variant]:
    """Helper to create a draft control-vs-treatment prompt experiment."""
    variants = VariantService(db, content_source)
    control = variants.create_variant(VariantType.PROMPT, PROMPT_TARGET, "Control", "control prompt")
    control = variants.set_as_baseline(control.variant_id)
    treatment = variants.create_variant(
        VariantType.PROMPT, PROMPT_TARGET, "Treatment", "treatment prompt",
        baseline_variant_id=control.variant_id,
    )
    service = ExperimentService(
        db, variants, config=config or make_experiment_config(), rng=random.Random(seed)
    )
    experiment = service.create_experiment(CreateExperimentInput(
        name="Prompt A/B",
        experiment_type=VariantType.PROMPT,
        control_variant_id=control.variant_id,
        treatment_variant_ids=[treatment.variant_id],
        **create_kwargs,
    ))
    return service, experiment, control, treatment


def record_outcomes(
    service: ExperimentService, experiment_id: str, variant_id: str, passes: int, total: int
) -> None:
    """Record ``total`` runs of one variant, the first ``passes`` of them passing."""
    for i in range(total):
        service.record_run(
            experiment_id, f"RUN-{variant_id}-{i}", f"T-{i:03d}", variant_id,
            make_metrics(i < passes, turn_count=3 + i % 3),
        )
