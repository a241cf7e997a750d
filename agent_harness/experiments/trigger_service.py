"""
Decides which proposed fixes deserve a formal A/B experiment.

Rules are checked in order and the first match wins:

    high     core prompt section or critical tool function touched
    medium   configuration parameter changed
    medium   non-core prompt change with confidence >= 0.7
    low      cosmetic wording change with confidence >= 0.8
    minimal  single affected test with confidence < 0.6
    medium   two or more affected tests with confidence >= 0.5
    minimal  everything else (no experiment)

The service also watches recent test runs for pass-rate regressions.
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from agent_harness.config import ExperimentConfig, settings
from agent_harness.schemas.experiment_schema import CreateExperimentInput, VariantType
from agent_harness.schemas.fix_schema import FixType, GeneratedFix
from agent_harness.storage.database import HarnessDatabase

logger = logging.getLogger(__name__)

CORE_PROMPT_SECTIONS = (
    "conversation_flow",
    "conversation flow",
    "tool_usage",
    "tool usage",
    "response_format",
    "response format",
    "transfer_guidelines",
    "transfer",
    "core_objectives",
    "core objectives",
    "greeting",
    "booking",
    "scheduling",
    "patient_identification",
    "patient identification",
    "error_handling",
    "error handling",
)

CRITICAL_TOOL_FUNCTIONS = (
    "executeRequest",
    "book_child",
    "bookAppointment",
    "create",
    "createPatient",
    "slots",
    "grouped_slots",
    "getAvailableSlots",
    "search",
    "lookup",
    "lookupPatient",
)

FLOW_MAPPINGS: dict[str, tuple[str, ...]] = {
    "booking": ("booking", "scheduling", "appointment", "slots", "book_child"),
    "data-collection": ("patient", "information", "caller", "identification", "name", "phone"),
    "transfer": ("transfer", "live_agent", "handoff", "escalation"),
    "insurance": ("insurance", "verification", "coverage", "policy"),
    "greeting": ("greeting", "welcome", "introduction", "opening"),
    "confirmation": ("confirmation", "summary", "recap", "details"),
}

CONFIG_INDICATORS = (
    "temperature", "model", "max_tokens", "timeout", "retry", "config", "parameter",
)

COSMETIC_INDICATORS = (
    "clarify", "wording", "typo", "formatting", "capitalization",
    "punctuation", "grammar", "spelling", "rephrase", "reword",
)

# Test suites to suggest when a fix names no affected tests
DEFAULT_TESTS_BY_FLOW: dict[str, tuple[str, ...]] = {
    "booking": ("GOAL-HAPPY-001", "GOAL-HAPPY-002"),
    "data-collection": ("GOAL-HAPPY-001", "GOAL-EDGE-001"),
    "transfer": ("GOAL-ERR-001",),
    "greeting": ("GOAL-HAPPY-001",),
}
FALLBACK_TEST_ID = "GOAL-HAPPY-001"

NON_CORE_PROMPT_CONFIDENCE = 0.7
COSMETIC_CONFIDENCE = 0.8
SINGLE_TEST_MIN_CONFIDENCE = 0.6
MULTI_TEST_MIN_CONFIDENCE = 0.5
MULTI_TEST_COUNT = 2
HIGH_DROP = 0.2
RECENT_RUN_WINDOW = 10

_NON_ALNUM_RE = re.compile(r"[^a-zA-Z0-9 ]")


class ImpactLevel(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    MINIMAL = "minimal"


IMPACT_ORDER = {
    ImpactLevel.HIGH: 0,
    ImpactLevel.MEDIUM: 1,
    ImpactLevel.LOW: 2,
    ImpactLevel.MINIMAL: 3,
}

SAMPLE_SIZE_BY_IMPACT = {
    ImpactLevel.HIGH: 20,
    ImpactLevel.MEDIUM: 15,
    ImpactLevel.LOW: 10,
    ImpactLevel.MINIMAL: 10,
}


@dataclass
class ImpactAssessment:
    should_test: bool
    impact_level: ImpactLevel
    reason: str
    affected_tests: list[str] = field(default_factory=list)
    affected_flows: list[str] = field(default_factory=list)
    suggested_min_sample_size: int = 10


@dataclass
class SuggestedExperiment:
    name: str
    hypothesis: str
    test_ids: list[str]
    min_sample_size: int


@dataclass
class ABRecommendation:
    fix: GeneratedFix
    impact_level: ImpactLevel
    reason: str
    suggested_experiment: SuggestedExperiment


@dataclass
class PassRateAlert:
    run_id: str
    previous_rate: float
    current_rate: float
    drop_percentage: float
    severity: str


def is_prompt_file(target_file: str) -> bool:
    return target_file.endswith(".md") or "Prompt" in target_file


def flows_for(text: str) -> list[str]:
    lowered = text.lower()
    return [
        flow for flow, keywords in FLOW_MAPPINGS.items()
        if any(k in lowered for k in keywords)
    ]


class TriggerService:
    """Rule-based impact assessment for generated fixes."""

    def __init__(
        self,
        database: Optional[HarnessDatabase] = None,
        config: Optional[ExperimentConfig] = None,
    ) -> None:
        self._db = database
        self._config = config or settings.experiment

    def assess_fix_impact(self, fix: GeneratedFix) -> ImpactAssessment:
        affected = list(fix.affected_tests)

        def verdict(level: ImpactLevel, reason: str, flows: Optional[list[str]] = None) -> ImpactAssessment:
            return ImpactAssessment(
                should_test=level != ImpactLevel.MINIMAL,
                impact_level=level,
                reason=reason,
                affected_tests=affected,
                affected_flows=flows or [],
                suggested_min_sample_size=SAMPLE_SIZE_BY_IMPACT[level],
            )

        if is_prompt_file(fix.target_file):
            section = self._core_prompt_section(fix)
            if section:
                return verdict(
                    ImpactLevel.HIGH,
                    f"Core system prompt section modified: {section}",
                    flows_for(section),
                )

        if fix.type == FixType.TOOL:
            function = self._critical_tool_function(fix)
            if function:
                return verdict(
                    ImpactLevel.HIGH,
                    f"Critical function modified: {function}",
                    flows_for(function) or ["booking"],
                )

        if fix.type == FixType.CONFIG or (fix.type == FixType.TOOL and self._is_config_change(fix)):
            return verdict(ImpactLevel.MEDIUM, "Configuration parameter changed")

        if is_prompt_file(fix.target_file) and fix.confidence >= NON_CORE_PROMPT_CONFIDENCE:
            return verdict(ImpactLevel.MEDIUM, "Prompt modification with high confidence")

        if self._is_cosmetic_change(fix):
            if fix.confidence >= COSMETIC_CONFIDENCE:
                return verdict(
                    ImpactLevel.LOW, "Minor wording/clarification change with high confidence"
                )
            return verdict(
                ImpactLevel.MINIMAL, "Low confidence cosmetic change - skip A/B testing"
            )

        if len(affected) < MULTI_TEST_COUNT and fix.confidence < SINGLE_TEST_MIN_CONFIDENCE:
            return verdict(
                ImpactLevel.MINIMAL, "Low confidence fix affecting single test - skip A/B testing"
            )

        if len(affected) >= MULTI_TEST_COUNT and fix.confidence >= MULTI_TEST_MIN_CONFIDENCE:
            return verdict(ImpactLevel.MEDIUM, "Moderate confidence fix affecting multiple tests")

        return verdict(ImpactLevel.MINIMAL, "Low impact change - skip A/B testing")

    def generate_recommendation(self, fix: GeneratedFix) -> Optional[ABRecommendation]:
        impact = self.assess_fix_impact(fix)
        if not impact.should_test:
            logger.debug("Fix %s skipped: %s", fix.fix_id, impact.reason)
            return None
        return ABRecommendation(
            fix=fix,
            impact_level=impact.impact_level,
            reason=impact.reason,
            suggested_experiment=SuggestedExperiment(
                name=self.experiment_name(fix),
                hypothesis=self.hypothesis(fix, impact.affected_flows),
                test_ids=impact.affected_tests or self.default_test_ids(fix),
                min_sample_size=impact.suggested_min_sample_size,
            ),
        )

    def generate_recommendations(self, fixes: list[GeneratedFix]) -> list[ABRecommendation]:
        """Recommendations for the fixes worth testing, highest impact first."""
        recommendations = [r for r in map(self.generate_recommendation, fixes) if r]
        return sorted(recommendations, key=lambda r: IMPACT_ORDER[r.impact_level])

    def draft_experiment_input(
        self,
        recommendation: ABRecommendation,
        control_variant_id: str,
        treatment_variant_id: str,
    ) -> CreateExperimentInput:
        suggested = recommendation.suggested_experiment
        return CreateExperimentInput(
            name=suggested.name,
            hypothesis=suggested.hypothesis,
            experiment_type=VariantType(recommendation.fix.type.value),
            control_variant_id=control_variant_id,
            treatment_variant_ids=[treatment_variant_id],
            test_ids=list(suggested.test_ids),
            min_sample_size=suggested.min_sample_size,
            max_sample_size=max(suggested.min_sample_size, self._config.max_sample_size),
        )

    def check_pass_rate_drop(self, threshold: Optional[float] = None) -> list[PassRateAlert]:
        """Compare the latest run's pass rate with the average of the runs before it."""
        if self._db is None:
            raise RuntimeError("check_pass_rate_drop needs a database")
        if threshold is None:
            threshold = self._config.pass_rate_drop_threshold

        runs = self._db.get_recent_runs(RECENT_RUN_WINDOW)
        if len(runs) < 2:
            return []
        latest, previous = runs[0], runs[1:]
        previous_rates = [r["pass_rate"] for r in previous if r["total_tests"] > 0]
        if not previous_rates:
            return []

        avg_previous = sum(previous_rates) / len(previous_rates)
        current = latest["pass_rate"] if latest["total_tests"] > 0 else 0.0
        drop = avg_previous - current
        if drop < threshold:
            return []

        alert = PassRateAlert(
            run_id=latest["run_id"],
            previous_rate=avg_previous,
            current_rate=current,
            drop_percentage=drop * 100,
            severity="high" if drop >= HIGH_DROP else "medium",
        )
        logger.warning(
            "Pass rate dropped %.1f%% in run %s (%.1f%% -> %.1f%%)",
            alert.drop_percentage, alert.run_id, avg_previous * 100, current * 100,
        )
        return [alert]

    # --- Rule helpers ---

    @staticmethod
    def _core_prompt_section(fix: GeneratedFix) -> Optional[str]:
        section = ((fix.location.section if fix.location else None) or "").lower()
        description = fix.change_description.lower()
        code = fix.change_code.lower()
        for core in CORE_PROMPT_SECTIONS:
            if core in section or core in description or core in code:
                return core
        return None

    @staticmethod
    def _critical_tool_function(fix: GeneratedFix) -> Optional[str]:
        function = (fix.location.function_name if fix.location else None) or ""
        description = fix.change_description.lower()
        for critical in CRITICAL_TOOL_FUNCTIONS:
            if function == critical or critical.lower() in description:
                return critical
        return None

    @staticmethod
    def _is_config_change(fix: GeneratedFix) -> bool:
        text = f"{fix.change_description} {fix.change_code}".lower()
        return any(i in text for i in CONFIG_INDICATORS)

    @staticmethod
    def _is_cosmetic_change(fix: GeneratedFix) -> bool:
        description = fix.change_description.lower()
        return any(i in description for i in COSMETIC_INDICATORS)

    @staticmethod
    def default_test_ids(fix: GeneratedFix) -> list[str]:
        source = (fix.location.section if fix.location else None) or fix.change_description
        test_ids: list[str] = []
        for flow in flows_for(source):
            for test_id in DEFAULT_TESTS_BY_FLOW.get(flow, ()):
                if test_id not in test_ids:
                    test_ids.append(test_id)
        return test_ids or [FALLBACK_TEST_ID]

    @staticmethod
    def experiment_name(fix: GeneratedFix) -> str:
        short = _NON_ALNUM_RE.sub("", fix.change_description[:30])
        return f"{fix.type.value.capitalize()} Fix: {short}"

    @staticmethod
    def hypothesis(fix: GeneratedFix, flows: list[str]) -> str:
        action = "updating the prompt" if fix.type == FixType.PROMPT else "modifying the tool logic"
        target = f"{', '.join(flows)} related tests" if flows else "affected tests"
        return f"By {action}, we expect to improve pass rate for {target}."
