"""
A/B experiment lifecycle.

Experiments move draft -> running -> (paused <-> running) -> completed or
aborted. Every allowed move is listed in ``TRANSITIONS``; anything else
raises ``InvalidTransitionError`` naming the moves that are allowed.

While running, each test draws a variant by weighted random selection
over the traffic split, runs against it, and records an ExperimentRun.
"""

import logging
import math
import random
import uuid
from datetime import datetime, timezone
from typing import Optional

from agent_harness.config import ExperimentConfig, settings
from agent_harness.errors import (
    ExperimentNotFoundError,
    ExperimentStateError,
    InvalidTransitionError,
    TrafficSplitError,
    VariantNotFoundError,
)
from agent_harness.evaluation.experiment_stats import (
    ConclusionRecommendation,
    ExperimentAnalysis,
    StatisticsService,
)
from agent_harness.evaluation.goal_evaluator import GoalTestResult
from agent_harness.experiments.variant_service import VariantService
from agent_harness.schemas.experiment_schema import (
    CreateExperimentInput,
    Experiment,
    ExperimentMetrics,
    ExperimentRun,
    ExperimentStatus,
    ExperimentVariant,
    VariantRole,
    VariantSelection,
)
from agent_harness.storage.database import HarnessDatabase

logger = logging.getLogger(__name__)

SPLIT_TOLERANCE = 1e-6

TRANSITIONS: dict[ExperimentStatus, set[ExperimentStatus]] = {
    ExperimentStatus.DRAFT: {ExperimentStatus.RUNNING},
    ExperimentStatus.RUNNING: {
        ExperimentStatus.PAUSED, ExperimentStatus.COMPLETED, ExperimentStatus.ABORTED,
    },
    ExperimentStatus.PAUSED: {
        ExperimentStatus.RUNNING, ExperimentStatus.COMPLETED, ExperimentStatus.ABORTED,
    },
    ExperimentStatus.COMPLETED: set(),
    ExperimentStatus.ABORTED: set(),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def validate_traffic_split(split: dict[str, float], variant_ids: list[str]) -> None:
    if set(split) != set(variant_ids):
        raise TrafficSplitError(
            f"Traffic split keys {sorted(split)} do not match variants {sorted(variant_ids)}"
        )
    if any(w < 0 for w in split.values()):
        raise TrafficSplitError(f"Traffic split weights must be non-negative: {split}")
    total = sum(split.values())
    if not math.isclose(total, 1.0, abs_tol=SPLIT_TOLERANCE):
        raise TrafficSplitError(f"Traffic split must sum to 1.0, got {total}")


def metrics_from_result(result: GoalTestResult) -> ExperimentMetrics:
    goals_total = len(result.goal_results)
    goals_completed = result.goals_completed
    return ExperimentMetrics(
        passed=result.passed,
        goals_completed=goals_completed,
        goals_total=goals_total,
        goal_completion_rate=goals_completed / goals_total if goals_total else 0.0,
        turn_count=result.turn_count,
        duration_ms=result.duration_ms,
        avg_turn_duration_ms=result.duration_ms / result.turn_count if result.turn_count else 0.0,
        constraint_violations=len(result.constraint_violations),
        issues_detected=len(result.issues),
        error_occurred=result.error is not None,
        error_message=result.error,
    )


class ExperimentService:
    """Creates experiments, routes tests to variants and decides when to stop."""

    def __init__(
        self,
        database: HarnessDatabase,
        variant_service: VariantService,
        statistics: Optional[StatisticsService] = None,
        config: Optional[ExperimentConfig] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._db = database
        self._variants = variant_service
        self._config = config or settings.experiment
        self._stats = statistics or StatisticsService(database, self._config)
        self._rng = rng or random.Random()

    @property
    def variants(self) -> VariantService:
        return self._variants

    @property
    def auto_conclude(self) -> bool:
        return self._config.auto_conclude

    # --- Creation and lookup ---

    def create_experiment(self, params: CreateExperimentInput) -> Experiment:
        if not params.treatment_variant_ids:
            raise ValueError("An experiment needs at least one treatment variant")
        variant_ids = [params.control_variant_id, *params.treatment_variant_ids]
        if len(set(variant_ids)) != len(variant_ids):
            raise ValueError(f"Duplicate variant IDs in experiment: {variant_ids}")

        target_files = set()
        for variant_id in variant_ids:
            target_files.add(self._variants.get_variant(variant_id).target_file)
        if len(target_files) != 1:
            raise ValueError(
                f"All variants of an experiment must target the same file, got {sorted(target_files)}"
            )

        split = params.traffic_split or {v: 1.0 / len(variant_ids) for v in variant_ids}
        validate_traffic_split(split, variant_ids)

        min_sample = params.min_sample_size or self._config.min_sample_size
        max_sample = params.max_sample_size or self._config.max_sample_size
        if max_sample < min_sample:
            raise ValueError(f"max_sample_size {max_sample} < min_sample_size {min_sample}")

        experiment = Experiment(
            experiment_id=f"EXP-{uuid.uuid4().hex[:12]}",
            name=params.name,
            hypothesis=params.hypothesis,
            experiment_type=params.experiment_type,
            variants=[
                ExperimentVariant(
                    variant_id=v,
                    role=VariantRole.CONTROL if v == params.control_variant_id else VariantRole.TREATMENT,
                    weight=split[v],
                )
                for v in variant_ids
            ],
            test_ids=list(params.test_ids),
            traffic_split=split,
            min_sample_size=min_sample,
            max_sample_size=max_sample,
            significance_threshold=(
                params.significance_threshold or self._config.significance_threshold
            ),
        )
        self._db.save_experiment(experiment)
        logger.info("Created experiment %s '%s'", experiment.experiment_id, experiment.name)
        return experiment

    def get_experiment(self, experiment_id: str) -> Experiment:
        experiment = self._db.get_experiment(experiment_id)
        if experiment is None:
            raise ExperimentNotFoundError(experiment_id)
        return experiment

    def list_experiments(
        self, status: Optional[ExperimentStatus] = None, limit: int = 50
    ) -> list[Experiment]:
        return self._db.list_experiments(status, limit)

    def get_active_experiments(self) -> list[Experiment]:
        return self.list_experiments(ExperimentStatus.RUNNING)

    def get_experiments_for_test(self, test_id: str) -> list[Experiment]:
        """Running experiments that include this test (an empty test list means all)."""
        return [
            e for e in self.get_active_experiments()
            if not e.test_ids or test_id in e.test_ids
        ]

    # --- Lifecycle ---

    def _transition(self, experiment_id: str, target: ExperimentStatus) -> Experiment:
        experiment = self.get_experiment(experiment_id)
        allowed = TRANSITIONS[experiment.status]
        if target not in allowed:
            raise InvalidTransitionError(
                f"Cannot move experiment {experiment_id} from '{experiment.status.value}' "
                f"to '{target.value}'. Allowed: {sorted(s.value for s in allowed) or 'none'}"
            )
        logger.info(
            "Experiment %s: %s -> %s", experiment_id, experiment.status.value, target.value
        )
        experiment.status = target
        return experiment

    def start_experiment(self, experiment_id: str) -> Experiment:
        experiment = self._transition(experiment_id, ExperimentStatus.RUNNING)
        if experiment.started_at is None:
            experiment.started_at = _utcnow()
        self._db.save_experiment(experiment)
        return experiment

    def pause_experiment(self, experiment_id: str) -> Experiment:
        experiment = self._transition(experiment_id, ExperimentStatus.PAUSED)
        self._db.save_experiment(experiment)
        return experiment

    def complete_experiment(
        self,
        experiment_id: str,
        winning_variant_id: Optional[str] = None,
        conclusion: Optional[str] = None,
    ) -> Experiment:
        experiment = self._transition(experiment_id, ExperimentStatus.COMPLETED)
        if winning_variant_id is not None and experiment.role_of(winning_variant_id) is None:
            raise VariantNotFoundError(winning_variant_id, f"not part of {experiment_id}")
        experiment.winning_variant_id = winning_variant_id
        experiment.conclusion = conclusion
        experiment.completed_at = _utcnow()
        self._db.save_experiment(experiment)
        return experiment

    def abort_experiment(self, experiment_id: str, reason: str = "") -> Experiment:
        experiment = self._transition(experiment_id, ExperimentStatus.ABORTED)
        experiment.conclusion = f"Aborted: {reason}" if reason else "Aborted"
        experiment.completed_at = _utcnow()
        self._db.save_experiment(experiment)
        return experiment

    # --- Routing and recording ---

    def select_variant(self, experiment_id: str, test_id: str) -> VariantSelection:
        experiment = self.get_experiment(experiment_id)
        if experiment.status != ExperimentStatus.RUNNING:
            raise ExperimentStateError(
                f"Experiment {experiment_id} is '{experiment.status.value}', not running"
            )
        if experiment.test_ids and test_id not in experiment.test_ids:
            raise ExperimentStateError(f"Test {test_id} is not part of experiment {experiment_id}")

        variant_ids = [v.variant_id for v in experiment.variants]
        weights = [experiment.traffic_split[v] for v in variant_ids]
        chosen = self._rng.choices(variant_ids, weights=weights, k=1)[0]
        variant = self._variants.get_variant(chosen)
        logger.debug("Experiment %s: test %s -> %s", experiment_id, test_id, chosen)
        return VariantSelection(
            experiment_id=experiment_id,
            variant_id=chosen,
            variant_role=experiment.role_of(chosen),
            target_file=variant.target_file,
            content=variant.content,
        )

    def record_run(
        self,
        experiment_id: str,
        run_id: str,
        test_id: str,
        variant_id: str,
        metrics: ExperimentMetrics,
        started_at: Optional[datetime] = None,
    ) -> ExperimentRun:
        experiment = self.get_experiment(experiment_id)
        role = experiment.role_of(variant_id)
        if role is None:
            raise VariantNotFoundError(variant_id, f"not part of {experiment_id}")
        run = ExperimentRun(
            experiment_id=experiment_id,
            run_id=run_id,
            test_id=test_id,
            variant_id=variant_id,
            variant_role=role,
            started_at=started_at or _utcnow(),
            completed_at=_utcnow(),
            metrics=metrics,
        )
        self._db.record_experiment_run(run)
        return run

    def record_test_result(
        self,
        selection: VariantSelection,
        result: GoalTestResult,
        started_at: Optional[datetime] = None,
    ) -> ExperimentRun:
        return self.record_run(
            selection.experiment_id,
            result.run_id,
            result.test_id,
            selection.variant_id,
            metrics_from_result(result),
            started_at,
        )

    def get_run_counts(self, experiment_id: str) -> dict[str, int]:
        experiment = self.get_experiment(experiment_id)
        counts = self._db.count_experiment_runs(experiment_id)
        return {v.variant_id: counts.get(v.variant_id, 0) for v in experiment.variants}

    # --- Analysis and conclusion ---

    def analyze(self, experiment_id: str) -> ExperimentAnalysis:
        return self._stats.analyze_experiment(experiment_id)

    def should_conclude(self, experiment_id: str) -> ConclusionRecommendation:
        return self._stats.should_conclude_experiment(experiment_id)

    def maybe_conclude(self, experiment_id: str) -> Optional[ConclusionRecommendation]:
        """Complete a running experiment if the evidence is in. Returns the decision if so."""
        experiment = self.get_experiment(experiment_id)
        if experiment.status != ExperimentStatus.RUNNING:
            return None
        decision = self.should_conclude(experiment_id)
        if not decision.should_conclude:
            return None
        self.complete_experiment(
            experiment_id,
            winning_variant_id=decision.winner,
            conclusion=f"{decision.reason.value}: {decision.message}",
        )
        return decision

    def adopt_winner(self, experiment_id: str) -> bool:
        """Make the winning variant the baseline of its target file."""
        experiment = self.get_experiment(experiment_id)
        if experiment.status != ExperimentStatus.COMPLETED:
            raise ExperimentStateError(
                f"Experiment {experiment_id} is '{experiment.status.value}', not completed"
            )
        if experiment.winning_variant_id is None:
            logger.info("Experiment %s has no winner to adopt", experiment_id)
            return False
        self._variants.set_as_baseline(experiment.winning_variant_id)
        logger.info(
            "Adopted %s from experiment %s as baseline",
            experiment.winning_variant_id, experiment_id,
        )
        return True

    def get_experiment_summary(self, experiment_id: str) -> dict:
        experiment = self.get_experiment(experiment_id)
        analysis = self.analyze(experiment_id)
        return {
            "experiment_id": experiment_id,
            "name": experiment.name,
            "status": experiment.status.value,
            "run_counts": self.get_run_counts(experiment_id),
            "control_pass_rate": analysis.control.pass_rate,
            "treatment_pass_rate": analysis.treatment.pass_rate,
            "p_value": analysis.pass_rate_test.p_value,
            "recommendation": analysis.recommendation.value,
            "winning_variant_id": experiment.winning_variant_id,
            "conclusion": experiment.conclusion,
        }
