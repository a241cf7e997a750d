"""
Statistical analysis of A/B experiment runs.

Pass rates are compared with a 2x2 chi-square test (Yates-corrected when
any expected cell count is below 5) and Cohen's h. Continuous metrics
(turn counts, durations) use Welch's t-test and Cohen's d. Degenerate
inputs (empty arms, zero variance) produce neutral results instead of
raising, so analysis can run at any point of an experiment.
"""

import logging
import math
import statistics
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Sequence

from scipy import stats

from agent_harness.config import ExperimentConfig, settings
from agent_harness.errors import ExperimentNotFoundError
from agent_harness.schemas.experiment_schema import Experiment, ExperimentRun
from agent_harness.storage.database import HarnessDatabase

logger = logging.getLogger(__name__)

# Cohen's conventional effect-size thresholds
SMALL_EFFECT = 0.2
MEDIUM_EFFECT = 0.5
LARGE_EFFECT = 0.8

MIN_EXPECTED_CELL_COUNT = 5
Z_INTERVAL_MIN_SAMPLES = 30


class EffectMagnitude(str, Enum):
    NEGLIGIBLE = "negligible"
    SMALL = "small"
    MEDIUM = "medium"
    LARGE = "large"


class Recommendation(str, Enum):
    CONTINUE = "continue"
    ADOPT_TREATMENT = "adopt-treatment"
    KEEP_CONTROL = "keep-control"
    NO_DIFFERENCE = "no-difference"


class ConclusionReason(str, Enum):
    MAX_SAMPLE_REACHED = "max-sample-reached"
    SIGNIFICANCE_ACHIEVED = "significance-achieved"
    NO_DIFFERENCE = "no-difference"
    CONTINUE = "continue"


@dataclass
class VariantStats:
    variant_id: str
    sample_size: int = 0
    pass_count: int = 0
    fail_count: int = 0
    pass_rate: float = 0.0
    mean_turns: float = 0.0
    median_turns: float = 0.0
    std_turns: float = 0.0
    mean_duration_ms: float = 0.0
    median_duration_ms: float = 0.0
    std_duration_ms: float = 0.0
    error_rate: float = 0.0
    avg_goal_completion: float = 0.0
    pass_rate_ci: tuple[float, float] = (0.0, 0.0)
    turn_count_ci: tuple[float, float] = (0.0, 0.0)
    turn_counts: list[float] = field(default_factory=list, repr=False)
    durations_ms: list[float] = field(default_factory=list, repr=False)


@dataclass
class ChiSquareResult:
    chi_square: float
    p_value: float
    degrees_of_freedom: int
    significant: bool
    yates_corrected: bool = False


@dataclass
class TTestResult:
    t_statistic: float
    p_value: float
    degrees_of_freedom: float
    significant: bool
    mean_difference: float
    effect_size: float
    effect_magnitude: EffectMagnitude


@dataclass
class ExperimentAnalysis:
    experiment_id: str
    control: VariantStats
    treatment: VariantStats
    pass_rate_test: ChiSquareResult
    turn_count_test: TTestResult
    duration_test: TTestResult
    pass_rate_effect_size: float
    min_sample_reached: bool
    recommendation: Recommendation
    recommended_winner: Optional[str]
    confidence: float
    summary: str


@dataclass
class ConclusionRecommendation:
    should_conclude: bool
    reason: ConclusionReason
    winner: Optional[str]
    message: str
    analysis: Optional[ExperimentAnalysis] = None


def effect_magnitude(effect: float) -> EffectMagnitude:
    size = abs(effect)
    if size < SMALL_EFFECT:
        return EffectMagnitude.NEGLIGIBLE
    if size < MEDIUM_EFFECT:
        return EffectMagnitude.SMALL
    if size < LARGE_EFFECT:
        return EffectMagnitude.MEDIUM
    return EffectMagnitude.LARGE


def _z_critical(confidence: float) -> float:
    return float(stats.norm.ppf(1 - (1 - confidence) / 2))


def chi_square_test(
    control_passes: int,
    control_total: int,
    treatment_passes: int,
    treatment_total: int,
    alpha: float = 0.05,
) -> ChiSquareResult:
    """Chi-square test of independence on the 2x2 pass/fail table."""
    if control_total <= 0 or treatment_total <= 0:
        return ChiSquareResult(0.0, 1.0, 1, False)

    a, b = control_passes, control_total - control_passes
    c, d = treatment_passes, treatment_total - treatment_passes
    n = control_total + treatment_total
    row_totals = (a + b, c + d)
    col_totals = (a + c, b + d)
    if 0 in col_totals:
        # Every run passed, or every run failed: no evidence of a difference.
        return ChiSquareResult(0.0, 1.0, 1, False)

    expected = [r * col / n for r in row_totals for col in col_totals]
    yates = min(expected) < MIN_EXPECTED_CELL_COUNT
    diff = abs(a * d - b * c)
    if yates:
        diff = max(0.0, diff - n / 2)
    chi2 = n * diff ** 2 / (row_totals[0] * row_totals[1] * col_totals[0] * col_totals[1])
    p_value = float(stats.chi2.sf(chi2, 1))
    return ChiSquareResult(chi2, p_value, 1, p_value < alpha, yates)


def welch_t_test(
    control: Sequence[float],
    treatment: Sequence[float],
    alpha: float = 0.05,
) -> TTestResult:
    """Welch's unequal-variance t-test of treatment minus control."""
    n1, n2 = len(control), len(treatment)
    if n1 < 2 or n2 < 2:
        mean_diff = (
            statistics.fmean(treatment) - statistics.fmean(control) if n1 and n2 else 0.0
        )
        return TTestResult(0.0, 1.0, 0.0, False, mean_diff, 0.0, EffectMagnitude.NEGLIGIBLE)

    m1, m2 = statistics.fmean(control), statistics.fmean(treatment)
    v1, v2 = statistics.variance(control), statistics.variance(treatment)
    mean_diff = m2 - m1
    se_sq = v1 / n1 + v2 / n2

    pooled_var = ((n1 - 1) * v1 + (n2 - 1) * v2) / (n1 + n2 - 2)
    d = mean_diff / math.sqrt(pooled_var) if pooled_var > 0 else 0.0

    if se_sq == 0:
        # Both arms constant: either identical or trivially different.
        if mean_diff == 0:
            return TTestResult(0.0, 1.0, float(n1 + n2 - 2), False, 0.0, 0.0,
                               EffectMagnitude.NEGLIGIBLE)
        return TTestResult(math.copysign(math.inf, mean_diff), 0.0, float(n1 + n2 - 2),
                           True, mean_diff, d, effect_magnitude(d))

    t_stat = mean_diff / math.sqrt(se_sq)
    df = se_sq ** 2 / ((v1 / n1) ** 2 / (n1 - 1) + (v2 / n2) ** 2 / (n2 - 1))
    p_value = float(2 * stats.t.sf(abs(t_stat), df))
    return TTestResult(t_stat, p_value, df, p_value < alpha, mean_diff, d, effect_magnitude(d))


def confidence_interval(values: Sequence[float], confidence: float = 0.95) -> tuple[float, float]:
    """Interval for the mean: t-based for small samples, normal otherwise."""
    n = len(values)
    if n == 0:
        return (0.0, 0.0)
    mean = statistics.fmean(values)
    if n == 1:
        return (mean, mean)
    stderr = statistics.stdev(values) / math.sqrt(n)
    if n < Z_INTERVAL_MIN_SAMPLES:
        critical = float(stats.t.ppf(1 - (1 - confidence) / 2, n - 1))
    else:
        critical = _z_critical(confidence)
    return (mean - critical * stderr, mean + critical * stderr)


def proportion_ci(successes: int, total: int, confidence: float = 0.95) -> tuple[float, float]:
    """Wilson score interval for a pass rate."""
    if total <= 0:
        return (0.0, 0.0)
    z = _z_critical(confidence)
    p_hat = successes / total
    denom = 1 + z ** 2 / total
    center = (p_hat + z ** 2 / (2 * total)) / denom
    half_width = z * math.sqrt(p_hat * (1 - p_hat) / total + z ** 2 / (4 * total ** 2)) / denom
    return (max(0.0, center - half_width), min(1.0, center + half_width))


def required_sample_size(
    baseline_rate: float,
    min_detectable_effect: float,
    alpha: float = 0.05,
    power: float = 0.8,
) -> int:
    """Runs needed per arm to detect an absolute pass-rate change (two-sided)."""
    if not 0.0 < baseline_rate < 1.0:
        raise ValueError(f"baseline_rate must be between 0 and 1, got {baseline_rate}")
    if min_detectable_effect <= 0:
        raise ValueError(f"min_detectable_effect must be > 0, got {min_detectable_effect}")

    p1 = baseline_rate
    p2 = p1 + min_detectable_effect
    if p2 >= 1.0:
        p2 = p1 - min_detectable_effect
    if not 0.0 < p2 < 1.0:
        raise ValueError(
            f"min_detectable_effect {min_detectable_effect} is too large for baseline {baseline_rate}"
        )
    p_bar = (p1 + p2) / 2
    z_alpha = float(stats.norm.ppf(1 - alpha / 2))
    z_beta = float(stats.norm.ppf(power))
    numerator = (
        z_alpha * math.sqrt(2 * p_bar * (1 - p_bar))
        + z_beta * math.sqrt(p1 * (1 - p1) + p2 * (1 - p2))
    ) ** 2
    return math.ceil(numerator / (p2 - p1) ** 2)


def cohens_h(p1: float, p2: float) -> float:
    """Effect size between two proportions (p2 relative to p1)."""
    return 2 * math.asin(math.sqrt(p2)) - 2 * math.asin(math.sqrt(p1))


def compute_variant_stats(variant_id: str, runs: Sequence[ExperimentRun]) -> VariantStats:
    n = len(runs)
    if n == 0:
        return VariantStats(variant_id=variant_id)

    passes = sum(1 for r in runs if r.metrics.passed)
    turns = [float(r.metrics.turn_count) for r in runs]
    durations = [r.metrics.duration_ms for r in runs]
    errors = sum(1 for r in runs if r.metrics.error_occurred)
    return VariantStats(
        variant_id=variant_id,
        sample_size=n,
        pass_count=passes,
        fail_count=n - passes,
        pass_rate=passes / n,
        mean_turns=statistics.fmean(turns),
        median_turns=statistics.median(turns),
        std_turns=statistics.stdev(turns) if n > 1 else 0.0,
        mean_duration_ms=statistics.fmean(durations),
        median_duration_ms=statistics.median(durations),
        std_duration_ms=statistics.stdev(durations) if n > 1 else 0.0,
        error_rate=errors / n,
        avg_goal_completion=statistics.fmean(r.metrics.goal_completion_rate for r in runs),
        pass_rate_ci=proportion_ci(passes, n),
        turn_count_ci=confidence_interval(turns),
        turn_counts=turns,
        durations_ms=durations,
    )


class StatisticsService:
    """Runs the statistical tests for stored experiments."""

    def __init__(self, database: HarnessDatabase, config: Optional[ExperimentConfig] = None):
        self._db = database
        self._config = config or settings.experiment

    def _load_experiment(self, experiment_id: str) -> Experiment:
        experiment = self._db.get_experiment(experiment_id)
        if experiment is None:
            raise ExperimentNotFoundError(experiment_id)
        return experiment

    def calculate_variant_stats(self, experiment_id: str, variant_id: str) -> VariantStats:
        runs = self._db.get_experiment_runs(experiment_id, variant_id)
        return compute_variant_stats(variant_id, runs)

    def analyze_experiment(self, experiment_id: str) -> ExperimentAnalysis:
        """Compare the control arm with the primary (first) treatment arm."""
        experiment = self._load_experiment(experiment_id)
        alpha = experiment.significance_threshold
        control = self.calculate_variant_stats(experiment_id, experiment.control_variant_id)
        treatment = self.calculate_variant_stats(
            experiment_id, experiment.treatment_variant_ids[0]
        )

        pass_test = chi_square_test(
            control.pass_count, control.sample_size,
            treatment.pass_count, treatment.sample_size,
            alpha,
        )
        turn_test = welch_t_test(control.turn_counts, treatment.turn_counts, alpha)
        duration_test = welch_t_test(control.durations_ms, treatment.durations_ms, alpha)
        h = cohens_h(control.pass_rate, treatment.pass_rate)

        smallest_arm = min(control.sample_size, treatment.sample_size)
        min_reached = smallest_arm >= experiment.min_sample_size
        rate_diff = treatment.pass_rate - control.pass_rate
        no_difference_ready = (
            smallest_arm >= experiment.min_sample_size + self._config.no_difference_extra_samples
        )

        winner: Optional[str] = None
        if not min_reached:
            recommendation = Recommendation.CONTINUE
        elif pass_test.significant:
            if rate_diff > 0:
                recommendation = Recommendation.ADOPT_TREATMENT
                winner = treatment.variant_id
            else:
                recommendation = Recommendation.KEEP_CONTROL
                winner = control.variant_id
        elif no_difference_ready and abs(rate_diff) < self._config.min_practical_difference:
            recommendation = Recommendation.NO_DIFFERENCE
        else:
            recommendation = Recommendation.CONTINUE

        summary = (
            f"Control {control.pass_rate:.1%} (n={control.sample_size}) vs "
            f"treatment {treatment.pass_rate:.1%} (n={treatment.sample_size}); "
            f"chi2={pass_test.chi_square:.3f}, p={pass_test.p_value:.4f}, h={h:.2f} "
            f"({effect_magnitude(h).value}); recommendation: {recommendation.value}"
        )
        logger.info("Experiment %s analysis: %s", experiment_id, summary)
        return ExperimentAnalysis(
            experiment_id=experiment_id,
            control=control,
            treatment=treatment,
            pass_rate_test=pass_test,
            turn_count_test=turn_test,
            duration_test=duration_test,
            pass_rate_effect_size=h,
            min_sample_reached=min_reached,
            recommendation=recommendation,
            recommended_winner=winner,
            confidence=1.0 - pass_test.p_value,
            summary=summary,
        )

    def should_conclude_experiment(self, experiment_id: str) -> ConclusionRecommendation:
        experiment = self._load_experiment(experiment_id)
        analysis = self.analyze_experiment(experiment_id)
        largest_arm = max(analysis.control.sample_size, analysis.treatment.sample_size)

        if largest_arm >= experiment.max_sample_size:
            return ConclusionRecommendation(
                True, ConclusionReason.MAX_SAMPLE_REACHED, analysis.recommended_winner,
                f"Maximum sample size {experiment.max_sample_size} reached", analysis,
            )
        if analysis.recommendation in (Recommendation.ADOPT_TREATMENT, Recommendation.KEEP_CONTROL):
            return ConclusionRecommendation(
                True, ConclusionReason.SIGNIFICANCE_ACHIEVED, analysis.recommended_winner,
                f"Pass-rate difference significant (p={analysis.pass_rate_test.p_value:.4f})",
                analysis,
            )
        if analysis.recommendation == Recommendation.NO_DIFFERENCE:
            return ConclusionRecommendation(
                True, ConclusionReason.NO_DIFFERENCE, None,
                "No practical pass-rate difference after additional samples", analysis,
            )
        return ConclusionRecommendation(
            False, ConclusionReason.CONTINUE, None, "Collecting more samples", analysis,
        )
