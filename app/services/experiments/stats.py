import enum
import math
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from scipy import stats as scipy_stats

SIGNIFICANCE_THRESHOLD = 0.05
MIN_VISITORS_FOR_SIGNIFICANCE = 100

# Minimum sample size parameters: detect a 20% relative lift at alpha 0.05, power 0.8
DEFAULT_EFFECT_SIZE = 0.2
DEFAULT_BASELINE_RATE = 0.05
Z_ALPHA = 1.96
Z_BETA = 0.84

SECONDS_PER_DAY = 86400


class RecommendedAction(str, enum.Enum):
    CONTINUE = "continue"
    DECLARE_WINNER = "declare_winner"
    STOP_TEST = "stop_test"


@dataclass
class VariantData:
    name: str
    visitors: int
    conversions: int

    @property
    def conversion_rate(self) -> float:
        return calculate_conversion_rate(self.conversions, self.visitors)


@dataclass
class StatisticalAnalysis:
    experiment_id: Optional[str]
    control_rate: float
    variant_rate: float
    improvement_percentage: float
    z_score: float
    p_value: float
    confidence_level: float
    sample_size: int
    is_significant: bool
    min_sample_size: int
    recommended_action: RecommendedAction
    control_visitors: int = 0
    variant_visitors: int = 0
    control_conversions: int = 0
    variant_conversions: int = 0
    confidence_interval_lower: float = 0.0  # Percentage points
    confidence_interval_upper: float = 0.0
    days_to_significance: Optional[int] = None
    rationale: str = ""

    @property
    def statistical_significance(self) -> float:
        return self.p_value

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["recommended_action"] = self.recommended_action.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StatisticalAnalysis":
        data = dict(data)
        data["recommended_action"] = RecommendedAction(data["recommended_action"])
        return cls(**data)


def calculate_conversion_rate(conversions: int, visitors: int) -> float:
    if visitors <= 0:
        return 0.0
    return conversions / visitors


def calculate_improvement(control_rate: float, variant_rate: float) -> float:
    """Relative improvement of variant over control, in percent."""
    if control_rate <= 0:
        return 0.0
    return ((variant_rate - control_rate) / control_rate) * 100


def calculate_pooled_proportion(control: VariantData, variant: VariantData) -> float:
    total_conversions = control.conversions + variant.conversions
    total_visitors = control.visitors + variant.visitors

    if total_visitors == 0:
        return 0.0

    return total_conversions / total_visitors


def normal_cdf(x: float) -> float:
    """
    Standard normal CDF using the Zelen & Severo (1964) polynomial.

    Absolute error is below 1e-7, which is plenty for a p-value that is only
    compared against 0.05.
    """
    t = 1 / (1 + 0.2316419 * abs(x))
    d = 0.3989423 * math.exp(-x * x / 2)
    prob = d * t * (0.3193815 + t * (-0.3565638 + t * (1.781478 + t * (-1.821256 + t * 1.330274))))

    return 1 - prob if x > 0 else prob


def run_proportion_z_test(control: VariantData, variant: VariantData) -> Tuple[float, float]:
    """Two-proportion z-test. Returns (z_score, two-tailed p-value)."""
    if control.visitors == 0 or variant.visitors == 0:
        return 0.0, 1.0

    p1 = control.conversion_rate
    p2 = variant.conversion_rate

    p_pooled = calculate_pooled_proportion(control, variant)
    se = math.sqrt(p_pooled * (1 - p_pooled) * (1 / control.visitors + 1 / variant.visitors))

    z_score = (p2 - p1) / se if se > 0 else 0.0

    # The polynomial gives CDF(0) slightly below 0.5, so p can exceed 1 by ~3e-7
    p_value = min(1.0, 2 * (1 - normal_cdf(abs(z_score))))

    return z_score, p_value


def calculate_confidence_interval(
    control: VariantData, variant: VariantData, confidence_level: float = 0.95
) -> Tuple[float, float]:
    """Confidence interval of the rate difference, in percentage points."""
    if control.visitors == 0 or variant.visitors == 0:
        return 0.0, 0.0

    p1 = control.conversion_rate
    p2 = variant.conversion_rate
    diff = p2 - p1

    # Unpooled SE for confidence intervals
    se = math.sqrt((p1 * (1 - p1) / control.visitors) + (p2 * (1 - p2) / variant.visitors))

    alpha = 1 - confidence_level
    z_critical = scipy_stats.norm.ppf(1 - alpha / 2)

    margin_of_error = z_critical * se

    return float((diff - margin_of_error) * 100), float((diff + margin_of_error) * 100)


def calculate_minimum_sample_size(
    baseline_rate: float, effect_size: float = DEFAULT_EFFECT_SIZE
) -> int:
    """
    Approximate per-arm visitors needed to detect a relative lift of
    ``effect_size`` over ``baseline_rate`` at alpha 0.05 and power 0.8.
    """
    if baseline_rate <= 0:
        baseline_rate = DEFAULT_BASELINE_RATE

    p1 = baseline_rate
    p2 = baseline_rate * (1 + effect_size)

    p_pooled = (p1 + p2) / 2
    effect = abs(p2 - p1)

    if effect == 0:
        return 0

    numerator = (Z_ALPHA + Z_BETA) ** 2 * 2 * p_pooled * (1 - p_pooled)
    denominator = effect**2

    return max(math.ceil(numerator / denominator), 0)


def recommend_action(
    is_significant: bool, sample_size: int, min_sample_size: int
) -> RecommendedAction:
    if is_significant and sample_size >= min_sample_size:
        return RecommendedAction.DECLARE_WINNER

    # Futility: twice the required traffic and still nothing
    if sample_size >= 2 * min_sample_size and not is_significant:
        return RecommendedAction.STOP_TEST

    return RecommendedAction.CONTINUE


def estimate_days_to_significance(
    start_date: Optional[datetime],
    sample_size: int,
    min_sample_size: int,
    now: Optional[datetime] = None,
) -> Optional[int]:
    if start_date is None:
        return None

    now = now or datetime.now(timezone.utc)
    if start_date.tzinfo is None:
        start_date = start_date.replace(tzinfo=timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    days_running = math.ceil((now - start_date).total_seconds() / SECONDS_PER_DAY)
    visitors_per_day = sample_size / days_running if days_running > 0 else 0

    if visitors_per_day <= 0:
        return None

    estimate = math.ceil((min_sample_size - sample_size) / visitors_per_day)
    return estimate if estimate > 0 else None


def build_rationale(analysis: StatisticalAnalysis) -> str:
    if analysis.recommended_action == RecommendedAction.DECLARE_WINNER:
        winner = "variant" if analysis.variant_rate > analysis.control_rate else "control"
        return (
            f"Statistically significant difference (p={analysis.p_value:.4f}) with "
            f"{analysis.sample_size} visitors against a required {analysis.min_sample_size}. "
            f"Declaring {winner} the winner ({analysis.improvement_percentage:+.1f}% improvement)."
        )

    if analysis.recommended_action == RecommendedAction.STOP_TEST:
        return (
            f"No significant difference (p={analysis.p_value:.4f}) after {analysis.sample_size} "
            f"visitors, at least twice the required {analysis.min_sample_size}. "
            f"Further traffic is unlikely to produce a result; stop the test."
        )

    if analysis.is_significant:
        return (
            f"Significant so far (p={analysis.p_value:.4f}) but only {analysis.sample_size} of "
            f"{analysis.min_sample_size} required visitors. Keep collecting data."
        )

    return (
        f"Not yet significant (p={analysis.p_value:.4f}) with {analysis.sample_size} of "
        f"{analysis.min_sample_size} required visitors. Keep collecting data."
    )


def analyze_experiment(
    control: VariantData,
    variant: VariantData,
    start_date: Optional[datetime] = None,
    experiment_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> StatisticalAnalysis:
    control_rate = control.conversion_rate
    variant_rate = variant.conversion_rate

    improvement = calculate_improvement(control_rate, variant_rate)

    z_score, p_value = run_proportion_z_test(control, variant)
    confidence_level = (1 - p_value) * 100

    sample_size = max(control.visitors, variant.visitors)

    # Both gates are required: a tiny p-value on a handful of visitors is noise
    is_significant = (
        p_value < SIGNIFICANCE_THRESHOLD and sample_size >= MIN_VISITORS_FOR_SIGNIFICANCE
    )

    min_sample_size = calculate_minimum_sample_size(control_rate)
    action = recommend_action(is_significant, sample_size, min_sample_size)

    ci_lower, ci_upper = calculate_confidence_interval(control, variant)

    analysis = StatisticalAnalysis(
        experiment_id=experiment_id,
        control_rate=control_rate,
        variant_rate=variant_rate,
        improvement_percentage=improvement,
        z_score=z_score,
        p_value=p_value,
        confidence_level=confidence_level,
        sample_size=sample_size,
        is_significant=is_significant,
        min_sample_size=min_sample_size,
        recommended_action=action,
        control_visitors=control.visitors,
        variant_visitors=variant.visitors,
        control_conversions=control.conversions,
        variant_conversions=variant.conversions,
        confidence_interval_lower=ci_lower,
        confidence_interval_upper=ci_upper,
        days_to_significance=estimate_days_to_significance(
            start_date, sample_size, min_sample_size, now
        ),
    )
    analysis.rationale = build_rationale(analysis)

    return analysis
