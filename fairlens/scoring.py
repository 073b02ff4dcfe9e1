"""
Deterministic scoring engine.
Maps a customer profile and a product rule-set to an eligibility verdict,
a weighted suitability score and a decision. No I/O and no failure modes.
"""

import enum
import operator
from typing import Callable, Iterable, List, NamedTuple, Optional

from fairlens.models import (
    CustomerProfile,
    Decision,
    EvaluationResult,
    Product,
)


class ValuePurpose(enum.Enum):
    CONSTRAINT = "constraint"
    SCORE = "score"


class Metric(NamedTuple):
    """A weighted metric: which profile field feeds it and its ramp anchors."""
    weight_field: str
    profile_field: str
    good: float
    bad: float
    higher_is_better: bool


class Constraint(NamedTuple):
    """A hard constraint: the limit on the product and the profile field it checks."""
    limit_field: str
    profile_field: str
    violated: Callable[[float, float], bool]
    reason: str


METRICS = (
    Metric("debt_to_income", "debt_to_income_ratio", 0.30, 0.60, False),
    Metric("dscr", "dscr", 1.5, 1.0, True),
    Metric("credit_utilization", "total_credit_card_utilization", 0.30, 0.90, False),
    Metric("bounced_cheques", "bounced_cheques_last_12_months", 0, 3, False),
    Metric("late_payments", "late_payment_incidents_last_12_months", 0, 3, False),
    # Income and revenue levels stand in for stability
    Metric("income_stability", "monthly_income", 10000, 2000, True),
    Metric("revenue_stability", "average_monthly_revenue", 50000, 5000, True),
)

CONSTRAINTS = (
    Constraint("min_age", "age", operator.lt, "Under minimum age ({limit})"),
    Constraint("max_age", "age", operator.gt, "Over maximum age ({limit})"),
    Constraint("min_monthly_income", "monthly_income", operator.lt, "Income below minimum ({limit})"),
    Constraint("min_average_monthly_revenue", "average_monthly_revenue", operator.lt, "Revenue below minimum ({limit})"),
    Constraint("min_business_age_months", "business_age_months", operator.lt, "Business too young (<{limit} months)"),
    Constraint("max_debt_to_income", "debt_to_income_ratio", operator.gt, "DTI too high (>{limit})"),
    Constraint("min_dscr", "dscr", operator.lt, "DSCR too low (<{limit})"),
    Constraint("max_bounced_cheques_last_12_months", "bounced_cheques_last_12_months", operator.gt,
               "Too many bounced cheques (>{limit})"),
    Constraint("max_late_payment_incidents_last_12_months", "late_payment_incidents_last_12_months", operator.gt,
               "Too many late payments (>{limit})"),
)

BORDERLINE_REASON = "Borderline Score"
LOW_SCORE_REASON = "Low Score"


def resolve_value(value: Optional[float], purpose: ValuePurpose, metric: Optional[Metric] = None) -> float:
    """Single missing-value policy shared by both passes.

    Constraint checks read an unknown value as 0. Score normalization reads it
    as the metric's bad anchor, so missing data contributes the worst score.

    Args:
        value: Raw profile value, or None when unknown
        purpose: Which pass is asking
        metric: The metric being scored (required for ValuePurpose.SCORE)

    Returns:
        The value to use
    """
    if value is not None:
        return float(value)
    if purpose is ValuePurpose.SCORE:
        if metric is None:
            raise ValueError("score resolution needs a metric")
        return float(metric.bad)
    return 0.0


def normalize(value: float, good: float, bad: float, higher_is_better: bool) -> float:
    """Two-anchor linear ramp: good maps to 1, bad maps to 0."""
    if higher_is_better:
        if value >= good:
            return 1.0
        if value <= bad:
            return 0.0
        return (value - bad) / (good - bad)
    if value <= good:
        return 1.0
    if value >= bad:
        return 0.0
    return (bad - value) / (bad - good)


def format_limit(limit: float) -> str:
    """Render a limit the way it appears in product configuration (21, not 21.0)."""
    if float(limit).is_integer():
        return str(int(limit))
    return str(limit)


def check_constraints(profile: CustomerProfile, product: Product) -> List[str]:
    """Return one reason per violated hard constraint, in catalog order."""
    reasons = []
    for constraint in CONSTRAINTS:
        limit = getattr(product.constraints, constraint.limit_field)
        if limit is None:
            continue
        value = resolve_value(getattr(profile, constraint.profile_field), ValuePurpose.CONSTRAINT)
        if constraint.violated(value, limit):
            reasons.append(constraint.reason.format(limit=format_limit(limit)))
    return reasons


def weighted_score(profile: CustomerProfile, product: Product) -> float:
    """Weight-normalized average of the per-metric scores, 0 when nothing is weighted."""
    weights = product.scoring.weights
    total_score = 0.0
    total_weight = 0.0
    for metric in METRICS:
        weight = getattr(weights, metric.weight_field)
        if not weight or weight <= 0:
            continue
        value = resolve_value(getattr(profile, metric.profile_field), ValuePurpose.SCORE, metric)
        total_score += normalize(value, metric.good, metric.bad, metric.higher_is_better) * weight
        total_weight += weight
    if total_weight <= 0:
        return 0.0
    return total_score / total_weight


def evaluate(profile: CustomerProfile, product: Product) -> EvaluationResult:
    """Score one product for one profile.

    Args:
        profile: The customer's (possibly incomplete) profile
        product: Catalog entry to evaluate against

    Returns:
        EvaluationResult with explanations still pending
    """
    reasons = check_constraints(profile, product)
    eligible = not reasons
    score = weighted_score(profile, product)
    thresholds = product.scoring.thresholds

    if not eligible:
        decision = Decision.DECLINE
        summary = f"Failed requirements: {reasons[0]}"
    elif score >= thresholds.approve:
        decision = Decision.APPROVE
        summary = "Meets all criteria with a strong score."
    elif score >= thresholds.review:
        decision = Decision.REVIEW
        summary = "Meets minimums but score indicates moderate risk."
        reasons.append(BORDERLINE_REASON)
    else:
        decision = Decision.DECLINE
        summary = "Score below approval threshold."
        reasons.append(LOW_SCORE_REASON)

    return EvaluationResult(
        product_id=product.id,
        eligible=eligible,
        decision=decision,
        score=round(score, 2),
        reasons=reasons,
        summary=summary,
    )


def evaluate_all(profile: CustomerProfile, products: Iterable[Product]) -> List[EvaluationResult]:
    return [evaluate(profile, product) for product in products]
