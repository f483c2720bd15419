"""
Statistical formulas for experiment reporting.

Every function here is pure and never raises for degenerate inputs: a zero
denominator yields 0 and a zero standard error yields a z-score of 0, so the
reporting path can always render a result.

Rates returned by conversion_rate and click_through_rate are percentages
(5.0 means 5%). The significance functions (z_score, confidence_interval,
required_sample_size) take proportions (0.05 means 5%).
"""
import math

from scipy.stats import norm

# z value for the two-sided confidence levels the dashboard offers
Z_VALUES = {
    0.90: 1.645,
    0.95: 1.96,
    0.99: 2.576,
}

# Zelen & Severo (1964) coefficients, Abramowitz & Stegun 26.2.17
_P = 0.2316419
_B1 = 0.319381530
_B2 = -0.356563782
_B3 = 1.781477937
_B4 = -1.821255978
_B5 = 1.330274429
_INV_SQRT_2PI = 0.3989422804014327


def conversion_rate(orders: float, visitors: float) -> float:
    """CVR = orders / visitors * 100."""
    if visitors == 0:
        return 0.0
    return orders / visitors * 100


def revenue_per_visitor(revenue: float, visitors: float) -> float:
    """RPV = revenue / visitors."""
    if visitors == 0:
        return 0.0
    return float(revenue) / visitors


def avg_order_value(revenue: float, orders: float) -> float:
    """AOV = revenue / orders."""
    if orders == 0:
        return 0.0
    return float(revenue) / orders


def click_through_rate(clicks: float, impressions: float) -> float:
    """CTR = clicks / impressions * 100."""
    if impressions == 0:
        return 0.0
    return clicks / impressions * 100


def profit_per_visitor(revenue: float, visitors: float, cost_ratio: float) -> float:
    """Revenue net of cost_ratio, per visitor."""
    if visitors == 0:
        return 0.0
    return float(revenue) * (1 - cost_ratio) / visitors


def relative_change(variant_value: float, control_value: float) -> float:
    """
    Percent change of the variant against the control.
    A zero control yields 0, which is a floor and not a measured "no change".
    """
    if control_value == 0:
        return 0.0
    return (variant_value - control_value) / control_value * 100


def z_score(p1: float, p2: float, n1: float, n2: float | None = None) -> float:
    """
    Pooled two-proportion z statistic for p1 (variant) against p2 (control).

    n2 defaults to n1: the reporting path sizes both arms with the variant's
    own visitor count unless told to use the control's.
    """
    if n2 is None:
        n2 = n1
    if n1 <= 0 or n2 <= 0:
        return 0.0

    pooled = (p1 * n1 + p2 * n2) / (n1 + n2)
    variance = pooled * (1 - pooled) * (1 / n1 + 1 / n2)
    if variance <= 0:
        return 0.0

    se = math.sqrt(variance)
    return (p1 - p2) / se


def normal_sf(z: float) -> float:
    """Upper tail of the standard normal for z >= 0, Zelen & Severo approximation (|error| < 7.5e-8)."""
    t = 1 / (1 + _P * z)
    density = _INV_SQRT_2PI * math.exp(-z * z / 2)
    return density * t * (_B1 + t * (_B2 + t * (_B3 + t * (_B4 + t * _B5))))


def p_value(z: float) -> float:
    """Two-tailed p-value of a z statistic, in [0, 1]."""
    if math.isnan(z):
        return 1.0
    if math.isinf(z):
        return 0.0
    return min(1.0, max(0.0, 2 * normal_sf(abs(z))))


def confidence_interval(proportion: float, sample_size: float, confidence_level: float = 0.95) -> tuple[float, float]:
    """
    Normal-approximation interval for a proportion, returned as percentages.
    Bounds are clipped to [0, 100]; an empty sample gives (0, 0).
    """
    z_value = Z_VALUES.get(confidence_level)
    if z_value is None:
        raise ValueError(f"Unsupported confidence level {confidence_level}; expected one of {sorted(Z_VALUES)}")

    if sample_size <= 0:
        return 0.0, 0.0

    p = min(1.0, max(0.0, proportion))
    se = math.sqrt(p * (1 - p) / sample_size)
    lower = max(0.0, p - z_value * se)
    upper = min(1.0, p + z_value * se)
    return lower * 100, upper * 100


def monthly_impact(daily_visitors: float, improvement_rate: float, baseline_metric: float,
                   days: int = 30) -> float:
    """
    Incremental monthly total if the variant's improvement applied to all traffic.
    improvement_rate is a fraction (0.15 for +15%).
    """
    monthly_visitors = daily_visitors * days
    improved_metric = baseline_metric * (1 + improvement_rate)
    return (improved_metric - baseline_metric) * monthly_visitors


def required_sample_size(baseline_rate: float, mde: float, alpha: float = 0.05, power: float = 0.80) -> int:
    """
    Visitors needed per variant to detect an absolute lift of mde over baseline_rate.
    n = 2 * (z_alpha + z_beta)^2 * p * (1 - p) / mde^2
    """
    if mde <= 0:
        raise ValueError("mde must be positive")

    z_alpha = norm.ppf(1 - alpha / 2)
    z_beta = norm.ppf(power)
    p = baseline_rate
    n = 2 * (z_alpha + z_beta) ** 2 * p * (1 - p) / mde ** 2
    return math.ceil(n)
