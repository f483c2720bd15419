"""
Turns aggregated counters into report rows: per-variant metrics, comparisons
against the control, the experiment summary and the daily time series.
Nothing here touches storage.
"""
from datetime import datetime, timezone
import logging

from models.experiments import VariantResponse
from models.stats import (
    AggregatedTotals, CounterRow, ExperimentSummary, StatsSettings,
    TimeSeriesDataPoint, VariantComparison, VariantMetrics,
)
from services import statistics

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS = StatsSettings()


def aggregate_variant_metrics(totals: AggregatedTotals, variant: VariantResponse,
                              cost_ratio: float = DEFAULT_SETTINGS.cost_ratio) -> VariantMetrics:
    """Derived metrics of one variant. Significance stays null until compared with the control."""
    revenue = float(totals.revenue)
    return VariantMetrics(
        variant_id=variant.id,
        variant_name=variant.display_name,
        is_control=variant.is_control,
        visitors=totals.visitors,
        impressions=totals.impressions,
        clicks=totals.clicks,
        orders=totals.orders,
        conversions=totals.orders,
        revenue=revenue,
        total_revenue=revenue,
        conversion_rate=statistics.conversion_rate(totals.orders, totals.visitors),
        click_through_rate=statistics.click_through_rate(totals.clicks, totals.impressions),
        revenue_per_visitor=statistics.revenue_per_visitor(revenue, totals.visitors),
        profit_per_visitor=statistics.profit_per_visitor(revenue, totals.visitors, cost_ratio),
        avg_order_value=statistics.avg_order_value(revenue, totals.orders),
    )


def compare_variant_to_control(metrics: VariantMetrics, control: VariantMetrics,
                               settings: StatsSettings = DEFAULT_SETTINGS) -> VariantComparison:
    conversion_rate_change = statistics.relative_change(metrics.conversion_rate, control.conversion_rate)
    revenue_per_visitor_change = statistics.relative_change(metrics.revenue_per_visitor, control.revenue_per_visitor)
    profit_per_visitor_change = statistics.relative_change(metrics.profit_per_visitor, control.profit_per_visitor)
    avg_order_value_change = statistics.relative_change(metrics.avg_order_value, control.avg_order_value)

    confidence_level = None
    p_value = None
    if not metrics.is_control and metrics.visitors > 0 and control.visitors > 0:
        control_n = control.visitors if settings.use_control_sample_size else None
        z = statistics.z_score(
            metrics.conversion_rate / 100,
            control.conversion_rate / 100,
            metrics.visitors,
            control_n,
        )
        p_value = statistics.p_value(z)
        confidence_level = (1 - p_value) * 100

    ci_lower, ci_upper = statistics.confidence_interval(
        metrics.conversion_rate / 100, metrics.visitors, settings.confidence_level
    )

    # Treats the observation window as projection_days long
    daily_visitors = metrics.visitors / settings.projection_days
    estimated_monthly_orders = statistics.monthly_impact(
        daily_visitors, conversion_rate_change / 100, control.conversion_rate / 100, settings.projection_days
    )
    estimated_monthly_revenue = statistics.monthly_impact(
        daily_visitors, revenue_per_visitor_change / 100, control.revenue_per_visitor, settings.projection_days
    )

    return VariantComparison(
        **metrics.model_dump(exclude={"confidence_level", "p_value"}),
        conversion_rate_change=conversion_rate_change,
        revenue_per_visitor_change=revenue_per_visitor_change,
        profit_per_visitor_change=profit_per_visitor_change,
        avg_order_value_change=avg_order_value_change,
        conversion_rate_ci_lower=ci_lower,
        conversion_rate_ci_upper=ci_upper,
        estimated_monthly_orders=estimated_monthly_orders,
        estimated_monthly_revenue=estimated_monthly_revenue,
        confidence_level=confidence_level,
        p_value=p_value,
    )


def duration_in_days(started_at: datetime | None, now: datetime | None = None) -> int | None:
    if started_at is None:
        return None
    now = now or datetime.now(timezone.utc)
    # SQLite hands back naive datetimes; they were written as UTC
    if started_at.tzinfo is None:
        started_at = started_at.replace(tzinfo=timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return (now - started_at).days


def aggregate_experiment_summary(experiment_id: int, experiment_name: str, status: str,
                                 started_at: datetime | None, comparisons: list[VariantComparison],
                                 now: datetime | None = None,
                                 significance_level: float = DEFAULT_SETTINGS.significance_level) -> ExperimentSummary:
    """
    Fold variant comparisons into the experiment summary.

    The winner is the non-control variant with the highest conversion rate,
    the first one listed on ties. It is significant when its p-value is
    below significance_level.
    """
    control = next((c for c in comparisons if c.is_control), comparisons[0] if comparisons else None)

    winning_variant_id = None
    winning_variant_improvement = None
    is_significant = False

    winner = None
    for comparison in comparisons:
        if comparison.is_control:
            continue
        if winner is None or comparison.conversion_rate > winner.conversion_rate:
            winner = comparison

    if winner is not None:
        winning_variant_id = winner.variant_id
        winning_variant_improvement = winner.conversion_rate_change
        is_significant = winner.p_value is not None and winner.p_value < significance_level
        logger.debug("experiment %d leader: variant %d (%.2f%%, p=%s)",
                     experiment_id, winner.variant_id, winner.conversion_rate, winner.p_value)

    return ExperimentSummary(
        experiment_id=experiment_id,
        experiment_name=experiment_name,
        status=status,
        started_at=started_at,
        duration_days=duration_in_days(started_at, now),
        total_visitors=sum(c.visitors for c in comparisons),
        total_orders=sum(c.orders for c in comparisons),
        total_revenue=sum(c.revenue for c in comparisons),
        control_conversion_rate=control.conversion_rate if control else 0.0,
        control_revenue_per_visitor=control.revenue_per_visitor if control else 0.0,
        control_avg_order_value=control.avg_order_value if control else 0.0,
        variants=comparisons,
        winning_variant_id=winning_variant_id,
        winning_variant_improvement=winning_variant_improvement,
        is_statistically_significant=is_significant,
    )


def build_time_series(rows: list[CounterRow], variants: list[VariantResponse]) -> list[TimeSeriesDataPoint]:
    """One point per counter row; each day stands alone, nothing is carried across days."""
    names = {v.id: v.display_name for v in variants}
    points = []
    for row in rows:
        revenue = float(row.revenue)
        points.append(TimeSeriesDataPoint(
            date=row.date,
            variant_id=row.variant_id,
            variant_name=names.get(row.variant_id),
            visitors=row.unique_users,
            orders=row.conversions,
            revenue=revenue,
            conversion_rate=statistics.conversion_rate(row.conversions, row.unique_users),
            revenue_per_visitor=statistics.revenue_per_visitor(revenue, row.unique_users),
        ))
    return points


def group_time_series_by_date(points: list[TimeSeriesDataPoint]) -> dict[str, dict[int, TimeSeriesDataPoint]]:
    """Chart layout: ISO date -> variant id -> point."""
    grouped: dict[str, dict[int, TimeSeriesDataPoint]] = {}
    for point in points:
        grouped.setdefault(point.date.isoformat(), {})[point.variant_id] = point
    return grouped
