from datetime import date, datetime, timezone
import logging

from models.experiments import ExperimentResponse
from models.stats import AggregatedTotals, ExperimentStatsResponse, SegmentData, StatsSettings, VariantComparison
from services.aggregation import (
    aggregate_experiment_summary, aggregate_variant_metrics, build_time_series, compare_variant_to_control,
)
from services.counters import CounterStore

logger = logging.getLogger(__name__)

SEGMENT_DEVICES = ("desktop", "mobile")


def build_variant_comparisons(experiment: ExperimentResponse, totals: dict[int, AggregatedTotals],
                              settings: StatsSettings) -> list[VariantComparison]:
    """
    Compare every variant that has counters against the control.
    Variants without rows are left out; the first remaining variant stands in
    for the control when the control itself has no rows.
    """
    metrics = [
        aggregate_variant_metrics(totals[variant.id], variant, settings.cost_ratio)
        for variant in experiment.variants
        if variant.id in totals
    ]
    if not metrics:
        return []

    control = next((m for m in metrics if m.is_control), metrics[0])
    return [compare_variant_to_control(m, control, settings) for m in metrics]


def calculate_stats(
    experiment: ExperimentResponse,
    counter_store: CounterStore,
    start_date: date | None = None,
    end_date: date | None = None,
    settings: StatsSettings | None = None,
    now: datetime | None = None,
) -> ExperimentStatsResponse:
    """
    Full report for one experiment over [start_date, end_date].
    Reads a snapshot of the counters and derives everything else; an
    experiment without counters yields the zero report, never an error.
    """
    settings = settings or StatsSettings()
    now = now or datetime.now(timezone.utc)

    totals = counter_store.aggregate_totals(experiment.id, start_date, end_date)
    comparisons = build_variant_comparisons(experiment, totals, settings)

    summary = aggregate_experiment_summary(
        experiment_id=experiment.id,
        experiment_name=experiment.name,
        status=experiment.status,
        started_at=experiment.started_at,
        comparisons=comparisons,
        now=now,
        significance_level=settings.significance_level,
    )

    if not comparisons:
        logger.info("experiment %d has no counters in [%s, %s], returning empty report",
                    experiment.id, start_date, end_date)
        return ExperimentStatsResponse(summary=summary, time_series=[], report_generated_at=now)

    time_series = build_time_series(counter_store.daily_rows(experiment.id, start_date, end_date),
                                    experiment.variants)

    segments = {
        device: build_variant_comparisons(
            experiment, counter_store.aggregate_totals(experiment.id, start_date, end_date, device), settings
        )
        for device in SEGMENT_DEVICES
    }
    segment_data = SegmentData(**segments) if any(segments.values()) else None

    logger.info("stats for experiment %d: %d visitors, %d orders, winner=%s significant=%s",
                experiment.id, summary.total_visitors, summary.total_orders,
                summary.winning_variant_id, summary.is_statistically_significant)

    return ExperimentStatsResponse(
        summary=summary,
        time_series=time_series,
        segment_data=segment_data,
        report_generated_at=now,
    )
