"""
Data integrity checks over one experiment.

The assignment registry and the counter store are written by separate
commits, so they can drift apart (a crash between the two, a lost Celery
message). The audit compares them and reports each check as pass,
warning or fail; it never repairs anything.
"""
from datetime import datetime, timezone
import logging

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from data.database import Event
from models.audit import AuditCheck, AuditSummary, ExperimentAuditResponse
from models.experiments import ExperimentResponse
from services.assignment import AssignmentRegistry
from services.counters import CounterStore
from services.user_agent import DEVICE_TYPES, UNKNOWN_DEVICE

logger = logging.getLogger(__name__)

# Largest deviation from the expected traffic share, percent
BALANCE_PASS_DEVIATION = 10.0
BALANCE_WARNING_DEVIATION = 20.0


def count_conversion_events(db: Session, experiment_id: int) -> int:
    query = (
        select(func.count())
        .select_from(Event)
        .where(Event.experiment_id == experiment_id, Event.type == "conversion")
    )
    return int(db.scalar(query) or 0)


def _percent(part: int, whole: int) -> float:
    return part / whole * 100 if whole else 0.0


def check_total_visitors(assigned: int, counted: int) -> AuditCheck:
    return AuditCheck(
        name="Total Visitors Consistency",
        status="pass" if assigned == counted else "warning",
        expected=assigned,
        actual=counted,
        message=f"assignments ({assigned}) vs unique_users counters ({counted})",
        discrepancy=abs(assigned - counted),
    )


def check_device_segments(counted: int, by_device: dict[str, int], unknown_assignments: int) -> AuditCheck:
    """Device segment counters plus the assignments without a device must add up to the overall counters."""
    segmented = sum(by_device.values())
    total = segmented + unknown_assignments
    parts = " + ".join(f"{device.capitalize()} ({count})" for device, count in by_device.items())
    return AuditCheck(
        name="Device Segment Consistency",
        status="pass" if total == counted else "fail",
        expected=counted,
        actual=total,
        message=f"{parts} + Unknown ({unknown_assignments}) = {total}. "
                f"Coverage: {_percent(segmented, counted):.1f}%",
        discrepancy=abs(counted - total),
    )


def check_visitor_types(total: int, new: int, returning: int, unknown: int) -> AuditCheck:
    classified = new + returning + unknown
    return AuditCheck(
        name="New/Returning Visitor Coverage",
        status="pass" if classified == total else "fail",
        expected=total,
        actual=classified,
        message=f"New ({new}) + Returning ({returning}) + Unknown ({unknown}) = {classified}. "
                f"Coverage: {_percent(new + returning, total):.1f}%",
        discrepancy=abs(total - classified),
    )


def check_conversions(events: int, counted: int) -> AuditCheck:
    return AuditCheck(
        name="Conversion Count Consistency",
        status="pass" if events == counted else "warning",
        expected=events,
        actual=counted,
        message=f"conversion events ({events}) vs conversion counters ({counted})",
        discrepancy=abs(events - counted),
    )


def check_variant_balance(experiment: ExperimentResponse, by_variant: dict[int, int]) -> AuditCheck:
    """Each variant's share of assignments against the share its weight asks for."""
    total = sum(by_variant.values())
    weighted = [v for v in experiment.variants if v.weight > 0]
    expected = ", ".join(f"{v.name} {v.weight}%" for v in weighted)
    actual = ", ".join(f"{v.name} {by_variant.get(v.id, 0)}" for v in experiment.variants)

    if total == 0:
        return AuditCheck(name="Variant Assignment Balance", status="pass", expected=expected, actual=actual,
                          message="No assignments yet.")

    deviation = max(
        abs(by_variant.get(v.id, 0) - total * v.weight / 100) / (total * v.weight / 100) * 100
        for v in weighted
    ) if weighted else 0.0
    if deviation < BALANCE_PASS_DEVIATION:
        status = "pass"
    elif deviation < BALANCE_WARNING_DEVIATION:
        status = "warning"
    else:
        status = "fail"
    return AuditCheck(
        name="Variant Assignment Balance",
        status=status,
        expected=expected,
        actual=actual,
        message=f"Max deviation from expected: {deviation:.1f}%. {len(experiment.variants)} variants total.",
    )


def run_audit(
    experiment: ExperimentResponse,
    counter_store: CounterStore,
    registry: AssignmentRegistry,
    conversion_events: int | None = None,
    now: datetime | None = None,
) -> ExperimentAuditResponse:
    """
    Compare the assignments of an experiment with its counters.
    The conversion check is skipped when conversion_events is None, e.g.
    for stores that keep no event log.
    """
    now = now or datetime.now(timezone.utc)
    breakdown = registry.assignment_breakdown(experiment.id)
    totals = counter_store.aggregate_totals(experiment.id)
    counted_visitors = sum(t.visitors for t in totals.values())

    by_device = {
        device: sum(t.visitors for t in counter_store.aggregate_totals(experiment.id, device_type=device).values())
        for device in DEVICE_TYPES
    }

    checks = [
        check_total_visitors(breakdown.total, counted_visitors),
        check_device_segments(counted_visitors, by_device, breakdown.by_device.get(UNKNOWN_DEVICE, 0)),
        check_visitor_types(breakdown.total, breakdown.new_visitors, breakdown.returning_visitors,
                            breakdown.unknown_visitor_type),
    ]
    if conversion_events is not None:
        checks.append(check_conversions(conversion_events, sum(t.orders for t in totals.values())))
    checks.append(check_variant_balance(experiment, breakdown.by_variant))

    summary = AuditSummary(
        total_checks=len(checks),
        passed=sum(1 for c in checks if c.status == "pass"),
        warnings=sum(1 for c in checks if c.status == "warning"),
        failed=sum(1 for c in checks if c.status == "fail"),
    )
    if summary.failed:
        overall = "fail"
    elif summary.warnings:
        overall = "warning"
    else:
        overall = "pass"

    logger.info("audit of experiment %d: %s (%d passed, %d warnings, %d failed)",
                experiment.id, overall, summary.passed, summary.warnings, summary.failed)
    return ExperimentAuditResponse(
        experiment_id=experiment.id,
        timestamp=now,
        overall_status=overall,
        checks=checks,
        summary=summary,
    )
