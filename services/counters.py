"""
Counter store: per (experiment, variant, date) accumulators.

Every increment is a single atomic read-modify-write on one key. The SQL
store pushes the addition into the database with an upsert
(``INSERT ... ON CONFLICT DO UPDATE SET col = col + excluded.col``), so
concurrent writers on the same key never lose updates and a missing row is
created zero-initialized in the same statement. The in-memory store guards
each key with its own lock.

Unique users are not deduplicated here: callers pass ``first_touch=True``
only when the assignment registry reports that it created the assignment.
"""
from collections import defaultdict
from datetime import date, datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable
import logging
import threading

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from data.database import ExperimentStat, ExperimentDeviceStat, dialect_insert
from models.stats import AggregatedTotals, CounterRow

logger = logging.getLogger(__name__)

COUNTER_FIELDS = ("impressions", "unique_users", "clicks", "conversions", "revenue_cents")

CENT = Decimal("0.01")


def to_cents(amount) -> int:
    """Quantize a money amount to whole cents (half up)."""
    cents = (Decimal(str(amount)).quantize(CENT, rounding=ROUND_HALF_UP) * 100).to_integral_value()
    return int(cents)


def from_cents(cents: int) -> Decimal:
    return (Decimal(int(cents or 0)) / 100).quantize(CENT)


def _impression_deltas(first_touch: bool) -> dict[str, int]:
    return {"impressions": 1, "unique_users": 1 if first_touch else 0}


def _conversion_deltas(order_value) -> dict[str, int]:
    cents = to_cents(order_value)
    if cents < 0:
        raise ValueError(f"order value must not be negative, got {order_value}")
    return {"conversions": 1, "revenue_cents": cents}


class CounterStore:
    """Interface of the counter store consumed by ingestion and reporting."""

    def increment_impression(self, experiment_id: int, variant_id: int, day: date,
                             first_touch: bool = False, device_type: str | None = None) -> None:
        self._increment(experiment_id, variant_id, day, _impression_deltas(first_touch), device_type)

    def increment_conversion(self, experiment_id: int, variant_id: int, day: date,
                             order_value, device_type: str | None = None) -> None:
        self._increment(experiment_id, variant_id, day, _conversion_deltas(order_value), device_type)

    def increment_click(self, experiment_id: int, variant_id: int, day: date,
                        device_type: str | None = None) -> None:
        self._increment(experiment_id, variant_id, day, {"clicks": 1}, device_type)

    def _increment(self, experiment_id: int, variant_id: int, day: date,
                   deltas: dict[str, int], device_type: str | None) -> None:
        raise NotImplementedError

    def aggregate_totals(self, experiment_id: int, start: date | None = None, end: date | None = None,
                         device_type: str | None = None) -> dict[int, AggregatedTotals]:
        """Sum the rows in [start, end] per variant. No rows gives an empty dict."""
        raise NotImplementedError

    def daily_rows(self, experiment_id: int, start: date | None = None,
                   end: date | None = None) -> list[CounterRow]:
        """Rows in [start, end] ordered by (date, variant_id)."""
        raise NotImplementedError


# --- SQL implementation ---

class SqlCounterStore(CounterStore):
    """Counter store on the experiment_stats tables. Each increment commits on its own."""

    def __init__(self, db: Session):
        self.db = db

    def _upsert(self, model, key: dict, deltas: dict[str, int]):
        values = {field: 0 for field in COUNTER_FIELDS}
        values.update(deltas)
        stmt = dialect_insert(self.db, model).values(**key, **values, updated_at=datetime.now(timezone.utc))
        # The addition is evaluated by the database against the committed row
        set_ = {field: getattr(model, field) + stmt.excluded[field] for field in deltas}
        set_["updated_at"] = stmt.excluded.updated_at
        stmt = stmt.on_conflict_do_update(index_elements=list(key), set_=set_)
        self.db.execute(stmt)

    def _increment(self, experiment_id, variant_id, day, deltas, device_type):
        key = {"experiment_id": experiment_id, "variant_id": variant_id, "date": day}
        try:
            self._upsert(ExperimentStat, key, deltas)
            if device_type:
                self._upsert(ExperimentDeviceStat, {**key, "device_type": device_type}, deltas)
            self.db.commit()
        except Exception:
            self.db.rollback()
            logger.exception("counter increment failed for EID %d variant %d on %s: %s",
                             experiment_id, variant_id, day, deltas)
            raise
        logger.debug("counter EID %d variant %d on %s += %s", experiment_id, variant_id, day, deltas)

    @staticmethod
    def _date_filters(model, experiment_id, start, end):
        filters = [model.experiment_id == experiment_id]
        if start:
            filters.append(model.date >= start)
        if end:
            filters.append(model.date <= end)
        return filters

    def aggregate_totals(self, experiment_id, start=None, end=None, device_type=None):
        model = ExperimentDeviceStat if device_type else ExperimentStat
        filters = self._date_filters(model, experiment_id, start, end)
        if device_type:
            filters.append(model.device_type == device_type)

        query = select(
            model.variant_id,
            func.coalesce(func.sum(model.unique_users), 0),
            func.coalesce(func.sum(model.impressions), 0),
            func.coalesce(func.sum(model.clicks), 0),
            func.coalesce(func.sum(model.conversions), 0),
            func.coalesce(func.sum(model.revenue_cents), 0),
        ).where(*filters).group_by(model.variant_id)

        totals: dict[int, AggregatedTotals] = {}
        for variant_id, visitors, impressions, clicks, orders, revenue_cents in self.db.execute(query):
            totals[variant_id] = AggregatedTotals(
                visitors=int(visitors),
                impressions=int(impressions),
                clicks=int(clicks),
                orders=int(orders),
                revenue=from_cents(revenue_cents),
            )
        logger.debug("aggregate_totals EID %d [%s, %s] device=%s: %d variants",
                     experiment_id, start, end, device_type, len(totals))
        return totals

    def daily_rows(self, experiment_id, start=None, end=None):
        query = (
            select(ExperimentStat)
            .where(*self._date_filters(ExperimentStat, experiment_id, start, end))
            .order_by(ExperimentStat.date, ExperimentStat.variant_id)
        )
        return [
            CounterRow(
                experiment_id=row.experiment_id,
                variant_id=row.variant_id,
                date=row.date,
                impressions=row.impressions,
                unique_users=row.unique_users,
                clicks=row.clicks,
                conversions=row.conversions,
                revenue=from_cents(row.revenue_cents),
            )
            for row in self.db.scalars(query)
        ]


# --- In-memory implementation ---

class InMemoryCounterStore(CounterStore):
    """Process-local counter store. Used by tests and single-process tooling."""

    def __init__(self):
        self._rows: dict[tuple, dict[str, int]] = {}
        self._locks: defaultdict[tuple, threading.Lock] = defaultdict(threading.Lock)
        # Guards creation of per-key locks and rows, not the additions themselves
        self._registry_lock = threading.Lock()

    def _row(self, key: tuple) -> tuple[threading.Lock, dict[str, int]]:
        with self._registry_lock:
            lock = self._locks[key]
            row = self._rows.setdefault(key, {field: 0 for field in COUNTER_FIELDS})
        return lock, row

    def _apply(self, key: tuple, deltas: dict[str, int]):
        lock, row = self._row(key)
        with lock:
            for field, delta in deltas.items():
                row[field] += delta

    def _increment(self, experiment_id, variant_id, day, deltas, device_type):
        self._apply((experiment_id, variant_id, day, None), deltas)
        if device_type:
            self._apply((experiment_id, variant_id, day, device_type), deltas)

    def _snapshot(self, include: Callable[[tuple], bool]) -> list[tuple[tuple, dict[str, int]]]:
        with self._registry_lock:
            keys = [key for key in self._rows if include(key)]
        snapshot = []
        for key in keys:
            lock, row = self._row(key)
            with lock:
                snapshot.append((key, dict(row)))
        return snapshot

    @staticmethod
    def _in_range(day: date, start: date | None, end: date | None) -> bool:
        return (start is None or day >= start) and (end is None or day <= end)

    def aggregate_totals(self, experiment_id, start=None, end=None, device_type=None):
        rows = self._snapshot(
            lambda key: key[0] == experiment_id and key[3] == device_type and self._in_range(key[2], start, end)
        )
        sums: dict[int, dict[str, int]] = {}
        for (_, variant_id, _, _), row in rows:
            acc = sums.setdefault(variant_id, {field: 0 for field in COUNTER_FIELDS})
            for field in COUNTER_FIELDS:
                acc[field] += row[field]

        return {
            variant_id: AggregatedTotals(
                visitors=acc["unique_users"],
                impressions=acc["impressions"],
                clicks=acc["clicks"],
                orders=acc["conversions"],
                revenue=from_cents(acc["revenue_cents"]),
            )
            for variant_id, acc in sums.items()
        }

    def daily_rows(self, experiment_id, start=None, end=None):
        rows = self._snapshot(
            lambda key: key[0] == experiment_id and key[3] is None and self._in_range(key[2], start, end)
        )
        rows.sort(key=lambda item: (item[0][2], item[0][1]))
        return [
            CounterRow(
                experiment_id=experiment_id,
                variant_id=variant_id,
                date=day,
                impressions=row["impressions"],
                unique_users=row["unique_users"],
                clicks=row["clicks"],
                conversions=row["conversions"],
                revenue=from_cents(row["revenue_cents"]),
            )
            for (_, variant_id, day, _), row in rows
        ]
