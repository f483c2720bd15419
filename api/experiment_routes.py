from fastapi import APIRouter, HTTPException, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from datetime import date, datetime, timedelta, timezone

from models.audit import ExperimentAuditResponse
from models.experiments import ActiveExperimentsResponse, AssignmentRecord, ExperimentCreate, ExperimentResponse
from models.stats import ExperimentStatsResponse, StatsSettings
from services import audit, experiments, results
from services.assignment import SqlAssignmentRegistry
from services.cache import CacheClient
from services.counters import SqlCounterStore
from api.depends import ASSIGNMENT_REGISTRY, CACHE_CLIENT, COUNTER_STORE, DB_DEPENDENCY, STATS_SETTINGS

import logging

logger = logging.getLogger(__name__)

# The storefront polls the active list; let browsers and the CDN hold it briefly
ACTIVE_CACHE_CONTROL = "public, s-maxage=300, stale-while-revalidate=600, max-age=60"

experiment_router = APIRouter(
    prefix="/experiments",
    tags=["experiments"],
)


@experiment_router.post("", response_model=ExperimentResponse, status_code=status.HTTP_201_CREATED)
def create_experiment_route(
    experiment_data: ExperimentCreate,
    db: Session = DB_DEPENDENCY,
    cache: CacheClient = CACHE_CLIENT,
):
    """Create a draft experiment with variants and traffic weights."""
    return experiments.create_new_experiment(db, cache, experiment_data)


# Declared before /{experiment_id} so "active" is not parsed as an id
@experiment_router.get("/active", response_model=ActiveExperimentsResponse)
def list_active_experiments_route(
    response: Response,
    db: Session = DB_DEPENDENCY,
    cache: CacheClient = CACHE_CLIENT,
):
    """Running experiments with traffic weights and targeting, polled by the storefront."""
    response.headers["Cache-Control"] = ACTIVE_CACHE_CONTROL
    return experiments.list_active_experiments(db, cache)


@experiment_router.get("/{experiment_id}", response_model=ExperimentResponse)
def get_experiment_route(
    experiment_id: int,
    db: Session = DB_DEPENDENCY,
    cache: CacheClient = CACHE_CLIENT,
):
    return experiments.get_experiment(db, cache, experiment_id)


@experiment_router.post("/{experiment_id}/start", response_model=ExperimentResponse)
def start_experiment_route(
    experiment_id: int,
    db: Session = DB_DEPENDENCY,
    cache: CacheClient = CACHE_CLIENT,
):
    """Start the experiment. Fails with 422 unless the variant weights sum to 100."""
    return experiments.start_experiment(db, cache, experiment_id)


@experiment_router.get("/{experiment_id}/assignment/{user_id}", response_model=AssignmentRecord)
def get_user_assignment_route(
    experiment_id: int,
    user_id: str,
    registry: SqlAssignmentRegistry = ASSIGNMENT_REGISTRY,
):
    """Existing assignment of a user. Assignments are only created by impressions."""
    assignment = registry.get_assignment(user_id, experiment_id)
    if not assignment:
        raise HTTPException(status_code=404, detail=f"User {user_id} has no assignment in experiment {experiment_id}.")
    return assignment


def _parse_range(start_date: str | None, end_date: str | None, last_day: int | None) -> tuple[date | None, date | None]:
    start = None
    # last_day overrides start_date
    if last_day:
        start = datetime.now(timezone.utc).date() - timedelta(days=last_day)
    elif start_date:
        start = date.fromisoformat(start_date)
    end = date.fromisoformat(end_date) if end_date else None
    if start and end and start > end:
        raise ValueError(f"start_date {start} is after end_date {end}")
    return start, end


@experiment_router.get("/{experiment_id}/stats", response_model=ExperimentStatsResponse)
def get_experiment_stats_route(
    experiment_id: int,
    db: Session = DB_DEPENDENCY,
    cache: CacheClient = CACHE_CLIENT,
    counter_store: SqlCounterStore = COUNTER_STORE,
    settings: StatsSettings = STATS_SETTINGS,
    start_date: str | None = None,   # YYYY-MM-DD
    end_date: str | None = None,     # YYYY-MM-DD, inclusive
    last_day: int | None = None,     # eg: 7 for the last 7 days
):
    """Per-variant metrics, significance, time series and device segments for one experiment."""
    try:
        start, end = _parse_range(start_date, end_date, last_day)
    except ValueError as e:
        logger.info("stats date range error: %s", str(e))
        return JSONResponse(content={"status": "failed", "error": str(e)}, status_code=status.HTTP_400_BAD_REQUEST)

    experiment = experiments.get_experiment(db, cache, experiment_id)
    return results.calculate_stats(experiment, counter_store, start, end, settings)


@experiment_router.get("/{experiment_id}/audit", response_model=ExperimentAuditResponse)
def get_experiment_audit_route(
    experiment_id: int,
    db: Session = DB_DEPENDENCY,
    cache: CacheClient = CACHE_CLIENT,
    counter_store: SqlCounterStore = COUNTER_STORE,
    registry: SqlAssignmentRegistry = ASSIGNMENT_REGISTRY,
):
    """Consistency checks between the assignments, the counters and the conversion events."""
    experiment = experiments.get_experiment(db, cache, experiment_id)
    return audit.run_audit(
        experiment,
        counter_store,
        registry,
        conversion_events=audit.count_conversion_events(db, experiment_id),
    )
