from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload
from fastapi import HTTPException
from datetime import datetime, timezone
import logging

from data.database import Experiment, Variant
from models.experiments import ActiveExperimentsResponse, ExperimentCreate, ExperimentResponse
from services.cache import CacheClient

logger = logging.getLogger(__name__)


def validate_weights(variants) -> None:
    """Weights of all variants must sum to 100 before an experiment may run."""
    total = sum(v.weight for v in variants)
    if total != 100:
        raise HTTPException(status_code=422, detail=f"Total variant weight must equal 100, got {total}.")


# --- Experiment Creation ---
def create_new_experiment(db: Session, cache: CacheClient, experiment_data: ExperimentCreate) -> ExperimentResponse:
    """Creates a new draft experiment and its variants. ExperimentCreate has already checked the weights."""
    db_experiment = Experiment(
        name=experiment_data.name,
        description=experiment_data.description,
        hypothesis=experiment_data.hypothesis,
        status="draft",
        targeting_rules_json=experiment_data.targeting_rules.model_dump_json(),
    )
    db.add(db_experiment)
    db.flush()  # Flush to get the experiment ID before adding variants

    for v in experiment_data.variants:
        db.add(Variant(
            experiment_id=db_experiment.id,
            name=v.name,
            display_name=v.display_name,
            is_control=v.is_control,
            weight=v.weight,
            config_json=v.config.model_dump_json(),
        ))

    db.commit()
    db.refresh(db_experiment)
    logger.info("create new experiment %s success with experiment id: %d", experiment_data.name, db_experiment.id)

    definition = ExperimentResponse.model_validate(db_experiment)
    cache.set_experiment(definition)
    return definition


def _load_experiment(db: Session, experiment_id: int) -> Experiment | None:
    query = (
        select(Experiment)
        .options(selectinload(Experiment.variants))
        .where(Experiment.id == experiment_id)
    )
    return db.scalars(query).one_or_none()


def get_experiment(db: Session, cache: CacheClient, experiment_id: int) -> ExperimentResponse:
    """Experiment definition with variants, from cache or database. 404 when missing."""
    experiment = cache.get_experiment(experiment_id)
    if experiment:
        logger.debug("get_experiment %d cache hit", experiment_id)
        return experiment

    db_experiment = _load_experiment(db, experiment_id)
    if not db_experiment:
        logger.info("Experiment ID %d not found.", experiment_id)
        raise HTTPException(status_code=404, detail=f"Experiment ID {experiment_id} not found.")

    experiment = ExperimentResponse.model_validate(db_experiment)
    cache.set_experiment(experiment)
    logger.debug("get_experiment %d cache miss", experiment_id)
    return experiment


def list_active_experiments(db: Session, cache: CacheClient) -> ActiveExperimentsResponse:
    """Running experiments with variants, from cache or database."""
    active = cache.get_active_experiments()
    if active is not None:
        logger.debug("list_active_experiments cache hit")
        return active

    query = (
        select(Experiment)
        .options(selectinload(Experiment.variants))
        .where(Experiment.status == "running")
        .order_by(Experiment.id)
    )
    active = ActiveExperimentsResponse(
        experiments=[ExperimentResponse.model_validate(e) for e in db.scalars(query).all()]
    )
    cache.set_active_experiments(active)
    logger.debug("list_active_experiments cache miss, %d running", len(active.experiments))
    return active


def start_experiment(db: Session, cache: CacheClient, experiment_id: int) -> ExperimentResponse:
    """Move an experiment to running. Only the weight-sum invariant is enforced here."""
    db_experiment = _load_experiment(db, experiment_id)
    if not db_experiment:
        raise HTTPException(status_code=404, detail=f"Experiment ID {experiment_id} not found.")

    if db_experiment.status == "running":
        return ExperimentResponse.model_validate(db_experiment)

    validate_weights(db_experiment.variants)
    db_experiment.status = "running"
    db_experiment.started_at = db_experiment.started_at or datetime.now(timezone.utc)
    db.commit()
    db.refresh(db_experiment)
    logger.info("experiment %d started at %s", experiment_id, db_experiment.started_at)

    definition = ExperimentResponse.model_validate(db_experiment)
    cache.set_experiment(definition)
    cache.invalidate_active_experiments()
    return definition


def find_variant(experiment: ExperimentResponse, variant_id: int):
    """Variant of the experiment with that id. 404 when it belongs elsewhere or does not exist."""
    for variant in experiment.variants:
        if variant.id == variant_id:
            return variant
    raise HTTPException(status_code=404, detail=f"Variant ID {variant_id} not found in experiment {experiment.id}.")
