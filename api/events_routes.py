from fastapi import APIRouter, Header, HTTPException, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from typing import Any

from models.events import ClickCreate, ConversionCreate, EventAccepted, ImpressionCreate, ImpressionResponse, OrderWebhook
from services import experiments, ingestion
from services.assignment import SqlAssignmentRegistry
from services.cache import CacheClient
from services.counters import SqlCounterStore
from api.depends import ASSIGNMENT_REGISTRY, CACHE_CLIENT, COUNTER_STORE, DB_DEPENDENCY

# Import the Celery tasks
from celery_tasks.event_tasks import record_click_task, record_conversion_task
import logging

logger = logging.getLogger(__name__)

events_router = APIRouter(
    prefix="/events",
    tags=["events"],
)

webhooks_router = APIRouter(
    prefix="/webhooks",
    tags=["webhooks"],
)


def _check_variant(db: Session, cache: CacheClient, experiment_id: int, variant_id: int):
    experiment = experiments.get_experiment(db, cache, experiment_id)
    experiments.find_variant(experiment, variant_id)


def _enqueue(task, payload: dict[str, Any]) -> JSONResponse:
    # .delay() is non-blocking; the worker applies the counters
    result = task.delay(payload)
    logger.debug("%s queued as %s", task.name, result.id)
    return JSONResponse(
        content=EventAccepted(task_id=result.id).model_dump(),
        status_code=status.HTTP_202_ACCEPTED,
    )


@events_router.post("/impression", response_model=ImpressionResponse)
def record_impression_route(
    event_data: ImpressionCreate,
    db: Session = DB_DEPENDENCY,
    cache: CacheClient = CACHE_CLIENT,
    counter_store: SqlCounterStore = COUNTER_STORE,
    registry: SqlAssignmentRegistry = ASSIGNMENT_REGISTRY,
    user_agent: str | None = Header(default=None),
):
    """
    Record an impression. Synchronous, because the caller needs to know
    whether this created the user's assignment.
    """
    _check_variant(db, cache, event_data.experiment_id, event_data.variant_id)
    return ingestion.record_impression(
        registry, counter_store,
        experiment_id=event_data.experiment_id,
        variant_id=event_data.variant_id,
        user_id=event_data.user_id,
        day=event_data.date,
        user_agent=user_agent,
        country=event_data.country,
    )


@events_router.post("/conversion", status_code=status.HTTP_202_ACCEPTED, response_model=EventAccepted)
def record_conversion_route(
    event_data: ConversionCreate,
    db: Session = DB_DEPENDENCY,
    cache: CacheClient = CACHE_CLIENT,
):
    """Queue a conversion. Fire-and-forget; redelivered orders are counted again."""
    _check_variant(db, cache, event_data.experiment_id, event_data.variant_id)
    payload = event_data.model_dump(mode="json")
    payload["order_value"] = str(event_data.order_value)
    return _enqueue(record_conversion_task, payload)


@events_router.post("/click", status_code=status.HTTP_202_ACCEPTED, response_model=EventAccepted)
def record_click_route(
    event_data: ClickCreate,
    db: Session = DB_DEPENDENCY,
    cache: CacheClient = CACHE_CLIENT,
):
    _check_variant(db, cache, event_data.experiment_id, event_data.variant_id)
    return _enqueue(record_click_task, event_data.model_dump(mode="json"))


@webhooks_router.post("/orders")
def order_webhook_route(
    order: OrderWebhook,
    db: Session = DB_DEPENDENCY,
    cache: CacheClient = CACHE_CLIENT,
):
    """
    Storefront order-created webhook. Orders placed outside a known
    experiment are acknowledged and skipped so the storefront does not
    redeliver them. Signatures are verified upstream.
    """
    logger.info("Processing order #%d", order.id)
    info = ingestion.extract_order_experiment_info(order)
    if info is None:
        logger.info("Order #%d has no A/B test data, skipping", order.id)
        return JSONResponse(content={"success": True, "message": "Order has no experiment data"})

    try:
        _check_variant(db, cache, info["experiment_id"], info["variant_id"])
    except HTTPException as e:
        logger.warning("Order #%d references an unknown experiment or variant: %s", order.id, e.detail)
        return JSONResponse(content={"success": True, "message": "Order references an unknown experiment"})

    payload = {**info, "order_value": str(info["order_value"])}
    response = _enqueue(record_conversion_task, payload)
    logger.info("Order #%d queued as conversion for EID %d variant %d",
                order.id, info["experiment_id"], info["variant_id"])
    return response
