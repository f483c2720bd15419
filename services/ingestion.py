"""
Ingestion boundary: impressions, conversions and clicks reported by the
storefront. Callers are expected to have checked that the experiment and
variant exist.
"""
from datetime import date, datetime, timezone
from decimal import Decimal
import logging

from models.events import ImpressionResponse, OrderWebhook
from models.experiments import AssignmentContext
from services.assignment import AssignmentRegistry
from services.counters import CounterStore
from services.user_agent import UNKNOWN_DEVICE, get_device_type

logger = logging.getLogger(__name__)

ORDER_USER_ATTRIBUTE = "ab_test_user_id"
ORDER_EXPERIMENT_ATTRIBUTE = "ab_test_experiment_id"
ORDER_VARIANT_ATTRIBUTE = "ab_test_variant_id"


def today_utc() -> date:
    return datetime.now(timezone.utc).date()


def record_impression(registry: AssignmentRegistry, counter_store: CounterStore,
                      experiment_id: int, variant_id: int, user_id: str, day: date | None = None,
                      user_agent: str | None = None, country: str | None = None) -> ImpressionResponse:
    """
    Count one impression. The first impression of a user in an experiment
    creates the assignment and is the only one that counts as a unique user.
    The impression is counted against the variant the user is assigned to.
    """
    day = day or today_utc()
    device_type = get_device_type(user_agent)
    context = AssignmentContext(
        user_agent=user_agent,
        device_type=None if device_type == UNKNOWN_DEVICE else device_type,
        country=country,
    )

    assignment, created = registry.assign_if_absent(user_id, experiment_id, variant_id, context)
    if assignment.variant_id != variant_id:
        logger.warning("user %s requested variant %d of EID %d but is assigned to %d; counting the assigned variant",
                       user_id, variant_id, experiment_id, assignment.variant_id)

    counter_store.increment_impression(
        experiment_id, assignment.variant_id, day,
        first_touch=created,
        device_type=assignment.device_type,
    )
    logger.debug("impression EID %d variant %d user %s new=%s device=%s",
                 experiment_id, assignment.variant_id, user_id, created, device_type)

    return ImpressionResponse(
        is_new_assignment=created,
        device_type=device_type,
        variant_id=assignment.variant_id,
    )


def _assigned_device(registry: AssignmentRegistry | None, user_id: str | None, experiment_id: int) -> str | None:
    if registry is None or not user_id:
        return None
    assignment = registry.get_assignment(user_id, experiment_id)
    return assignment.device_type if assignment else None


def record_conversion(counter_store: CounterStore, experiment_id: int, variant_id: int, order_value,
                      day: date | None = None, registry: AssignmentRegistry | None = None,
                      user_id: str | None = None) -> None:
    """
    Count one order. Not deduplicated: a redelivered order is counted again.
    When the user is known, the order also lands in the device segment the
    user was assigned from.
    """
    day = day or today_utc()
    device_type = _assigned_device(registry, user_id, experiment_id)
    counter_store.increment_conversion(experiment_id, variant_id, day, order_value, device_type=device_type)
    logger.info("Conversion recorded for experiment %d, variant %d, value %s", experiment_id, variant_id, order_value)


def record_click(counter_store: CounterStore, experiment_id: int, variant_id: int, day: date | None = None,
                 registry: AssignmentRegistry | None = None, user_id: str | None = None) -> None:
    day = day or today_utc()
    device_type = _assigned_device(registry, user_id, experiment_id)
    counter_store.increment_click(experiment_id, variant_id, day, device_type=device_type)


def extract_order_experiment_info(order: OrderWebhook) -> dict | None:
    """
    Experiment identity carried on a storefront order, or None when the order
    was not placed inside an experiment.
    """
    attributes = {attr.name: attr.value for attr in order.note_attributes}
    user_id = attributes.get(ORDER_USER_ATTRIBUTE)
    if not user_id and order.customer and order.customer.id is not None:
        user_id = f"customer_{order.customer.id}"

    experiment_id = attributes.get(ORDER_EXPERIMENT_ATTRIBUTE)
    variant_id = attributes.get(ORDER_VARIANT_ATTRIBUTE)
    if not (user_id and experiment_id and variant_id):
        return None

    try:
        experiment_id = int(experiment_id)
        variant_id = int(variant_id)
    except ValueError:
        logger.warning("Order #%d carries malformed experiment attributes: %s / %s",
                       order.id, experiment_id, variant_id)
        return None

    return {
        "user_id": user_id,
        "experiment_id": experiment_id,
        "variant_id": variant_id,
        "order_id": str(order.id),
        "order_value": Decimal(order.total_price),
        "currency": order.currency,
    }
