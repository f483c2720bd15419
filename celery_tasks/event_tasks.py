from celery_config import celery_app
from data.database import Event, SessionLocal
from services.assignment import SqlAssignmentRegistry
from services.counters import SqlCounterStore, to_cents
from services import ingestion
from sqlalchemy.exc import OperationalError
from typing import Any
from datetime import date
from decimal import Decimal
from config import config  # initialize logging
import logging

logger = logging.getLogger(__name__)


def _day(payload: dict[str, Any]) -> date | None:
    return date.fromisoformat(payload["date"]) if payload.get("date") else None


def _write_audit_event(db, event_type: str, payload: dict[str, Any]):
    """Audit row only; the counters are already committed, so a failure here is logged and not retried."""
    try:
        order_value = payload.get("order_value")
        db.add(Event(
            type=event_type,
            user_id=payload.get("user_id"),
            experiment_id=payload["experiment_id"],
            variant_id=payload["variant_id"],
            order_id=payload.get("order_id"),
            order_value_cents=to_cents(order_value) if order_value is not None else None,
            currency=payload.get("currency"),
        ))
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("Failed to write %s audit event for EID %s", event_type, payload.get("experiment_id"))


@celery_app.task(bind=True, max_retries=3, default_retry_delay=30)
def record_conversion_task(self, payload: dict[str, Any]):
    """
    Apply one conversion to the counters, then append it to the audit log.
    Retried when the database is unavailable or locked; the increment is a
    single committed upsert, so a retried attempt never half-applies.
    """
    db = SessionLocal()
    try:
        ingestion.record_conversion(
            SqlCounterStore(db),
            experiment_id=payload["experiment_id"],
            variant_id=payload["variant_id"],
            order_value=Decimal(payload["order_value"]),
            day=_day(payload),
            registry=SqlAssignmentRegistry(db),
            user_id=payload.get("user_id"),
        )
        _write_audit_event(db, "conversion", payload)
        logger.info("Task %s[%s] recorded conversion for EID %d variant %d.",
                    self.name, self.request.id, payload["experiment_id"], payload["variant_id"])
    except OperationalError as exc:
        logger.error("Database unavailable in conversion task. Retrying...")
        raise self.retry(exc=exc)
    except Exception as exc:
        logger.error("Failed to record conversion %s: %s", payload, exc)
        raise  # re-raise so Celery marks FAILURE
    finally:
        db.close()


@celery_app.task(bind=True, max_retries=3, default_retry_delay=30)
def record_click_task(self, payload: dict[str, Any]):
    db = SessionLocal()
    try:
        ingestion.record_click(
            SqlCounterStore(db),
            experiment_id=payload["experiment_id"],
            variant_id=payload["variant_id"],
            day=_day(payload),
            registry=SqlAssignmentRegistry(db),
            user_id=payload.get("user_id"),
        )
        _write_audit_event(db, "click", payload)
    except OperationalError as exc:
        logger.error("Database unavailable in click task. Retrying...")
        raise self.retry(exc=exc)
    except Exception as exc:
        logger.error("Failed to record click %s: %s", payload, exc)
        raise
    finally:
        db.close()
