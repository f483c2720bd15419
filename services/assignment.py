from sqlalchemy import select, func
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError
from collections import defaultdict
from datetime import datetime, timezone
from fastapi import HTTPException
import logging
import threading

from data.database import Assignment, Visitor, dialect_insert
from models.experiments import AssignmentBreakdown, AssignmentContext, AssignmentRecord
from services.user_agent import UNKNOWN_DEVICE

logger = logging.getLogger(__name__)

# Define the maximum number of times to retry the transaction
MAX_RETRIES = 3


class AssignmentRegistry:
    """
    At most one (user, experiment) -> variant mapping, created on first impression.

    assign_if_absent is a compare-and-swap: the first committed write wins
    and every caller, whichever variant it asked for, gets that row back.
    The new/returning visitor flag is decided inside the same per-user
    critical section as the insert, so two experiments racing on the same
    page cannot both classify the user as new.
    """

    def assign_if_absent(self, user_id: str, experiment_id: int, variant_id: int,
                         context: AssignmentContext | None = None) -> tuple[AssignmentRecord, bool]:
        raise NotImplementedError

    def get_assignment(self, user_id: str, experiment_id: int) -> AssignmentRecord | None:
        raise NotImplementedError

    def has_any_assignment(self, user_id: str) -> bool:
        raise NotImplementedError

    def assignment_breakdown(self, experiment_id: int) -> AssignmentBreakdown:
        """Assignment counts of one experiment, for the data audit."""
        raise NotImplementedError


def _visitor_type_counts(counts: dict[bool | None, int]) -> dict[str, int]:
    return {
        "new_visitors": counts.get(True, 0),
        "returning_visitors": counts.get(False, 0),
        "unknown_visitor_type": counts.get(None, 0),
    }


class SqlAssignmentRegistry(AssignmentRegistry):

    def __init__(self, db: Session):
        self.db = db

    def _find(self, user_id: str, experiment_id: int) -> Assignment | None:
        return self.db.scalars(
            select(Assignment).where(
                Assignment.user_id == user_id,
                Assignment.experiment_id == experiment_id,
            )
        ).first()

    def get_assignment(self, user_id, experiment_id):
        existing = self._find(user_id, experiment_id)
        return AssignmentRecord.model_validate(existing) if existing else None

    def has_any_assignment(self, user_id):
        count = self.db.scalar(select(func.count()).select_from(Assignment).where(Assignment.user_id == user_id))
        return bool(count)

    def _count_by(self, column, experiment_id: int) -> dict:
        query = (
            select(column, func.count())
            .where(Assignment.experiment_id == experiment_id)
            .group_by(column)
        )
        return {key: int(count) for key, count in self.db.execute(query)}

    def assignment_breakdown(self, experiment_id):
        # (user_id, experiment_id) is the primary key, so row counts are distinct users
        by_variant = self._count_by(Assignment.variant_id, experiment_id)
        by_device = self._count_by(Assignment.device_type, experiment_id)
        by_visitor_type = self._count_by(Assignment.is_new_visitor, experiment_id)
        return AssignmentBreakdown(
            total=sum(by_variant.values()),
            by_variant=by_variant,
            by_device={(device or UNKNOWN_DEVICE): count for device, count in by_device.items()},
            **_visitor_type_counts(by_visitor_type),
        )

    def _lock_visitor(self, user_id: str):
        """
        Enter the per-user critical section.
        The upsert takes the SQLite write lock; FOR UPDATE takes the row lock on PostgreSQL.
        Both are held until commit or rollback.
        """
        stmt = dialect_insert(self.db, Visitor).values(
            user_id=user_id, first_seen_at=datetime.now(timezone.utc)
        ).on_conflict_do_nothing(index_elements=["user_id"])
        self.db.execute(stmt)
        self.db.execute(select(Visitor.user_id).where(Visitor.user_id == user_id).with_for_update())

    def assign_if_absent(self, user_id, experiment_id, variant_id, context=None):
        context = context or AssignmentContext()

        # Repeat impressions are the common case and need no lock
        existing = self._find(user_id, experiment_id)
        if existing:
            return AssignmentRecord.model_validate(existing), False

        for attempt in range(MAX_RETRIES):
            try:
                self._lock_visitor(user_id)

                # A concurrent first impression may have committed while we waited for the lock
                existing = self._find(user_id, experiment_id)
                if existing:
                    record = AssignmentRecord.model_validate(existing)
                    self.db.commit()
                    logger.info("Found persistent assignment for user %s on EID %d: variant %d",
                                user_id, experiment_id, record.variant_id)
                    return record, False

                is_new_visitor = not self.has_any_assignment(user_id)
                new_assignment = Assignment(
                    user_id=user_id,
                    experiment_id=experiment_id,
                    variant_id=variant_id,
                    assigned_at=datetime.now(timezone.utc),
                    assignment_method=context.assignment_method,
                    is_new_visitor=is_new_visitor,
                    user_agent=context.user_agent,
                    device_type=context.device_type,
                    country=context.country,
                )
                self.db.add(new_assignment)
                self.db.flush()
                record = AssignmentRecord.model_validate(new_assignment)
                self.db.commit()

                logger.info("SUCCESS: User %s newly assigned to variant %d (EID %d, new_visitor=%s) on attempt %d.",
                            user_id, variant_id, experiment_id, is_new_visitor, attempt + 1)
                return record, True

            except IntegrityError:
                # Another process inserted the same (user, experiment) without going through the visitor lock
                self.db.rollback()
                logger.warning("RACE DETECTED: IntegrityError on user %s (EID %d). Retrying (Attempt %d/%d)...",
                               user_id, experiment_id, attempt + 2, MAX_RETRIES)
                existing = self._find(user_id, experiment_id)
                if existing:
                    return AssignmentRecord.model_validate(existing), False

            except Exception:
                self.db.rollback()
                logger.exception("An unexpected error occurred during assignment for user %s.", user_id)
                raise HTTPException(status_code=400, detail=f"Experiment ID {experiment_id} unable to create assignment.")

        logger.warning("Failed to get or create assignment for user %s after %d attempts.", user_id, MAX_RETRIES)
        raise HTTPException(status_code=400, detail=f"Experiment ID {experiment_id} unable to create assignment.")


class InMemoryAssignmentRegistry(AssignmentRegistry):
    """
    Process-local registry. A user's first-assignment decision runs under
    one of a fixed set of striped locks, so the lock table does not grow
    with the number of users.
    """

    LOCK_STRIPES = 64

    def __init__(self):
        self._assignments: dict[tuple[str, int], AssignmentRecord] = {}
        # user_id -> experiment ids the user is assigned in
        self._by_user: defaultdict[str, set[int]] = defaultdict(set)
        self._locks = [threading.Lock() for _ in range(self.LOCK_STRIPES)]

    def _user_lock(self, user_id: str) -> threading.Lock:
        return self._locks[hash(user_id) % self.LOCK_STRIPES]

    def get_assignment(self, user_id, experiment_id):
        return self._assignments.get((user_id, experiment_id))

    def has_any_assignment(self, user_id):
        return bool(self._by_user.get(user_id))

    def assign_if_absent(self, user_id, experiment_id, variant_id, context=None):
        context = context or AssignmentContext()
        with self._user_lock(user_id):
            existing = self._assignments.get((user_id, experiment_id))
            if existing:
                return existing, False

            record = AssignmentRecord(
                user_id=user_id,
                experiment_id=experiment_id,
                variant_id=variant_id,
                assigned_at=datetime.now(timezone.utc),
                assignment_method=context.assignment_method,
                is_new_visitor=not self.has_any_assignment(user_id),
                device_type=context.device_type,
                country=context.country,
            )
            self._assignments[(user_id, experiment_id)] = record
            self._by_user[user_id].add(experiment_id)
            logger.debug("user %s assigned to variant %d (EID %d)", user_id, variant_id, experiment_id)
            return record, True

    def assignment_breakdown(self, experiment_id):
        records = [r for r in list(self._assignments.values()) if r.experiment_id == experiment_id]
        by_variant: dict[int, int] = {}
        by_device: dict[str, int] = {}
        by_visitor_type: dict[bool | None, int] = {}
        for record in records:
            by_variant[record.variant_id] = by_variant.get(record.variant_id, 0) + 1
            device = record.device_type or UNKNOWN_DEVICE
            by_device[device] = by_device.get(device, 0) + 1
            by_visitor_type[record.is_new_visitor] = by_visitor_type.get(record.is_new_visitor, 0) + 1
        return AssignmentBreakdown(
            total=len(records),
            by_variant=by_variant,
            by_device=by_device,
            **_visitor_type_counts(by_visitor_type),
        )

    def count(self) -> int:
        return len(self._assignments)
