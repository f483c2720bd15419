import os
import tempfile
import unittest
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock, patch
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker
from fastapi import HTTPException
import logging
import threading

from data.database import Assignment, build_engine, create_tables
from models.experiments import AssignmentContext
from services.assignment import (
    InMemoryAssignmentRegistry,
    SqlAssignmentRegistry,
    MAX_RETRIES,
)

# Set up logging to capture output during tests
logging.basicConfig(level=logging.INFO)


def _existing(user_id="u1", experiment_id=1, variant_id=10):
    return Assignment(
        user_id=user_id,
        experiment_id=experiment_id,
        variant_id=variant_id,
        assignment_method="hash",
        is_new_visitor=True,
    )


# The visitor lock is a dialect-specific upsert; the session itself is a mock here
@patch('services.assignment.dialect_insert', MagicMock())
class TestSqlAssignmentRegistry(unittest.TestCase):

    def setUp(self):
        self.mock_db = MagicMock()
        self.mock_db.scalar.return_value = 0  # has_any_assignment
        self.registry = SqlAssignmentRegistry(self.mock_db)

    def test_assign_if_absent_existing_happy_path(self):
        """A repeat impression returns the stored assignment without writing."""
        self.mock_db.scalars.return_value.first.return_value = _existing(variant_id=10)

        record, created = self.registry.assign_if_absent('u1', 1, variant_id=20)

        self.assertFalse(created)
        self.assertEqual(record.variant_id, 10)
        self.mock_db.add.assert_not_called()
        self.mock_db.commit.assert_not_called()
        self.mock_db.rollback.assert_not_called()

    def test_assign_if_absent_new_creation_happy_path(self):
        self.mock_db.scalars.return_value.first.return_value = None

        context = AssignmentContext(user_agent="Mozilla/5.0 (iPhone)", device_type="mobile", country="US")
        record, created = self.registry.assign_if_absent('u2', 1, variant_id=20, context=context)

        self.assertTrue(created)
        self.assertEqual(record.user_id, 'u2')
        self.assertEqual(record.variant_id, 20)
        self.assertEqual(record.device_type, "mobile")
        self.assertEqual(record.country, "US")
        self.assertTrue(record.is_new_visitor)
        self.mock_db.add.assert_called_once()
        self.mock_db.commit.assert_called_once()
        self.mock_db.rollback.assert_not_called()

    def test_assign_if_absent_returning_visitor(self):
        """A user already assigned in another experiment is not a new visitor."""
        self.mock_db.scalars.return_value.first.return_value = None
        self.mock_db.scalar.return_value = 1

        record, created = self.registry.assign_if_absent('u2', 2, variant_id=30)

        self.assertTrue(created)
        self.assertFalse(record.is_new_visitor)

    def test_assign_if_absent_committed_while_waiting_for_lock(self):
        """Another request committed between the fast-path read and taking the visitor lock."""
        self.mock_db.scalars.return_value.first.side_effect = [
            None,                      # fast path
            _existing(variant_id=11),  # re-check under the lock
        ]

        record, created = self.registry.assign_if_absent('u3', 1, variant_id=12)

        self.assertFalse(created)
        self.assertEqual(record.variant_id, 11)
        self.mock_db.add.assert_not_called()
        self.mock_db.commit.assert_called_once()

    def test_assign_if_absent_race_condition_recovery(self):
        """An IntegrityError on insert is recovered by reading the competing row."""
        self.mock_db.scalars.return_value.first.side_effect = [
            None,                      # fast path
            None,                      # re-check under the lock
            _existing(user_id='u4', variant_id=10),  # read after rollback
        ]
        self.mock_db.flush.side_effect = IntegrityError("Race", "Params", "Statement")

        record, created = self.registry.assign_if_absent('u4', 1, variant_id=20)

        self.assertFalse(created)
        self.assertEqual(record.variant_id, 10)
        self.mock_db.commit.assert_not_called()
        self.mock_db.rollback.assert_called_once()

    def test_assign_if_absent_exceeds_max_retries_sad_path(self):
        self.mock_db.scalars.return_value.first.return_value = None
        self.mock_db.flush.side_effect = IntegrityError("Race", "Params", "Statement")

        with self.assertRaisesRegex(HTTPException, "unable to create assignment"):
            self.registry.assign_if_absent('u5', 1, variant_id=20)

        self.assertEqual(self.mock_db.flush.call_count, MAX_RETRIES)
        self.assertEqual(self.mock_db.rollback.call_count, MAX_RETRIES)

    def test_assign_if_absent_unexpected_exception_sad_path(self):
        self.mock_db.scalars.return_value.first.return_value = None
        self.mock_db.commit.side_effect = Exception("Database is down")

        with self.assertRaisesRegex(HTTPException, "unable to create assignment"):
            self.registry.assign_if_absent('u6', 1, variant_id=20)

        self.mock_db.commit.assert_called_once()
        self.mock_db.rollback.assert_called_once()

    def test_get_assignment_missing(self):
        self.mock_db.scalars.return_value.first.return_value = None
        self.assertIsNone(self.registry.get_assignment('nobody', 1))


class TestSqlAssignmentRegistryConcurrency(unittest.TestCase):
    """Real SQLite file, one session per thread."""

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.engine = build_engine(f"sqlite:///{os.path.join(self.tmpdir.name, 'assignments.db')}")
        create_tables(bind=self.engine)
        self.Session = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def tearDown(self):
        self.engine.dispose()
        self.tmpdir.cleanup()

    def _assign(self, user_id, experiment_id, variant_id):
        db = self.Session()
        try:
            record, created = SqlAssignmentRegistry(db).assign_if_absent(user_id, experiment_id, variant_id)
            return record.variant_id, created
        finally:
            db.close()

    def test_concurrent_first_impressions_create_one_assignment(self):
        with ThreadPoolExecutor(max_workers=10) as pool:
            results = list(pool.map(lambda i: self._assign("racer", 1, 100 + i), range(50)))

        variants = {variant_id for variant_id, _ in results}
        self.assertEqual(len(variants), 1)
        self.assertEqual(sum(1 for _, created in results if created), 1)

        db = self.Session()
        try:
            rows = db.query(Assignment).filter(Assignment.user_id == "racer").all()
            self.assertEqual(len(rows), 1)
            self.assertEqual(rows[0].variant_id, variants.pop())
        finally:
            db.close()

    def test_only_first_experiment_sees_new_visitor(self):
        db = self.Session()
        try:
            registry = SqlAssignmentRegistry(db)
            first, _ = registry.assign_if_absent("u1", 1, 10)
            second, _ = registry.assign_if_absent("u1", 2, 20)
            self.assertTrue(first.is_new_visitor)
            self.assertFalse(second.is_new_visitor)
            self.assertTrue(registry.has_any_assignment("u1"))
            self.assertFalse(registry.has_any_assignment("u2"))
        finally:
            db.close()

    def test_concurrent_experiments_one_new_visitor(self):
        """Eight experiments hit one user at the same moment; the visitor lock lets only one see a new visitor."""
        barrier = threading.Barrier(8)

        def first_impression(experiment_id):
            db = self.Session()
            try:
                barrier.wait()
                record, created = SqlAssignmentRegistry(db).assign_if_absent("shared", experiment_id, 1)
                return record.is_new_visitor, created
            finally:
                db.close()

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(first_impression, range(1, 9)))

        self.assertEqual(sum(1 for is_new, _ in results if is_new), 1)
        self.assertTrue(all(created for _, created in results))

        db = self.Session()
        try:
            registry = SqlAssignmentRegistry(db)
            self.assertTrue(registry.has_any_assignment("shared"))
            self.assertEqual(db.query(Assignment).filter(Assignment.user_id == "shared").count(), 8)
        finally:
            db.close()

    def test_assignment_breakdown(self):
        db = self.Session()
        try:
            registry = SqlAssignmentRegistry(db)
            registry.assign_if_absent("u1", 1, 10, AssignmentContext(device_type="mobile"))
            registry.assign_if_absent("u2", 1, 11, AssignmentContext(device_type="desktop"))
            registry.assign_if_absent("u3", 2, 20)
            registry.assign_if_absent("u3", 1, 11)

            breakdown = registry.assignment_breakdown(1)
            self.assertEqual(breakdown.total, 3)
            self.assertEqual(breakdown.by_variant, {10: 1, 11: 2})
            self.assertEqual(breakdown.by_device, {"mobile": 1, "desktop": 1, "unknown": 1})
            self.assertEqual(breakdown.new_visitors, 2)
            self.assertEqual(breakdown.returning_visitors, 1)
            self.assertEqual(registry.assignment_breakdown(99).total, 0)
        finally:
            db.close()


class TestInMemoryAssignmentRegistry(unittest.TestCase):

    def setUp(self):
        self.registry = InMemoryAssignmentRegistry()

    def test_first_write_wins(self):
        first, created_first = self.registry.assign_if_absent("u1", 1, 10)
        second, created_second = self.registry.assign_if_absent("u1", 1, 20)

        self.assertTrue(created_first)
        self.assertFalse(created_second)
        self.assertEqual(second.variant_id, 10)
        self.assertEqual(self.registry.get_assignment("u1", 1), first)

    def test_concurrent_assign_if_absent(self):
        with ThreadPoolExecutor(max_workers=16) as pool:
            results = list(pool.map(lambda i: self.registry.assign_if_absent("racer", 7, i), range(50)))

        self.assertEqual(self.registry.count(), 1)
        self.assertEqual(len({record.variant_id for record, _ in results}), 1)
        self.assertEqual(sum(1 for _, created in results if created), 1)

    def test_concurrent_experiments_one_new_visitor(self):
        """Two experiments racing on one user: only one of them classifies the user as new."""
        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda eid: self.registry.assign_if_absent("shared", eid, 1), range(1, 9)))

        self.assertEqual(sum(1 for record, _ in results if record.is_new_visitor), 1)

    def test_has_any_assignment(self):
        self.assertFalse(self.registry.has_any_assignment("u1"))
        self.registry.assign_if_absent("u1", 1, 10)
        self.assertTrue(self.registry.has_any_assignment("u1"))
        self.assertFalse(self.registry.has_any_assignment("u2"))

    def test_many_users_share_a_fixed_lock_table(self):
        for i in range(500):
            self.registry.assign_if_absent(f"user-{i}", 1, 10)
        self.assertEqual(self.registry.count(), 500)
        self.assertEqual(len(self.registry._locks), InMemoryAssignmentRegistry.LOCK_STRIPES)

    def test_assignment_breakdown(self):
        self.registry.assign_if_absent("u1", 1, 10, AssignmentContext(device_type="tablet"))
        self.registry.assign_if_absent("u2", 1, 11)
        self.registry.assign_if_absent("u2", 2, 20)
        self.registry.assign_if_absent("u3", 2, 21)
        self.registry.assign_if_absent("u3", 1, 10)

        breakdown = self.registry.assignment_breakdown(1)
        self.assertEqual(breakdown.total, 3)
        self.assertEqual(breakdown.by_variant, {10: 2, 11: 1})
        self.assertEqual(breakdown.by_device, {"tablet": 1, "unknown": 2})
        self.assertEqual(breakdown.new_visitors, 2)
        self.assertEqual(breakdown.returning_visitors, 1)
        self.assertEqual(breakdown.unknown_visitor_type, 0)


if __name__ == '__main__':
    unittest.main()
