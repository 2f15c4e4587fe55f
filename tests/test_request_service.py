from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone

from tests.support import DatabaseTestCase

from gearflow.errors import Conflict, Forbidden, ValidationError
from gearflow.models import GearStatus, ProfileRole, RequestStatus
from gearflow.services import checkin_service, gear_service, request_service


class CalculateDueDateTests(unittest.TestCase):
    def test_known_durations(self) -> None:
        start = datetime(2026, 1, 1, tzinfo=timezone.utc)
        self.assertEqual(request_service.calculate_due_date('24hours', start=start), start + timedelta(days=1))
        self.assertEqual(request_service.calculate_due_date('2 weeks', start=start), start + timedelta(days=14))
        self.assertEqual(request_service.calculate_due_date('Month', start=start), start + timedelta(days=30))
        self.assertEqual(request_service.calculate_due_date('1year', start=start), start + timedelta(days=365))

    def test_unknown_duration_defaults_to_one_week(self) -> None:
        start = datetime(2026, 1, 1, tzinfo=timezone.utc)
        self.assertEqual(request_service.calculate_due_date('whenever', start=start), start + timedelta(days=7))
        self.assertEqual(request_service.calculate_due_date(None, start=start), start + timedelta(days=7))


class RequestLifecycleTests(DatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.user = self.add_profile('user@example.com')
        self.other = self.add_profile('other@example.com')
        self.admin = self.add_profile('admin@example.com', role=ProfileRole.ADMIN)

    def _submit(self, gear, quantity, user=None):
        request = request_service.submit_request(
            self.db,
            user_id=(user or self.user).id,
            lines=[(gear.id, quantity)],
            expected_duration='1 week',
        )
        self.db.commit()
        return request

    def test_partial_then_full_checkout(self) -> None:
        gear = self.add_gear('Sony FX3', quantity=5)

        first = self._submit(gear, 2)
        request_service.approve_request(self.db, first.id)
        self.db.commit()
        gear = self.reload(gear)
        self.assertEqual(gear.available_quantity, 3)
        self.assertEqual(gear.status, GearStatus.PARTIALLY_CHECKED_OUT)
        self.assertEqual(gear.checked_out_to, self.user.id)
        self.assertEqual(gear.current_request_id, first.id)

        second = self._submit(gear, 3, user=self.other)
        request_service.approve_request(self.db, second.id)
        self.db.commit()
        gear = self.reload(gear)
        self.assertEqual(gear.available_quantity, 0)
        self.assertEqual(gear.status, GearStatus.CHECKED_OUT)

    def test_submit_rejects_more_than_available(self) -> None:
        gear = self.add_gear('Tripod', quantity=2)
        with self.assertRaises(Conflict) as ctx:
            request_service.submit_request(self.db, user_id=self.user.id, lines=[(gear.id, 3)])
        self.assertIn('Requested 3, available 2', ctx.exception.message)

    def test_submit_merges_duplicate_lines(self) -> None:
        gear = self.add_gear('Light', quantity=4)
        request = request_service.submit_request(self.db, user_id=self.user.id, lines=[(gear.id, 1), (gear.id, 2)])
        self.assertEqual(len(request.lines), 1)
        self.assertEqual(request.lines[0].quantity, 3)
        self.assertEqual(request.status, RequestStatus.PENDING)

    def test_submit_requires_lines(self) -> None:
        with self.assertRaises(ValidationError):
            request_service.submit_request(self.db, user_id=self.user.id, lines=[])

    def test_approve_is_idempotent(self) -> None:
        gear = self.add_gear('Mic', quantity=3)
        request = self._submit(gear, 1)
        _, changed = request_service.approve_request(self.db, request.id)
        self.db.commit()
        self.assertTrue(changed)

        _, changed = request_service.approve_request(self.db, request.id)
        self.db.commit()
        self.assertFalse(changed)
        self.assertEqual(self.reload(gear).available_quantity, 2)

    def test_approve_rechecks_availability_without_partial_writes(self) -> None:
        gear_a = self.add_gear('Lens A', quantity=1)
        gear_b = self.add_gear('Lens B', quantity=1)
        request = request_service.submit_request(
            self.db, user_id=self.user.id, lines=[(gear_a.id, 1), (gear_b.id, 1)]
        )
        self.db.commit()
        gear_b.available_quantity = 0
        gear_b.status = GearStatus.CHECKED_OUT
        self.db.commit()

        with self.assertRaises(Conflict):
            request_service.approve_request(self.db, request.id)
        self.db.rollback()

        self.assertEqual(self.reload(gear_a).available_quantity, 1)
        self.assertEqual(self.reload(request).status, RequestStatus.PENDING)

    def test_reject_only_from_reviewable_states(self) -> None:
        gear = self.add_gear('Drone')
        request = self._submit(gear, 1)
        request_service.reject_request(self.db, request.id, reason='Booked for a shoot')
        self.db.commit()
        self.assertEqual(self.reload(request).status, RequestStatus.REJECTED)

        _, changed = request_service.reject_request(self.db, request.id)
        self.assertFalse(changed)
        with self.assertRaises(Conflict):
            request_service.approve_request(self.db, request.id)

    def test_cancel_approved_request_restores_availability(self) -> None:
        gear = self.add_gear('Gimbal', quantity=3)
        request = self._submit(gear, 2)
        request_service.approve_request(self.db, request.id)
        self.db.commit()

        request_service.cancel_request(self.db, request.id, principal=self.principal_for(self.user))
        self.db.commit()

        gear = self.reload(gear)
        self.assertEqual(gear.available_quantity, 3)
        self.assertEqual(gear.status, GearStatus.AVAILABLE)
        self.assertIsNone(gear.checked_out_to)
        self.assertEqual(self.reload(request).status, RequestStatus.CANCELLED)

    def test_cancel_waits_for_pending_checkin(self) -> None:
        gear = self.add_gear('Light panel', quantity=3)
        mine = self._submit(gear, 1)
        theirs = self._submit(gear, 1, user=self.other)
        request_service.approve_request(self.db, mine.id)
        request_service.approve_request(self.db, theirs.id)
        self.db.commit()
        checkin = checkin_service.submit_checkin(self.db, principal=self.principal_for(self.user), gear_id=gear.id)
        self.db.commit()

        with self.assertRaises(Conflict):
            request_service.cancel_request(self.db, mine.id, principal=self.principal_for(self.user))
        self.db.rollback()

        checkin_service.approve_checkin(self.db, checkin.id, admin_id=self.admin.id)
        self.db.commit()

        gear = self.reload(gear)
        self.assertEqual(gear.available_quantity, 2)
        self.assertEqual(gear.status, GearStatus.PARTIALLY_CHECKED_OUT)
        self.assertEqual(gear_service.units_out(self.db, gear.id), 1)
        self.assertEqual(self.reload(mine).status, RequestStatus.COMPLETED)

    def test_cancel_after_rejected_checkin_releases_units_once(self) -> None:
        gear = self.add_gear('Dolly', quantity=2)
        mine = self._submit(gear, 1)
        theirs = self._submit(gear, 1, user=self.other)
        request_service.approve_request(self.db, mine.id)
        request_service.approve_request(self.db, theirs.id)
        self.db.commit()
        checkin = checkin_service.submit_checkin(self.db, principal=self.principal_for(self.user), gear_id=gear.id)
        self.db.commit()
        checkin_service.reject_checkin(self.db, checkin.id, admin_id=self.admin.id)
        self.db.commit()

        request_service.cancel_request(self.db, mine.id, principal=self.principal_for(self.user))
        self.db.commit()

        gear = self.reload(gear)
        self.assertEqual(gear.available_quantity, 1)
        self.assertEqual(gear.status, GearStatus.PARTIALLY_CHECKED_OUT)

    def test_approve_after_handover_and_return_is_a_no_op(self) -> None:
        gear = self.add_gear('Recorder', quantity=2)
        request = self._submit(gear, 1)
        request_service.approve_request(self.db, request.id)
        request_service.mark_checked_out(self.db, request.id)
        self.db.commit()

        _, changed = request_service.approve_request(self.db, request.id)
        self.assertFalse(changed)

        checkin = checkin_service.submit_checkin(self.db, principal=self.principal_for(self.user), gear_id=gear.id)
        checkin_service.approve_checkin(self.db, checkin.id, admin_id=self.admin.id)
        self.db.commit()
        self.assertEqual(self.reload(request).status, RequestStatus.COMPLETED)

        completed, changed = request_service.approve_request(self.db, request.id)
        self.assertFalse(changed)
        self.assertEqual(completed.status, RequestStatus.COMPLETED)
        self.assertEqual(self.reload(gear).available_quantity, 2)

    def test_cancel_by_stranger_is_forbidden(self) -> None:
        gear = self.add_gear('Monitor')
        request = self._submit(gear, 1)
        with self.assertRaises(Forbidden):
            request_service.cancel_request(self.db, request.id, principal=self.principal_for(self.other))

        _, changed = request_service.cancel_request(self.db, request.id, principal=self.principal_for(self.admin))
        self.assertTrue(changed)

    def test_list_requests_filters_and_counts(self) -> None:
        gear = self.add_gear('Slider', quantity=5)
        self._submit(gear, 1)
        self._submit(gear, 1)
        self._submit(gear, 1, user=self.other)

        rows, total = request_service.list_requests(self.db, user_id=self.user.id, page=1, page_size=1)
        self.assertEqual(total, 2)
        self.assertEqual(len(rows), 1)


if __name__ == '__main__':
    unittest.main()
