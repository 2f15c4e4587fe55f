from __future__ import annotations

import unittest
from datetime import date
from unittest.mock import patch

from tests.support import DatabaseTestCase

from gearflow.errors import Forbidden, RateLimited, ValidationError
from gearflow.models import CarBookingStatus, GearRequest, Notification, ProfileRole, RequestStatus
from gearflow.services import car_booking_service


class CarBookingServiceTests(DatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.user = self.add_profile('driver@example.com', full_name='Dana Driver')
        self.admin = self.add_profile('admin@example.com', role=ProfileRole.ADMIN)

    def _create(self, slot: str = '09:00-12:00'):
        booking = car_booking_service.create_booking(
            self.db,
            principal=self.principal_for(self.user),
            employee_name='Dana Driver',
            date_of_use=date(2026, 11, 2),
            time_slot=slot,
        )
        self.db.commit()
        return booking

    def test_pending_limit(self) -> None:
        self._create('09:00-12:00')
        self._create('13:00-17:00')
        with self.assertRaises(RateLimited):
            self._create('18:00-20:00')

    def test_approve_requires_assigned_car(self) -> None:
        booking = self._create()
        with self.assertRaises(ValidationError):
            car_booking_service.approve_booking(self.db, booking.id, admin_id=self.admin.id)

    def test_approve_mirrors_gear_request(self) -> None:
        booking = self.add_car_booking(self.user, with_car=True)
        booking, changed = car_booking_service.approve_booking(self.db, booking.id, admin_id=self.admin.id)
        self.db.commit()

        self.assertTrue(changed)
        self.assertEqual(booking.status, CarBookingStatus.APPROVED)
        mirrored = self.db.get(GearRequest, booking.request_id)
        self.assertEqual(mirrored.status, RequestStatus.APPROVED)
        self.assertEqual(mirrored.user_id, self.user.id)

        _, changed = car_booking_service.approve_booking(self.db, booking.id, admin_id=self.admin.id)
        self.assertFalse(changed)

    def test_assign_car_flags_double_booking(self) -> None:
        first = self.add_car_booking(self.user, with_car=True)
        car_id = car_booking_service.get_assignment(self.db, first.id)[0].car_id
        car_booking_service.approve_booking(self.db, first.id, admin_id=self.admin.id)
        self.db.commit()

        second = self.add_car_booking(self.admin)
        _, conflict = car_booking_service.assign_car(self.db, second.id, car_id=car_id)
        self.assertTrue(conflict)

    @patch('gearflow.services.email_service.send_email', return_value={'id': 'email-1'})
    def test_complete_twice_sends_notices_once(self, send_email_mock) -> None:
        booking = self.add_car_booking(self.user, with_car=True)
        car_booking_service.approve_booking(self.db, booking.id, admin_id=self.admin.id)
        self.db.commit()
        principal = self.principal_for(self.user)
        sleeps: list[float] = []

        first = car_booking_service.complete_booking(self.db, booking.id, principal=principal, sleep=sleeps.append)
        emails_after_first = send_email_mock.call_count
        second = car_booking_service.complete_booking(self.db, booking.id, principal=principal, sleep=sleeps.append)

        self.assertTrue(first.confirmed)
        self.assertTrue(first.transitioned)
        self.assertTrue(second.confirmed)
        self.assertFalse(second.transitioned)
        self.assertEqual(second.status, 'Completed')
        self.assertEqual(emails_after_first, 2)
        self.assertEqual(send_email_mock.call_count, emails_after_first)
        self.assertEqual(sleeps, [])

        booking = self.reload(booking)
        self.assertEqual(booking.status, CarBookingStatus.COMPLETED)
        self.assertEqual(self.db.get(GearRequest, booking.request_id).status, RequestStatus.COMPLETED)
        in_app = self.db.query(Notification).filter(Notification.title == 'Car Returned').count()
        self.assertEqual(in_app, 2)

    @patch('gearflow.services.email_service.send_email')
    def test_unconfirmed_completion_reports_unknown(self, send_email_mock) -> None:
        booking = self.add_car_booking(self.user, status=CarBookingStatus.APPROVED, with_car=True)
        sleeps: list[float] = []

        with patch.object(car_booking_service, 'select', side_effect=_never_completed):
            result = car_booking_service.complete_booking(
                self.db, booking.id, principal=self.principal_for(self.user), sleep=sleeps.append
            )

        self.assertFalse(result.confirmed)
        self.assertEqual(result.status, 'Unknown')
        self.assertEqual(len(sleeps), 2)
        send_email_mock.assert_not_called()

    def test_complete_requires_approval(self) -> None:
        booking = self._create()
        with self.assertRaises(ValidationError):
            car_booking_service.complete_booking(self.db, booking.id, principal=self.principal_for(self.user))

    def test_cancel_by_stranger_is_forbidden(self) -> None:
        booking = self._create()
        stranger = self.add_profile('stranger@example.com')
        with self.assertRaises(Forbidden):
            car_booking_service.cancel_booking(self.db, booking.id, principal=self.principal_for(stranger))

        booking, changed = car_booking_service.cancel_booking(self.db, booking.id, principal=self.principal_for(self.user))
        self.assertTrue(changed)
        self.assertEqual(booking.status, CarBookingStatus.CANCELLED)


def _never_completed(*columns):
    from sqlalchemy import literal, select

    # Stand-in for a read replica that has not caught up yet.
    return select(literal('Approved'))


if __name__ == '__main__':
    unittest.main()
