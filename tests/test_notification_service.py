from __future__ import annotations

import unittest
from datetime import datetime, timezone
from unittest.mock import patch

from tests.support import DatabaseTestCase

from gearflow.errors import ValidationError
from gearflow.models import Notification, NotificationPriority, ProfileRole, PushNotificationQueue
from gearflow.services import notification_service, request_service
from gearflow.services.email_service import EmailDeliveryError
from gearflow.services.preferences import Channel, Event, is_enabled, validate_preferences


class PreferenceTests(unittest.TestCase):
    def test_missing_entries_fall_back_to_channel_default(self) -> None:
        self.assertTrue(is_enabled({}, Channel.EMAIL, Event.GEAR_REQUESTS))
        self.assertFalse(is_enabled({'email': {'gear_requests': False}}, Channel.EMAIL, Event.GEAR_REQUESTS))
        self.assertTrue(is_enabled({'email': {'gear_requests': False}}, Channel.PUSH, Event.GEAR_REQUESTS))

    def test_unknown_keys_are_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            validate_preferences({'sms': {'gear_requests': True}})
        with self.assertRaises(ValidationError):
            validate_preferences({'email': {'birthdays': True}})
        with self.assertRaises(ValidationError):
            validate_preferences({'email': {'gear_requests': 'yes'}})

    def test_valid_payload_is_returned_clean(self) -> None:
        cleaned = validate_preferences({'push': {'security': False}})
        self.assertEqual(cleaned, {'push': {'security': False}})


class DispatchTests(DatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.user = self.add_profile('user@example.com', preferences={'email': {'gear_requests': False}})
        self.admin = self.add_profile('admin@example.com', role=ProfileRole.ADMIN)

    @patch('gearflow.services.email_service.send_email', return_value={'id': 'email-1'})
    def test_approval_respects_preferences(self, send_email_mock) -> None:
        result = notification_service.dispatch(
            self.db,
            table='gear_requests',
            operation='UPDATE',
            record={'id': 99, 'user_id': self.user.id, 'status': 'Approved'},
            old_record={'status': 'Pending'},
        )

        self.assertTrue(result['success'])
        self.assertEqual(result['errors'], [])
        self.assertEqual(result['notified'], 1)
        send_email_mock.assert_not_called()
        rows = self.db.query(Notification).filter(Notification.user_id == self.user.id).all()
        self.assertEqual([row.title for row in rows], ['Your Gear Request Was Approved!'])
        self.assertEqual(self.db.query(PushNotificationQueue).count(), 1)

    @patch('gearflow.services.email_service.send_email', side_effect=EmailDeliveryError('provider down'))
    def test_email_failure_does_not_block_other_channels(self, send_email_mock) -> None:
        result = notification_service.dispatch(
            self.db,
            table='checkins',
            operation='UPDATE',
            record={'id': 5, 'gear_id': None, 'user_id': self.user.id, 'status': 'Completed', 'condition': 'Good'},
            old_record={'status': 'Pending Admin Approval'},
        )

        self.assertTrue(result['success'])
        self.assertEqual(result['errors'], ['Email: provider down'])
        self.assertEqual(self.db.query(Notification).filter(Notification.user_id == self.user.id).count(), 1)
        self.assertEqual(self.db.query(PushNotificationQueue).count(), 1)

    def test_insert_reaches_admins_and_requester(self) -> None:
        result = notification_service.dispatch(
            self.db,
            table='gear_requests',
            operation='INSERT',
            record={'id': 1, 'user_id': self.user.id, 'status': 'Pending'},
        )

        self.assertEqual(result['notified'], 2)
        titles = {row.user_id: row.title for row in self.db.query(Notification).all()}
        self.assertEqual(titles[self.admin.id], 'New Gear Request Submitted')
        self.assertEqual(titles[self.user.id], 'Gear Request Submitted')

    def test_unchanged_status_and_notification_rows_are_ignored(self) -> None:
        same = notification_service.dispatch(
            self.db,
            table='gear_requests',
            operation='UPDATE',
            record={'id': 1, 'user_id': self.user.id, 'status': 'Approved'},
            old_record={'status': 'Approved'},
        )
        echo = notification_service.dispatch(
            self.db,
            table='notifications',
            operation='INSERT',
            record={'id': 1, 'user_id': self.user.id},
        )

        self.assertEqual(same['notified'], 0)
        self.assertEqual(echo['notified'], 0)
        self.assertEqual(self.db.query(Notification).count(), 0)

    def test_login_alert_writes_notification_and_push(self) -> None:
        result = notification_service.create_login_alert(self.db, profile=self.user, ip='10.0.0.1', user_agent='tests')
        self.db.commit()

        self.assertEqual(result, {'in_app': True, 'push': True})
        alert = self.db.query(Notification).one()
        self.assertEqual(alert.type, 'Login Alert')
        self.assertEqual(alert.category, 'Security')
        self.assertIn('10.0.0.1', alert.message)
        self.assertEqual(self.db.query(PushNotificationQueue).one().user_id, self.user.id)

    def test_mark_read_only_touches_own_rows(self) -> None:
        mine = notification_service.create_notification(
            self.db, user_id=self.user.id, type='general', title='Hello', message='World'
        )
        theirs = notification_service.create_notification(
            self.db, user_id=self.admin.id, type='general', title='Hello', message='World'
        )
        self.db.commit()

        updated = notification_service.mark_read(self.db, user_id=self.user.id, notification_ids=[mine.id, theirs.id])
        self.db.commit()

        self.assertEqual(updated, 1)
        self.assertTrue(self.reload(mine).is_read)
        self.assertFalse(self.reload(theirs).is_read)



class OverdueReminderTests(DatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.user = self.add_profile('user@example.com', preferences={'email': {'overdue_reminders': False}})
        self.other = self.add_profile('other@example.com')
        self.camera = self.add_gear('Camera', quantity=3)
        self.tripod = self.add_gear('Tripod', quantity=3)
        self.now = datetime(2026, 11, 10, 9, 0, tzinfo=timezone.utc)

    def _approved(self, user, lines, due_date):
        request = request_service.submit_request(self.db, user_id=user.id, lines=lines)
        request_service.approve_request(self.db, request.id)
        request.due_date = due_date
        self.db.commit()
        return request

    @patch('gearflow.services.email_service.send_email', return_value={'id': 'email-1'})
    def test_only_open_overdue_lines_are_reminded(self, send_email_mock) -> None:
        self._approved(
            self.user,
            [(self.camera.id, 1), (self.tripod.id, 1)],
            datetime(2026, 11, 7, 9, 0, tzinfo=timezone.utc),
        )
        self._approved(self.other, [(self.camera.id, 1)], datetime(2026, 11, 20, tzinfo=timezone.utc))
        cancelled = self._approved(self.other, [(self.tripod.id, 1)], datetime(2026, 11, 1, tzinfo=timezone.utc))
        request_service.cancel_request(self.db, cancelled.id, principal=self.principal_for(self.other))
        self.db.commit()

        result = notification_service.send_overdue_reminders(self.db, now=self.now)

        self.assertEqual(result, {'success': True, 'overdueUsers': 1, 'notified': 1, 'errors': []})
        send_email_mock.assert_not_called()
        reminder = self.db.query(Notification).one()
        self.assertEqual(reminder.user_id, self.user.id)
        self.assertEqual(reminder.type, 'overdue_reminder')
        self.assertEqual(reminder.priority, NotificationPriority.HIGH)
        self.assertIn('Camera, Tripod are overdue by 3 days', reminder.message)
        self.assertEqual(self.db.query(PushNotificationQueue).one().user_id, self.user.id)

    @patch('gearflow.services.email_service.send_email', return_value={'id': 'email-1'})
    def test_returned_lines_are_not_reminded(self, send_email_mock) -> None:
        request = self._approved(self.other, [(self.camera.id, 2)], datetime(2026, 11, 9, tzinfo=timezone.utc))
        request_service.record_return(self.db, request, gear_id=self.camera.id, units=2)
        self.db.commit()

        result = notification_service.send_overdue_reminders(self.db, now=self.now)

        self.assertEqual(result['overdueUsers'], 0)
        send_email_mock.assert_not_called()


if __name__ == '__main__':
    unittest.main()
