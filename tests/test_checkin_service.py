from __future__ import annotations

import unittest

from tests.support import DatabaseTestCase

from gearflow.errors import Conflict, Forbidden
from gearflow.models import Checkin, CheckinStatus, GearCondition, GearStatus, ProfileRole, RequestStatus
from gearflow.services import checkin_service, gear_service, request_service


class CheckinServiceTests(DatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.user = self.add_profile('user@example.com')
        self.admin = self.add_profile('admin@example.com', role=ProfileRole.ADMIN)

    def _checked_out(self, name: str, *, quantity: int = 1, units: int = 1):
        gear = self.add_gear(name, quantity=quantity)
        request = request_service.submit_request(self.db, user_id=self.user.id, lines=[(gear.id, units)])
        request_service.approve_request(self.db, request.id)
        self.db.commit()
        return gear, request

    def test_damaged_checkin_sends_gear_to_repair(self) -> None:
        gear = self.add_gear(
            'Camera body',
            quantity=1,
            available=0,
            status=GearStatus.CHECKED_OUT,
            checked_out_to=self.user.id,
        )
        checkin = Checkin(
            gear_id=gear.id,
            user_id=self.user.id,
            status=CheckinStatus.PENDING_ADMIN_APPROVAL,
            condition=GearCondition.DAMAGED,
            quantity=1,
            damage_notes='Cracked screen',
        )
        self.db.add(checkin)
        self.db.commit()

        checkin_service.approve_checkin(self.db, checkin.id, admin_id=self.admin.id)
        self.db.commit()

        gear = self.reload(gear)
        self.assertEqual(gear.status, GearStatus.NEEDS_REPAIR)
        self.assertEqual(gear.available_quantity, 0)
        self.assertIsNone(gear.checked_out_to)
        self.assertEqual(self.reload(checkin).status, CheckinStatus.COMPLETED)

    def test_reapproving_completed_checkin_does_not_double_credit(self) -> None:
        gear, request = self._checked_out('Lens kit', quantity=3, units=2)
        checkin = checkin_service.submit_checkin(
            self.db,
            principal=self.principal_for(self.user),
            gear_id=gear.id,
            quantity=1,
        )
        self.db.commit()

        _, changed = checkin_service.approve_checkin(self.db, checkin.id, admin_id=self.admin.id)
        self.db.commit()
        self.assertTrue(changed)
        self.assertEqual(self.reload(gear).available_quantity, 2)

        _, changed = checkin_service.approve_checkin(self.db, checkin.id, admin_id=self.admin.id)
        self.db.commit()
        self.assertFalse(changed)
        self.assertEqual(self.reload(gear).available_quantity, 2)

    def test_submission_holds_units_until_approval(self) -> None:
        gear, request = self._checked_out('Recorder')
        checkin = checkin_service.submit_checkin(self.db, principal=self.principal_for(self.user), gear_id=gear.id)
        self.db.commit()

        gear = self.reload(gear)
        self.assertEqual(gear.status, GearStatus.PENDING_CHECKIN)
        self.assertEqual(gear.available_quantity, 0)
        self.assertEqual(checkin.request_id, request.id)
        self.assertEqual(checkin.status, CheckinStatus.PENDING_ADMIN_APPROVAL)

        checkin_service.approve_checkin(self.db, checkin.id, admin_id=self.admin.id)
        self.db.commit()
        gear = self.reload(gear)
        self.assertEqual(gear.status, GearStatus.AVAILABLE)
        self.assertEqual(gear.available_quantity, 1)
        self.assertIsNone(gear.checked_out_to)
        self.assertIsNone(gear.current_request_id)
        self.assertEqual(self.reload(request).status, RequestStatus.COMPLETED)

    def test_partial_return_keeps_request_open(self) -> None:
        gear, request = self._checked_out('Batteries', quantity=4, units=3)
        first = checkin_service.submit_checkin(
            self.db, principal=self.principal_for(self.user), gear_id=gear.id, quantity=1
        )
        self.db.commit()
        checkin_service.approve_checkin(self.db, first.id, admin_id=self.admin.id)
        self.db.commit()

        gear = self.reload(gear)
        self.assertEqual(gear.available_quantity, 2)
        self.assertEqual(gear.status, GearStatus.PARTIALLY_CHECKED_OUT)
        self.assertEqual(gear.checked_out_to, self.user.id)
        self.assertEqual(self.reload(request).status, RequestStatus.PARTIALLY_RETURNED)

        second = checkin_service.submit_checkin(self.db, principal=self.principal_for(self.user), gear_id=gear.id)
        self.db.commit()
        self.assertEqual(second.quantity, 2)
        checkin_service.approve_checkin(self.db, second.id, admin_id=self.admin.id)
        self.db.commit()

        gear = self.reload(gear)
        self.assertEqual(gear.available_quantity, 4)
        self.assertEqual(gear.status, GearStatus.AVAILABLE)
        self.assertEqual(self.reload(request).status, RequestStatus.COMPLETED)

    def test_second_pending_checkin_is_refused(self) -> None:
        gear, _ = self._checked_out('Tripod')
        checkin_service.submit_checkin(self.db, principal=self.principal_for(self.user), gear_id=gear.id)
        self.db.commit()
        with self.assertRaises(Conflict):
            checkin_service.submit_checkin(self.db, principal=self.principal_for(self.user), gear_id=gear.id)

    def test_only_holder_can_check_in(self) -> None:
        gear, _ = self._checked_out('Flash')
        stranger = self.add_profile('stranger@example.com')
        with self.assertRaises(Forbidden):
            checkin_service.submit_checkin(self.db, principal=self.principal_for(stranger), gear_id=gear.id)

    def test_damaged_return_does_not_strand_other_holders(self) -> None:
        other = self.add_profile('other@example.com')
        gear = self.add_gear('Light', quantity=2)
        mine = request_service.submit_request(self.db, user_id=self.user.id, lines=[(gear.id, 1)])
        theirs = request_service.submit_request(self.db, user_id=other.id, lines=[(gear.id, 1)])
        request_service.approve_request(self.db, mine.id)
        request_service.approve_request(self.db, theirs.id)
        self.db.commit()

        damaged = checkin_service.submit_checkin(
            self.db,
            principal=self.principal_for(self.user),
            gear_id=gear.id,
            condition=GearCondition.DAMAGED,
            damage_notes='Bulb shattered',
        )
        self.db.commit()
        checkin_service.approve_checkin(self.db, damaged.id, admin_id=self.admin.id)
        self.db.commit()

        gear = self.reload(gear)
        self.assertEqual((gear.status, gear.available_quantity), (GearStatus.NEEDS_REPAIR, 0))
        self.assertIsNotNone(gear.checked_out_to)

        returned = checkin_service.submit_checkin(
            self.db, principal=self.principal_for(other), gear_id=gear.id, request_id=theirs.id
        )
        self.db.commit()
        self.assertEqual(self.reload(gear).status, GearStatus.NEEDS_REPAIR)

        checkin_service.approve_checkin(self.db, returned.id, admin_id=self.admin.id)
        self.db.commit()

        gear = self.reload(gear)
        self.assertEqual((gear.status, gear.available_quantity), (GearStatus.NEEDS_REPAIR, 0))
        self.assertEqual(gear.condition, GearCondition.DAMAGED)
        self.assertIsNone(gear.checked_out_to)
        self.assertEqual(self.reload(mine).status, RequestStatus.COMPLETED)
        self.assertEqual(self.reload(theirs).status, RequestStatus.COMPLETED)

    def test_repaired_gear_keeps_units_still_held(self) -> None:
        other = self.add_profile('other@example.com')
        gear = self.add_gear('Monitor', quantity=3)
        mine = request_service.submit_request(self.db, user_id=self.user.id, lines=[(gear.id, 1)])
        theirs = request_service.submit_request(self.db, user_id=other.id, lines=[(gear.id, 1)])
        request_service.approve_request(self.db, mine.id)
        request_service.approve_request(self.db, theirs.id)
        self.db.commit()
        damaged = checkin_service.submit_checkin(
            self.db, principal=self.principal_for(self.user), gear_id=gear.id, condition=GearCondition.DAMAGED
        )
        self.db.commit()
        checkin_service.approve_checkin(self.db, damaged.id, admin_id=self.admin.id)
        self.db.commit()

        gear_service.update_gear(self.db, gear.id, changes={'status': GearStatus.AVAILABLE})
        self.db.commit()

        gear = self.reload(gear)
        self.assertEqual(gear.status, GearStatus.PARTIALLY_CHECKED_OUT)
        self.assertEqual(gear.available_quantity, 2)
        self.assertEqual(gear_service.units_out(self.db, gear.id), 1)

    def test_reject_restores_checked_out_status(self) -> None:
        gear, _ = self._checked_out('Slider')
        checkin = checkin_service.submit_checkin(self.db, principal=self.principal_for(self.user), gear_id=gear.id)
        self.db.commit()

        checkin_service.reject_checkin(self.db, checkin.id, admin_id=self.admin.id, reason='Not received')
        self.db.commit()

        gear = self.reload(gear)
        self.assertEqual(gear.status, GearStatus.CHECKED_OUT)
        self.assertEqual(gear.available_quantity, 0)
        self.assertEqual(self.reload(checkin).rejection_reason, 'Not received')
        with self.assertRaises(Conflict):
            checkin_service.approve_checkin(self.db, checkin.id, admin_id=self.admin.id)


if __name__ == '__main__':
    unittest.main()
