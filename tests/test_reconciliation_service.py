from __future__ import annotations

import unittest

from tests.support import DatabaseTestCase

from gearflow.models import Checkin, CheckinStatus, GearCondition, GearStatus
from gearflow.services import reconciliation_service


class ReconciliationServiceTests(DatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.user = self.add_profile('user@example.com')

    def _pending_checkin(self, gear, status: CheckinStatus = CheckinStatus.PENDING_ADMIN_APPROVAL) -> Checkin:
        checkin = Checkin(gear_id=gear.id, user_id=self.user.id, status=status, condition=GearCondition.GOOD, quantity=1)
        self.db.add(checkin)
        self.db.commit()
        return checkin

    def test_update_is_idempotent(self) -> None:
        self.add_gear('Drifted available', quantity=3, available=0)
        self.add_gear('Drifted checked out', quantity=2, available=2, status=GearStatus.CHECKED_OUT)
        self.add_gear('Overfull partial', quantity=2, available=5, status=GearStatus.PARTIALLY_CHECKED_OUT)
        self.add_gear('Broken', quantity=1, available=1, status=GearStatus.UNDER_REPAIR)
        pending = self.add_gear('Returned', quantity=1, available=1)
        self._pending_checkin(pending)

        first = reconciliation_service.update_gear_available_quantities(self.db)
        self.db.commit()
        second = reconciliation_service.update_gear_available_quantities(self.db)
        self.db.commit()

        self.assertEqual(first, 5)
        self.assertEqual(second, 0)
        self.assertEqual(self.reload(pending).available_quantity, 0)

    def test_truth_table(self) -> None:
        available = self.add_gear('A', quantity=4, available=1)
        new = self.add_gear('B', quantity=2, available=0, status=GearStatus.NEW)
        partial = self.add_gear('C', quantity=3, available=2, status=GearStatus.PARTIALLY_CHECKED_OUT)
        lost = self.add_gear('D', quantity=2, available=2, status=GearStatus.LOST)

        reconciliation_service.update_gear_available_quantities(self.db)
        self.db.commit()

        self.assertEqual(self.reload(available).available_quantity, 4)
        self.assertEqual(self.reload(new).available_quantity, 2)
        self.assertEqual(self.reload(partial).available_quantity, 2)
        self.assertEqual(self.reload(lost).available_quantity, 0)

    def test_pending_checkin_count_ignores_stored_status(self) -> None:
        marked_available = self.add_gear('Marked available', quantity=1)
        marked_out = self.add_gear('Marked out', quantity=2, available=0, status=GearStatus.CHECKED_OUT)
        marked_pending = self.add_gear('Marked pending', quantity=1, available=0, status=GearStatus.PENDING_CHECKIN)
        self.add_gear('Untouched', quantity=3)
        self._pending_checkin(marked_available)
        self._pending_checkin(marked_out)
        self._pending_checkin(marked_out)
        self._pending_checkin(marked_pending, status=CheckinStatus.COMPLETED)

        counts = reconciliation_service.calculate_dashboard_counts(self.db)

        self.assertEqual(counts.pendingCheckinEquipment, 2)
        self.assertEqual(counts.totalEquipment, 7)
        self.assertEqual(counts.availableEquipment, 3)
        self.assertEqual(counts.checkedOutEquipment, 1)

    def test_dashboard_buckets(self) -> None:
        self.add_gear('Available', quantity=2)
        self.add_gear('Partial', quantity=5, available=3, status=GearStatus.PARTIALLY_CHECKED_OUT)
        self.add_gear('Repair', quantity=1, available=0, status=GearStatus.NEEDS_REPAIR)
        self.add_gear('Retired', quantity=1, available=0, status=GearStatus.RETIRED)

        counts = reconciliation_service.calculate_dashboard_counts(self.db).as_dict()

        self.assertEqual(
            counts,
            {
                'totalEquipment': 9,
                'availableEquipment': 5,
                'checkedOutEquipment': 2,
                'underRepairEquipment': 1,
                'pendingCheckinEquipment': 0,
            },
        )

    def test_validate_reports_issues(self) -> None:
        self.add_gear('Fine', quantity=2)
        self.add_gear('Zero', quantity=2, available=0)
        self.add_gear('Leaky', quantity=1, available=1, status=GearStatus.CHECKED_OUT)
        self.add_gear('Too many', quantity=1, available=3)

        result = reconciliation_service.validate_gear_quantities(self.db)

        self.assertEqual(result['valid'], 1)
        self.assertEqual(result['invalid'], 3)
        issues = {row['name']: row['issue'] for row in result['issues']}
        self.assertEqual(issues['Zero'], 'Available gear has 0 available_quantity but is not checked out')
        self.assertEqual(issues['Leaky'], 'Checked out gear has available_quantity > 0')
        self.assertEqual(issues['Too many'], 'available_quantity exceeds total quantity')

    def test_fix_dashboard_counts_reports_before_and_after(self) -> None:
        self.add_gear('Zero', quantity=2, available=0)

        result = reconciliation_service.fix_dashboard_counts(self.db)

        self.assertEqual(result['fixed'], 1)
        self.assertEqual(result['after']['availableEquipment'], 2)


if __name__ == '__main__':
    unittest.main()
