from __future__ import annotations

import random
import unittest
from datetime import date, datetime, timedelta, timezone
from unittest.mock import patch

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from app.errors import ConflictError, NotFoundError, ValidationError
from app.models import AuditLog, Shift, ShiftStatus, StaleResolution
from app.payloads import CapturedLocation
from app.services.shifts import (
    BreakPolicy,
    approve_revision,
    clock_in,
    clock_out,
    compute_duration_minutes,
    get_open_shift,
    list_stale_shifts,
    lock_active_employee,
    mark_stale,
    reject_revision,
    require_reason,
    resolve_stale,
)
from sqlite_support import build_session_factory, seed_employee, seed_location, seed_organization

REASON = "Forgot to clock out after the late delivery"


def _utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class BreakPolicyTests(unittest.TestCase):
    def test_deduction_applies_at_threshold(self) -> None:
        policy = BreakPolicy(threshold_hours=6, deduction_minutes=30)
        self.assertEqual(policy.break_minutes_for(359), 0)
        self.assertEqual(policy.break_minutes_for(360), 30)

    def test_zero_deduction_disables_break(self) -> None:
        self.assertEqual(BreakPolicy(threshold_hours=6, deduction_minutes=0).break_minutes_for(600), 0)

    def test_duration_is_whole_minutes(self) -> None:
        self.assertEqual(compute_duration_minutes(_utc(2026, 3, 2, 23, 30), _utc(2026, 3, 3, 1, 15)), 105)
        self.assertEqual(compute_duration_minutes(_utc(2026, 3, 2, 9), _utc(2026, 3, 2, 9, 0, 59)), 0)


class ShiftLifecycleTests(unittest.TestCase):
    def setUp(self) -> None:
        self.session_factory = build_session_factory()
        self.db = self.session_factory()
        self.organization = seed_organization(self.db)
        self.employee = seed_employee(self.db, self.organization)

    def tearDown(self) -> None:
        self.db.close()

    def test_clock_in_then_out_across_midnight(self) -> None:
        shift = clock_in(self.db, employee_id=self.employee.id, timestamp_utc=_utc(2026, 3, 2, 23, 30))
        self.assertEqual(shift.status, ShiftStatus.OPEN)
        self.assertEqual(shift.shift_date, date(2026, 3, 2))

        closed = clock_out(self.db, employee_id=self.employee.id, timestamp_utc=_utc(2026, 3, 3, 1, 15))

        self.assertEqual(closed.id, shift.id)
        self.assertEqual(closed.status, ShiftStatus.CLOSED)
        self.assertEqual(closed.duration_minutes, 105)
        self.assertEqual(closed.break_minutes, 0)
        self.assertEqual(closed.net_duration_minutes, 105)
        self.assertIsNone(get_open_shift(self.db, employee_id=self.employee.id))

    def test_long_shift_gets_auto_break(self) -> None:
        clock_in(self.db, employee_id=self.employee.id, timestamp_utc=_utc(2026, 3, 2, 8))
        closed = clock_out(self.db, employee_id=self.employee.id, timestamp_utc=_utc(2026, 3, 2, 17))

        self.assertEqual(closed.duration_minutes, 540)
        self.assertEqual(closed.break_minutes, 30)
        self.assertEqual(closed.net_duration_minutes, 510)

    def test_organization_break_policy_overrides_settings(self) -> None:
        self.organization.auto_break_threshold_hours = 4
        self.organization.auto_break_minutes = 15
        self.db.commit()

        clock_in(self.db, employee_id=self.employee.id, timestamp_utc=_utc(2026, 3, 2, 8))
        closed = clock_out(self.db, employee_id=self.employee.id, timestamp_utc=_utc(2026, 3, 2, 12, 30))

        self.assertEqual(closed.break_minutes, 15)

    def test_second_clock_in_conflicts(self) -> None:
        clock_in(self.db, employee_id=self.employee.id, timestamp_utc=_utc(2026, 3, 2, 8))

        with self.assertRaises(ConflictError) as ctx:
            clock_in(self.db, employee_id=self.employee.id, timestamp_utc=_utc(2026, 3, 2, 8, 5))

        self.assertEqual(ctx.exception.code, "ALREADY_CLOCKED_IN")
        open_count = len(
            self.db.scalars(
                select(Shift).where(Shift.employee_id == self.employee.id, Shift.status == ShiftStatus.OPEN)
            ).all()
        )
        self.assertEqual(open_count, 1)

    def test_clock_out_without_open_shift(self) -> None:
        with self.assertRaises(NotFoundError) as ctx:
            clock_out(self.db, employee_id=self.employee.id)
        self.assertEqual(ctx.exception.code, "NO_OPEN_SHIFT")

    def test_clock_out_must_follow_clock_in(self) -> None:
        clock_in(self.db, employee_id=self.employee.id, timestamp_utc=_utc(2026, 3, 2, 8))
        with self.assertRaises(ValidationError):
            clock_out(self.db, employee_id=self.employee.id, timestamp_utc=_utc(2026, 3, 2, 7, 59))

    def test_inactive_employee_cannot_clock_in(self) -> None:
        self.employee.is_active = False
        self.db.commit()
        with self.assertRaises(NotFoundError) as ctx:
            clock_in(self.db, employee_id=self.employee.id)
        self.assertEqual(ctx.exception.code, "EMPLOYEE_NOT_FOUND")

    def test_lock_active_employee_requires_active_organization(self) -> None:
        self.assertEqual(lock_active_employee(self.db, employee_id=self.employee.id).id, self.employee.id)

        self.organization.is_active = False
        self.db.commit()
        with self.assertRaises(NotFoundError) as ctx:
            lock_active_employee(self.db, employee_id=self.employee.id)
        self.assertEqual(ctx.exception.code, "ORGANIZATION_NOT_FOUND")

    def test_require_reason_strips_and_checks_length(self) -> None:
        self.assertEqual(require_reason(f"  {REASON}  "), REASON)
        for reason in (None, "", "   too short "):
            with self.subTest(reason=reason):
                with self.assertRaises(ValidationError) as ctx:
                    require_reason(reason)
                self.assertEqual(ctx.exception.code, "REASON_TOO_SHORT")

    def test_clock_in_records_geofence_verification(self) -> None:
        location = seed_location(self.db, self.organization)
        captured = CapturedLocation(latitude=location.latitude, longitude=location.longitude, accuracy_m=5)

        shift = clock_in(
            self.db,
            employee_id=self.employee.id,
            location=captured,
            timestamp_utc=_utc(2026, 3, 2, 8),
        )

        self.db.expire_all()
        reloaded = self.db.get(Shift, shift.id)
        self.assertTrue(reloaded.clock_in_verification.in_range)
        self.assertEqual(reloaded.clock_in_verification.nearest_location_id, location.id)
        self.assertEqual(reloaded.location_id, location.id)
        self.assertEqual(reloaded.clock_in_location.accuracy_m, 5)

    def test_clock_in_writes_audit_row(self) -> None:
        shift = clock_in(self.db, employee_id=self.employee.id, timestamp_utc=_utc(2026, 3, 2, 8))
        actions = self.db.scalars(select(AuditLog.action).where(AuditLog.entity_id == str(shift.id))).all()
        self.assertIn("SHIFT_CLOCK_IN", actions)


class StaleShiftTests(unittest.TestCase):
    def setUp(self) -> None:
        self.session_factory = build_session_factory()
        self.db = self.session_factory()
        self.organization = seed_organization(self.db, max_shift_hours=16)
        self.employee = seed_employee(self.db, self.organization)
        self.manager = seed_employee(self.db, self.organization, full_name="Morgan Lead")
        self.clock_in_at = _utc(2026, 3, 2, 8)
        self.shift = clock_in(self.db, employee_id=self.employee.id, timestamp_utc=self.clock_in_at)

    def tearDown(self) -> None:
        self.db.close()

    def _make_stale(self) -> None:
        marked = mark_stale(self.clock_in_at + timedelta(hours=17), db=self.db)
        self.assertEqual([shift.id for shift in marked], [self.shift.id])

    def test_threshold_is_strict(self) -> None:
        at_threshold = mark_stale(self.clock_in_at + timedelta(hours=16), db=self.db)
        self.assertEqual(at_threshold, [])

        past_threshold = mark_stale(self.clock_in_at + timedelta(hours=16, minutes=1), db=self.db)
        self.assertEqual([shift.id for shift in past_threshold], [self.shift.id])
        self.assertEqual(past_threshold[0].status, ShiftStatus.STALE)
        self.assertIsNotNone(past_threshold[0].marked_stale_at)

    def test_explicit_threshold_overrides_organization(self) -> None:
        marked = mark_stale(self.clock_in_at + timedelta(hours=3), threshold_hours=2, db=self.db)
        self.assertEqual(len(marked), 1)

    def test_stale_shift_frees_employee_for_new_clock_in(self) -> None:
        self._make_stale()
        new_shift = clock_in(self.db, employee_id=self.employee.id, timestamp_utc=_utc(2026, 3, 3, 8))
        self.assertNotEqual(new_shift.id, self.shift.id)

    def test_resolve_forgot_uses_nominal_duration(self) -> None:
        self._make_stale()
        resolved = resolve_stale(
            self.db,
            shift_id=self.shift.id,
            resolution=StaleResolution.FORGOT,
            reason=REASON,
            now_utc=_utc(2026, 3, 3, 9),
        )

        self.assertEqual(resolved.status, ShiftStatus.PENDING_REVISION)
        self.assertEqual(resolved.clock_out_at, self.clock_in_at + timedelta(minutes=1))
        self.assertEqual(resolved.duration_minutes, 1)
        self.assertEqual(resolved.stale_resolution, StaleResolution.FORGOT)

    def test_resolve_actual_hours_validations(self) -> None:
        self._make_stale()
        now = _utc(2026, 3, 3, 9)
        cases = {
            "REVISION_BEFORE_CLOCK_IN": self.clock_in_at - timedelta(minutes=1),
            "REVISION_IN_FUTURE": now + timedelta(minutes=5),
            "REVISION_OUT_OF_POLICY": self.clock_in_at + timedelta(hours=24, minutes=1),
        }
        for code, actual in cases.items():
            with self.subTest(code=code):
                with self.assertRaises(ValidationError) as ctx:
                    resolve_stale(
                        self.db,
                        shift_id=self.shift.id,
                        resolution=StaleResolution.ACTUAL_HOURS,
                        reason=REASON,
                        actual_clock_out_at=actual,
                        now_utc=now,
                    )
                self.assertEqual(ctx.exception.code, code)

    def test_resolve_requires_reason_and_stale_status(self) -> None:
        with self.assertRaises(ConflictError) as ctx:
            resolve_stale(self.db, shift_id=self.shift.id, resolution=StaleResolution.FORGOT, reason=REASON)
        self.assertEqual(ctx.exception.code, "SHIFT_NOT_STALE")

        self._make_stale()
        with self.assertRaises(ValidationError) as ctx:
            resolve_stale(self.db, shift_id=self.shift.id, resolution=StaleResolution.FORGOT, reason="oops")
        self.assertEqual(ctx.exception.code, "REASON_TOO_SHORT")

    def test_approve_revision(self) -> None:
        self._make_stale()
        resolve_stale(
            self.db,
            shift_id=self.shift.id,
            resolution=StaleResolution.ACTUAL_HOURS,
            reason=REASON,
            actual_clock_out_at=_utc(2026, 3, 2, 17),
            now_utc=_utc(2026, 3, 3, 9),
        )

        approved = approve_revision(
            self.db,
            shift_id=self.shift.id,
            reviewer_id=self.manager.id,
            now_utc=_utc(2026, 3, 3, 10),
        )

        self.assertEqual(approved.status, ShiftStatus.REVISED)
        self.assertTrue(approved.is_revised)
        self.assertEqual(approved.duration_minutes, 540)
        self.assertEqual(approved.net_duration_minutes, 510)
        self.assertEqual(approved.revised_by_id, self.manager.id)

    def test_reject_revision_returns_shift_to_stale(self) -> None:
        self._make_stale()
        resolve_stale(
            self.db,
            shift_id=self.shift.id,
            resolution=StaleResolution.FORGOT,
            reason=REASON,
        )

        rejected = reject_revision(self.db, shift_id=self.shift.id, reviewer_id=self.manager.id, reason="Check logs")

        self.assertEqual(rejected.status, ShiftStatus.STALE)
        self.assertIsNone(rejected.clock_out_at)
        self.assertIsNone(rejected.duration_minutes)

    def test_approve_requires_pending_revision(self) -> None:
        self._make_stale()
        with self.assertRaises(ConflictError) as ctx:
            approve_revision(self.db, shift_id=self.shift.id, reviewer_id=self.manager.id)
        self.assertEqual(ctx.exception.code, "SHIFT_NOT_PENDING_REVISION")

    def test_list_stale_shifts(self) -> None:
        self._make_stale()
        listed = list_stale_shifts(self.db, organization_id=self.organization.id)
        self.assertEqual([shift.id for shift in listed], [self.shift.id])

class OpenShiftUniquenessTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = build_session_factory()()
        self.organization = seed_organization(self.db)
        self.employee = seed_employee(self.db, self.organization)

    def tearDown(self) -> None:
        self.db.close()

    def _shift(self, status: ShiftStatus, clock_in_at: datetime) -> Shift:
        return Shift(
            employee_id=self.employee.id,
            organization_id=self.organization.id,
            status=status,
            clock_in_at=clock_in_at,
            shift_date=clock_in_at.date(),
            break_minutes=0,
        )

    def _open_count(self, employee_id: int) -> int:
        return self.db.scalar(
            select(func.count(Shift.id)).where(Shift.employee_id == employee_id, Shift.status == ShiftStatus.OPEN)
        )

    def test_index_rejects_second_open_row(self) -> None:
        self.db.add(self._shift(ShiftStatus.OPEN, _utc(2026, 3, 2, 8)))
        self.db.commit()

        self.db.add(self._shift(ShiftStatus.OPEN, _utc(2026, 3, 2, 9)))
        with self.assertRaises(IntegrityError):
            self.db.commit()
        self.db.rollback()

        self.assertEqual(self._open_count(self.employee.id), 1)

    def test_index_ignores_closed_rows(self) -> None:
        closed = self._shift(ShiftStatus.CLOSED, _utc(2026, 3, 1, 8))
        closed.clock_out_at = _utc(2026, 3, 1, 16)
        self.db.add(closed)
        self.db.add(self._shift(ShiftStatus.OPEN, _utc(2026, 3, 2, 8)))
        self.db.commit()

        self.assertEqual(self._open_count(self.employee.id), 1)

    def test_lost_race_on_insert_maps_to_conflict(self) -> None:
        first = clock_in(self.db, employee_id=self.employee.id, timestamp_utc=_utc(2026, 3, 2, 8))

        # The pre-check sees no open shift, as a concurrent request would.
        with patch("app.services.shifts.get_open_shift", return_value=None):
            with self.assertRaises(ConflictError) as ctx:
                clock_in(self.db, employee_id=self.employee.id, timestamp_utc=_utc(2026, 3, 2, 8, 1))

        self.assertEqual(ctx.exception.code, "ALREADY_CLOCKED_IN")
        self.assertEqual(self._open_count(self.employee.id), 1)
        self.assertEqual(get_open_shift(self.db, employee_id=self.employee.id).id, first.id)

    def test_random_interleaving_keeps_one_open_shift(self) -> None:
        other = seed_employee(self.db, self.organization, full_name="Robin Second")
        employees = [self.employee.id, other.id]
        rng = random.Random(20260302)
        expected_open = {employee_id: False for employee_id in employees}
        now = _utc(2026, 3, 2, 6)

        for step in range(200):
            now += timedelta(minutes=rng.randint(1, 90))
            employee_id = rng.choice(employees)
            if rng.random() < 0.5:
                try:
                    clock_in(self.db, employee_id=employee_id, timestamp_utc=now)
                except ConflictError as exc:
                    self.assertTrue(expected_open[employee_id], f"step {step}")
                    self.assertEqual(exc.code, "ALREADY_CLOCKED_IN")
                else:
                    self.assertFalse(expected_open[employee_id], f"step {step}")
                    expected_open[employee_id] = True
            else:
                try:
                    clock_out(self.db, employee_id=employee_id, timestamp_utc=now)
                except NotFoundError as exc:
                    self.assertFalse(expected_open[employee_id], f"step {step}")
                    self.assertEqual(exc.code, "NO_OPEN_SHIFT")
                else:
                    self.assertTrue(expected_open[employee_id], f"step {step}")
                    expected_open[employee_id] = False

            for checked_id in employees:
                open_count = self._open_count(checked_id)
                self.assertLessEqual(open_count, 1, f"step {step}")
                self.assertEqual(open_count, int(expected_open[checked_id]), f"step {step}")


if __name__ == "__main__":
    unittest.main()
