from __future__ import annotations

import unittest
from datetime import datetime, timezone

from app.services.location import GeofenceZone, distance_m, evaluate_geofence, load_organization_zones
from sqlite_support import build_session_factory, seed_location, seed_organization


class LocationServiceTests(unittest.TestCase):
    def test_distance_m_zero_for_same_point(self) -> None:
        value = distance_m(41.0, 29.0, 41.0, 29.0)
        self.assertAlmostEqual(value, 0.0, places=6)

    def test_distance_m_known_reference(self) -> None:
        # Approximate distance for 1 degree longitude on equator.
        value = distance_m(0.0, 0.0, 0.0, 1.0)
        self.assertAlmostEqual(value, 111_195, delta=300)

    def test_boundary_is_inclusive(self) -> None:
        point = (1.3530, 103.8198)
        exact = distance_m(1.3521, 103.8198, *point)
        on_edge = GeofenceZone(zone_id=1, latitude=1.3521, longitude=103.8198, radius_m=exact)
        just_short = GeofenceZone(zone_id=1, latitude=1.3521, longitude=103.8198, radius_m=exact - 1.0)

        self.assertTrue(evaluate_geofence(*point, [on_edge]).in_range)
        self.assertFalse(evaluate_geofence(*point, [just_short]).in_range)

    def test_in_range_when_any_zone_contains_point(self) -> None:
        far = GeofenceZone(zone_id=1, latitude=1.40, longitude=103.90, radius_m=50.0)
        near = GeofenceZone(zone_id=2, latitude=1.3521, longitude=103.8198, radius_m=200.0)

        evaluation = evaluate_geofence(1.3522, 103.8199, [far, near])

        self.assertTrue(evaluation.in_range)
        self.assertEqual(evaluation.nearest.zone.zone_id, 2)
        self.assertEqual(len(evaluation.zones), 2)

    def test_nearest_zone_reported_when_out_of_range(self) -> None:
        zone_a = GeofenceZone(zone_id=10, latitude=0.0, longitude=0.0, radius_m=10.0)
        zone_b = GeofenceZone(zone_id=11, latitude=0.0, longitude=0.02, radius_m=10.0)

        evaluation = evaluate_geofence(0.0, 0.015, [zone_a, zone_b])

        self.assertFalse(evaluation.in_range)
        self.assertEqual(evaluation.nearest.zone.zone_id, 11)
        verification = evaluation.to_verification(evaluated_at=datetime(2026, 3, 2, tzinfo=timezone.utc))
        self.assertEqual(verification.nearest_location_id, 11)
        self.assertEqual(verification.zones_checked, 2)
        self.assertFalse(verification.in_range)

    def test_no_zones_is_out_of_range(self) -> None:
        evaluation = evaluate_geofence(0.0, 0.0, [], accuracy_m=12.0)
        self.assertFalse(evaluation.in_range)
        self.assertIsNone(evaluation.nearest)
        self.assertEqual(evaluation.to_verification().zones_checked, 0)

    def test_load_organization_zones_skips_inactive_locations(self) -> None:
        session_factory = build_session_factory()
        with session_factory() as db:
            organization = seed_organization(db)
            active = seed_location(db, organization)
            inactive = seed_location(db, organization, latitude=2.0)
            inactive.is_active = False
            db.commit()

            zones = load_organization_zones(db, organization_id=organization.id)

        self.assertEqual([zone.zone_id for zone in zones], [active.id])


if __name__ == "__main__":
    unittest.main()
