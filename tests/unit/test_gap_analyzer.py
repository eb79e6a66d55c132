import math
import unittest
from unittest.mock import MagicMock

from pv_twin.agents.analysis.gap_analyzer import PerformanceGapAnalyzerAgent, gap_percent_of
from pv_twin.domain.errors import BaselineNotFoundError
from pv_twin.domain.events import PerformanceGapEvent
from pv_twin.domain.models import GapCauseCategory, TelemetryPoint
from tests.helpers import NOON


class TestGapAnalyzer(unittest.TestCase):
    def setUp(self):
        self.bus = MagicMock()
        self.telemetry = MagicMock()
        self.repository = MagicMock()
        self.agent = PerformanceGapAnalyzerAgent("GapAnalyzer", self.bus, self.telemetry, self.repository,
                                                 config={"alert_threshold_percent": 15.0,
                                                         "tariff_per_kwh": 0.5})

    def _baseline(self, expected):
        baseline = MagicMock()
        baseline.expected_generation_kwh = expected
        self.repository.get_baseline.return_value = baseline

    def test_twenty_percent_shortfall(self):
        self._baseline(100.0)
        self.telemetry.get_telemetry_at.return_value = [
            TelemetryPoint(plant_id="p", timestamp=NOON, energy_kwh=80.0)]

        gap = self.agent.calculate_performance_gap("p", NOON)

        self.assertAlmostEqual(gap.gap_kwh, -20.0)
        self.assertAlmostEqual(gap.gap_percent, -20.0)
        self.assertTrue(gap.alert_triggered)
        self.assertAlmostEqual(gap.estimated_loss, 10.0)
        self.assertTrue(any(c.category == GapCauseCategory.SEVERE_UNDERPERFORMANCE
                            for c in gap.probable_causes))
        self.repository.upsert_gap.assert_called_once_with(gap)
        event = self.bus.publish.call_args[0][0]
        self.assertIsInstance(event, PerformanceGapEvent)
        self.assertTrue(event.alert_triggered)

    def test_alert_boundary_is_strict(self):
        exactly = self.agent.evaluate("p", NOON, 85.0, 100.0)
        beyond = self.agent.evaluate("p", NOON, 84.9, 100.0)
        self.assertFalse(exactly.alert_triggered)
        self.assertTrue(beyond.alert_triggered)

    def test_overperformance_is_not_a_loss(self):
        gap = self.agent.evaluate("p", NOON, 120.0, 100.0)
        self.assertEqual(gap.estimated_loss, 0.0)
        self.assertTrue(gap.alert_triggered)
        self.assertEqual(gap.probable_causes[0].category, GapCauseCategory.OVERPERFORMANCE)

    def test_moderate_gap_points_to_soiling(self):
        gap = self.agent.evaluate("p", NOON, 88.0, 100.0)
        self.assertEqual([c.cause for c in gap.probable_causes], ["Excess soiling"])
        self.assertAlmostEqual(gap.probable_causes[0].estimated_impact_kwh, 12.0)

    def test_zero_expected_gives_zero_percent(self):
        gap = self.agent.evaluate("p", NOON.replace(hour=23), 0.0, 0.0)
        self.assertEqual(gap.gap_percent, 0.0)
        self.assertFalse(gap.alert_triggered)
        self.assertEqual(gap_percent_of(5.0, 0.0), 0.0)

    def test_invalid_readings_excluded_and_flagged(self):
        self._baseline(10.0)
        self.telemetry.get_telemetry_at.return_value = [
            TelemetryPoint(plant_id="p", timestamp=NOON, energy_kwh=4.0, inverter_id="INV-1"),
            TelemetryPoint(plant_id="p", timestamp=NOON, energy_kwh=-3.0, inverter_id="INV-2"),
            TelemetryPoint(plant_id="p", timestamp=NOON, energy_kwh=math.nan, inverter_id="INV-3"),
            TelemetryPoint(plant_id="p", timestamp=NOON, energy_kwh=5.0, inverter_id="INV-4"),
        ]
        gap = self.agent.calculate_performance_gap("p", NOON)
        self.assertAlmostEqual(gap.actual_kwh, 9.0)
        self.assertEqual(gap.excluded_readings, 2)
        self.assertIn("invalid_energy_readings_excluded", gap.flags)

    def test_plant_rows_preferred_over_components(self):
        readings = [
            TelemetryPoint(plant_id="p", timestamp=NOON, energy_kwh=9.0),
            TelemetryPoint(plant_id="p", timestamp=NOON, energy_kwh=4.5, inverter_id="INV-1"),
            TelemetryPoint(plant_id="p", timestamp=NOON, energy_kwh=4.5, inverter_id="INV-2"),
        ]
        total, excluded = PerformanceGapAnalyzerAgent.sum_energy(readings)
        self.assertEqual((total, excluded), (9.0, 0))

    def test_missing_baseline(self):
        self.repository.get_baseline.return_value = None
        with self.assertRaises(BaselineNotFoundError):
            self.agent.calculate_performance_gap("p", NOON)
        self.telemetry.get_telemetry_at.assert_not_called()

    def test_no_telemetry_flag(self):
        self._baseline(50.0)
        self.telemetry.get_telemetry_at.return_value = []
        gap = self.agent.calculate_performance_gap("p", NOON)
        self.assertEqual(gap.actual_kwh, 0.0)
        self.assertIn("no_telemetry", gap.flags)


if __name__ == "__main__":
    unittest.main()
