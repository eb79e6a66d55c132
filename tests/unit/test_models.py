import unittest
from datetime import datetime, timedelta, timezone

from pv_twin.domain.errors import StateTransitionError, ValidationError
from pv_twin.domain.models import (
    AnomalyKey, AnomalyStatus, AnomalyType, DetectionConfig, DigitalTwinConfig, InverterConfig,
    EfficiencyPoint, RootCauseAnalysis, parse_timestamp
)
from pv_twin.domain.monitoring import (
    ManualConnection, SolarEdgeConnection, parse_monitoring_connection
)
from tests.helpers import NOON, lossless_payload, make_anomaly, string_plant_payload


class TestDigitalTwinConfig(unittest.TestCase):
    def test_nominal_power(self):
        config = DigitalTwinConfig.from_dict(lossless_payload())
        self.assertAlmostEqual(config.nominal_power_kwp, 135.0)

    def test_rejects_loss_outside_percent_range(self):
        payload = lossless_payload()
        payload["losses"]["soiling"] = 120
        with self.assertRaises(ValidationError):
            DigitalTwinConfig.from_dict(payload)

    def test_rejects_string_on_unknown_inverter(self):
        payload = string_plant_payload()
        payload["strings"][0]["inverter_id"] = "INV-9"
        with self.assertRaises(ValidationError):
            DigitalTwinConfig.from_dict(payload)

    def test_missing_layout_is_validation_error(self):
        with self.assertRaises(ValidationError):
            DigitalTwinConfig.from_dict({"plant_id": "x"})

    def test_dc_capacity_per_inverter(self):
        config = DigitalTwinConfig.from_dict(string_plant_payload())
        self.assertAlmostEqual(config.dc_capacity_kw("INV-1"), 22.5)
        self.assertEqual(len(config.strings_for_input("INV-2", 1)), 1)

    def test_round_trip_keeps_monitoring_variant(self):
        payload = lossless_payload()
        payload["monitoring"] = {"system_type": "manual", "upload_interval_minutes": 30}
        config = DigitalTwinConfig.from_dict(payload)
        again = DigitalTwinConfig.from_dict(config.to_dict())
        self.assertEqual(again.monitoring, ManualConnection(upload_interval_minutes=30))


class TestInverterEfficiency(unittest.TestCase):
    def test_interpolates_curve(self):
        inverter = InverterConfig("INV", 10.0, [EfficiencyPoint(0.0, 0.90), EfficiencyPoint(1.0, 0.98)])
        self.assertAlmostEqual(inverter.efficiency_at(0.5), 0.94)

    def test_flat_default_without_curve(self):
        self.assertAlmostEqual(InverterConfig("INV", 10.0).efficiency_at(0.3), 0.97)


class TestMonitoringConnection(unittest.TestCase):
    def test_solaredge_requires_credentials(self):
        with self.assertRaises(ValidationError):
            parse_monitoring_connection({"system_type": "solaredge", "site_id": "123"})

    def test_secret_not_serialized(self):
        connection = parse_monitoring_connection(
            {"system_type": "solaredge", "site_id": "123", "api_key": "secret"})
        self.assertIsInstance(connection, SolarEdgeConnection)
        self.assertNotIn("api_key", connection.to_dict())

    def test_unknown_system_rejected(self):
        with self.assertRaises(ValidationError):
            parse_monitoring_connection({"system_type": "fronius"})


class TestAnomalyLifecycle(unittest.TestCase):
    def test_resolve_stamps_resolved_at(self):
        anomaly = make_anomaly()
        at = NOON + timedelta(hours=2)
        anomaly.transition(AnomalyStatus.INVESTIGATING)
        self.assertIsNone(anomaly.resolved_at)
        anomaly.transition(AnomalyStatus.RESOLVED, at=at)
        self.assertEqual(anomaly.resolved_at, at)
        self.assertFalse(anomaly.is_open)

    def test_closed_anomaly_cannot_reopen(self):
        anomaly = make_anomaly()
        anomaly.transition(AnomalyStatus.FALSE_POSITIVE)
        with self.assertRaises(StateTransitionError):
            anomaly.transition(AnomalyStatus.ACTIVE)

    def test_key_floors_to_window(self):
        a = make_anomaly(timestamp=NOON + timedelta(minutes=3))
        b = make_anomaly(timestamp=NOON + timedelta(minutes=14))
        c = make_anomaly(timestamp=NOON + timedelta(minutes=16))
        self.assertEqual(AnomalyKey.for_anomaly(a, 15), AnomalyKey.for_anomaly(b, 15))
        self.assertNotEqual(AnomalyKey.for_anomaly(a, 15), AnomalyKey.for_anomaly(c, 15))

    def test_key_treats_naive_as_utc(self):
        naive = make_anomaly(timestamp=datetime(2024, 6, 1, 12, 5))
        aware = make_anomaly(timestamp=datetime(2024, 6, 1, 12, 5, tzinfo=timezone.utc))
        self.assertEqual(AnomalyKey.for_anomaly(naive, 15), AnomalyKey.for_anomaly(aware, 15))

    def test_key_separates_types(self):
        a = make_anomaly(anomaly_type=AnomalyType.OFFLINE)
        b = make_anomaly(anomaly_type=AnomalyType.DATA_GAP)
        self.assertNotEqual(AnomalyKey.for_anomaly(a, 15), AnomalyKey.for_anomaly(b, 15))


class TestRootCauseAnalysisStates(unittest.TestCase):
    def test_complete_requires_summary(self):
        analysis = RootCauseAnalysis(anomaly_id="a1", plant_id="p")
        analysis.start()
        with self.assertRaises(StateTransitionError):
            analysis.complete("", "Soiling", "Clean more often")

    def test_complete_requires_in_progress(self):
        analysis = RootCauseAnalysis(anomaly_id="a1", plant_id="p")
        with self.assertRaises(StateTransitionError):
            analysis.complete("Cleaned", "Soiling", "Clean more often")

    def test_complete_rejects_non_text_fields(self):
        analysis = RootCauseAnalysis(anomaly_id="a1", plant_id="p")
        analysis.start()
        with self.assertRaises(ValidationError):
            analysis.complete(5, "Soiling", "Clean more often")
        self.assertIsNone(analysis.completed_at)

    def test_completed_cannot_restart(self):
        analysis = RootCauseAnalysis(anomaly_id="a1", plant_id="p")
        analysis.start()
        analysis.complete("Cleaned", "Soiling", "Clean more often")
        self.assertIsNotNone(analysis.completed_at)
        with self.assertRaises(StateTransitionError):
            analysis.start()


class TestParsing(unittest.TestCase):
    def test_parse_timestamp_accepts_z_suffix(self):
        self.assertEqual(parse_timestamp("2024-06-01T12:00:00Z"), NOON)

    def test_parse_timestamp_reads_offset_less_values_as_utc(self):
        parsed = parse_timestamp("2024-06-01T12:00:00")
        self.assertEqual(parsed.tzinfo, timezone.utc)
        self.assertEqual(parsed, NOON)
        self.assertLess(parsed, NOON + timedelta(hours=1))

    def test_parse_timestamp_converts_offsets_to_utc(self):
        parsed = parse_timestamp("2024-06-01T14:00:00+02:00")
        self.assertEqual(parsed.tzinfo, timezone.utc)
        self.assertEqual(parsed.hour, 12)
        self.assertEqual(parse_timestamp(datetime(2024, 6, 1, 12)), NOON)

    def test_parse_timestamp_rejects_garbage(self):
        with self.assertRaises(ValidationError):
            parse_timestamp("yesterday")

    def test_detection_config_rejects_unknown_sensitivity(self):
        with self.assertRaises(ValidationError):
            DetectionConfig.from_dict({"sensitivity": "extreme"})

    def test_detection_config_defaults(self):
        detection = DetectionConfig.from_dict(None)
        self.assertFalse(detection.ml_enabled)
        self.assertEqual(detection.sensitivity, "medium")


if __name__ == "__main__":
    unittest.main()
