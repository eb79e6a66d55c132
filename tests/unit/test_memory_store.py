import json
import os
import tempfile
import unittest
from datetime import timedelta

from pv_twin.adapters.memory_store import InMemoryTwinStore
from pv_twin.domain.errors import ValidationError
from pv_twin.domain.models import AnomalyKey, AnomalyStatus, PerformanceGap
from tests.helpers import NOON, lossless_payload, make_anomaly, make_config, plant_series


class TestInMemoryTwinStore(unittest.TestCase):
    def setUp(self):
        self.store = InMemoryTwinStore()

    def test_configs_are_versioned(self):
        first = self.store.save_config(make_config())
        second = self.store.save_config(make_config())

        self.assertEqual((first.version, second.version), (1, 2))
        self.assertEqual(self.store.get_active_config("plant-a").version, 2)
        self.assertEqual(len(self.store.list_config_versions("plant-a")), 2)
        self.assertEqual(self.store.list_plants(), ["plant-a"])

    def test_records_are_copied(self):
        anomaly = make_anomaly()
        self.store.save_anomaly(anomaly)
        anomaly.severity = None

        fetched = self.store.get_anomaly(anomaly.anomaly_id)
        fetched.metadata["touched"] = True

        self.assertIsNotNone(self.store.get_anomaly(anomaly.anomaly_id).severity)
        self.assertNotIn("touched", self.store.get_anomaly(anomaly.anomaly_id).metadata)

    def test_gap_upsert_is_last_writer_wins(self):
        self.store.upsert_gap(PerformanceGap("p", NOON, 80.0, 100.0, -20.0, -20.0))
        self.store.upsert_gap(PerformanceGap("p", NOON, 90.0, 100.0, -10.0, -10.0))
        gaps = self.store.list_gaps("p", NOON, NOON)
        self.assertEqual(len(gaps), 1)
        self.assertEqual(gaps[0].actual_kwh, 90.0)

    def test_failed_update_leaves_record_untouched(self):
        anomaly = make_anomaly()
        self.store.save_anomaly(anomaly)

        def explode(a):
            a.status = AnomalyStatus.RESOLVED
            raise RuntimeError("abort")

        with self.assertRaises(RuntimeError):
            self.store.update_anomaly(anomaly.anomaly_id, explode)
        self.assertEqual(self.store.get_anomaly(anomaly.anomaly_id).status, AnomalyStatus.ACTIVE)
        self.assertIsNone(self.store.update_anomaly("missing", explode))

    def test_find_by_key(self):
        anomaly = make_anomaly()
        key = AnomalyKey.for_anomaly(anomaly, 15)
        self.store.save_anomaly(anomaly, key)
        later = make_anomaly(timestamp=NOON + timedelta(minutes=7))
        self.assertEqual(self.store.find_by_key(AnomalyKey.for_anomaly(later, 15)).anomaly_id,
                         anomaly.anomaly_id)

    def test_telemetry_window_is_inclusive_and_ordered(self):
        points = plant_series("p", NOON, [1.0, 2.0, 3.0, 4.0])
        self.store.add_telemetry(list(reversed(points)))
        window = self.store.get_telemetry("p", NOON + timedelta(minutes=15), NOON + timedelta(minutes=30))
        self.assertEqual([p.power_w for p in window], [2.0, 3.0])
        self.assertEqual(len(self.store.get_telemetry_at("p", NOON)), 1)

    def test_naive_telemetry_is_stored_as_utc(self):
        naive = NOON.replace(tzinfo=None)
        self.store.add_telemetry(plant_series("p", naive, [1.0, 2.0]))
        window = self.store.get_telemetry("p", NOON - timedelta(hours=1), NOON + timedelta(hours=1))
        self.assertEqual(len(window), 2)
        self.assertEqual(window[0].timestamp, NOON)
        self.assertEqual(len(self.store.get_telemetry_at("p", naive)), 1)

    def test_snapshot_and_inputs_files(self):
        with tempfile.TemporaryDirectory() as tmp:
            inputs = os.path.join(tmp, "inputs.json")
            with open(inputs, "w") as f:
                json.dump({
                    "configs": [lossless_payload()],
                    "telemetry": [{"plant_id": "plant-a", "timestamp": "2024-06-01T12:00:00Z",
                                   "power_w": 100.0, "energy_kwh": 25.0}],
                    "weather": [{"plant_id": "plant-a", "timestamp": "2024-06-01T12:00:00Z",
                                 "irradiance_w_m2": 800.0, "ambient_temp_c": 28.0}],
                }, f)
            counts = self.store.load_inputs(inputs)
            self.assertEqual(counts, {"configs": 1, "telemetry": 1, "weather": 1})
            self.assertEqual(self.store.get_weather("plant-a", NOON).irradiance_w_m2, 800.0)

            self.store.save_anomaly(make_anomaly())
            snapshot = os.path.join(tmp, "snapshot.json")
            self.store.export_snapshot(snapshot)
            with open(snapshot) as f:
                data = json.load(f)
        self.assertEqual(len(data["configs"]), 1)
        self.assertEqual(len(data["anomalies"]), 1)
        self.assertEqual(data["audits"], [])

    def test_inputs_must_be_an_object(self):
        with tempfile.NamedTemporaryFile("w", suffix=".json", delete=False) as f:
            json.dump([1, 2], f)
            path = f.name
        try:
            with self.assertRaises(ValidationError):
                self.store.load_inputs(path)
        finally:
            os.unlink(path)


if __name__ == "__main__":
    unittest.main()
