import unittest
from datetime import timedelta
from unittest.mock import MagicMock

from pv_twin.adapters.memory_store import InMemoryTwinStore
from pv_twin.agents.alerting.alert_dispatcher import AlertDispatcherAgent
from pv_twin.agents.detection.anomaly_detector import AnomalyDetectorAgent
from pv_twin.domain.errors import (
    AnomalyNotFoundError, StateTransitionError, UpstreamDataError, ValidationError
)
from pv_twin.domain.events import AnomalyDetectedEvent, AnomalyStatusChangedEvent
from pv_twin.domain.models import AnomalyStatus, AnomalyType, DetectionConfig, Severity
from pv_twin.framework.bus import EventBus
from tests.helpers import NOON, make_anomaly, make_config
from tests.unit.test_strategies import daylight_series

ROLLING_ONLY = DetectionConfig(statistical_enabled=False, digital_twin_enabled=False,
                               data_gap_enabled=False, rolling_baseline_enabled=True)


class TestAnomalyDetectorDedup(unittest.TestCase):
    def setUp(self):
        self.store = InMemoryTwinStore()
        self.config = make_config()
        self.store.save_config(self.config)
        outage = {NOON + timedelta(minutes=15 * i): 0.0 for i in range(5)}
        self.store.add_telemetry(daylight_series(self.config, overrides=outage))
        self.bus = MagicMock()
        self.now = [NOON.replace(hour=20)]
        self.agent = AnomalyDetectorAgent("Detector", self.bus, self.store, self.store, self.store,
                                          config={"clock": lambda: self.now[0]})

    def test_overlapping_windows_update_one_record(self):
        first = self.agent.detect_anomalies("plant-a", 24, ROLLING_ONLY)
        self.now[0] += timedelta(minutes=15)
        second = self.agent.detect_anomalies("plant-a", 24, ROLLING_ONLY)

        self.assertTrue(first.success and second.success)
        self.assertEqual(len(first.anomalies), 1)
        self.assertEqual(first.anomalies[0].anomaly_id, second.anomalies[0].anomaly_id)

        stored = self.store.list_anomalies("plant-a")
        self.assertEqual(len(stored), 1)
        self.assertEqual(stored[0].anomaly_type, AnomalyType.OFFLINE)
        self.assertEqual(stored[0].detection_count, 2)
        self.assertEqual(stored[0].created_at, NOON.replace(hour=20))
        self.assertEqual(stored[0].last_detected_at, NOON.replace(hour=20, minute=15))

        events = [c[0][0] for c in self.bus.publish.call_args_list]
        self.assertEqual([e.is_new for e in events if isinstance(e, AnomalyDetectedEvent)], [True, False])

    def test_closed_anomaly_is_not_reopened(self):
        first = self.agent.detect_anomalies("plant-a", 24, ROLLING_ONLY)
        self.agent.update_anomaly_status(first.anomalies[0].anomaly_id, AnomalyStatus.RESOLVED)

        again = self.agent.detect_anomalies("plant-a", 24, ROLLING_ONLY)

        self.assertEqual(again.anomalies, [])
        stored = self.store.get_anomaly(first.anomalies[0].anomaly_id)
        self.assertEqual(stored.status, AnomalyStatus.RESOLVED)
        self.assertEqual(stored.detection_count, 1)

    def test_all_plants_when_none_given(self):
        other = make_config()
        other.plant_id = "plant-b"
        self.store.save_config(other)
        result = self.agent.detect_anomalies(None, 24, ROLLING_ONLY)
        self.assertEqual({a.plant_id for a in result.anomalies}, {"plant-a"})

    def test_period_must_be_positive(self):
        with self.assertRaises(ValidationError):
            self.agent.detect_anomalies("plant-a", 0)


class TestAnomalyDetectorFailures(unittest.TestCase):
    def setUp(self):
        self.bus = MagicMock()
        self.configs = MagicMock()
        self.configs.get_active_config.return_value = make_config()
        self.telemetry = MagicMock()
        self.telemetry.get_telemetry.return_value = []
        self.repository = MagicMock()
        self.repository.find_by_key.return_value = None
        self.repository.list_gaps.return_value = []
        self.agent = AnomalyDetectorAgent("Detector", self.bus, self.configs, self.telemetry,
                                          self.repository, config={"clock": lambda: NOON})

    def test_failing_strategy_does_not_abort_others(self):
        broken = MagicMock()
        broken.name = "broken"
        broken.needs_telemetry = True
        broken.detect.side_effect = RuntimeError("bad window")
        healthy = MagicMock()
        healthy.name = "healthy"
        healthy.needs_telemetry = True
        healthy.detect.return_value = [make_anomaly()]
        self.agent.build_strategies = MagicMock(return_value=[broken, healthy])

        result = self.agent.detect_anomalies("plant-a", 6)

        self.assertTrue(result.success)
        self.assertEqual(result.anomalies_detected, 1)
        self.assertEqual(len(result.errors), 1)
        self.assertEqual(result.errors[0].strategy, "broken")
        self.assertEqual(result.errors[0].error_kind, "strategy_failed")
        self.repository.save_anomaly.assert_called_once()

    def test_telemetry_outage_skips_telemetry_strategies(self):
        self.telemetry.get_telemetry.side_effect = UpstreamDataError("telemetry down")

        result = self.agent.detect_anomalies("plant-a", 6)

        self.assertTrue(result.success)
        self.assertEqual([e.strategy for e in result.errors], ["telemetry_fetch"])
        self.assertEqual(result.errors[0].error_kind, "upstream_unavailable")
        self.repository.list_gaps.assert_called_once()

    def test_nothing_succeeds_is_failure(self):
        self.telemetry.get_telemetry.side_effect = UpstreamDataError("telemetry down")
        only_telemetry = DetectionConfig(digital_twin_enabled=False)

        result = self.agent.detect_anomalies("plant-a", 6, only_telemetry)

        self.assertFalse(result.success)
        self.assertEqual(result.anomalies, [])

    def test_injected_model_used_when_ml_enabled(self):
        model = MagicMock()
        strategies = self.agent.build_strategies(DetectionConfig(ml_enabled=True))
        agent = AnomalyDetectorAgent("Detector", self.bus, self.configs, self.telemetry,
                                     self.repository, ml_model=model)
        forest = [s for s in agent.build_strategies(DetectionConfig(ml_enabled=True))
                  if s.name == "isolation_forest"][0]
        self.assertIs(forest.model, model)
        self.assertEqual(len(strategies), 5)


class TestSeverityEscalation(unittest.TestCase):
    def setUp(self):
        self.store = InMemoryTwinStore()
        self.store.save_config(make_config())
        self.bus = EventBus()
        self.sink = MagicMock()
        self.alerts = AlertDispatcherAgent("Alerts", self.bus, sink=self.sink)
        self.alerts.start()
        self.agent = AnomalyDetectorAgent("Detector", self.bus, self.store, self.store, self.store,
                                          config={"clock": lambda: NOON.replace(hour=20)})
        self.strategy = MagicMock()
        self.strategy.name = "scripted"
        self.strategy.needs_telemetry = False
        self.agent.build_strategies = MagicMock(return_value=[self.strategy])

    def tearDown(self):
        self.alerts.stop()

    def detect_at(self, severity):
        self.strategy.detect.return_value = [make_anomaly(severity=severity)]
        return self.agent.detect_anomalies("plant-a", 24)

    def test_escalation_to_critical_alerts_once(self):
        self.detect_at(Severity.MEDIUM)
        self.sink.send.assert_not_called()

        escalated = self.detect_at(Severity.CRITICAL)
        self.detect_at(Severity.CRITICAL)

        self.assertEqual(escalated.anomalies[0].severity, Severity.CRITICAL)
        self.assertEqual(len(self.store.list_anomalies("plant-a")), 1)
        self.assertEqual(self.sink.send.call_count, 1)
        alert = self.sink.send.call_args[0][0]
        self.assertEqual(alert["level"], "CRITICAL")
        self.assertIn("escalated from medium", alert["message"])

    def test_severity_never_downgrades(self):
        self.detect_at(Severity.CRITICAL)
        again = self.detect_at(Severity.LOW)
        self.assertEqual(again.anomalies[0].severity, Severity.CRITICAL)
        self.assertEqual(self.sink.send.call_count, 1)


class TestAnomalyStatusUpdates(unittest.TestCase):
    def setUp(self):
        self.store = InMemoryTwinStore()
        self.bus = MagicMock()
        self.anomaly = make_anomaly()
        self.store.save_anomaly(self.anomaly)
        self.agent = AnomalyDetectorAgent("Detector", self.bus, self.store, self.store, self.store,
                                          config={"clock": lambda: NOON + timedelta(hours=1)})

    def test_resolve_stamps_time_and_publishes(self):
        updated = self.agent.update_anomaly_status(self.anomaly.anomaly_id, AnomalyStatus.RESOLVED)

        self.assertEqual(updated.status, AnomalyStatus.RESOLVED)
        self.assertEqual(updated.resolved_at, NOON + timedelta(hours=1))
        event = self.bus.publish.call_args[0][0]
        self.assertIsInstance(event, AnomalyStatusChangedEvent)
        self.assertEqual((event.old_status, event.new_status), ("active", "resolved"))

    def test_closed_status_cannot_reopen(self):
        self.agent.update_anomaly_status(self.anomaly.anomaly_id, AnomalyStatus.FALSE_POSITIVE)
        with self.assertRaises(StateTransitionError):
            self.agent.update_anomaly_status(self.anomaly.anomaly_id, AnomalyStatus.ACTIVE)
        self.assertEqual(self.store.get_anomaly(self.anomaly.anomaly_id).status,
                         AnomalyStatus.FALSE_POSITIVE)

    def test_unknown_anomaly(self):
        with self.assertRaises(AnomalyNotFoundError):
            self.agent.update_anomaly_status("missing", AnomalyStatus.RESOLVED)


if __name__ == "__main__":
    unittest.main()
