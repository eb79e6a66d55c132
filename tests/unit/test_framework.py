import json
import logging
import os
import tempfile
import threading
import unittest
from unittest.mock import MagicMock, patch

from pv_twin.domain.errors import ConfigNotFoundError, UpstreamDataError, ValidationError
from pv_twin.domain.events import AnomalyDetectedEvent, BaseEvent, PerformanceGapEvent
from pv_twin.framework.bus import EventBus
from pv_twin.framework.cache import TTLCache
from pv_twin.framework.observability import (
    JSONFormatter, Observability, clear_correlation_id, set_correlation_id
)
from pv_twin.framework.retry import RetryingCaller, RetryPolicy
from pv_twin.framework.settings import (
    DEFAULT_SETTINGS, LOG_LEVEL_ENV, deep_merge, load_config, load_settings
)


class TestSettings(unittest.TestCase):
    def test_deep_merge_keeps_siblings(self):
        merged = deep_merge({"gap": {"a": 1, "b": 2}}, {"gap": {"b": 3}})
        self.assertEqual(merged, {"gap": {"a": 1, "b": 3}})

    def test_yaml_file_overrides_defaults(self):
        with tempfile.NamedTemporaryFile("w", suffix=".yaml", delete=False) as f:
            f.write("gap:\n  alert_threshold_percent: 12\n")
            path = f.name
        try:
            settings = load_settings(path)
        finally:
            os.unlink(path)
        self.assertEqual(settings["gap"]["alert_threshold_percent"], 12)
        self.assertEqual(settings["gap"]["tariff_per_kwh"], DEFAULT_SETTINGS["gap"]["tariff_per_kwh"])

    def test_non_mapping_file_rejected(self):
        with tempfile.NamedTemporaryFile("w", suffix=".yaml", delete=False) as f:
            f.write("- just\n- a list\n")
            path = f.name
        try:
            with self.assertRaises(ValidationError):
                load_config(path)
        finally:
            os.unlink(path)

    def test_env_log_level_wins(self):
        with patch.dict(os.environ, {LOG_LEVEL_ENV: "debug"}):
            settings = load_settings(overrides={"logging": {"level": "ERROR"}})
        self.assertEqual(settings["logging"]["level"], "DEBUG")

    def test_defaults_not_mutated(self):
        settings = load_settings(overrides={"detection": {"dedup_window_minutes": 5}})
        self.assertEqual(settings["detection"]["dedup_window_minutes"], 5)
        self.assertEqual(DEFAULT_SETTINGS["detection"]["dedup_window_minutes"], 15)

    def test_shipped_engine_yaml_only_sets_known_keys(self):
        path = os.path.join(os.path.dirname(__file__), "..", "..", "config", "engine.yaml")
        shipped = load_config(path)
        for section, values in shipped.items():
            self.assertIn(section, DEFAULT_SETTINGS)
            self.assertLessEqual(set(values), set(DEFAULT_SETTINGS[section]), section)


class TestTTLCache(unittest.TestCase):
    def setUp(self):
        self.now = [0.0]
        self.cache = TTLCache(ttl_seconds=10, max_entries=2, clock=lambda: self.now[0])

    def test_expires_after_ttl(self):
        self.cache.set("k", 1)
        self.now[0] = 9.9
        self.assertEqual(self.cache.get("k"), 1)
        self.now[0] = 10.0
        self.assertIsNone(self.cache.get("k"))
        self.assertEqual(self.cache.misses, 1)

    def test_evicts_least_recently_used(self):
        self.cache.set("a", 1)
        self.cache.set("b", 2)
        self.cache.get("a")
        self.cache.set("c", 3)
        self.assertIsNone(self.cache.get("b"))
        self.assertEqual(self.cache.get("a"), 1)
        self.assertEqual(len(self.cache), 2)


class TestRetryingCaller(unittest.TestCase):
    def setUp(self):
        self.sleep = MagicMock()
        self.caller = RetryingCaller(RetryPolicy(attempts=3, base_delay_s=0.1, max_delay_s=0.15,
                                                 timeout_s=None), sleep=self.sleep)

    def test_retries_transient_failure(self):
        fn = MagicMock(side_effect=[ConnectionError("reset"), "ok"])
        self.assertEqual(self.caller.call("telemetry", fn, "p"), "ok")
        self.assertEqual(fn.call_count, 2)
        self.sleep.assert_called_once_with(0.1)

    def test_exhausted_retries_raise_upstream_error(self):
        fn = MagicMock(side_effect=OSError("down"))
        with self.assertRaises(UpstreamDataError) as ctx:
            self.caller.call("weather", fn)
        self.assertTrue(ctx.exception.retryable)
        self.assertEqual(fn.call_count, 3)
        # backoff doubles but is capped
        self.assertEqual([c.args[0] for c in self.sleep.call_args_list], [0.1, 0.15])

    def test_non_retryable_error_propagates_immediately(self):
        fn = MagicMock(side_effect=ConfigNotFoundError("p"))
        with self.assertRaises(ConfigNotFoundError):
            self.caller.call("config", fn)
        self.assertEqual(fn.call_count, 1)
        self.sleep.assert_not_called()

    def test_timeout_counts_as_failure(self):
        release = threading.Event()
        caller = RetryingCaller(RetryPolicy(attempts=1, timeout_s=0.05), sleep=self.sleep)
        try:
            with self.assertRaises(UpstreamDataError):
                caller.call("slow", release.wait, 5)
        finally:
            release.set()
            caller.shutdown()

    def test_hung_fetches_do_not_starve_later_calls(self):
        release = threading.Event()
        caller = RetryingCaller(RetryPolicy(attempts=1, timeout_s=0.05), sleep=self.sleep)
        try:
            for _ in range(5):
                with self.assertRaises(UpstreamDataError):
                    caller.call("slow", release.wait, 5)
            self.assertEqual(caller.abandoned_calls, 5)
            self.assertEqual(caller.call("fast", lambda: "ok"), "ok")
        finally:
            release.set()
            caller.shutdown()


class TestEventBus(unittest.TestCase):
    def setUp(self):
        self.bus = EventBus(history_size=3)

    def test_dispatch_by_type_and_base_type(self):
        gap_handler = MagicMock()
        any_handler = MagicMock()
        self.bus.subscribe(PerformanceGapEvent, gap_handler)
        self.bus.subscribe(BaseEvent, any_handler)

        self.bus.publish(PerformanceGapEvent(plant_id="p"))
        self.bus.publish(AnomalyDetectedEvent(plant_id="p"))

        self.assertEqual(gap_handler.call_count, 1)
        self.assertEqual(any_handler.call_count, 2)

    def test_handler_error_is_isolated(self):
        failing = MagicMock(side_effect=RuntimeError("boom"))
        healthy = MagicMock()
        self.bus.subscribe(PerformanceGapEvent, failing)
        self.bus.subscribe(PerformanceGapEvent, healthy)

        self.bus.publish(PerformanceGapEvent())

        healthy.assert_called_once()
        self.assertEqual(self.bus.get_stats()["handler_errors"], 1)

    def test_history_is_bounded_and_filterable(self):
        for _ in range(4):
            self.bus.publish(PerformanceGapEvent())
        self.bus.publish(AnomalyDetectedEvent())
        self.assertEqual(len(self.bus.get_history()), 3)
        self.assertEqual(len(self.bus.get_history(event_type=AnomalyDetectedEvent)), 1)


class TestObservability(unittest.TestCase):
    def test_json_lines_carry_props_and_request_id(self):
        record = logging.LogRecord("Detector", logging.INFO, __file__, 1, "opened", None, None)
        record.props = {"plant_id": "p"}
        set_correlation_id("req-9")
        try:
            line = json.loads(JSONFormatter().format(record))
        finally:
            clear_correlation_id()
        self.assertEqual(line["plant_id"], "p")
        self.assertEqual(line["request_id"], "req-9")
        self.assertEqual(line["level"], "INFO")

    def test_metrics_keep_latest_value(self):
        obs = Observability.get_instance()
        obs.log_metric("anomalies_detected", 2, agent="DetectorTest")
        obs.log_metric("anomalies_detected", 5, agent="DetectorTest")
        self.assertEqual(obs.get_metrics()["DetectorTest.anomalies_detected"], 5)


if __name__ == "__main__":
    unittest.main()
