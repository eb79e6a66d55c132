"""
Twin Service - PV Digital Twin Platform

Composition root and JSON facade. Wires the store, cache, retry policy,
event bus and engines, registers them with the AgentRegistry and exposes
every operation both as a typed method and through ``handle(request)``.

Request format::

    {"operation": "calculate_performance_gap",
     "params": {"plant_id": "plant-1", "timestamp": "2024-06-01T12:00:00Z"}}

Failures come back as ``{"success": false, "error_kind": ..., "retryable": ...}``.
"""
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from pv_twin.adapters.memory_store import InMemoryTwinStore
from pv_twin.adapters.providers import (
    CachedConfigProvider, RetryingTelemetryProvider, RetryingWeatherProvider
)
from pv_twin.agents.alerting.alert_dispatcher import AlertDispatcherAgent
from pv_twin.agents.analysis.gap_analyzer import PerformanceGapAnalyzerAgent
from pv_twin.agents.audit.audit_engine import AuditEngineAgent
from pv_twin.agents.detection.anomaly_detector import AnomalyDetectorAgent
from pv_twin.agents.diagnosis.root_cause import RootCauseAnalyzerAgent
from pv_twin.agents.forecasting.baseline_forecaster import BaselineForecasterAgent
from pv_twin.domain.errors import TwinError, ValidationError
from pv_twin.domain.events import ConfigRegisteredEvent
from pv_twin.domain.interfaces import IAlertSink, IAnomalyModel
from pv_twin.domain.models import (
    Anomaly, AnomalyStatus, BaselineForecast, DetectionConfig, DetectionResult, DigitalTwinConfig,
    PerformanceGap, PlantAudit, RootCauseAnalysis, WeatherObservation, as_utc, parse_timestamp
)
from pv_twin.framework.bus import EventBus
from pv_twin.framework.cache import TTLCache
from pv_twin.framework.observability import Observability, get_logger
from pv_twin.framework.registry import AgentRegistry
from pv_twin.framework.retry import RetryingCaller, RetryPolicy
from pv_twin.framework.settings import load_settings

logger = get_logger("TwinService")


class TwinService:
    def __init__(self, settings: Optional[Dict[str, Any]] = None,
                 store: Optional[InMemoryTwinStore] = None,
                 alert_sink: Optional[IAlertSink] = None,
                 ml_model: Optional[IAnomalyModel] = None,
                 clock: Optional[Callable[[], datetime]] = None,
                 sleep: Optional[Callable[[float], None]] = None):
        self.settings = settings if settings is not None else load_settings()
        log_cfg = self.settings.get("logging", {})
        self.observability = Observability.get_instance(log_cfg.get("level"))

        # 1. Framework
        self.bus = EventBus()
        self.registry = AgentRegistry()

        # 2. Adapters
        self.store = store or InMemoryTwinStore()
        cache_cfg = self.settings.get("cache", {})
        self.config_cache = TTLCache(ttl_seconds=float(cache_cfg.get("config_ttl_s", 300.0)),
                                     max_entries=int(cache_cfg.get("max_entries", 256)))
        self.config_provider = CachedConfigProvider(self.store, self.config_cache)
        policy = RetryPolicy.from_settings(self.settings)
        self.caller = RetryingCaller(policy, sleep=sleep or time.sleep)
        self.telemetry_provider = RetryingTelemetryProvider(self.store, self.caller)
        self.weather_provider = RetryingWeatherProvider(self.store, self.caller)

        # 3. Engines
        self.forecaster = BaselineForecasterAgent(
            "BaselineForecaster", self.bus, self.config_provider, self.store,
            weather_provider=self.weather_provider, config=self._section("baseline", clock))
        self.gap_analyzer = PerformanceGapAnalyzerAgent(
            "GapAnalyzer", self.bus, self.telemetry_provider, self.store,
            config=self._section("gap", clock))
        self.detector = AnomalyDetectorAgent(
            "AnomalyDetector", self.bus, self.config_provider, self.telemetry_provider, self.store,
            config=self._section("detection", clock), ml_model=ml_model)
        self.root_cause = RootCauseAnalyzerAgent(
            "RootCauseAnalyzer", self.bus, self.store, config_provider=self.config_provider,
            config=self._section("diagnosis", clock))
        self.auditor = AuditEngineAgent(
            "AuditEngine", self.bus, self.config_provider, self.telemetry_provider, self.store,
            config=self._section("audit", clock))
        self.alerts = AlertDispatcherAgent(
            "AlertDispatcher", self.bus, sink=alert_sink, config=self._section("alerting", clock))

        for agent in [self.forecaster, self.gap_analyzer, self.detector,
                      self.root_cause, self.auditor, self.alerts]:
            self.registry.register(agent)

        self.operations: Dict[str, Callable[[Dict[str, Any]], Any]] = {
            "register_config": self._op_register_config,
            "calculate_baseline": self._op_calculate_baseline,
            "calculate_performance_gap": self._op_calculate_performance_gap,
            "detect_anomalies": self._op_detect_anomalies,
            "update_anomaly_status": self._op_update_anomaly_status,
            "analyze_root_cause": self._op_analyze_root_cause,
            "complete_investigation": self._op_complete_investigation,
            "run_audit": self._op_run_audit,
            "list_anomalies": self._op_list_anomalies,
            "list_audits": self._op_list_audits,
        }

    def _section(self, name: str, clock) -> Dict[str, Any]:
        section = dict(self.settings.get(name, {}))
        if clock is not None:
            section["clock"] = clock
        return section

    def start(self):
        self.registry.start_all()

    def stop(self):
        self.registry.stop_all()
        self.caller.shutdown()

    # ------------------------------------------------------------------
    # Typed operations
    # ------------------------------------------------------------------

    def register_config(self, payload: Dict[str, Any]) -> DigitalTwinConfig:
        config = DigitalTwinConfig.from_dict(payload)
        stored = self.store.save_config(config)
        self.config_provider.invalidate(stored.plant_id)
        self.bus.publish(ConfigRegisteredEvent(
            source="TwinService", plant_id=stored.plant_id,
            config_id=stored.config_id, version=stored.version
        ))
        return stored

    def calculate_baseline(self, plant_id: str, timestamp: datetime,
                           weather: Optional[WeatherObservation] = None) -> BaselineForecast:
        return self.forecaster.calculate_baseline(plant_id, as_utc(timestamp), weather)

    def calculate_performance_gap(self, plant_id: str, timestamp: datetime) -> PerformanceGap:
        return self.gap_analyzer.calculate_performance_gap(plant_id, as_utc(timestamp))

    def detect_anomalies(self, plant_id: Optional[str] = None, period_hours: Optional[float] = None,
                         detection: Optional[DetectionConfig] = None) -> DetectionResult:
        return self.detector.detect_anomalies(plant_id, period_hours, detection)

    def update_anomaly_status(self, anomaly_id: str, status: AnomalyStatus) -> Anomaly:
        return self.detector.update_anomaly_status(anomaly_id, status)

    def analyze_root_cause(self, anomaly_id: str) -> RootCauseAnalysis:
        return self.root_cause.analyze_root_cause(anomaly_id)

    def complete_investigation(self, anomaly_id: str, resolution_summary: str, actual_cause: str,
                               lessons_learned: str,
                               anomaly_status: Optional[AnomalyStatus] = AnomalyStatus.RESOLVED
                               ) -> RootCauseAnalysis:
        return self.root_cause.complete_investigation(
            anomaly_id, resolution_summary, actual_cause, lessons_learned, anomaly_status)

    def run_audit(self, plant_id: str, period_days: Optional[float] = None) -> PlantAudit:
        return self.auditor.run_audit(plant_id, period_days)

    # ------------------------------------------------------------------
    # JSON facade
    # ------------------------------------------------------------------

    def handle(self, request: Dict[str, Any]) -> Dict[str, Any]:
        request_id = request.get("request_id") if isinstance(request, dict) else None
        trace_id = self.observability.start_trace(request_id)
        try:
            if not isinstance(request, dict):
                raise ValidationError("Request must be a JSON object")
            operation = request.get("operation")
            handler = self.operations.get(operation)
            if handler is None:
                raise ValidationError(f"Unknown operation: {operation}",
                                      {"operations": sorted(self.operations)})
            params = request.get("params") or {}
            if not isinstance(params, dict):
                raise ValidationError("params must be a JSON object")

            logger.info(f"Handling {operation}", extra={"props": {"operation": operation}})
            response = handler(params)
            response.setdefault("success", True)
            response["request_id"] = trace_id
            return response
        except TwinError as e:
            logger.warning(f"Request failed: {e.message}",
                           extra={"props": {"error_kind": e.error_kind, "retryable": e.retryable}})
            return {"success": False, "request_id": trace_id, **e.to_dict()}
        except (TypeError, ValueError) as e:
            error = ValidationError(f"Malformed parameter: {e}")
            logger.warning(error.message, extra={"props": {"error_kind": error.error_kind}})
            return {"success": False, "request_id": trace_id, **error.to_dict()}
        finally:
            self.observability.end_trace()

    @staticmethod
    def _require(params: Dict[str, Any], *names: str):
        missing = [n for n in names if params.get(n) in (None, "")]
        if missing:
            raise ValidationError(f"Missing required parameter(s): {', '.join(missing)}")

    @staticmethod
    def _status(value: Any) -> AnomalyStatus:
        try:
            return AnomalyStatus(value)
        except ValueError as e:
            raise ValidationError(f"Unknown anomaly status: {value}") from e

    def _op_register_config(self, params):
        self._require(params, "config")
        return {"config": self.register_config(params["config"]).to_dict()}

    def _op_calculate_baseline(self, params):
        self._require(params, "plant_id", "timestamp")
        forecast = self.calculate_baseline(
            str(params["plant_id"]), parse_timestamp(params["timestamp"]),
            WeatherObservation.from_dict(params.get("weather")))
        return {"baseline": forecast.to_dict()}

    def _op_calculate_performance_gap(self, params):
        self._require(params, "plant_id", "timestamp")
        gap = self.calculate_performance_gap(str(params["plant_id"]), parse_timestamp(params["timestamp"]))
        return {"gap": gap.to_dict()}

    def _op_detect_anomalies(self, params):
        period = params.get("period_hours")
        result = self.detect_anomalies(
            params.get("plant_id"),
            float(period) if period is not None else None,
            DetectionConfig.from_dict(params.get("detection")))
        return result.to_dict()

    def _op_update_anomaly_status(self, params):
        self._require(params, "anomaly_id", "status")
        anomaly = self.update_anomaly_status(str(params["anomaly_id"]), self._status(params["status"]))
        return {"anomaly": anomaly.to_dict()}

    def _op_analyze_root_cause(self, params):
        self._require(params, "anomaly_id")
        return {"analysis": self.analyze_root_cause(str(params["anomaly_id"])).to_dict()}

    def _op_complete_investigation(self, params):
        self._require(params, "anomaly_id")
        status = params.get("anomaly_status", AnomalyStatus.RESOLVED.value)
        analysis = self.complete_investigation(
            str(params["anomaly_id"]),
            params.get("resolution_summary", ""),
            params.get("actual_cause", ""),
            params.get("lessons_learned", ""),
            self._status(status) if status is not None else None)
        return {"analysis": analysis.to_dict()}

    def _op_run_audit(self, params):
        self._require(params, "plant_id")
        days = params.get("period_days")
        audit = self.run_audit(str(params["plant_id"]), float(days) if days is not None else None)
        return {"audit": audit.to_dict()}

    def _op_list_anomalies(self, params):
        anomalies: List[Anomaly] = self.store.list_anomalies(params.get("plant_id"))
        return {"anomalies": [a.to_dict() for a in anomalies]}

    def _op_list_audits(self, params):
        self._require(params, "plant_id")
        return {"audits": [a.to_dict() for a in self.store.list_audits(str(params["plant_id"]))]}
