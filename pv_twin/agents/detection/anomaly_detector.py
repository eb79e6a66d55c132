"""
Anomaly Detector Agent - PV Digital Twin Platform

Runs the enabled detection strategies over a time window for one plant or
for every configured plant, persists the results and deduplicates
re-detections of the same event.

Idempotency:
    Candidates are keyed by (plant, anomaly_type, timestamp floored to the
    dedup window). An open anomaly with the same key is updated in place
    (last_detected_at, detection_count); a closed one is left alone.
"""
import threading
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from pv_twin.agents.detection.strategies import (
    DataGapStrategy, DetectionContext, DigitalTwinStrategy, IsolationForestStrategy,
    RollingBaselineStrategy, ZScoreStrategy
)
from pv_twin.domain.errors import AnomalyNotFoundError, TwinError, ValidationError
from pv_twin.domain.events import AnomalyDetectedEvent, AnomalyStatusChangedEvent
from pv_twin.domain.interfaces import (
    IAnomalyModel, IConfigProvider, IDetectionStrategy, ITelemetryProvider, ITwinRepository
)
from pv_twin.domain.models import (
    Anomaly, AnomalyKey, AnomalyStatus, DetectionConfig, DetectionResult, Severity, StrategyError
)
from pv_twin.framework.base_agent import BaseAgent
from pv_twin.framework.bus import EventBus

SEVERITY_RANK = {Severity.LOW: 0, Severity.MEDIUM: 1, Severity.HIGH: 2, Severity.CRITICAL: 3}


class AnomalyDetectorAgent(BaseAgent):
    def __init__(self, name: str, bus: EventBus, config_provider: IConfigProvider,
                 telemetry_provider: ITelemetryProvider, repository: ITwinRepository,
                 config: Optional[Dict[str, Any]] = None,
                 ml_model: Optional[IAnomalyModel] = None):
        super().__init__(name, bus, config)
        self.config_provider = config_provider
        self.telemetry_provider = telemetry_provider
        self.repository = repository
        self.ml_model = ml_model

        self.default_period_hours = float(self.config.get("default_period_hours", 24))
        self.dedup_window_minutes = int(self.config.get("dedup_window_minutes", 15))
        self._dedup_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Strategy collection
    # ------------------------------------------------------------------

    def build_strategies(self, detection: DetectionConfig) -> List[IDetectionStrategy]:
        cfg = self.config
        strategies: List[IDetectionStrategy] = []
        if detection.statistical_enabled:
            strategies.append(ZScoreStrategy(
                thresholds=cfg.get("z_score_thresholds"),
                min_samples=int(cfg.get("min_samples", 5))
            ))
        if detection.data_gap_enabled:
            gap_cfg = cfg.get("data_gap", {})
            strategies.append(DataGapStrategy(
                expected_interval_minutes=float(gap_cfg.get("expected_interval_minutes", 15)),
                gap_multiple=float(gap_cfg.get("gap_multiple", 2))
            ))
        if detection.rolling_baseline_enabled:
            rolling_cfg = cfg.get("rolling_baseline", {})
            strategies.append(RollingBaselineStrategy(
                window=int(rolling_cfg.get("window", 8)),
                min_periods=int(rolling_cfg.get("min_periods", 4)),
                mad_threshold=float(rolling_cfg.get("mad_threshold", 3.5)),
                underperformance_ratio=float(rolling_cfg.get("underperformance_ratio", 0.7))
            ))
        if detection.ml_enabled:
            forest_cfg = dict(cfg.get("isolation_forest", {}))
            min_samples = int(forest_cfg.pop("min_samples", 20))
            if self.ml_model is not None:
                strategies.append(IsolationForestStrategy(model=self.ml_model, min_samples=min_samples))
            else:
                strategies.append(IsolationForestStrategy(min_samples=min_samples, **forest_cfg))
        if detection.digital_twin_enabled:
            twin_cfg = cfg.get("digital_twin", {})
            strategies.append(DigitalTwinStrategy(
                gap_threshold_percent=float(twin_cfg.get("gap_threshold_percent", 10.0)),
                confidence=float(twin_cfg.get("confidence", 0.85))
            ))
        return strategies

    # ------------------------------------------------------------------
    # Operation
    # ------------------------------------------------------------------

    def detect_anomalies(self, plant_id: Optional[str] = None, period_hours: Optional[float] = None,
                         detection: Optional[DetectionConfig] = None) -> DetectionResult:
        detection = detection or DetectionConfig()
        hours = self.default_period_hours if period_hours is None else float(period_hours)
        if hours <= 0:
            raise ValidationError(f"period_hours must be positive, got {hours}")

        end = self.now()
        start = end - timedelta(hours=hours)
        plants = [plant_id] if plant_id else self.config_provider.list_plants()
        strategies = self.build_strategies(detection)

        errors: List[StrategyError] = []
        results: Dict[str, Anomaly] = {}
        attempted = 0
        failed = 0

        for plant in plants:
            ctx = DetectionContext(
                plant_id=plant, start=start, end=end, repository=self.repository,
                settings=self.config, sensitivity=detection.sensitivity,
                config=self.config_provider.get_active_config(plant)
            )

            telemetry_ok = True
            if any(s.needs_telemetry for s in strategies):
                attempted += 1
                try:
                    ctx.telemetry = self.telemetry_provider.get_telemetry(plant, start, end)
                except TwinError as e:
                    failed += 1
                    telemetry_ok = False
                    errors.append(StrategyError("telemetry_fetch", e.error_kind, e.message, plant))
                    self.logger.error(f"Telemetry fetch failed for {plant}: {e}",
                                      extra={"props": {"plant_id": plant, "error_kind": e.error_kind}})

            for strategy in strategies:
                if strategy.needs_telemetry and not telemetry_ok:
                    continue
                attempted += 1
                try:
                    candidates = strategy.detect(ctx)
                except Exception as e:
                    failed += 1
                    kind = getattr(e, "error_kind", "strategy_failed")
                    errors.append(StrategyError(strategy.name, kind, str(e), plant))
                    self.logger.error(f"Strategy {strategy.name} failed for {plant}: {e}", exc_info=True,
                                      extra={"props": {"plant_id": plant, "strategy": strategy.name}})
                    continue

                for candidate in candidates:
                    stored = self._record(candidate, end)
                    if stored is not None:
                        anomaly, is_new, previous_severity = stored
                        results[anomaly.anomaly_id] = anomaly
                        self._announce(anomaly, is_new, previous_severity)

        success = attempted == 0 or failed < attempted
        self.log_metric("anomalies_detected", len(results))
        return DetectionResult(success=success, anomalies=list(results.values()), errors=errors)

    def _record(self, candidate: Anomaly, now: datetime) -> Optional[Tuple[Anomaly, bool, Optional[Severity]]]:
        """Returns (anomaly, is_new, severity before this detection) or None for a closed record."""
        key = AnomalyKey.for_anomaly(candidate, self.dedup_window_minutes)
        with self._dedup_lock:
            existing = self.repository.find_by_key(key)
            if existing is None:
                candidate.created_at = now
                candidate.last_detected_at = now
                self.repository.save_anomaly(candidate, key)
                return candidate, True, None
        if not existing.is_open:
            self.logger.debug(f"Skipping re-detection of closed anomaly {existing.anomaly_id}")
            return None

        previous = {}

        def redetect(anomaly: Anomaly):
            # status is owned by operators and root cause analysis; never touched here
            if not anomaly.is_open:
                return
            previous["severity"] = anomaly.severity
            anomaly.last_detected_at = now
            anomaly.detection_count += 1
            if SEVERITY_RANK[candidate.severity] > SEVERITY_RANK[anomaly.severity]:
                anomaly.severity = candidate.severity
            anomaly.confidence = max(anomaly.confidence, candidate.confidence)
            anomaly.expected_value = candidate.expected_value
            anomaly.actual_value = candidate.actual_value
            anomaly.deviation_percent = candidate.deviation_percent
            anomaly.metadata = {**anomaly.metadata, **candidate.metadata}

        updated = self.repository.update_anomaly(existing.anomaly_id, redetect)
        if updated is None or not updated.is_open:
            return None
        return updated, False, previous.get("severity")

    def _announce(self, anomaly: Anomaly, is_new: bool, previous_severity: Optional[Severity] = None):
        if is_new:
            self.log_business_event("anomaly_opened", {
                "anomaly_id": anomaly.anomaly_id, "plant_id": anomaly.plant_id,
                "type": anomaly.anomaly_type.value, "severity": anomaly.severity.value
            })
        self.publish(AnomalyDetectedEvent(
            source=self.name,
            anomaly_id=anomaly.anomaly_id,
            plant_id=anomaly.plant_id,
            anomaly_type=anomaly.anomaly_type.value,
            severity=anomaly.severity.value,
            confidence=anomaly.confidence,
            is_new=is_new,
            previous_severity=previous_severity.value if previous_severity is not None else None
        ))

    # ------------------------------------------------------------------
    # Operator status updates
    # ------------------------------------------------------------------

    def update_anomaly_status(self, anomaly_id: str, new_status: AnomalyStatus) -> Anomaly:
        previous = {}
        at = self.now()

        def apply(anomaly: Anomaly):
            previous["status"] = anomaly.status
            anomaly.transition(new_status, at=at)

        anomaly = self.repository.update_anomaly(anomaly_id, apply)
        if anomaly is None:
            raise AnomalyNotFoundError(anomaly_id)

        self.publish(AnomalyStatusChangedEvent(
            source=self.name, anomaly_id=anomaly_id,
            old_status=previous["status"].value, new_status=new_status.value
        ))
        return anomaly
