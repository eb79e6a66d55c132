"""
In-Memory Store Module - PV Digital Twin Platform

Thread-safe persistence for configs, forecasts, gaps, anomalies, analyses
and audits, plus the raw telemetry/weather it serves to the engines.

Records are deep-copied on the way in and on the way out, so callers never
share mutable state. Same-key upserts are last-writer-wins under one lock.
Configs and audits are append-only.
"""
import copy
import json
import logging
import threading
from bisect import insort
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from pv_twin.domain.errors import ValidationError
from pv_twin.domain.interfaces import (
    IConfigProvider, ITelemetryProvider, IWeatherProvider, ITwinRepository
)
from pv_twin.domain.models import (
    Anomaly, AnomalyKey, BaselineForecast, DigitalTwinConfig, PerformanceGap,
    PlantAudit, RootCauseAnalysis, TelemetryPoint, WeatherObservation, as_utc, parse_timestamp
)

logger = logging.getLogger(__name__)


class InMemoryTwinStore(ITwinRepository, IConfigProvider, ITelemetryProvider, IWeatherProvider):
    def __init__(self):
        self._lock = threading.RLock()
        self._configs: Dict[str, List[DigitalTwinConfig]] = {}
        self._baselines: Dict[Tuple[str, datetime], BaselineForecast] = {}
        self._gaps: Dict[Tuple[str, datetime], PerformanceGap] = {}
        self._anomalies: Dict[str, Anomaly] = {}
        self._anomaly_index: Dict[AnomalyKey, str] = {}
        self._analyses: Dict[str, RootCauseAnalysis] = {}
        self._audits: Dict[str, List[PlantAudit]] = {}
        self._telemetry: Dict[str, List[Tuple[datetime, int, TelemetryPoint]]] = {}
        self._weather: Dict[Tuple[str, datetime], WeatherObservation] = {}
        self._seq = 0

    # ------------------------------------------------------------------
    # Configs (append-only versions)
    # ------------------------------------------------------------------

    def save_config(self, config: DigitalTwinConfig) -> DigitalTwinConfig:
        with self._lock:
            versions = self._configs.setdefault(config.plant_id, [])
            stored = copy.deepcopy(config)
            stored.version = len(versions) + 1
            versions.append(stored)
            logger.info(f"Config v{stored.version} stored for plant {config.plant_id}",
                        extra={"props": {"plant_id": config.plant_id, "config_id": stored.config_id}})
            return copy.deepcopy(stored)

    def get_active_config(self, plant_id: str) -> Optional[DigitalTwinConfig]:
        with self._lock:
            versions = self._configs.get(plant_id)
            return copy.deepcopy(versions[-1]) if versions else None

    def list_config_versions(self, plant_id: str) -> List[DigitalTwinConfig]:
        with self._lock:
            return copy.deepcopy(self._configs.get(plant_id, []))

    def list_plants(self) -> List[str]:
        with self._lock:
            return sorted(self._configs)

    # ------------------------------------------------------------------
    # Baselines & gaps (idempotent upserts)
    # ------------------------------------------------------------------

    def upsert_baseline(self, forecast: BaselineForecast):
        with self._lock:
            stored = copy.deepcopy(forecast)
            stored.timestamp = as_utc(stored.timestamp)
            self._baselines[stored.key] = stored

    def get_baseline(self, plant_id: str, timestamp: datetime) -> Optional[BaselineForecast]:
        with self._lock:
            found = self._baselines.get((plant_id, as_utc(timestamp)))
            return copy.deepcopy(found) if found else None

    def list_baselines(self, plant_id: str, start: datetime, end: datetime) -> List[BaselineForecast]:
        start, end = as_utc(start), as_utc(end)
        with self._lock:
            rows = [b for (pid, ts), b in self._baselines.items()
                    if pid == plant_id and start <= ts <= end]
            return copy.deepcopy(sorted(rows, key=lambda b: b.timestamp))

    def upsert_gap(self, gap: PerformanceGap):
        with self._lock:
            stored = copy.deepcopy(gap)
            stored.timestamp = as_utc(stored.timestamp)
            self._gaps[stored.key] = stored

    def get_gap(self, plant_id: str, timestamp: datetime) -> Optional[PerformanceGap]:
        with self._lock:
            found = self._gaps.get((plant_id, as_utc(timestamp)))
            return copy.deepcopy(found) if found else None

    def list_gaps(self, plant_id: str, start: datetime, end: datetime) -> List[PerformanceGap]:
        start, end = as_utc(start), as_utc(end)
        with self._lock:
            rows = [g for (pid, ts), g in self._gaps.items()
                    if pid == plant_id and start <= ts <= end]
            return copy.deepcopy(sorted(rows, key=lambda g: g.timestamp))

    # ------------------------------------------------------------------
    # Anomalies & analyses
    # ------------------------------------------------------------------

    def save_anomaly(self, anomaly: Anomaly, key: Optional[AnomalyKey] = None):
        with self._lock:
            self._anomalies[anomaly.anomaly_id] = copy.deepcopy(anomaly)
            if key is not None:
                self._anomaly_index[key] = anomaly.anomaly_id

    def get_anomaly(self, anomaly_id: str) -> Optional[Anomaly]:
        with self._lock:
            found = self._anomalies.get(anomaly_id)
            return copy.deepcopy(found) if found else None

    def update_anomaly(self, anomaly_id: str, mutator: Callable[[Anomaly], None]) -> Optional[Anomaly]:
        """Read-modify-write under the store lock; returns None if the id is unknown."""
        with self._lock:
            stored = self._anomalies.get(anomaly_id)
            if stored is None:
                return None
            working = copy.deepcopy(stored)
            mutator(working)
            self._anomalies[anomaly_id] = working
            return copy.deepcopy(working)

    def find_by_key(self, key: AnomalyKey) -> Optional[Anomaly]:
        with self._lock:
            anomaly_id = self._anomaly_index.get(key)
            return copy.deepcopy(self._anomalies[anomaly_id]) if anomaly_id else None

    def list_anomalies(self, plant_id: Optional[str] = None, start: Optional[datetime] = None,
                       end: Optional[datetime] = None) -> List[Anomaly]:
        with self._lock:
            rows = [a for a in self._anomalies.values()
                    if (plant_id is None or a.plant_id == plant_id)
                    and (start is None or a.timestamp >= start)
                    and (end is None or a.timestamp <= end)]
            return copy.deepcopy(sorted(rows, key=lambda a: a.timestamp))

    def save_analysis(self, analysis: RootCauseAnalysis):
        with self._lock:
            self._analyses[analysis.anomaly_id] = copy.deepcopy(analysis)

    def get_analysis_for_anomaly(self, anomaly_id: str) -> Optional[RootCauseAnalysis]:
        with self._lock:
            found = self._analyses.get(anomaly_id)
            return copy.deepcopy(found) if found else None

    def list_analyses(self, plant_id: Optional[str] = None) -> List[RootCauseAnalysis]:
        with self._lock:
            rows = [a for a in self._analyses.values()
                    if plant_id is None or a.plant_id == plant_id]
            return copy.deepcopy(rows)

    # ------------------------------------------------------------------
    # Audits (append-only)
    # ------------------------------------------------------------------

    def append_audit(self, audit: PlantAudit):
        with self._lock:
            self._audits.setdefault(audit.plant_id, []).append(copy.deepcopy(audit))

    def list_audits(self, plant_id: str) -> List[PlantAudit]:
        with self._lock:
            return copy.deepcopy(self._audits.get(plant_id, []))

    # ------------------------------------------------------------------
    # Raw inputs: telemetry & weather
    # ------------------------------------------------------------------

    def add_telemetry(self, points: List[TelemetryPoint]):
        with self._lock:
            for point in points:
                self._seq += 1
                stored = copy.deepcopy(point)
                stored.timestamp = as_utc(stored.timestamp)
                insort(self._telemetry.setdefault(point.plant_id, []), (stored.timestamp, self._seq, stored))

    def get_telemetry(self, plant_id: str, start: datetime, end: datetime) -> List[TelemetryPoint]:
        start, end = as_utc(start), as_utc(end)
        with self._lock:
            return [copy.deepcopy(p) for ts, _, p in self._telemetry.get(plant_id, [])
                    if start <= ts <= end]

    def get_telemetry_at(self, plant_id: str, timestamp: datetime) -> List[TelemetryPoint]:
        timestamp = as_utc(timestamp)
        with self._lock:
            return [copy.deepcopy(p) for ts, _, p in self._telemetry.get(plant_id, [])
                    if ts == timestamp]

    def add_weather(self, plant_id: str, timestamp: datetime, observation: WeatherObservation):
        with self._lock:
            self._weather[(plant_id, as_utc(timestamp))] = copy.deepcopy(observation)

    def get_weather(self, plant_id: str, timestamp: datetime) -> Optional[WeatherObservation]:
        with self._lock:
            found = self._weather.get((plant_id, as_utc(timestamp)))
            return copy.deepcopy(found) if found else None

    # ------------------------------------------------------------------
    # JSON files
    # ------------------------------------------------------------------

    def export_snapshot(self, path: str):
        """Write every persisted record as JSON for reporting readers."""
        with self._lock:
            snapshot = {
                "configs": [c.to_dict() for versions in self._configs.values() for c in versions],
                "baselines": [b.to_dict() for b in self._baselines.values()],
                "gaps": [g.to_dict() for g in self._gaps.values()],
                "anomalies": [a.to_dict() for a in self._anomalies.values()],
                "root_cause_analyses": [r.to_dict() for r in self._analyses.values()],
                "audits": [a.to_dict() for audits in self._audits.values() for a in audits],
            }
        with open(path, "w") as f:
            json.dump(snapshot, f, indent=2, default=str)

    def load_inputs(self, path: str) -> Dict[str, int]:
        """Seed configs, telemetry and weather from a JSON fixture file."""
        with open(path, "r") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValidationError(f"Input file {path} must contain an object")

        configs = [DigitalTwinConfig.from_dict(c) for c in data.get("configs", [])]
        try:
            points = [TelemetryPoint.from_dict(t) for t in data.get("telemetry", [])]
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"Malformed telemetry row: {e}") from e
        weather_rows = data.get("weather", [])

        for config in configs:
            self.save_config(config)
        self.add_telemetry(points)
        for row in weather_rows:
            observation = WeatherObservation.from_dict(row)
            if observation is not None:
                self.add_weather(str(row["plant_id"]), parse_timestamp(row["timestamp"]), observation)

        counts = {"configs": len(configs), "telemetry": len(points), "weather": len(weather_rows)}
        logger.info("Inputs loaded", extra={"props": {"path": path, **counts}})
        return counts
