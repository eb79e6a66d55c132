"""
Performance Gap Analyzer Agent - PV Digital Twin Platform

Compares metered energy against the stored baseline for the same
(plant, timestamp) and classifies the deviation into probable causes.
"""
import math
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from pv_twin.domain.errors import BaselineNotFoundError
from pv_twin.domain.events import PerformanceGapEvent
from pv_twin.domain.interfaces import ITelemetryProvider, ITwinRepository
from pv_twin.domain.models import GapCause, GapCauseCategory, PerformanceGap, TelemetryPoint
from pv_twin.framework.base_agent import BaseAgent
from pv_twin.framework.bus import EventBus


def gap_percent_of(actual: float, expected: float) -> float:
    if expected == 0:
        return 0.0
    return (actual - expected) * 100.0 / expected


class PerformanceGapAnalyzerAgent(BaseAgent):
    def __init__(self, name: str, bus: EventBus, telemetry_provider: ITelemetryProvider,
                 repository: ITwinRepository, config: Optional[Dict[str, Any]] = None):
        super().__init__(name, bus, config)
        self.telemetry_provider = telemetry_provider
        self.repository = repository

        self.alert_threshold = float(self.config.get("alert_threshold_percent", 15.0))
        self.tariff = float(self.config.get("tariff_per_kwh", 0.5))
        self.severe_gap = float(self.config.get("severe_gap_percent", -20.0))
        self.moderate_gap = float(self.config.get("moderate_gap_percent", -10.0))
        self.over_gap = float(self.config.get("overperformance_percent", 10.0))

    def calculate_performance_gap(self, plant_id: str, timestamp: datetime) -> PerformanceGap:
        baseline = self.repository.get_baseline(plant_id, timestamp)
        if baseline is None:
            raise BaselineNotFoundError(plant_id, timestamp)

        readings = self.telemetry_provider.get_telemetry_at(plant_id, timestamp)
        actual, excluded = self.sum_energy(readings)

        gap = self.evaluate(plant_id, timestamp, actual, baseline.expected_generation_kwh)
        if excluded:
            gap.excluded_readings = excluded
            gap.flags.append("invalid_energy_readings_excluded")
            self.logger.warning(
                f"Excluded {excluded} invalid energy readings for {plant_id}",
                extra={"props": {"plant_id": plant_id, "timestamp": timestamp.isoformat()}}
            )
        if not readings:
            gap.flags.append("no_telemetry")

        self.repository.upsert_gap(gap)
        self.log_metric("gap_percent", round(gap.gap_percent, 3))
        self.publish(PerformanceGapEvent(
            source=self.name,
            plant_id=plant_id,
            gap_timestamp=timestamp.isoformat(),
            gap_percent=gap.gap_percent,
            gap_kwh=gap.gap_kwh,
            estimated_loss=gap.estimated_loss,
            alert_triggered=gap.alert_triggered
        ))
        return gap

    @staticmethod
    def sum_energy(readings: List[TelemetryPoint]) -> Tuple[float, int]:
        """Sum plant-level energy (all rows if none are plant-level); drop invalid rows."""
        rows = [r for r in readings if r.is_plant_level] or list(readings)
        total = 0.0
        excluded = 0
        for row in rows:
            if row.is_valid_energy():
                total += row.energy_kwh
            else:
                excluded += 1
        return total, excluded

    def evaluate(self, plant_id: str, timestamp: datetime, actual: float, expected: float) -> PerformanceGap:
        """Pure gap arithmetic and cause classification."""
        gap_kwh = actual - expected
        gap_pct = gap_percent_of(actual, expected)
        causes = self.classify(gap_pct, expected)
        loss = abs(gap_kwh) * self.tariff if gap_kwh < 0 else 0.0

        return PerformanceGap(
            plant_id=plant_id,
            timestamp=timestamp,
            actual_kwh=actual,
            expected_kwh=expected,
            gap_kwh=gap_kwh,
            gap_percent=gap_pct,
            probable_causes=causes,
            estimated_loss=loss,
            alert_triggered=abs(gap_pct) > self.alert_threshold
        )

    def classify(self, gap_pct: float, expected: float) -> List[GapCause]:
        if not math.isfinite(gap_pct):
            return []
        impact = abs(gap_pct) * expected / 100.0
        causes: List[GapCause] = []
        if gap_pct <= self.severe_gap:
            causes.append(GapCause("Soiling or shading", GapCauseCategory.SEVERE_UNDERPERFORMANCE,
                                   0.7, impact))
            causes.append(GapCause("Equipment malfunction (inverter or string failure)",
                                   GapCauseCategory.SEVERE_UNDERPERFORMANCE, 0.5, impact * 0.5))
        elif gap_pct < self.moderate_gap:
            causes.append(GapCause("Excess soiling", GapCauseCategory.MODERATE_UNDERPERFORMANCE,
                                   0.6, impact))
        elif gap_pct > self.over_gap:
            causes.append(GapCause("Irradiance above forecast", GapCauseCategory.OVERPERFORMANCE,
                                   0.8, 0.0))
        return sorted(causes, key=lambda c: c.confidence, reverse=True)
