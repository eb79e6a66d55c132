"""
Detection Strategies Module - PV Digital Twin Platform

Each strategy inspects one plant window and returns candidate anomalies.
Strategies are independent: the detector runs every enabled one and records
failures without aborting the rest.
"""
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd
from sklearn.ensemble import IsolationForest

from pv_twin.agents.forecasting.baseline_forecaster import clear_sky_irradiance
from pv_twin.domain.interfaces import IAnomalyModel, IDetectionStrategy, ITwinRepository
from pv_twin.domain.models import (
    Anomaly, AnomalyType, DetectionMethod, DigitalTwinConfig, MetricAffected, Severity,
    TelemetryPoint
)


def _py(ts) -> datetime:
    return ts.to_pydatetime() if hasattr(ts, "to_pydatetime") else ts


# ==============================================================================
# CONTEXT
# ==============================================================================

@dataclass
class DetectionContext:
    """Everything a strategy may look at for one plant window."""
    plant_id: str
    start: datetime
    end: datetime
    repository: ITwinRepository
    settings: Dict[str, Any] = field(default_factory=dict)
    sensitivity: str = "medium"
    config: Optional[DigitalTwinConfig] = None
    telemetry: Optional[List[TelemetryPoint]] = None
    _frame: Optional[pd.DataFrame] = field(default=None, repr=False)

    def power_frame(self) -> pd.DataFrame:
        """Plant-level power/energy per timestamp, oldest first."""
        if self._frame is not None:
            return self._frame
        rows = self.telemetry or []
        plant_rows = [p for p in rows if p.is_plant_level] or rows
        if not plant_rows:
            frame = pd.DataFrame(columns=["timestamp", "power_w", "energy_kwh"])
        else:
            frame = pd.DataFrame({
                "timestamp": [p.timestamp for p in plant_rows],
                "power_w": [float(p.power_w or 0.0) for p in plant_rows],
                "energy_kwh": [float(p.energy_kwh or 0.0) for p in plant_rows],
            })
            frame = (frame.groupby("timestamp", as_index=False)
                     .sum()
                     .sort_values("timestamp")
                     .reset_index(drop=True))
        self._frame = frame
        return frame


def _anomaly(ctx: DetectionContext, ts, anomaly_type: AnomalyType, severity: Severity,
             confidence: float, method: DetectionMethod, metric: MetricAffected,
             expected: Optional[float], actual: Optional[float],
             metadata: Dict[str, Any]) -> Anomaly:
    deviation = None
    if expected not in (None, 0) and actual is not None:
        deviation = (actual - expected) / expected * 100.0
    return Anomaly(
        plant_id=ctx.plant_id,
        timestamp=_py(ts),
        anomaly_type=anomaly_type,
        severity=severity,
        confidence=float(min(max(confidence, 0.0), 1.0)),
        detected_by=method,
        metric_affected=metric,
        expected_value=expected,
        actual_value=actual,
        deviation_percent=deviation,
        metadata=metadata
    )


# ==============================================================================
# STATISTICAL STRATEGIES
# ==============================================================================

class ZScoreStrategy(IDetectionStrategy):
    """Flags production samples far from the window mean."""

    name = "z_score"

    def __init__(self, thresholds: Optional[Dict[str, float]] = None, min_samples: int = 5):
        self.thresholds = thresholds or {"high": 2.5, "medium": 3.0, "low": 3.5}
        self.min_samples = min_samples

    @staticmethod
    def severity_for(z: float) -> Severity:
        if z > 4:
            return Severity.CRITICAL
        if z > 3.5:
            return Severity.HIGH
        if z > 3:
            return Severity.MEDIUM
        return Severity.LOW

    def detect(self, ctx: DetectionContext) -> List[Anomaly]:
        frame = ctx.power_frame()
        producing = frame[frame["power_w"] > 0]
        if len(producing) < self.min_samples:
            return []
        values = producing["power_w"].to_numpy(dtype=float)
        mean = float(np.mean(values))
        std = float(np.std(values))
        if std == 0 or not math.isfinite(std):
            return []
        threshold = float(self.thresholds.get(ctx.sensitivity, self.thresholds.get("medium", 3.0)))

        found = []
        for ts, power in zip(producing["timestamp"], values):
            z = abs(power - mean) / std
            if z <= threshold:
                continue
            kind = AnomalyType.GENERATION_DROP if power < mean else AnomalyType.UNEXPECTED_SPIKE
            found.append(_anomaly(
                ctx, ts, kind, self.severity_for(z), min(z / 5.0, 1.0),
                DetectionMethod.STATISTICAL, MetricAffected.POWER, mean, float(power),
                {"z_score": round(z, 4), "method": self.name, "threshold": threshold}
            ))
        return found


class DataGapStrategy(IDetectionStrategy):
    """Flags missing telemetry between consecutive samples."""

    name = "data_gap"

    def __init__(self, expected_interval_minutes: float = 15, gap_multiple: float = 2):
        self.expected_interval = expected_interval_minutes
        self.gap_multiple = gap_multiple

    @staticmethod
    def severity_for(gap_minutes: float) -> Severity:
        if gap_minutes > 120:
            return Severity.HIGH
        if gap_minutes > 60:
            return Severity.MEDIUM
        return Severity.LOW

    def detect(self, ctx: DetectionContext) -> List[Anomaly]:
        frame = ctx.power_frame()
        if len(frame) < 2:
            return []
        stamps = list(frame["timestamp"])
        limit = self.expected_interval * self.gap_multiple

        found = []
        for previous, current in zip(stamps, stamps[1:]):
            gap_minutes = (_py(current) - _py(previous)).total_seconds() / 60.0
            if gap_minutes <= limit:
                continue
            found.append(_anomaly(
                ctx, previous, AnomalyType.DATA_GAP, self.severity_for(gap_minutes), 1.0,
                DetectionMethod.STATISTICAL, MetricAffected.AVAILABILITY,
                self.expected_interval, gap_minutes,
                {"gap_minutes": round(gap_minutes, 2), "gap_start": _py(previous).isoformat(),
                 "gap_end": _py(current).isoformat(), "method": self.name}
            ))
        return found


class RollingBaselineStrategy(IDetectionStrategy):
    """
    Compares each daylight sample with the plant's own recent behaviour.

    Power is normalised by the clear-sky curve into a performance index so
    the diurnal shape cancels out, then compared against a rolling median
    with a MAD-based robust score. Zero output under daylight is reported as
    offline; a sustained low index as underperformance. Consecutive flagged
    samples are merged into one event stamped at the first sample.
    """

    name = "rolling_baseline"

    def __init__(self, window: int = 8, min_periods: int = 4, mad_threshold: float = 3.5,
                 underperformance_ratio: float = 0.7, max_irradiance: float = 1000.0):
        self.window = window
        self.min_periods = min_periods
        self.mad_threshold = mad_threshold
        self.underperformance_ratio = underperformance_ratio
        self.max_irradiance = max_irradiance

    def _index_frame(self, ctx: DetectionContext) -> pd.DataFrame:
        frame = ctx.power_frame().copy()
        if frame.empty or ctx.config is None:
            return frame.iloc[0:0]
        kwp = ctx.config.nominal_power_kwp
        threshold = ctx.config.losses.irradiance_threshold
        frame["clear_sky"] = [clear_sky_irradiance(_py(ts), self.max_irradiance) for ts in frame["timestamp"]]
        frame = frame[frame["clear_sky"] > threshold].copy()
        frame["reference_w"] = kwp * frame["clear_sky"]
        frame["perf_index"] = frame["power_w"] / frame["reference_w"]
        frame["offline"] = frame["power_w"] <= 0

        history = frame["perf_index"].where(~frame["offline"])
        frame["expected_index"] = history.shift(1).rolling(self.window, min_periods=self.min_periods).median()
        residual = history - frame["expected_index"]
        mad = residual.shift(1).rolling(self.window, min_periods=self.min_periods).apply(
            lambda x: np.nanmedian(np.abs(x - np.nanmedian(x))), raw=True)
        frame["score"] = (frame["expected_index"] - frame["perf_index"]) / (mad * 1.4826).replace(0, np.nan)
        return frame

    def detect(self, ctx: DetectionContext) -> List[Anomaly]:
        frame = self._index_frame(ctx)
        if frame.empty:
            return []

        flags = []
        for row in frame.itertuples(index=False):
            if row.offline:
                flags.append(AnomalyType.OFFLINE)
                continue
            expected = row.expected_index
            if expected is None or not math.isfinite(expected) or expected <= 0:
                flags.append(None)
                continue
            low = row.perf_index < self.underperformance_ratio * expected
            score = row.score
            robust = (not math.isfinite(score)) or score > self.mad_threshold
            flags.append(AnomalyType.UNDERPERFORMANCE if (low and robust) else None)

        found = []
        rows = list(frame.itertuples(index=False))
        run_start = 0
        while run_start < len(rows):
            kind = flags[run_start]
            run_end = run_start
            while run_end + 1 < len(rows) and flags[run_end + 1] == kind:
                run_end += 1
            if kind is not None:
                found.append(self._event(ctx, kind, rows[run_start:run_end + 1]))
            run_start = run_end + 1
        return found

    def _event(self, ctx: DetectionContext, kind: AnomalyType, run: List[Any]) -> Anomaly:
        first, last = run[0], run[-1]
        duration = (_py(last.timestamp) - _py(first.timestamp)).total_seconds() / 60.0
        expected_w = float(sum(
            (r.expected_index if (r.expected_index is not None and math.isfinite(r.expected_index))
             else 1.0) * r.reference_w for r in run) / len(run))
        actual_w = float(sum(r.power_w for r in run) / len(run))

        if kind == AnomalyType.OFFLINE:
            severity = Severity.CRITICAL if duration >= 60 else Severity.HIGH
            confidence = 0.9
            metric = MetricAffected.AVAILABILITY
        else:
            deviation = (expected_w - actual_w) / expected_w * 100.0 if expected_w else 0.0
            if deviation > 50:
                severity = Severity.HIGH
            elif deviation > 30:
                severity = Severity.MEDIUM
            else:
                severity = Severity.LOW
            finite_scores = [r.score for r in run if math.isfinite(r.score)]
            score = max(finite_scores) if finite_scores else self.mad_threshold * 2
            confidence = min(0.5 + score / 10.0, 0.95)
            metric = MetricAffected.POWER

        return _anomaly(
            ctx, first.timestamp, kind, severity, confidence, DetectionMethod.STATISTICAL,
            metric, expected_w, actual_w,
            {"method": self.name, "samples": len(run), "duration_minutes": round(duration, 2),
             "run_end": _py(last.timestamp).isoformat()}
        )


# ==============================================================================
# ML STRATEGY
# ==============================================================================

class SklearnIsolationForestModel(IAnomalyModel):
    """IsolationForest fitted on the window it scores."""

    def __init__(self, contamination: float = 0.05, n_estimators: int = 100, random_state: int = 42):
        self.model = IsolationForest(contamination=contamination, n_estimators=n_estimators,
                                     random_state=random_state)

    def fit_predict(self, features):
        return self.model.fit_predict(features)

    def score_samples(self, features):
        return self.model.score_samples(features)


class IsolationForestStrategy(IDetectionStrategy):
    name = "isolation_forest"

    FEATURES = ["power_w", "hour", "power_delta"]

    def __init__(self, model: Optional[IAnomalyModel] = None, min_samples: int = 20, **model_kwargs):
        self.model = model or SklearnIsolationForestModel(**model_kwargs)
        self.min_samples = min_samples

    def features(self, ctx: DetectionContext) -> pd.DataFrame:
        frame = ctx.power_frame().copy()
        frame["hour"] = [_py(ts).hour + _py(ts).minute / 60.0 for ts in frame["timestamp"]]
        frame["power_delta"] = frame["power_w"].diff().fillna(0.0)
        return frame

    def detect(self, ctx: DetectionContext) -> List[Anomaly]:
        frame = self.features(ctx)
        if len(frame) < self.min_samples:
            return []
        matrix = frame[self.FEATURES].to_numpy(dtype=float)
        labels = np.asarray(self.model.fit_predict(matrix))
        scores = self.model.score_samples(matrix)
        median_power = float(frame["power_w"].median())

        found = []
        for position in np.flatnonzero(labels == -1):
            row = frame.iloc[int(position)]
            power = float(row["power_w"])
            confidence = 0.6
            if scores is not None:
                confidence = float(min(max(-float(scores[int(position)]), 0.0), 1.0))
            kind = AnomalyType.GENERATION_DROP if power < median_power else AnomalyType.UNEXPECTED_SPIKE
            found.append(_anomaly(
                ctx, row["timestamp"], kind, Severity.MEDIUM, confidence,
                DetectionMethod.ML_ISOLATION_FOREST, MetricAffected.POWER, median_power, power,
                {"method": self.name, "features": self.FEATURES}
            ))
        return found


# ==============================================================================
# DIGITAL TWIN CROSS-CHECK
# ==============================================================================

class DigitalTwinStrategy(IDetectionStrategy):
    """Turns stored performance gaps beyond the threshold into anomalies."""

    name = "digital_twin"

    def __init__(self, gap_threshold_percent: float = 10.0, confidence: float = 0.85):
        self.gap_threshold = gap_threshold_percent
        self.confidence = confidence

    @property
    def needs_telemetry(self) -> bool:
        return False

    @staticmethod
    def severity_for(gap_abs: float) -> Severity:
        if gap_abs > 30:
            return Severity.CRITICAL
        if gap_abs > 20:
            return Severity.HIGH
        if gap_abs > 15:
            return Severity.MEDIUM
        return Severity.LOW

    def detect(self, ctx: DetectionContext) -> List[Anomaly]:
        found = []
        for gap in ctx.repository.list_gaps(ctx.plant_id, ctx.start, ctx.end):
            if abs(gap.gap_percent) <= self.gap_threshold:
                continue
            kind = AnomalyType.UNDERPERFORMANCE if gap.gap_percent < 0 else AnomalyType.OVERPERFORMANCE
            found.append(_anomaly(
                ctx, gap.timestamp, kind, self.severity_for(abs(gap.gap_percent)), self.confidence,
                DetectionMethod.DIGITAL_TWIN, MetricAffected.ENERGY,
                gap.expected_kwh, gap.actual_kwh,
                {"gap_kwh": gap.gap_kwh, "gap_percent": gap.gap_percent, "method": self.name}
            ))
        return found
