"""
Domain Models Module - PV Digital Twin Platform

Contains data models for plant configuration, telemetry, baseline forecasts,
performance gaps, anomalies, root cause analyses and plant audits.
These are business objects persisted by the store and exchanged as JSON.
"""
from dataclasses import dataclass, field
from typing import Dict, List, Any, Optional
from enum import Enum
from datetime import datetime, timezone
import math
import uuid

import numpy as np

from pv_twin.domain.errors import StateTransitionError, ValidationError
from pv_twin.domain.monitoring import MonitoringConnection, parse_monitoring_connection


def as_utc(value: datetime) -> datetime:
    """Offset-less datetimes are taken as UTC; aware ones are converted to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 string (``Z`` suffix allowed) or pass a datetime through, as UTC."""
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, str):
        try:
            return as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
        except ValueError:
            pass
    raise ValidationError(f"Invalid timestamp: {value!r}")


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ==============================================================================
# ENUMERATIONS
# ==============================================================================

class TrackerType(Enum):
    FIXED = "fixed"
    SINGLE_AXIS = "single_axis"
    DUAL_AXIS = "dual_axis"


class BaselineModelType(Enum):
    PHYSICAL = "physical"
    REGRESSION = "regression"
    HYBRID = "hybrid"


class AnomalyType(Enum):
    """Kinds of deviation events the detector can emit."""
    GENERATION_DROP = "generation_drop"
    EFFICIENCY_DROP = "efficiency_drop"
    OFFLINE = "offline"
    UNDERPERFORMANCE = "underperformance"
    DATA_GAP = "data_gap"
    UNEXPECTED_SPIKE = "unexpected_spike"
    OVERPERFORMANCE = "overperformance"


class Severity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class DetectionMethod(Enum):
    """Which family of strategy produced an anomaly."""
    STATISTICAL = "statistical"
    ML_ISOLATION_FOREST = "ml_isolation_forest"
    ML_AUTOENCODER = "ml_autoencoder"
    DIGITAL_TWIN = "digital_twin"


class MetricAffected(Enum):
    POWER = "power"
    ENERGY = "energy"
    PR = "pr"
    AVAILABILITY = "availability"


class AnomalyStatus(Enum):
    ACTIVE = "active"
    INVESTIGATING = "investigating"
    RESOLVED = "resolved"
    FALSE_POSITIVE = "false_positive"


class InvestigationStatus(Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class GapCauseCategory(Enum):
    """Classification bucket of a performance-gap cause."""
    SEVERE_UNDERPERFORMANCE = "severe_underperformance"
    MODERATE_UNDERPERFORMANCE = "moderate_underperformance"
    OVERPERFORMANCE = "overperformance"


class NodeKind(Enum):
    COMPONENT = "component"
    SUBSYSTEM = "subsystem"
    EXTERNAL = "external"


class NodeHealth(Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    FAILED = "failed"


class EdgeRelation(Enum):
    DEPENDS_ON = "depends_on"
    AFFECTS = "affects"
    CASCADES_TO = "cascades_to"


class ActionPriority(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class FindingCategory(Enum):
    SOILING = "soiling"
    MISMATCH = "mismatch"
    MPPT = "mppt"
    CLIPPING = "clipping"
    DEGRADATION = "degradation"
    OUTAGE = "outage"
    SHADING = "shading"
    INVERTER = "inverter"
    OTHER = "other"


class RecommendationPriority(Enum):
    IMMEDIATE = "immediate"
    SHORT_TERM = "short_term"
    MEDIUM_TERM = "medium_term"
    LONG_TERM = "long_term"


class RecommendationStatus(Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    DISMISSED = "dismissed"


class OverallStatus(Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    NEEDS_ATTENTION = "needs_attention"
    CRITICAL = "critical"


class CategoryStatus(Enum):
    EVALUATED = "evaluated"
    NOT_EVALUATED = "not_evaluated"


# ==============================================================================
# DIGITAL TWIN CONFIGURATION
# ==============================================================================

@dataclass
class PlantLayout:
    """Physical layout of the array."""
    module_count: int
    module_wp: float
    tilt_angle: float = 0.0
    azimuth: float = 180.0
    ground_coverage_ratio: float = 0.4
    total_area_m2: float = 0.0
    tracker_type: Optional[TrackerType] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "module_count": self.module_count,
            "module_wp": self.module_wp,
            "tilt_angle": self.tilt_angle,
            "azimuth": self.azimuth,
            "ground_coverage_ratio": self.ground_coverage_ratio,
            "total_area_m2": self.total_area_m2,
            "tracker_type": self.tracker_type.value if self.tracker_type else None
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PlantLayout":
        tracker = data.get("tracker_type")
        return cls(
            module_count=int(data["module_count"]),
            module_wp=float(data["module_wp"]),
            tilt_angle=float(data.get("tilt_angle", 0.0)),
            azimuth=float(data.get("azimuth", 180.0)),
            ground_coverage_ratio=float(data.get("ground_coverage_ratio", 0.4)),
            total_area_m2=float(data.get("total_area_m2", 0.0)),
            tracker_type=TrackerType(tracker) if tracker else None
        )


@dataclass
class StringConfig:
    """An electrical string bound to one inverter MPPT input."""
    string_id: str
    inverter_id: str
    mppt_input: int
    module_count: int
    name: str = ""
    configuration: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "string_id": self.string_id,
            "name": self.name,
            "inverter_id": self.inverter_id,
            "mppt_input": self.mppt_input,
            "module_count": self.module_count,
            "configuration": self.configuration
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StringConfig":
        return cls(
            string_id=str(data["string_id"]),
            inverter_id=str(data["inverter_id"]),
            mppt_input=int(data.get("mppt_input", 1)),
            module_count=int(data["module_count"]),
            name=data.get("name", ""),
            configuration=data.get("configuration", "")
        )


@dataclass
class EfficiencyPoint:
    dc_power_ratio: float
    efficiency: float


@dataclass
class InverterConfig:
    """Inverter rating and its efficiency curve."""
    inverter_id: str
    rated_power_kw: float
    efficiency_curve: List[EfficiencyPoint] = field(default_factory=list)
    mppt_count: int = 1
    name: str = ""
    manufacturer: str = ""
    model: str = ""

    def efficiency_at(self, dc_power_ratio: float) -> float:
        """Interpolate conversion efficiency at a DC load ratio (0-1+)."""
        if not self.efficiency_curve:
            return 0.97
        points = sorted(self.efficiency_curve, key=lambda p: p.dc_power_ratio)
        return float(np.interp(
            dc_power_ratio,
            [p.dc_power_ratio for p in points],
            [p.efficiency for p in points]
        ))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "inverter_id": self.inverter_id,
            "name": self.name,
            "manufacturer": self.manufacturer,
            "model": self.model,
            "rated_power_kw": self.rated_power_kw,
            "mppt_count": self.mppt_count,
            "efficiency_curve": [
                {"dc_power_ratio": p.dc_power_ratio, "efficiency": p.efficiency}
                for p in self.efficiency_curve
            ]
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InverterConfig":
        curve = data.get("efficiency_curve") or []
        if isinstance(curve, dict):
            curve = curve.get("points", [])
        return cls(
            inverter_id=str(data["inverter_id"]),
            rated_power_kw=float(data["rated_power_kw"]),
            efficiency_curve=[
                EfficiencyPoint(float(p["dc_power_ratio"]), float(p["efficiency"]))
                for p in curve
            ],
            mppt_count=int(data.get("mppt_count", 1)),
            name=data.get("name", ""),
            manufacturer=data.get("manufacturer", ""),
            model=data.get("model", "")
        )


@dataclass
class LossesConfig:
    """Fixed percentage losses, coefficients and availabilities."""
    soiling: float = 2.0
    shading: float = 1.0
    mismatch: float = 1.0
    wiring: float = 1.5
    connections: float = 0.5
    lid: float = 1.5
    temperature_coefficient: float = -0.4   # %/°C
    irradiance_threshold: float = 50.0      # W/m², below this output is negligible
    annual_degradation: float = 0.5         # %/year
    grid_availability: float = 100.0
    system_availability: float = 100.0

    PERCENT_FIELDS = ("soiling", "shading", "mismatch", "wiring", "connections", "lid",
                      "grid_availability", "system_availability")

    def validate(self):
        for name in self.PERCENT_FIELDS:
            value = getattr(self, name)
            if not (0.0 <= value <= 100.0):
                raise ValidationError(f"Loss '{name}' must lie in [0, 100], got {value}",
                                      {"field": name, "value": value})
        if not (0.0 <= self.annual_degradation <= 100.0):
            raise ValidationError("annual_degradation must lie in [0, 100]")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "soiling": self.soiling,
            "shading": self.shading,
            "mismatch": self.mismatch,
            "wiring": self.wiring,
            "connections": self.connections,
            "lid": self.lid,
            "temperature_coefficient": self.temperature_coefficient,
            "irradiance_threshold": self.irradiance_threshold,
            "annual_degradation": self.annual_degradation,
            "grid_availability": self.grid_availability,
            "system_availability": self.system_availability
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LossesConfig":
        defaults = cls()
        kwargs = {
            name: float(data.get(name, getattr(defaults, name)))
            for name in defaults.to_dict()
        }
        return cls(**kwargs)


@dataclass
class ShadingEntry:
    hour: int
    month: int
    loss_factor: float  # 0-1


@dataclass
class EnvironmentalContext:
    """Site conditions feeding the baseline."""
    altitude_m: float = 0.0
    albedo: float = 0.2
    soiling_seasonal: Dict[int, float] = field(default_factory=dict)  # month -> factor (1 = clean)
    shading_profile: List[ShadingEntry] = field(default_factory=list)
    last_cleaning_date: Optional[datetime] = None
    cleaning_frequency_days: Optional[int] = None
    weather_station_id: Optional[str] = None

    def soiling_factor_for(self, month: int) -> Optional[float]:
        return self.soiling_seasonal.get(month)

    def shading_loss_for(self, hour: int, month: int) -> Optional[float]:
        for entry in self.shading_profile:
            if entry.hour == hour and entry.month == month:
                return entry.loss_factor
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "altitude_m": self.altitude_m,
            "albedo": self.albedo,
            "soiling_seasonal": [
                {"month": m, "factor": f} for m, f in sorted(self.soiling_seasonal.items())
            ],
            "shading_profile": [
                {"hour": e.hour, "month": e.month, "loss_factor": e.loss_factor}
                for e in self.shading_profile
            ],
            "last_cleaning_date": _iso(self.last_cleaning_date),
            "cleaning_frequency_days": self.cleaning_frequency_days,
            "weather_station_id": self.weather_station_id
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EnvironmentalContext":
        seasonal = data.get("soiling_seasonal") or []
        if isinstance(seasonal, dict):
            soiling = {int(k): float(v) for k, v in seasonal.items()}
        else:
            soiling = {int(s["month"]): float(s["factor"]) for s in seasonal}
        last_cleaning = data.get("last_cleaning_date")
        return cls(
            altitude_m=float(data.get("altitude_m", 0.0)),
            albedo=float(data.get("albedo", 0.2)),
            soiling_seasonal=soiling,
            shading_profile=[
                ShadingEntry(int(e["hour"]), int(e["month"]), float(e["loss_factor"]))
                for e in data.get("shading_profile") or []
            ],
            last_cleaning_date=parse_timestamp(last_cleaning) if last_cleaning else None,
            cleaning_frequency_days=data.get("cleaning_frequency_days"),
            weather_station_id=data.get("weather_station_id")
        )


@dataclass
class BaselineModel:
    """Reference to the fitted baseline model."""
    model_type: BaselineModelType = BaselineModelType.PHYSICAL
    version: str = "1.0"
    parameters: Dict[str, Any] = field(default_factory=dict)
    last_training_date: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "model_type": self.model_type.value,
            "version": self.version,
            "parameters": self.parameters,
            "last_training_date": _iso(self.last_training_date)
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BaselineModel":
        trained = data.get("last_training_date")
        return cls(
            model_type=BaselineModelType(data.get("model_type", "physical")),
            version=str(data.get("version", "1.0")),
            parameters=dict(data.get("parameters") or {}),
            last_training_date=parse_timestamp(trained) if trained else None
        )


@dataclass
class DigitalTwinConfig:
    """Static physical description of one plant (one version)."""
    plant_id: str
    layout: PlantLayout
    losses: LossesConfig = field(default_factory=LossesConfig)
    environmental_context: EnvironmentalContext = field(default_factory=EnvironmentalContext)
    strings: List[StringConfig] = field(default_factory=list)
    inverters: List[InverterConfig] = field(default_factory=list)
    performance_ratio_target: float = 80.0
    baseline_model: BaselineModel = field(default_factory=BaselineModel)
    calibration_date: Optional[datetime] = None
    monitoring: Optional[MonitoringConnection] = None
    config_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    version: int = 1
    created_at: datetime = field(default_factory=_utcnow)

    @property
    def nominal_power_kwp(self) -> float:
        return self.layout.module_count * self.layout.module_wp / 1000.0

    def strings_for_input(self, inverter_id: str, mppt_input: int) -> List[StringConfig]:
        return [s for s in self.strings
                if s.inverter_id == inverter_id and s.mppt_input == mppt_input]

    def dc_capacity_kw(self, inverter_id: str) -> float:
        modules = sum(s.module_count for s in self.strings if s.inverter_id == inverter_id)
        return modules * self.layout.module_wp / 1000.0

    def validate(self):
        if self.layout.module_count <= 0 or self.layout.module_wp <= 0:
            raise ValidationError("Layout needs a positive module count and module_wp",
                                  {"plant_id": self.plant_id})
        self.losses.validate()
        inverter_ids = {inv.inverter_id for inv in self.inverters}
        for string in self.strings:
            if inverter_ids and string.inverter_id not in inverter_ids:
                raise ValidationError(
                    f"String {string.string_id} references unknown inverter {string.inverter_id}",
                    {"string_id": string.string_id}
                )
        for inverter in self.inverters:
            if inverter.rated_power_kw <= 0:
                raise ValidationError(f"Inverter {inverter.inverter_id} needs a positive rating")
            for point in inverter.efficiency_curve:
                if not (0.0 <= point.efficiency <= 1.0):
                    raise ValidationError(
                        f"Inverter {inverter.inverter_id} efficiency point outside [0, 1]")
        for month, factor in self.environmental_context.soiling_seasonal.items():
            if not (1 <= month <= 12) or not (0.0 <= factor <= 1.0):
                raise ValidationError(f"Invalid seasonal soiling entry {month}: {factor}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "config_id": self.config_id,
            "plant_id": self.plant_id,
            "version": self.version,
            "created_at": _iso(self.created_at),
            "layout": self.layout.to_dict(),
            "strings": [s.to_dict() for s in self.strings],
            "inverters": [i.to_dict() for i in self.inverters],
            "losses": self.losses.to_dict(),
            "performance_ratio_target": self.performance_ratio_target,
            "environmental_context": self.environmental_context.to_dict(),
            "baseline_model": self.baseline_model.to_dict(),
            "calibration_date": _iso(self.calibration_date),
            "monitoring": self.monitoring.to_dict() if self.monitoring else None
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DigitalTwinConfig":
        """Parse and validate a config payload coming from outside the core."""
        try:
            calibration = data.get("calibration_date")
            monitoring = data.get("monitoring")
            config = cls(
                plant_id=str(data["plant_id"]),
                layout=PlantLayout.from_dict(data["layout"]),
                losses=LossesConfig.from_dict(data.get("losses") or {}),
                environmental_context=EnvironmentalContext.from_dict(
                    data.get("environmental_context") or {}),
                strings=[StringConfig.from_dict(s) for s in data.get("strings") or []],
                inverters=[InverterConfig.from_dict(i) for i in data.get("inverters") or []],
                performance_ratio_target=float(data.get("performance_ratio_target", 80.0)),
                baseline_model=BaselineModel.from_dict(data.get("baseline_model") or {}),
                calibration_date=parse_timestamp(calibration) if calibration else None,
                monitoring=parse_monitoring_connection(monitoring) if monitoring else None
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"Malformed digital twin config: {e}") from e
        config.validate()
        return config


# ==============================================================================
# TELEMETRY & WEATHER
# ==============================================================================

@dataclass
class TelemetryPoint:
    """One timestamped reading. String/inverter fields are optional."""
    plant_id: str
    timestamp: datetime
    power_w: float = 0.0
    energy_kwh: float = 0.0
    inverter_id: Optional[str] = None
    string_id: Optional[str] = None
    mppt_input: Optional[int] = None
    dc_power_w: Optional[float] = None
    ac_power_w: Optional[float] = None

    @property
    def is_plant_level(self) -> bool:
        return self.inverter_id is None and self.string_id is None

    def is_valid_energy(self) -> bool:
        return self.energy_kwh is not None and math.isfinite(self.energy_kwh) and self.energy_kwh >= 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TelemetryPoint":
        mppt = data.get("mppt_input")
        return cls(
            plant_id=str(data["plant_id"]),
            timestamp=parse_timestamp(data["timestamp"]),
            power_w=float(data.get("power_w", 0.0)),
            energy_kwh=float(data.get("energy_kwh", 0.0)),
            inverter_id=data.get("inverter_id"),
            string_id=data.get("string_id"),
            mppt_input=int(mppt) if mppt is not None else None,
            dc_power_w=data.get("dc_power_w"),
            ac_power_w=data.get("ac_power_w")
        )


@dataclass
class WeatherObservation:
    irradiance_w_m2: Optional[float] = None
    ambient_temp_c: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["WeatherObservation"]:
        if not data:
            return None
        irradiance = data.get("irradiance", data.get("irradiance_w_m2"))
        temperature = data.get("temperature", data.get("ambient_temp_c"))
        return cls(
            irradiance_w_m2=float(irradiance) if irradiance is not None else None,
            ambient_temp_c=float(temperature) if temperature is not None else None
        )


# ==============================================================================
# BASELINE & GAP MODELS
# ==============================================================================

@dataclass
class BaselineFactors:
    poa_irradiance: float
    ambient_temp: float
    cell_temp_estimated: float
    soiling_factor: float
    shading_factor: float
    system_efficiency: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "poa_irradiance": self.poa_irradiance,
            "ambient_temp": self.ambient_temp,
            "cell_temp_estimated": self.cell_temp_estimated,
            "soiling_factor": self.soiling_factor,
            "shading_factor": self.shading_factor,
            "system_efficiency": self.system_efficiency
        }


@dataclass
class BaselineForecast:
    """Expected generation for one (plant, timestamp)."""
    plant_id: str
    timestamp: datetime
    expected_generation_kwh: float
    confidence_lower: float
    confidence_upper: float
    factors: BaselineFactors
    model_version: str = "1.0"
    calibration_date: Optional[datetime] = None
    config_id: Optional[str] = None
    config_version: Optional[int] = None

    @property
    def key(self):
        return (self.plant_id, self.timestamp)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "plant_id": self.plant_id,
            "timestamp": _iso(self.timestamp),
            "expected_generation_kwh": self.expected_generation_kwh,
            "confidence_interval": {
                "lower": self.confidence_lower,
                "upper": self.confidence_upper
            },
            "factors": self.factors.to_dict(),
            "metadata": {
                "model_version": self.model_version,
                "last_calibration": _iso(self.calibration_date),
                "config_id": self.config_id,
                "config_version": self.config_version
            }
        }


@dataclass
class GapCause:
    cause: str
    category: GapCauseCategory
    confidence: float
    estimated_impact_kwh: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cause": self.cause,
            "category": self.category.value,
            "confidence": self.confidence,
            "estimated_impact_kwh": self.estimated_impact_kwh
        }


@dataclass
class PerformanceGap:
    """Actual vs expected generation for one (plant, timestamp)."""
    plant_id: str
    timestamp: datetime
    actual_kwh: float
    expected_kwh: float
    gap_kwh: float
    gap_percent: float
    probable_causes: List[GapCause] = field(default_factory=list)
    estimated_loss: float = 0.0
    alert_triggered: bool = False
    excluded_readings: int = 0
    flags: List[str] = field(default_factory=list)

    @property
    def key(self):
        return (self.plant_id, self.timestamp)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "plant_id": self.plant_id,
            "timestamp": _iso(self.timestamp),
            "actual_kwh": self.actual_kwh,
            "expected_kwh": self.expected_kwh,
            "gap_kwh": self.gap_kwh,
            "gap_percent": self.gap_percent,
            "probable_causes": [c.to_dict() for c in self.probable_causes],
            "estimated_loss": self.estimated_loss,
            "alert_triggered": self.alert_triggered,
            "excluded_readings": self.excluded_readings,
            "flags": list(self.flags)
        }


# ==============================================================================
# ANOMALY MODELS
# ==============================================================================

_ANOMALY_TRANSITIONS = {
    AnomalyStatus.ACTIVE: {AnomalyStatus.INVESTIGATING, AnomalyStatus.RESOLVED,
                           AnomalyStatus.FALSE_POSITIVE},
    AnomalyStatus.INVESTIGATING: {AnomalyStatus.RESOLVED, AnomalyStatus.FALSE_POSITIVE},
    AnomalyStatus.RESOLVED: set(),
    AnomalyStatus.FALSE_POSITIVE: set(),
}

CLOSED_STATUSES = (AnomalyStatus.RESOLVED, AnomalyStatus.FALSE_POSITIVE)


@dataclass
class Anomaly:
    """A single detected deviation event."""
    plant_id: str
    timestamp: datetime
    anomaly_type: AnomalyType
    severity: Severity
    confidence: float
    detected_by: DetectionMethod
    metric_affected: MetricAffected
    expected_value: Optional[float] = None
    actual_value: Optional[float] = None
    deviation_percent: Optional[float] = None
    status: AnomalyStatus = AnomalyStatus.ACTIVE
    root_cause_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    anomaly_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=_utcnow)
    last_detected_at: Optional[datetime] = None
    detection_count: int = 1
    resolved_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.status not in CLOSED_STATUSES

    def transition(self, new_status: AnomalyStatus, at: Optional[datetime] = None):
        """Move to a new status; resolved_at is stamped on closing statuses only."""
        if new_status == self.status:
            return
        if new_status not in _ANOMALY_TRANSITIONS[self.status]:
            raise StateTransitionError(
                f"Anomaly {self.anomaly_id} cannot move from {self.status.value} to {new_status.value}",
                {"anomaly_id": self.anomaly_id, "from": self.status.value, "to": new_status.value}
            )
        self.status = new_status
        if new_status in CLOSED_STATUSES:
            self.resolved_at = at or _utcnow()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.anomaly_id,
            "plant_id": self.plant_id,
            "timestamp": _iso(self.timestamp),
            "anomaly_type": self.anomaly_type.value,
            "severity": self.severity.value,
            "confidence": self.confidence,
            "detected_by": self.detected_by.value,
            "metric_affected": self.metric_affected.value,
            "expected_value": self.expected_value,
            "actual_value": self.actual_value,
            "deviation_percent": self.deviation_percent,
            "status": self.status.value,
            "root_cause_id": self.root_cause_id,
            "metadata": self.metadata,
            "created_at": _iso(self.created_at),
            "last_detected_at": _iso(self.last_detected_at),
            "detection_count": self.detection_count,
            "resolved_at": _iso(self.resolved_at)
        }


@dataclass(frozen=True)
class AnomalyKey:
    """Idempotency key: same plant, type and dedup bucket means same event."""
    plant_id: str
    anomaly_type: AnomalyType
    bucket: datetime

    @classmethod
    def for_anomaly(cls, anomaly: Anomaly, window_minutes: int) -> "AnomalyKey":
        ts = as_utc(anomaly.timestamp)
        window_seconds = max(int(window_minutes), 1) * 60
        epoch = ts.timestamp()
        bucket = datetime.fromtimestamp(epoch - (epoch % window_seconds), tz=timezone.utc)
        return cls(anomaly.plant_id, anomaly.anomaly_type, bucket)


@dataclass
class DetectionConfig:
    """Which strategies run and how sensitive they are."""
    statistical_enabled: bool = True
    ml_enabled: bool = False
    digital_twin_enabled: bool = True
    data_gap_enabled: bool = True
    rolling_baseline_enabled: bool = True
    sensitivity: str = "medium"

    SENSITIVITIES = ("low", "medium", "high")

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "DetectionConfig":
        if not data:
            return cls()
        config = cls(
            statistical_enabled=bool(data.get("statistical_enabled", True)),
            ml_enabled=bool(data.get("ml_enabled", False)),
            digital_twin_enabled=bool(data.get("digital_twin_enabled", True)),
            data_gap_enabled=bool(data.get("data_gap_enabled", True)),
            rolling_baseline_enabled=bool(data.get("rolling_baseline_enabled", True)),
            sensitivity=str(data.get("sensitivity", "medium"))
        )
        if config.sensitivity not in cls.SENSITIVITIES:
            raise ValidationError(f"Unknown sensitivity '{config.sensitivity}'",
                                  {"allowed": list(cls.SENSITIVITIES)})
        return config


@dataclass
class StrategyError:
    strategy: str
    error_kind: str
    message: str
    plant_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "strategy": self.strategy,
            "error_kind": self.error_kind,
            "message": self.message,
            "plant_id": self.plant_id
        }


@dataclass
class DetectionResult:
    success: bool
    anomalies: List[Anomaly] = field(default_factory=list)
    errors: List[StrategyError] = field(default_factory=list)

    @property
    def anomalies_detected(self) -> int:
        return len(self.anomalies)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "anomalies_detected": self.anomalies_detected,
            "anomalies": [a.to_dict() for a in self.anomalies],
            "errors": [e.to_dict() for e in self.errors]
        }


# ==============================================================================
# ROOT CAUSE MODELS
# ==============================================================================

@dataclass
class ProbableCause:
    cause: str
    confidence: float
    evidence: str = ""
    estimated_impact_kwh: float = 0.0
    component: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cause": self.cause,
            "confidence": self.confidence,
            "evidence": self.evidence,
            "estimated_impact_kwh": self.estimated_impact_kwh,
            "component": self.component
        }


@dataclass
class RecommendedAction:
    action: str
    priority: ActionPriority
    estimated_hours: float
    estimated_cost: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "priority": self.priority.value,
            "estimated_time_hours": self.estimated_hours,
            "estimated_cost": self.estimated_cost
        }


@dataclass
class GraphNode:
    node_id: str
    kind: NodeKind
    health: NodeHealth = NodeHealth.HEALTHY

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.node_id, "type": self.kind.value, "status": self.health.value}


@dataclass
class GraphEdge:
    source: str
    target: str
    relation: EdgeRelation = EdgeRelation.CASCADES_TO

    def to_dict(self) -> Dict[str, Any]:
        return {"from": self.source, "to": self.target, "relationship": self.relation.value}


@dataclass
class DependencyGraph:
    """Which subsystems can cascade into which others."""
    nodes: Dict[str, GraphNode] = field(default_factory=dict)
    edges: List[GraphEdge] = field(default_factory=list)

    def add_node(self, node: GraphNode):
        self.nodes[node.node_id] = node

    def add_edge(self, edge: GraphEdge):
        self.edges.append(edge)

    def set_health(self, node_id: str, health: NodeHealth):
        if node_id in self.nodes:
            self.nodes[node_id].health = health

    def upstream_of(self, node_id: str) -> List[str]:
        """All nodes that can cascade into node_id, nearest first (BFS)."""
        parents: Dict[str, List[str]] = {}
        for edge in self.edges:
            if edge.relation == EdgeRelation.DEPENDS_ON:
                parents.setdefault(edge.source, []).append(edge.target)
            else:
                parents.setdefault(edge.target, []).append(edge.source)
        seen: List[str] = []
        frontier = list(parents.get(node_id, []))
        while frontier:
            current = frontier.pop(0)
            if current in seen or current == node_id:
                continue
            seen.append(current)
            frontier.extend(parents.get(current, []))
        return seen

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nodes": [n.to_dict() for n in self.nodes.values()],
            "edges": [e.to_dict() for e in self.edges]
        }


@dataclass
class RootCauseAnalysis:
    """Investigation record, one per anomaly."""
    anomaly_id: str
    plant_id: str
    probable_causes: List[ProbableCause] = field(default_factory=list)
    recommended_actions: List[RecommendedAction] = field(default_factory=list)
    dependency_graph: Optional[DependencyGraph] = None
    investigation_status: InvestigationStatus = InvestigationStatus.PENDING
    resolution_summary: Optional[str] = None
    actual_cause: Optional[str] = None
    lessons_learned: Optional[str] = None
    analysis_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None

    def start(self):
        if self.investigation_status == InvestigationStatus.COMPLETED:
            raise StateTransitionError(f"Analysis {self.analysis_id} is already completed")
        self.investigation_status = InvestigationStatus.IN_PROGRESS

    def complete(self, resolution_summary: str, actual_cause: str, lessons_learned: str,
                 at: Optional[datetime] = None):
        """Close the investigation. All three resolution fields are mandatory."""
        if self.investigation_status != InvestigationStatus.IN_PROGRESS:
            raise StateTransitionError(
                f"Analysis {self.analysis_id} must be in_progress to complete, "
                f"is {self.investigation_status.value}",
                {"analysis_id": self.analysis_id}
            )
        fields = (("resolution_summary", resolution_summary),
                  ("actual_cause", actual_cause),
                  ("lessons_learned", lessons_learned))
        not_text = [name for name, value in fields if value is not None and not isinstance(value, str)]
        if not_text:
            raise ValidationError(f"Resolution fields must be text: {', '.join(not_text)}")
        missing = [name for name, value in fields if not value or not value.strip()]
        if missing:
            raise StateTransitionError(
                f"Cannot complete analysis {self.analysis_id} without {', '.join(missing)}",
                {"analysis_id": self.analysis_id, "missing": missing}
            )
        self.resolution_summary = resolution_summary.strip()
        self.actual_cause = actual_cause.strip()
        self.lessons_learned = lessons_learned.strip()
        self.investigation_status = InvestigationStatus.COMPLETED
        self.completed_at = at or _utcnow()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.analysis_id,
            "anomaly_id": self.anomaly_id,
            "plant_id": self.plant_id,
            "probable_causes": [c.to_dict() for c in self.probable_causes],
            "dependency_graph": self.dependency_graph.to_dict() if self.dependency_graph else None,
            "recommended_actions": [a.to_dict() for a in self.recommended_actions],
            "investigation_status": self.investigation_status.value,
            "resolution_summary": self.resolution_summary,
            "actual_cause": self.actual_cause,
            "lessons_learned": self.lessons_learned,
            "created_at": _iso(self.created_at),
            "completed_at": _iso(self.completed_at)
        }


# ==============================================================================
# AUDIT MODELS
# ==============================================================================

@dataclass
class AuditFinding:
    category: FindingCategory
    severity: Severity
    title: str
    description: str
    period_loss_kwh: float
    estimated_loss_kwh_year: float
    estimated_loss_value_year: float
    loss_percent: float
    recoverable_fraction: float = 0.5
    probable_root_causes: List[str] = field(default_factory=list)
    confidence: float = 0.7
    evidence: List[Dict[str, Any]] = field(default_factory=list)
    affected_components: List[str] = field(default_factory=list)
    frequency: str = "constant"
    finding_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def recoverable_kwh(self) -> float:
        return self.period_loss_kwh * self.recoverable_fraction

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.finding_id,
            "category": self.category.value,
            "severity": self.severity.value,
            "title": self.title,
            "description": self.description,
            "period_loss_kwh": self.period_loss_kwh,
            "estimated_loss_kwh_year": self.estimated_loss_kwh_year,
            "estimated_loss_value_year": self.estimated_loss_value_year,
            "loss_percent": self.loss_percent,
            "recoverable_kwh": self.recoverable_kwh,
            "probable_root_causes": list(self.probable_root_causes),
            "confidence": self.confidence,
            "evidence": list(self.evidence),
            "affected_components": list(self.affected_components),
            "frequency": self.frequency
        }


@dataclass
class AuditRecommendation:
    finding_id: str
    priority: RecommendationPriority
    action_type: str
    action: str
    description: str
    estimated_cost: float
    estimated_annual_benefit_kwh: float
    estimated_annual_benefit_value: float
    payback_months: Optional[float] = None
    roi_percent: Optional[float] = None
    implementation_time_hours: float = 0.0
    requires_specialist: bool = False
    status: RecommendationStatus = RecommendationStatus.PENDING
    recommendation_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.recommendation_id,
            "finding_id": self.finding_id,
            "priority": self.priority.value,
            "action_type": self.action_type,
            "action": self.action,
            "description": self.description,
            "estimated_cost": self.estimated_cost,
            "estimated_annual_benefit_kwh": self.estimated_annual_benefit_kwh,
            "estimated_annual_benefit_value": self.estimated_annual_benefit_value,
            "payback_months": self.payback_months,
            "roi_percent": self.roi_percent,
            "implementation_time_hours": self.implementation_time_hours,
            "requires_specialist": self.requires_specialist,
            "status": self.status.value
        }


@dataclass
class CategoryResult:
    """Outcome of one audit sub-analysis."""
    category: FindingCategory
    status: CategoryStatus
    findings: List[AuditFinding] = field(default_factory=list)
    reason: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def not_evaluated(cls, category: FindingCategory, reason: str) -> "CategoryResult":
        return cls(category=category, status=CategoryStatus.NOT_EVALUATED, reason=reason)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category.value,
            "status": self.status.value,
            "reason": self.reason,
            "findings": len(self.findings),
            "details": self.details
        }


@dataclass
class PlantAudit:
    """Immutable result of one audit run."""
    plant_id: str
    period_start: datetime
    period_end: datetime
    actual_generation_kwh: float
    expected_generation_kwh: float
    gap_kwh: float
    gap_percent: float
    overall_status: OverallStatus
    total_recoverable_generation_kwh: float
    total_recoverable_value: float
    recoverable_percent: float
    confidence_percent: float
    findings: List[AuditFinding] = field(default_factory=list)
    recommendations: List[AuditRecommendation] = field(default_factory=list)
    category_results: List[CategoryResult] = field(default_factory=list)
    executive_summary: Dict[str, Any] = field(default_factory=dict)
    audit_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    audit_date: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.audit_id,
            "plant_id": self.plant_id,
            "audit_date": _iso(self.audit_date),
            "period_analyzed": {
                "start": _iso(self.period_start),
                "end": _iso(self.period_end)
            },
            "actual_generation_kwh": self.actual_generation_kwh,
            "expected_generation_kwh": self.expected_generation_kwh,
            "gap_kwh": self.gap_kwh,
            "gap_percent": self.gap_percent,
            "overall_status": self.overall_status.value,
            "total_recoverable_generation_kwh": self.total_recoverable_generation_kwh,
            "total_recoverable_value": self.total_recoverable_value,
            "recoverable_percent": self.recoverable_percent,
            "confidence_percent": self.confidence_percent,
            "findings": [f.to_dict() for f in self.findings],
            "recommendations": [r.to_dict() for r in self.recommendations],
            "category_results": [c.to_dict() for c in self.category_results],
            "executive_summary": self.executive_summary
        }
