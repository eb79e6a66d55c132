from datetime import datetime, timedelta, timezone

from pv_twin.domain.models import (
    Anomaly, AnomalyType, DetectionMethod, DigitalTwinConfig, MetricAffected, Severity,
    TelemetryPoint
)

NOON = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

LOSSLESS = {
    "soiling": 0, "shading": 0, "mismatch": 0, "wiring": 0, "connections": 0, "lid": 0,
    "temperature_coefficient": 0, "annual_degradation": 0,
    "grid_availability": 100, "system_availability": 100,
}


def lossless_payload(plant_id="plant-a"):
    """300 x 450 Wp = 135 kWp with every loss switched off."""
    return {
        "plant_id": plant_id,
        "layout": {"module_count": 300, "module_wp": 450, "tilt_angle": 20, "azimuth": 180},
        "losses": dict(LOSSLESS),
        "environmental_context": {"soiling_seasonal": {m: 1.0 for m in range(1, 13)}},
    }


def string_plant_payload(plant_id="plant-s"):
    """Four 25-module strings on two inverters with two MPPT inputs each (45 kWp)."""
    curve = [{"dc_power_ratio": 0.1, "efficiency": 0.95}, {"dc_power_ratio": 1.0, "efficiency": 0.97}]
    return {
        "plant_id": plant_id,
        "layout": {"module_count": 100, "module_wp": 450},
        "losses": dict(LOSSLESS),
        "environmental_context": {"soiling_seasonal": {m: 1.0 for m in range(1, 13)}},
        "strings": [
            {"string_id": "S1", "inverter_id": "INV-1", "mppt_input": 1, "module_count": 25},
            {"string_id": "S2", "inverter_id": "INV-1", "mppt_input": 2, "module_count": 25},
            {"string_id": "S3", "inverter_id": "INV-2", "mppt_input": 1, "module_count": 25},
            {"string_id": "S4", "inverter_id": "INV-2", "mppt_input": 2, "module_count": 25},
        ],
        "inverters": [
            {"inverter_id": "INV-1", "rated_power_kw": 20, "mppt_count": 2, "efficiency_curve": curve},
            {"inverter_id": "INV-2", "rated_power_kw": 20, "mppt_count": 2, "efficiency_curve": curve},
        ],
    }


def make_config(payload=None):
    return DigitalTwinConfig.from_dict(payload or lossless_payload())


def plant_series(plant_id, start, powers, interval_minutes=15):
    """Plant-level rows with energy consistent with the sample interval."""
    hours = interval_minutes / 60.0
    return [
        TelemetryPoint(plant_id=plant_id, timestamp=start + timedelta(minutes=interval_minutes * i),
                       power_w=p, energy_kwh=p * hours / 1000.0)
        for i, p in enumerate(powers)
    ]


def make_anomaly(plant_id="plant-a", anomaly_type=AnomalyType.GENERATION_DROP,
                 severity=Severity.HIGH, timestamp=NOON, **kwargs):
    defaults = dict(
        confidence=0.8,
        detected_by=DetectionMethod.STATISTICAL,
        metric_affected=MetricAffected.POWER,
        expected_value=10000.0,
        actual_value=4000.0,
    )
    defaults.update(kwargs)
    return Anomaly(plant_id=plant_id, timestamp=timestamp, anomaly_type=anomaly_type,
                   severity=severity, **defaults)
