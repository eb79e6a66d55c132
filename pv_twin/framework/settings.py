"""
Settings Module - PV Digital Twin Platform

Business constants and runtime knobs. In-code defaults are deep-merged with
an optional YAML file (``--settings`` or ``PV_TWIN_SETTINGS``); the log level
can be forced with ``PV_TWIN_LOG_LEVEL``.
"""
import copy
import os
from typing import Any, Dict, Optional

import yaml

from pv_twin.domain.errors import ValidationError

SETTINGS_ENV = "PV_TWIN_SETTINGS"
LOG_LEVEL_ENV = "PV_TWIN_LOG_LEVEL"

DEFAULT_SETTINGS: Dict[str, Any] = {
    "logging": {
        "level": "INFO",
    },
    "baseline": {
        "max_irradiance_w_m2": 1000.0,
        "daylight_start_hour": 6,
        "daylight_end_hour": 18,
        "default_ambient_temp_c": 25.0,
        "noct_c": 45.0,
        "default_soiling_factor": 0.95,
        "confidence_band": 0.10,
    },
    "gap": {
        "alert_threshold_percent": 15.0,
        "tariff_per_kwh": 0.5,
        "severe_gap_percent": -20.0,
        "moderate_gap_percent": -10.0,
        "overperformance_percent": 10.0,
    },
    "detection": {
        "default_period_hours": 24,
        "dedup_window_minutes": 15,
        "z_score_thresholds": {"high": 2.5, "medium": 3.0, "low": 3.5},
        "min_samples": 5,
        "data_gap": {
            "expected_interval_minutes": 15,
            "gap_multiple": 2,
        },
        "rolling_baseline": {
            "window": 8,
            "min_periods": 4,
            "mad_threshold": 3.5,
            "underperformance_ratio": 0.7,
        },
        "isolation_forest": {
            "contamination": 0.05,
            "n_estimators": 100,
            "random_state": 42,
            "min_samples": 20,
        },
        "digital_twin": {
            "gap_threshold_percent": 10.0,
            "confidence": 0.85,
        },
    },
    "audit": {
        "default_period_days": 30,
        "tariff_per_kwh": 0.5,
        "severity_thresholds": {"critical": 5.0, "high": 2.0, "medium": 0.5},
        "status_thresholds": {"excellent": 1.0, "good": 3.0, "needs_attention": 6.0},
        "recoverable_fractions": {
            "soiling": 0.9,
            "shading": 0.3,
            "mismatch": 0.5,
            "mppt": 0.8,
            "clipping": 0.2,
            "degradation": 0.1,
            "outage": 0.9,
            "inverter": 0.8,
        },
        "soiling": {
            "cleaning_cost": 500.0,
            "daily_soiling_rate_percent": 0.1,
            "min_excess_percent": 1.0,
        },
        "mismatch": {"spread_threshold_percent": 5.0},
        "mppt": {"optimal_ratio": 0.98, "degraded_ratio": 0.95},
        "clipping": {"saturation_ratio": 0.99, "min_clipped_hours": 1},
        "degradation": {"min_days": 14, "max_expected_rate_percent_year": 0.8},
    },
    "diagnosis": {
        "sample_interval_minutes": 15,
        "correlation_window_minutes": 60,
    },
    "alerting": {
        "critical_gap_percent": -30.0,
    },
    "retry": {
        "attempts": 3,
        "base_delay_s": 0.2,
        "max_delay_s": 2.0,
        "timeout_s": 10.0,
    },
    "cache": {
        "config_ttl_s": 300.0,
        "max_entries": 256,
    },
    "store": {
        "snapshot_path": None,
    },
}


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Return a new dict where override wins, recursing into nested dicts."""
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def load_config(path: str) -> Dict[str, Any]:
    with open(path, 'r') as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError(f"Settings file {path} must contain a mapping")
    return data


def load_settings(path: Optional[str] = None,
                  overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Defaults, then the YAML file, then explicit overrides, then env."""
    settings = copy.deepcopy(DEFAULT_SETTINGS)
    path = path or os.environ.get(SETTINGS_ENV)
    if path:
        settings = deep_merge(settings, load_config(path))
    if overrides:
        settings = deep_merge(settings, overrides)
    level = os.environ.get(LOG_LEVEL_ENV)
    if level:
        settings["logging"]["level"] = level.upper()
    return settings
