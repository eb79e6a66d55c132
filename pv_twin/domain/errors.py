"""
Domain Errors Module - PV Digital Twin Platform

Typed exception hierarchy shared by every engine. Each error carries an
``error_kind`` string and a ``retryable`` flag so callers can tell
"retry me" apart from "fix your input first".
"""
from typing import Any, Dict, Optional


class TwinError(Exception):
    """Base class for all engine errors."""
    error_kind = "internal_error"
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_kind": self.error_kind,
            "retryable": self.retryable,
            "message": self.message,
            "details": self.details
        }


# ==============================================================================
# PRECONDITION ERRORS (never retried)
# ==============================================================================

class PreconditionError(TwinError):
    """A required input record does not exist."""
    error_kind = "precondition_failed"


class ConfigNotFoundError(PreconditionError):
    error_kind = "config_not_found"

    def __init__(self, plant_id: str):
        super().__init__(f"No active digital twin config for plant {plant_id}",
                         {"plant_id": plant_id})


class BaselineNotFoundError(PreconditionError):
    error_kind = "baseline_not_found"

    def __init__(self, plant_id: str, timestamp: Any):
        super().__init__(f"No baseline forecast for plant {plant_id} at {timestamp}",
                         {"plant_id": plant_id, "timestamp": str(timestamp)})


class AnomalyNotFoundError(PreconditionError):
    error_kind = "anomaly_not_found"

    def __init__(self, anomaly_id: str):
        super().__init__(f"Anomaly {anomaly_id} not found", {"anomaly_id": anomaly_id})


class AnalysisNotFoundError(PreconditionError):
    error_kind = "analysis_not_found"

    def __init__(self, anomaly_id: str):
        super().__init__(f"No root cause analysis for anomaly {anomaly_id}",
                         {"anomaly_id": anomaly_id})


# ==============================================================================
# UPSTREAM / NUMERIC ERRORS
# ==============================================================================

class UpstreamDataError(TwinError):
    """Telemetry or weather fetch failed after exhausting retries."""
    error_kind = "upstream_unavailable"
    retryable = True


class NumericDomainError(TwinError):
    """A physically impossible value reached a computation."""
    error_kind = "numeric_domain"


# ==============================================================================
# VALIDATION / STATE MACHINE ERRORS
# ==============================================================================

class ValidationError(TwinError):
    """Input rejected at the boundary."""
    error_kind = "validation_error"


class StateTransitionError(ValidationError):
    """Illegal status change on an anomaly or investigation."""
    error_kind = "invalid_state_transition"


class AnalysisInProgressError(TwinError):
    """A root cause analysis for this anomaly is already running."""
    error_kind = "analysis_in_progress"
    retryable = True

    def __init__(self, anomaly_id: str):
        super().__init__(f"Root cause analysis already running for anomaly {anomaly_id}",
                         {"anomaly_id": anomaly_id})
