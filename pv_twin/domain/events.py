"""
Domain Events Module - PV Digital Twin Platform

Contains all event types published by the engines. Events are immutable
data containers that flow through the EventBus; alerting and reporting
collaborators subscribe to them.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import time
import uuid


# ==============================================================================
# BASE EVENT
# ==============================================================================

@dataclass
class BaseEvent:
    """Base class for all events in the system."""
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: float = field(default_factory=time.time)
    source: str = "System"
    payload: Optional[Dict[str, Any]] = None


# ==============================================================================
# CONFIGURATION EVENTS
# ==============================================================================

@dataclass
class ConfigRegisteredEvent(BaseEvent):
    """A new digital twin config version became active."""
    plant_id: str = ""
    config_id: str = ""
    version: int = 0


# ==============================================================================
# BASELINE & GAP EVENTS
# ==============================================================================

@dataclass
class BaselineCalculatedEvent(BaseEvent):
    plant_id: str = ""
    forecast_timestamp: str = ""
    expected_generation_kwh: float = 0.0


@dataclass
class PerformanceGapEvent(BaseEvent):
    """Gap persisted; alert_triggered gaps are forwarded to the alert sink."""
    plant_id: str = ""
    gap_timestamp: str = ""
    gap_percent: float = 0.0
    gap_kwh: float = 0.0
    estimated_loss: float = 0.0
    alert_triggered: bool = False


# ==============================================================================
# DETECTION & DIAGNOSIS EVENTS
# ==============================================================================

@dataclass
class AnomalyDetectedEvent(BaseEvent):
    anomaly_id: str = ""
    plant_id: str = ""
    anomaly_type: str = ""
    severity: str = "low"
    confidence: float = 0.0
    is_new: bool = True
    previous_severity: Optional[str] = None


@dataclass
class AnomalyStatusChangedEvent(BaseEvent):
    anomaly_id: str = ""
    old_status: str = ""
    new_status: str = ""


@dataclass
class RootCauseEvent(BaseEvent):
    """Root cause analysis opened, refined or completed."""
    analysis_id: str = ""
    anomaly_id: str = ""
    investigation_status: str = ""
    top_cause: str = ""
    top_confidence: float = 0.0


# ==============================================================================
# AUDIT & ALERT EVENTS
# ==============================================================================

@dataclass
class AuditCompletedEvent(BaseEvent):
    audit_id: str = ""
    plant_id: str = ""
    overall_status: str = ""
    findings_count: int = 0
    recoverable_kwh: float = 0.0
    not_evaluated: List[str] = field(default_factory=list)


@dataclass
class AlertEvent(BaseEvent):
    """Alert emitted to the external alert sink."""
    plant_id: str = ""
    level: str = "WARNING"
    title: str = ""
    message: str = ""
    reference_id: str = ""
