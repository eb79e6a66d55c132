"""
Domain Interfaces Module - PV Digital Twin Platform

Contains abstract base classes (interfaces) that define contracts for
agents, data providers, persistence and detection strategies.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional


# ==============================================================================
# CORE AGENT INTERFACE
# ==============================================================================

class IAgent(ABC):
    """Interface for all agents in the system."""

    @abstractmethod
    def start(self):
        """Initialize and start the agent."""
        pass

    @abstractmethod
    def stop(self):
        """Stop and cleanup the agent."""
        pass


# ==============================================================================
# DATA PROVIDER INTERFACES (consumed collaborators)
# ==============================================================================

class IConfigProvider(ABC):
    """Source of the active digital twin config for a plant."""

    @abstractmethod
    def get_active_config(self, plant_id: str):
        """Return the active DigitalTwinConfig or None."""
        pass

    @abstractmethod
    def list_plants(self) -> List[str]:
        pass


class ITelemetryProvider(ABC):
    """Read-only access to raw telemetry."""

    @abstractmethod
    def get_telemetry(self, plant_id: str, start: datetime, end: datetime) -> List[Any]:
        """Return TelemetryPoints with start <= timestamp <= end, oldest first."""
        pass

    @abstractmethod
    def get_telemetry_at(self, plant_id: str, timestamp: datetime) -> List[Any]:
        """Return TelemetryPoints stamped exactly at timestamp."""
        pass


class IWeatherProvider(ABC):
    """Optional source of irradiance/temperature observations."""

    @abstractmethod
    def get_weather(self, plant_id: str, timestamp: datetime):
        """Return a WeatherObservation or None."""
        pass


# ==============================================================================
# PERSISTENCE INTERFACE
# ==============================================================================

class ITwinRepository(ABC):
    """Persistence contract used by the engines."""

    @abstractmethod
    def save_config(self, config) -> Any:
        pass

    @abstractmethod
    def upsert_baseline(self, forecast):
        pass

    @abstractmethod
    def get_baseline(self, plant_id: str, timestamp: datetime):
        pass

    @abstractmethod
    def list_baselines(self, plant_id: str, start: datetime, end: datetime) -> List[Any]:
        pass

    @abstractmethod
    def upsert_gap(self, gap):
        pass

    @abstractmethod
    def list_gaps(self, plant_id: str, start: datetime, end: datetime) -> List[Any]:
        pass

    @abstractmethod
    def save_anomaly(self, anomaly, key=None):
        pass

    @abstractmethod
    def get_anomaly(self, anomaly_id: str):
        pass

    @abstractmethod
    def update_anomaly(self, anomaly_id: str, mutator):
        """Apply mutator to the stored anomaly atomically and return a copy."""
        pass

    @abstractmethod
    def find_by_key(self, key) -> Optional[Any]:
        """Anomaly with this idempotency key, whatever its status."""
        pass

    @abstractmethod
    def list_anomalies(self, plant_id: str, start: datetime, end: datetime) -> List[Any]:
        pass

    @abstractmethod
    def save_analysis(self, analysis):
        pass

    @abstractmethod
    def get_analysis_for_anomaly(self, anomaly_id: str):
        pass

    @abstractmethod
    def append_audit(self, audit):
        pass


# ==============================================================================
# DETECTION INTERFACES
# ==============================================================================

class IDetectionStrategy(ABC):
    """One independently failable anomaly detection strategy."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Strategy identifier used in error reports."""
        pass

    @property
    def needs_telemetry(self) -> bool:
        return True

    @abstractmethod
    def detect(self, context) -> List[Any]:
        """Return candidate Anomaly records for one plant window."""
        pass


class IAnomalyModel(ABC):
    """Input/output contract of a pluggable ML detector."""

    @abstractmethod
    def fit_predict(self, features) -> Any:
        """Return one label per row: -1 for outlier, 1 for inlier."""
        pass

    def score_samples(self, features) -> Any:
        """Optional per-row anomaly score (lower is more anomalous)."""
        return None


# ==============================================================================
# ALERTING INTERFACE
# ==============================================================================

class IAlertSink(ABC):
    """Fed collaborator receiving alertable records."""

    @abstractmethod
    def send(self, alert: Dict[str, Any]):
        pass
