"""
Monitoring Connection Module - PV Digital Twin Platform

One variant per monitoring-system type. Raw connection payloads are parsed
here, so nothing past this boundary ever sees an untyped credentials map.
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from pv_twin.domain.errors import ValidationError


@dataclass(frozen=True)
class SolarEdgeConnection:
    site_id: str
    api_key: str
    system_type: str = "solaredge"

    def to_dict(self) -> Dict[str, Any]:
        # api_key is never serialized
        return {"system_type": self.system_type, "site_id": self.site_id}


@dataclass(frozen=True)
class SungrowConnection:
    plant_id: str
    app_key: str
    username: str
    password: str
    system_type: str = "sungrow"

    def to_dict(self) -> Dict[str, Any]:
        return {"system_type": self.system_type, "plant_id": self.plant_id,
                "username": self.username}


@dataclass(frozen=True)
class ManualConnection:
    """Readings are uploaded by hand; nothing to poll."""
    upload_interval_minutes: int = 15
    notes: Optional[str] = None
    system_type: str = "manual"

    def to_dict(self) -> Dict[str, Any]:
        return {"system_type": self.system_type,
                "upload_interval_minutes": self.upload_interval_minutes,
                "notes": self.notes}


MonitoringConnection = Union[SolarEdgeConnection, SungrowConnection, ManualConnection]


def _require(data: Dict[str, Any], system_type: str, *names: str) -> Dict[str, str]:
    missing = [n for n in names if not data.get(n)]
    if missing:
        raise ValidationError(
            f"{system_type} connection is missing {', '.join(missing)}",
            {"system_type": system_type, "missing": missing}
        )
    return {n: str(data[n]) for n in names}


def parse_monitoring_connection(data: Dict[str, Any]) -> MonitoringConnection:
    """Validate a raw connection payload into its typed variant."""
    if not isinstance(data, dict):
        raise ValidationError("Monitoring connection must be an object")
    system_type = data.get("system_type")
    if system_type == "solaredge":
        return SolarEdgeConnection(**_require(data, system_type, "site_id", "api_key"))
    if system_type == "sungrow":
        return SungrowConnection(**_require(data, system_type, "plant_id", "app_key",
                                            "username", "password"))
    if system_type == "manual":
        interval = data.get("upload_interval_minutes", 15)
        try:
            interval = int(interval)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid upload interval {interval!r}")
        if interval <= 0:
            raise ValidationError("upload_interval_minutes must be positive")
        return ManualConnection(upload_interval_minutes=interval, notes=data.get("notes"))
    raise ValidationError(f"Unknown monitoring system type {system_type!r}",
                          {"allowed": ["solaredge", "sungrow", "manual"]})
