"""
Plant Simulator Module - PV Digital Twin Platform

Deterministic synthetic telemetry generator with fault injection. Produces
plant-level rows (power/energy) plus optional per-inverter and per-string
breakdown rows, shaped by a clear-sky diurnal curve.
"""
import math
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional

import numpy as np

from pv_twin.domain.models import DigitalTwinConfig, TelemetryPoint, WeatherObservation

logger = logging.getLogger(__name__)


class FaultKind(Enum):
    OFFLINE = "offline"
    SOILING = "soiling"
    STRING_FAILURE = "string_failure"
    COMM_GAP = "comm_gap"
    CLIPPING = "clipping"


@dataclass
class FaultSpec:
    """Active fault between start (inclusive) and end (exclusive)."""
    kind: FaultKind
    start: datetime
    end: datetime
    severity: float = 1.0
    target: Optional[str] = None  # string_id for STRING_FAILURE

    def active_at(self, ts: datetime) -> bool:
        return self.start <= ts < self.end


class PlantSimulator:
    """
    Synthetic plant following its digital twin config.

    Faults supported:
    - OFFLINE: plant output drops to zero
    - SOILING: output scaled by (1 - severity)
    - STRING_FAILURE: target string produces nothing
    - COMM_GAP: samples are not emitted at all
    - CLIPPING: AC output capped at the inverter rating (DC side oversized by severity)
    """

    def __init__(self, config: DigitalTwinConfig, seed: int = 42, interval_minutes: int = 15,
                 noise_level: float = 0.02, system_efficiency: float = 0.85,
                 max_irradiance: float = 1000.0):
        self.config = config
        self.interval_minutes = interval_minutes
        self.noise_level = noise_level
        self.system_efficiency = system_efficiency
        self.max_irradiance = max_irradiance
        self.faults: List[FaultSpec] = []
        self._rng = np.random.default_rng(seed)

    def inject_fault(self, fault: FaultSpec):
        self.faults.append(fault)
        logger.info(f"Fault injected: {fault.kind.value}",
                    extra={"props": {"plant_id": self.config.plant_id,
                                     "start": fault.start.isoformat(), "end": fault.end.isoformat()}})

    def _active(self, kind: FaultKind, ts: datetime) -> List[FaultSpec]:
        return [f for f in self.faults if f.kind == kind and f.active_at(ts)]

    def irradiance_at(self, ts: datetime) -> float:
        hour = ts.hour + ts.minute / 60.0
        if hour < 6 or hour > 18:
            return 0.0
        return self.max_irradiance * math.cos(abs(hour - 12) / 6 * math.pi / 2)

    def weather_at(self, ts: datetime) -> WeatherObservation:
        return WeatherObservation(irradiance_w_m2=self.irradiance_at(ts), ambient_temp_c=25.0)

    def _string_power_w(self, module_count: int, irradiance: float) -> float:
        return module_count * self.config.layout.module_wp * irradiance / 1000.0 * self.system_efficiency

    def generate(self, start: datetime, end: datetime, component_rows: bool = True) -> List[TelemetryPoint]:
        points: List[TelemetryPoint] = []
        step = timedelta(minutes=self.interval_minutes)
        hours = self.interval_minutes / 60.0
        plant_id = self.config.plant_id
        ts = start
        while ts <= end:
            if self._active(FaultKind.COMM_GAP, ts):
                ts += step
                continue

            irradiance = self.irradiance_at(ts)
            noise = 1.0 + self._rng.normal(0.0, self.noise_level) if irradiance > 0 else 1.0
            scale = noise
            for fault in self._active(FaultKind.SOILING, ts):
                scale *= max(0.0, 1.0 - fault.severity)
            offline = bool(self._active(FaultKind.OFFLINE, ts))
            failed = {f.target for f in self._active(FaultKind.STRING_FAILURE, ts)}
            clipping = self._active(FaultKind.CLIPPING, ts)

            string_power = {}
            if self.config.strings:
                for string in self.config.strings:
                    power = 0.0 if (offline or string.string_id in failed) else \
                        self._string_power_w(string.module_count, irradiance) * scale
                    string_power[string.string_id] = max(power, 0.0)
                total_dc = sum(string_power.values())
            else:
                total_dc = 0.0 if offline else max(
                    self._string_power_w(self.config.layout.module_count, irradiance) * scale, 0.0)

            inverter_rows = []
            total_ac = 0.0
            for inverter in self.config.inverters:
                dc = sum(p for sid, p in string_power.items()
                         if any(s.string_id == sid and s.inverter_id == inverter.inverter_id
                                for s in self.config.strings))
                for fault in clipping:
                    dc *= 1.0 + fault.severity
                rated_w = inverter.rated_power_kw * 1000.0
                ratio = dc / rated_w if rated_w else 0.0
                ac = min(dc * inverter.efficiency_at(min(ratio, 1.0)), rated_w)
                total_ac += ac
                inverter_rows.append(TelemetryPoint(
                    plant_id=plant_id, timestamp=ts, inverter_id=inverter.inverter_id,
                    dc_power_w=round(dc, 3), ac_power_w=round(ac, 3)))

            plant_power = total_ac if self.config.inverters else total_dc
            points.append(TelemetryPoint(
                plant_id=plant_id, timestamp=ts, power_w=round(plant_power, 3),
                energy_kwh=round(plant_power * hours / 1000.0, 6)))

            if component_rows:
                points.extend(inverter_rows)
                for string in self.config.strings:
                    points.append(TelemetryPoint(
                        plant_id=plant_id, timestamp=ts, inverter_id=string.inverter_id,
                        string_id=string.string_id, mppt_input=string.mppt_input,
                        dc_power_w=round(string_power.get(string.string_id, 0.0), 3)))
            ts += step
        return points
