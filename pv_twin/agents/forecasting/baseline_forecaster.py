"""
Baseline Forecaster Agent - PV Digital Twin Platform

Physical expected-generation model driven by the plant's digital twin
config and (optionally) observed weather:

    expected_kwh = kWp x POA irradiance x system efficiency / 1000

where system efficiency is the product of the configured losses, the
seasonal soiling and shading factors, the cell-temperature derate and
availability. The result is deterministic for a given config version.
"""
import math
from datetime import datetime
from typing import Any, Dict, Optional

from pv_twin.domain.errors import ConfigNotFoundError, NumericDomainError, UpstreamDataError
from pv_twin.domain.events import BaselineCalculatedEvent
from pv_twin.domain.interfaces import IConfigProvider, ITwinRepository, IWeatherProvider
from pv_twin.domain.models import (
    BaselineFactors, BaselineForecast, DigitalTwinConfig, WeatherObservation
)
from pv_twin.framework.base_agent import BaseAgent
from pv_twin.framework.bus import EventBus


def clear_sky_irradiance(timestamp: datetime, max_irradiance: float = 1000.0,
                         daylight_start: float = 6.0, daylight_end: float = 18.0) -> float:
    """Diurnal curve: zero at night, cosine peak at solar noon."""
    hour = timestamp.hour + timestamp.minute / 60.0 + timestamp.second / 3600.0
    if hour < daylight_start or hour > daylight_end:
        return 0.0
    half_day = (daylight_end - daylight_start) / 2.0
    noon = daylight_start + half_day
    return max(0.0, max_irradiance * math.cos(abs(hour - noon) / half_day * math.pi / 2))


class BaselineForecasterAgent(BaseAgent):
    """Computes and persists BaselineForecast records."""

    def __init__(self, name: str, bus: EventBus, config_provider: IConfigProvider,
                 repository: ITwinRepository, weather_provider: Optional[IWeatherProvider] = None,
                 config: Optional[Dict[str, Any]] = None):
        super().__init__(name, bus, config)
        self.config_provider = config_provider
        self.repository = repository
        self.weather_provider = weather_provider

        self.max_irradiance = float(self.config.get("max_irradiance_w_m2", 1000.0))
        self.daylight_start = float(self.config.get("daylight_start_hour", 6))
        self.daylight_end = float(self.config.get("daylight_end_hour", 18))
        self.default_ambient = float(self.config.get("default_ambient_temp_c", 25.0))
        self.noct = float(self.config.get("noct_c", 45.0))
        self.default_soiling_factor = float(self.config.get("default_soiling_factor", 0.95))
        self.confidence_band = float(self.config.get("confidence_band", 0.10))

    def calculate_baseline(self, plant_id: str, timestamp: datetime,
                           weather: Optional[WeatherObservation] = None) -> BaselineForecast:
        twin = self.config_provider.get_active_config(plant_id)
        if twin is None:
            raise ConfigNotFoundError(plant_id)

        if weather is None and self.weather_provider is not None:
            try:
                weather = self.weather_provider.get_weather(plant_id, timestamp)
            except UpstreamDataError as e:
                self.logger.warning(
                    f"Weather unavailable for {plant_id}, using estimated irradiance",
                    extra={"props": {"plant_id": plant_id, "error_kind": e.error_kind}}
                )

        forecast = self.compute(twin, timestamp, weather)
        self.repository.upsert_baseline(forecast)

        self.logger.info(
            f"Baseline {forecast.expected_generation_kwh:.3f} kWh for {plant_id}",
            extra={"props": {"plant_id": plant_id, "timestamp": timestamp.isoformat(),
                             "config_version": twin.version}}
        )
        self.publish(BaselineCalculatedEvent(
            source=self.name,
            plant_id=plant_id,
            forecast_timestamp=timestamp.isoformat(),
            expected_generation_kwh=forecast.expected_generation_kwh
        ))
        return forecast

    # ------------------------------------------------------------------
    # Pure model
    # ------------------------------------------------------------------

    def estimate_irradiance(self, timestamp: datetime) -> float:
        return clear_sky_irradiance(timestamp, self.max_irradiance,
                                    self.daylight_start, self.daylight_end)

    def compute(self, twin: DigitalTwinConfig, timestamp: datetime,
                weather: Optional[WeatherObservation] = None) -> BaselineForecast:
        losses = twin.losses
        env = twin.environmental_context

        if weather is not None and weather.irradiance_w_m2 is not None:
            irradiance = weather.irradiance_w_m2
        else:
            irradiance = self.estimate_irradiance(timestamp)
        if weather is not None and weather.ambient_temp_c is not None:
            ambient = weather.ambient_temp_c
        else:
            ambient = self.default_ambient

        if not math.isfinite(irradiance) or irradiance < 0:
            raise NumericDomainError(f"Irradiance {irradiance} is not physical",
                                     {"plant_id": twin.plant_id, "irradiance": irradiance})
        if not math.isfinite(ambient):
            raise NumericDomainError(f"Ambient temperature {ambient} is not finite",
                                     {"plant_id": twin.plant_id})

        cell_temp = ambient + (self.noct - 20.0) / 800.0 * irradiance

        soiling_factor = env.soiling_factor_for(timestamp.month)
        if soiling_factor is None:
            soiling_factor = self.default_soiling_factor

        shading_loss = env.shading_loss_for(timestamp.hour, timestamp.month)
        if shading_loss is not None:
            shading_factor = 1.0 - shading_loss
        else:
            shading_factor = 1.0 - losses.shading / 100.0

        temp_loss_pct = losses.temperature_coefficient * (cell_temp - 25.0)

        efficiency = (
            (1 - losses.soiling / 100.0)
            * soiling_factor
            * shading_factor
            * (1 - losses.mismatch / 100.0)
            * (1 - losses.wiring / 100.0)
            * (1 - losses.connections / 100.0)
            * (1 - losses.lid / 100.0)
            * (1 + temp_loss_pct / 100.0)
            * (losses.grid_availability / 100.0)
            * (losses.system_availability / 100.0)
        )
        if not (0.0 <= efficiency <= 1.0) or not math.isfinite(efficiency):
            raise NumericDomainError(
                f"System efficiency {efficiency:.4f} outside [0, 1]",
                {"plant_id": twin.plant_id, "efficiency": efficiency, "cell_temp": cell_temp}
            )

        expected = twin.nominal_power_kwp * irradiance * efficiency / 1000.0

        return BaselineForecast(
            plant_id=twin.plant_id,
            timestamp=timestamp,
            expected_generation_kwh=expected,
            confidence_lower=expected * (1 - self.confidence_band),
            confidence_upper=expected * (1 + self.confidence_band),
            factors=BaselineFactors(
                poa_irradiance=irradiance,
                ambient_temp=ambient,
                cell_temp_estimated=cell_temp,
                soiling_factor=soiling_factor,
                shading_factor=shading_factor,
                system_efficiency=efficiency
            ),
            model_version=twin.baseline_model.version,
            calibration_date=twin.calibration_date or twin.created_at,
            config_id=twin.config_id,
            config_version=twin.version
        )
