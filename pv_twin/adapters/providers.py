"""
Provider Wrappers Module - PV Digital Twin Platform

Decorators around the consumed collaborators: every telemetry and weather
fetch goes through the retry policy, and active configs are served from an
explicitly owned TTL cache.
"""
import copy
from datetime import datetime
from typing import List, Optional

from pv_twin.domain.interfaces import IConfigProvider, ITelemetryProvider, IWeatherProvider
from pv_twin.framework.cache import TTLCache
from pv_twin.framework.retry import RetryingCaller


class RetryingTelemetryProvider(ITelemetryProvider):
    def __init__(self, inner: ITelemetryProvider, caller: RetryingCaller):
        self.inner = inner
        self.caller = caller

    def get_telemetry(self, plant_id: str, start: datetime, end: datetime) -> List:
        return self.caller.call(f"telemetry[{plant_id}]", self.inner.get_telemetry,
                                plant_id, start, end)

    def get_telemetry_at(self, plant_id: str, timestamp: datetime) -> List:
        return self.caller.call(f"telemetry_at[{plant_id}]", self.inner.get_telemetry_at,
                                plant_id, timestamp)


class RetryingWeatherProvider(IWeatherProvider):
    def __init__(self, inner: IWeatherProvider, caller: RetryingCaller):
        self.inner = inner
        self.caller = caller

    def get_weather(self, plant_id: str, timestamp: datetime):
        return self.caller.call(f"weather[{plant_id}]", self.inner.get_weather,
                                plant_id, timestamp)


class CachedConfigProvider(IConfigProvider):
    """Active-config lookups served from a TTLCache; invalidate on register."""

    def __init__(self, inner: IConfigProvider, cache: TTLCache):
        self.inner = inner
        self.cache = cache

    def get_active_config(self, plant_id: str):
        cached = self.cache.get(("config", plant_id))
        if cached is not None:
            return copy.deepcopy(cached)
        config = self.inner.get_active_config(plant_id)
        if config is not None:
            self.cache.set(("config", plant_id), copy.deepcopy(config))
        return config

    def list_plants(self) -> List[str]:
        return self.inner.list_plants()

    def invalidate(self, plant_id: Optional[str] = None):
        if plant_id is None:
            self.cache.clear()
        else:
            self.cache.invalidate(("config", plant_id))
