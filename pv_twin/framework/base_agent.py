from typing import Any, Callable, Optional
from datetime import datetime, timezone

from pv_twin.domain.interfaces import IAgent
from pv_twin.domain.models import as_utc
from pv_twin.framework.bus import EventBus
from pv_twin.framework.observability import get_logger, Observability


class BaseAgent(IAgent):
    """
    Common plumbing for the engines: named logger, bus access, metrics and
    an injectable clock (``config["clock"]``) so runs can be replayed.
    """

    def __init__(self, name: str, bus: EventBus, config: Optional[dict] = None):
        self.name = name
        self.bus = bus
        self.config = config or {}
        self.logger = get_logger(self.name)
        self.observability = Observability.get_instance()
        self.running = False

    def start(self):
        self.logger.info(f"Agent {self.name} starting...", extra={"props": {"lifecycle": "START"}})
        self.setup()
        self.running = True

    def stop(self):
        self.logger.info(f"Agent {self.name} stopping...", extra={"props": {"lifecycle": "STOP"}})
        self.teardown()
        self.running = False

    def setup(self):
        """Subscribe to bus events here."""
        pass

    def teardown(self):
        pass

    def subscribe(self, event_type: Any, handler: Callable[[Any], None]):
        self.bus.subscribe(event_type, handler)

    def publish(self, event: Any):
        if self.bus is not None:
            self.bus.publish(event)

    def log_metric(self, name: str, value: Any):
        self.observability.log_metric(name, value, agent=self.name)

    def log_business_event(self, event_name: str, payload: dict):
        self.observability.log_business_event(event_name, payload, agent=self.name)

    def now(self) -> datetime:
        clock = self.config.get("clock")
        if clock is not None:
            return as_utc(clock())
        return datetime.now(timezone.utc)
