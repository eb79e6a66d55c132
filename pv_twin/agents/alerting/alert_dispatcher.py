"""
Alert Dispatcher Agent - PV Digital Twin Platform

Listens on the bus for alertable records and forwards them to the
configured alert sink: gaps with alert_triggered set and anomalies
that are opened at, or escalate to, critical severity.
"""
from collections import deque
from typing import Any, Dict, Optional

from pv_twin.domain.events import AlertEvent, AnomalyDetectedEvent, PerformanceGapEvent
from pv_twin.domain.interfaces import IAlertSink
from pv_twin.framework.base_agent import BaseAgent
from pv_twin.framework.bus import EventBus
from pv_twin.framework.observability import get_logger


class LoggingAlertSink(IAlertSink):
    """Default sink: alerts become WARNING/CRITICAL log lines; the latest are kept in memory."""

    def __init__(self, history_size: int = 1000):
        self.logger = get_logger("AlertSink")
        self.sent = deque(maxlen=history_size)

    def send(self, alert: Dict[str, Any]):
        self.sent.append(alert)
        level = alert.get("level", "WARNING")
        log = self.logger.critical if level == "CRITICAL" else self.logger.warning
        log(f"ALERT {alert.get('title')}: {alert.get('message')}", extra={"props": alert})


class AlertDispatcherAgent(BaseAgent):
    def __init__(self, name: str, bus: EventBus, sink: Optional[IAlertSink] = None,
                 config: Optional[Dict[str, Any]] = None):
        super().__init__(name, bus, config)
        self.sink = sink or LoggingAlertSink()
        self.critical_gap_percent = float(self.config.get("critical_gap_percent", -30.0))
        self.dispatched = 0

    def setup(self):
        self.subscribe(PerformanceGapEvent, self.on_gap)
        self.subscribe(AnomalyDetectedEvent, self.on_anomaly)

    def teardown(self):
        self.bus.unsubscribe(PerformanceGapEvent, self.on_gap)
        self.bus.unsubscribe(AnomalyDetectedEvent, self.on_anomaly)

    def on_gap(self, event: PerformanceGapEvent):
        if not event.alert_triggered:
            return
        self.dispatch(AlertEvent(
            source=self.name,
            plant_id=event.plant_id,
            level="CRITICAL" if event.gap_percent <= self.critical_gap_percent else "WARNING",
            title="Performance gap",
            message=f"Generation deviates {event.gap_percent:.1f}% from baseline at {event.gap_timestamp} "
                    f"(estimated loss {event.estimated_loss:.2f})",
            reference_id=event.gap_timestamp
        ))

    def on_anomaly(self, event: AnomalyDetectedEvent):
        if event.severity != "critical":
            return
        escalated = not event.is_new and event.previous_severity not in (None, "critical")
        # re-detections of an already critical anomaly were alerted before
        if not event.is_new and not escalated:
            return
        verb = f"escalated from {event.previous_severity}" if escalated else "detected"
        self.dispatch(AlertEvent(
            source=self.name,
            plant_id=event.plant_id,
            level="CRITICAL",
            title=f"Critical anomaly: {event.anomaly_type}",
            message=f"Anomaly {event.anomaly_id} {verb} with confidence {event.confidence:.2f}",
            reference_id=event.anomaly_id
        ))

    def dispatch(self, alert: AlertEvent):
        self.sink.send({
            "alert_id": alert.event_id,
            "plant_id": alert.plant_id,
            "level": alert.level,
            "title": alert.title,
            "message": alert.message,
            "reference_id": alert.reference_id,
        })
        self.dispatched += 1
        self.log_metric("alerts_dispatched", self.dispatched)
        self.publish(alert)
