"""
Observability Module - PV Digital Twin Platform

JSON-lines logging on stderr, a per-request correlation id and a small
in-process metrics table fed by the engines.
"""
import logging
import json
import time
import uuid
import sys
import threading
from typing import Dict, Any, Optional
from datetime import datetime, timezone

# One correlation id per handled request, per thread
_trace_context = threading.local()


def get_correlation_id() -> Optional[str]:
    return getattr(_trace_context, 'correlation_id', None)


def set_correlation_id(cid: str):
    _trace_context.correlation_id = cid


def clear_correlation_id():
    if hasattr(_trace_context, 'correlation_id'):
        del _trace_context.correlation_id


class JSONFormatter(logging.Formatter):
    """One JSON document per record; ``extra={"props": {...}}`` fields are merged in."""

    def format(self, record):
        document = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        cid = get_correlation_id()
        if cid:
            document["request_id"] = cid
        props = getattr(record, "props", None)
        if props:
            document.update(props)
        if record.exc_info:
            document["exception"] = self.formatException(record.exc_info)
        return json.dumps(document, default=str)


class Observability:
    """Process-wide logging setup and metrics table."""
    _instance = None
    _lock = threading.Lock()

    def __init__(self, level: str = "INFO"):
        self._metrics: Dict[str, Dict[str, Any]] = {}
        self._metrics_lock = threading.Lock()
        self._configure(level)

    @classmethod
    def get_instance(cls, level: Optional[str] = None):
        with cls._lock:
            if cls._instance is None:
                cls._instance = Observability(level or "INFO")
            elif level:
                cls._instance.set_level(level)
            return cls._instance

    def _configure(self, level: str):
        root = logging.getLogger()
        root.setLevel(level.upper())
        for h in list(root.handlers):
            root.removeHandler(h)
        # stdout carries CLI responses
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(JSONFormatter())
        root.addHandler(handler)

    def set_level(self, level: str):
        logging.getLogger().setLevel(level.upper())

    def log_metric(self, name: str, value: Any, agent: str = "System"):
        """Record the latest value of ``agent.name`` and log it."""
        with self._metrics_lock:
            self._metrics[f"{agent}.{name}"] = {"value": value, "ts": time.time()}
        logging.getLogger(agent).info(
            f"Metric: {name}={value}",
            extra={"props": {"metric_name": name, "metric_value": value, "type": "METRIC"}}
        )

    def get_metrics(self) -> Dict[str, Any]:
        with self._metrics_lock:
            return {key: entry["value"] for key, entry in self._metrics.items()}

    def log_business_event(self, event_name: str, payload: Dict[str, Any], agent: str):
        """Log a domain milestone (anomaly opened, investigation closed, audit stored)."""
        logging.getLogger(agent).info(
            f"Event: {event_name}",
            extra={"props": {"event_type": event_name, "payload": payload, "type": "BUSINESS_EVENT"}}
        )

    def start_trace(self, trace_id: Optional[str] = None) -> str:
        cid = trace_id or str(uuid.uuid4())
        set_correlation_id(cid)
        return cid

    def end_trace(self):
        clear_correlation_id()


def get_logger(name: str):
    return logging.getLogger(name)
