"""
Root Cause Analyzer Agent - PV Digital Twin Platform

Produces a confidence-scored list of probable causes for an anomaly and
drives the investigation state machine (pending -> in_progress -> completed).

Evidence sources, merged by cause name (highest confidence wins):
1. Type templates (what usually produces this symptom)
2. Anomaly metadata (z-score sharpness, gap duration)
3. Correlated performance-gap causes around the anomaly timestamp
4. Upstream components in the plant dependency graph
"""
import threading
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from pv_twin.agents.diagnosis.dependency_graph import build_dependency_graph, mark_symptom
from pv_twin.domain.errors import (
    AnalysisInProgressError, AnalysisNotFoundError, AnomalyNotFoundError
)
from pv_twin.domain.events import RootCauseEvent
from pv_twin.domain.interfaces import IConfigProvider, ITwinRepository
from pv_twin.domain.models import (
    ActionPriority, Anomaly, AnomalyStatus, AnomalyType, DependencyGraph, InvestigationStatus,
    MetricAffected, ProbableCause, RecommendedAction, RootCauseAnalysis
)
from pv_twin.framework.base_agent import BaseAgent
from pv_twin.framework.bus import EventBus

# (cause, confidence, evidence, impact share, component)
CAUSE_TEMPLATES = {
    AnomalyType.GENERATION_DROP: [
        ("Soiling on modules", 0.7, "Gradual generation drop without weather events", 1.0, "modules"),
        ("Abnormal shading", 0.5, "Drop concentrated at specific hours", 0.6, "modules"),
        ("Module degradation", 0.3, "Persistent drop over time", 0.4, "modules"),
    ],
    AnomalyType.UNDERPERFORMANCE: [
        ("Inverter operating below capacity", 0.6, "Consistent gap between expected and actual", 1.0, "inverter"),
        ("String disconnected or failed", 0.5, "Abrupt generation drop", 0.7, "strings"),
    ],
    AnomalyType.EFFICIENCY_DROP: [
        ("Inverter efficiency degradation", 0.5, "Lower AC/DC conversion ratio", 1.0, "inverter"),
        ("High cell temperature", 0.3, "Efficiency loss tracks temperature", 0.5, "modules"),
    ],
    AnomalyType.DATA_GAP: [
        ("Monitoring communication failure", 0.8, "No data received for the period", 0.0, "monitoring"),
    ],
    AnomalyType.OFFLINE: [
        ("Breaker open or grid failure", 0.7, "Zero generation during daylight", 1.0, "grid"),
        ("Inverter shut down by protection", 0.6, "System not responding", 1.0, "inverter"),
    ],
    AnomalyType.UNEXPECTED_SPIKE: [
        ("Cloud-edge irradiance enhancement", 0.5, "Short spike above the usual envelope", 0.0, "weather"),
        ("Meter or sensor error", 0.4, "Value inconsistent with neighbours", 0.0, "monitoring"),
    ],
    AnomalyType.OVERPERFORMANCE: [
        ("Irradiance above forecast", 0.8, "Actual exceeds the physical baseline", 0.0, "weather"),
        ("Baseline underestimates plant output", 0.3, "Config losses may be overstated", 0.0, "modules"),
    ],
}

# (action, priority, hours, cost)
ACTION_TEMPLATES = {
    AnomalyType.GENERATION_DROP: [
        ("Visual inspection of modules", ActionPriority.HIGH, 2, 300),
        ("Module cleaning", ActionPriority.MEDIUM, 4, 800),
    ],
    AnomalyType.UNDERPERFORMANCE: [
        ("Check inverter status and alarms", ActionPriority.CRITICAL, 1, 150),
        ("Test strings with multimeter or thermal camera", ActionPriority.HIGH, 3, 500),
    ],
    AnomalyType.EFFICIENCY_DROP: [
        ("Review inverter efficiency against datasheet curve", ActionPriority.MEDIUM, 2, 200),
    ],
    AnomalyType.DATA_GAP: [
        ("Check connectivity and datalogger", ActionPriority.MEDIUM, 1, 200),
    ],
    AnomalyType.OFFLINE: [
        ("Inspect electrical system and inverter urgently", ActionPriority.CRITICAL, 2, 400),
    ],
    AnomalyType.UNEXPECTED_SPIKE: [
        ("Validate meter readings against inverter counters", ActionPriority.LOW, 1, 100),
    ],
    AnomalyType.OVERPERFORMANCE: [
        ("Recalibrate digital twin losses", ActionPriority.LOW, 2, 0),
    ],
}

PRIORITY_RANK = {ActionPriority.CRITICAL: 0, ActionPriority.HIGH: 1,
                 ActionPriority.MEDIUM: 2, ActionPriority.LOW: 3}


def merge_causes(causes: List[ProbableCause]) -> List[ProbableCause]:
    """Collapse causes by name keeping the highest confidence, then sort."""
    merged: Dict[str, ProbableCause] = {}
    for cause in causes:
        current = merged.get(cause.cause)
        if current is None:
            merged[cause.cause] = cause
            continue
        if cause.confidence > current.confidence:
            cause.evidence = "; ".join(e for e in (cause.evidence, current.evidence) if e)
            cause.estimated_impact_kwh = max(cause.estimated_impact_kwh, current.estimated_impact_kwh)
            merged[cause.cause] = cause
        else:
            current.evidence = "; ".join(e for e in (current.evidence, cause.evidence) if e)
            current.estimated_impact_kwh = max(cause.estimated_impact_kwh, current.estimated_impact_kwh)
    return sorted(merged.values(), key=lambda c: (-c.confidence, c.cause))


class RootCauseAnalyzerAgent(BaseAgent):
    def __init__(self, name: str, bus: EventBus, repository: ITwinRepository,
                 config_provider: Optional[IConfigProvider] = None,
                 config: Optional[Dict[str, Any]] = None):
        super().__init__(name, bus, config)
        self.repository = repository
        self.config_provider = config_provider
        self.sample_hours = float(self.config.get("sample_interval_minutes", 15)) / 60.0
        self.correlation_window = timedelta(minutes=float(self.config.get("correlation_window_minutes", 60)))
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, anomaly_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(anomaly_id, threading.Lock())

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def analyze_root_cause(self, anomaly_id: str) -> RootCauseAnalysis:
        lock = self._lock_for(anomaly_id)
        if not lock.acquire(blocking=False):
            raise AnalysisInProgressError(anomaly_id)
        try:
            anomaly = self.repository.get_anomaly(anomaly_id)
            if anomaly is None:
                raise AnomalyNotFoundError(anomaly_id)

            analysis = self.repository.get_analysis_for_anomaly(anomaly_id)
            if analysis is not None and analysis.investigation_status == InvestigationStatus.COMPLETED:
                return analysis
            if analysis is None:
                analysis = RootCauseAnalysis(anomaly_id=anomaly_id, plant_id=anomaly.plant_id,
                                             created_at=self.now())

            causes, actions, graph = self.infer(anomaly)
            analysis.probable_causes = causes
            analysis.recommended_actions = actions
            analysis.dependency_graph = graph
            analysis.start()
            self.repository.save_analysis(analysis)
            self._link_anomaly(anomaly_id, analysis.analysis_id)

            top = causes[0] if causes else None
            self.logger.info(
                f"Root cause analysis for {anomaly_id}: {top.cause if top else 'no hypothesis'}",
                extra={"props": {"anomaly_id": anomaly_id, "causes": len(causes)}}
            )
            self._announce(analysis)
            return analysis
        finally:
            lock.release()

    def complete_investigation(self, anomaly_id: str, resolution_summary: str, actual_cause: str,
                               lessons_learned: str,
                               anomaly_status: Optional[AnomalyStatus] = AnomalyStatus.RESOLVED
                               ) -> RootCauseAnalysis:
        lock = self._lock_for(anomaly_id)
        if not lock.acquire(blocking=False):
            raise AnalysisInProgressError(anomaly_id)
        try:
            analysis = self.repository.get_analysis_for_anomaly(anomaly_id)
            if analysis is None:
                raise AnalysisNotFoundError(anomaly_id)
            analysis.complete(resolution_summary, actual_cause, lessons_learned, at=self.now())
            self.repository.save_analysis(analysis)

            if anomaly_status is not None:
                at = self.now()

                def close(anomaly: Anomaly):
                    if anomaly.is_open:
                        anomaly.transition(anomaly_status, at=at)

                self.repository.update_anomaly(anomaly_id, close)

            self.log_business_event("investigation_completed", {
                "anomaly_id": anomaly_id, "actual_cause": analysis.actual_cause
            })
            self._announce(analysis)
            return analysis
        finally:
            lock.release()

    def _link_anomaly(self, anomaly_id: str, analysis_id: str):
        def link(anomaly: Anomaly):
            anomaly.root_cause_id = analysis_id
            if anomaly.status == AnomalyStatus.ACTIVE:
                anomaly.transition(AnomalyStatus.INVESTIGATING)

        self.repository.update_anomaly(anomaly_id, link)

    def _announce(self, analysis: RootCauseAnalysis):
        top = analysis.probable_causes[0] if analysis.probable_causes else None
        self.publish(RootCauseEvent(
            source=self.name,
            analysis_id=analysis.analysis_id,
            anomaly_id=analysis.anomaly_id,
            investigation_status=analysis.investigation_status.value,
            top_cause=top.cause if top else "",
            top_confidence=top.confidence if top else 0.0
        ))

    # ------------------------------------------------------------------
    # Inference
    # ------------------------------------------------------------------

    def impact_kwh(self, anomaly: Anomaly) -> float:
        """Energy represented by the anomaly's expected/actual deviation."""
        if anomaly.expected_value is None:
            return 0.0
        actual = anomaly.actual_value or 0.0
        delta = abs(anomaly.expected_value - actual)
        if anomaly.metric_affected == MetricAffected.ENERGY:
            return delta
        if anomaly.metric_affected in (MetricAffected.POWER, MetricAffected.AVAILABILITY) \
                and anomaly.anomaly_type != AnomalyType.DATA_GAP:
            samples = max(int(anomaly.metadata.get("samples", 1)), 1)
            return delta * self.sample_hours * samples / 1000.0
        return 0.0

    def infer(self, anomaly: Anomaly) -> Tuple[List[ProbableCause], List[RecommendedAction], DependencyGraph]:
        impact = self.impact_kwh(anomaly)
        causes: List[ProbableCause] = [
            ProbableCause(cause, confidence, evidence, impact * share, component)
            for cause, confidence, evidence, share, component in CAUSE_TEMPLATES.get(anomaly.anomaly_type, [])
        ]
        causes.extend(self._metadata_causes(anomaly, impact))
        causes.extend(self._gap_causes(anomaly))

        config = self.config_provider.get_active_config(anomaly.plant_id) if self.config_provider else None
        graph = build_dependency_graph(config)
        symptom = mark_symptom(graph, anomaly.anomaly_type, anomaly.severity)
        causes.extend(self._upstream_causes(graph, symptom, causes, impact))

        actions = [
            RecommendedAction(action, priority, hours, cost)
            for action, priority, hours, cost in ACTION_TEMPLATES.get(anomaly.anomaly_type, [])
        ]
        actions.sort(key=lambda a: PRIORITY_RANK[a.priority])
        return merge_causes(causes), actions, graph

    def _metadata_causes(self, anomaly: Anomaly, impact: float) -> List[ProbableCause]:
        meta = anomaly.metadata or {}
        found = []
        z = meta.get("z_score")
        if z is not None and anomaly.anomaly_type == AnomalyType.GENERATION_DROP:
            if z >= 4:
                found.append(ProbableCause("Inverter trip or string disconnection", min(0.5 + (z - 4) * 0.1, 0.9),
                                           f"Abrupt deviation (z-score {z:.2f})", impact, "inverter"))
            else:
                found.append(ProbableCause("Soiling on modules", 0.75,
                                           f"Moderate deviation (z-score {z:.2f})", impact, "modules"))
        gap_minutes = meta.get("gap_minutes")
        if gap_minutes is not None and gap_minutes > 120:
            found.append(ProbableCause("Datalogger power failure", 0.5,
                                       f"Gap of {gap_minutes:.0f} minutes", 0.0, "monitoring"))
        gap_percent = meta.get("gap_percent")
        if gap_percent is not None and gap_percent <= -30:
            found.append(ProbableCause("String disconnected or failed", 0.65,
                                       f"Gap of {gap_percent:.1f}% vs baseline", impact * 0.7, "strings"))
        return found

    def _gap_causes(self, anomaly: Anomaly) -> List[ProbableCause]:
        start = anomaly.timestamp - self.correlation_window
        end = anomaly.timestamp + self.correlation_window
        found = []
        for gap in self.repository.list_gaps(anomaly.plant_id, start, end):
            for gap_cause in gap.probable_causes:
                found.append(ProbableCause(
                    gap_cause.cause, gap_cause.confidence,
                    f"Performance gap {gap.gap_percent:.1f}% at {gap.timestamp.isoformat()}",
                    gap_cause.estimated_impact_kwh, None
                ))
        return found

    def _upstream_causes(self, graph: DependencyGraph, symptom: str, known: List[ProbableCause],
                         impact: float) -> List[ProbableCause]:
        covered = {c.component for c in known if c.component}
        found = []
        for rank, node_id in enumerate(graph.upstream_of(symptom)):
            if node_id in covered or node_id == "weather":
                continue
            confidence = round(0.3 * (0.8 ** rank), 4)
            found.append(ProbableCause(
                f"Upstream fault in {node_id}", confidence,
                f"{node_id} cascades to {symptom}", impact * 0.3, node_id
            ))
        return found
