import unittest
from datetime import timedelta
from unittest.mock import MagicMock

from pv_twin.adapters.memory_store import InMemoryTwinStore
from pv_twin.agents.diagnosis.dependency_graph import build_dependency_graph, mark_symptom
from pv_twin.agents.diagnosis.root_cause import RootCauseAnalyzerAgent, merge_causes
from pv_twin.domain.errors import (
    AnalysisInProgressError, AnalysisNotFoundError, AnomalyNotFoundError, StateTransitionError
)
from pv_twin.domain.events import RootCauseEvent
from pv_twin.domain.models import (
    ActionPriority, AnomalyStatus, AnomalyType, GapCause, GapCauseCategory, InvestigationStatus,
    NodeHealth, PerformanceGap, ProbableCause, Severity
)
from tests.helpers import NOON, make_anomaly, make_config, string_plant_payload


class TestRootCauseAnalyzer(unittest.TestCase):
    def setUp(self):
        self.store = InMemoryTwinStore()
        self.bus = MagicMock()
        self.agent = RootCauseAnalyzerAgent("RootCause", self.bus, self.store, self.store,
                                            config={"clock": lambda: NOON + timedelta(hours=2)})
        self.anomaly = make_anomaly(metadata={"z_score": 3.2})
        self.store.save_anomaly(self.anomaly)

    def test_moderate_drop_points_to_soiling(self):
        analysis = self.agent.analyze_root_cause(self.anomaly.anomaly_id)

        self.assertEqual(analysis.investigation_status, InvestigationStatus.IN_PROGRESS)
        top = analysis.probable_causes[0]
        self.assertEqual(top.cause, "Soiling on modules")
        self.assertEqual(top.confidence, 0.75)
        # 6000 W for one 15-minute sample
        self.assertAlmostEqual(top.estimated_impact_kwh, 1.5)
        confidences = [c.confidence for c in analysis.probable_causes]
        self.assertEqual(confidences, sorted(confidences, reverse=True))

        stored = self.store.get_anomaly(self.anomaly.anomaly_id)
        self.assertEqual(stored.status, AnomalyStatus.INVESTIGATING)
        self.assertEqual(stored.root_cause_id, analysis.analysis_id)
        self.assertIsInstance(self.bus.publish.call_args[0][0], RootCauseEvent)

    def test_sharp_drop_points_to_inverter_trip(self):
        sharp = make_anomaly(metadata={"z_score": 5.0})
        self.store.save_anomaly(sharp)
        analysis = self.agent.analyze_root_cause(sharp.anomaly_id)
        names = {c.cause: c.confidence for c in analysis.probable_causes}
        self.assertAlmostEqual(names["Inverter trip or string disconnection"], 0.6)
        self.assertEqual(names["Soiling on modules"], 0.7)

    def test_completion_requires_resolution_fields(self):
        self.agent.analyze_root_cause(self.anomaly.anomaly_id)

        with self.assertRaises(StateTransitionError):
            self.agent.complete_investigation(self.anomaly.anomaly_id, "  ", "Soiling", "Clean monthly")
        self.assertEqual(self.store.get_analysis_for_anomaly(self.anomaly.anomaly_id).investigation_status,
                         InvestigationStatus.IN_PROGRESS)

        done = self.agent.complete_investigation(self.anomaly.anomaly_id, "Modules cleaned",
                                                 "Dust after sandstorm", "Clean after storms")
        self.assertEqual(done.investigation_status, InvestigationStatus.COMPLETED)
        self.assertEqual(done.completed_at, NOON + timedelta(hours=2))
        self.assertEqual(self.store.get_anomaly(self.anomaly.anomaly_id).status, AnomalyStatus.RESOLVED)

    def test_completed_analysis_is_returned_unchanged(self):
        self.agent.analyze_root_cause(self.anomaly.anomaly_id)
        done = self.agent.complete_investigation(self.anomaly.anomaly_id, "a", "b", "c")

        again = self.agent.analyze_root_cause(self.anomaly.anomaly_id)

        self.assertEqual(again.analysis_id, done.analysis_id)
        self.assertEqual(again.investigation_status, InvestigationStatus.COMPLETED)
        self.assertEqual(again.actual_cause, "b")

    def test_reanalysis_keeps_analysis_id(self):
        first = self.agent.analyze_root_cause(self.anomaly.anomaly_id)
        second = self.agent.analyze_root_cause(self.anomaly.anomaly_id)
        self.assertEqual(first.analysis_id, second.analysis_id)
        self.assertEqual(len(self.store.list_analyses()), 1)

    def test_concurrent_analysis_is_rejected(self):
        lock = self.agent._lock_for(self.anomaly.anomaly_id)
        lock.acquire()
        try:
            with self.assertRaises(AnalysisInProgressError) as ctx:
                self.agent.analyze_root_cause(self.anomaly.anomaly_id)
            self.assertTrue(ctx.exception.retryable)
        finally:
            lock.release()
        self.assertIsNone(self.store.get_analysis_for_anomaly(self.anomaly.anomaly_id))

    def test_missing_records(self):
        with self.assertRaises(AnomalyNotFoundError):
            self.agent.analyze_root_cause("missing")
        with self.assertRaises(AnalysisNotFoundError):
            self.agent.complete_investigation(self.anomaly.anomaly_id, "a", "b", "c")

    def test_correlated_gap_causes_are_merged(self):
        self.store.upsert_gap(PerformanceGap(
            "plant-a", NOON + timedelta(minutes=30), 70.0, 100.0, -30.0, -30.0,
            probable_causes=[GapCause("Soiling or shading", GapCauseCategory.SEVERE_UNDERPERFORMANCE, 0.7, 30.0)]
        ))
        analysis = self.agent.analyze_root_cause(self.anomaly.anomaly_id)
        gap_cause = [c for c in analysis.probable_causes if c.cause == "Soiling or shading"][0]
        self.assertEqual(gap_cause.estimated_impact_kwh, 30.0)
        self.assertIn("-30.0%", gap_cause.evidence)

    def test_offline_adds_upstream_components_and_critical_action(self):
        offline = make_anomaly(anomaly_type=AnomalyType.OFFLINE, severity=Severity.CRITICAL,
                               expected_value=8000.0, actual_value=0.0, metadata={"samples": 4})
        self.store.save_anomaly(offline)

        analysis = self.agent.analyze_root_cause(offline.anomaly_id)

        names = {c.cause: c for c in analysis.probable_causes}
        self.assertEqual(analysis.probable_causes[0].cause, "Breaker open or grid failure")
        self.assertAlmostEqual(names["Breaker open or grid failure"].estimated_impact_kwh, 8.0)
        self.assertAlmostEqual(names["Upstream fault in strings"].confidence, 0.24)
        self.assertNotIn("Upstream fault in inverter", names)
        self.assertNotIn("Upstream fault in weather", names)
        self.assertEqual(analysis.recommended_actions[0].priority, ActionPriority.CRITICAL)
        self.assertEqual(analysis.dependency_graph.nodes["grid"].health, NodeHealth.FAILED)


class TestDependencyGraph(unittest.TestCase):
    def test_components_from_config(self):
        graph = build_dependency_graph(make_config(string_plant_payload()))
        self.assertIn("string:S1", graph.nodes)
        self.assertIn("inverter:INV-2", graph.nodes)
        self.assertIn("string:S3", graph.upstream_of("inverter:INV-2"))

    def test_symptom_health(self):
        graph = build_dependency_graph()
        node = mark_symptom(graph, AnomalyType.DATA_GAP, Severity.MEDIUM)
        self.assertEqual(node, "monitoring")
        self.assertEqual(graph.nodes["monitoring"].health, NodeHealth.DEGRADED)
        self.assertIn("inverter", graph.upstream_of("monitoring"))


class TestMergeCauses(unittest.TestCase):
    def test_highest_confidence_wins_and_evidence_joins(self):
        merged = merge_causes([
            ProbableCause("Soiling on modules", 0.7, "template", 2.0),
            ProbableCause("Soiling on modules", 0.75, "z-score", 1.0),
            ProbableCause("Abnormal shading", 0.5, "hours", 1.0),
        ])
        self.assertEqual([c.cause for c in merged], ["Soiling on modules", "Abnormal shading"])
        self.assertEqual(merged[0].confidence, 0.75)
        self.assertEqual(merged[0].evidence, "z-score; template")
        self.assertEqual(merged[0].estimated_impact_kwh, 2.0)


if __name__ == "__main__":
    unittest.main()
