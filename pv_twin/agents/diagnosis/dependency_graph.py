"""
Dependency Graph Builder - PV Digital Twin Platform

Energy-flow graph of a plant: modules -> strings -> inverter -> grid, plus
the external weather input and the monitoring chain. Used by root cause
analysis to find upstream components that can cascade into a symptom.
"""
from typing import Optional

from pv_twin.domain.models import (
    AnomalyType, DependencyGraph, DigitalTwinConfig, EdgeRelation, GraphEdge, GraphNode,
    NodeHealth, NodeKind, Severity
)

# Node where each anomaly type shows up first
SYMPTOM_NODE = {
    AnomalyType.GENERATION_DROP: "inverter",
    AnomalyType.EFFICIENCY_DROP: "inverter",
    AnomalyType.UNDERPERFORMANCE: "inverter",
    AnomalyType.OFFLINE: "grid",
    AnomalyType.DATA_GAP: "monitoring",
    AnomalyType.UNEXPECTED_SPIKE: "modules",
    AnomalyType.OVERPERFORMANCE: "modules",
}


def build_dependency_graph(config: Optional[DigitalTwinConfig] = None) -> DependencyGraph:
    graph = DependencyGraph()
    graph.add_node(GraphNode("weather", NodeKind.EXTERNAL))
    graph.add_node(GraphNode("modules", NodeKind.COMPONENT))
    graph.add_node(GraphNode("strings", NodeKind.COMPONENT))
    graph.add_node(GraphNode("inverter", NodeKind.COMPONENT))
    graph.add_node(GraphNode("grid", NodeKind.EXTERNAL))
    graph.add_node(GraphNode("monitoring", NodeKind.SUBSYSTEM))

    graph.add_edge(GraphEdge("weather", "modules", EdgeRelation.AFFECTS))
    graph.add_edge(GraphEdge("modules", "strings", EdgeRelation.CASCADES_TO))
    graph.add_edge(GraphEdge("strings", "inverter", EdgeRelation.CASCADES_TO))
    graph.add_edge(GraphEdge("inverter", "grid", EdgeRelation.CASCADES_TO))
    graph.add_edge(GraphEdge("monitoring", "inverter", EdgeRelation.DEPENDS_ON))

    # Concrete components hang off their subsystem when the config lists them
    if config is not None:
        for inverter in config.inverters:
            node_id = f"inverter:{inverter.inverter_id}"
            graph.add_node(GraphNode(node_id, NodeKind.COMPONENT))
            graph.add_edge(GraphEdge(node_id, "inverter", EdgeRelation.AFFECTS))
        for string in config.strings:
            node_id = f"string:{string.string_id}"
            graph.add_node(GraphNode(node_id, NodeKind.COMPONENT))
            graph.add_edge(GraphEdge("modules", node_id, EdgeRelation.CASCADES_TO))
            graph.add_edge(GraphEdge(node_id, f"inverter:{string.inverter_id}", EdgeRelation.CASCADES_TO))
    return graph


def mark_symptom(graph: DependencyGraph, anomaly_type: AnomalyType, severity: Severity) -> str:
    """Set the symptom node's health from the anomaly severity; return its id."""
    node_id = SYMPTOM_NODE.get(anomaly_type, "inverter")
    failed = anomaly_type == AnomalyType.OFFLINE or severity == Severity.CRITICAL
    graph.set_health(node_id, NodeHealth.FAILED if failed else NodeHealth.DEGRADED)
    return node_id
