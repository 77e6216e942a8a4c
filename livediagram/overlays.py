"""Fault cascade detection and traffic heatmap construction."""

from __future__ import annotations

from typing import Dict, List

from livediagram.model import (
    HEALTH_CRITICAL,
    HEALTH_WARNING,
    SEVERITY_CRITICAL,
    EdgeMetrics,
    FaultImpact,
    HeatmapCell,
    LiveNode,
    TrafficHeatmap,
)
from livediagram.topology import Topology


def build_fault_impacts(topology: Topology, nodes: List[LiveNode]) -> List[FaultImpact]:
    """
    One impact per critical node, covering its direct neighbours only.

    The ripple radius is 2 when the worst neighbour is a warning and 3
    otherwise (a critical neighbour, or only healthy ones).
    """
    health = {n.id: n.health for n in nodes}
    impacts: List[FaultImpact] = []

    for node in nodes:
        if node.health != HEALTH_CRITICAL:
            continue
        edge_ids: List[str] = []
        neighbour_ids: List[str] = []
        for edge in topology.edges:
            if not edge.touches(node.id):
                continue
            edge_ids.append(edge.id)
            peer = edge.peer_of(node.id)
            if peer != node.id and peer not in neighbour_ids:
                neighbour_ids.append(peer)

        neighbour_health = [health.get(n) for n in neighbour_ids]
        if HEALTH_CRITICAL in neighbour_health:
            radius = 3
        elif HEALTH_WARNING in neighbour_health:
            radius = 2
        else:
            radius = 3

        impacts.append(FaultImpact(
            source_node_id=node.id,
            severity=SEVERITY_CRITICAL,
            affected_node_ids=neighbour_ids,
            affected_edge_ids=edge_ids,
            ripple_radius=radius,
        ))
    return impacts


def build_traffic_heatmap(
    topology: Topology,
    edge_metrics: Dict[str, EdgeMetrics],
    max_throughput_bps: float,
) -> TrafficHeatmap:
    """Cells for every edge with a resolved throughput, normalized by the shared denominator."""
    denominator = max(1.0, max_throughput_bps)
    cells: List[HeatmapCell] = []
    subnets: List[str] = []

    for edge in topology.edges:
        metrics = edge_metrics.get(edge.id)
        if metrics is None or metrics.throughput_bps is None:
            continue
        value = metrics.throughput_bps
        cells.append(HeatmapCell(
            source=edge.source,
            target=edge.target,
            value=value,
            normalized_value=round(min(1.0, max(0.0, value / denominator)), 3),
        ))
        for node_id in (edge.source, edge.target):
            if node_id not in subnets:
                subnets.append(node_id)

    return TrafficHeatmap(cells=cells, subnets=subnets, max_value=denominator)
