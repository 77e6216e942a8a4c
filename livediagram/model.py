"""Live snapshot types: the per-cycle materialization of a topology."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

HEALTH_OK = "ok"
HEALTH_WARNING = "warning"
HEALTH_CRITICAL = "critical"
HEALTH_UNKNOWN = "unknown"

EDGE_NORMAL = "normal"
EDGE_DEGRADED = "degraded"
EDGE_DOWN = "down"
EDGE_IDLE = "idle"

TRAFFIC_NONE = "none"
TRAFFIC_LOW = "low"
TRAFFIC_MEDIUM = "medium"
TRAFFIC_HIGH = "high"
TRAFFIC_BURST = "burst"

SEVERITY_CRITICAL = "critical"
SEVERITY_WARNING = "warning"
SEVERITY_INFO = "info"


@dataclass
class SparklineData:
    metric: str
    values: List[float] = field(default_factory=list)
    timestamps: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"values": list(self.values), "timestamps": list(self.timestamps), "metric": self.metric}


@dataclass
class LiveNode:
    id: str
    health: str
    health_score: float
    metrics: Dict[str, Optional[float]] = field(default_factory=dict)
    active_alert_ids: List[str] = field(default_factory=list)
    sparkline: Optional[List[float]] = None
    sparklines: Dict[str, SparklineData] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "id": self.id,
            "health": self.health,
            "healthScore": self.health_score,
            "metrics": dict(self.metrics),
            "activeAlertIds": list(self.active_alert_ids),
        }
        if self.sparkline is not None:
            out["sparkline"] = list(self.sparkline)
        if self.sparklines:
            out["sparklines"] = {k: v.to_dict() for k, v in self.sparklines.items()}
        return out


@dataclass
class EdgeMetrics:
    throughput_bps: Optional[float] = None
    latency_ms: Optional[float] = None
    error_rate: Optional[float] = None
    requests_per_sec: Optional[float] = None

    def is_empty(self) -> bool:
        return (
            self.throughput_bps is None
            and self.latency_ms is None
            and self.error_rate is None
            and self.requests_per_sec is None
        )

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        if self.throughput_bps is not None:
            out["throughputBps"] = self.throughput_bps
        if self.latency_ms is not None:
            out["latencyMs"] = self.latency_ms
        if self.error_rate is not None:
            out["errorRate"] = self.error_rate
        if self.requests_per_sec is not None:
            out["requestsPerSec"] = self.requests_per_sec
        return out


@dataclass
class LiveEdge:
    id: str
    status: str
    metrics: EdgeMetrics
    traffic_level: str
    active_alert_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status,
            "metrics": self.metrics.to_dict(),
            "trafficLevel": self.traffic_level,
            "activeAlertIds": list(self.active_alert_ids),
        }


@dataclass
class LiveAlert:
    id: str
    severity: str
    title: str
    resource_id: str
    fired_at: str
    summary: str
    root_cause_candidates: List[str] = field(default_factory=list)
    affected_node_ids: List[str] = field(default_factory=list)
    affected_edge_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "severity": self.severity,
            "title": self.title,
            "resourceId": self.resource_id,
            "firedAt": self.fired_at,
            "summary": self.summary,
            "rootCauseCandidates": list(self.root_cause_candidates),
            "affectedNodeIds": list(self.affected_node_ids),
            "affectedEdgeIds": list(self.affected_edge_ids),
        }


@dataclass
class FaultImpact:
    source_node_id: str
    severity: str
    affected_node_ids: List[str]
    affected_edge_ids: List[str]
    ripple_radius: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sourceNodeId": self.source_node_id,
            "severity": self.severity,
            "affectedNodeIds": list(self.affected_node_ids),
            "affectedEdgeIds": list(self.affected_edge_ids),
            "rippleRadius": self.ripple_radius,
        }


@dataclass
class HeatmapCell:
    source: str
    target: str
    value: float
    normalized_value: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "target": self.target,
            "value": self.value,
            "normalizedValue": self.normalized_value,
        }


@dataclass
class TrafficHeatmap:
    cells: List[HeatmapCell] = field(default_factory=list)
    subnets: List[str] = field(default_factory=list)
    max_value: float = 1.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cells": [c.to_dict() for c in self.cells],
            "subnets": list(self.subnets),
            "maxValue": self.max_value,
        }


@dataclass
class TopologyStats:
    node_count: int = 0
    edge_count: int = 0
    resolved_bindings: int = 0
    failed_bindings: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nodeCount": self.node_count,
            "edgeCount": self.edge_count,
            "resolvedBindings": self.resolved_bindings,
            "failedBindings": self.failed_bindings,
        }


@dataclass
class Snapshot:
    diagram_id: str
    generated_at: str
    refresh_interval_sec: int
    nodes: List[LiveNode] = field(default_factory=list)
    edges: List[LiveEdge] = field(default_factory=list)
    alerts: List[LiveAlert] = field(default_factory=list)
    topology: TopologyStats = field(default_factory=TopologyStats)
    fault_impacts: List[FaultImpact] = field(default_factory=list)
    heatmap: Optional[TrafficHeatmap] = None

    def node(self, node_id: str) -> Optional[LiveNode]:
        for n in self.nodes:
            if n.id == node_id:
                return n
        return None

    def edge(self, edge_id: str) -> Optional[LiveEdge]:
        for e in self.edges:
            if e.id == edge_id:
                return e
        return None

    def to_dict(self) -> Dict[str, Any]:
        """JSON-serializable form; optional overlays are omitted when empty."""
        out: Dict[str, Any] = {
            "diagramId": self.diagram_id,
            "generatedAt": self.generated_at,
            "refreshIntervalSec": self.refresh_interval_sec,
            "nodes": [n.to_dict() for n in self.nodes],
            "edges": [e.to_dict() for e in self.edges],
            "alerts": [a.to_dict() for a in self.alerts],
            "topology": self.topology.to_dict(),
        }
        if self.fault_impacts:
            out["faultImpacts"] = [f.to_dict() for f in self.fault_impacts]
        if self.heatmap is not None and self.heatmap.cells:
            out["heatmap"] = self.heatmap.to_dict()
        return out
