"""Merge per-source partial results into one metric set per node and edge."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional

from livediagram.model import EdgeMetrics
from livediagram.telemetry.base import MetricMap, PartialMetrics
from livediagram.topology import SOURCE_APP_INSIGHTS, SOURCE_MONITOR, Topology

logger = logging.getLogger(__name__)

SOURCE_TRAFFIC_ANALYTICS = "trafficAnalytics"
SOURCE_FLOW_LOGS = "flowLogs"
SOURCE_DEPENDENCIES = "dependencies"
SOURCE_CONNECTION_MONITOR = "connectionMonitor"


@dataclass
class MergeResult:
    node_metrics: Dict[str, MetricMap] = field(default_factory=dict)
    edge_metrics: Dict[str, EdgeMetrics] = field(default_factory=dict)
    resolved_bindings: int = 0
    failed_bindings: int = 0
    attempted_bindings: int = 0


def _number(value) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def merge_partials(topology: Topology, partials: Iterable[PartialMetrics]) -> MergeResult:
    """
    Combine source results under fixed precedence.

    Binding values (platform metrics, then application telemetry on top) are
    authoritative. Auxiliary edge signals only fill fields that are still
    empty, in this order: flow data (flow analytics before raw flow logs),
    dependency calls, active probes. The outcome does not depend on the order
    in which sources finished.
    """
    by_source: Dict[str, PartialMetrics] = {}
    result = MergeResult()
    for partial in partials:
        by_source[partial.source] = partial
        result.failed_bindings += partial.failed
        result.attempted_bindings += partial.attempted

    def _partial(name: str) -> PartialMetrics:
        return by_source.get(name) or PartialMetrics(source=name)

    binding_sources = [_partial(SOURCE_MONITOR), _partial(SOURCE_APP_INSIGHTS)]
    traffic = _partial(SOURCE_TRAFFIC_ANALYTICS)
    flow_logs = _partial(SOURCE_FLOW_LOGS)
    dependencies = _partial(SOURCE_DEPENDENCIES)
    probes = _partial(SOURCE_CONNECTION_MONITOR)

    for node in topology.nodes:
        values: MetricMap = {name: None for name in node.metric_names()}
        for partial in binding_sources:
            for name, value in partial.node_metrics.get(node.id, {}).items():
                number = _number(value)
                if name in values and number is not None:
                    values[name] = number
                    result.resolved_bindings += 1
        result.node_metrics[node.id] = values

    for edge in topology.edges:
        merged: Dict[str, float] = {}
        for partial in binding_sources:
            for name, value in partial.edge_metrics.get(edge.id, {}).items():
                number = _number(value)
                if number is not None:
                    merged[name] = number
                    result.resolved_bindings += 1

        metrics = EdgeMetrics(
            throughput_bps=merged.get("throughput"),
            latency_ms=merged.get("latency"),
            error_rate=merged.get("errorRate"),
            requests_per_sec=merged["rps"] if "rps" in merged else merged.get("requestsPerSec"),
        )

        flow = traffic.flows.get(edge.id) or flow_logs.flows.get(edge.id)
        if flow is not None:
            if metrics.throughput_bps is None and flow.throughput_bps > 0:
                metrics.throughput_bps = float(flow.throughput_bps)
            result.resolved_bindings += 1

        dep = dependencies.dependencies.get(edge.id)
        if dep is not None:
            if metrics.requests_per_sec is None and dep.requests_per_sec > 0:
                metrics.requests_per_sec = dep.requests_per_sec
            if metrics.latency_ms is None and dep.avg_duration_ms > 0:
                metrics.latency_ms = dep.avg_duration_ms
            if metrics.error_rate is None and dep.success_rate < 100:
                metrics.error_rate = round(100 - dep.success_rate, 2)
            result.resolved_bindings += 1

        probe = probes.probes.get(edge.id)
        if probe is not None:
            if metrics.latency_ms is None and probe.avg_latency_ms > 0:
                metrics.latency_ms = probe.avg_latency_ms
            result.resolved_bindings += 1

        result.edge_metrics[edge.id] = metrics

    return result
