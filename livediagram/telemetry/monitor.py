"""Platform metrics (``monitor`` bindings) for nodes and edges."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from livediagram.errors import SourceUnavailable
from livediagram.telemetry.base import Collector, MetricMap, PartialMetrics, binding_signature
from livediagram.telemetry.pool import run_worker_pool
from livediagram.topology import SOURCE_MONITOR, MetricBinding, Topology

logger = logging.getLogger(__name__)

METRICS_API_VERSION = "2024-02-01"
TIMESPAN = "PT5M"
INTERVAL = "PT1M"

MONITOR_AGGREGATIONS = {
	"avg": "Average",
	"max": "Maximum",
	"min": "Minimum",
	"total": "Total",
	"count": "Count",
	"rate": "Count",
}

# Data-point field read for each declared aggregation
_POINT_FIELD = {
	"avg": "average",
	"p50": "average",
	"p95": "average",
	"max": "maximum",
	"p99": "maximum",
	"min": "minimum",
	"total": "total",
	"count": "count",
}


def timeseries_by_metric(body: Any) -> Dict[str, List[Dict[str, Any]]]:
	"""metric name -> data points of its first timeseries."""
	if not isinstance(body, dict):
		raise SourceUnavailable("metrics response is not an object")
	series: Dict[str, List[Dict[str, Any]]] = {}
	for metric in body.get("value") or []:
		name = (metric.get("name") or {}).get("value")
		if not name:
			continue
		timeseries = metric.get("timeseries") or []
		series[name] = (timeseries[0].get("data") or []) if timeseries else []
	return series


def pick_last_point(
	points: List[Dict[str, Any]],
	aggregation: str,
	rate_requires_count: bool = True,
) -> Optional[float]:
	"""
	Read the aggregation off the most recent data point.

	``rate`` is derived from the per-minute count. With ``rate_requires_count``
	a zero count yields None instead of a rate of 0.
	"""
	if not points:
		return None
	last = points[-1]
	if aggregation == "rate":
		count = last.get("count")
		if count is None:
			return None
		if rate_requires_count and count <= 0:
			return None
		return count / 60
	value = last.get(_POINT_FIELD.get(aggregation, "average"))
	return float(value) if value is not None else None


@dataclass
class MetricTarget:
	"""One metrics request: a resource and the bindings resolved against it."""
	kind: str  # node | edge
	owner_id: str
	resource_ref: str
	bindings: List[Tuple[str, MetricBinding]] = field(default_factory=list)


class MonitorCollector(Collector):
	"""
	Resolves ``monitor`` bindings against the platform metrics API.

	Node bindings use the node's own resource; edge bindings use the edge's
	source node. One request per target, fanned out over a bounded worker
	pool. A failing target marks only its own bindings as failed.
	"""

	source = SOURCE_MONITOR
	identity_bound = True

	def default_ttl(self) -> float:
		return self.settings.metrics_cache_ttl_s

	def targets(self, topology: Topology) -> List[MetricTarget]:
		out: List[MetricTarget] = []
		for node in topology.nodes:
			bindings = [(n, b) for n, b in node.bindings.items() if b.source == SOURCE_MONITOR and b.metric]
			if node.resource_ref and bindings:
				out.append(MetricTarget("node", node.id, node.resource_ref, bindings))
		for edge in topology.edges:
			bindings = [(n, b) for n, b in edge.bindings.items() if b.source == SOURCE_MONITOR and b.metric]
			source_node = topology.node(edge.source)
			if source_node and source_node.resource_ref and bindings:
				out.append(MetricTarget("edge", edge.id, source_node.resource_ref, bindings))
		return out

	def attempted_scope(self, topology: Topology) -> int:
		return sum(len(t.bindings) for t in self.targets(topology))

	def gather(self, topology: Topology, identity: Optional[str]) -> PartialMetrics:
		targets = self.targets(topology)
		results = run_worker_pool(
			targets,
			lambda t: self.fetch_target(t, identity),
			concurrency=self.settings.metrics_concurrency,
			name="monitor",
		)

		partial = PartialMetrics(source=self.source)
		for result in results:
			target = result.item
			if result.ok:
				values = result.value
			else:
				logger.warning(f"Metrics request failed for {target.resource_ref}: {result.error}")
				partial.failed += len(target.bindings)
				values = {}
			bucket = partial.node_metrics if target.kind == "node" else partial.edge_metrics
			bucket.setdefault(target.owner_id, {}).update(values)
		return partial

	def fetch_target(self, target: MetricTarget, identity: Optional[str]) -> MetricMap:
		key = f"{self.cache_prefix(identity)}:{target.resource_ref.lower()}:{binding_signature(target.bindings)}"
		cached = self.cache.get(key)
		if cached is not None:
			logger.debug(f"Metrics cache hit for {target.resource_ref}")
			return dict(cached)

		metric_names = list(dict.fromkeys(b.metric for _, b in target.bindings))
		aggregations = list(dict.fromkeys(
			MONITOR_AGGREGATIONS.get(b.aggregation, "Average") for _, b in target.bindings
		))
		body = self.client.get_json(
			self.client.arm_url(f"{target.resource_ref}/providers/microsoft.insights/metrics"),
			identity,
			params={
				"api-version": METRICS_API_VERSION,
				"metricnames": ",".join(metric_names),
				"timespan": TIMESPAN,
				"interval": INTERVAL,
				"aggregation": ",".join(aggregations),
			},
		)
		series = timeseries_by_metric(body)
		values: MetricMap = {
			name: pick_last_point(series.get(b.metric, []), b.aggregation)
			for name, b in target.bindings
		}
		self.cache.set(key, values)
		return dict(values)
