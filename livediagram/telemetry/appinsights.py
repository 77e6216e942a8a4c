"""Application telemetry metrics for ``appInsights`` edge bindings."""

from __future__ import annotations

import logging
from typing import List, Optional

from livediagram.errors import ConfigurationMissing
from livediagram.telemetry.base import Collector, MetricMap, PartialMetrics, binding_signature
from livediagram.telemetry.monitor import (
	INTERVAL,
	METRICS_API_VERSION,
	TIMESPAN,
	MetricTarget,
	pick_last_point,
	timeseries_by_metric,
)
from livediagram.telemetry.pool import run_worker_pool
from livediagram.topology import SOURCE_APP_INSIGHTS, Topology, resource_group_of

logger = logging.getLogger(__name__)

# The component metrics API has no percentiles; p50/p95 read the average, p99 the maximum
APP_INSIGHTS_AGGREGATIONS = {
	"avg": "avg",
	"max": "max",
	"min": "min",
	"total": "sum",
	"count": "count",
	"rate": "count",
	"p50": "avg",
	"p95": "avg",
	"p99": "max",
}


def component_id_for(resource_ref: Optional[str], component_name: Optional[str]) -> Optional[str]:
	"""Telemetry component id in the resource group of ``resource_ref``."""
	if not component_name:
		return None
	scope = resource_group_of(resource_ref)
	if scope is None:
		return None
	subscription, resource_group = scope
	return (
		f"/subscriptions/{subscription}/resourceGroups/{resource_group}"
		f"/providers/microsoft.insights/components/{component_name}"
	)


class AppInsightsCollector(Collector):
	"""Resolves ``appInsights`` edge bindings against the edge source node's component."""

	source = SOURCE_APP_INSIGHTS
	identity_bound = True

	def default_ttl(self) -> float:
		return self.settings.app_insights_cache_ttl_s

	def ensure_configured(self, topology: Topology, identity: Optional[str]) -> None:
		if not self.settings.app_insights_app_id:
			raise ConfigurationMissing("AZURE_APP_INSIGHTS_APP_ID is not set")
		super().ensure_configured(topology, identity)

	def targets(self, topology: Topology) -> List[MetricTarget]:
		out: List[MetricTarget] = []
		for edge in topology.edges:
			bindings = [
				(n, b) for n, b in edge.bindings.items()
				if b.source == SOURCE_APP_INSIGHTS and b.metric
			]
			if not bindings:
				continue
			source_node = topology.node(edge.source)
			component = component_id_for(
				source_node.resource_ref if source_node else None,
				self.settings.app_insights_app_id,
			)
			if component is None:
				logger.debug(f"No telemetry component resolvable for edge {edge.id}")
				continue
			out.append(MetricTarget("edge", edge.id, component, bindings))
		return out

	def attempted_scope(self, topology: Topology) -> int:
		return sum(len(t.bindings) for t in self.targets(topology))

	def gather(self, topology: Topology, identity: Optional[str]) -> PartialMetrics:
		results = run_worker_pool(
			self.targets(topology),
			lambda t: self.fetch_target(t, identity),
			concurrency=self.settings.metrics_concurrency,
			name="appinsights",
		)
		partial = PartialMetrics(source=self.source)
		for result in results:
			target = result.item
			if result.ok:
				partial.edge_metrics.setdefault(target.owner_id, {}).update(result.value)
			else:
				logger.warning(f"Application telemetry request failed for edge {target.owner_id}: {result.error}")
				partial.failed += len(target.bindings)
				partial.edge_metrics.setdefault(target.owner_id, {})
		return partial

	def fetch_target(self, target: MetricTarget, identity: Optional[str]) -> MetricMap:
		key = f"{self.cache_prefix(identity)}:{target.resource_ref.lower()}:{binding_signature(target.bindings)}"
		cached = self.cache.get(key)
		if cached is not None:
			return dict(cached)

		metric_names = list(dict.fromkeys(b.metric for _, b in target.bindings))
		aggregations = list(dict.fromkeys(
			APP_INSIGHTS_AGGREGATIONS.get(b.aggregation, "avg") for _, b in target.bindings
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
			name: pick_last_point(series.get(b.metric, []), b.aggregation, rate_requires_count=False)
			for name, b in target.bindings
		}
		self.cache.set(key, values)
		return dict(values)
