"""Edge request rate, latency and success rate from the dependency-call graph."""

from __future__ import annotations

import logging
from typing import Dict, Optional

from livediagram.errors import ConfigurationMissing
from livediagram.telemetry.appinsights import component_id_for
from livediagram.telemetry.base import Collector, DependencyStats, PartialMetrics, as_number, as_text
from livediagram.topology import Topology, resource_name_of

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 300

DEPENDENCY_QUERY = """dependencies
| where timestamp > ago(5m)
| summarize
    callCount = count(),
    failedCount = countif(success == false),
    avgDurationMs = avg(duration),
    p95DurationMs = percentile(duration, 95)
  by target, type, cloud_RoleName
| top 100 by callCount desc"""

SERVICE_SUFFIXES = (
    ".database.windows.net",
    ".redis.cache.windows.net",
    ".documents.azure.com",
    ".postgres.database.azure.com",
    ".servicebus.windows.net",
    ".blob.core.windows.net",
    ".azurewebsites.net",
    ".azurecontainerapps.io",
)


def node_name_index(topology: Topology) -> Dict[str, str]:
    """Lower-cased label, resource name and id of every node -> node id."""
    index: Dict[str, str] = {}
    for node in topology.nodes:
        index[node.label.lower()] = node.id
        name = resource_name_of(node.resource_ref)
        if name:
            index[name] = node.id
        index[node.id.lower()] = node.id
    return index


def resolve_name(name: str, index: Dict[str, str]) -> Optional[str]:
    """Exact match, then with a known service suffix stripped, then substring containment."""
    if not name:
        return None
    lower = name.lower()
    if lower in index:
        return index[lower]

    stripped = lower
    for suffix in SERVICE_SUFFIXES:
        if stripped.endswith(suffix):
            stripped = stripped[: -len(suffix)]
    if stripped in index:
        return index[stripped]

    for candidate, node_id in index.items():
        if candidate and (candidate in lower or lower in candidate):
            return node_id
    return None


def _success_rate(calls: float, failed: float) -> float:
    if calls <= 0:
        return 100.0
    return round((1 - failed / calls) * 10000) / 100


class DependencyCollector(Collector):
    """Maps caller role -> dependency target rows onto edges (either direction)."""

    source = "dependencies"

    def default_ttl(self) -> float:
        return self.settings.app_insights_cache_ttl_s

    def component(self, topology: Topology) -> Optional[str]:
        for node in topology.nodes:
            component = component_id_for(node.resource_ref, self.settings.app_insights_app_id)
            if component:
                return component
        return None

    def ensure_configured(self, topology: Topology, identity: Optional[str]) -> None:
        if not self.settings.app_insights_app_id:
            raise ConfigurationMissing("AZURE_APP_INSIGHTS_APP_ID is not set")
        if self.component(topology) is None:
            raise ConfigurationMissing(f"no telemetry component resolvable for diagram {topology.id}")

    def attempted_scope(self, topology: Topology) -> int:
        return len(topology.edges)

    def gather(self, topology: Topology, identity: Optional[str]) -> PartialMetrics:
        component = self.component(topology)
        edge_ids = ",".join(sorted(e.id for e in topology.edges))
        key = f"{self.cache_prefix(identity)}:{component.lower()}:{topology.id}:{edge_ids}"
        cached = self.cache.get(key)
        if cached is None:
            rows = self.client.query_app_insights(component, DEPENDENCY_QUERY, identity)
            cached = self._map_rows(rows, topology)
            self.cache.set(key, cached)
        return PartialMetrics(source=self.source, dependencies=dict(cached))

    def _map_rows(self, rows, topology: Topology) -> Dict[str, DependencyStats]:
        index = node_name_index(topology)
        edge_lookup = topology.edge_lookup()
        stats: Dict[str, DependencyStats] = {}

        for row in rows:
            caller = resolve_name(as_text(row.get("cloud_RoleName")), index)
            target = resolve_name(as_text(row.get("target")), index)
            if not caller or not target or caller == target:
                continue
            edge_id = edge_lookup.get((caller, target))
            if not edge_id:
                continue

            calls = as_number(row.get("callCount"))
            failed = as_number(row.get("failedCount"))
            duration = as_number(row.get("avgDurationMs"))
            existing = stats.get(edge_id)
            if existing is None:
                stats[edge_id] = DependencyStats(
                    edge_id=edge_id,
                    call_count=calls,
                    failed_count=failed,
                    avg_duration_ms=duration,
                    success_rate=_success_rate(calls, failed),
                    requests_per_sec=calls / WINDOW_SECONDS,
                )
                continue
            existing.call_count += calls
            existing.failed_count += failed
            existing.avg_duration_ms = (existing.avg_duration_ms + duration) / 2
            existing.success_rate = _success_rate(existing.call_count, existing.failed_count)
            existing.requests_per_sec = existing.call_count / WINDOW_SECONDS

        return stats
