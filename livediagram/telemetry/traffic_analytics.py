"""Edge throughput from flow analytics in a Log Analytics workspace."""

from __future__ import annotations

import logging
import re
from typing import Dict, Optional

from livediagram.errors import ConfigurationMissing, SourceUnavailable
from livediagram.telemetry.base import Collector, EdgeFlow, PartialMetrics, as_number, as_text
from livediagram.topology import Topology, resource_name_of, subnet_name_of

logger = logging.getLogger(__name__)

LOOKBACK_SECONDS = 300

_FLOW_SUMMARY = """| where SubType == "FlowLog" and TimeGenerated > ago(5m)
| where isnotempty({src}) and isnotempty({dst})
| extend TotalBytes = tolong(coalesce(BytesSrcToDest, 0)) + tolong(coalesce(BytesDestToSrc, 0))
| summarize
    TotalBytes=sum(TotalBytes),
    AllowedFlows=sum(tolong(coalesce(AllowedInFlows, 0)) + tolong(coalesce(AllowedOutFlows, 0))),
    DeniedFlows=sum(tolong(coalesce(DeniedInFlows, 0)) + tolong(coalesce(DeniedOutFlows, 0)))
  by {src}, {dst}
| top {limit} by TotalBytes desc"""


def subnet_pair_query(table: str) -> str:
    return f"{table}\n" + _FLOW_SUMMARY.format(src="SrcSubnet", dst="DestSubnet", limit=50)


def ip_pair_query(table: str) -> str:
    return f"{table}\n" + _FLOW_SUMMARY.format(src="SrcIp", dst="DestIp", limit=100)


class _FlowTotals:
    __slots__ = ("total_bytes", "allowed", "denied")

    def __init__(self) -> None:
        self.total_bytes = 0.0
        self.allowed = 0.0
        self.denied = 0.0

    def add(self, row: Dict) -> None:
        self.total_bytes += as_number(row.get("TotalBytes"))
        self.allowed += as_number(row.get("AllowedFlows"))
        self.denied += as_number(row.get("DeniedFlows"))


class TrafficAnalyticsCollector(Collector):
    """
    Aggregates subnet-pair and IP-pair flow records over the last five minutes.

    Subnet pairs resolve to nodes by the subnet segment of a node's resource
    reference, then by resource name. IP pairs resolve by node endpoint and
    only fill edges the subnet pass left unresolved.
    """

    source = "trafficAnalytics"

    def default_ttl(self) -> float:
        return self.settings.traffic_cache_ttl_s

    def ensure_configured(self, topology: Topology, identity: Optional[str]) -> None:
        if not self.settings.traffic_analytics_enabled:
            raise ConfigurationMissing("traffic analytics is disabled")
        if not self.settings.log_analytics_workspace_id:
            raise ConfigurationMissing("AZURE_LOG_ANALYTICS_WORKSPACE_ID is not set")

    def attempted_scope(self, topology: Topology) -> int:
        return len(topology.edges)

    def gather(self, topology: Topology, identity: Optional[str]) -> PartialMetrics:
        edge_ids = ",".join(sorted(e.id for e in topology.edges))
        key = f"{self.cache_prefix(identity)}:{self.settings.log_analytics_workspace_id}:{topology.id}:{edge_ids}"
        cached = self.cache.get(key)
        if cached is None:
            cached = self._query(topology, identity)
            self.cache.set(key, cached)
        else:
            logger.debug(f"Traffic analytics cache hit for diagram {topology.id}")

        return PartialMetrics(source=self.source, flows=dict(cached))

    def _query(self, topology: Topology, identity: Optional[str]) -> Dict[str, EdgeFlow]:
        workspace = self.settings.log_analytics_workspace_id
        table = self.settings.log_analytics_table
        edge_lookup = topology.edge_lookup()

        subnet_rows = ip_rows = None
        errors = []
        try:
            subnet_rows = self.client.query_workspace(workspace, subnet_pair_query(table), identity)
        except SourceUnavailable as e:
            logger.warning(f"Subnet-pair flow query failed: {e}")
            errors.append(e)
        try:
            ip_rows = self.client.query_workspace(workspace, ip_pair_query(table), identity)
        except SourceUnavailable as e:
            logger.warning(f"IP-pair flow query failed: {e}")
            errors.append(e)
        if len(errors) == 2:
            raise errors[0]

        by_subnet = _subnet_index(topology)
        by_name = {}
        for node in topology.nodes:
            name = resource_name_of(node.resource_ref)
            if name:
                by_name[name] = node.id

        totals: Dict[str, _FlowTotals] = {}
        for row in subnet_rows or []:
            src = _resolve_subnet(as_text(row.get("SrcSubnet")), by_subnet, by_name)
            dst = _resolve_subnet(as_text(row.get("DestSubnet")), by_subnet, by_name)
            if not src or not dst or src == dst:
                continue
            edge_id = edge_lookup.get((src, dst))
            if edge_id:
                totals.setdefault(edge_id, _FlowTotals()).add(row)

        resolved_by_subnet = set(totals)
        for row in ip_rows or []:
            src = _resolve_ip(as_text(row.get("SrcIp")), topology)
            dst = _resolve_ip(as_text(row.get("DestIp")), topology)
            if not src or not dst or src == dst:
                continue
            edge_id = edge_lookup.get((src, dst))
            if edge_id and edge_id not in resolved_by_subnet:
                totals.setdefault(edge_id, _FlowTotals()).add(row)

        return {
            edge_id: EdgeFlow(
                edge_id=edge_id,
                total_bytes=t.total_bytes,
                allowed_flows=t.allowed,
                denied_flows=t.denied,
                throughput_bps=round(t.total_bytes * 8 / LOOKBACK_SECONDS),
            )
            for edge_id, t in totals.items()
        }


def _subnet_index(topology: Topology) -> Dict[str, str]:
    index: Dict[str, str] = {}
    for node in topology.nodes:
        subnet = subnet_name_of(node.resource_ref)
        if subnet:
            index[subnet] = node.id
    return index


def _resolve_subnet(subnet: str, by_subnet: Dict[str, str], by_name: Dict[str, str]) -> Optional[str]:
    if not subnet:
        return None
    segment = subnet.rstrip("/").split("/")[-1].lower()
    return by_subnet.get(segment) or by_name.get(segment)


def _resolve_ip(ip: str, topology: Topology) -> Optional[str]:
    """Exact endpoint first, then the address as a whole token of an endpoint or resource reference."""
    if not ip:
        return None
    for node in topology.nodes:
        if node.endpoint and node.endpoint == ip:
            return node.id
    bounded = re.compile(rf"(?<![\w.]){re.escape(ip)}(?![\w.])")
    for node in topology.nodes:
        if any(text and bounded.search(text) for text in (node.endpoint, node.resource_ref)):
            return node.id
    return None
