"""Edge latency and reachability from active connection probes."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

from livediagram.errors import ConfigurationMissing, LiveDiagramError, SourceUnavailable
from livediagram.telemetry.base import Collector, PartialMetrics, ProbeStats, as_number
from livediagram.topology import Topology, resource_group_of, resource_name_of

logger = logging.getLogger(__name__)

NETWORK_API_VERSION = "2023-11-01"

_CONNECTION_STATES = {"reachable": "reachable", "unreachable": "unreachable"}


def probe_from_state(edge_id: str, state: Dict[str, Any]) -> ProbeStats:
    sent = int(as_number(state.get("probesSent")))
    failed = int(as_number(state.get("probesFailed")))
    return ProbeStats(
        edge_id=edge_id,
        avg_latency_ms=as_number(state.get("avgLatencyInMs")),
        max_latency_ms=as_number(state.get("maxLatencyInMs")),
        packet_loss_percent=round(failed / sent * 100, 2) if sent else 0.0,
        checks_total=sent,
        checks_failed=failed,
        status=_CONNECTION_STATES.get(str(state.get("connectionState") or "").lower(), "unknown"),
    )


class ConnectionMonitorCollector(Collector):
    """
    Lists the connection monitors of every (subscription, resource group)
    the topology touches, queries each monitor's latest state and maps test
    group source x destination pairs onto edges.
    """

    source = "connectionMonitor"

    def default_ttl(self) -> float:
        return self.settings.connection_monitor_cache_ttl_s

    def ensure_configured(self, topology: Topology, identity: Optional[str]) -> None:
        if not self.settings.connection_monitor_enabled:
            raise ConfigurationMissing("connection monitor is disabled")

    def attempted_scope(self, topology: Topology) -> int:
        return len(topology.edges)

    def scopes(self, topology: Topology) -> List[Tuple[str, str]]:
        out: List[Tuple[str, str]] = []
        for node in topology.nodes:
            scope = resource_group_of(node.resource_ref)
            if scope and scope not in out:
                out.append(scope)
        return out

    def gather(self, topology: Topology, identity: Optional[str]) -> PartialMetrics:
        edge_ids = ",".join(sorted(e.id for e in topology.edges))
        key = f"{self.cache_prefix(identity)}:{topology.id}:{edge_ids}"
        cached = self.cache.get(key)
        if cached is None:
            cached = self._probe(topology, identity)
            self.cache.set(key, cached)
        return PartialMetrics(source=self.source, probes=dict(cached))

    def _probe(self, topology: Topology, identity: Optional[str]) -> Dict[str, ProbeStats]:
        scopes = self.scopes(topology)
        by_resource: Dict[str, str] = {}
        by_address: Dict[str, str] = {}
        for node in topology.nodes:
            if node.endpoint:
                by_address[node.endpoint.lower()] = node.id
            if node.resource_ref:
                by_resource[node.resource_ref.lower()] = node.id
                name = resource_name_of(node.resource_ref)
                if name:
                    by_address[name] = node.id
        edge_lookup = topology.edge_lookup()

        probes: Dict[str, ProbeStats] = {}
        failures: List[LiveDiagramError] = []
        for subscription, resource_group in scopes:
            try:
                for monitor in self._list_monitors(subscription, resource_group, identity):
                    self._map_monitor(monitor, identity, by_resource, by_address, edge_lookup, probes)
            except ConfigurationMissing:
                raise
            except LiveDiagramError as e:
                logger.warning(f"Connection monitors unavailable for {subscription}/{resource_group}: {e}")
                failures.append(e)

        if scopes and len(failures) == len(scopes):
            raise failures[0]
        return probes

    def _list_monitors(self, subscription: str, resource_group: str, identity: Optional[str]) -> List[Dict[str, Any]]:
        watchers = self.client.list_arm(
            f"/subscriptions/{subscription}/resourceGroups/{resource_group}"
            f"/providers/Microsoft.Network/networkWatchers",
            identity,
            params={"api-version": NETWORK_API_VERSION},
        )
        monitors: List[Dict[str, Any]] = []
        for watcher in watchers:
            watcher_id = watcher.get("id")
            if not watcher_id:
                continue
            try:
                monitors.extend(self.client.list_arm(
                    f"{watcher_id}/connectionMonitors",
                    identity,
                    params={"api-version": NETWORK_API_VERSION},
                ))
            except SourceUnavailable as e:
                logger.debug(f"Listing connection monitors of {watcher_id} failed: {e}")
        return monitors

    def _map_monitor(
        self,
        monitor: Dict[str, Any],
        identity: Optional[str],
        by_resource: Dict[str, str],
        by_address: Dict[str, str],
        edge_lookup: Dict[Tuple[str, str], str],
        probes: Dict[str, ProbeStats],
    ) -> None:
        monitor_id = monitor.get("id")
        if not monitor_id:
            return
        props = monitor.get("properties") or {}

        endpoint_nodes: Dict[str, str] = {}
        for endpoint in props.get("endpoints") or []:
            node_id = None
            if endpoint.get("resourceId"):
                node_id = by_resource.get(endpoint["resourceId"].lower())
            elif endpoint.get("address"):
                node_id = by_address.get(endpoint["address"].lower())
            if node_id and endpoint.get("name"):
                endpoint_nodes[endpoint["name"]] = node_id
        if not endpoint_nodes:
            return

        try:
            result = self.client.post_json(
                self.client.arm_url(f"{monitor_id}/query"),
                {},
                identity,
                params={"api-version": NETWORK_API_VERSION},
            )
        except SourceUnavailable as e:
            logger.debug(f"Querying connection monitor {monitor_id} failed: {e}")
            return
        states = (result or {}).get("states") or []

        for group in props.get("testGroups") or []:
            group_name = group.get("name") or ""
            state = next((s for s in states if group_name and group_name in (s.get("name") or "")), None)
            if state is None:
                continue
            for src_name in group.get("sources") or []:
                for dst_name in group.get("destinations") or []:
                    src = endpoint_nodes.get(src_name)
                    dst = endpoint_nodes.get(dst_name)
                    if not src or not dst or src == dst:
                        continue
                    edge_id = edge_lookup.get((src, dst))
                    if edge_id:
                        probes[edge_id] = probe_from_state(edge_id, state)
