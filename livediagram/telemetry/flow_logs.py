"""Edge throughput from raw NSG flow-log blobs."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from livediagram.cache import TTLCache
from livediagram.config import LiveSettings
from livediagram.errors import ConfigurationMissing, SourceUnavailable
from livediagram.telemetry.base import Collector, EdgeFlow, PartialMetrics
from livediagram.telemetry.client import BlobInfo
from livediagram.telemetry.ip_map import IpResourceMapper
from livediagram.topology import Topology

logger = logging.getLogger(__name__)

LOOKBACK_SECONDS = 3600


@dataclass
class FlowTuple:
    timestamp: int
    src_ip: str
    dest_ip: str
    src_port: int
    dest_port: int
    protocol: str  # T | U
    direction: str  # I | O
    action: str  # A | D
    flow_state: Optional[str] = None  # B | C | E (version 2)
    packets_src_to_dest: Optional[int] = None
    bytes_src_to_dest: Optional[int] = None
    packets_dest_to_src: Optional[int] = None
    bytes_dest_to_src: Optional[int] = None

    @property
    def total_bytes(self) -> int:
        return (self.bytes_src_to_dest or 0) + (self.bytes_dest_to_src or 0)


def _optional_int(parts: List[str], idx: int) -> Optional[int]:
    if idx >= len(parts) or parts[idx] == "":
        return None
    return int(parts[idx])


def parse_flow_tuple(raw: str) -> Optional[FlowTuple]:
    """
    Parse ``ts,src,dst,sport,dport,proto,dir,action[,state,pkts,bytes,pkts,bytes]``.

    Returns None for anything malformed.
    """
    parts = raw.split(",")
    if len(parts) < 8:
        return None
    try:
        return FlowTuple(
            timestamp=int(parts[0]),
            src_ip=parts[1],
            dest_ip=parts[2],
            src_port=int(parts[3]) if parts[3] else 0,
            dest_port=int(parts[4]) if parts[4] else 0,
            protocol=parts[5],
            direction=parts[6],
            action=parts[7],
            flow_state=parts[8] if len(parts) > 8 and parts[8] else None,
            packets_src_to_dest=_optional_int(parts, 9),
            bytes_src_to_dest=_optional_int(parts, 10),
            packets_dest_to_src=_optional_int(parts, 11),
            bytes_dest_to_src=_optional_int(parts, 12),
        )
    except ValueError:
        return None


def iter_flow_tuples(document) -> Iterator[str]:
    """Raw tuple strings of a flow-log document (records/properties/flows/flows/flowTuples)."""
    for record in document.get("records") or []:
        for rule_group in (record.get("properties") or {}).get("flows") or []:
            for flow_group in rule_group.get("flows") or []:
                for raw in flow_group.get("flowTuples") or []:
                    if isinstance(raw, str):
                        yield raw


def hour_markers(now: datetime) -> Tuple[str, str]:
    """Path fragments of the current and previous UTC hour."""
    def marker(dt: datetime) -> str:
        return f"y={dt.year:04d}/m={dt.month:02d}/d={dt.day:02d}/h={dt.hour:02d}/"
    return marker(now), marker(now - timedelta(hours=1))


class FlowLogCollector(Collector):
    """
    Reads the most recent flow-log blobs, aggregates bytes per IP pair and
    maps the pairs onto edges through the IP resource map.
    """

    source = "flowLogs"

    def __init__(
        self,
        client,
        settings: LiveSettings,
        cache: Optional[TTLCache] = None,
        ip_mapper: Optional[IpResourceMapper] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(client, settings, cache)
        self.ip_mapper = ip_mapper or IpResourceMapper(client, settings)
        self._clock = clock

    def default_ttl(self) -> float:
        return self.settings.flow_log_cache_ttl_s

    def ensure_configured(self, topology: Topology, identity: Optional[str]) -> None:
        if not self.settings.flow_log_storage_account:
            raise ConfigurationMissing("AZURE_NSG_FLOW_LOG_STORAGE_ACCOUNT is not set")

    def attempted_scope(self, topology: Topology) -> int:
        return len(topology.edges)

    def gather(self, topology: Topology, identity: Optional[str]) -> PartialMetrics:
        account = self.settings.flow_log_storage_account
        edge_ids = ",".join(sorted(e.id for e in topology.edges))
        key = f"{self.cache_prefix(identity)}:{account}:{topology.id}:{edge_ids}"
        cached = self.cache.get(key)
        if cached is None:
            cached = self._read_flows(topology, identity)
            self.cache.set(key, cached)
        return PartialMetrics(source=self.source, flows=dict(cached))

    def recent_blobs(self, identity: Optional[str]) -> List[BlobInfo]:
        now = datetime.fromtimestamp(self._clock(), tz=timezone.utc)
        markers = hour_markers(now)
        blobs = self.client.list_blobs(
            self.settings.flow_log_storage_account,
            self.settings.flow_log_container,
            identity,
            prefix="resourceId=",
        )
        recent = [
            b for b in blobs
            if b.name.endswith(".json") and any(m in b.name for m in markers)
        ]
        epoch = datetime.fromtimestamp(0, tz=timezone.utc)
        recent.sort(key=lambda b: b.last_modified or epoch, reverse=True)
        return recent[: self.settings.flow_log_max_blobs]

    def _read_flows(self, topology: Topology, identity: Optional[str]) -> Dict[str, EdgeFlow]:
        cutoff = self._clock() - LOOKBACK_SECONDS
        pair_totals: Dict[Tuple[str, str], List[float]] = {}

        for blob in self.recent_blobs(identity):
            try:
                raw = self.client.read_blob(
                    self.settings.flow_log_storage_account,
                    self.settings.flow_log_container,
                    blob.name,
                    identity,
                )
                document = json.loads(raw)
            except SourceUnavailable as e:
                logger.warning(f"Reading flow-log blob {blob.name} failed: {e}")
                continue
            except ValueError as e:
                logger.warning(f"Skipping malformed flow-log blob {blob.name}: {e}")
                continue
            if not isinstance(document, dict):
                continue

            for raw_tuple in iter_flow_tuples(document):
                flow = parse_flow_tuple(raw_tuple)
                if flow is None or flow.timestamp < cutoff:
                    continue
                totals = pair_totals.setdefault((flow.src_ip, flow.dest_ip), [0.0, 0.0, 0.0])
                totals[0] += flow.total_bytes
                if flow.action == "A":
                    totals[1] += 1
                else:
                    totals[2] += 1

        if not pair_totals:
            return {}

        ip_map = self.ip_mapper.build(topology, identity)
        edge_lookup = topology.edge_lookup()
        per_edge: Dict[str, List[float]] = {}
        for (src_ip, dst_ip), totals in pair_totals.items():
            src, dst = IpResourceMapper.resolve(ip_map, src_ip, dst_ip)
            if not src or not dst or src == dst:
                continue
            edge_id = edge_lookup.get((src, dst))
            if not edge_id:
                continue
            acc = per_edge.setdefault(edge_id, [0.0, 0.0, 0.0])
            for i in range(3):
                acc[i] += totals[i]

        return {
            edge_id: EdgeFlow(
                edge_id=edge_id,
                total_bytes=acc[0],
                allowed_flows=acc[1],
                denied_flows=acc[2],
                throughput_bps=round(acc[0] * 8 / LOOKBACK_SECONDS),
            )
            for edge_id, acc in per_edge.items()
        }
