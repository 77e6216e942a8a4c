"""
Static topology declarations and the in-memory topology store.

A topology (diagram) declares nodes, edges and per-element metric bindings.
The aggregation core only reads topologies; they are written by the HTTP
surface or loaded from declaration files at startup.
"""

from __future__ import annotations

import json
import logging
import re
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from livediagram.errors import InvalidTopology

logger = logging.getLogger(__name__)

SOURCE_MONITOR = "monitor"
SOURCE_APP_INSIGHTS = "appInsights"
SOURCE_COMPOSITE = "composite"
SOURCE_LOG_ANALYTICS = "logAnalytics"
SOURCE_SERVICE_HEALTH = "serviceHealth"

BINDING_SOURCES = (
    SOURCE_MONITOR,
    SOURCE_APP_INSIGHTS,
    SOURCE_COMPOSITE,
    SOURCE_LOG_ANALYTICS,
    SOURCE_SERVICE_HEALTH,
)
AGGREGATIONS = ("avg", "max", "min", "total", "count", "rate", "p50", "p95", "p99")
RULE_OPS = ("<", ">", "<=", ">=", "==")

_SUBSCRIPTION_RE = re.compile(r"/subscriptions/([^/]+)", re.IGNORECASE)
_RESOURCE_GROUP_RE = re.compile(r"/subscriptions/([^/]+)/resourceGroups/([^/]+)", re.IGNORECASE)
_SUBNET_SEGMENT_RE = re.compile(r"subnets/([^/]+)", re.IGNORECASE)
_SUBNET_ID_RE = re.compile(
    r"/subscriptions/[^/]+/resourceGroups/[^/]+/providers/Microsoft\.Network/"
    r"virtualNetworks/[^/]+/subnets/[^/]+",
    re.IGNORECASE,
)


@dataclass
class HealthRule:
    """Weighted threshold predicate over one named metric."""
    metric: str
    op: str
    threshold: float
    weight: float = 1.0


@dataclass
class MetricBinding:
    """How to resolve one named metric: a direct source or a composite rule set."""
    source: str
    metric: Optional[str] = None
    aggregation: str = "avg"
    rules: List[HealthRule] = field(default_factory=list)
    kql: Optional[str] = None

    @property
    def is_composite(self) -> bool:
        return self.source == SOURCE_COMPOSITE


@dataclass
class NodeSpec:
    id: str
    label: str
    resource_ref: Optional[str] = None
    endpoint: Optional[str] = None  # IP address or FQDN
    group_id: Optional[str] = None
    icon: Optional[str] = None
    bindings: Dict[str, MetricBinding] = field(default_factory=dict)

    def metric_names(self) -> List[str]:
        """Declared non-composite binding names, in declaration order."""
        return [name for name, b in self.bindings.items() if not b.is_composite]

    def health_rules(self) -> List[HealthRule]:
        rules: List[HealthRule] = []
        for binding in self.bindings.values():
            if binding.is_composite:
                rules.extend(binding.rules)
        return rules

    def has_composite(self) -> bool:
        return any(b.is_composite for b in self.bindings.values())


@dataclass
class EdgeSpec:
    id: str
    source: str
    target: str
    label: Optional[str] = None
    protocol: Optional[str] = None
    animation: str = "flow"
    bindings: Dict[str, MetricBinding] = field(default_factory=dict)

    def touches(self, node_id: str) -> bool:
        return self.source == node_id or self.target == node_id

    def peer_of(self, node_id: str) -> str:
        return self.target if self.source == node_id else self.source


@dataclass
class DiagramSettings:
    refresh_interval_sec: int = 30
    default_time_range: str = "PT5M"
    layout: str = "dagre"


@dataclass
class Topology:
    id: str
    name: str
    version: str
    nodes: List[NodeSpec] = field(default_factory=list)
    edges: List[EdgeSpec] = field(default_factory=list)
    settings: DiagramSettings = field(default_factory=DiagramSettings)
    description: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def node(self, node_id: str) -> Optional[NodeSpec]:
        for n in self.nodes:
            if n.id == node_id:
                return n
        return None

    def edge_lookup(self) -> Dict[Tuple[str, str], str]:
        """(source, target) -> edge id, registered in both directions."""
        lookup: Dict[Tuple[str, str], str] = {}
        for edge in self.edges:
            lookup.setdefault((edge.source, edge.target), edge.id)
            lookup.setdefault((edge.target, edge.source), edge.id)
        return lookup

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Topology":
        return _topology_from_dict(data)

    def to_dict(self) -> Dict[str, Any]:
        return _topology_to_dict(self)


# ----------------------------- resource refs -----------------------------

def subscription_of(resource_ref: Optional[str]) -> Optional[str]:
    if not resource_ref:
        return None
    match = _SUBSCRIPTION_RE.search(resource_ref)
    return match.group(1) if match else None


def resource_group_of(resource_ref: Optional[str]) -> Optional[Tuple[str, str]]:
    """(subscription id, resource group) of a resource reference."""
    if not resource_ref:
        return None
    match = _RESOURCE_GROUP_RE.search(resource_ref)
    return (match.group(1), match.group(2)) if match else None


def resource_name_of(resource_ref: Optional[str]) -> Optional[str]:
    """Lower-cased last path segment of a resource reference."""
    if not resource_ref:
        return None
    name = resource_ref.rstrip("/").split("/")[-1].lower()
    return name or None


def subnet_name_of(resource_ref: Optional[str]) -> Optional[str]:
    if not resource_ref:
        return None
    match = _SUBNET_SEGMENT_RE.search(resource_ref)
    return match.group(1).lower() if match else None


def subnet_id_of(resource_ref: Optional[str]) -> Optional[str]:
    """Lower-cased full subnet id prefix of a resource reference, if any."""
    if not resource_ref:
        return None
    match = _SUBNET_ID_RE.search(resource_ref)
    return match.group(0).lower() if match else None


# ----------------------------- parsing -----------------------------

def _binding_from_dict(owner: str, name: str, raw: Any) -> MetricBinding:
    if not isinstance(raw, dict):
        raise InvalidTopology(f"{owner}: binding '{name}' must be a mapping")
    source = raw.get("source")
    if source not in BINDING_SOURCES:
        raise InvalidTopology(f"{owner}: binding '{name}' has unknown source {source!r}")

    rules: List[HealthRule] = []
    if source == SOURCE_COMPOSITE:
        for idx, rule in enumerate(raw.get("rules") or []):
            if not isinstance(rule, dict):
                raise InvalidTopology(f"{owner}: rule {idx} of '{name}' must be a mapping")
            op = rule.get("op")
            if op not in RULE_OPS:
                raise InvalidTopology(f"{owner}: rule {idx} of '{name}' has unknown op {op!r}")
            try:
                rules.append(HealthRule(
                    metric=str(rule["metric"]),
                    op=op,
                    threshold=float(rule["threshold"]),
                    weight=float(rule.get("weight", 1.0)),
                ))
            except (KeyError, TypeError, ValueError) as e:
                raise InvalidTopology(f"{owner}: rule {idx} of '{name}' is malformed: {e}") from e
    elif source in (SOURCE_MONITOR, SOURCE_APP_INSIGHTS) and not raw.get("metric"):
        raise InvalidTopology(f"{owner}: binding '{name}' needs a metric name")

    aggregation = raw.get("aggregation") or "avg"
    if aggregation not in AGGREGATIONS:
        raise InvalidTopology(f"{owner}: binding '{name}' has unknown aggregation {aggregation!r}")

    return MetricBinding(
        source=source,
        metric=raw.get("metric"),
        aggregation=aggregation,
        rules=rules,
        kql=raw.get("kql"),
    )


def _bindings_from_dict(owner: str, raw: Any) -> Dict[str, MetricBinding]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise InvalidTopology(f"{owner}: bindings must be a mapping")
    return {str(name): _binding_from_dict(owner, str(name), b) for name, b in raw.items()}


def _topology_from_dict(data: Dict[str, Any]) -> Topology:
    if not isinstance(data, dict):
        raise InvalidTopology("topology declaration must be a mapping")
    if not data.get("id") or not data.get("version"):
        raise InvalidTopology("topology declaration needs 'id' and 'version'")

    nodes: List[NodeSpec] = []
    seen_nodes = set()
    for raw in data.get("nodes") or []:
        if not isinstance(raw, dict):
            raise InvalidTopology("node declarations must be mappings")
        node_id = raw.get("id")
        if not node_id:
            raise InvalidTopology("node without id")
        if node_id in seen_nodes:
            raise InvalidTopology(f"duplicate node id {node_id!r}")
        seen_nodes.add(node_id)
        nodes.append(NodeSpec(
            id=str(node_id),
            label=str(raw.get("label") or node_id),
            resource_ref=raw.get("azureResourceId") or raw.get("resourceRef"),
            endpoint=raw.get("endpoint"),
            group_id=raw.get("groupId"),
            icon=raw.get("icon"),
            bindings=_bindings_from_dict(f"node {node_id}", raw.get("bindings")),
        ))

    edges: List[EdgeSpec] = []
    seen_edges = set()
    for raw in data.get("edges") or []:
        if not isinstance(raw, dict):
            raise InvalidTopology("edge declarations must be mappings")
        edge_id = raw.get("id")
        if not edge_id:
            raise InvalidTopology("edge without id")
        if edge_id in seen_edges:
            raise InvalidTopology(f"duplicate edge id {edge_id!r}")
        seen_edges.add(edge_id)
        source, target = raw.get("source"), raw.get("target")
        if source not in seen_nodes or target not in seen_nodes:
            raise InvalidTopology(f"edge {edge_id} references unknown node ({source} -> {target})")
        edges.append(EdgeSpec(
            id=str(edge_id),
            source=str(source),
            target=str(target),
            label=raw.get("label"),
            protocol=raw.get("protocol"),
            animation=raw.get("animation") or "flow",
            bindings=_bindings_from_dict(f"edge {edge_id}", raw.get("bindings")),
        ))

    raw_settings = data.get("settings") or {}
    try:
        refresh = int(raw_settings.get("refreshIntervalSec", 30))
    except (TypeError, ValueError) as e:
        raise InvalidTopology(f"invalid refreshIntervalSec: {e}") from e
    settings = DiagramSettings(
        refresh_interval_sec=max(1, refresh),
        default_time_range=raw_settings.get("defaultTimeRange", "PT5M"),
        layout=raw_settings.get("layout", "dagre"),
    )

    return Topology(
        id=str(data["id"]),
        name=str(data.get("name") or data["id"]),
        version=str(data["version"]),
        nodes=nodes,
        edges=edges,
        settings=settings,
        description=data.get("description"),
        created_at=data.get("createdAt"),
        updated_at=data.get("updatedAt"),
    )


def _binding_to_dict(binding: MetricBinding) -> Dict[str, Any]:
    out: Dict[str, Any] = {"source": binding.source}
    if binding.is_composite:
        out["rules"] = [
            {"metric": r.metric, "op": r.op, "threshold": r.threshold, "weight": r.weight}
            for r in binding.rules
        ]
    else:
        if binding.metric:
            out["metric"] = binding.metric
        out["aggregation"] = binding.aggregation
    if binding.kql:
        out["kql"] = binding.kql
    return out


def _topology_to_dict(topology: Topology) -> Dict[str, Any]:
    nodes = []
    for n in topology.nodes:
        node: Dict[str, Any] = {"id": n.id, "label": n.label}
        if n.icon:
            node["icon"] = n.icon
        if n.group_id:
            node["groupId"] = n.group_id
        if n.resource_ref:
            node["azureResourceId"] = n.resource_ref
        if n.endpoint:
            node["endpoint"] = n.endpoint
        node["bindings"] = {k: _binding_to_dict(b) for k, b in n.bindings.items()}
        nodes.append(node)

    edges = []
    for e in topology.edges:
        edge: Dict[str, Any] = {"id": e.id, "source": e.source, "target": e.target}
        if e.label:
            edge["label"] = e.label
        if e.protocol:
            edge["protocol"] = e.protocol
        edge["animation"] = e.animation
        edge["bindings"] = {k: _binding_to_dict(b) for k, b in e.bindings.items()}
        edges.append(edge)

    out: Dict[str, Any] = {
        "id": topology.id,
        "name": topology.name,
        "version": topology.version,
        "createdAt": topology.created_at,
        "updatedAt": topology.updated_at,
        "nodes": nodes,
        "edges": edges,
        "settings": {
            "refreshIntervalSec": topology.settings.refresh_interval_sec,
            "defaultTimeRange": topology.settings.default_time_range,
            "layout": topology.settings.layout,
        },
    }
    if topology.description:
        out["description"] = topology.description
    return out


# ----------------------------- store -----------------------------

class TopologyStore:
    """Thread-safe in-memory map of diagram id -> Topology."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._topologies: Dict[str, Topology] = {}

    def get(self, diagram_id: str) -> Optional[Topology]:
        with self._lock:
            return self._topologies.get(diagram_id)

    def save(self, topology: Topology) -> None:
        with self._lock:
            self._topologies[topology.id] = topology

    def delete(self, diagram_id: str) -> bool:
        with self._lock:
            return self._topologies.pop(diagram_id, None) is not None

    def list(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                {"id": t.id, "name": t.name, "updatedAt": t.updated_at}
                for t in self._topologies.values()
            ]

    def __len__(self) -> int:
        with self._lock:
            return len(self._topologies)

    def load_dir(self, path: str) -> int:
        """Load every *.yaml / *.yml / *.json declaration in ``path``. Returns the count loaded."""
        directory = Path(path)
        if not directory.is_dir():
            logger.info(f"Diagram directory not found: {path}")
            return 0

        loaded = 0
        files = sorted(
            f for f in directory.iterdir()
            if f.suffix.lower() in (".yaml", ".yml", ".json")
        )
        for f in files:
            try:
                with open(f, "r", encoding="utf-8") as fh:
                    if f.suffix.lower() == ".json":
                        data = json.load(fh)
                    else:
                        data = yaml.safe_load(fh)
                topology = Topology.from_dict(data)
            except (OSError, ValueError, yaml.YAMLError, InvalidTopology) as e:
                logger.warning(f"Skipping diagram declaration {f}: {e}")
                continue
            self.save(topology)
            loaded += 1

        logger.info(f"Loaded {loaded} diagram(s) from {path}")
        return loaded
