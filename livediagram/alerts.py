"""Correlate fired platform alerts with diagram nodes and edges."""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List

from livediagram.model import (
    SEVERITY_CRITICAL,
    SEVERITY_INFO,
    SEVERITY_WARNING,
    LiveAlert,
    LiveEdge,
    LiveNode,
)
from livediagram.topology import Topology

logger = logging.getLogger(__name__)

DEFAULT_SUMMARY = "Azure Monitor alert fired"
SEVERITY_RANK = {SEVERITY_CRITICAL: 0, SEVERITY_WARNING: 1, SEVERITY_INFO: 2}


def map_severity(raw: str) -> str:
    if raw in ("Sev0", "Sev1"):
        return SEVERITY_CRITICAL
    if raw == "Sev2":
        return SEVERITY_WARNING
    return SEVERITY_INFO


def infer_root_causes(resource_type: str, raw_severity: str) -> List[str]:
    """Common causes by resource type; a heuristic, not a diagnosis."""
    resource_type = (resource_type or "").lower()
    causes: List[str] = []
    if "managedclusters" in resource_type:
        causes.append("Pod resource limits exceeded")
        if raw_severity in ("Sev0", "Sev1"):
            causes.append("Node pool autoscaler at max")
    elif "databases" in resource_type or "sql" in resource_type:
        causes.append("Query plan regression")
        if raw_severity == "Sev0":
            causes.append("DTU/vCore saturation")
    elif "redis" in resource_type:
        causes.append("Memory pressure")
        causes.append("Connection pool exhaustion")
    elif "applicationgateways" in resource_type:
        causes.append("Backend pool unhealthy")
    elif "sites" in resource_type or "functions" in resource_type:
        causes.append("Cold start latency")
        causes.append("Scaling limit reached")
    return causes


def _text(value: Any) -> str:
    return value if isinstance(value, str) else ""


def alert_essentials(raw: Any) -> Dict[str, Any]:
    """The ``properties.essentials`` mapping of a raw alert, or {} when malformed."""
    if not isinstance(raw, dict):
        return {}
    properties = raw.get("properties")
    if not isinstance(properties, dict):
        return {}
    essentials = properties.get("essentials")
    return essentials if isinstance(essentials, dict) else {}


def correlate_alerts(raw_alerts: Iterable[Dict[str, Any]], topology: Topology) -> List[LiveAlert]:
    """
    Keep the alerts whose target resource is a diagram node.

    Sorted critical first, newest first within a severity. Malformed records
    are skipped; non-text fields fall back to defaults.
    """
    by_resource = {
        node.resource_ref.lower(): node.id
        for node in topology.nodes
        if node.resource_ref
    }

    alerts: List[LiveAlert] = []
    seen = set()
    for raw in raw_alerts:
        essentials = alert_essentials(raw)
        target = _text(essentials.get("targetResource"))
        if not target:
            continue
        node_id = by_resource.get(target.lower())
        if node_id is None:
            continue
        alert_id = _text(raw.get("name")) or _text(raw.get("id"))
        if not alert_id or alert_id in seen:
            continue
        seen.add(alert_id)

        raw_severity = _text(essentials.get("severity"))
        alerts.append(LiveAlert(
            id=alert_id,
            severity=map_severity(raw_severity),
            title=_text(essentials.get("alertRule")) or alert_id,
            resource_id=target,
            fired_at=_text(essentials.get("startDateTime")),
            summary=_text(essentials.get("description")) or DEFAULT_SUMMARY,
            root_cause_candidates=infer_root_causes(_text(essentials.get("targetResourceType")), raw_severity),
            affected_node_ids=[node_id],
            affected_edge_ids=[e.id for e in topology.edges if e.touches(node_id)],
        ))

    alerts.sort(key=lambda a: a.fired_at, reverse=True)
    alerts.sort(key=lambda a: SEVERITY_RANK.get(a.severity, len(SEVERITY_RANK)))
    return alerts


def attach_alert_ids(alerts: List[LiveAlert], nodes: List[LiveNode], edges: List[LiveEdge]) -> None:
    """Add each alert id to the active alert list of the nodes and edges it affects."""
    node_index = {n.id: n for n in nodes}
    edge_index = {e.id: e for e in edges}
    for alert in alerts:
        for node_id in alert.affected_node_ids:
            node = node_index.get(node_id)
            if node is not None and alert.id not in node.active_alert_ids:
                node.active_alert_ids.append(alert.id)
        for edge_id in alert.affected_edge_ids:
            edge = edge_index.get(edge_id)
            if edge is not None and alert.id not in edge.active_alert_ids:
                edge.active_alert_ids.append(alert.id)
